"""
The ``LanguageModelProvider`` capability and its observable state.

A provider manages one backend family: it discovers models, tracks whether
the backend is usable, and hands out ``LanguageModel`` instances.  Its
mutable part lives in a ``ProviderState`` whose snapshot is replaced
wholesale on every refresh, so readers never observe a half-updated list.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Coroutine, Generic, Sequence, TypeVar

from rich.console import RenderableType

from modelhub.events import Observable, Subscription
from modelhub.llm.errors import LanguageModelError
from modelhub.llm.model import LanguageModel
from modelhub.llm.types import (
    LanguageModelProviderId,
    LanguageModelProviderName,
)

logger = logging.getLogger(__name__)

M = TypeVar("M")

_background_tasks: set[asyncio.Task] = set()


def spawn_logged(coro: Coroutine[Any, Any, Any], description: str) -> asyncio.Task | None:
    """
    Run *coro* in the background, logging (not raising) any failure.

    Returns ``None`` and closes the coroutine when no event loop is running.
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.debug("No running event loop; skipping %s", description)
        coro.close()
        return None

    task = loop.create_task(coro)
    _background_tasks.add(task)

    def _done(t: asyncio.Task) -> None:
        _background_tasks.discard(t)
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            logger.warning("%s failed: %s", description, exc)

    task.add_done_callback(_done)
    return task


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProviderSnapshot(Generic[M]):
    """Immutable view of a provider's discovered models."""

    models: tuple[M, ...] = ()

    @property
    def is_authenticated(self) -> bool:
        return bool(self.models)


class ProviderState(Generic[M]):
    """
    Owns a provider's ``ProviderSnapshot`` and refreshes it from the backend.

    Parameters
    ----------
    fetch:
        Coroutine function returning the backend's current model list.
    sort_key:
        Key used to order models; snapshots are always sorted.
    coalesce:
        When ``True`` (the default) overlapping ``refresh`` calls share a
        single in-flight probe.  When ``False`` every call probes on its own
        and whichever finishes last decides the snapshot.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[Sequence[M]]],
        *,
        sort_key: Callable[[M], Any],
        coalesce: bool = True,
    ) -> None:
        self._fetch = fetch
        self._sort_key = sort_key
        self._coalesce = coalesce
        self._snapshot: ProviderSnapshot[M] = ProviderSnapshot()
        self._changes = Observable()
        self._inflight: asyncio.Future | None = None
        self._generation = 0
        self.last_error: Exception | None = None
        self.probe_count = 0

    @property
    def snapshot(self) -> ProviderSnapshot[M]:
        return self._snapshot

    @property
    def is_authenticated(self) -> bool:
        return self._snapshot.is_authenticated

    @property
    def refreshing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def subscribe(self, callback: Callable[[ProviderSnapshot[M]], Any]) -> Subscription:
        """Call *callback* with the new snapshot after every swap."""
        return self._changes.subscribe(callback)

    @property
    def generation(self) -> int:
        """Bumped whenever an older probe's result must no longer apply."""
        return self._generation

    def clear(self) -> None:
        """Empty the snapshot and discard the result of any in-flight probe."""
        self._generation += 1
        self._inflight = None
        self._swap(())

    async def refresh(self, *, restart: bool = False) -> ProviderSnapshot[M]:
        """
        Probe the backend and swap in a new snapshot.

        With coalescing enabled, a call made while a probe is already running
        waits for that probe instead of starting another one, unless
        *restart* is set.  A restarted probe supersedes the older one, whose
        result is then discarded.

        A ``LanguageModelError`` from the probe empties the snapshot, is
        recorded in ``last_error`` and re-raised.
        """
        if not self._coalesce:
            return await self._probe(self._generation)

        if restart or not self.refreshing:
            self._generation += 1
            self._inflight = asyncio.ensure_future(self._probe(self._generation))
            self._inflight.add_done_callback(_consume_result)
        return await asyncio.shield(self._inflight)

    def schedule_refresh(self, *, restart: bool = False) -> asyncio.Task | None:
        """Refresh in the background; failures are logged."""
        return spawn_logged(self.refresh(restart=restart), "Model refresh")

    async def _probe(self, generation: int) -> ProviderSnapshot[M]:
        self.probe_count += 1
        try:
            models = await self._fetch()
        except LanguageModelError as exc:
            if self._is_current(generation):
                self.last_error = exc
                self._swap(())
            raise
        if not self._is_current(generation):
            logger.debug("Discarding superseded model probe")
            return self._snapshot
        self.last_error = None
        return self._swap(models)

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _swap(self, models: Sequence[M]) -> ProviderSnapshot[M]:
        self._snapshot = ProviderSnapshot(tuple(sorted(models, key=self._sort_key)))
        self._changes.notify(self._snapshot)
        return self._snapshot


def _consume_result(future: asyncio.Future) -> None:
    # Waiters may all have been cancelled; mark the exception as retrieved.
    if not future.cancelled():
        future.exception()


# ---------------------------------------------------------------------------
# Provider interface
# ---------------------------------------------------------------------------

class ConfigurationView(ABC):
    """An opaque, renderable description of a provider's setup status."""

    @abstractmethod
    def render(self) -> RenderableType:
        ...

    def retry_connection(self) -> None:
        """Ask the provider to probe its backend again.  No-op by default."""


class LanguageModelProvider(ABC):
    """
    Factory and health manager for one backend family.

    State transitions (authenticated or not) only happen through
    ``authenticate``, ``reset_credentials`` or a refresh triggered by a
    settings change; a failing completion never changes them.
    """

    @property
    @abstractmethod
    def id(self) -> LanguageModelProviderId:
        ...

    @property
    @abstractmethod
    def name(self) -> LanguageModelProviderName:
        ...

    @abstractmethod
    def provided_models(self) -> list[LanguageModel]:
        """Return the currently available models, sorted by name."""
        ...

    def get_model(self, model_id: str) -> LanguageModel | None:
        for model in self.provided_models():
            if model.id == model_id:
                return model
        return None

    def load_model(self, model: LanguageModel) -> asyncio.Task | None:
        """
        Best-effort warm-up of *model*.  Failures are logged, never raised.
        Returns the background task, if one was started.
        """
        return None

    @abstractmethod
    def is_authenticated(self) -> bool:
        ...

    @abstractmethod
    async def authenticate(self) -> None:
        """Make the provider usable; a no-op when already authenticated."""
        ...

    @abstractmethod
    async def reset_credentials(self) -> None:
        ...

    @abstractmethod
    def configuration_view(self) -> ConfigurationView:
        ...

    def subscribe(self, callback: Callable[[], Any]) -> Subscription | None:
        """
        Observe state changes.  Returns ``None`` for providers without
        observable state.
        """
        return None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id}>"
