"""
Change notification.

An ``Observable`` keeps a list of callbacks and invokes them, in subscription
order, every time ``notify`` is called.  Subscribing returns a
``Subscription`` handle; releasing the handle removes the callback.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)


class Subscription:
    """Handle for a registered callback.  Call ``unsubscribe`` to release it."""

    def __init__(self, observable: Observable, callback: Callable[..., Any]) -> None:
        self._observable: Observable | None = observable
        self._callback = callback

    @property
    def active(self) -> bool:
        return self._observable is not None

    def unsubscribe(self) -> None:
        """Remove the callback.  Safe to call more than once."""
        if self._observable is not None:
            self._observable._remove(self._callback)
            self._observable = None

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.unsubscribe()


class Observable:
    """A minimal publish/subscribe hub."""

    def __init__(self) -> None:
        self._callbacks: list[Callable[..., Any]] = []

    def subscribe(self, callback: Callable[..., Any]) -> Subscription:
        self._callbacks.append(callback)
        return Subscription(self, callback)

    def notify(self, *args: Any) -> None:
        """
        Invoke every subscriber with *args*.

        A failing subscriber is logged and does not prevent the remaining
        subscribers from running.
        """
        for callback in list(self._callbacks):
            try:
                callback(*args)
            except Exception:
                logger.exception("Subscriber %r failed", callback)

    @property
    def subscriber_count(self) -> int:
        return len(self._callbacks)

    def _remove(self, callback: Callable[..., Any]) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass
