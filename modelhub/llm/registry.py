"""
Language model registry -- the entry point for finding and selecting models.

The registry maps provider ids to provider instances, in registration order.
It is an ordinary object created once at startup (see ``modelhub.llm.init``)
and passed to whatever needs it; there is no global instance.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from modelhub.events import Observable, Subscription
from modelhub.llm.errors import AuthenticationRequired
from modelhub.llm.model import LanguageModel
from modelhub.llm.provider import LanguageModelProvider
from modelhub.llm.types import LanguageModelId, LanguageModelProviderId

logger = logging.getLogger(__name__)


class LanguageModelRegistry:
    """Holds the registered providers and the user's active model choice."""

    def __init__(self) -> None:
        self._providers: dict[LanguageModelProviderId, LanguageModelProvider] = {}
        self._active: tuple[LanguageModelProviderId, LanguageModelId] | None = None
        self._changes = Observable()

    # ------------------------------------------------------------------
    # Provider management
    # ------------------------------------------------------------------

    def register_provider(self, provider: LanguageModelProvider) -> None:
        """
        Register *provider* under its id.

        Registering an id twice replaces the earlier provider.
        """
        if provider.id in self._providers:
            logger.warning("Replacing language model provider %r", str(provider.id))
        self._providers[provider.id] = provider
        self._changes.notify()

    def unregister_provider(self, provider_id: str) -> None:
        key = LanguageModelProviderId(provider_id)
        if self._providers.pop(key, None) is not None:
            if self._active is not None and self._active[0] == key:
                self._active = None
            self._changes.notify()

    def provider(self, provider_id: str) -> LanguageModelProvider | None:
        return self._providers.get(LanguageModelProviderId(provider_id))

    def providers(self) -> list[LanguageModelProvider]:
        """All providers, in registration order."""
        return list(self._providers.values())

    @property
    def provider_ids(self) -> list[LanguageModelProviderId]:
        return list(self._providers)

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    def available_models(self) -> list[LanguageModel]:
        """Models from every authenticated provider."""
        models: list[LanguageModel] = []
        for provider in self._providers.values():
            if provider.is_authenticated():
                models.extend(provider.provided_models())
        return models

    def model(self, provider_id: str, model_id: str) -> LanguageModel:
        """
        Look up one model.

        Raises ``KeyError`` for an unknown provider or model and
        ``AuthenticationRequired`` when the provider is not usable.
        """
        provider = self._require_provider(provider_id)
        if not provider.is_authenticated():
            raise AuthenticationRequired(f"Provider {provider.name} is not authenticated")
        model = provider.get_model(model_id)
        if model is None:
            available = [str(m.id) for m in provider.provided_models()]
            raise KeyError(
                f"Unknown model {model_id!r} for provider {provider_id!r}. "
                f"Available: {available}"
            )
        return model

    def select_active_model(self, provider_id: str, model_id: str) -> LanguageModel:
        """Make a model the active one and return it."""
        model = self.model(provider_id, model_id)
        self._active = (model.provider_id, model.id)
        self._changes.notify()
        return model

    @property
    def active_provider(self) -> LanguageModelProvider | None:
        if self._active is None:
            return None
        return self._providers.get(self._active[0])

    @property
    def active_model(self) -> LanguageModel | None:
        """
        The active model, looked up afresh from its provider's current
        models.  ``None`` when nothing is selected or the model is gone.
        """
        provider = self.active_provider
        if provider is None or self._active is None:
            return None
        return provider.get_model(self._active[1])

    def subscribe(self, callback: Callable[[], Any]) -> Subscription:
        """Observe provider registration and active-model changes."""
        return self._changes.subscribe(callback)

    def _require_provider(self, provider_id: str) -> LanguageModelProvider:
        provider = self.provider(provider_id)
        if provider is None:
            raise KeyError(
                f"Unknown provider {provider_id!r}. "
                f"Registered: {[str(p) for p in self._providers]}"
            )
        return provider
