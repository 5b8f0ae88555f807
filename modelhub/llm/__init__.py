"""LLM subsystem -- model and provider contracts, registry, and backends."""

from __future__ import annotations

from typing import TYPE_CHECKING

from modelhub.llm.errors import (
    ApplicationShutdown,
    AuthenticationRequired,
    BackendUnreachable,
    InvalidResponse,
    LanguageModelError,
    RequestTimeout,
    SchemaViolation,
    UnsupportedOperation,
)
from modelhub.llm.model import LanguageModel, LanguageModelTool
from modelhub.llm.provider import LanguageModelProvider, ProviderSnapshot, ProviderState
from modelhub.llm.rate_limiter import LimitedStream, RateLimiter
from modelhub.llm.registry import LanguageModelRegistry
from modelhub.llm.types import (
    LanguageModelId,
    LanguageModelName,
    LanguageModelProviderId,
    LanguageModelProviderName,
    LanguageModelRequest,
    Message,
    Role,
)

if TYPE_CHECKING:
    import httpx

    from modelhub.config import SettingsStore
    from modelhub.credentials import CredentialStore


def init(
    settings: SettingsStore,
    http_client: httpx.AsyncClient,
    credentials: CredentialStore,
) -> LanguageModelRegistry:
    """
    Build a registry holding the built-in providers.

    Call from inside a running event loop so the providers can start their
    initial model refresh.
    """
    from modelhub.llm.providers.ollama import OllamaLanguageModelProvider
    from modelhub.llm.providers.openai_compat import OpenAICompatLanguageModelProvider

    registry = LanguageModelRegistry()
    registry.register_provider(OllamaLanguageModelProvider(http_client, settings))
    registry.register_provider(
        OpenAICompatLanguageModelProvider(http_client, settings, credentials)
    )
    return registry


__all__ = [
    "ApplicationShutdown",
    "AuthenticationRequired",
    "BackendUnreachable",
    "InvalidResponse",
    "LanguageModel",
    "LanguageModelError",
    "LanguageModelId",
    "LanguageModelName",
    "LanguageModelProvider",
    "LanguageModelProviderId",
    "LanguageModelProviderName",
    "LanguageModelRegistry",
    "LanguageModelRequest",
    "LanguageModelTool",
    "LimitedStream",
    "Message",
    "ProviderSnapshot",
    "ProviderState",
    "RateLimiter",
    "RequestTimeout",
    "Role",
    "SchemaViolation",
    "UnsupportedOperation",
    "init",
]
