"""
Ollama provider.

Serves the models installed on a local `Ollama <https://ollama.com>`_
instance.  There are no credentials: the provider counts as authenticated
when the server answers and reports at least one chat model.

Dependencies: ``httpx``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable

import httpx
from rich.console import Group, RenderableType
from rich.text import Text

from modelhub.config import ModelhubConfig, SettingsStore
from modelhub.events import Subscription
from modelhub.llm.errors import AuthenticationRequired, UnsupportedOperation
from modelhub.llm.model import LanguageModel
from modelhub.llm.provider import (
    ConfigurationView,
    LanguageModelProvider,
    ProviderState,
    spawn_logged,
)
from modelhub.llm.providers import ollama_api
from modelhub.llm.providers.ollama_api import (
    ChatMessage,
    ChatOptions,
    ChatRequest,
    ChatResponseDelta,
    OllamaModel,
)
from modelhub.llm.rate_limiter import RateLimiter
from modelhub.llm.token_counter import TokenCounter
from modelhub.llm.types import (
    LanguageModelId,
    LanguageModelName,
    LanguageModelProviderId,
    LanguageModelProviderName,
    LanguageModelRequest,
    Role,
)

logger = logging.getLogger(__name__)

PROVIDER_ID = LanguageModelProviderId("ollama")
PROVIDER_NAME = LanguageModelProviderName("Ollama")

OLLAMA_DOWNLOAD_URL = "https://ollama.com/download"
OLLAMA_LIBRARY_URL = "https://ollama.com/library"

_ROLE_TAGS: dict[Role, str] = {
    Role.USER: "user",
    Role.ASSISTANT: "assistant",
    Role.SYSTEM: "system",
}


class OllamaLanguageModelProvider(LanguageModelProvider):
    """
    Provider for a local Ollama server.

    Parameters
    ----------
    http_client:
        Shared async HTTP client used for every request.
    settings:
        Live settings; the ``ollama`` section supplies the server URL,
        keep-alive, low-activity timeout and per-model concurrency.
    coalesce_refresh:
        Whether overlapping model refreshes share one probe.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        settings: SettingsStore,
        *,
        coalesce_refresh: bool = True,
    ) -> None:
        self._http_client = http_client
        self._settings = settings
        self._state: ProviderState[OllamaModel] = ProviderState(
            self._fetch_models,
            sort_key=lambda model: model.name,
            coalesce=coalesce_refresh,
        )
        self._limiters: dict[str, RateLimiter] = {}
        self._settings_subscription = settings.subscribe(self._on_settings_changed)
        self._state.schedule_refresh()

    # ------------------------------------------------------------------
    # Provider interface
    # ------------------------------------------------------------------

    @property
    def id(self) -> LanguageModelProviderId:
        return PROVIDER_ID

    @property
    def name(self) -> LanguageModelProviderName:
        return PROVIDER_NAME

    @property
    def state(self) -> ProviderState[OllamaModel]:
        return self._state

    def provided_models(self) -> list[LanguageModel]:
        return [
            OllamaLanguageModel(
                model=model,
                http_client=self._http_client,
                settings=self._settings,
                state=self._state,
                request_limiter=self._limiter_for(model),
            )
            for model in self._state.snapshot.models
        ]

    def load_model(self, model: LanguageModel) -> asyncio.Task | None:
        return spawn_logged(self._preload(str(model.id)), f"Preloading Ollama model {model.id}")

    def is_authenticated(self) -> bool:
        return self._state.is_authenticated

    async def authenticate(self) -> None:
        if self.is_authenticated():
            return
        snapshot = await self._state.refresh()
        if not snapshot.is_authenticated:
            raise AuthenticationRequired(
                "Ollama is running but has no chat models installed"
            )

    async def reset_credentials(self) -> None:
        self._state.clear()
        await self._state.refresh(restart=True)

    def configuration_view(self) -> OllamaConfigurationView:
        return OllamaConfigurationView(self._state)

    def subscribe(self, callback: Callable[[], Any]) -> Subscription:
        return self._state.subscribe(lambda _snapshot: callback())

    def close(self) -> None:
        """Stop following settings changes."""
        self._settings_subscription.unsubscribe()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _fetch_models(self) -> list[OllamaModel]:
        # Reachability stands in for authentication: list the models.
        settings = self._settings.config.ollama
        listings = await ollama_api.get_models(self._http_client, settings.api_url)
        # Ollama has no metadata marking embedding models, so go by name.
        return [
            OllamaModel.from_name(listing.name, keep_alive=settings.keep_alive)
            for listing in listings
            if "-embed" not in listing.name
        ]

    async def _preload(self, model_id: str) -> None:
        settings = self._settings.config.ollama
        await ollama_api.preload_model(self._http_client, settings.api_url, model_id)
        logger.info("Preloaded Ollama model %s", model_id)

    def _limiter_for(self, model: OllamaModel) -> RateLimiter:
        limiter = self._limiters.get(model.name)
        if limiter is None:
            limit = self._settings.config.ollama.max_concurrent_requests
            limiter = self._limiters[model.name] = RateLimiter(limit)
        return limiter

    def _on_settings_changed(self, old: ModelhubConfig, new: ModelhubConfig) -> None:
        if old.ollama != new.ollama:
            logger.debug("Ollama settings changed; refreshing models")
            self._state.schedule_refresh(restart=True)


class OllamaLanguageModel(LanguageModel):
    """A single installed Ollama model."""

    def __init__(
        self,
        model: OllamaModel,
        http_client: httpx.AsyncClient,
        settings: SettingsStore,
        state: ProviderState[OllamaModel],
        request_limiter: RateLimiter,
    ) -> None:
        self._model = model
        self._id = LanguageModelId(model.id)
        self._http_client = http_client
        self._settings = settings
        self._state = state
        self._request_limiter = request_limiter
        self._counter = TokenCounter()

    @property
    def id(self) -> LanguageModelId:
        return self._id

    @property
    def name(self) -> LanguageModelName:
        return LanguageModelName(self._model.display_name)

    @property
    def provider_id(self) -> LanguageModelProviderId:
        return PROVIDER_ID

    @property
    def provider_name(self) -> LanguageModelProviderName:
        return PROVIDER_NAME

    @property
    def telemetry_id(self) -> str:
        return f"ollama/{self._model.id}"

    @property
    def max_token_count(self) -> int:
        return self._model.max_tokens

    @property
    def request_limiter(self) -> RateLimiter:
        return self._request_limiter

    async def count_tokens(self, request: LanguageModelRequest) -> int:
        # Ollama has no tokenizer endpoint yet.
        # See https://github.com/ollama/ollama/issues/1716
        return self._counter.count_request(request)

    def to_ollama_request(self, request: LanguageModelRequest) -> ChatRequest:
        return ChatRequest(
            model=self._model.name,
            messages=[
                ChatMessage(role=_ROLE_TAGS[msg.role], content=msg.content)
                for msg in request.messages
            ],
            keep_alive=self._model.keep_alive,
            stream=True,
            options=ChatOptions(
                num_ctx=self._model.max_tokens,
                stop=list(request.stop),
                temperature=request.temperature,
            ),
        )

    async def stream_completion(
        self,
        request: LanguageModelRequest,
    ) -> AsyncIterator[str]:
        if not self._state.is_authenticated:
            raise AuthenticationRequired("Ollama is not available; no models were found")

        settings = self._settings.config.ollama
        chat_request = self.to_ollama_request(request)

        async def start() -> AsyncIterator[str]:
            deltas = await ollama_api.stream_chat_completion(
                self._http_client,
                settings.api_url,
                chat_request,
                settings.low_speed_timeout_seconds,
            )
            return _text_deltas(deltas)

        logger.debug("Streaming completion from %s", self.telemetry_id)
        return await self._request_limiter.stream(start)

    async def use_any_tool(
        self,
        request: LanguageModelRequest,
        name: str,
        description: str,
        schema: dict[str, Any],
    ) -> Any:
        raise UnsupportedOperation("Tool use is not implemented for Ollama models")


async def _text_deltas(deltas: AsyncIterator[ChatResponseDelta]) -> AsyncIterator[str]:
    """Flatten role-tagged deltas into their text content."""
    try:
        async for delta in deltas:
            if delta.message.content:
                yield delta.message.content
    finally:
        await deltas.aclose()


class OllamaConfigurationView(ConfigurationView):
    """Status panel for the Ollama provider."""

    def __init__(self, state: ProviderState[OllamaModel]) -> None:
        self._state = state

    def retry_connection(self) -> None:
        self._state.schedule_refresh(restart=True)

    def render(self) -> RenderableType:
        if self._state.is_authenticated:
            count = len(self._state.snapshot.models)
            return Text.assemble(("● ", "green"), f"Ollama configured ({count} models)")

        lines: list[RenderableType] = [
            Text(
                "To use Ollama models, Ollama must be running on your machine "
                "with at least one model downloaded.",
                style="bold",
            ),
            Text.assemble("Get Ollama: ", (OLLAMA_DOWNLOAD_URL, "cyan underline")),
        ]
        if self._state.last_error is not None:
            lines.append(Text(f"Last error: {self._state.last_error}", style="red"))
        lines.append(
            Text.assemble(
                "Once Ollama is installed, download a model or two: ",
                (OLLAMA_LIBRARY_URL, "cyan underline"),
            )
        )
        lines.append(Text("Run `mh providers` to retry the connection.", style="dim"))
        return Group(*lines)
