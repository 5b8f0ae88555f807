"""
OpenAI-compatible provider.

Serves the models listed in the ``openai`` settings section from any
endpoint speaking the OpenAI ``/chat/completions`` protocol.  The provider
is authenticated when an API key is available, either from the credential
store or from the environment variable named in the settings.

Unlike Ollama, these models support ``use_any_tool``: the request forces a
call to a single function whose parameters are the caller's schema, and the
streamed call is assembled and validated.

Dependencies: ``httpx``, ``jsonschema``, ``tiktoken``.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable

import httpx
from rich.console import Group, RenderableType
from rich.text import Text

from modelhub.config import ModelhubConfig, SettingsStore
from modelhub.credentials import CredentialStore
from modelhub.events import Subscription
from modelhub.llm.errors import AuthenticationRequired, InvalidResponse, SchemaViolation
from modelhub.llm.model import LanguageModel, validate_tool_output
from modelhub.llm.provider import ConfigurationView, LanguageModelProvider, ProviderState
from modelhub.llm.providers import openai_api
from modelhub.llm.providers.openai_api import CompletionDelta
from modelhub.llm.rate_limiter import RateLimiter
from modelhub.llm.token_counter import TokenCounter
from modelhub.llm.tool_call_assembler import ToolCall, ToolCallAssembler
from modelhub.llm.types import (
    LanguageModelId,
    LanguageModelName,
    LanguageModelProviderId,
    LanguageModelProviderName,
    LanguageModelRequest,
    Role,
)

logger = logging.getLogger(__name__)

PROVIDER_ID = LanguageModelProviderId("openai")
PROVIDER_NAME = LanguageModelProviderName("OpenAI")

_DEFAULT_MAX_TOKENS = 128_000

_ROLE_TAGS: dict[Role, str] = {
    Role.USER: "user",
    Role.ASSISTANT: "assistant",
    Role.SYSTEM: "system",
}


@dataclass(frozen=True)
class ApiKey:
    value: str = field(repr=False)
    from_env: bool = False


@dataclass(frozen=True)
class OpenAIModel:
    name: str
    max_tokens: int = _DEFAULT_MAX_TOKENS
    display_name: str | None = None
    # The key the probe resolved; it is committed together with the snapshot.
    api_key: ApiKey | None = field(default=None, repr=False, compare=False)

    @classmethod
    def from_settings(cls, raw: dict, api_key: ApiKey | None = None) -> OpenAIModel:
        return cls(
            name=raw["name"],
            max_tokens=int(raw.get("max_tokens", _DEFAULT_MAX_TOKENS)),
            display_name=raw.get("display_name"),
            api_key=api_key,
        )


class OpenAICompatLanguageModelProvider(LanguageModelProvider):
    """
    Provider for a hosted OpenAI-compatible API.

    Parameters
    ----------
    http_client:
        Shared async HTTP client used for every request.
    settings:
        Live settings; the ``openai`` section supplies the URL, key variable,
        model list, timeout and per-model concurrency.
    credentials:
        Where API keys are stored, keyed by API URL.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        settings: SettingsStore,
        credentials: CredentialStore,
        *,
        coalesce_refresh: bool = True,
    ) -> None:
        self._http_client = http_client
        self._settings = settings
        self._credentials = credentials
        self._state: ProviderState[OpenAIModel] = ProviderState(
            self._resolve_models,
            sort_key=lambda model: model.name,
            coalesce=coalesce_refresh,
        )
        self._limiters: dict[str, RateLimiter] = {}
        self._settings_subscription = settings.subscribe(self._on_settings_changed)
        self._state.schedule_refresh()

    @property
    def id(self) -> LanguageModelProviderId:
        return PROVIDER_ID

    @property
    def name(self) -> LanguageModelProviderName:
        return PROVIDER_NAME

    @property
    def state(self) -> ProviderState[OpenAIModel]:
        return self._state

    @property
    def api_key_from_env(self) -> bool:
        key = self._current_key()
        return key is not None and key.from_env

    @property
    def settings(self) -> SettingsStore:
        return self._settings

    def provided_models(self) -> list[LanguageModel]:
        return [
            OpenAICompatLanguageModel(
                model=model,
                http_client=self._http_client,
                settings=self._settings,
                api_key=self._current_api_key,
                request_limiter=self._limiter_for(model),
            )
            for model in self._state.snapshot.models
        ]

    def is_authenticated(self) -> bool:
        return self._current_key() is not None

    async def authenticate(self) -> None:
        if self.is_authenticated():
            return
        await self._state.refresh()

    async def save_api_key(self, api_key: str) -> None:
        """Store *api_key* for the configured URL and re-authenticate."""
        await self._credentials.write(self._settings.config.openai.api_url, api_key)
        await self._state.refresh(restart=True)

    async def reset_credentials(self) -> None:
        await self._credentials.delete(self._settings.config.openai.api_url)
        # Also discards a probe that read the key before it was deleted.
        self._state.clear()

    def configuration_view(self) -> OpenAIConfigurationView:
        return OpenAIConfigurationView(self)

    def subscribe(self, callback: Callable[[], Any]) -> Subscription:
        return self._state.subscribe(lambda _snapshot: callback())

    def close(self) -> None:
        self._settings_subscription.unsubscribe()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _current_key(self) -> ApiKey | None:
        models = self._state.snapshot.models
        return models[0].api_key if models else None

    def _current_api_key(self) -> str | None:
        key = self._current_key()
        return key.value if key is not None else None

    async def _resolve_models(self) -> list[OpenAIModel]:
        settings = self._settings.config.openai
        api_key = await self._credentials.read(settings.api_url)
        from_env = False
        if not api_key:
            api_key = os.environ.get(settings.api_key_env) or None
            from_env = api_key is not None
        if api_key is None:
            raise AuthenticationRequired(
                f"No API key for {settings.api_url}; set {settings.api_key_env}"
            )
        key = ApiKey(api_key, from_env=from_env)
        return [OpenAIModel.from_settings(raw, key) for raw in settings.available_models]

    def _limiter_for(self, model: OpenAIModel) -> RateLimiter:
        limiter = self._limiters.get(model.name)
        if limiter is None:
            limit = self._settings.config.openai.max_concurrent_requests
            limiter = self._limiters[model.name] = RateLimiter(limit)
        return limiter

    def _on_settings_changed(self, old: ModelhubConfig, new: ModelhubConfig) -> None:
        if old.openai != new.openai:
            logger.debug("OpenAI settings changed; refreshing models")
            self._state.schedule_refresh(restart=True)


class OpenAICompatLanguageModel(LanguageModel):
    """A model served by an OpenAI-compatible API."""

    def __init__(
        self,
        model: OpenAIModel,
        http_client: httpx.AsyncClient,
        settings: SettingsStore,
        api_key: Callable[[], str | None],
        request_limiter: RateLimiter,
    ) -> None:
        self._model = model
        self._http_client = http_client
        self._settings = settings
        self._api_key = api_key
        self._request_limiter = request_limiter
        self._counter = TokenCounter(model.name)

    @property
    def id(self) -> LanguageModelId:
        return LanguageModelId(self._model.name)

    @property
    def name(self) -> LanguageModelName:
        return LanguageModelName(self._model.display_name or self._model.name)

    @property
    def provider_id(self) -> LanguageModelProviderId:
        return PROVIDER_ID

    @property
    def provider_name(self) -> LanguageModelProviderName:
        return PROVIDER_NAME

    @property
    def max_token_count(self) -> int:
        return self._model.max_tokens

    @property
    def request_limiter(self) -> RateLimiter:
        return self._request_limiter

    async def count_tokens(self, request: LanguageModelRequest) -> int:
        # Loading a BPE table may hit the disk or network.
        return await asyncio.to_thread(self._counter.count_request, request)

    def build_body(self, request: LanguageModelRequest) -> dict:
        body: dict = {
            "model": self._model.name,
            "messages": [
                {"role": _ROLE_TAGS[msg.role], "content": msg.content}
                for msg in request.messages
            ],
            "stream": True,
            "temperature": request.temperature,
        }
        if request.stop:
            body["stop"] = list(request.stop)
        return body

    async def stream_completion(
        self,
        request: LanguageModelRequest,
    ) -> AsyncIterator[str]:
        api_key = self._require_api_key()
        settings = self._settings.config.openai
        body = self.build_body(request)

        async def start() -> AsyncIterator[str]:
            deltas = await openai_api.stream_chat_completion(
                self._http_client,
                settings.api_url,
                api_key,
                body,
                settings.low_speed_timeout_seconds,
            )
            return _text_deltas(deltas)

        return await self._request_limiter.stream(start)

    async def use_any_tool(
        self,
        request: LanguageModelRequest,
        name: str,
        description: str,
        schema: dict[str, Any],
    ) -> Any:
        api_key = self._require_api_key()
        settings = self._settings.config.openai
        body = self.build_body(request)
        body["tools"] = [
            {
                "type": "function",
                "function": {
                    "name": name,
                    "description": description,
                    "parameters": schema,
                },
            }
        ]
        body["tool_choice"] = {"type": "function", "function": {"name": name}}

        async def call() -> list[ToolCall]:
            deltas = await openai_api.stream_chat_completion(
                self._http_client,
                settings.api_url,
                api_key,
                body,
                settings.low_speed_timeout_seconds,
            )
            return await _assemble_tool_calls(deltas)

        calls = await self._request_limiter.run(call)
        for tool_call in calls:
            if tool_call.name == name:
                return validate_tool_output(tool_call.arguments, schema)
        raise InvalidResponse(f"Model did not call the {name!r} tool")

    def _require_api_key(self) -> str:
        api_key = self._api_key()
        if api_key is None:
            raise AuthenticationRequired("No OpenAI API key is configured")
        return api_key


async def _text_deltas(deltas: AsyncIterator[CompletionDelta]) -> AsyncIterator[str]:
    try:
        async for delta in deltas:
            if delta.content:
                yield delta.content
    finally:
        await deltas.aclose()


async def _assemble_tool_calls(deltas: AsyncIterator[CompletionDelta]) -> list[ToolCall]:
    assembler = ToolCallAssembler()
    calls: list[ToolCall] = []
    try:
        async for delta in deltas:
            for tool_delta in delta.tool_deltas:
                calls.extend(assembler.feed(tool_delta))
    finally:
        await deltas.aclose()
    calls.extend(assembler.flush())

    if assembler.errors:
        logger.warning("Tool-call assembly errors: %s", assembler.errors)
        raise SchemaViolation(
            f"Tool call arguments were not valid JSON: {assembler.errors[0]}"
        )
    return calls


class OpenAIConfigurationView(ConfigurationView):
    def __init__(self, provider: OpenAICompatLanguageModelProvider) -> None:
        self._provider = provider

    def retry_connection(self) -> None:
        self._provider.state.schedule_refresh(restart=True)

    def render(self) -> RenderableType:
        settings = self._provider.settings.config.openai
        if self._provider.is_authenticated():
            source = (
                f"from ${settings.api_key_env}"
                if self._provider.api_key_from_env
                else "from the credential store"
            )
            return Text.assemble(("● ", "green"), f"API key configured {source}")
        return Group(
            Text(f"To use {settings.api_url}, an API key is required.", style="bold"),
            Text(f"Set the {settings.api_key_env} environment variable and restart."),
        )
