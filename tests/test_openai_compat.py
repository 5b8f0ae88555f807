"""Tests for the OpenAI-compatible provider (SSE streaming and tool calls)."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from modelhub.config import ModelhubConfig, OpenAISettings, SettingsStore
from modelhub.credentials import InMemoryCredentialStore
from modelhub.llm.errors import (
    AuthenticationRequired,
    InvalidResponse,
    SchemaViolation,
)
from modelhub.llm.model import LanguageModelTool
from modelhub.llm.providers.openai_compat import OpenAICompatLanguageModelProvider
from modelhub.llm.types import LanguageModelRequest, Message

API_URL = "https://llm.example.test/v1"
KEY_ENV = "MODELHUB_TEST_OPENAI_KEY"

LABEL_SCHEMA = {
    "type": "object",
    "properties": {"label": {"type": "string"}},
    "required": ["label"],
}


def _sse(*payloads: dict) -> bytes:
    events = "".join(f"data: {json.dumps(p)}\n\n" for p in payloads)
    return (events + "data: [DONE]\n\n").encode()


def _text(content: str) -> dict:
    return {"choices": [{"index": 0, "delta": {"content": content}, "finish_reason": None}]}


def _tool(name: str = "", arguments: str = "", call_id: str | None = None) -> dict:
    call: dict = {"index": 0, "function": {"name": name, "arguments": arguments}}
    if call_id:
        call["id"] = call_id
    return {"choices": [{"index": 0, "delta": {"tool_calls": [call]}, "finish_reason": None}]}


class Classification(LanguageModelTool):
    tool_name = "classify"
    tool_description = "Classify the user's intent."

    label: str


class GatedCredentialStore(InMemoryCredentialStore):
    """Holds every ``read`` until ``release`` is called."""

    def __init__(self, initial: dict[str, str]) -> None:
        super().__init__(initial)
        self.reading = asyncio.Event()
        self.read_done = asyncio.Event()
        self._gate = asyncio.Event()

    def release(self) -> None:
        self._gate.set()

    async def read(self, url: str) -> str | None:
        self.reading.set()
        await self._gate.wait()
        value = await super().read(url)
        self.read_done.set()
        return value


class FakeOpenAI:
    def __init__(self) -> None:
        self.body: bytes = _sse(_text("Hi"), _text(" there"))
        self.status = 200
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        assert request.url.path == "/v1/chat/completions"
        if self.status != 200:
            return httpx.Response(self.status, json={"error": {"message": "bad key"}})
        return httpx.Response(
            200, content=self.body, headers={"content-type": "text/event-stream"}
        )

    def last_body(self) -> dict:
        return json.loads(self.requests[-1].content)


@pytest.fixture(autouse=True)
def no_env_key(monkeypatch):
    monkeypatch.delenv(KEY_ENV, raising=False)


@pytest.fixture
def backend():
    return FakeOpenAI()


@pytest.fixture
async def client(backend):
    async with httpx.AsyncClient(transport=httpx.MockTransport(backend.handler)) as c:
        yield c


@pytest.fixture
def settings():
    return SettingsStore(ModelhubConfig(openai=OpenAISettings(
        api_url=API_URL,
        api_key_env=KEY_ENV,
        available_models=[
            {"name": "zeta-chat", "max_tokens": 8192},
            {"name": "alpha-chat", "max_tokens": 4096, "display_name": "Alpha"},
        ],
    )))


@pytest.fixture
def credentials():
    return InMemoryCredentialStore({API_URL: "sk-stored"})


@pytest.fixture
async def provider(client, settings, credentials):
    p = OpenAICompatLanguageModelProvider(client, settings, credentials)
    yield p
    p.close()


@pytest.fixture
async def model(provider):
    await provider.authenticate()
    return provider.get_model("alpha-chat")


def _request(text: str = "Hello", **kwargs) -> LanguageModelRequest:
    return LanguageModelRequest(messages=[Message.user(text)], **kwargs)


class TestAuthentication:

    @pytest.mark.asyncio
    async def test_key_from_credential_store(self, provider):
        await provider.authenticate()
        assert provider.is_authenticated()
        assert not provider.api_key_from_env
        assert [m.id for m in provider.provided_models()] == ["alpha-chat", "zeta-chat"]

    @pytest.mark.asyncio
    async def test_key_from_environment(self, monkeypatch, client, settings):
        monkeypatch.setenv(KEY_ENV, "sk-env")
        provider = OpenAICompatLanguageModelProvider(
            client, settings, InMemoryCredentialStore()
        )
        await provider.authenticate()
        assert provider.is_authenticated()
        assert provider.api_key_from_env
        provider.close()

    @pytest.mark.asyncio
    async def test_no_key(self, client, settings):
        provider = OpenAICompatLanguageModelProvider(
            client, settings, InMemoryCredentialStore()
        )
        with pytest.raises(AuthenticationRequired, match=KEY_ENV):
            await provider.authenticate()
        assert not provider.is_authenticated()
        assert provider.provided_models() == []
        provider.close()

    @pytest.mark.asyncio
    async def test_save_api_key(self, client, settings):
        store = InMemoryCredentialStore()
        provider = OpenAICompatLanguageModelProvider(client, settings, store)
        with pytest.raises(AuthenticationRequired):
            await provider.authenticate()

        await provider.save_api_key("sk-new")
        assert provider.is_authenticated()
        assert await store.read(API_URL) == "sk-new"
        provider.close()

    @pytest.mark.asyncio
    async def test_reset_credentials(self, provider, credentials):
        await provider.authenticate()
        await provider.reset_credentials()

        assert not provider.is_authenticated()
        assert provider.provided_models() == []
        assert await credentials.read(API_URL) is None

    @pytest.mark.asyncio
    async def test_reset_during_in_flight_refresh_sticks(self, client, settings):
        store = GatedCredentialStore({API_URL: "sk-old"})
        provider = OpenAICompatLanguageModelProvider(client, settings, store)
        await asyncio.wait_for(store.reading.wait(), timeout=1)

        await provider.reset_credentials()
        store.release()
        await asyncio.wait_for(store.read_done.wait(), timeout=1)
        await asyncio.sleep(0)

        assert not provider.is_authenticated()
        assert provider.provided_models() == []
        assert await store.read(API_URL) is None
        provider.close()

    @pytest.mark.asyncio
    async def test_retry_connection_picks_up_new_key(self, client, settings):
        store = InMemoryCredentialStore()
        provider = OpenAICompatLanguageModelProvider(client, settings, store)
        with pytest.raises(AuthenticationRequired):
            await provider.authenticate()

        await store.write(API_URL, "sk-later")
        changed = asyncio.Event()
        provider.subscribe(changed.set)
        provider.configuration_view().retry_connection()
        await asyncio.wait_for(changed.wait(), timeout=1)

        assert provider.is_authenticated()
        provider.close()

    @pytest.mark.asyncio
    async def test_model_metadata(self, model):
        assert model.name == "Alpha"
        assert model.provider_id == "openai"
        assert model.max_token_count == 4096
        assert model.telemetry_id == "openai/alpha-chat"


class TestStreaming:

    @pytest.mark.asyncio
    async def test_text_deltas(self, model):
        stream = await model.stream_completion(_request())
        assert [d async for d in stream] == ["Hi", " there"]

    @pytest.mark.asyncio
    async def test_request_body_and_headers(self, backend, model):
        await model.complete(_request(temperature=0.3))
        request = backend.requests[-1]
        assert request.headers["authorization"] == "Bearer sk-stored"
        assert backend.last_body() == {
            "model": "alpha-chat",
            "messages": [{"role": "user", "content": "Hello"}],
            "stream": True,
            "temperature": 0.3,
        }

    @pytest.mark.asyncio
    async def test_stop_sequences_sent_when_present(self, backend, model):
        await model.complete(_request(stop=["END"]))
        assert backend.last_body()["stop"] == ["END"]

    @pytest.mark.asyncio
    async def test_error_payload_ends_stream(self, backend, model):
        backend.body = _sse(_text("Hi"), {"error": {"message": "overloaded"}})

        stream = await model.stream_completion(_request())
        assert await stream.__anext__() == "Hi"
        with pytest.raises(InvalidResponse, match="overloaded"):
            await stream.__anext__()
        with pytest.raises(StopAsyncIteration):
            await stream.__anext__()

    @pytest.mark.asyncio
    async def test_rejected_key(self, backend, provider, model):
        backend.status = 401
        with pytest.raises(AuthenticationRequired) as info:
            await model.stream_completion(_request())
        assert info.value.code == "http_401"
        # A failed completion never changes provider state.
        assert provider.is_authenticated()

    @pytest.mark.asyncio
    async def test_missing_key_fails_without_io(self, backend, provider, model):
        await provider.reset_credentials()
        with pytest.raises(AuthenticationRequired):
            await model.stream_completion(_request())
        assert backend.requests == []


class TestToolUse:

    @pytest.mark.asyncio
    async def test_forced_tool_call(self, backend, model):
        backend.body = _sse(
            _tool(name="classify", arguments='{"label": ', call_id="call_1"),
            _tool(arguments='"greeting"}'),
        )

        result = await model.use_any_tool(_request(), "classify", "Classify.", LABEL_SCHEMA)

        assert result == {"label": "greeting"}
        body = backend.last_body()
        assert body["tools"][0]["function"]["name"] == "classify"
        assert body["tools"][0]["function"]["parameters"] == LABEL_SCHEMA
        assert body["tool_choice"] == {"type": "function", "function": {"name": "classify"}}
        assert model.request_limiter.in_flight == 0

    @pytest.mark.asyncio
    async def test_typed_tool(self, backend, model):
        backend.body = _sse(_tool(name="classify", arguments='{"label": "question"}'))
        result = await model.use_tool(_request(), Classification)
        assert isinstance(result, Classification)
        assert result.label == "question"

    @pytest.mark.asyncio
    async def test_output_violating_schema(self, backend, model):
        backend.body = _sse(_tool(name="classify", arguments='{"label": 7}'))
        with pytest.raises(SchemaViolation):
            await model.use_any_tool(_request(), "classify", "Classify.", LABEL_SCHEMA)

    @pytest.mark.asyncio
    async def test_unparseable_arguments(self, backend, model):
        backend.body = _sse(_tool(name="classify", arguments='{"label": '))
        with pytest.raises(SchemaViolation):
            await model.use_any_tool(_request(), "classify", "Classify.", LABEL_SCHEMA)

    @pytest.mark.asyncio
    async def test_model_answers_in_text(self, model):
        with pytest.raises(InvalidResponse, match="classify"):
            await model.use_any_tool(_request(), "classify", "Classify.", LABEL_SCHEMA)
