"""
Wire client for the Ollama HTTP API.

Covers the three endpoints the Ollama provider needs:

* ``GET  /api/tags``      -- list locally installed models.
* ``POST /api/generate``  -- preload a model into memory.
* ``POST /api/chat``      -- streamed chat completion, one JSON object per line.

Transport errors are translated into ``modelhub.llm.errors`` types here so
callers never see raw ``httpx`` exceptions.

Dependencies: ``httpx``.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import AsyncIterator

import httpx

from modelhub.llm.errors import InvalidResponse
from modelhub.llm.providers.http import (
    check_status,
    open_stream,
    request_timeout,
    translate_errors,
)

BACKEND = "Ollama"

_PRELOAD_KEEP_ALIVE = "15m"
_MAXIMUM_TOKENS = 16384
_DEFAULT_TOKENS = 2048

# Context windows by model family (the part of the tag before ``:``).
_FAMILY_TOKENS: dict[str, int] = {
    "phi": 2048,
    "tinyllama": 2048,
    "granite-code": 2048,
    "llama2": 4096,
    "yi": 4096,
    "vicuna": 4096,
    "stablelm2": 4096,
    "llama3": 8192,
    "gemma2": 8192,
    "gemma": 8192,
    "codegemma": 8192,
    "starcoder": 8192,
    "aya": 8192,
    "codellama": 16384,
    "starcoder2": 16384,
    "mistral": 32768,
    "codestral": 32768,
    "mixtral": 32768,
    "llava": 32768,
    "qwen2": 32768,
    "dolphin-mixtral": 32768,
    "llama3.1": 128000,
    "phi3": 128000,
    "phi3.5": 128000,
    "command-r": 128000,
    "deepseek-coder-v2": 128000,
}


def max_tokens_for(name: str) -> int:
    family = name.split(":", 1)[0]
    tokens = _FAMILY_TOKENS.get(family, _DEFAULT_TOKENS)
    return max(1, min(tokens, _MAXIMUM_TOKENS))


# ---------------------------------------------------------------------------
# Wire types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OllamaModel:
    """A locally installed model as the provider tracks it."""

    name: str
    max_tokens: int
    keep_alive: int | str | None = None

    @classmethod
    def from_name(cls, name: str, keep_alive: int | str | None = None) -> OllamaModel:
        return cls(name=name, max_tokens=max_tokens_for(name), keep_alive=keep_alive)

    @property
    def id(self) -> str:
        return self.name

    @property
    def display_name(self) -> str:
        # "llama3:latest" and "llama3" are the same model.
        return self.name.removesuffix(":latest")


@dataclass
class ChatMessage:
    role: str
    content: str


@dataclass
class ChatOptions:
    num_ctx: int | None = None
    num_predict: int | None = None
    stop: list[str] | None = None
    temperature: float | None = None
    top_p: float | None = None


@dataclass
class ChatRequest:
    model: str
    messages: list[ChatMessage]
    # An int is seconds; a string must be a duration such as "5m".
    keep_alive: int | str | None
    stream: bool = True
    options: ChatOptions | None = field(default=None)

    def to_dict(self) -> dict:
        body = asdict(self)
        if self.keep_alive is None:
            body.pop("keep_alive")
        if self.options is None:
            body.pop("options")
        else:
            body["options"] = {k: v for k, v in body["options"].items() if v is not None}
        return body


@dataclass
class ChatResponseDelta:
    model: str
    message: ChatMessage
    done: bool = False
    created_at: str = ""
    done_reason: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> ChatResponseDelta:
        message = data.get("message")
        if not isinstance(message, dict) or "role" not in message:
            raise InvalidResponse(f"Ollama delta has no message: {str(data)[:200]}")
        return cls(
            model=data.get("model", ""),
            message=ChatMessage(role=message["role"], content=message.get("content") or ""),
            done=bool(data.get("done", False)),
            created_at=data.get("created_at", ""),
            done_reason=data.get("done_reason"),
        )


@dataclass
class LocalModelListing:
    name: str
    modified_at: str = ""
    size: int = 0
    digest: str = ""
    details: dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

async def get_models(client: httpx.AsyncClient, api_url: str) -> list[LocalModelListing]:
    """Return every model installed on the Ollama server."""
    url = f"{api_url.rstrip('/')}/api/tags"
    with translate_errors(BACKEND, "list models"):
        response = await client.get(url)
    check_status(BACKEND, response, response.text)

    try:
        data = response.json()
        return [
            LocalModelListing(
                name=m["name"],
                modified_at=m.get("modified_at", ""),
                size=m.get("size", 0),
                digest=m.get("digest", ""),
                details=m.get("details") or {},
            )
            for m in data.get("models", [])
        ]
    except (ValueError, KeyError, TypeError, AttributeError) as exc:
        raise InvalidResponse(f"Unexpected model list from Ollama: {exc}") from exc


async def preload_model(client: httpx.AsyncClient, api_url: str, model: str) -> None:
    """Ask Ollama to load *model* into memory ahead of the first request."""
    url = f"{api_url.rstrip('/')}/api/generate"
    body = {"model": model, "keep_alive": _PRELOAD_KEEP_ALIVE}
    with translate_errors(BACKEND, f"preload {model}"):
        response = await client.post(url, json=body)
    check_status(BACKEND, response, response.text)


async def stream_chat_completion(
    client: httpx.AsyncClient,
    api_url: str,
    request: ChatRequest,
    low_speed_timeout: float | None = None,
) -> AsyncIterator[ChatResponseDelta]:
    """
    Start a streamed chat completion.

    Connection failures and error statuses are raised here, before any delta
    is produced.  The returned iterator owns the HTTP response and closes it
    when exhausted, when it raises, or when ``aclose`` is called.
    """
    url = f"{api_url.rstrip('/')}/api/chat"
    http_request = client.build_request(
        "POST", url, json=request.to_dict(), **request_timeout(low_speed_timeout)
    )
    response = await open_stream(client, BACKEND, http_request)
    return _iter_deltas(response)


async def _iter_deltas(response: httpx.Response) -> AsyncIterator[ChatResponseDelta]:
    try:
        with translate_errors(BACKEND, "chat stream"):
            async for line in response.aiter_lines():
                line = line.strip()
                if not line:
                    continue

                try:
                    data = json.loads(line)
                except json.JSONDecodeError as exc:
                    raise InvalidResponse(
                        f"Ollama sent a malformed line: {line[:200]}"
                    ) from exc

                if isinstance(data, dict) and "error" in data:
                    raise InvalidResponse(str(data["error"]), code="backend_error")
                if not isinstance(data, dict):
                    raise InvalidResponse(f"Ollama sent a non-object line: {line[:200]}")

                delta = ChatResponseDelta.from_dict(data)
                yield delta
                if delta.done:
                    return
    finally:
        await response.aclose()

