"""
Wire client for OpenAI-compatible ``/chat/completions`` endpoints.

Works with any endpoint that speaks the OpenAI streaming protocol -- OpenAI
itself, Azure OpenAI, vLLM, LM Studio, LocalAI, etc.  Responses arrive as
Server-Sent Events::

    data: {json}\\n\\n

and the sentinel ``data: [DONE]`` terminates the stream.

Dependencies: ``httpx``.  No ``openai`` SDK needed.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator

import httpx

from modelhub.llm.errors import InvalidResponse
from modelhub.llm.providers.http import open_stream, request_timeout, translate_errors
from modelhub.llm.tool_call_assembler import RawToolDelta

logger = logging.getLogger(__name__)

BACKEND = "OpenAI"


@dataclass
class CompletionDelta:
    """One parsed SSE ``data`` payload."""

    content: str = ""
    tool_deltas: list[RawToolDelta] = field(default_factory=list)
    finish_reason: str | None = None


def build_headers(api_key: str) -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "Accept": "text/event-stream",
    }
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


async def stream_chat_completion(
    client: httpx.AsyncClient,
    api_url: str,
    api_key: str,
    body: dict,
    low_speed_timeout: float | None = None,
) -> AsyncIterator[CompletionDelta]:
    """
    Start a streamed chat completion.

    Connection failures and error statuses are raised here.  The returned
    iterator owns the HTTP response and closes it when it terminates.
    """
    url = f"{api_url.rstrip('/')}/chat/completions"
    http_request = client.build_request(
        "POST",
        url,
        json=body,
        headers=build_headers(api_key),
        **request_timeout(low_speed_timeout),
    )
    logger.debug(
        "REQUEST: model=%s tools=%d messages=%d",
        body.get("model"),
        len(body.get("tools") or []),
        len(body.get("messages") or []),
    )
    response = await open_stream(client, BACKEND, http_request)
    return _parse_sse_stream(response)


async def _parse_sse_stream(response: httpx.Response) -> AsyncIterator[CompletionDelta]:
    try:
        with translate_errors(BACKEND, "chat stream"):
            async for line in response.aiter_lines():
                line = line.rstrip("\r")
                if not line.startswith("data:"):
                    # Blank event boundaries, comments and other fields.
                    continue

                data_str = line[len("data:"):].strip()
                if data_str == "[DONE]":
                    return

                try:
                    data = json.loads(data_str)
                except json.JSONDecodeError as exc:
                    raise InvalidResponse(
                        f"Failed to parse SSE data: {data_str[:200]}"
                    ) from exc

                delta = parse_sse_data(data)
                if delta is not None:
                    yield delta
    finally:
        await response.aclose()


def parse_sse_data(data: dict) -> CompletionDelta | None:
    """Convert a parsed SSE ``data`` payload into a ``CompletionDelta``."""
    if not isinstance(data, dict):
        raise InvalidResponse(f"Unexpected SSE payload: {str(data)[:200]}")
    if "error" in data:
        error = data["error"]
        message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
        raise InvalidResponse(message, code="backend_error")

    choices = data.get("choices")
    if not choices:
        return None

    choice = choices[0]
    delta = choice.get("delta") or {}

    tool_deltas: list[RawToolDelta] = []
    for raw_tc in delta.get("tool_calls") or []:
        func = raw_tc.get("function") or {}
        tool_deltas.append(
            RawToolDelta(
                call_index=raw_tc.get("index", 0),
                id=raw_tc.get("id"),
                name_delta=func.get("name") or "",
                args_delta=func.get("arguments") or "",
            )
        )

    return CompletionDelta(
        content=delta.get("content") or "",
        tool_deltas=tool_deltas,
        finish_reason=choice.get("finish_reason"),
    )
