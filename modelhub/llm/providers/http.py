"""Shared ``httpx`` plumbing for the HTTP-based providers."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator

import httpx

from modelhub.llm.errors import (
    AuthenticationRequired,
    BackendUnreachable,
    InvalidResponse,
    RequestTimeout,
)

CONNECT_TIMEOUT = 10.0


def request_timeout(low_speed_timeout: float | None) -> dict[str, Any]:
    """
    Keyword arguments applying a low-activity timeout to one request.

    The read timeout bounds the gap between received chunks, so a stream
    that stalls for longer than *low_speed_timeout* seconds is aborted.
    Returns no arguments (the client default) when the timeout is unset.
    """
    if low_speed_timeout is None:
        return {}
    return {"timeout": httpx.Timeout(CONNECT_TIMEOUT, read=low_speed_timeout)}


@contextmanager
def translate_errors(backend: str, action: str) -> Iterator[None]:
    """Map ``httpx`` exceptions onto ``modelhub.llm.errors`` types."""
    try:
        yield
    except httpx.TimeoutException as exc:
        raise RequestTimeout(f"{backend} {action} timed out: {exc}") from exc
    except httpx.TransportError as exc:
        raise BackendUnreachable(
            f"Failed to connect to {backend} API ({action}): {exc}"
        ) from exc


def check_status(backend: str, response: httpx.Response, body: str) -> None:
    """Raise for a non-2xx *response*; server errors are retryable."""
    if response.is_success:
        return
    message = f"Failed to connect to {backend} API: {response.status_code} {body[:500]}"
    code = f"http_{response.status_code}"
    if response.status_code >= 500 or response.status_code == 429:
        raise BackendUnreachable(message, code=code)
    if response.status_code in (401, 403):
        raise AuthenticationRequired(message, code=code)
    raise InvalidResponse(message, code=code)


async def open_stream(
    client: httpx.AsyncClient,
    backend: str,
    request: httpx.Request,
) -> httpx.Response:
    """
    Send *request* and return the streaming response.

    Connection failures and error statuses raise here, and the response is
    closed before raising.
    """
    with translate_errors(backend, "request"):
        response = await client.send(request, stream=True)

    if not response.is_success:
        try:
            with translate_errors(backend, "request"):
                body = (await response.aread()).decode("utf-8", errors="replace")
        finally:
            await response.aclose()
        check_status(backend, response, body)
    return response
