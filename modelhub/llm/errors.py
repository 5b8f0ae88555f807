"""Error types raised by language models and providers."""

from __future__ import annotations


class LanguageModelError(Exception):
    """
    Structured error from a model or provider operation.

    *code* is a stable machine-readable tag.  *retryable* tells the caller
    whether issuing the same request again may succeed; nothing in this
    package retries on its own.
    """

    code = "language_model_error"
    retryable = False

    def __init__(self, message: str, code: str = "") -> None:
        super().__init__(message)
        if code:
            self.code = code


class AuthenticationRequired(LanguageModelError):
    """No reachable backend, missing credentials, or an empty model set."""

    code = "authentication_required"


class BackendUnreachable(LanguageModelError):
    """The transport failed before or while talking to the backend."""

    code = "backend_unreachable"
    retryable = True


class RequestTimeout(LanguageModelError):
    """No data arrived within the configured low-activity window."""

    code = "timeout"
    retryable = True


class UnsupportedOperation(LanguageModelError):
    """The backend does not implement the requested capability."""

    code = "unsupported_operation"


class SchemaViolation(LanguageModelError):
    """Structured output does not conform to the requested schema."""

    code = "schema_violation"


class InvalidResponse(LanguageModelError):
    """The backend returned a malformed payload or reported an error."""

    code = "invalid_response"


class ApplicationShutdown(LanguageModelError):
    """The host application is shutting down; no new requests are accepted."""

    code = "application_shutdown"
