"""
The ``LanguageModel`` capability.

A ``LanguageModel`` is one usable model offered by a provider.  Instances are
cheap, immutable after construction, and safe to share between any number of
concurrent callers.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, ClassVar, TypeVar

import jsonschema
from pydantic import BaseModel, ValidationError

from modelhub.llm.errors import SchemaViolation
from modelhub.llm.types import (
    LanguageModelId,
    LanguageModelName,
    LanguageModelProviderId,
    LanguageModelProviderName,
    LanguageModelRequest,
)

logger = logging.getLogger(__name__)


class LanguageModelTool(BaseModel):
    """
    Base class for structured output requested through ``use_tool``.

    Subclasses declare their fields as ordinary pydantic fields and set
    ``tool_name`` / ``tool_description``; the JSON schema sent to the backend
    is generated from the fields.
    """

    tool_name: ClassVar[str] = ""
    tool_description: ClassVar[str] = ""

    @classmethod
    def resolved_name(cls) -> str:
        return cls.tool_name or cls.__name__

    @classmethod
    def json_schema(cls) -> dict[str, Any]:
        return cls.model_json_schema()


ToolT = TypeVar("ToolT", bound=LanguageModelTool)


def validate_tool_output(value: Any, schema: dict[str, Any]) -> Any:
    """Return *value* unchanged, or raise ``SchemaViolation``."""
    try:
        jsonschema.validate(instance=value, schema=schema)
    except jsonschema.ValidationError as exc:
        raise SchemaViolation(f"Tool output does not match schema: {exc.message}") from exc
    return value


class LanguageModel(ABC):
    """
    One model instance.

    Implementations must support:
      - Metadata accessors (ids, names, context window).
      - Token estimation (``count_tokens``).
      - Streaming completion (``stream_completion``).
      - Structured tool output (``use_any_tool``), or raise
        ``UnsupportedOperation`` straight away.
    """

    @property
    @abstractmethod
    def id(self) -> LanguageModelId:
        ...

    @property
    @abstractmethod
    def name(self) -> LanguageModelName:
        ...

    @property
    @abstractmethod
    def provider_id(self) -> LanguageModelProviderId:
        ...

    @property
    @abstractmethod
    def provider_name(self) -> LanguageModelProviderName:
        ...

    @property
    def telemetry_id(self) -> str:
        return f"{self.provider_id}/{self.id}"

    @property
    @abstractmethod
    def max_token_count(self) -> int:
        """Context window size declared by the backend."""
        ...

    @abstractmethod
    async def count_tokens(self, request: LanguageModelRequest) -> int:
        """Estimate how many tokens *request* will consume."""
        ...

    @abstractmethod
    async def stream_completion(
        self,
        request: LanguageModelRequest,
    ) -> AsyncIterator[str]:
        """
        Start a completion and return a stream of text deltas.

        Failures that happen before the backend starts answering are raised
        from this call.  Failures after that are raised while iterating, and
        the stream yields nothing further.
        """
        ...

    @abstractmethod
    async def use_any_tool(
        self,
        request: LanguageModelRequest,
        name: str,
        description: str,
        schema: dict[str, Any],
    ) -> Any:
        """Ask the backend for a single JSON value conforming to *schema*."""
        ...

    async def use_tool(self, request: LanguageModelRequest, tool: type[ToolT]) -> ToolT:
        """Typed wrapper around ``use_any_tool``."""
        value = await self.use_any_tool(
            request,
            tool.resolved_name(),
            tool.tool_description,
            tool.json_schema(),
        )
        try:
            return tool.model_validate(value)
        except ValidationError as exc:
            raise SchemaViolation(
                f"{tool.resolved_name()} output failed validation: {exc}"
            ) from exc

    async def complete(self, request: LanguageModelRequest) -> str:
        """Consume a full completion stream and return the joined text."""
        stream = await self.stream_completion(request)
        parts: list[str] = []
        async for delta in stream:
            parts.append(delta)
        return "".join(parts)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.telemetry_id}>"
