"""Core value types shared by every model and provider."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class _Identifier(str):
    """An immutable string newtype, compared and ordered by value."""

    __slots__ = ()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str.__repr__(self)})"


class LanguageModelId(_Identifier):
    __slots__ = ()


class LanguageModelName(_Identifier):
    __slots__ = ()


class LanguageModelProviderId(_Identifier):
    __slots__ = ()


class LanguageModelProviderName(_Identifier):
    __slots__ = ()


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class Message:
    """A single message in a conversation."""

    role: Role
    content: str

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(Role.USER, content)

    @classmethod
    def assistant(cls, content: str) -> Message:
        return cls(Role.ASSISTANT, content)

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(Role.SYSTEM, content)


@dataclass
class LanguageModelRequest:
    """
    A backend-independent completion request.

    *messages* are sent in order.  *stop* holds the stop sequences and
    *temperature* the sampling temperature passed through to the backend.
    """

    messages: list[Message] = field(default_factory=list)
    stop: list[str] = field(default_factory=list)
    temperature: float = 1.0

    def total_characters(self) -> int:
        return sum(len(msg.content) for msg in self.messages)
