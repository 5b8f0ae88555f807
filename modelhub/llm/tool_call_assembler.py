"""
Assembles streaming tool-call fragments into complete calls.

Fragments are accumulated per ``call_index``.  A call is finalised when a
fragment arrives with ``done=True`` or when ``flush`` is called at the end of
the stream; its argument string is then JSON-parsed.  A call whose arguments
do not parse is dropped and the failure recorded in ``errors``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field


@dataclass
class RawToolDelta:
    """An incremental fragment of a streamed tool call."""

    call_index: int
    id: str | None = None
    name_delta: str = ""
    args_delta: str = ""
    done: bool = False


@dataclass
class ToolCall:
    """A finished tool call with parsed arguments."""

    id: str
    name: str
    arguments: object


@dataclass
class _PendingCall:
    id: str | None = None
    name: list[str] = field(default_factory=list)
    arguments: list[str] = field(default_factory=list)


class ToolCallAssembler:
    """Collects fragments by call index and parses each call once complete."""

    def __init__(self) -> None:
        self._pending: dict[int, _PendingCall] = {}
        self.errors: list[str] = []

    def feed(self, delta: RawToolDelta) -> list[ToolCall]:
        """
        Feed a single fragment.

        Returns the calls completed by this fragment (zero or one).
        """
        pending = self._pending.get(delta.call_index)
        if pending is None:
            pending = self._pending[delta.call_index] = _PendingCall()
        # The first id seen for an index sticks.
        pending.id = pending.id or delta.id
        pending.name.append(delta.name_delta)
        pending.arguments.append(delta.args_delta)

        return self._complete(delta.call_index) if delta.done else []

    def flush(self) -> list[ToolCall]:
        """Complete every call still pending, in index order."""
        finished: list[ToolCall] = []
        for index in sorted(self._pending):
            finished += self._complete(index)
        return finished

    def _complete(self, index: int) -> list[ToolCall]:
        pending = self._pending.pop(index, None)
        if pending is None:
            return []

        text = "".join(pending.arguments)
        try:
            arguments = json.loads(text) if text else {}
        except json.JSONDecodeError as exc:
            self.errors.append(f"tool_call_json_parse_failed idx={index} err={exc}")
            return []

        return [
            ToolCall(
                id=pending.id or f"call_{index}",
                name="".join(pending.name).strip(),
                arguments=arguments,
            )
        ]
