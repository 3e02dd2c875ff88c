# assembler.py
# Structured tool-call assembly for providers with native tool calling.
#
# Providers stream a tool call as fragments sharing a numeric index: the first
# fragment usually carries the id and name, later ones carry pieces of the
# JSON arguments. Plain-text deltas of the same stream go through TextBatcher
# so the client sees reasoning as it arrives, without one frame per token.

import json
import re
import uuid
from typing import Callable, Iterable

from workflow_agent import display
from workflow_agent.models import PendingToolCall, ToolCall, ToolCallFragment

_BOUNDARY = re.compile(r"[.!?:;](?=\s)|\n")


class ToolCallAssembler:
    """
    Merge fragments keyed by index into complete calls.

    Example:
        assembler = ToolCallAssembler()
        for event in provider.stream(...):
            assembler.add(event.tool_calls)
        calls = assembler.finalize()
    """

    def __init__(self) -> None:
        self._pending: dict[int, PendingToolCall] = {}

    @property
    def pending(self) -> bool:
        return bool(self._pending)

    def add(self, fragments: Iterable[ToolCallFragment]) -> None:
        for fragment in fragments:
            record = self._pending.get(fragment.index)
            if record is None:
                record = PendingToolCall(index=fragment.index)
                self._pending[fragment.index] = record
            # First value wins; providers repeat or blank these on later fragments.
            if fragment.id and record.id is None:
                record.id = fragment.id
            if fragment.name and record.name is None:
                record.name = fragment.name
            if fragment.arguments:
                record.fragments.append(fragment.arguments)

    def finalize(self) -> list[ToolCall]:
        """
        Parse every pending record, in index order, and reset. Records with no
        name or with arguments that never became a JSON object are dropped.
        """
        calls: list[ToolCall] = []
        for index in sorted(self._pending):
            record = self._pending[index]
            raw = record.arguments
            if not record.name:
                display.dropped_tool_call(None, "no tool name", raw)
                continue

            if not raw.strip():
                params: dict | None = {}
            else:
                try:
                    params = json.loads(raw, strict=False)
                except json.JSONDecodeError:
                    params = None
            if not isinstance(params, dict):
                display.dropped_tool_call(record.name, "unparseable arguments", raw)
                continue

            calls.append(
                ToolCall(
                    id=record.id or f"call_{uuid.uuid4().hex[:12]}",
                    name=record.name,
                    params=params,
                )
            )
        self._pending.clear()
        return calls


class TextBatcher:
    """
    Buffer streamed text and hand it to `emit` at sentence or line
    boundaries, or once `threshold` characters have built up.
    """

    def __init__(self, emit: Callable[[str], None], threshold: int = 80) -> None:
        self.emit = emit
        self.threshold = threshold
        self._buffer = ""

    def push(self, text: str) -> None:
        if not text:
            return
        self._buffer += text
        if len(self._buffer) >= self.threshold:
            self.flush()
            return
        cut = 0
        for match in _BOUNDARY.finditer(self._buffer):
            cut = match.end()
        if cut:
            ready, self._buffer = self._buffer[:cut], self._buffer[cut:]
            self.emit(ready)

    def flush(self) -> None:
        if self._buffer:
            ready, self._buffer = self._buffer, ""
            self.emit(ready)
