# extract.py
# Text tool-call extraction for providers without native tool calling.
#
# The model is told to write calls inline as:
#
#     TOOL: saveFields PARAMS: {"caseID": 3, "fields": [...]}
#
# optionally wrapped in a fenced code block. A call is accepted only once its
# braces balance; string contents (including escaped quotes) never count
# towards the depth. Malformed calls are dropped and logged, never raised.

import json
import re
import uuid

from pydantic import BaseModel

from workflow_agent import display
from workflow_agent.models import ToolCall

_MARKER = re.compile(r"TOOL:\s*(\w+)\s+PARAMS:\s*\{")
_OPEN_FENCE = re.compile(r"```[\w-]*[ \t]*\r?\n?[ \t]*$")
_CLOSE_FENCE = re.compile(r"[ \t]*\r?\n?[ \t]*```")
_TRAILING_FENCE = re.compile(r"`{1,3}[\w-]*\s*$")
_KEYWORD = "TOOL:"


class TextToolCall(BaseModel):
    """One call found in text, with the span that should be cut out of it."""

    tool_name: str
    params: dict
    start: int
    end: int


# ---------------------------------------------------------------------------
# Scanning helpers
# ---------------------------------------------------------------------------


def _balance(text: str, open_index: int) -> int | None:
    """
    Index just past the brace closing the one at `open_index`, or None if
    the object is still open at end of input.
    """
    depth = 0
    in_string = False
    escaped = False
    for i in range(open_index, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i + 1
    return None


def _span_start(text: str, marker_start: int) -> tuple[int, bool]:
    """Start of the call's span, moved back over an opening fence if present."""
    fence = _OPEN_FENCE.search(text, 0, marker_start)
    if fence and fence.end() == marker_start:
        return fence.start(), True
    return marker_start, False


def _span_end(text: str, json_end: int, fenced: bool) -> int:
    if not fenced:
        return json_end
    fence = _CLOSE_FENCE.match(text, json_end)
    return fence.end() if fence else json_end


def _parse_params(raw: str) -> dict | None:
    try:
        params = json.loads(raw, strict=False)
    except json.JSONDecodeError:
        return None
    return params if isinstance(params, dict) else None


# ---------------------------------------------------------------------------
# Whole-text extraction
# ---------------------------------------------------------------------------


def extract_tool_call(text: str) -> TextToolCall | None:
    """
    Return the first well-formed call in `text`, or None.

    None also means "no call yet": an unbalanced call at the end of the text
    is not an error. Callers cut `text[start:end]` out and call again to find
    the next one.
    """
    pos = 0
    while True:
        match = _MARKER.search(text, pos)
        if match is None:
            return None
        open_index = match.end() - 1
        json_end = _balance(text, open_index)
        if json_end is None:
            return None

        raw = text[open_index:json_end]
        params = _parse_params(raw)
        if params is None:
            display.dropped_tool_call(match.group(1), "unparseable PARAMS", raw)
            pos = json_end
            continue

        start, fenced = _span_start(text, match.start())
        return TextToolCall(
            tool_name=match.group(1),
            params=params,
            start=start,
            end=_span_end(text, json_end, fenced),
        )


def extract_all(text: str) -> tuple[str, list[TextToolCall]]:
    """Cut every call out of `text`. Returns the remaining prose and the calls."""
    calls: list[TextToolCall] = []
    while True:
        call = extract_tool_call(text)
        if call is None:
            return text, calls
        calls.append(call)
        text = text[: call.start] + text[call.end :]


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


def _hold_index(text: str) -> int:
    """Where to stop releasing prose when no complete marker is in `text`."""
    hold = text.rfind(_KEYWORD)
    if hold == -1:
        hold = len(text)
        for size in range(min(len(_KEYWORD) - 1, len(text)), 0, -1):
            if _KEYWORD.startswith(text[-size:]):
                hold = len(text) - size
                break
    fence = _TRAILING_FENCE.search(text, 0, hold)
    if fence and fence.end() == hold:
        hold = fence.start()
    return hold


class TextCallScanner:
    """
    Incremental front end to the extractor.

    feed() returns the prose that can safely be shown now and any calls that
    completed. Text that may belong to a call is withheld until the call
    balances. finish() releases whatever is left.

    Example:
        scanner = TextCallScanner()
        for chunk in stream:
            prose, calls = scanner.feed(chunk)
        prose, calls = scanner.finish()
    """

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> tuple[str, list[ToolCall]]:
        self._buffer += chunk
        return self._drain(final=False)

    def finish(self) -> tuple[str, list[ToolCall]]:
        return self._drain(final=True)

    def _drain(self, final: bool) -> tuple[str, list[ToolCall]]:
        prose: list[str] = []
        calls: list[ToolCall] = []

        while True:
            text = self._buffer
            match = _MARKER.search(text)
            if match is None:
                cut = len(text) if final else _hold_index(text)
                prose.append(text[:cut])
                self._buffer = text[cut:]
                break

            start, fenced = _span_start(text, match.start())
            prose.append(text[:start])
            text = text[start:]
            offset = match.start() - start
            open_index = match.end() - start - 1

            json_end = _balance(text, open_index)
            if json_end is None:
                if final:
                    prose.append(text)
                    text = ""
                self._buffer = text
                break

            # A closing fence may still be on its way.
            rest = text[json_end:].lstrip()
            if fenced and not final and len(rest) < 3 and "```".startswith(rest):
                self._buffer = text
                break

            raw = text[open_index:json_end]
            name = match.group(1)
            params = _parse_params(raw)
            if params is None:
                display.dropped_tool_call(name, "unparseable PARAMS", text[offset:json_end])
            else:
                calls.append(ToolCall(id=f"call_{uuid.uuid4().hex[:12]}", name=name, params=params))
            self._buffer = text[_span_end(text, json_end, fenced) :]

        return "".join(prose), calls
