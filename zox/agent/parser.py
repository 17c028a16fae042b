"""Incremental parser for the XML-ish protocol spoken by the models.

A model reply is either prose (optionally wrapped in <message>, <response>
or <content>), or one or more tool invocations:

    <thinking>I need the file first</thinking>
    <tool>read_file</tool>
    <params><path>a.txt</path></params>

StreamingParser.feed() classifies a growing buffer chunk by chunk and
returns TextChunk / ToolCallComplete events; finalize() does a best-effort
parse of the whole raw buffer. Malformed or unterminated markup never
raises, it degrades to plain text.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Literal

logger = logging.getLogger(__name__)

ParserMode = Literal["chat", "turbo"]

# Longest markers first so "```xml" is not left as "xml"
_FENCES = ("```xml", "```XML", "```json", "```JSON", "~~~xml", "```", "~~~")

_THINK_OPEN = "<thinking>"
_THINK_CLOSE = "</thinking>"
_TOOL_OPEN = "<tool>"
_TOOL_CLOSE = "</tool>"
_PARAM_TAGS = ("params", "parameters")
_MESSAGE_TAGS = ("message", "response", "content")
_KNOWN_TAGS = (
    "thinking", "message", "response", "content", "output",
    "observation", "tool", "params", "parameters",
)

_TAG_NAME = re.compile(r"^[A-Za-z_][\w.\-]*$")
_INT_VALUE = re.compile(r"^[+-]?(?:0|[1-9]\d*)$")
_FLOAT_VALUE = re.compile(r"^[+-]?(?:0|[1-9]\d*)\.\d+(?:[eE][+-]?\d+)?$")


# ---------------------------------------------------------------------------
# Parse results
# ---------------------------------------------------------------------------


@dataclass
class ToolCall:
    """A single tool invocation requested by the model."""

    tool: str
    parameters: dict[str, Any] = field(default_factory=dict)
    thinking: str | None = None


@dataclass(frozen=True)
class ParsedText:
    content: str


@dataclass(frozen=True)
class ParsedToolCalls:
    calls: list[ToolCall]
    thinking: str | None = None


@dataclass(frozen=True)
class ParsedTextThenTools:
    text: str
    calls: list[ToolCall]
    thinking: str | None = None


ParsedResponse = ParsedText | ParsedToolCalls | ParsedTextThenTools


@dataclass(frozen=True)
class TextChunk:
    """Newly revealed user-visible text.

    With replace set, text is the whole visible reply and supersedes
    everything revealed before it.
    """

    text: str
    replace: bool = False


@dataclass(frozen=True)
class ToolCallComplete:
    """A tool block whose markup (and parameter block) is fully closed."""

    call: ToolCall


ParserEvent = TextChunk | ToolCallComplete


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def strip_fences(text: str) -> str:
    """Remove code-fence markers around tool markup.

    Prose answers keep their markdown fences; they are only stripped when
    the text carries a tool block.
    """
    if _TOOL_OPEN not in text:
        return text
    for fence in _FENCES:
        text = text.replace(fence, "")
    return text


def _thinking_spans(text: str) -> list[tuple[int, int]]:
    spans = []
    pos = 0
    while True:
        start = text.find(_THINK_OPEN, pos)
        if start == -1:
            break
        end = text.find(_THINK_CLOSE, start + len(_THINK_OPEN))
        if end == -1:
            break
        spans.append((start, end + len(_THINK_CLOSE)))
        pos = end + len(_THINK_CLOSE)
    return spans


def strip_thinking(text: str) -> str:
    """Remove every complete <thinking>...</thinking> span."""
    spans = _thinking_spans(text)
    if not spans:
        return text
    parts = []
    pos = 0
    for start, end in spans:
        parts.append(text[pos:start])
        pos = end
    parts.append(text[pos:])
    return "".join(parts)


def extract_tag(text: str, tag: str) -> str | None:
    """Content of the first complete <tag>...</tag> span, or None."""
    opener = f"<{tag}>"
    start = text.find(opener)
    if start == -1:
        return None
    start += len(opener)
    end = text.find(f"</{tag}>", start)
    if end == -1:
        return None
    return text[start:end]


def extract_thinking(text: str) -> str | None:
    thinking = extract_tag(text, "thinking")
    if thinking is None or not thinking.strip():
        return None
    return thinking.strip()


def strip_known_tags(text: str) -> str:
    for tag in _KNOWN_TAGS:
        text = text.replace(f"<{tag}>", "").replace(f"</{tag}>", "")
    return text


def clean_view(text: str) -> str:
    """Fence- and thinking-free view of a raw buffer."""
    return strip_thinking(strip_fences(text)).strip()


def coerce_value(raw: str) -> Any:
    """Coerce a parameter value to int, then float, else keep the string."""
    value = raw.strip()
    if _INT_VALUE.match(value):
        return int(value)
    if _FLOAT_VALUE.match(value):
        return float(value)
    return value


def parse_params(block: str) -> dict[str, Any]:
    """Turn a run of <key>value</key> pairs into an ordered dict.

    Unterminated tags are skipped; a repeated key keeps its last value.
    """
    params: dict[str, Any] = {}
    pos = 0
    while True:
        open_at = block.find("<", pos)
        if open_at == -1:
            break
        close_bracket = block.find(">", open_at)
        if close_bracket == -1:
            break
        tag = block[open_at + 1:close_bracket]
        if not _TAG_NAME.match(tag):
            pos = close_bracket + 1
            continue
        closer = f"</{tag}>"
        value_end = block.find(closer, close_bracket + 1)
        if value_end == -1:
            pos = close_bracket + 1
            continue
        params[tag] = coerce_value(block[close_bracket + 1:value_end])
        pos = value_end + len(closer)
    return params


def _hold_partial_tag(text: str) -> str:
    """Drop a trailing '<...' fragment that may still become a tag."""
    last = text.rfind("<")
    if last != -1 and text.find(">", last) == -1:
        return text[:last]
    return text


# ---------------------------------------------------------------------------
# Tool block scanning
# ---------------------------------------------------------------------------


@dataclass
class _ToolBlock:
    call: ToolCall
    start: int
    end: int


def _find_outside(text: str, marker: str, start: int, spans: list[tuple[int, int]]) -> int:
    idx = text.find(marker, start)
    while idx != -1:
        span = next((s for s in spans if s[0] <= idx < s[1]), None)
        if span is None:
            return idx
        idx = text.find(marker, span[1])
    return -1


def _thinking_between(text: str, lo: int, hi: int, spans: list[tuple[int, int]]) -> str | None:
    inside = [s for s in spans if s[0] >= lo and s[1] <= hi]
    if not inside:
        return None
    start, end = inside[-1]
    content = text[start + len(_THINK_OPEN):end - len(_THINK_CLOSE)].strip()
    return content or None


def _read_params(text: str, pos: int, final: bool) -> tuple[dict[str, Any], int, bool]:
    """Read the parameter block immediately following a </tool>.

    Returns (params, end, complete). While streaming, a block is incomplete
    until its parameter block closes or something else clearly follows.
    """
    i = pos
    while i < len(text) and text[i].isspace():
        i += 1
    for tag in _PARAM_TAGS:
        opener = f"<{tag}>"
        if not text.startswith(opener, i):
            continue
        body_start = i + len(opener)
        closer = f"</{tag}>"
        close = text.find(closer, body_start)
        if close == -1:
            if final:
                return parse_params(text[body_start:]), len(text), True
            return {}, pos, False
        return parse_params(text[body_start:close]), close + len(closer), True

    if not final:
        remainder = text[i:]
        if not remainder:
            return {}, pos, False
        if any(f"<{tag}>".startswith(remainder) for tag in _PARAM_TAGS):
            return {}, pos, False
    return {}, pos, True


def _scan_tool_blocks(text: str, final: bool) -> list[_ToolBlock]:
    """Walk every <tool>name</tool> block in order, each with its params."""
    spans = _thinking_spans(text)
    blocks: list[_ToolBlock] = []
    pos = 0
    segment_start = 0
    while True:
        start = _find_outside(text, _TOOL_OPEN, pos, spans)
        if start == -1:
            break
        name_start = start + len(_TOOL_OPEN)
        close = text.find(_TOOL_CLOSE, name_start)
        if close == -1:
            break
        params, end, complete = _read_params(text, close + len(_TOOL_CLOSE), final)
        if not complete:
            break
        name = text[name_start:close].strip()
        if name and "<" not in name:
            thinking = _thinking_between(text, segment_start, start, spans)
            blocks.append(_ToolBlock(ToolCall(name, params, thinking), start, end))
        else:
            logger.debug("Ignoring tool block with invalid name: %r", name)
        pos = end
        segment_start = end
    return blocks


def _pre_tool_text(text: str, blocks: list[_ToolBlock]) -> str:
    if not blocks:
        return ""
    return strip_known_tags(strip_thinking(text[:blocks[0].start])).strip()


def text_fallback(raw: str) -> str:
    """Best user-visible text for a reply that carries no usable tool call."""
    cleaned = clean_view(raw)
    for tag in _MESSAGE_TAGS:
        content = extract_tag(cleaned, tag)
        if content is not None and content.strip():
            return strip_known_tags(content).strip()
    return strip_known_tags(cleaned).strip()


def parse_response(raw: str) -> ParsedResponse:
    """Non-incremental parse of a complete reply."""
    text = strip_fences(raw)
    blocks = _scan_tool_blocks(text, final=True)
    if not blocks:
        return ParsedText(text_fallback(raw))

    calls = [b.call for b in blocks]
    thinking = calls[0].thinking or extract_thinking(text)
    pre = _pre_tool_text(text, blocks)
    if pre:
        return ParsedTextThenTools(pre, calls, thinking)
    return ParsedToolCalls(calls, thinking)


# ---------------------------------------------------------------------------
# Streaming parser
# ---------------------------------------------------------------------------


class StreamingParser:
    """Classifies a growing reply buffer into text and tool events.

    chat mode streams message text as it is revealed. turbo mode stays
    silent until a tool block completes, then emits the text preceding the
    first tool once, followed by one ToolCallComplete per finished block.
    After a <tool> marker is seen in turbo mode no further text is emitted.
    """

    def __init__(self, mode: ParserMode = "turbo") -> None:
        self.mode: ParserMode = mode
        self._buffer = ""
        self._emitted = ""
        self._tool_detected = False
        self._pre_text_done = False
        self._calls_emitted = 0

    @property
    def buffer(self) -> str:
        return self._buffer

    @property
    def visible(self) -> str:
        """User-visible text revealed so far in chat mode."""
        return self._emitted

    @property
    def tool_detected(self) -> bool:
        return self._tool_detected

    def reset(self, mode: ParserMode | None = None) -> None:
        if mode is not None:
            self.mode = mode
        self._buffer = ""
        self._emitted = ""
        self._tool_detected = False
        self._pre_text_done = False
        self._calls_emitted = 0

    def feed(self, chunk: str) -> list[ParserEvent]:
        if not chunk:
            return []
        self._buffer += chunk
        if self.mode == "turbo":
            return self._feed_turbo()
        return self._feed_chat()

    def finalize(self) -> ParsedResponse:
        """Parse the whole raw buffer. Pure: repeated calls give the same result."""
        return parse_response(self._buffer)

    def final_text(self) -> str:
        """Text-only view of the buffer, for replies where tools are not honoured."""
        return text_fallback(self._buffer)

    # ------------------------------------------------------------------
    # Mode handlers
    # ------------------------------------------------------------------

    def _feed_turbo(self) -> list[ParserEvent]:
        text = strip_fences(self._buffer)
        if not self._tool_detected:
            if _TOOL_OPEN not in strip_thinking(text):
                return []
            self._tool_detected = True

        blocks = _scan_tool_blocks(text, final=False)
        fresh = blocks[self._calls_emitted:]
        if not fresh:
            return []

        events: list[ParserEvent] = []
        if not self._pre_text_done:
            self._pre_text_done = True
            pre = _pre_tool_text(text, blocks)
            if pre:
                events.append(TextChunk(pre))
        for block in fresh:
            events.append(ToolCallComplete(block.call))
        self._calls_emitted = len(blocks)
        return events

    def _feed_chat(self) -> list[ParserEvent]:
        view = clean_view(self._buffer)
        message = extract_tag(view, "message")
        if message is not None:
            visible = message.strip()
        elif "<message>" in view or _THINK_OPEN in view:
            # Open message or thinking span, wait for it to close
            return []
        elif "<" not in view:
            visible = view
        else:
            visible = strip_known_tags(view).strip()
        return self._emit_suffix(_hold_partial_tag(visible))

    def _emit_suffix(self, visible: str) -> list[ParserEvent]:
        if self._emitted.startswith(visible):
            return []
        if not visible.startswith(self._emitted):
            self._emitted = visible
            return [TextChunk(visible, replace=True)]
        delta = visible[len(self._emitted):]
        self._emitted = visible
        return [TextChunk(delta)]
