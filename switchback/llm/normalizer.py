"""Channel-marker output normalization.

Some local models write reasoning, inline tool calls and the user-facing
answer into one raw text stream, separated by sentinel tokens::

    <|channel|>analysis<|message|>thinking...<|end|>
    <|start|>assistant<|channel|>commentary to=functions.read_file <|constrain|>json<|message|>{"path": "a.txt"}<|call|>
    <|channel|>final<|message|>Here is the answer

``parse_model_output`` parses a complete buffer. ``ChannelStreamParser``
does the same incrementally and only ever releases text that belongs to
the ``final`` channel (or the whole text when no markers are present).
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import AsyncIterator

from switchback.llm import ChatResponse, Message, StreamEvent, TextDelta, ToolCall, new_call_id
from switchback.logging import get_logger

log = get_logger(__name__)

CHANNEL = "<|channel|>"
MESSAGE = "<|message|>"
START = "<|start|>"
END = "<|end|>"
RETURN = "<|return|>"
CALL = "<|call|>"
CONSTRAIN = "<|constrain|>"

FINAL_CHANNEL = "final"
_TERMINATORS = (END, START, CHANNEL, RETURN, CALL)
_DETECTION_MARKERS = (START, CHANNEL, MESSAGE, CONSTRAIN, END, RETURN, CALL)
_RECIPIENT_RE = re.compile(r"to=([\w.\-]+)")
_NAME_SUFFIXES = (".run", ".execute", ".call")
_NAME_PREFIX = "functions."


@dataclass
class InlineToolCall:
    """Tool call recovered from channel-marked raw text."""

    name: str
    arguments: str


@dataclass
class ParsedOutput:
    content: str
    tool_calls: list[InlineToolCall] = field(default_factory=list)
    has_markers: bool = False


@dataclass
class _Segment:
    channel: str
    recipient: str | None
    body_start: int
    body_end: int
    terminated: bool


def has_channel_markers(text: str) -> bool:
    return any(marker in text for marker in _DETECTION_MARKERS)


def normalize_tool_name(raw_name: str) -> str:
    """Strip method-style suffixes and the ``functions.`` namespace."""
    name = raw_name.strip()
    for suffix in _NAME_SUFFIXES:
        if name.endswith(suffix):
            name = name[: -len(suffix)]
            break
    if name.startswith(_NAME_PREFIX):
        name = name[len(_NAME_PREFIX):]
    return name


def _find_terminator(buffer: str, start: int) -> int:
    positions = [p for p in (buffer.find(t, start) for t in _TERMINATORS) if p != -1]
    return min(positions) if positions else -1


def _partial_suffix(text: str, markers: tuple[str, ...]) -> int:
    """Length of the longest suffix of ``text`` that could begin a marker."""
    longest = 0
    for marker in markers:
        for size in range(min(len(marker) - 1, len(text)), 0, -1):
            if text.endswith(marker[:size]):
                longest = max(longest, size)
                break
    return longest


def _iter_segments(buffer: str):
    pos = 0
    while True:
        channel_at = buffer.find(CHANNEL, pos)
        if channel_at == -1:
            return
        header_start = channel_at + len(CHANNEL)
        message_at = buffer.find(MESSAGE, header_start)
        if message_at == -1:
            return
        next_channel = buffer.find(CHANNEL, header_start)
        if next_channel != -1 and next_channel < message_at:
            pos = next_channel
            continue

        header = buffer[header_start:message_at]
        lead = buffer[pos:channel_at]
        start_at = lead.rfind(START)
        lead = lead[start_at + len(START):] if start_at != -1 else ""

        match = _RECIPIENT_RE.search(header) or _RECIPIENT_RE.search(lead)
        words = header.split(CONSTRAIN, 1)[0].split()
        body_start = message_at + len(MESSAGE)
        body_end = _find_terminator(buffer, body_start)
        terminated = body_end != -1
        if not terminated:
            body_end = len(buffer)

        yield _Segment(
            channel=words[0] if words else "",
            recipient=match.group(1) if match else None,
            body_start=body_start,
            body_end=body_end,
            terminated=terminated,
        )
        if not terminated:
            return
        pos = body_end


def _decode_arguments(body: str) -> str | None:
    text = body.strip()
    if not text.startswith("{"):
        return None
    try:
        value, end = json.JSONDecoder().raw_decode(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(value, dict):
        return None
    return text[:end]


def parse_model_output(raw: str) -> ParsedOutput:
    """Split raw model output into final content and inline tool calls."""
    if not has_channel_markers(raw):
        return ParsedOutput(content=raw)

    content: str | None = None
    tool_calls: list[InlineToolCall] = []
    for segment in _iter_segments(raw):
        body = raw[segment.body_start:segment.body_end]
        if segment.recipient and segment.channel != FINAL_CHANNEL:
            arguments = _decode_arguments(body)
            if arguments is None:
                log.debug("Skipping inline tool call with invalid arguments", recipient=segment.recipient)
                continue
            tool_calls.append(
                InlineToolCall(name=normalize_tool_name(segment.recipient), arguments=arguments)
            )
        elif segment.channel == FINAL_CHANNEL and content is None:
            content = body.strip()

    return ParsedOutput(content=content or "", tool_calls=tool_calls, has_markers=True)


class ChannelStreamParser:
    """Incremental counterpart of ``parse_model_output``.

    ``feed()`` returns only newly releasable user-facing text. The
    concatenation of every ``feed()`` result plus ``finish()`` is the same
    regardless of how the raw text was split into chunks.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._plain_emitted = 0
        self._final_emitted = 0
        self._finished = False

    @property
    def raw(self) -> str:
        return self._buffer

    def feed(self, chunk: str) -> str:
        if not chunk:
            return ""
        self._buffer += chunk
        return self._release(finishing=False)

    def finish(self) -> str:
        """Release any held-back text once the stream has ended."""
        if self._finished:
            return ""
        self._finished = True
        return self._release(finishing=True)

    def result(self) -> ParsedOutput:
        return parse_model_output(self._buffer)

    def _release(self, finishing: bool) -> str:
        if not has_channel_markers(self._buffer):
            safe = len(self._buffer)
            if not finishing:
                safe -= _partial_suffix(self._buffer, _DETECTION_MARKERS)
            if safe <= self._plain_emitted:
                return ""
            text = self._buffer[self._plain_emitted:safe]
            self._plain_emitted = safe
            return text

        segment = next(
            (s for s in _iter_segments(self._buffer) if s.channel == FINAL_CHANNEL),
            None,
        )
        if segment is None:
            return ""
        body = self._buffer[segment.body_start:segment.body_end]
        if not segment.terminated and not finishing:
            body = body[: len(body) - _partial_suffix(body, _TERMINATORS)]
        visible = body.strip()
        if len(visible) <= self._final_emitted:
            return ""
        text = visible[self._final_emitted:]
        self._final_emitted = len(visible)
        return text


def merge_tool_calls(native: list[ToolCall] | None, inline: list[InlineToolCall]) -> list[ToolCall]:
    """Native calls first, then inline calls with freshly generated ids."""
    calls = list(native or [])
    offset = len(calls)
    for index, call in enumerate(inline):
        calls.append(ToolCall(id=new_call_id(offset + index), name=call.name, arguments=call.arguments))
    return calls


async def normalize_stream(events: AsyncIterator[StreamEvent]) -> AsyncIterator[StreamEvent]:
    """Route a backend's raw event stream through ``ChannelStreamParser``.

    Deltas are filtered to final-channel text. The closing response is
    rebuilt from the parsed buffer, merging native and inline tool calls.
    """
    parser = ChannelStreamParser()
    streamed = False
    async for event in events:
        if isinstance(event, TextDelta):
            text = parser.feed(event.text)
            if text:
                streamed = True
                yield TextDelta(text)
            continue

        tail = parser.finish()
        if tail:
            streamed = True
            yield TextDelta(tail)

        raw = parser.raw or (event.message.content or "")
        parsed = parse_model_output(raw)
        if parsed.content and not streamed:
            yield TextDelta(parsed.content)

        tool_calls = merge_tool_calls(event.message.tool_calls, parsed.tool_calls)
        if parsed.tool_calls:
            log.debug("Recovered inline tool calls", count=len(parsed.tool_calls))
        yield ChatResponse(
            message=Message.assistant(parsed.content, tool_calls),
            usage=event.usage,
        )
        return
