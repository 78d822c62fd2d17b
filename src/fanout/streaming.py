"""Incremental decoding of a backend's raw streamed response.

Providers hand the :class:`StreamDecoder` raw body bytes exactly as they come
off the wire.  The decoder splits them into SSE lines, extracts fields from
each ``data:`` frame with a fixed list of :class:`ExtractionRule` objects and
emits typed :mod:`fanout.events`.  The :class:`ToolCallAccumulator`
reassembles tool calls whose name and arguments arrive in fragments across
many frames.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from fanout.errors import DecodeError
from fanout.events import (
    ContentDelta,
    Done,
    ReasoningDelta,
    StreamEvent,
    ToolCallRequest,
    UsageReport,
)

logger = logging.getLogger(__name__)

FRAME_MARKER = "data:"
DONE_SENTINEL = "[DONE]"
TOOL_CALL_FINISH_REASONS = frozenset({"tool_calls", "function_call"})


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


# ---------------------------------------------------------------------------
# Tool-call accumulation
# ---------------------------------------------------------------------------

@dataclass
class ToolCallFragment:
    """A fragment of a tool call from a streaming frame."""

    index: int
    call_id: str | None = None
    name: str | None = None
    arguments_delta: str | None = None


@dataclass
class PendingToolCall:
    """A tool call still being assembled."""

    call_id: str | None = None
    name: str | None = None
    arguments_buffer: str = ""


class ToolCallAccumulator:
    """Assembles complete tool calls from streaming fragments.

    Backends resend an empty name on every fragment after the first, so a
    name is only taken from fragments that carry a non-blank one.
    """

    def __init__(self) -> None:
        self._pending: dict[int, PendingToolCall] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def feed(self, fragment: ToolCallFragment) -> None:
        tc = self._pending.setdefault(fragment.index, PendingToolCall())
        if fragment.call_id:
            tc.call_id = fragment.call_id
        if fragment.name and fragment.name.strip():
            tc.name = fragment.name
        if fragment.arguments_delta:
            tc.arguments_buffer += fragment.arguments_delta

    def finalize(self) -> list[ToolCallRequest]:
        """Drain every pending call into events, in index order."""
        requests = [
            self._to_request(index, self._pending[index])
            for index in sorted(self._pending)
        ]
        self._pending.clear()
        return requests

    @staticmethod
    def _to_request(index: int, tc: PendingToolCall) -> ToolCallRequest:
        raw = tc.arguments_buffer.strip() or "{}"
        try:
            json.loads(raw)
            arguments_json = raw
        except json.JSONDecodeError as e:
            logger.warning(
                f"Invalid JSON arguments for tool call {tc.name!r}, "
                f"sending empty arguments: {e}"
            )
            arguments_json = "{}"
        return ToolCallRequest(
            id=tc.call_id or f"call_{index}",
            name=tc.name or "",
            arguments_json=arguments_json,
        )


# ---------------------------------------------------------------------------
# Field extraction rules
# ---------------------------------------------------------------------------

def _path(data: Any, *keys: str | int) -> Any:
    node = data
    for key in keys:
        if isinstance(key, int):
            if not isinstance(node, list) or len(node) <= key:
                return MISSING
            node = node[key]
        else:
            if not isinstance(node, dict) or key not in node:
                return MISSING
            node = node[key]
    return MISSING if node is None else node


@dataclass(frozen=True)
class ExtractionRule:
    """One candidate location of a field inside a frame."""

    name: str
    path: tuple[str | int, ...]

    def extract(self, frame: dict) -> Any:
        return _path(frame, *self.path)


def first_match(rules: tuple[ExtractionRule, ...], frame: dict) -> Any:
    """Return the value of the first rule that finds one, else ``MISSING``."""
    for rule in rules:
        value = rule.extract(frame)
        if value is not MISSING:
            return value
    return MISSING


CONTENT_RULES = (
    ExtractionRule("dashscope_text", ("output", "text")),
    ExtractionRule("dashscope_message", ("output", "choices", 0, "message", "content")),
    ExtractionRule("openai_delta", ("choices", 0, "delta", "content")),
)

REASONING_RULES = (
    ExtractionRule("dashscope_message", ("output", "choices", 0, "message", "reasoning_content")),
    ExtractionRule("openai_delta", ("choices", 0, "delta", "reasoning_content")),
    ExtractionRule("openai_delta_reasoning", ("choices", 0, "delta", "reasoning")),
)

TOOL_CALL_RULES = (
    ExtractionRule("dashscope_message", ("output", "choices", 0, "message", "tool_calls")),
    ExtractionRule("openai_delta", ("choices", 0, "delta", "tool_calls")),
)

FINISH_REASON_RULES = (
    ExtractionRule("dashscope_text", ("output", "finish_reason")),
    ExtractionRule("dashscope_choice", ("output", "choices", 0, "finish_reason")),
    ExtractionRule("openai_choice", ("choices", 0, "finish_reason")),
)

USAGE_RULES = (
    ExtractionRule("usage", ("usage",)),
)


def _fragments(raw_calls: Any) -> list[ToolCallFragment]:
    """Parse tool-call deltas, raising :class:`DecodeError` on a wrong shape."""
    if raw_calls is MISSING or raw_calls is None:
        return []
    if not isinstance(raw_calls, list):
        raise DecodeError(f"tool_calls is not a list: {raw_calls!r:.80}")
    fragments = []
    for position, raw in enumerate(raw_calls):
        if not isinstance(raw, dict):
            raise DecodeError(f"tool call delta is not an object: {raw!r:.80}")
        function = raw.get("function") or {}
        if not isinstance(function, dict):
            raise DecodeError(f"tool call function is not an object: {function!r:.80}")
        name = function.get("name")
        call_id = raw.get("id") or None
        if not isinstance(name, (str, type(None))) or not isinstance(call_id, (str, type(None))):
            raise DecodeError(f"tool call name and id must be strings: {raw!r:.80}")
        arguments = function.get("arguments")
        if arguments is not None and not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        index = raw.get("index")
        fragments.append(ToolCallFragment(
            index=index if isinstance(index, int) else position,
            call_id=call_id,
            name=name,
            arguments_delta=arguments,
        ))
    return fragments


def _usage(raw: Any) -> UsageReport | None:
    """Parse a usage object, raising :class:`DecodeError` on non-numeric counts."""
    if raw is MISSING or raw is None:
        return None
    if not isinstance(raw, dict):
        raise DecodeError(f"usage is not an object: {raw!r:.80}")
    try:
        prompt = int(raw.get("input_tokens", raw.get("prompt_tokens")) or 0)
        completion = int(raw.get("output_tokens", raw.get("completion_tokens")) or 0)
        total = int(raw.get("total_tokens") or prompt + completion)
    except (TypeError, ValueError) as e:
        raise DecodeError(f"usage counts are not numbers: {raw!r:.80}") from e
    return UsageReport(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


def _finish_reason(frame: dict) -> str | None:
    reason = first_match(FINISH_REASON_RULES, frame)
    if not isinstance(reason, str) or reason in ("", "null"):
        return None
    return reason


# ---------------------------------------------------------------------------
# Decoder
# ---------------------------------------------------------------------------

@dataclass
class StreamDecoder:
    """Turns raw chunks into :class:`~fanout.events.StreamEvent` objects.

    One decoder serves exactly one streamed response.  It is not shared
    between turns and needs no locking.

    Args:
        tool_call_finish_reasons: Finish reasons that complete pending
            tool calls and end the stream.
    """

    tool_call_finish_reasons: frozenset[str] = TOOL_CALL_FINISH_REASONS
    accumulator: ToolCallAccumulator = field(default_factory=ToolCallAccumulator)
    finished: bool = False
    dropped_lines: int = 0

    def __post_init__(self) -> None:
        self._buffer = ""
        self._text = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._usage: UsageReport | None = None
        self._deferred_stop: str | None = None

    def decode(self, chunk: bytes) -> list[StreamEvent]:
        """Feed one raw chunk, return the events it completes."""
        if self.finished:
            return []
        self._buffer += self._text.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        events: list[StreamEvent] = []
        for line in lines:
            if self.finished:
                break
            events.extend(self._decode_line(line))
        return events

    def flush(self) -> list[StreamEvent]:
        """Surface anything still buffered once the stream has ended."""
        if self.finished:
            return []
        tail = self._buffer + self._text.decode(b"", final=True)
        self._buffer = ""
        events: list[StreamEvent] = []
        for line in tail.split("\n"):
            if self.finished:
                break
            events.extend(self._decode_line(line))
        if not self.finished:
            events.extend(self._end_of_stream())
        return events

    def _end_of_stream(self) -> list[StreamEvent]:
        if len(self.accumulator):
            logger.info("Stream ended without a tool-call finish reason; finalizing pending calls")
            return self._finish_tool_calls()
        if self._deferred_stop is not None:
            return self._finish_stop(self._deferred_stop)
        self.finished = True
        return []

    # -- frames -------------------------------------------------------------

    def _decode_line(self, line: str) -> list[StreamEvent]:
        line = line.rstrip("\r")
        if not line.startswith(FRAME_MARKER):
            if line.strip():
                logger.debug(f"Dropping non-frame line: {line[:80]!r}")
            return []
        payload = line[len(FRAME_MARKER):].strip()
        if not payload:
            return []
        if payload == DONE_SENTINEL:
            return self._end_of_stream()
        try:
            return self._decode_frame(self._parse(payload))
        except DecodeError as e:
            self.dropped_lines += 1
            logger.debug(f"Dropping malformed frame: {e}")
            return []

    @staticmethod
    def _parse(payload: str) -> dict:
        try:
            frame = json.loads(payload)
        except json.JSONDecodeError as e:
            raise DecodeError(f"invalid JSON payload {payload[:80]!r}: {e}") from e
        if not isinstance(frame, dict):
            raise DecodeError(f"frame is not an object: {payload[:80]!r}")
        return frame

    def _decode_frame(self, frame: dict) -> list[StreamEvent]:
        # Parse everything before touching decoder state so a bad frame is dropped whole.
        fragments = _fragments(first_match(TOOL_CALL_RULES, frame))
        usage = _usage(first_match(USAGE_RULES, frame))
        events: list[StreamEvent] = []

        reasoning = first_match(REASONING_RULES, frame)
        if isinstance(reasoning, str) and reasoning:
            events.append(ReasoningDelta(text=reasoning))

        for fragment in fragments:
            self.accumulator.feed(fragment)

        content = first_match(CONTENT_RULES, frame)
        if isinstance(content, str) and content:
            events.append(ContentDelta(text=content))

        if usage is not None:
            self._usage = usage

        finish_reason = _finish_reason(frame)
        if finish_reason in self.tool_call_finish_reasons:
            events.extend(self._finish_tool_calls())
        elif finish_reason is not None:
            if self._usage is not None:
                events.extend(self._finish_stop(finish_reason))
            else:
                self._deferred_stop = finish_reason
        elif self._deferred_stop is not None and usage is not None:
            events.extend(self._finish_stop(self._deferred_stop))
        return events

    def _finish_tool_calls(self) -> list[StreamEvent]:
        self.finished = True
        events: list[StreamEvent] = list(self.accumulator.finalize())
        if self._usage is not None:
            events.append(self._usage)
        return events

    def _finish_stop(self, finish_reason: str) -> list[StreamEvent]:
        self.finished = True
        events: list[StreamEvent] = []
        if self._usage is not None:
            events.append(self._usage)
        events.append(Done(finish_reason=finish_reason))
        return events


def decode_all(chunks: list[bytes], factory: Callable[[], StreamDecoder] = StreamDecoder) -> list[StreamEvent]:
    """Decode a complete list of chunks, including the final flush."""
    decoder = factory()
    events: list[StreamEvent] = []
    for chunk in chunks:
        events.extend(decoder.decode(chunk))
    events.extend(decoder.flush())
    return events
