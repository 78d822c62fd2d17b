"""Streaming events emitted by the decoder and the Conversation Turn."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any


@dataclass
class StreamEvent:
    """Base for all streaming events."""


@dataclass
class ContentDelta(StreamEvent):
    """Answer text, forwarded as soon as it arrives."""

    text: str = ""


@dataclass
class ReasoningDelta(StreamEvent):
    """Reasoning / thinking text. Precedes content from the same frame."""

    text: str = ""


@dataclass
class ToolCallRequest(StreamEvent):
    """A fully reassembled tool call requested by the model."""

    id: str = ""
    name: str = ""
    arguments_json: str = "{}"

    @property
    def arguments(self) -> Any:
        return json.loads(self.arguments_json)


@dataclass
class UsageReport(StreamEvent):
    """Token usage for one backend round trip."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: UsageReport) -> UsageReport:
        return UsageReport(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


@dataclass
class Error(StreamEvent):
    """Terminal transport failure surfaced to the caller."""

    message: str = ""


@dataclass
class Done(StreamEvent):
    """Natural completion. Always the last event of a successful turn."""

    finish_reason: str = "stop"
