"""Parsing of inline ``<think>...</think>`` reasoning blocks.

Some models emit their reasoning inside the answer text instead of a separate
reasoning field.  The Turn strips these blocks before the answer is stored in
the conversation history.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

_THINK_BLOCK = re.compile(r"<think>([\s\S]*?)</think>", re.IGNORECASE)
_THINK_TAG = re.compile(r"</?think>", re.IGNORECASE)
_SENTENCE_END = re.compile(r"[.!?]\s+")

SUBJECT_MAX_CHARS = 50
SUBJECT_MAX_WORDS = 10


@dataclass
class ThoughtSummary:
    subject: str
    description: str


@dataclass
class ThinkingParseResult:
    has_thinking: bool
    thinking_content: str
    regular_content: str
    thought_summary: ThoughtSummary | None = None


def has_thinking_tags(content: str) -> bool:
    return _THINK_BLOCK.search(content) is not None


def strip_thinking_tags(content: str) -> str:
    """Remove every reasoning block, leaving only the answer text."""
    return _THINK_BLOCK.sub("", content).strip()


def parse_thinking_content(content: str) -> ThinkingParseResult:
    """Split *content* into reasoning and answer text."""
    blocks = _THINK_BLOCK.findall(content)
    if not blocks:
        return ThinkingParseResult(
            has_thinking=False, thinking_content="", regular_content=content,
        )
    thinking = " ".join(_THINK_TAG.sub("", b).strip() for b in blocks).strip()
    return ThinkingParseResult(
        has_thinking=True,
        thinking_content=thinking,
        regular_content=strip_thinking_tags(content),
        thought_summary=summarize_thought(thinking),
    )


def summarize_thought(thinking: str) -> ThoughtSummary:
    """Derive a short subject line from reasoning text.

    A short first sentence becomes the subject and the rest the description.
    Otherwise the first six words are used.
    """
    first = _SENTENCE_END.split(thinking)[0].strip() if thinking else ""
    if 0 < len(first) <= SUBJECT_MAX_CHARS:
        rest = thinking[len(first):]
        rest = re.sub(r"^[.!?]\s*", "", rest).strip()
        return ThoughtSummary(subject=first, description=rest or first)

    words = thinking.split()
    if len(words) <= SUBJECT_MAX_WORDS:
        subject = thinking
    else:
        subject = " ".join(words[:6]) + "..."
    return ThoughtSummary(subject=subject or "Thinking...", description=thinking)
