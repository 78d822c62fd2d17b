"""Server-Sent Events adapter for turn events and task transitions."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from dataclasses import asdict

from fanout.errors import AbortedError
from fanout.events import StreamEvent


def format_sse(event_type: str, data: dict) -> str:
    return f"event: {event_type}\ndata: {json.dumps(data)}\n\n"


def event_to_sse(event: StreamEvent) -> str:
    return format_sse(type(event).__name__, asdict(event))


def transition_to_sse(transition) -> str:
    """Render a scheduler ``TaskTransition`` as a ``TaskState`` event."""
    task = transition.task
    return format_sse("TaskState", {
        "id": task.id,
        "previous": transition.previous.value,
        "state": transition.current.value,
        "error": task.error,
    })


async def sse_generator(
    event_stream: AsyncIterator[StreamEvent],
) -> AsyncIterator[str]:
    """Convert a StreamEvent async iterator into SSE-formatted strings.

    An abort ends the stream with an ``aborted`` event instead of ``done``.
    """
    try:
        async for event in event_stream:
            yield event_to_sse(event)
    except AbortedError as e:
        yield format_sse("aborted", {"reason": str(e)})
        return
    yield "event: done\ndata: {}\n\n"
