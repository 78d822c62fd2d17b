import asyncio
import json

import pytest

from fanout.provider import ModelProvider
from fanout.tools import tool


# ---------------------------------------------------------------------------
# SSE frame builders (OpenAI chat-completions and DashScope shapes)
# ---------------------------------------------------------------------------

def sse(frame) -> bytes:
    """Encode one ``data:`` frame."""
    payload = frame if isinstance(frame, str) else json.dumps(frame, ensure_ascii=False)
    return f"data: {payload}\n\n".encode()


DONE = b"data: [DONE]\n\n"


def openai_delta(content=None, *, reasoning=None, tool_calls=None, finish_reason=None) -> bytes:
    delta = {}
    if content is not None:
        delta["content"] = content
    if reasoning is not None:
        delta["reasoning_content"] = reasoning
    if tool_calls is not None:
        delta["tool_calls"] = tool_calls
    return sse({"choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}]})


def openai_usage(prompt_tokens=10, completion_tokens=5) -> bytes:
    return sse({
        "choices": [],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    })


def make_text_chunks(text: str, *, pieces: int = 2, usage: bool = True) -> list[bytes]:
    """Chunks of an OpenAI-style text answer, split into *pieces* deltas."""
    step = max(1, -(-len(text) // pieces))
    chunks = [openai_delta(text[i:i + step]) for i in range(0, len(text), step)]
    chunks.append(openai_delta(finish_reason="stop"))
    if usage:
        chunks.append(openai_usage())
    chunks.append(DONE)
    return chunks


def make_tool_call_chunks(
    name: str,
    args: dict,
    call_id: str = "call_1",
    content: str | None = None,
) -> list[bytes]:
    """Chunks of a single tool call with its arguments split in two."""
    return make_multi_tool_call_chunks([(name, args, call_id)], content=content)


def make_multi_tool_call_chunks(
    calls: list[tuple[str, dict, str]],
    content: str | None = None,
) -> list[bytes]:
    """Chunks requesting several tool calls.

    Each item in *calls* is ``(func_name, args_dict, call_id)``.  Later
    fragments repeat an empty name, like real backends do.
    """
    chunks = []
    if content:
        chunks.append(openai_delta(content))
    for index, (name, args, call_id) in enumerate(calls):
        arguments = json.dumps(args)
        half = len(arguments) // 2
        chunks.append(openai_delta(tool_calls=[{
            "index": index, "id": call_id, "type": "function",
            "function": {"name": name, "arguments": arguments[:half]},
        }]))
        chunks.append(openai_delta(tool_calls=[{
            "index": index, "function": {"name": "", "arguments": arguments[half:]},
        }]))
    chunks.append(openai_delta(finish_reason="tool_calls"))
    chunks.append(openai_usage())
    chunks.append(DONE)
    return chunks


def dashscope_frame(text=None, *, reasoning=None, finish_reason="null", usage=None) -> bytes:
    message = {"role": "assistant", "content": text or ""}
    if reasoning is not None:
        message["reasoning_content"] = reasoning
    frame = {"output": {"choices": [{"message": message, "finish_reason": finish_reason}]}}
    if usage is not None:
        frame["usage"] = usage
    return sse(frame)


# ---------------------------------------------------------------------------
# Mock provider
# ---------------------------------------------------------------------------

HANG = b"<hang>"


class MockProvider(ModelProvider):
    """Provider that streams pre-queued chunk lists. No network calls.

    A queued ``Exception`` is raised instead of streaming; a ``HANG`` item
    inside a chunk list blocks forever.  Pass *router* to pick the chunks
    from the request messages instead of the queue.
    """

    system = "mock"

    def __init__(self, router=None):
        self.responses: list = []
        self.router = router
        self.call_log: list[dict] = []

    async def stream(self, model, messages, tools=None):
        self.call_log.append({"model": model, "messages": messages, "tools": tools})
        response = self.router(messages) if self.router else self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        for chunk in response:
            if chunk == HANG:
                await asyncio.Event().wait()
            yield chunk


@tool
def echo(text: str):
    """Echo back the input."""
    return text


@pytest.fixture
def mock_provider():
    return MockProvider()


@pytest.fixture
def sample_tool():
    @tool
    def greet(name: str):
        """Say hello."""
        return f"Hello {name}"
    return greet


@pytest.fixture
def sample_async_tool():
    @tool
    async def async_greet(name: str):
        """Async greeting."""
        return f"Hello async {name}"
    return async_greet
