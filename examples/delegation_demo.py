"""Delegation example: a coordinator that fans work out to sub-agents.

Demonstrates:

- Loading ``RuntimeConfig`` from ``FANOUT_*`` environment variables

- Giving every agent an ordinary ``@tool`` alongside the delegation tools

- Streaming the coordinator's turn as Server-Sent Events

- Watching sub-agent task transitions as they happen

Usage:
    Add DASHSCOPE_API_KEY=... (or OPENAI_API_KEY=sk-... with
    FANOUT_MODEL=gpt-4o-mini) to .env, then:
    uv run --env-file=.env examples/delegation_demo.py
"""

import asyncio
import logging
import os
import pathlib

from fanout.config import RuntimeConfig, configure_logging
from fanout.delegation import DelegationRuntime
from fanout.provider import DashScopeProvider, OpenAIProvider
from fanout.scheduler import TaskTransition
from fanout.sse import sse_generator, transition_to_sse
from fanout.tools import tool
from fanout.turn import ConversationTurn


@tool
def list_directory(path: str = ".") -> list[str]:
    """List the entries of a directory relative to the working directory.

    Args:
        path: Relative directory to list.

    Returns:
        entries: File and directory names, directories suffixed with ``/``.
    """
    root = pathlib.Path(path)
    return sorted(p.name + ("/" if p.is_dir() else "") for p in root.iterdir())


def show_transition(transition: TaskTransition) -> None:
    print(transition_to_sse(transition), end="")


async def main():
    configure_logging(logging.WARNING)
    config = RuntimeConfig.from_env()
    if os.environ.get("DASHSCOPE_API_KEY"):
        provider = DashScopeProvider()
    else:
        provider = OpenAIProvider()

    runtime = DelegationRuntime(provider, config=config, tools=[list_directory], listener=show_transition)
    turn = ConversationTurn(
        provider,
        runtime.model,
        config=config.turn_config(),
        tool_executor=runtime.registry(),
    )

    prompt = (
        "Survey this repository. Delegate one subtask per top-level directory "
        "to describe what it contains, then combine the findings into a short report."
    )
    async for frame in sse_generator(turn.run(prompt)):
        print(frame, end="")

    await runtime.wait_all()
    print("\n" + turn.final_text)
    print(f"tokens used: {turn.usage.total_tokens}")


if __name__ == "__main__":
    asyncio.run(main())
