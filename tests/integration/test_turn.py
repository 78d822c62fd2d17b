"""ConversationTurn driven end to end by a mock streaming provider."""

import asyncio

import pytest

from fanout.abort import AbortController
from fanout.config import TurnConfig
from fanout.errors import AbortedError, TransportError
from fanout.events import ContentDelta, Done, Error, ReasoningDelta, ToolCallRequest, UsageReport
from fanout.message import MessageRole, ToolCallRequestMessage, ToolCallResultMessage
from fanout.tools import ToolRegistry, ToolResult
from fanout.turn import ConversationTurn

from tests.conftest import (
    HANG,
    MockProvider,
    dashscope_frame,
    echo,
    make_multi_tool_call_chunks,
    make_text_chunks,
    make_tool_call_chunks,
    openai_delta,
)


async def collect(turn, prompt="hi"):
    return [e async for e in turn.run(prompt)]


# ---------------------------------------------------------------------------
# Plain answers
# ---------------------------------------------------------------------------


class TestTextTurn:
    @pytest.mark.asyncio
    async def test_streams_deltas_then_done(self, mock_provider):
        provider = mock_provider
        provider.responses = [make_text_chunks("Hello there")]
        turn = ConversationTurn(provider, "m")

        events = await collect(turn)

        assert [type(e) for e in events] == [ContentDelta, ContentDelta, UsageReport, Done]
        assert turn.final_text == "Hello there"
        assert turn.usage.total_tokens == 15
        assert [m.role for m in turn.messages] == [MessageRole.USER, MessageRole.ASSISTANT]

    @pytest.mark.asyncio
    async def test_system_prompt_injected_per_request_not_stored(self):
        provider = MockProvider()
        provider.responses = [make_text_chunks("Bonjour")]
        config = TurnConfig(system_prompt="Be brief.", language="French")
        turn = ConversationTurn(provider, "m", config=config)

        await collect(turn)

        sent = provider.call_log[0]["messages"]
        assert sent[0] == {"role": "system", "content": "Be brief.\n\nAlways respond in French."}
        assert sent[1] == {"role": "user", "content": "hi"}
        assert all(m.role is not MessageRole.SYSTEM for m in turn.messages)

    @pytest.mark.asyncio
    async def test_reasoning_forwarded_and_think_tags_stripped(self):
        provider = MockProvider()
        provider.responses = [[
            dashscope_frame("<think>Plan the reply.</think>", reasoning="checking"),
            dashscope_frame("Answer", finish_reason="stop", usage={"input_tokens": 1, "output_tokens": 1}),
        ]]
        turn = ConversationTurn(provider, "m")

        events = await collect(turn)

        assert isinstance(events[0], ReasoningDelta)
        assert turn.final_text == "Answer"
        assert turn.thought.subject == "Plan the reply."
        assert turn.messages[-1].content == "Answer"

    @pytest.mark.asyncio
    async def test_history_is_continued(self):
        provider = MockProvider()
        provider.responses = [make_text_chunks("first"), make_text_chunks("second")]
        first = ConversationTurn(provider, "m")
        await collect(first, "one")
        second = ConversationTurn(provider, "m", history=first.messages)
        await collect(second, "two")

        sent = provider.call_log[1]["messages"]
        assert [m["content"] for m in sent[1:]] == ["one", "first", "two"]

    @pytest.mark.asyncio
    async def test_runs_only_once(self):
        provider = MockProvider()
        provider.responses = [make_text_chunks("ok")]
        turn = ConversationTurn(provider, "m")
        await collect(turn)
        with pytest.raises(RuntimeError):
            await collect(turn)


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------


class TestToolTurn:
    @pytest.mark.asyncio
    async def test_executor_results_fed_back(self):
        provider = MockProvider()
        provider.responses = [
            make_tool_call_chunks("echo", {"text": "ping"}, call_id="call_1"),
            make_text_chunks("pong"),
        ]
        turn = ConversationTurn(provider, "m", tool_executor=ToolRegistry([echo]))

        events = await collect(turn)

        [request] = [e for e in events if isinstance(e, ToolCallRequest)]
        assert request.arguments == {"text": "ping"}
        assert isinstance(events[-1], Done)
        assert turn.round_trips == 2
        assert provider.call_log[0]["tools"][0]["function"]["name"] == "echo"

        assert isinstance(turn.messages[1], ToolCallRequestMessage)
        assert isinstance(turn.messages[2], ToolCallResultMessage)
        assert turn.messages[2].content == "ping"
        sent = provider.call_log[1]["messages"]
        assert sent[2]["tool_calls"][0]["function"] == {"arguments": '{"text": "ping"}', "name": "echo"}
        assert sent[3] == {"role": "tool", "content": "ping", "tool_call_id": "call_1"}

    @pytest.mark.asyncio
    async def test_parallel_calls_keep_request_order(self):
        provider = MockProvider()
        provider.responses = [
            make_multi_tool_call_chunks([
                ("echo", {"text": "a"}, "c1"),
                ("echo", {"text": "b"}, "c2"),
            ]),
            make_text_chunks("done"),
        ]
        turn = ConversationTurn(provider, "m", tool_executor=ToolRegistry([echo]))
        await collect(turn)

        results = [m for m in turn.messages if isinstance(m, ToolCallResultMessage)]
        assert [(m.tool_call_id, m.content) for m in results] == [("c1", "a"), ("c2", "b")]

    @pytest.mark.asyncio
    async def test_caller_supplied_results(self):
        provider = MockProvider()
        provider.responses = [
            make_tool_call_chunks("lookup", {"q": "x"}, call_id="call_7"),
            make_text_chunks("found it"),
        ]
        turn = ConversationTurn(provider, "m", tool_schemas=[{"type": "function"}])

        async for event in turn.run("find x"):
            if isinstance(event, ToolCallRequest):
                assert turn.pending_tool_calls == ["call_7"]
                turn.submit_tool_result(event.id, "x is here")
                with pytest.raises(RuntimeError):
                    turn.submit_tool_result(event.id, "again")

        assert turn.final_text == "found it"
        with pytest.raises(KeyError):
            turn.submit_tool_result("unknown", "x")

    @pytest.mark.asyncio
    async def test_executor_failure_becomes_error_result(self):
        class Broken:
            async def __call__(self, name, arguments_json, call_id, abort=None):
                raise RuntimeError("executor down")

        provider = MockProvider()
        provider.responses = [make_tool_call_chunks("echo", {}), make_text_chunks("sorry")]
        turn = ConversationTurn(provider, "m", tool_executor=Broken())
        await collect(turn)

        result = next(m for m in turn.messages if isinstance(m, ToolCallResultMessage))
        assert "executor down" in result.content

    @pytest.mark.asyncio
    async def test_max_turns_reported_as_error(self):
        provider = MockProvider()
        provider.responses = [make_tool_call_chunks("echo", {"text": "again"})]
        turn = ConversationTurn(
            provider, "m", config=TurnConfig(max_turns=1), tool_executor=ToolRegistry([echo]),
        )

        events = await collect(turn)

        assert isinstance(events[-1], Error)
        assert "maximum turns" in events[-1].message
        assert not any(isinstance(e, Done) for e in events)


# ---------------------------------------------------------------------------
# Failures and cancellation
# ---------------------------------------------------------------------------


class TestTurnFailures:
    @pytest.mark.asyncio
    async def test_transport_error_surfaces_as_error_event(self):
        provider = MockProvider()
        provider.responses = [TransportError("connection reset")]
        turn = ConversationTurn(provider, "m")

        events = await collect(turn)

        assert events == [Error(message="connection reset")]
        assert isinstance(turn.error, TransportError)

    @pytest.mark.asyncio
    async def test_run_to_completion(self):
        provider = MockProvider()
        provider.responses = [make_text_chunks("all good")]
        assert await ConversationTurn(provider, "m").run_to_completion("go") == "all good"

        provider.responses = [TransportError("down")]
        with pytest.raises(TransportError):
            await ConversationTurn(provider, "m").run_to_completion("go")

    @pytest.mark.asyncio
    async def test_abort_mid_stream(self):
        provider = MockProvider()
        provider.responses = [[openai_delta("partial"), HANG]]
        controller = AbortController()
        turn = ConversationTurn(provider, "m", abort=controller.signal)

        seen = []
        asyncio.get_running_loop().call_later(0.02, controller.abort)
        with pytest.raises(AbortedError):
            async for event in turn.run("go"):
                seen.append(event)

        assert seen == [ContentDelta(text="partial")]

    @pytest.mark.asyncio
    async def test_abort_while_waiting_for_tool_results(self):
        provider = MockProvider()
        provider.responses = [make_tool_call_chunks("slow", {})]
        controller = AbortController()
        turn = ConversationTurn(provider, "m", abort=controller.signal, tool_schemas=[{}])

        with pytest.raises(AbortedError):
            async for event in turn.run("go"):
                if isinstance(event, ToolCallRequest):
                    controller.abort()

        assert turn.pending_tool_calls == []

    @pytest.mark.asyncio
    async def test_aborted_before_start(self):
        controller = AbortController()
        controller.abort()
        turn = ConversationTurn(MockProvider(), "m", abort=controller.signal)
        with pytest.raises(AbortedError):
            await collect(turn)
