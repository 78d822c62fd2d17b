"""The conversation turn: one streamed request/response/tool loop with a backend."""

import asyncio
import logging
from collections.abc import AsyncIterator

from fanout import instrumentation as inst
from fanout.abort import AbortSignal
from fanout.config import TurnConfig
from fanout.errors import AbortedError, FanoutError, TransportError
from fanout.events import (
    ContentDelta,
    Done,
    Error,
    StreamEvent,
    ToolCallRequest,
    UsageReport,
)
from fanout.message import (
    Message,
    MessageRole,
    ToolCallRequestMessage,
    ToolCallResultMessage,
    system_message,
    user_message,
)
from fanout.provider import ModelProvider
from fanout.streaming import StreamDecoder
from fanout.thinking import ThoughtSummary, parse_thinking_content, strip_thinking_tags
from fanout.tools import ToolExecutor, ToolResult

logger = logging.getLogger(__name__)


class ConversationTurn:
    """One request/response/tool loop with a backend.

    ``run()`` streams events until the model answers without requesting
    tools.  Tool calls are executed by *tool_executor* when one is given;
    otherwise the caller answers each :class:`ToolCallRequest` with
    :meth:`submit_tool_result` before pulling the next event.

    The system prompt is rendered from *config* at call time and never
    stored in :attr:`messages`.  A turn runs once; build a new one to
    start over.

    Args:
        provider: Backend adapter yielding raw response chunks.
        model: Model name sent with every request.
        config: Prompt, language and loop limits.
        tool_executor: Runs requested tools. May be ``None``.
        tool_schemas: Tool schemas advertised to the model.  Defaults to
            ``tool_executor.schemas()`` when the executor provides it.
        abort: Signal that cancels the turn at any suspension point.
        history: Prior messages to continue from.
    """

    def __init__(
        self,
        provider: ModelProvider,
        model: str,
        *,
        config: TurnConfig | None = None,
        tool_executor: ToolExecutor | None = None,
        tool_schemas: list[dict] | None = None,
        abort: AbortSignal | None = None,
        history: list[Message] | None = None,
    ):
        self.provider = provider
        self.model = model
        self.config = config or TurnConfig()
        self.tool_executor = tool_executor
        if tool_schemas is None and hasattr(tool_executor, "schemas"):
            tool_schemas = tool_executor.schemas()
        self.tool_schemas = tool_schemas or []
        self.abort = abort or AbortSignal()
        self.messages: list[Message] = list(history or [])

        self.usage = UsageReport()
        self.final_text: str = ""
        self.thought: ThoughtSummary | None = None
        self.error: FanoutError | None = None
        self.round_trips = 0

        self._started = False
        self._pending: dict[str, asyncio.Future] = {}
        self._tool_tasks: list[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Caller-supplied tool results
    # ------------------------------------------------------------------

    @property
    def pending_tool_calls(self) -> list[str]:
        return [call_id for call_id, fut in self._pending.items() if not fut.done()]

    def submit_tool_result(self, call_id: str, content: str, is_error: bool = False) -> None:
        """Supply the result for a pending tool call.

        Raises:
            KeyError: If no call with *call_id* is waiting.
            RuntimeError: If a result was already supplied.
        """
        fut = self._pending.get(call_id)
        if fut is None:
            raise KeyError(f"no pending tool call {call_id!r}")
        if fut.done():
            raise RuntimeError(f"result for tool call {call_id!r} already supplied")
        fut.set_result(ToolResult(content=content, is_error=is_error))

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run_to_completion(self, initial_content: str) -> str:
        """Drain :meth:`run` and return the final answer.

        Raises:
            TransportError: If the turn ended with an :class:`Error` event.
        """
        async for event in self.run(initial_content):
            if isinstance(event, Error):
                raise TransportError(event.message)
        return self.final_text

    async def run(self, initial_content: str) -> AsyncIterator[StreamEvent]:
        """Run the loop, yielding events in backend arrival order.

        Raises:
            AbortedError: When the abort signal fires. No further events
                are emitted.
            RuntimeError: When called a second time.
        """
        if self._started:
            raise RuntimeError("a ConversationTurn runs once; construct a new one")
        self._started = True
        self.messages.append(user_message(initial_content))

        async with inst.turn_span(self.model, self.config.language) as span:
            try:
                for _ in range(self.config.max_turns):
                    self.abort.raise_if_aborted()
                    self.round_trips += 1
                    text = ""
                    calls: list[ToolCallRequest] = []
                    done: Done | None = None

                    try:
                        async with inst.completion_span(self.provider.system, self.model, span) as chat_span:
                            async for event in self._stream_events():
                                if isinstance(event, ContentDelta):
                                    text += event.text
                                elif isinstance(event, UsageReport):
                                    self.usage = self.usage + event
                                    inst.record_usage(chat_span, event)
                                elif isinstance(event, ToolCallRequest):
                                    calls.append(event)
                                    self._expect_result(event)
                                elif isinstance(event, Done):
                                    done = event
                                    continue
                                yield event
                    except TransportError as e:
                        logger.warning(f"Turn failed on round trip {self.round_trips}: {e}")
                        self.error = e
                        inst.record_error(span, e)
                        yield Error(message=str(e))
                        return

                    if not calls:
                        self._finish(text)
                        yield done or Done(finish_reason="stop")
                        return

                    results = await self._await_results(calls)
                    self.messages.append(ToolCallRequestMessage(
                        role=MessageRole.ASSISTANT,
                        content=strip_thinking_tags(text),
                        tool_calls=calls,
                    ))
                    for call, result in zip(calls, results):
                        self.messages.append(ToolCallResultMessage(
                            role=MessageRole.TOOL,
                            content=result.content,
                            tool_call_id=call.id,
                        ))

                message = f"maximum turns ({self.config.max_turns}) reached"
                logger.warning(f"Turn stopped: {message}")
                self.error = FanoutError(message)
                yield Error(message=message)
            except AbortedError as e:
                logger.info(f"Turn aborted: {e}")
                inst.record_error(span, e)
                raise
            finally:
                self._cancel_tool_tasks()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _payload(self) -> list[dict]:
        return [
            system_message(self.config.render_system_prompt()).model_dump(),
            *[m.model_dump() for m in self.messages],
        ]

    async def _stream_events(self) -> AsyncIterator[StreamEvent]:
        decoder = StreamDecoder()
        chunks = self.provider.stream(
            self.model, self._payload(), tools=self.tool_schemas or None,
        ).__aiter__()
        try:
            while not decoder.finished:
                try:
                    chunk = await self.abort.race(chunks.__anext__())
                except StopAsyncIteration:
                    break
                for event in decoder.decode(chunk):
                    yield event
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()
        for event in decoder.flush():
            yield event

    def _expect_result(self, call: ToolCallRequest) -> None:
        fut = asyncio.get_running_loop().create_future()
        self._pending[call.id] = fut
        if self.tool_executor is not None:
            self._tool_tasks.append(asyncio.ensure_future(self._execute(call, fut)))

    async def _execute(self, call: ToolCallRequest, fut: asyncio.Future) -> None:
        try:
            result = await self.tool_executor(
                call.name, call.arguments_json, call.id, abort=self.abort,
            )
        except AbortedError:
            return
        except Exception as e:
            logger.error(f"Tool executor failed for {call.name}: {e}")
            result = ToolResult(content=f"Error calling {call.name}: {e}", is_error=True)
        if not fut.done():
            fut.set_result(result)

    async def _await_results(self, calls: list[ToolCallRequest]) -> list[ToolResult]:
        futures = [self._pending[c.id] for c in calls]
        results = await self.abort.race(asyncio.gather(*futures))
        for call in calls:
            del self._pending[call.id]
        self._tool_tasks = [t for t in self._tool_tasks if not t.done()]
        return list(results)

    def _finish(self, text: str) -> None:
        parsed = parse_thinking_content(text)
        self.thought = parsed.thought_summary
        self.final_text = parsed.regular_content if parsed.has_thinking else text
        self.messages.append(Message(role=MessageRole.ASSISTANT, content=self.final_text))

    def _cancel_tool_tasks(self) -> None:
        for task in self._tool_tasks:
            if not task.done():
                task.cancel()
        self._tool_tasks = []
        for fut in self._pending.values():
            if not fut.done():
                fut.cancel()
