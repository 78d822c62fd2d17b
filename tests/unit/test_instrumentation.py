"""Unit tests for the instrumentation module.

OTel interactions are mocked; ``opentelemetry-api`` is a test dependency so
``SpanKind`` / ``StatusCode`` can be imported for exact assertions.
"""

import logging
from unittest.mock import MagicMock, patch

import pytest
from opentelemetry.trace import SpanKind, StatusCode

import fanout.instrumentation as inst
from fanout.events import UsageReport
from fanout.instrumentation import (
    completion_span,
    record_error,
    record_task_state,
    record_usage,
    task_span,
    tool_span,
    turn_span,
    uninstrument,
)


@pytest.fixture(autouse=True)
def _reset_tracer():
    inst._tracer = None
    yield
    inst._tracer = None


# -------------------------------------------------------------------
# instrument() / uninstrument()
# -------------------------------------------------------------------


class TestInstrument:
    def _mock_otel(self, mock_trace):
        return (
            patch("importlib.util.find_spec", return_value=MagicMock()),
            patch.dict("sys.modules", {
                "opentelemetry": MagicMock(trace=mock_trace),
                "opentelemetry.trace": mock_trace,
            }),
        )

    def test_raises_without_otel_installed(self):
        with patch("importlib.util.find_spec", return_value=None):
            with pytest.raises(ImportError, match="pip install"):
                inst.instrument()

    def test_sets_global_tracer(self):
        mock_tracer = MagicMock()
        mock_trace = MagicMock()
        mock_trace.get_tracer.return_value = mock_tracer
        mock_trace.NoOpTracer = type("NoOpTracer", (), {})

        p1, p2 = self._mock_otel(mock_trace)
        with p1, p2:
            inst.instrument(tracer_name="my-app")

        assert inst._tracer is mock_tracer
        mock_trace.get_tracer.assert_called_once_with("my-app")

    def test_logs_hint_for_noop_tracer(self, caplog):
        NoOpTracer = type("NoOpTracer", (), {})
        mock_trace = MagicMock()
        mock_trace.get_tracer.return_value = NoOpTracer()
        mock_trace.NoOpTracer = NoOpTracer

        p1, p2 = self._mock_otel(mock_trace)
        with p1, p2, caplog.at_level(logging.INFO, logger="fanout.instrumentation"):
            inst.instrument()

        assert any("No TracerProvider configured" in r.message for r in caplog.records)

    def test_uninstrument_clears_tracer(self):
        inst._tracer = MagicMock()
        uninstrument()
        assert inst._tracer is None


# -------------------------------------------------------------------
# Span helpers
# -------------------------------------------------------------------


class TestSpansUninstrumented:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("span_fn,args", [
        (turn_span, ("m",)),
        (completion_span, ("openai", "m")),
        (tool_span, ("t", "call_1")),
        (task_span, ("task-1", "high", 30.0)),
    ], ids=["turn_span", "completion_span", "tool_span", "task_span"])
    async def test_span_yields_none_without_tracer(self, span_fn, args):
        async with span_fn(*args) as s:
            assert s is None


class TestSpansInstrumented:
    @pytest.fixture(autouse=True)
    def _set_mock_tracer(self):
        self.mock_span = MagicMock()
        self.mock_tracer = MagicMock()
        self.mock_tracer.start_span.return_value = self.mock_span
        self.mock_tracer.start_as_current_span.return_value.__enter__ = MagicMock(return_value=self.mock_span)
        self.mock_tracer.start_as_current_span.return_value.__exit__ = MagicMock(return_value=False)
        inst._tracer = self.mock_tracer

    @pytest.mark.asyncio
    async def test_turn_span_is_started_and_ended(self):
        async with turn_span("qwen-plus", "French") as s:
            assert s is self.mock_span

        self.mock_tracer.start_span.assert_called_once_with(
            "invoke_agent qwen-plus",
            attributes={
                "gen_ai.operation.name": "invoke_agent",
                "gen_ai.request.model": "qwen-plus",
                "fanout.turn.language": "French",
            },
        )
        self.mock_span.end.assert_called_once()
        self.mock_tracer.start_as_current_span.assert_not_called()

    @pytest.mark.asyncio
    async def test_completion_span_has_explicit_parent(self):
        parent = MagicMock()
        with patch("opentelemetry.trace.set_span_in_context", return_value="ctx") as set_ctx:
            async with completion_span("dashscope", "qwen-plus", parent) as s:
                assert s is self.mock_span

        set_ctx.assert_called_once_with(parent)
        self.mock_tracer.start_span.assert_called_once_with(
            "chat qwen-plus",
            context="ctx",
            kind=SpanKind.CLIENT,
            attributes={
                "gen_ai.operation.name": "chat",
                "gen_ai.provider.name": "dashscope",
                "gen_ai.request.model": "qwen-plus",
            },
        )
        self.mock_span.end.assert_called_once()

    @pytest.mark.asyncio
    async def test_span_ended_on_error(self):
        with pytest.raises(RuntimeError):
            async with turn_span("m"):
                raise RuntimeError("boom")
        self.mock_span.end.assert_called_once()

    @pytest.mark.asyncio
    async def test_tool_span(self):
        async with tool_span("lookup", "call_42") as s:
            assert s is self.mock_span

        self.mock_tracer.start_as_current_span.assert_called_once_with(
            "execute_tool lookup",
            attributes={
                "gen_ai.operation.name": "execute_tool",
                "gen_ai.tool.name": "lookup",
                "gen_ai.tool.call.id": "call_42",
            },
        )

    @pytest.mark.asyncio
    async def test_task_span(self):
        async with task_span("task-1", "high", 30.0) as s:
            assert s is self.mock_span

        self.mock_tracer.start_as_current_span.assert_called_once_with(
            "run_task task-1",
            attributes={
                "fanout.task.id": "task-1",
                "fanout.task.priority": "high",
                "fanout.task.timeout": 30.0,
            },
        )


# -------------------------------------------------------------------
# Recording helpers
# -------------------------------------------------------------------


class TestRecording:
    def test_record_usage(self):
        span = MagicMock()
        record_usage(span, UsageReport(prompt_tokens=100, completion_tokens=50, total_tokens=150))
        span.set_attribute.assert_any_call("gen_ai.usage.input_tokens", 100)
        span.set_attribute.assert_any_call("gen_ai.usage.output_tokens", 50)

    def test_noop_on_none_span(self):
        record_usage(None, UsageReport())
        record_task_state(None, "succeeded")
        record_error(None, RuntimeError("boom"))

    def test_record_task_state(self):
        span = MagicMock()
        record_task_state(span, "timedOut")
        span.set_attribute.assert_called_once_with("fanout.task.state", "timedOut")

    def test_record_error(self):
        span = MagicMock()
        exc = RuntimeError("boom")
        record_error(span, exc)

        span.set_status.assert_called_once_with(StatusCode.ERROR, "boom")
        span.record_exception.assert_called_once_with(exc)
        span.set_attribute.assert_called_once_with("error.type", "RuntimeError")
