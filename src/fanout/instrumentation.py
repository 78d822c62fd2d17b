"""Optional OpenTelemetry instrumentation for fanout.

Call ``fanout.instrumentation.instrument()`` once at startup to enable tracing.
Requires ``opentelemetry-api`` to be installed; the runtime
works identically without it.
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "fanout") -> None:
    """Enable OpenTelemetry tracing for turns, tools and scheduled tasks.

    Call once at startup, after configuring your TracerProvider.
    Requires ``opentelemetry-api``: ``pip install fanout[otel]``

    Example::

        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider

        trace.set_tracer_provider(TracerProvider())

        from fanout.instrumentation import instrument
        instrument()

    Args:
        tracer_name: Name passed to ``trace.get_tracer()``.

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for instrumentation. "
            "Install it with: pip install fanout[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info(
            "No TracerProvider configured; spans will be "
            "discarded. Set up a TracerProvider to export "
            "traces."
        )
    else:
        logger.info("fanout instrumentation enabled")


def uninstrument() -> None:
    """Disable OpenTelemetry tracing.

    Subsequent operations will not emit spans.
    """
    global _tracer
    _tracer = None


# Turn and chat spans stay open across the yields of an async generator, so
# they are never made "current": the context would be detached from a
# different task than the one that attached it.  Parentage is explicit.

@asynccontextmanager
async def turn_span(model: str, language: str | None = None):
    """Wrap a ConversationTurn.run() invocation in an ``invoke_agent`` span."""
    if _tracer is None:
        yield None
        return
    attributes = {
        "gen_ai.operation.name": "invoke_agent",
        "gen_ai.request.model": model,
    }
    if language:
        attributes["fanout.turn.language"] = language
    span = _tracer.start_span(f"invoke_agent {model}", attributes=attributes)
    try:
        yield span
    finally:
        span.end()


@asynccontextmanager
async def completion_span(system: str, model: str, parent=None):
    """Wrap one streamed provider round trip in a ``chat`` span."""
    if _tracer is None:
        yield None
        return
    from opentelemetry import trace
    from opentelemetry.trace import SpanKind

    context = trace.set_span_in_context(parent) if parent is not None else None
    span = _tracer.start_span(
        f"chat {model}",
        context=context,
        kind=SpanKind.CLIENT,
        attributes={
            "gen_ai.operation.name": "chat",
            "gen_ai.provider.name": system,
            "gen_ai.request.model": model,
        },
    )
    try:
        yield span
    finally:
        span.end()


@asynccontextmanager
async def tool_span(tool_name: str, call_id: str):
    """Wrap a tool execution in an ``execute_tool`` span."""
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(
        f"execute_tool {tool_name}",
        attributes={
            "gen_ai.operation.name": "execute_tool",
            "gen_ai.tool.name": tool_name,
            "gen_ai.tool.call.id": call_id,
        },
    ) as span:
        yield span


@asynccontextmanager
async def task_span(task_id: str, priority: str, timeout: float):
    """Wrap one scheduled sub-agent task in a ``run_task`` span."""
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(
        f"run_task {task_id}",
        attributes={
            "fanout.task.id": task_id,
            "fanout.task.priority": priority,
            "fanout.task.timeout": timeout,
        },
    ) as span:
        yield span


def record_usage(span, usage) -> None:
    """Set token-usage attributes from a UsageReport on a span."""
    if span is None or usage is None:
        return
    span.set_attribute("gen_ai.usage.input_tokens", usage.prompt_tokens)
    span.set_attribute("gen_ai.usage.output_tokens", usage.completion_tokens)


def record_task_state(span, state: str) -> None:
    if span is None:
        return
    span.set_attribute("fanout.task.state", state)


def record_error(span, exception: BaseException) -> None:
    """Record an exception and set ERROR status on a span.

    Sets ``error.type`` per GenAI semantic conventions.
    No-ops when *span* is ``None`` (tracing disabled).
    """
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute(
        "error.type", type(exception).__qualname__
    )
