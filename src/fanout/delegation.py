"""Sub-agents: running scheduled tasks as conversation turns.

:class:`DelegationRuntime` ties a provider, a model and a
:class:`~fanout.config.RuntimeConfig` together and hands out the
``delegate_task``, ``spawn_sub_agent`` and ``aggregate_results`` tools bound
to it.  Each sub-agent gets a child runtime one level deeper, so delegation
nests until ``max_delegation_depth`` is reached.
"""

import logging
import os

from pydantic import ValidationError

from fanout.abort import AbortSignal
from fanout.aggregate import AggregateRequest, aggregate
from fanout.config import RuntimeConfig
from fanout.errors import ToolExecutionError, TransportError
from fanout.events import Error
from fanout.provider import ModelProvider
from fanout.scheduler import (
    BatchResult,
    ExecutionMode,
    Priority,
    SubAgentTask,
    TaskBatch,
    TaskScheduler,
    TaskState,
    TaskTransition,
)
from fanout.tools import Tool, ToolContext, ToolRegistry, tool
from fanout.turn import ConversationTurn

logger = logging.getLogger(__name__)

MAX_SUBTASKS = 10
MIN_TIMEOUT = 5.0
MAX_TIMEOUT = 300.0
MAX_CONCURRENT_AGENTS = 5


def build_sub_agent_prompt(task: SubAgentTask) -> str:
    prompt = task.description
    if task.working_context:
        prompt = f"Context: {task.working_context}\n\nTask: {prompt}"
    if task.working_directory:
        prompt += f"\n\nNote: Execute this task in the directory: {task.working_directory}"
    return prompt


class SubAgentRunner:
    """Task runner that answers a task with a fresh conversation turn."""

    def __init__(self, runtime: "DelegationRuntime"):
        self.runtime = runtime

    async def __call__(self, task: SubAgentTask, abort: AbortSignal) -> str:
        child = self.runtime.child()
        turn = ConversationTurn(
            self.runtime.provider,
            self.runtime.model,
            config=self.runtime.config.turn_config(),
            tool_executor=child.registry(),
            abort=abort,
        )
        logger.info(f"Sub-agent for {task.id} starting at depth {child.depth}")
        try:
            async for event in turn.run(build_sub_agent_prompt(task)):
                if isinstance(event, Error):
                    raise TransportError(event.message)
        finally:
            self.runtime.release(child)
        return turn.final_text


class DelegationRuntime:
    """Everything a level of delegation needs to start sub-agents.

    Args:
        provider: Backend shared by every sub-agent.
        model: Model name for sub-agent turns.
        config: Timeouts, concurrency and depth limits.
        tools: Ordinary tools every agent at every depth may use.
        depth: Nesting level; the top-level agent is 0.
        listener: Receives task transitions of every batch at this level.
    """

    def __init__(
        self,
        provider: ModelProvider,
        model: str | None = None,
        *,
        config: RuntimeConfig | None = None,
        tools: list[Tool] | None = None,
        depth: int = 0,
        listener=None,
    ):
        self.provider = provider
        self.config = config or RuntimeConfig()
        self.model = model or self.config.model
        self.tools = list(tools or [])
        self.depth = depth
        self.listener = listener
        self.scheduler = TaskScheduler(SubAgentRunner(self), listener=self._on_transition)
        self._children: list[DelegationRuntime] = []

    @property
    def can_delegate(self) -> bool:
        return self.depth < self.config.max_delegation_depth

    def child(self) -> "DelegationRuntime":
        runtime = DelegationRuntime(
            self.provider, self.model,
            config=self.config, tools=self.tools,
            depth=self.depth + 1, listener=self.listener,
        )
        self._children.append(runtime)
        return runtime

    def registry(self) -> ToolRegistry:
        """Tools for an agent at this depth."""
        tools = list(self.tools)
        tools.append(aggregate_results)
        if self.can_delegate:
            tools.append(delegate_task.bind(runtime=self))
            tools.append(spawn_sub_agent.bind(runtime=self))
        return ToolRegistry(tools)

    @property
    def busy(self) -> bool:
        """Batches are still draining at this level or below."""
        return not self.scheduler.idle or any(c.busy for c in self._children)

    def release(self, child: "DelegationRuntime") -> None:
        """Drop *child* once its sub-agent is done, unless it left background work."""
        if not child.busy and child in self._children:
            self._children.remove(child)

    async def wait_all(self) -> None:
        """Wait for background batches at this level and below."""
        await self.scheduler.wait_all()
        for child in list(self._children):
            await child.wait_all()
        self._children = [c for c in self._children if c.busy]

    def _on_transition(self, transition: TaskTransition) -> None:
        if self.listener is not None:
            self.listener(transition)


# ----------------------------------------------------------------------
# Validation
# ----------------------------------------------------------------------

def _check_timeout(timeout, label: str) -> str | None:
    if timeout is None:
        return None
    if not isinstance(timeout, (int, float)) or not MIN_TIMEOUT <= timeout <= MAX_TIMEOUT:
        return f"{label} timeout must be between {MIN_TIMEOUT:g} and {MAX_TIMEOUT:g} seconds."
    return None


def validate_delegation(main_task: str, subtasks: list, max_concurrent_agents: int) -> str | None:
    """Return the reason a delegation request is invalid, or ``None``."""
    if not main_task or not main_task.strip():
        return "Main task description cannot be empty."
    if not subtasks:
        return "At least one subtask must be provided."
    if len(subtasks) > MAX_SUBTASKS:
        return f"Maximum of {MAX_SUBTASKS} subtasks allowed per delegation."
    for i, subtask in enumerate(subtasks, start=1):
        if not isinstance(subtask, dict):
            return f"Subtask {i} must be an object."
        description = subtask.get("task") or ""
        if not description.strip():
            return f"Subtask {i} description cannot be empty."
        if len(description) < 5:
            return f"Subtask {i} description must be at least 5 characters long."
        reason = _check_timeout(subtask.get("timeout"), f"Subtask {i}")
        if reason:
            return reason
        if subtask.get("priority", "medium") not in {p.value for p in Priority}:
            return f"Subtask {i} priority must be one of low, medium, high."
    if not 1 <= max_concurrent_agents <= MAX_CONCURRENT_AGENTS:
        return f"Max concurrent agents must be between 1 and {MAX_CONCURRENT_AGENTS}."
    return None


def validate_sub_agent(task: str, timeout, working_directory: str | None) -> str | None:
    if not task or not task.strip():
        return "Task description cannot be empty."
    if len(task) < 10:
        return "Task description must be at least 10 characters long."
    reason = _check_timeout(timeout, "Task")
    if reason:
        return reason
    if working_directory and os.path.isabs(working_directory):
        return "Working directory cannot be absolute. Must be relative to the project root directory."
    return None


def _require_depth(runtime: DelegationRuntime) -> None:
    if not runtime.can_delegate:
        raise ToolExecutionError(
            f"Delegation depth limit ({runtime.config.max_delegation_depth}) reached. "
            "Complete the task directly."
        )


def format_batch_result(main_task: str, outcome: BatchResult) -> str:
    summary = outcome.summary
    lines = [
        "## Task Delegation Results",
        "",
        f"**Main Task:** {main_task}",
        "",
        "**Summary:**",
        f"- Successful: {summary.succeeded}/{summary.total_tasks}",
    ]
    if summary.failed:
        lines.append(f"- Failed: {summary.failed}")
    if summary.timed_out:
        lines.append(f"- Timed out: {summary.timed_out}")
    if summary.cancelled:
        lines.append(f"- Cancelled: {summary.cancelled}")
    lines.append(f"- Total Time: {summary.total_execution_time:.1f}s")
    if summary.average_task_time > 0:
        lines.append(f"- Average Task Time: {summary.average_task_time:.1f}s")
    text = "\n".join(lines) + "\n"
    if outcome.report:
        text += f"\n{outcome.report}"
    return text


# ----------------------------------------------------------------------
# Tools
# ----------------------------------------------------------------------

@tool(description=(
    "Break a complex task into subtasks and run each with an independent "
    "sub-agent, in parallel or sequentially, then combine their results. "
    "Make subtasks independent when running in parallel."
))
async def delegate_task(
    main_task: str,
    subtasks: list,
    execution_mode: str = "parallel",
    max_concurrent_agents: int = 3,
    wait_for_completion: bool = True,
    aggregate_results: bool = True,
    runtime=None,
    context: ToolContext = None,
):
    """Delegate subtasks to sub-agents.

    Args:
        main_task: Overall description of the task being delegated.
        subtasks: Subtasks to execute, 1 to 10 objects with ``task`` and
            optional ``context``, ``priority``, ``timeout`` and ``working_directory``.
        execution_mode: ``parallel`` (faster) or ``sequential`` (safer).
        max_concurrent_agents: Agents running at once in parallel mode, 1 to 5.
        wait_for_completion: Wait for every subtask before returning.
        aggregate_results: Combine the subtask results into one report.
    """
    _require_depth(runtime)
    reason = validate_delegation(main_task, subtasks, max_concurrent_agents)
    if reason is None and execution_mode not in {m.value for m in ExecutionMode}:
        reason = "Execution mode must be parallel or sequential."
    if reason:
        raise ToolExecutionError(f"Task delegation rejected\nReason: {reason}")

    tasks = [
        SubAgentTask(
            description=s["task"],
            working_context=s.get("context"),
            priority=Priority(s.get("priority", "medium")),
            timeout=float(s.get("timeout") or runtime.config.default_task_timeout),
            working_directory=s.get("working_directory"),
        )
        for s in subtasks
    ]
    batch = TaskBatch(
        tasks=tasks,
        execution_mode=ExecutionMode(execution_mode),
        max_concurrent_agents=max_concurrent_agents,
        wait_for_completion=wait_for_completion,
        aggregate_results=aggregate_results,
        main_task=main_task,
    )
    abort = context.abort if context is not None else None
    outcome = await runtime.scheduler.dispatch(batch, abort=abort)

    if not wait_for_completion:
        status = runtime.scheduler.status()
        return (
            f"Task delegation started: {main_task}\n\n"
            f"Status: {status.running} running, {status.pending} pending\n"
            f"Task ids: {', '.join(h.id for h in outcome)}\n"
            "Execution continuing in background..."
        )
    runtime.scheduler.clear_completed(t.id for t in tasks)
    return format_batch_result(main_task, outcome)


@tool(description=(
    "Run one well-defined, self-contained task with an independent sub-agent "
    "and return its output. Prefer delegate_task for several tasks."
))
async def spawn_sub_agent(
    task: str,
    task_context: str = None,
    timeout: float = None,
    priority: str = "medium",
    working_directory: str = None,
    runtime=None,
    context: ToolContext = None,
):
    """Start a single sub-agent.

    Args:
        task: Clear and specific prompt for the sub-agent.
        task_context: Extra background such as file paths.
        timeout: Maximum execution time in seconds, 5 to 300.
        priority: ``low``, ``medium`` or ``high``.
        working_directory: Directory relative to the project root.
    """
    _require_depth(runtime)
    reason = validate_sub_agent(task, timeout, working_directory)
    if reason is None and priority not in {p.value for p in Priority}:
        reason = "Priority must be one of low, medium, high."
    if reason:
        raise ToolExecutionError(f"Sub-agent rejected\nReason: {reason}")

    sub_task = SubAgentTask(
        description=task,
        working_context=task_context,
        priority=Priority(priority),
        timeout=float(timeout or runtime.config.default_task_timeout),
        working_directory=working_directory,
    )
    batch = TaskBatch(tasks=[sub_task], aggregate_results=False, main_task=task)
    abort = context.abort if context is not None else None
    await runtime.scheduler.dispatch(batch, abort=abort)
    runtime.scheduler.clear_completed([sub_task.id])

    if sub_task.state is TaskState.SUCCEEDED:
        return f"Sub-agent completed successfully\n\n**Task:** {task}\n\n**Output:**\n{sub_task.result}"
    raise ToolExecutionError(
        f"Sub-agent {sub_task.state.value}\n\n**Task:** {task}\n\n**Error:** {sub_task.error}"
    )


@tool(description=(
    "Combine, compare, analyze or summarize results from several agents or "
    "operations into one document (markdown, text, json or report format)."
))
def aggregate_results(
    results: list,
    aggregation_type: str = "summary",
    title: str = "Aggregated Results",
    format: str = "markdown",
    include_metadata: bool = False,
    custom_instructions: str = None,
    group_by: str = None,
    sort_by: str = "name",
    context: ToolContext = None,
):
    """Aggregate named results.

    Args:
        results: 1 to 20 objects with ``name``, ``content`` and optional ``metadata``.
        aggregation_type: summary, merge, compare, analyze or custom.
        title: Title for the aggregated output.
        format: markdown, text, json or report.
        include_metadata: Include each result's metadata.
        custom_instructions: Required for the custom aggregation type.
        group_by: Metadata field to group results by.
        sort_by: name, length, timestamp or none.
    """
    if context is not None and context.abort is not None:
        context.abort.raise_if_aborted()
    try:
        request = AggregateRequest.model_validate({
            "results": results,
            "aggregation_type": aggregation_type,
            "title": title,
            "format": format,
            "include_metadata": include_metadata,
            "custom_instructions": custom_instructions,
            "group_by": group_by,
            "sort_by": sort_by,
        })
    except ValidationError as e:
        raise ToolExecutionError(f"Result aggregation rejected\nReason: {e}") from e
    return aggregate(request)


_SUBTASK_ITEM_SCHEMA = {
    "type": "object",
    "properties": {
        "task": {"type": "string", "description": "Specific task description for this subtask"},
        "context": {"type": "string", "description": "Optional context specific to this subtask"},
        "priority": {"type": "string", "enum": ["low", "medium", "high"]},
        "timeout": {"type": "number", "minimum": MIN_TIMEOUT, "maximum": MAX_TIMEOUT},
        "working_directory": {"type": "string", "description": "Relative to the project root"},
    },
    "required": ["task"],
}

_RESULT_ITEM_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "content": {"type": "string"},
        "metadata": {"type": "object"},
    },
    "required": ["name", "content"],
}

delegate_task.parameters_schema["properties"]["subtasks"]["items"] = _SUBTASK_ITEM_SCHEMA
delegate_task.parameters_schema["properties"]["execution_mode"]["enum"] = ["parallel", "sequential"]
spawn_sub_agent.parameters_schema["properties"]["priority"]["enum"] = ["low", "medium", "high"]
aggregate_results.parameters_schema["properties"]["results"]["items"] = _RESULT_ITEM_SCHEMA
aggregate_results.parameters_schema["properties"]["aggregation_type"]["enum"] = [
    "summary", "merge", "compare", "analyze", "custom",
]
