"""Bounded-concurrency scheduling of sub-agent tasks.

A :class:`TaskScheduler` runs a :class:`TaskBatch` on a fixed pool of
workers.  Tasks are admitted by priority, then batch order; each gets its
own abort controller and timeout; a batch-level abort reaches every running
task while a task's own timeout or cancellation stays local to it.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from fanout import instrumentation as inst
from fanout.abort import AbortController, AbortSignal
from fanout.aggregate import AggregationType, aggregate_batch
from fanout.errors import AbortedError, InvalidTransitionError, TaskTimeoutError

logger = logging.getLogger(__name__)


class Priority(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}


class TaskState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timedOut"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (TaskState.PENDING, TaskState.RUNNING)


_ALLOWED_TRANSITIONS = {
    TaskState.PENDING: {TaskState.RUNNING, TaskState.CANCELLED},
    TaskState.RUNNING: {
        TaskState.SUCCEEDED, TaskState.FAILED,
        TaskState.TIMED_OUT, TaskState.CANCELLED,
    },
}


class ExecutionMode(Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


class SubAgentTask(BaseModel):
    """One unit of delegated work and its lifecycle.

    Args:
        description: What the sub-agent should do.
        priority: Admission priority.
        timeout: Seconds the task may run once admitted.
        working_context: Background passed along with the description.
        working_directory: Directory the sub-agent should work in.
    """

    id: str = Field(default_factory=lambda: f"task-{uuid.uuid4().hex[:8]}")
    description: str = Field(min_length=1)
    priority: Priority = Priority.MEDIUM
    timeout: float = Field(default=60.0, gt=0)
    working_context: str | None = None
    working_directory: str | None = None

    state: TaskState = TaskState.PENDING
    result: str | None = None
    error: str | None = None
    started_at: float | None = None
    finished_at: float | None = None

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def transition(
        self, new_state: TaskState, *,
        result: str | None = None, error: str | None = None,
    ) -> TaskState:
        """Move forward to *new_state* and return the previous state.

        Raises:
            InvalidTransitionError: If the move is not strictly forward.
        """
        previous = self.state
        if new_state not in _ALLOWED_TRANSITIONS.get(previous, set()):
            raise InvalidTransitionError(
                f"task {self.id}: {previous.value} -> {new_state.value} is not allowed"
            )
        now = time.monotonic()
        if new_state is TaskState.RUNNING:
            self.started_at = now
        else:
            self.finished_at = now
        self.state = new_state
        if result is not None:
            self.result = result
        if error is not None:
            self.error = error
        return previous


class TaskBatch(BaseModel):
    """Tasks dispatched together under one concurrency policy.

    Only the member tasks' lifecycle fields change after dispatch.
    """

    model_config = ConfigDict(frozen=True)

    tasks: list[SubAgentTask]
    execution_mode: ExecutionMode = ExecutionMode.PARALLEL
    max_concurrent_agents: int = Field(default=3, ge=1)
    wait_for_completion: bool = True
    aggregate_results: bool = True
    main_task: str = ""
    aggregation_type: AggregationType = AggregationType.SUMMARY

    @model_validator(mode="after")
    def _unique_ids(self) -> TaskBatch:
        ids = [t.id for t in self.tasks]
        if len(ids) != len(set(ids)):
            raise ValueError("task ids must be unique within a batch")
        return self

    @property
    def pool_size(self) -> int:
        if self.execution_mode is ExecutionMode.SEQUENTIAL:
            return 1
        return self.max_concurrent_agents


TaskRunner = Callable[[SubAgentTask, AbortSignal], Awaitable[str]]


@dataclass
class TaskTransition:
    task: SubAgentTask
    previous: TaskState
    current: TaskState


@dataclass
class ExecutionSummary:
    total_tasks: int
    succeeded: int
    failed: int
    timed_out: int
    cancelled: int
    total_execution_time: float
    average_task_time: float

    @classmethod
    def from_tasks(cls, tasks: list[SubAgentTask], elapsed: float) -> ExecutionSummary:
        def count(state: TaskState) -> int:
            return sum(1 for t in tasks if t.state is state)

        durations = [
            t.duration for t in tasks
            if t.state is TaskState.SUCCEEDED and t.duration is not None
        ]
        return cls(
            total_tasks=len(tasks),
            succeeded=count(TaskState.SUCCEEDED),
            failed=count(TaskState.FAILED),
            timed_out=count(TaskState.TIMED_OUT),
            cancelled=count(TaskState.CANCELLED),
            total_execution_time=elapsed,
            average_task_time=sum(durations) / len(durations) if durations else 0.0,
        )


@dataclass
class SchedulerStatus:
    """Task counts plus the worker cap of the batches still draining."""

    running: int
    pending: int
    succeeded: int
    failed: int
    timed_out: int
    cancelled: int
    max_concurrent: int = 0


@dataclass
class BatchResult:
    """What a waiting :meth:`TaskScheduler.dispatch` returns."""

    tasks: list[SubAgentTask]
    summary: ExecutionSummary
    report: str | None = None

    @property
    def results(self) -> dict[str, str]:
        return {
            t.id: t.result for t in self.tasks
            if t.state is TaskState.SUCCEEDED and t.result is not None
        }


class TaskHandle:
    """Live view of a task dispatched without waiting."""

    def __init__(self, task: SubAgentTask, scheduler: TaskScheduler, finished: asyncio.Event):
        self.task = task
        self._scheduler = scheduler
        self._finished = finished

    def __repr__(self) -> str:
        return f"TaskHandle({self.task.id!r}, state={self.task.state.value})"

    @property
    def id(self) -> str:
        return self.task.id

    @property
    def state(self) -> TaskState:
        return self.task.state

    @property
    def result(self) -> str | None:
        return self.task.result

    def done(self) -> bool:
        return self.task.state.is_terminal

    async def wait(self) -> SubAgentTask:
        await self._finished.wait()
        return self.task

    def cancel(self) -> bool:
        return self._scheduler.cancel_task(self.task.id)


class TaskScheduler:
    """Runs task batches on a bounded worker pool.

    Args:
        runner: Coroutine function executing one task; it receives the
            task and the task's abort signal and returns the result text.
        listener: Optional callback invoked on every task transition.
    """

    def __init__(
        self,
        runner: TaskRunner,
        listener: Callable[[TaskTransition], None] | None = None,
    ):
        self.runner = runner
        self.listener = listener
        self._tasks: dict[str, SubAgentTask] = {}
        self._finished: dict[str, asyncio.Event] = {}
        self._controllers: dict[str, AbortController] = {}
        self._batches: dict[AbortController, int] = {}
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def dispatch(
        self, batch: TaskBatch, abort: AbortSignal | None = None,
    ) -> BatchResult | list[TaskHandle]:
        """Run *batch*.

        Returns a :class:`BatchResult` once every task is terminal when
        ``batch.wait_for_completion`` is set, otherwise one
        :class:`TaskHandle` per task immediately.
        """
        handles = [self._register(task) for task in batch.tasks]
        queue = deque(
            task for _, task in sorted(
                enumerate(batch.tasks),
                key=lambda pair: (pair[1].priority.rank, pair[0]),
            )
        )
        controller = AbortController(parent=abort)
        self._batches[controller] = batch.pool_size
        logger.info(
            f"Dispatching {len(batch.tasks)} tasks "
            f"({batch.execution_mode.value}, pool size {batch.pool_size})"
        )

        started = time.monotonic()
        run = asyncio.ensure_future(self._drain(queue, batch.pool_size, controller))

        if not batch.wait_for_completion:
            self._background.add(run)
            run.add_done_callback(self._background.discard)
            return handles

        try:
            await asyncio.shield(run)
        except asyncio.CancelledError:
            controller.abort(AbortedError("batch cancelled"))
            await asyncio.wait({run})
            raise

        summary = ExecutionSummary.from_tasks(batch.tasks, time.monotonic() - started)
        logger.info(
            f"Batch finished: {summary.succeeded} succeeded, {summary.failed} failed, "
            f"{summary.timed_out} timed out, {summary.cancelled} cancelled"
        )
        report = None
        if batch.aggregate_results and batch.tasks:
            report = aggregate_batch(
                batch.tasks,
                title=batch.main_task or "Task Delegation Results",
                aggregation_type=batch.aggregation_type,
            )
        return BatchResult(tasks=list(batch.tasks), summary=summary, report=report)

    async def wait_all(self) -> None:
        """Wait for every batch dispatched without waiting."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def cancel_task(self, task_id: str) -> bool:
        """Cancel one task. Returns ``False`` if it already finished."""
        task = self._tasks.get(task_id)
        if task is None or task.state.is_terminal:
            return False
        if task.state is TaskState.PENDING:
            self._transition(task, TaskState.CANCELLED, error="cancelled before start")
            return True
        controller = self._controllers.get(task_id)
        if controller is not None:
            controller.abort(AbortedError(f"task {task_id} cancelled"))
        return True

    def cancel_all(self) -> None:
        """Abort every batch this scheduler is running."""
        for controller in list(self._batches):
            controller.abort(AbortedError("batch cancelled"))

    def status(self) -> SchedulerStatus:
        def count(state: TaskState) -> int:
            return sum(1 for t in self._tasks.values() if t.state is state)

        return SchedulerStatus(
            running=count(TaskState.RUNNING),
            pending=count(TaskState.PENDING),
            succeeded=count(TaskState.SUCCEEDED),
            failed=count(TaskState.FAILED),
            timed_out=count(TaskState.TIMED_OUT),
            cancelled=count(TaskState.CANCELLED),
            max_concurrent=sum(self._batches.values()),
        )

    def get_task(self, task_id: str) -> SubAgentTask | None:
        return self._tasks.get(task_id)

    @property
    def idle(self) -> bool:
        """No batch is draining, in the foreground or the background."""
        return not self._batches and not self._background

    def clear_completed(self, task_ids: Iterable[str] | None = None) -> int:
        """Forget terminal tasks, or only the terminal ones among *task_ids*.

        Returns how many were removed.  Outstanding handles keep working.
        """
        candidates = self._tasks if task_ids is None else [tid for tid in task_ids if tid in self._tasks]
        done = [tid for tid in candidates if self._tasks[tid].state.is_terminal]
        for tid in done:
            del self._tasks[tid]
            del self._finished[tid]
        return len(done)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _register(self, task: SubAgentTask) -> TaskHandle:
        if task.state is not TaskState.PENDING:
            raise ValueError(f"task {task.id} was already dispatched ({task.state.value})")
        known = self._tasks.get(task.id)
        if known is not None and known is not task and not known.state.is_terminal:
            raise ValueError(f"task id {task.id} is already scheduled")
        self._tasks[task.id] = task
        finished = asyncio.Event()
        self._finished[task.id] = finished
        return TaskHandle(task, self, finished)

    async def _drain(self, queue: deque, pool_size: int, controller: AbortController) -> None:
        try:
            workers = min(pool_size, len(queue))
            await asyncio.gather(*(self._worker(queue, controller.signal) for _ in range(workers)))
        finally:
            self._batches.pop(controller, None)
            controller.unlink()

    async def _worker(self, queue: deque, batch_signal: AbortSignal) -> None:
        while queue:
            task = queue.popleft()
            await self._run_task(task, batch_signal)

    async def _run_task(self, task: SubAgentTask, batch_signal: AbortSignal) -> None:
        if task.state.is_terminal:
            return
        if batch_signal.aborted:
            self._transition(task, TaskState.CANCELLED, error=f"cancelled before start: {batch_signal.error()}")
            return

        controller = AbortController(parent=batch_signal)
        self._controllers[task.id] = controller
        self._transition(task, TaskState.RUNNING)
        timer = asyncio.get_running_loop().call_later(
            task.timeout, controller.abort,
            TaskTimeoutError(f"task {task.id} timed out after {task.timeout}s"),
        )
        try:
            async with inst.task_span(task.id, task.priority.value, task.timeout) as span:
                try:
                    output = await controller.signal.race(self.runner(task, controller.signal))
                except AbortedError as e:
                    reason = controller.signal.reason
                    if isinstance(reason, TaskTimeoutError) or isinstance(e, TaskTimeoutError):
                        logger.warning(f"Task {task.id} timed out after {task.timeout}s")
                        self._transition(task, TaskState.TIMED_OUT, error=str(reason or e))
                    else:
                        logger.info(f"Task {task.id} cancelled: {e}")
                        self._transition(task, TaskState.CANCELLED, error=str(e))
                except Exception as e:
                    logger.warning(f"Task {task.id} failed: {e}")
                    inst.record_error(span, e)
                    self._transition(task, TaskState.FAILED, error=f"{type(e).__name__}: {e}")
                else:
                    self._transition(task, TaskState.SUCCEEDED, result=output if isinstance(output, str) else str(output))
                inst.record_task_state(span, task.state.value)
        finally:
            timer.cancel()
            controller.unlink()
            self._controllers.pop(task.id, None)

    def _transition(self, task: SubAgentTask, new_state: TaskState, **kwargs) -> None:
        previous = task.transition(new_state, **kwargs)
        logger.debug(f"Task {task.id}: {previous.value} -> {new_state.value}")
        if new_state.is_terminal:
            self._finished[task.id].set()
        if self.listener is not None:
            try:
                self.listener(TaskTransition(task=task, previous=previous, current=new_state))
            except Exception:
                logger.exception(f"Task listener failed on {task.id}")
