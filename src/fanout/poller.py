"""Polling of "submit now, complete later" backend jobs."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from enum import Enum

from pydantic import BaseModel

from fanout.abort import AbortSignal
from fanout.errors import FanoutError, JobTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_POLL_TIMEOUT = 300.0


class JobStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED)


class GenerationJob(BaseModel):
    """Latest observed status of a submitted job."""

    job_id: str
    status: JobStatus = JobStatus.PENDING
    progress: float | None = None
    result_ref: str | None = None
    error_message: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


JobQuery = Callable[[str], Awaitable[GenerationJob]]


async def poll_job(
    query: JobQuery,
    job_id: str,
    *,
    interval: float = DEFAULT_POLL_INTERVAL,
    timeout: float = DEFAULT_POLL_TIMEOUT,
    started_at: float | None = None,
    abort: AbortSignal | None = None,
) -> AsyncIterator[GenerationJob]:
    """Yield status snapshots of *job_id* until it reaches a terminal status.

    Each snapshot costs one call to *query*; between snapshots the poller
    sleeps *interval* seconds.  The sequence ends normally on ``succeeded``
    or ``failed``.

    Args:
        query: Coroutine function returning the job's current status.
        job_id: Handle returned when the job was submitted.
        interval: Seconds between status queries.
        timeout: Seconds allowed from *started_at* until a terminal status.
        started_at: ``time.monotonic()`` value when the job was submitted.
            Defaults to the moment polling starts.
        abort: Optional signal; aborting fails the pending query or sleep.

    Raises:
        JobTimeoutError: If *timeout* elapses first.
        AbortedError: If *abort* fires.
    """
    clock_start = time.monotonic() if started_at is None else started_at
    deadline = clock_start + timeout

    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        # A hanging query is bounded by the time left on the deadline.
        bounded = asyncio.wait_for(query(job_id), remaining)
        try:
            if abort is not None:
                job = await abort.race(bounded)
            else:
                job = await bounded
        except asyncio.TimeoutError:
            break
        logger.debug(f"Job {job_id} status={job.status.value} progress={job.progress}")
        yield job
        if job.is_terminal:
            return

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        delay = min(interval, remaining)
        if abort is not None:
            await abort.sleep(delay)
        else:
            await asyncio.sleep(delay)

    logger.warning(f"Job {job_id} did not finish within {timeout}s")
    raise JobTimeoutError(f"job {job_id} did not finish within {timeout}s")


async def wait_for_job(
    query: JobQuery,
    job_id: str,
    *,
    on_progress: Callable[[GenerationJob], None] | None = None,
    **poll_kwargs,
) -> GenerationJob:
    """Poll until terminal and return the final snapshot."""
    last: GenerationJob | None = None
    async for job in poll_job(query, job_id, **poll_kwargs):
        if on_progress is not None:
            on_progress(job)
        last = job
    if last is None or not last.is_terminal:
        raise FanoutError(f"polling of job {job_id} ended without a terminal status")
    return last


async def submit_and_wait(
    submit: Callable[[], Awaitable[GenerationJob]],
    query: JobQuery,
    **poll_kwargs,
) -> GenerationJob:
    """Submit a job and wait for it; the timeout clock starts at submission."""
    started_at = time.monotonic()
    job = await submit()
    if job.is_terminal:
        return job
    return await wait_for_job(query, job.job_id, started_at=started_at, **poll_kwargs)
