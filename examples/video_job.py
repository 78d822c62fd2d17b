"""Async job example: submit a DashScope video generation and poll it.

Usage:
    Add DASHSCOPE_API_KEY=... to .env, then:
    uv run --env-file=.env examples/video_job.py "a paper boat on a lake"
"""

import asyncio
import logging
import sys

from fanout.config import RuntimeConfig, configure_logging
from fanout.poller import GenerationJob, submit_and_wait
from fanout.provider import DashScopeProvider

VIDEO_PATH = "/services/aigc/video-generation/video-synthesis"


def report(job: GenerationJob) -> None:
    print(f"{job.job_id}: {job.status.value}")


async def main(prompt: str):
    configure_logging(logging.INFO)
    config = RuntimeConfig.from_env()
    provider = DashScopeProvider()
    payload = {"model": "wan2.1-t2v-turbo", "input": {"prompt": prompt}}
    try:
        job = await submit_and_wait(
            lambda: provider.submit_job(VIDEO_PATH, payload),
            provider.query_job,
            interval=config.poll_interval,
            timeout=config.poll_timeout,
            on_progress=report,
        )
    finally:
        await provider.aclose()

    if job.error_message:
        print(f"failed: {job.error_message}")
    else:
        print(f"video: {job.result_ref}")


if __name__ == "__main__":
    asyncio.run(main(" ".join(sys.argv[1:]) or "a paper boat drifting on a calm lake"))
