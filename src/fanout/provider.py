"""Backend transport adapters.

A provider's only job is to submit a request and hand back the raw body of
the streamed response.  All parsing happens in :mod:`fanout.streaming`, so
every provider here yields ``bytes``.
"""

import logging
import os
from collections.abc import AsyncIterator

import httpx
import openai
from openai import AsyncOpenAI

from fanout.errors import TransportError
from fanout.poller import GenerationJob, JobStatus

logger = logging.getLogger(__name__)

DASHSCOPE_BASE_URL = "https://dashscope-intl.aliyuncs.com/api/v1"
DASHSCOPE_GENERATION_PATH = "/services/aigc/text-generation/generation"

_DASHSCOPE_STATUS = {
    "PENDING": JobStatus.PENDING,
    "RUNNING": JobStatus.RUNNING,
    "SUCCEEDED": JobStatus.SUCCEEDED,
    "FAILED": JobStatus.FAILED,
    "CANCELED": JobStatus.FAILED,
    "UNKNOWN": JobStatus.FAILED,
}


class ModelProvider:
    """Interface every backend adapter implements."""

    system = "unknown"

    def stream(
            self,
            model: str,
            messages: list[dict],
            tools: list[dict] | None = None,
    ) -> AsyncIterator[bytes]:
        """Submit *messages* and yield the raw response body as it arrives.

        Raises:
            TransportError: If the backend cannot be reached or fails
                mid-stream.
        """
        raise NotImplementedError


class OpenAICompatibleProvider(ModelProvider):
    """Any backend speaking the OpenAI chat-completions streaming protocol."""

    system = "openai"

    def __init__(
            self,
            base_url: str | None = None,
            api_key: str | None = None,
            max_retries: int = 5,
            timeout: float = 600.0,
            include_usage: bool = True,
            extra_body: dict | None = None,
    ):
        self.base_url = base_url
        self.include_usage = include_usage
        self.extra_body = extra_body
        self.client = AsyncOpenAI(
            base_url=base_url,
            api_key=api_key,
            max_retries=max_retries,
            timeout=timeout,
        )

    def _request_kwargs(self, model, messages, tools) -> dict:
        kwargs = dict(model=model, messages=messages, stream=True)
        if self.include_usage:
            kwargs["stream_options"] = {"include_usage": True}
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        if self.extra_body:
            kwargs["extra_body"] = self.extra_body
        return kwargs

    async def stream(
            self,
            model: str,
            messages: list[dict],
            tools: list[dict] | None = None,
    ) -> AsyncIterator[bytes]:
        kwargs = self._request_kwargs(model, messages, tools)
        try:
            async with self.client.chat.completions.with_streaming_response.create(
                **kwargs
            ) as response:
                async for chunk in response.iter_bytes():
                    yield chunk
        except (openai.APIError, httpx.HTTPError) as e:
            logger.warning(f"{self.system} stream failed: {e}")
            raise TransportError(f"{self.system} request failed: {e}") from e


class OpenAIProvider(OpenAICompatibleProvider):

    def __init__(self, api_key: str | None = None, **kwargs):
        if not api_key:
            api_key = os.getenv("OPENAI_API_KEY")
        super().__init__(api_key=api_key, **kwargs)


class OpenRouter(OpenAICompatibleProvider):
    system = "openrouter"

    def __init__(self, api_key: str | None = None, **kwargs):
        if not api_key:
            api_key = os.getenv("OPENROUTER_API_KEY")
        kwargs.setdefault("timeout", 180.0)
        super().__init__(
            base_url="https://openrouter.ai/api/v1", api_key=api_key, **kwargs,
        )


class VLLMProvider(OpenAICompatibleProvider):
    system = "vllm"

    def __init__(self, url: str, port: int, **kwargs):
        super().__init__(
            base_url=f"http://{url}:{port}/v1", api_key="DUMMY", **kwargs,
        )


class DashScopeProvider(ModelProvider):
    """DashScope native API (Qwen text generation and async jobs).

    Args:
        api_key: API key; falls back to ``DASHSCOPE_API_KEY``.
        base_url: API root.
        enable_thinking: Ask the model to stream its reasoning separately.
        client: Optional pre-built ``httpx.AsyncClient`` (useful for tests).
        timeout: Request timeout in seconds.
    """

    system = "dashscope"

    def __init__(
            self,
            api_key: str | None = None,
            base_url: str = DASHSCOPE_BASE_URL,
            enable_thinking: bool = False,
            client: httpx.AsyncClient | None = None,
            timeout: float = 600.0,
            parameters: dict | None = None,
    ):
        if not api_key:
            api_key = os.getenv("DASHSCOPE_API_KEY")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.enable_thinking = enable_thinking
        self.parameters = parameters or {}
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def build_request(self, model: str, messages: list[dict], tools: list[dict] | None) -> dict:
        parameters = {"incremental_output": True, **self.parameters}
        if self.enable_thinking:
            parameters["enable_thinking"] = True
        if self.enable_thinking or tools:
            parameters["result_format"] = "message"
        if tools:
            parameters["tools"] = tools
        return {
            "model": model,
            "input": {"messages": messages},
            "parameters": parameters,
        }

    async def stream(
            self,
            model: str,
            messages: list[dict],
            tools: list[dict] | None = None,
    ) -> AsyncIterator[bytes]:
        body = self.build_request(model, messages, tools)
        headers = {**self.headers, "X-DashScope-SSE": "enable", "Accept": "text/event-stream"}
        try:
            async with self.client.stream(
                "POST", f"{self.base_url}{DASHSCOPE_GENERATION_PATH}",
                json=body, headers=headers,
            ) as response:
                if response.status_code >= 400:
                    detail = (await response.aread()).decode(errors="replace")
                    raise TransportError(
                        f"DashScope API error: {response.status_code} - {detail}"
                    )
                async for chunk in response.aiter_bytes():
                    yield chunk
        except httpx.HTTPError as e:
            logger.warning(f"DashScope stream failed: {e}")
            raise TransportError(f"DashScope request failed: {e}") from e

    # ------------------------------------------------------------------
    # Async jobs
    # ------------------------------------------------------------------

    async def submit_job(self, path: str, payload: dict) -> GenerationJob:
        """Submit a long-running generation and return its job handle."""
        headers = {**self.headers, "X-DashScope-Async": "enable"}
        data = await self._request_json("POST", f"{self.base_url}{path}", json=payload, headers=headers)
        job = job_from_dashscope(data)
        logger.info(f"Submitted DashScope job {job.job_id} ({job.status.value})")
        return job

    async def query_job(self, job_id: str) -> GenerationJob:
        """Fetch the current status of a submitted job."""
        data = await self._request_json(
            "GET", f"{self.base_url}/tasks/{job_id}",
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        return job_from_dashscope(data)

    async def _request_json(self, method: str, url: str, **kwargs) -> dict:
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise TransportError(f"DashScope request failed: {e}") from e
        if response.status_code >= 400:
            raise TransportError(
                f"DashScope API error: {response.status_code} - {response.text}"
            )
        return response.json()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


def job_from_dashscope(data: dict) -> GenerationJob:
    """Map a DashScope task response onto a :class:`GenerationJob`."""
    output = data.get("output") or {}
    raw_status = str(output.get("task_status", "PENDING")).upper()
    results = output.get("results") or []
    result_ref = (
        output.get("video_url")
        or output.get("image_url")
        or (results[0].get("url") if results and isinstance(results[0], dict) else None)
    )
    status = _DASHSCOPE_STATUS.get(raw_status, JobStatus.FAILED)
    error_message = None
    if status is JobStatus.FAILED:
        error_message = output.get("message") or f"task status {raw_status}"
    return GenerationJob(
        job_id=output.get("task_id") or data.get("request_id") or "",
        status=status,
        progress=output.get("progress"),
        result_ref=result_ref,
        error_message=error_message,
    )
