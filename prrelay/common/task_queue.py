"""
Task Queue Adapters

Enqueue side of the async boundary. The job envelope is serialized as the
task body; the queue delivers it to the worker endpoint and reports the
delivery attempt in a header.

- CloudTasksQueue: Google Cloud Tasks HTTP push queue (REST API via httpx)
- LocalTaskQueue: in-process delivery on the running event loop
"""

import asyncio
import base64
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, Set

import google.auth
import google.auth.exceptions
import httpx
from google.auth.transport.requests import Request as GoogleAuthRequest

from .errors import QueueError
from .schemas import JobHandle, WebhookJob

logger = logging.getLogger("prrelay.common.task_queue")

WORKER_SECRET_HEADER = "X-Relay-Worker-Secret"
QUEUE_NAME_HEADER = "X-CloudTasks-QueueName"
RETRY_COUNT_HEADER = "X-CloudTasks-TaskRetryCount"
JOB_ID_HEADER = "X-Job-ID"
TRACE_ID_HEADER = "X-Trace-ID"

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"

# handler(job, retry_count) -> True when the job is acknowledged
DeliveryHandler = Callable[[WebhookJob, int], Awaitable[bool]]

# Returns a currently valid bearer token for the Cloud Tasks API
TokenProvider = Callable[[], Awaitable[str]]


def static_token(token: str) -> TokenProvider:
    """Provider for a fixed token, e.g. one injected by the deployment"""
    async def provide() -> str:
        return token
    return provide


class GoogleTokenProvider:
    """
    Access tokens from Google Application Default Credentials.

    Credentials are loaded on first use and refreshed whenever they are no
    longer valid, so a long-running process keeps enqueueing past token
    expiry.

    Args:
        credentials: google-auth credentials (default: ``google.auth.default()``)
        request: google-auth transport request used for refreshes
    """

    def __init__(self, credentials: Optional[Any] = None, request: Optional[Any] = None):
        self._credentials = credentials
        self._request = request

    def _token(self) -> str:
        if self._credentials is None:
            self._credentials, _ = google.auth.default(scopes=[CLOUD_PLATFORM_SCOPE])
        if not self._credentials.valid:
            self._credentials.refresh(self._request or GoogleAuthRequest())
            logger.debug("Cloud Tasks access token refreshed")
        return self._credentials.token

    async def __call__(self) -> str:
        try:
            return await asyncio.to_thread(self._token)
        except google.auth.exceptions.GoogleAuthError as e:
            raise QueueError(f"cloud tasks credentials unavailable: {e}") from e


class TaskQueue(ABC):
    """Durable queue contract used by the fast-ingress path"""

    @abstractmethod
    async def enqueue(self, job: WebhookJob) -> JobHandle:
        """Hand the job off; raises QueueError on failure"""

    async def close(self) -> None:
        """Release resources. Default is a no-op."""


class CloudTasksQueue(TaskQueue):
    """Creates HTTP push tasks targeting the worker endpoint"""

    def __init__(
        self,
        project: str,
        location: str,
        queue: str,
        worker_url: str,
        worker_secret: str,
        token_provider: TokenProvider,
        api_url: str = "https://cloudtasks.googleapis.com/v2",
        timeout: float = 5.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._queue_path = f"projects/{project}/locations/{location}/queues/{queue}"
        self._worker_url = worker_url
        self._worker_secret = worker_secret
        self._token_provider = token_provider
        self._api_url = api_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def queue_path(self) -> str:
        return self._queue_path

    async def close(self) -> None:
        await self._client.aclose()

    def build_task(self, job: WebhookJob) -> dict:
        body = job.model_dump_json().encode("utf-8")
        return {
            "task": {
                "httpRequest": {
                    "httpMethod": "POST",
                    "url": self._worker_url,
                    "headers": {
                        "Content-Type": "application/json",
                        JOB_ID_HEADER: job.id,
                        TRACE_ID_HEADER: job.trace_id,
                        WORKER_SECRET_HEADER: self._worker_secret,
                    },
                    "body": base64.b64encode(body).decode("ascii"),
                },
            },
        }

    async def enqueue(self, job: WebhookJob) -> JobHandle:
        url = f"{self._api_url}/{self._queue_path}/tasks"
        token = await self._token_provider()
        try:
            response = await self._client.post(
                url,
                json=self.build_task(job),
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            raise QueueError(f"cloud tasks enqueue failed: {e}") from e

        if response.status_code >= 300:
            raise QueueError(f"cloud tasks enqueue returned HTTP {response.status_code}")

        try:
            task_name = response.json().get("name")
        except ValueError:
            task_name = None
        logger.info("Webhook job queued job_id=%s task_name=%s kind=%s", job.id, task_name, job.kind.value)
        return JobHandle(job_id=job.id, task_name=task_name)


class LocalTaskQueue(TaskQueue):
    """
    Delivers jobs in-process, off the request path.

    Retries unacknowledged deliveries up to ``job.max_attempts`` with a short
    linear backoff, reporting the retry count exactly as Cloud Tasks would.
    """

    def __init__(self, handler: Optional[DeliveryHandler] = None, backoff: float = 0.5):
        self._handler = handler
        self._backoff = backoff
        self._tasks: Set[asyncio.Task] = set()

    def bind(self, handler: DeliveryHandler) -> None:
        self._handler = handler

    async def enqueue(self, job: WebhookJob) -> JobHandle:
        if self._handler is None:
            raise QueueError("local queue has no delivery handler")
        task = asyncio.get_running_loop().create_task(self._deliver(job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return JobHandle(job_id=job.id, task_name=f"local/{job.id}")

    async def _deliver(self, job: WebhookJob) -> None:
        # One delivery past the ceiling so the worker observes and logs the give-up.
        for retry_count in range(job.max_attempts + 1):
            try:
                if await self._handler(job, retry_count):
                    return
            except Exception:
                logger.exception("Local delivery raised job_id=%s retry_count=%d", job.id, retry_count)
            await asyncio.sleep(self._backoff * (retry_count + 1))

    async def drain(self) -> None:
        """Wait for all in-flight deliveries"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
