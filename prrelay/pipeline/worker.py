"""
Job Worker

Runs one delivery of a WebhookJob under the worker deadline and turns the
outcome into an acknowledgement decision for the queue.

Acknowledged (HTTP 200, never redelivered):
    processed, noop, dropped (config gap / permanent failure / unknown kind),
    invalid_job, max_retries_exceeded, failed (unexpected error)
Redelivered (HTTP 503):
    retry (transient collaborator failure or deadline exceeded)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..common.errors import (
    ConfigurationError,
    PermanentExternalError,
    RelayError,
    ValidationError,
    is_retryable,
)
from ..common.log_context import LogContext
from ..common.schemas import WebhookJob
from .processor import EventProcessor, job_summary

logger = logging.getLogger("prrelay.pipeline.worker")


@dataclass
class WorkerOutcome:
    """Acknowledgement decision for one delivery"""
    status: str
    status_code: int = 200
    reason: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def acknowledged(self) -> bool:
        return self.status_code < 300

    def to_response(self, job_id: str) -> Dict[str, Any]:
        body = {"status": self.status, "job_id": job_id}
        if self.reason:
            body["reason"] = self.reason
        if self.details:
            body["details"] = self.details
        return body


class JobWorker:
    """
    Args:
        processor: Event processor
        timeout: Worker deadline in seconds
    """

    def __init__(self, processor: EventProcessor, timeout: float = 300.0, log: Optional[LogContext] = None):
        self._processor = processor
        self._timeout = timeout
        self._log = log or LogContext(logger)

    async def handle(self, job: WebhookJob, retry_count: int) -> WorkerOutcome:
        """
        Process one delivery attempt.

        Args:
            job: Decoded job envelope
            retry_count: Prior delivery attempts reported by the queue
        """
        repo, number = job_summary(job)
        log = self._log.bind(
            job_id=job.id,
            trace_id=job.trace_id,
            kind=job.kind.value,
            event_type=job.event_type,
            delivery_id=job.delivery_id,
            retry_count=retry_count,
        )

        if retry_count >= job.max_attempts:
            log.error(
                "Job exceeded max attempts, dropping",
                repo=repo,
                pr=number,
                max_attempts=job.max_attempts,
            )
            return WorkerOutcome("max_retries_exceeded")

        try:
            result = await asyncio.wait_for(self._processor.process(job, log), timeout=self._timeout)
        except asyncio.TimeoutError:
            log.warning("Job exceeded worker deadline, will retry", timeout=self._timeout, repo=repo, pr=number)
            return WorkerOutcome("retry", status_code=503, reason="timeout")
        except ValidationError as e:
            log.error("Invalid job payload dropped", error=e, repo=repo, pr=number)
            return WorkerOutcome("invalid_job", reason=str(e))
        except ConfigurationError as e:
            log.warning("Job dropped by configuration", error=e, repo=repo, pr=number)
            return WorkerOutcome("dropped", reason=type(e).__name__)
        except PermanentExternalError as e:
            log.error("Job failed permanently", error=e, code=e.code, repo=repo, pr=number)
            return WorkerOutcome("dropped", reason=e.code or type(e).__name__)
        except RelayError as e:
            if is_retryable(e):
                log.warning("Job failed transiently, will retry", error=e, repo=repo, pr=number)
                return WorkerOutcome("retry", status_code=503, reason=type(e).__name__)
            log.error("Job failed", error=e, repo=repo, pr=number)
            return WorkerOutcome("dropped", reason=type(e).__name__)
        except Exception as e:
            logger.exception("Unexpected error processing job %s", job.id)
            return WorkerOutcome("failed", reason=type(e).__name__)

        log.info("Job finished", status=result.status, reason=result.reason, repo=repo, pr=number)
        return WorkerOutcome(result.status, reason=result.reason, details=result.details)

    async def deliver(self, job: WebhookJob, retry_count: int) -> bool:
        """Delivery handler for the in-process queue"""
        outcome = await self.handle(job, retry_count)
        return outcome.acknowledged
