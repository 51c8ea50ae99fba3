"""Job queue backed by Celery for multi-process deployments."""

from __future__ import annotations

import asyncio
from dataclasses import asdict
from typing import Any, Mapping

from celery import Celery
from celery.result import AsyncResult
from loguru import logger

from loyalty_engine.queue.base import JobFailedError, JobHandler, JobStatus, RetryPolicy

_STATE_MAP = {
    "PENDING": JobStatus.QUEUED,
    "RECEIVED": JobStatus.QUEUED,
    "STARTED": JobStatus.ACTIVE,
    "RETRY": JobStatus.RETRYING,
    "SUCCESS": JobStatus.COMPLETED,
    "FAILURE": JobStatus.FAILED,
    "REVOKED": JobStatus.FAILED,
}


class CeleryJob:
    """Handle over a Celery ``AsyncResult``."""

    def __init__(self, result: AsyncResult, *, queue_name: str, job_name: str) -> None:
        self._result = result
        self.id = result.id
        self.queue_name = queue_name
        self.job_name = job_name

    @property
    def status(self) -> JobStatus:
        return _STATE_MAP.get(self._result.state, JobStatus.QUEUED)

    async def wait(self, timeout: float | None = None) -> Any:
        value = await asyncio.to_thread(self._result.get, timeout=timeout, propagate=False)
        if self._result.failed():
            raise JobFailedError(self.id, str(value))
        return value


class CeleryJobQueue:
    """Routes ``(queue, job)`` pairs to named Celery tasks.

    Handlers live in ``loyalty_engine.celery_tasks``; ``register`` only records
    the task name to send. Same-segment exclusion comes from the row lock taken
    while processing rather than from queue-side coalescing.
    """

    def __init__(self, app: Celery, *, default_retry_policy: RetryPolicy | None = None) -> None:
        self._app = app
        self.default_retry_policy = default_retry_policy or RetryPolicy()
        self._routes: dict[tuple[str, str], str] = {}

    def register(self, queue_name: str, job_name: str, handler: JobHandler | str) -> None:
        task_name = handler if isinstance(handler, str) else getattr(handler, "name", None)
        if not task_name:
            raise TypeError("Celery routes need a task name or a Celery task")
        self._routes[(queue_name, job_name)] = task_name

    async def enqueue(
        self,
        queue_name: str,
        job_name: str,
        payload: Mapping[str, Any],
        *,
        retry_policy: RetryPolicy | None = None,
        dedupe_key: str | None = None,
    ) -> CeleryJob:
        task_name = self._routes.get((queue_name, job_name))
        if task_name is None:
            raise LookupError(f"No Celery task registered for {queue_name}:{job_name}")
        policy = retry_policy or self.default_retry_policy
        result = await asyncio.to_thread(
            self._app.send_task,
            task_name,
            kwargs={"payload": dict(payload), "retry_policy": asdict(policy)},
            queue=queue_name,
        )
        logger.info(
            "Sent job to Celery",
            queue=queue_name,
            job=job_name,
            task=task_name,
            task_id=result.id,
            dedupe_key=dedupe_key,
        )
        return CeleryJob(result, queue_name=queue_name, job_name=job_name)

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None


__all__ = ["CeleryJob", "CeleryJobQueue"]
