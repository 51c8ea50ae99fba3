"""In-process asyncio job queue with bounded concurrency and retry backoff."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping
from uuid import uuid4

from loguru import logger
from opentelemetry import trace

from loyalty_engine.core.clock import utcnow
from loyalty_engine.core.logging import loyalty_context
from loyalty_engine.observability.loyalty import LoyaltyObservabilityStore, get_loyalty_store
from loyalty_engine.queue.base import JobFailedError, JobHandler, JobStatus, RetryPolicy

JobListener = Callable[["Job"], Awaitable[None] | None]
Sleep = Callable[[float], Awaitable[Any]]

_tracer = trace.get_tracer("loyalty_engine.queue")


class Job:
    """A unit of queued work and its tracked outcome."""

    def __init__(
        self,
        *,
        queue_name: str,
        job_name: str,
        payload: dict[str, Any],
        retry_policy: RetryPolicy,
        dedupe_key: str | None = None,
    ) -> None:
        self.id = uuid4().hex
        self.queue_name = queue_name
        self.job_name = job_name
        self.payload = payload
        self.retry_policy = retry_policy
        self.dedupe_key = dedupe_key
        self.attempts_made = 0
        self.backoff_delays: list[float] = []
        self.result: Any = None
        self.error: str | None = None
        self.enqueued_at: datetime = utcnow()
        self.finished_at: datetime | None = None
        self._status = JobStatus.QUEUED
        self._done: asyncio.Future[None] = asyncio.get_running_loop().create_future()

    @property
    def status(self) -> JobStatus:
        return self._status

    @property
    def done(self) -> bool:
        return self._done.done()

    async def wait(self, timeout: float | None = None) -> Any:
        """Block until the job completes; raise ``JobFailedError`` if it failed."""

        await asyncio.wait_for(asyncio.shield(self._done), timeout)
        if self._status == JobStatus.FAILED:
            raise JobFailedError(self.id, self.error or "unknown error")
        return self.result

    def _finish(self, status: JobStatus) -> None:
        self._status = status
        self.finished_at = utcnow()
        if not self._done.done():
            self._done.set_result(None)

    def __repr__(self) -> str:
        return f"Job(id={self.id!r}, job={self.queue_name}:{self.job_name}, status={self._status.value})"


class InProcessJobQueue:
    """Delivers enqueued jobs to registered handlers on a pool of asyncio workers.

    Jobs sharing a ``dedupe_key`` are coalesced while still waiting and run one
    at a time once picked up. Failed attempts are re-queued after the retry
    policy's backoff until attempts are exhausted.
    """

    def __init__(
        self,
        *,
        concurrency: int = 5,
        default_retry_policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
        store: LoyaltyObservabilityStore | None = None,
    ) -> None:
        self.concurrency = max(1, concurrency)
        self.default_retry_policy = default_retry_policy or RetryPolicy()
        self._sleep = sleep
        self._store = store or get_loyalty_store()
        self._handlers: dict[tuple[str, str], JobHandler] = {}
        self._pending: asyncio.Queue[Job] | None = None
        self._waiting_by_key: dict[str, Job] = {}
        self._key_locks: dict[str, tuple[asyncio.Lock, int]] = {}
        self._unfinished: set[Job] = set()
        self._workers: list[asyncio.Task] = []
        self._retry_tasks: set[asyncio.Task] = set()
        self._completed_listeners: list[JobListener] = []
        self._failed_listeners: list[JobListener] = []
        self.is_running = False

    def register(self, queue_name: str, job_name: str, handler: JobHandler) -> None:
        self._handlers[(queue_name, job_name)] = handler

    def on_completed(self, listener: JobListener) -> None:
        self._completed_listeners.append(listener)

    def on_failed(self, listener: JobListener) -> None:
        self._failed_listeners.append(listener)

    async def enqueue(
        self,
        queue_name: str,
        job_name: str,
        payload: Mapping[str, Any],
        *,
        retry_policy: RetryPolicy | None = None,
        dedupe_key: str | None = None,
    ) -> Job:
        if (queue_name, job_name) not in self._handlers:
            raise LookupError(f"No handler registered for {queue_name}:{job_name}")

        if dedupe_key is not None:
            waiting = self._waiting_by_key.get(dedupe_key)
            if waiting is not None and waiting.status == JobStatus.QUEUED:
                logger.info(
                    "Coalesced duplicate job",
                    queue=queue_name,
                    job=job_name,
                    job_id=waiting.id,
                    dedupe_key=dedupe_key,
                )
                return waiting

        job = Job(
            queue_name=queue_name,
            job_name=job_name,
            payload=dict(payload),
            retry_policy=retry_policy or self.default_retry_policy,
            dedupe_key=dedupe_key,
        )
        if dedupe_key is not None:
            self._waiting_by_key[dedupe_key] = job
        self._unfinished.add(job)
        await self._queue().put(job)
        logger.info("Enqueued job", queue=queue_name, job=job_name, job_id=job.id, dedupe_key=dedupe_key)
        return job

    async def start(self) -> None:
        if self.is_running:
            return
        self.is_running = True
        self._workers = [
            asyncio.create_task(self._worker_loop(index), name=f"job-queue-worker-{index}")
            for index in range(self.concurrency)
        ]
        logger.info("Job queue started", concurrency=self.concurrency)

    async def close(self) -> None:
        if not self.is_running:
            return
        self.is_running = False
        tasks = [*self._workers, *self._retry_tasks]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._retry_tasks.clear()
        for job in list(self._unfinished):
            job.error = job.error or "queue closed"
            job._finish(JobStatus.FAILED)
        self._unfinished.clear()
        self._waiting_by_key.clear()
        self._key_locks.clear()
        logger.info("Job queue stopped")

    async def drain(self) -> None:
        """Wait until every enqueued job has completed or failed."""

        while self._unfinished:
            await asyncio.gather(*(job._done for job in list(self._unfinished)))

    def _queue(self) -> asyncio.Queue[Job]:
        if self._pending is None:
            self._pending = asyncio.Queue()
        return self._pending

    async def _worker_loop(self, index: int) -> None:
        queue = self._queue()
        while True:
            job = await queue.get()
            try:
                if job.dedupe_key is not None and self._waiting_by_key.get(job.dedupe_key) is job:
                    del self._waiting_by_key[job.dedupe_key]
                await self._execute(job)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - listener or bookkeeping failure
                logger.exception("Job queue worker error", worker=index, job_id=job.id, error=str(exc))
            finally:
                queue.task_done()

    async def _execute(self, job: Job) -> None:
        handler = self._handlers[(job.queue_name, job.job_name)]
        key = job.dedupe_key
        lock = self._checkout_key_lock(key) if key else None

        try:
            if lock is not None:
                await lock.acquire()
            try:
                job._status = JobStatus.ACTIVE
                job.attempts_made += 1
                try:
                    with loyalty_context(job_id=job.id, segment_id=job.payload.get("segment_id")):
                        with _tracer.start_as_current_span(f"{job.queue_name}:{job.job_name}"):
                            job.result = await handler(dict(job.payload))
                except Exception as exc:
                    job.error = str(exc) or exc.__class__.__name__
                    await self._handle_failure(job, exc)
                    return
            finally:
                if lock is not None:
                    lock.release()
        finally:
            if key is not None:
                self._return_key_lock(key)

        job.error = None
        job._finish(JobStatus.COMPLETED)
        self._unfinished.discard(job)
        self._store.record_job_outcome(job.queue_name, "completed")
        logger.info(
            "Job completed",
            queue=job.queue_name,
            job=job.job_name,
            job_id=job.id,
            attempts=job.attempts_made,
        )
        await self._notify(self._completed_listeners, job)

    def _checkout_key_lock(self, key: str) -> asyncio.Lock:
        lock, users = self._key_locks.get(key) or (asyncio.Lock(), 0)
        self._key_locks[key] = (lock, users + 1)
        return lock

    def _return_key_lock(self, key: str) -> None:
        entry = self._key_locks.get(key)
        if entry is None:
            return
        lock, users = entry
        if users <= 1:
            # no job for this key is running or waiting on the lock
            del self._key_locks[key]
        else:
            self._key_locks[key] = (lock, users - 1)

    async def _handle_failure(self, job: Job, exc: Exception) -> None:
        policy = job.retry_policy
        if job.attempts_made < policy.attempts:
            delay = policy.delay_for(job.attempts_made)
            job.backoff_delays.append(delay)
            job._status = JobStatus.RETRYING
            self._store.record_job_outcome(job.queue_name, "retrying")
            logger.warning(
                "Job attempt failed; retrying",
                queue=job.queue_name,
                job=job.job_name,
                job_id=job.id,
                attempt=job.attempts_made,
                max_attempts=policy.attempts,
                delay_seconds=delay,
                error=job.error,
            )
            task = asyncio.create_task(self._requeue_after(job, delay))
            self._retry_tasks.add(task)
            task.add_done_callback(self._retry_tasks.discard)
            return

        job._finish(JobStatus.FAILED)
        self._unfinished.discard(job)
        self._store.record_job_outcome(job.queue_name, "failed")
        logger.opt(exception=exc).error(
            "Job failed permanently",
            queue=job.queue_name,
            job=job.job_name,
            job_id=job.id,
            attempts=job.attempts_made,
            error=job.error,
        )
        await self._notify(self._failed_listeners, job)

    async def _requeue_after(self, job: Job, delay: float) -> None:
        await self._sleep(delay)
        await self._queue().put(job)

    async def _notify(self, listeners: list[JobListener], job: Job) -> None:
        for listener in listeners:
            try:
                outcome = listener(job)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception as exc:
                logger.exception("Job listener failed", job_id=job.id, error=str(exc))


__all__ = ["InProcessJobQueue", "Job"]
