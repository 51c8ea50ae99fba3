"""APScheduler runtime for recurring loyalty jobs."""

from __future__ import annotations

import asyncio
import inspect
import random
import time
from importlib import import_module
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger
from zoneinfo import ZoneInfo

from loyalty_engine.db.session import SessionFactory
from loyalty_engine.observability.scheduler import JobSchedulerObservabilityStore, get_scheduler_store

from .config import JobDefinition, ScheduleConfig, load_job_definitions

JobCallable = Callable[..., Awaitable[Any]]
Sleep = Callable[[float], Awaitable[Any]]


class JobScheduler:
    """Registers cron jobs from the schedule file and runs them with retries.

    Jobs are async callables taking ``session_factory`` plus any collaborators
    from ``context`` their signature asks for (for example ``job_queue``).
    """

    # meta: scheduler: loyalty-jobs

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        config_path: Path,
        context: Mapping[str, Any] | None = None,
        store: JobSchedulerObservabilityStore | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._config_path = config_path
        self._context = dict(context or {})
        self._observability = store or get_scheduler_store()
        self._sleep = sleep
        self._config: ScheduleConfig | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._callables: dict[str, JobCallable] = {}

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    def load(self) -> ScheduleConfig:
        config = load_job_definitions(self._config_path)
        self._callables = {job.id: resolve_task(job.task) for job in config.enabled_jobs()}
        self._config = config
        return config

    def start(self) -> None:
        if self._scheduler is not None:
            return
        config = self.load()
        timezone = ZoneInfo(config.timezone)
        scheduler = AsyncIOScheduler(timezone=timezone)
        for job in config.enabled_jobs():
            trigger = CronTrigger.from_crontab(job.cron, timezone=timezone)
            scheduler.add_job(
                self.run_job,
                trigger=trigger,
                args=[job.id],
                id=job.id,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            logger.info("Registered scheduled job", job_id=job.id, task=job.task, cron=job.cron)

        scheduler.start()
        self._scheduler = scheduler
        logger.info("Job scheduler started", jobs=len(config.enabled_jobs()), timezone=config.timezone)

    async def stop(self) -> None:
        if self._scheduler is None:
            return
        result = self._scheduler.shutdown(wait=False)
        if inspect.isawaitable(result):
            await result
        self._scheduler = None
        logger.info("Job scheduler stopped")

    async def run_job(self, job_id: str) -> Any:
        """Run one configured job now, applying its retry settings."""

        if self._config is None:
            self.load()
        job = self._job(job_id)
        func = self._callables[job.id]
        kwargs = self._build_kwargs(func, job)
        retry = job.retry

        self._observability.record_dispatch(job.id, job.task)
        started_at = time.perf_counter()
        for attempt in range(1, retry.max_attempts + 1):
            try:
                summary = await func(**kwargs)
            except Exception as exc:
                error_message = str(exc) or exc.__class__.__name__
                self._observability.record_attempt_failure(job.id, job.task, attempts=attempt, error=error_message)
                if attempt >= retry.max_attempts:
                    self._observability.record_run_failure(
                        job.id,
                        job.task,
                        runtime_seconds=time.perf_counter() - started_at,
                        attempts=attempt,
                        error=error_message,
                    )
                    logger.exception(
                        "Scheduled job failed after retries",
                        job_id=job.id,
                        task=job.task,
                        attempts=attempt,
                        error=error_message,
                    )
                    return None

                delay = retry.delay_for(attempt)
                if retry.jitter_seconds:
                    delay += random.uniform(0, retry.jitter_seconds)
                self._observability.record_retry(job.id, job.task, delay_seconds=delay, attempts=attempt + 1)
                logger.warning(
                    "Scheduled job retrying",
                    job_id=job.id,
                    task=job.task,
                    attempt=attempt + 1,
                    delay_seconds=delay,
                    error=error_message,
                )
                if delay:
                    await self._sleep(delay)
                continue

            runtime_seconds = time.perf_counter() - started_at
            self._observability.record_success(job.id, job.task, runtime_seconds=runtime_seconds, attempts=attempt)
            logger.info(
                "Scheduled job completed",
                job_id=job.id,
                task=job.task,
                attempts=attempt,
                runtime_seconds=runtime_seconds,
            )
            return summary
        return None

    def health(self) -> dict[str, object]:
        snapshot = self._observability.snapshot()
        jobs: list[dict[str, object]] = []
        for job in self._config.jobs if self._config else []:
            metrics = snapshot.jobs.get(job.id)
            jobs.append(
                {
                    "id": job.id,
                    "task": job.task,
                    "cron": job.cron,
                    "enabled": job.enabled,
                    "max_attempts": job.retry.max_attempts,
                    "metrics": metrics.as_dict() if metrics else None,
                }
            )
        return {
            "running": self.is_running,
            "configured_jobs": len(jobs),
            "totals": snapshot.totals,
            "jobs": jobs,
        }

    def _job(self, job_id: str) -> JobDefinition:
        assert self._config is not None
        for job in self._config.enabled_jobs():
            if job.id == job_id:
                return job
        raise KeyError(f"Unknown or disabled job: {job_id}")

    def _build_kwargs(self, func: JobCallable, job: JobDefinition) -> dict[str, Any]:
        parameters = inspect.signature(func).parameters
        accepts_any = any(param.kind is inspect.Parameter.VAR_KEYWORD for param in parameters.values())
        kwargs: dict[str, Any] = {"session_factory": self._session_factory}
        for name, value in self._context.items():
            if accepts_any or name in parameters:
                kwargs[name] = value
        kwargs.update(job.kwargs)
        return kwargs


def resolve_task(path: str) -> JobCallable:
    module_name, _, attr = path.rpartition(".")
    if not module_name:
        raise ValueError(f"Invalid task path: {path}")
    func = getattr(import_module(module_name), attr, None)
    if func is None:
        raise AttributeError(f"Task {path} not found")
    if not asyncio.iscoroutinefunction(func):
        raise TypeError(f"Task {path} must be an async function")
    return func


__all__ = ["JobScheduler", "resolve_task"]
