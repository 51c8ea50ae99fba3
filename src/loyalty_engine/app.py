"""Runtime composition: explicitly constructed handles with an init/close lifecycle."""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from loyalty_engine.core.logging import configure_logging
from loyalty_engine.core.settings import Settings, get_settings
from loyalty_engine.db.session import build_engine, build_session_factory
from loyalty_engine.jobs.segments import build_segment_refresh_handler
from loyalty_engine.operations import LoyaltyOperations
from loyalty_engine.queue.base import JobQueue, RetryPolicy
from loyalty_engine.queue.job_queue import InProcessJobQueue
from loyalty_engine.scheduling import JobScheduler
from loyalty_engine.services.audit import AuditSink, LoggingAuditSink

APP_VERSION = "0.1.0"


def _resolve_schedule_path(config: Settings) -> Path:
    schedule_path = Path(config.job_schedule_path)
    if not schedule_path.is_absolute():
        schedule_path = Path(__file__).resolve().parent.parent.parent / schedule_path
    return schedule_path


def build_job_queue(config: Settings, session_factory: async_sessionmaker[AsyncSession]) -> JobQueue:
    """Celery when a broker is configured, otherwise the in-process queue."""

    retry_policy = RetryPolicy.from_settings(config)
    if config.celery_broker_url:
        from loyalty_engine.celery_app import celery_app
        from loyalty_engine.celery_tasks.segments import PROCESS_SEGMENT_TASK
        from loyalty_engine.queue.celery_queue import CeleryJobQueue

        queue: JobQueue = CeleryJobQueue(celery_app, default_retry_policy=retry_policy)
        queue.register(config.segment_refresh_queue, config.segment_refresh_job, PROCESS_SEGMENT_TASK)  # type: ignore[arg-type]
        return queue

    in_process = InProcessJobQueue(concurrency=config.job_queue_concurrency, default_retry_policy=retry_policy)
    in_process.register(
        config.segment_refresh_queue,
        config.segment_refresh_job,
        build_segment_refresh_handler(session_factory),
    )
    return in_process


@dataclass
class LoyaltyApp:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    job_queue: JobQueue
    scheduler: JobScheduler
    audit_sink: AuditSink
    operations: LoyaltyOperations
    started: bool = False

    async def start(self) -> None:
        if self.started:
            return
        if self.settings.job_worker_enabled:
            await self.job_queue.start()
            logger.info("Job queue workers enabled", concurrency=self.settings.job_queue_concurrency)
        else:
            logger.info("Job queue workers disabled", reason="job_worker_enabled is false")

        if self.settings.job_scheduler_enabled:
            try:
                self.scheduler.start()
            except FileNotFoundError as exc:
                logger.exception("Job scheduler failed to start", error=str(exc))
            else:
                logger.info("Job scheduler enabled")
        else:
            logger.info("Job scheduler disabled", reason="job_scheduler_enabled is false")
        self.started = True

    async def close(self) -> None:
        if self.scheduler.is_running:
            await self.scheduler.stop()
        await self.job_queue.close()
        await self.engine.dispose()
        self.started = False
        logger.info("Loyalty engine stopped")

    @asynccontextmanager
    async def lifespan(self) -> AsyncIterator["LoyaltyApp"]:
        await self.start()
        try:
            yield self
        finally:
            await self.close()


def create_app(
    config: Settings | None = None,
    *,
    job_queue: JobQueue | None = None,
    audit_sink: AuditSink | None = None,
    configure_logs: bool = True,
) -> LoyaltyApp:
    """Application factory wiring the engine, queue, scheduler and facade."""

    config = config or get_settings()
    if configure_logs:
        configure_logging(
            service_name="loyalty-engine",
            environment=config.environment,
            version=APP_VERSION,
            level=config.log_level,
        )

    engine = build_engine(config.database_url, echo=config.database_echo)
    session_factory = build_session_factory(engine)
    queue = job_queue or build_job_queue(config, session_factory)
    sink = audit_sink or LoggingAuditSink(redact_fields=config.audit_redact_fields)
    scheduler = JobScheduler(
        session_factory=session_factory,
        config_path=_resolve_schedule_path(config),
        context={"job_queue": queue},
    )
    operations = LoyaltyOperations(
        session_factory=session_factory,
        job_queue=queue,
        audit_sink=sink,
        default_actor=config.audit_actor_default,
    )
    return LoyaltyApp(
        settings=config,
        engine=engine,
        session_factory=session_factory,
        job_queue=queue,
        scheduler=scheduler,
        audit_sink=sink,
        operations=operations,
    )


__all__ = ["APP_VERSION", "LoyaltyApp", "build_job_queue", "create_app"]
