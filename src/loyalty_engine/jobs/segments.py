"""Segment refresh jobs: queue handler plus the hourly auto-refresh sweep."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict
from uuid import UUID

from loguru import logger

from loyalty_engine.core.settings import settings
from loyalty_engine.db.session import (
    SessionFactory,
    build_engine,
    build_session_factory,
    open_session,
)
from loyalty_engine.queue.base import JobHandler, JobQueue
from loyalty_engine.services.segments.segment_service import SegmentService

# meta: job: segment-refresh


async def process_segment_refresh(segment_id: UUID | str, *, session_factory: SessionFactory) -> Dict[str, Any]:
    """Reconcile one segment's membership in a dedicated session."""

    session = await open_session(session_factory)
    async with session as managed_session:
        service = SegmentService(managed_session)
        result = await service.process_segment(UUID(str(segment_id)))
    return result.as_dict()


def process_segment_refresh_sync(segment_id: str) -> Dict[str, Any]:
    """Run a refresh from synchronous entrypoints such as Celery workers."""

    async def _run() -> Dict[str, Any]:
        engine = build_engine(settings.database_url, echo=settings.database_echo)
        try:
            return await process_segment_refresh(segment_id, session_factory=build_session_factory(engine))
        finally:
            await engine.dispose()

    return asyncio.run(_run())


def build_segment_refresh_handler(session_factory: SessionFactory) -> JobHandler:
    async def _handle(payload: dict[str, Any]) -> Dict[str, Any]:
        return await process_segment_refresh(payload["segment_id"], session_factory=session_factory)

    return _handle


async def refresh_due_segments(
    *,
    session_factory: SessionFactory,
    job_queue: JobQueue,
    now: datetime | None = None,
) -> Dict[str, Any]:
    """Queue refreshes for auto-refresh segments whose frequency slot is due."""

    session = await open_session(session_factory)
    async with session as managed_session:
        service = SegmentService(managed_session, job_queue=job_queue)
        due = await service.segments_due_for_refresh(now)
        job_ids = set()
        for segment in due:
            handle = await service.enqueue_refresh(segment.id)
            job_ids.add(handle.id)

    summary = {"due": len(due), "enqueued": len(job_ids)}
    logger.bind(segment_refresh=summary).info("Scheduled segment refresh sweep completed")
    return summary


__all__ = [
    "build_segment_refresh_handler",
    "process_segment_refresh",
    "process_segment_refresh_sync",
    "refresh_due_segments",
]
