from __future__ import annotations

from typing import Any

from loguru import logger

from loyalty_engine.celery_app import celery_app
from loyalty_engine.core.logging import loyalty_context
from loyalty_engine.core.settings import settings
from loyalty_engine.jobs.segments import process_segment_refresh_sync
from loyalty_engine.queue.base import RetryPolicy

PROCESS_SEGMENT_TASK = "segments.process_segment"


def _retry_policy(options: dict[str, Any] | None) -> RetryPolicy:
    if not options:
        return RetryPolicy.from_settings(settings)
    return RetryPolicy(**options)


@celery_app.task(
    bind=True,
    name=PROCESS_SEGMENT_TASK,
    queue=settings.segment_refresh_queue,
    max_retries=None,
)
def process_segment(self, payload: dict[str, Any], retry_policy: dict[str, Any] | None = None) -> dict[str, Any]:
    """Celery entrypoint for reconciling one segment's membership."""

    policy = _retry_policy(retry_policy)
    segment_id = str(payload["segment_id"])
    try:
        with loyalty_context(job_id=self.request.id, segment_id=segment_id):
            return process_segment_refresh_sync(segment_id)
    except Exception as exc:
        attempt = self.request.retries + 1
        if attempt >= policy.attempts:
            logger.exception("Segment refresh failed permanently", segment_id=segment_id, attempts=attempt)
            raise
        delay = policy.delay_for(attempt)
        logger.warning(
            "Segment refresh failed; retrying",
            segment_id=segment_id,
            attempt=attempt,
            delay_seconds=delay,
            error=str(exc),
        )
        raise self.retry(exc=exc, countdown=delay)


__all__ = ["PROCESS_SEGMENT_TASK", "process_segment"]
