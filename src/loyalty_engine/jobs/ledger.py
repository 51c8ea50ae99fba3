"""Daily points expiration job."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict

from loguru import logger

from loyalty_engine.db.session import SessionFactory, open_session, unit_of_work
from loyalty_engine.observability.loyalty import get_loyalty_store
from loyalty_engine.services.ledger.expiration import ExpirationReport, expire_points as run_expiration_batch

# meta: job: points-expiration


async def expire_points(
    *,
    session_factory: SessionFactory,
    reference_time: datetime | None = None,
    expiry_days: int | None = None,
    batch_size: int | None = None,
) -> Dict[str, Any]:
    """Expire earn entries past the window, committing one batch at a time.

    Committed batches survive a later failure; the next run resumes with the
    entries that were not yet offset.
    """

    report = ExpirationReport()
    batches = 0
    while True:
        session = await open_session(session_factory)
        async with session as managed_session:
            async with unit_of_work(managed_session):
                batch = await run_expiration_batch(
                    managed_session,
                    reference_time=reference_time,
                    expiry_days=expiry_days,
                    batch_size=batch_size,
                )
        if not batch.entries_scanned:
            break
        batches += 1
        report.merge(batch)

    summary = {**report.as_dict(), "batches": batches}
    if report.total_points_expired:
        get_loyalty_store().record_ledger_event("expired", points=report.total_points_expired)
    logger.bind(expiration=summary).info("Points expiration completed")
    return summary


__all__ = ["expire_points"]
