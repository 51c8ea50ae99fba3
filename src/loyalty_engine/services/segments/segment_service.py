"""Segment lifecycle and membership reconciliation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from loguru import logger
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.core.clock import ensure_utc, utcnow
from loyalty_engine.core.errors import ConflictError, InfrastructureError, NotFoundError
from loyalty_engine.core.settings import settings
from loyalty_engine.models.customer import Customer
from loyalty_engine.models.segment import (
    CustomerSegment,
    RefreshFrequency,
    SegmentMembership,
    SegmentStatus,
    SegmentType,
)
from loyalty_engine.observability.loyalty import get_loyalty_store
from loyalty_engine.queue.base import JobHandle, JobQueue, RetryPolicy
from loyalty_engine.schemas.segment import (
    SegmentCreate,
    SegmentCriteria,
    SegmentCustomer,
    SegmentCustomersPage,
    SegmentUpdate,
    parse_criteria,
)
from loyalty_engine.services.segments.criteria import evaluate_criteria

CustomerSort = Literal["added_at_desc", "added_at_asc", "name_asc"]


@dataclass
class ReconciliationResult:
    segment_id: UUID
    added: int = 0
    removed: int = 0
    total: int = 0
    skipped: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "segment_id": str(self.segment_id),
            "added": self.added,
            "removed": self.removed,
            "total": self.total,
            "skipped": self.skipped,
        }


def refresh_dedupe_key(segment_id: UUID) -> str:
    return f"segment:{segment_id}"


def segment_criteria(segment: CustomerSegment) -> SegmentCriteria:
    return parse_criteria(segment.criteria or {})


def is_refresh_due(segment: CustomerSegment, now: datetime) -> bool:
    """Match a segment's auto-refresh frequency against the current hourly slot."""

    if not segment.auto_refresh_enabled or segment.status != SegmentStatus.ACTIVE:
        return False
    frequency = RefreshFrequency(segment.auto_refresh_frequency)
    if frequency == RefreshFrequency.HOURLY:
        return True
    if now.hour != settings.segment_refresh_hour:
        return False
    if frequency == RefreshFrequency.DAILY:
        return True
    return now.weekday() == settings.segment_refresh_weekday


class SegmentService:
    """Manages segments and reconciles their membership sets.

    Reads and lifecycle writes only flush. ``process_segment`` owns its commits
    because membership and the cached count are written as two separate steps.
    """

    def __init__(self, db_session: AsyncSession, *, job_queue: JobQueue | None = None) -> None:
        self._db = db_session
        self._queue = job_queue
        self._store = get_loyalty_store()

    async def create_segment(self, payload: SegmentCreate) -> CustomerSegment:
        await self._ensure_unique_name(payload.name)
        criteria = payload.criteria
        segment = CustomerSegment(
            name=payload.name,
            description=payload.description,
            segment_type=SegmentType(criteria.type),
            criteria=criteria.model_dump(mode="json"),
            status=payload.status,
            customer_count=0,
            last_refreshed=None,
            auto_refresh_enabled=payload.auto_refresh.enabled,
            auto_refresh_frequency=payload.auto_refresh.frequency,
            created_by=payload.actor,
            updated_by=payload.actor,
        )
        self._db.add(segment)
        await self._db.flush()
        logger.info(
            "Created customer segment",
            segment_id=str(segment.id),
            segment_type=segment.segment_type.value,
            status=segment.status.value,
        )
        return segment

    async def update_segment(self, segment_id: UUID, payload: SegmentUpdate) -> tuple[CustomerSegment, bool]:
        """Apply a partial update; the flag tells whether a refresh is now needed."""

        segment = await self.get_segment(segment_id)
        previous_status = SegmentStatus(segment.status)
        criteria_changed = False

        if payload.name is not None and payload.name.strip() != segment.name:
            name = payload.name.strip()
            await self._ensure_unique_name(name, exclude_id=segment.id)
            segment.name = name
        if payload.description is not None:
            segment.description = payload.description
        if payload.criteria is not None:
            dumped = payload.criteria.model_dump(mode="json")
            criteria_changed = dumped != segment.criteria
            segment.criteria = dumped
            segment.segment_type = SegmentType(payload.criteria.type)
        if payload.status is not None:
            segment.status = payload.status
        if payload.auto_refresh is not None:
            segment.auto_refresh_enabled = payload.auto_refresh.enabled
            segment.auto_refresh_frequency = payload.auto_refresh.frequency
        if payload.actor is not None:
            segment.updated_by = payload.actor

        await self._db.flush()
        activated = segment.status == SegmentStatus.ACTIVE and previous_status != SegmentStatus.ACTIVE
        needs_refresh = segment.status == SegmentStatus.ACTIVE and (criteria_changed or activated)
        logger.info(
            "Updated customer segment",
            segment_id=str(segment.id),
            status=segment.status.value,
            criteria_changed=criteria_changed,
            needs_refresh=needs_refresh,
        )
        return segment, needs_refresh

    async def delete_segment(self, segment_id: UUID) -> CustomerSegment:
        segment = await self.get_segment(segment_id)
        removed = await self._db.execute(
            delete(SegmentMembership).where(SegmentMembership.segment_id == segment.id)
        )
        await self._db.execute(delete(CustomerSegment).where(CustomerSegment.id == segment.id))
        await self._db.flush()
        logger.info(
            "Deleted customer segment",
            segment_id=str(segment_id),
            memberships_removed=removed.rowcount,
        )
        return segment

    async def get_segment(self, segment_id: UUID, *, for_update: bool = False) -> CustomerSegment:
        stmt = select(CustomerSegment).where(CustomerSegment.id == segment_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._db.execute(stmt)
        segment = result.scalar_one_or_none()
        if segment is None:
            raise NotFoundError("Segment not found", segment_id=str(segment_id))
        return segment

    async def list_segments(
        self,
        *,
        status: SegmentStatus | None = None,
        segment_type: SegmentType | None = None,
        name: str | None = None,
    ) -> list[CustomerSegment]:
        stmt = select(CustomerSegment).order_by(CustomerSegment.created_at.desc(), CustomerSegment.name.asc())
        if status is not None:
            stmt = stmt.where(CustomerSegment.status == status)
        if segment_type is not None:
            stmt = stmt.where(CustomerSegment.segment_type == segment_type)
        if name:
            stmt = stmt.where(CustomerSegment.name.ilike(f"%{name}%"))
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def get_segment_customers(
        self,
        segment_id: UUID,
        *,
        limit: int | None = None,
        offset: int = 0,
        sort: CustomerSort = "added_at_desc",
    ) -> SegmentCustomersPage:
        segment = await self.get_segment(segment_id)
        bounded_limit = max(1, min(limit or settings.segment_customers_page_limit, 500))

        total_stmt = select(func.count(SegmentMembership.id)).where(SegmentMembership.segment_id == segment.id)
        total = int((await self._db.execute(total_stmt)).scalar_one())

        order_by = {
            "added_at_desc": (SegmentMembership.added_at.desc(), SegmentMembership.id.desc()),
            "added_at_asc": (SegmentMembership.added_at.asc(), SegmentMembership.id.asc()),
            "name_asc": (Customer.name.asc(), SegmentMembership.id.asc()),
        }[sort]
        stmt = (
            select(SegmentMembership, Customer)
            .join(Customer, Customer.id == SegmentMembership.customer_id)
            .where(SegmentMembership.segment_id == segment.id)
            .order_by(*order_by)
            .offset(max(offset, 0))
            .limit(bounded_limit)
        )
        rows = (await self._db.execute(stmt)).all()
        customers = [
            SegmentCustomer(
                customer_id=customer.id,
                external_ref=customer.external_ref,
                name=customer.name,
                email=customer.email,
                is_active=customer.is_active,
                added_at=ensure_utc(membership.added_at),
                metadata=membership.metadata_json or {},
            )
            for membership, customer in rows
        ]
        return SegmentCustomersPage(
            segment_id=segment.id,
            segment_name=segment.name,
            customer_count=segment.customer_count,
            last_refreshed=ensure_utc(segment.last_refreshed),
            total=total,
            limit=bounded_limit,
            offset=max(offset, 0),
            customers=customers,
        )

    async def process_segment(self, segment_id: UUID, *, now: datetime | None = None) -> ReconciliationResult:
        """Reconcile stored membership with the currently eligible customers.

        Inserts and deletes commit together; the cached count and timestamp are
        committed afterwards. A failure between the two leaves membership
        correct and the count stale until the next run.
        """

        moment = ensure_utc(now) or utcnow()
        segment = await self.get_segment(segment_id, for_update=True)
        result = ReconciliationResult(segment_id=segment.id)
        if segment.status != SegmentStatus.ACTIVE:
            result.skipped = True
            result.total = int(segment.customer_count or 0)
            self._store.record_segment_refresh(added=0, removed=0, skipped=True)
            logger.info("Skipped segment refresh", segment_id=str(segment_id), status=segment.status.value)
            return result

        existing_rows = await self._db.execute(
            select(SegmentMembership.customer_id).where(SegmentMembership.segment_id == segment.id)
        )
        existing = set(existing_rows.scalars().all())
        eligible = await evaluate_criteria(self._db, segment_criteria(segment), now=moment)

        to_add = [customer_id for customer_id in eligible if customer_id not in existing]
        to_remove = [customer_id for customer_id in existing if customer_id not in eligible]

        if to_add:
            self._db.add_all(
                [
                    SegmentMembership(
                        segment_id=segment.id,
                        customer_id=customer_id,
                        added_at=moment,
                        metadata_json=eligible[customer_id],
                    )
                    for customer_id in to_add
                ]
            )
        if to_remove:
            await self._db.execute(
                delete(SegmentMembership).where(
                    SegmentMembership.segment_id == segment.id,
                    SegmentMembership.customer_id.in_(to_remove),
                )
            )
        await self._db.commit()

        segment = await self.get_segment(segment_id, for_update=True)
        segment.customer_count = len(eligible)
        segment.last_refreshed = moment
        await self._db.commit()

        result.added = len(to_add)
        result.removed = len(to_remove)
        result.total = len(eligible)
        self._store.record_segment_refresh(added=result.added, removed=result.removed)
        logger.info(
            "Processed segment",
            segment_id=str(segment.id),
            added=result.added,
            removed=result.removed,
            total=result.total,
        )
        return result

    async def refresh_segment(self, segment_id: UUID) -> JobHandle:
        """Queue a tracked refresh for an existing segment."""

        await self.get_segment(segment_id)
        return await self.enqueue_refresh(segment_id)

    async def enqueue_refresh(self, segment_id: UUID) -> JobHandle:
        if self._queue is None:
            raise InfrastructureError("No job queue configured for segment refreshes")
        return await self._queue.enqueue(
            settings.segment_refresh_queue,
            settings.segment_refresh_job,
            {"segment_id": str(segment_id)},
            retry_policy=RetryPolicy.from_settings(settings),
            dedupe_key=refresh_dedupe_key(segment_id),
        )

    async def segments_due_for_refresh(self, now: datetime | None = None) -> list[CustomerSegment]:
        moment = ensure_utc(now) or utcnow()
        stmt = (
            select(CustomerSegment)
            .where(
                CustomerSegment.status == SegmentStatus.ACTIVE,
                CustomerSegment.auto_refresh_enabled.is_(True),
            )
            .order_by(CustomerSegment.last_refreshed.asc())
        )
        result = await self._db.execute(stmt)
        return [segment for segment in result.scalars().all() if is_refresh_due(segment, moment)]

    async def _ensure_unique_name(self, name: str, *, exclude_id: UUID | None = None) -> None:
        stmt = select(CustomerSegment.id).where(CustomerSegment.name == name)
        if exclude_id is not None:
            stmt = stmt.where(CustomerSegment.id != exclude_id)
        if (await self._db.execute(stmt)).first() is not None:
            raise ConflictError("Segment name already exists", name=name)


__all__ = [
    "ReconciliationResult",
    "SegmentService",
    "is_refresh_due",
    "refresh_dedupe_key",
    "segment_criteria",
]
