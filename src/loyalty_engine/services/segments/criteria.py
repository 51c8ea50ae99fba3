"""Eligibility evaluators, one per segment criteria variant.

Every evaluator returns ``{customer_id: membership metadata}`` for the active
customers that currently satisfy the criteria.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable
from uuid import UUID

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.core.clock import ensure_utc, utcnow
from loyalty_engine.models.customer import Customer, DeviceTypeEnum
from loyalty_engine.models.ledger import LedgerEntry, LedgerEntryStatus
from loyalty_engine.schemas.segment import (
    AppTypeCriteria,
    CustomCriteria,
    DeviceCriteria,
    EngagementCriteria,
    SegmentCriteria,
    TransactionCriteria,
)
from loyalty_engine.services.segments.predicates import matches

EligibleSet = dict[UUID, dict[str, Any]]
Evaluator = Callable[[AsyncSession, Any, datetime], Awaitable[EligibleSet]]

PERIOD_WINDOWS: dict[str, timedelta | None] = {
    "last_7_days": timedelta(days=7),
    "last_30_days": timedelta(days=30),
    "last_90_days": timedelta(days=90),
    "last_year": timedelta(days=365),
    "all_time": None,
}


def _active_customers():
    return select(Customer).where(Customer.is_active.is_(True))


def _decimal(value: Any) -> Decimal:
    return Decimal(str(value or 0))


def _within(value: Any, low: Any, high: Any) -> bool:
    if low is not None and value < low:
        return False
    if high is not None and value > high:
        return False
    return True


async def evaluate_transaction(
    session: AsyncSession, criteria: TransactionCriteria, now: datetime
) -> EligibleSet:
    filters = [
        LedgerEntry.status == LedgerEntryStatus.COMPLETED,
        LedgerEntry.is_deleted.is_(False),
    ]
    window = PERIOD_WINDOWS[criteria.period]
    if window is not None:
        filters.append(LedgerEntry.occurred_at >= now - window)
    if criteria.transaction_types:
        filters.append(LedgerEntry.kind.in_(list(criteria.transaction_types)))
    if criteria.sources:
        filters.append(LedgerEntry.source.in_(list(criteria.sources)))

    stmt = (
        select(
            LedgerEntry.customer_id,
            func.count(LedgerEntry.id),
            func.coalesce(func.sum(LedgerEntry.points), 0),
            func.coalesce(func.sum(LedgerEntry.spend_amount), 0),
        )
        .join(Customer, Customer.id == LedgerEntry.customer_id)
        .where(Customer.is_active.is_(True), *filters)
        .group_by(LedgerEntry.customer_id)
    )
    rows = (await session.execute(stmt)).all()

    eligible: EligibleSet = {}
    for customer_id, count, total_points, total_spend in rows:
        count = int(count)
        total_points = int(total_points)
        total_spend = _decimal(total_spend)
        if not _within(count, criteria.min_transactions, criteria.max_transactions):
            continue
        if not _within(total_points, criteria.min_points, criteria.max_points):
            continue
        if not _within(total_spend, criteria.min_spend, criteria.max_spend):
            continue
        eligible[customer_id] = {
            "transaction_count": count,
            "total_points": total_points,
            "total_spend": str(total_spend),
            "period": criteria.period,
        }
    return eligible


def _last_active_clause(window: str, now: datetime):
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    start_of_month = start_of_day.replace(day=1)
    if window == "today":
        return Customer.last_active_at >= start_of_day
    if window == "this_week":
        return Customer.last_active_at >= start_of_day - timedelta(days=start_of_day.weekday())
    if window == "this_month":
        return Customer.last_active_at >= start_of_month
    if window == "last_month":
        previous_month = (start_of_month - timedelta(days=1)).replace(day=1)
        return and_(
            Customer.last_active_at >= previous_month,
            Customer.last_active_at < start_of_month,
        )
    days = 30 if window == "inactive_30_days" else 90
    return or_(Customer.last_active_at.is_(None), Customer.last_active_at < now - timedelta(days=days))


async def evaluate_engagement(
    session: AsyncSession, criteria: EngagementCriteria, now: datetime
) -> EligibleSet:
    stmt = _active_customers()
    if criteria.min_app_opens is not None:
        stmt = stmt.where(Customer.app_opens >= criteria.min_app_opens)
    if criteria.last_active is not None:
        stmt = stmt.where(_last_active_clause(criteria.last_active, now))
    if criteria.min_email_open_rate is not None:
        stmt = stmt.where(Customer.email_open_rate >= criteria.min_email_open_rate)
    if criteria.min_email_click_rate is not None:
        stmt = stmt.where(Customer.email_click_rate >= criteria.min_email_click_rate)
    if criteria.min_push_open_rate is not None:
        stmt = stmt.where(Customer.push_open_rate >= criteria.min_push_open_rate)

    customers = (await session.execute(stmt)).scalars().all()
    eligible: EligibleSet = {}
    for customer in customers:
        last_active = ensure_utc(customer.last_active_at)
        eligible[customer.id] = {
            "app_opens": int(customer.app_opens or 0),
            "last_active_at": last_active.isoformat() if last_active else None,
        }
    return eligible


async def evaluate_app_type(
    session: AsyncSession, criteria: AppTypeCriteria, now: datetime
) -> EligibleSet:
    wanted = set(criteria.types)
    customers = (await session.execute(_active_customers())).scalars().all()
    eligible: EligibleSet = {}
    for customer in customers:
        app_types = list(customer.app_types or [])
        if wanted.intersection(app_types):
            eligible[customer.id] = {"app_types": app_types}
    return eligible


async def evaluate_device(
    session: AsyncSession, criteria: DeviceCriteria, now: datetime
) -> EligibleSet:
    stmt = _active_customers()
    if criteria.types:
        stmt = stmt.where(Customer.device_type.in_([DeviceTypeEnum(kind) for kind in criteria.types]))
    if criteria.models:
        stmt = stmt.where(Customer.device_model.in_(list(criteria.models)))
    if criteria.os_versions:
        stmt = stmt.where(Customer.os_version.in_(list(criteria.os_versions)))

    customers = (await session.execute(stmt)).scalars().all()
    return {
        customer.id: {
            "device_type": customer.device_type.value if customer.device_type else None,
            "device_model": customer.device_model,
            "os_version": customer.os_version,
        }
        for customer in customers
    }


async def evaluate_custom(
    session: AsyncSession, criteria: CustomCriteria, now: datetime
) -> EligibleSet:
    customers = (await session.execute(_active_customers())).scalars().all()
    fields = sorted({predicate.field for predicate in criteria.predicates})
    return {
        customer.id: {"match": criteria.match, "fields": fields}
        for customer in customers
        if matches(customer, criteria)
    }


EVALUATORS: dict[type, Evaluator] = {
    TransactionCriteria: evaluate_transaction,
    EngagementCriteria: evaluate_engagement,
    AppTypeCriteria: evaluate_app_type,
    DeviceCriteria: evaluate_device,
    CustomCriteria: evaluate_custom,
}


async def evaluate_criteria(
    session: AsyncSession,
    criteria: SegmentCriteria,
    *,
    now: datetime | None = None,
) -> EligibleSet:
    """Dispatch to the evaluator bound to the criteria variant."""

    evaluator = EVALUATORS[type(criteria)]
    return await evaluator(session, criteria, ensure_utc(now) or utcnow())


__all__ = [
    "EVALUATORS",
    "EligibleSet",
    "PERIOD_WINDOWS",
    "evaluate_app_type",
    "evaluate_criteria",
    "evaluate_custom",
    "evaluate_device",
    "evaluate_engagement",
    "evaluate_transaction",
]
