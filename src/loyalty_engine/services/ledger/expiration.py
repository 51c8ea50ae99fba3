"""Daily points expiration pass."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from loyalty_engine.core.clock import ensure_utc, utcnow
from loyalty_engine.core.settings import settings
from loyalty_engine.models.ledger import (
    LedgerEntry,
    LedgerEntryKind,
    LedgerEntrySource,
    LedgerEntryStatus,
)
from loyalty_engine.services.ledger.ledger_service import LedgerService


@dataclass
class ExpirationReport:
    total_points_expired: int = 0
    transactions_expired: int = 0
    entries_scanned: int = 0
    customer_ids: set[UUID] = field(default_factory=set)

    @property
    def customers_affected(self) -> int:
        return len(self.customer_ids)

    def merge(self, other: "ExpirationReport") -> None:
        self.total_points_expired += other.total_points_expired
        self.transactions_expired += other.transactions_expired
        self.entries_scanned += other.entries_scanned
        self.customer_ids |= other.customer_ids

    def as_dict(self) -> dict[str, int]:
        return {
            "total_points_expired": self.total_points_expired,
            "transactions_expired": self.transactions_expired,
            "customers_affected": self.customers_affected,
        }


def expiration_reference(entry_id: UUID) -> str:
    return f"EXP-{entry_id}"


async def unspent_points(session: AsyncSession, earn_entry: LedgerEntry) -> int:
    """Return the part of ``earn_entry`` that debits have not consumed yet.

    Debits spend credits oldest-first: every completed debit of the customer,
    earlier expirations included, is charged against the credits ordered by
    ``occurred_at``. The entry keeps what is left of it after the credits up to
    and including it have absorbed those debits.
    """

    completed = and_(
        LedgerEntry.customer_id == earn_entry.customer_id,
        LedgerEntry.status == LedgerEntryStatus.COMPLETED,
    )
    up_to_entry = or_(
        LedgerEntry.occurred_at < earn_entry.occurred_at,
        and_(LedgerEntry.occurred_at == earn_entry.occurred_at, LedgerEntry.id <= earn_entry.id),
    )
    total = func.coalesce(func.sum(LedgerEntry.points), 0)

    credits_stmt = select(total).where(completed, LedgerEntry.points > 0, up_to_entry)
    debits_stmt = select(total).where(completed, LedgerEntry.points < 0)
    credits = (await session.execute(credits_stmt)).scalar_one()
    debits = (await session.execute(debits_stmt)).scalar_one()
    return max(0, min(int(earn_entry.points), int(credits) + int(debits)))


async def expire_points(
    session: AsyncSession,
    *,
    reference_time: datetime | None = None,
    expiry_days: int | None = None,
    batch_size: int | None = None,
) -> ExpirationReport:
    """Write compensating expire entries for earn entries past the expiry window.

    One batch is processed per call. Each earn entry is offset at most once:
    the compensating entry links back through ``related_entry_id`` and uses the
    deterministic ``EXP-<entry id>`` transaction id, so a re-run after a partial
    failure never double-expires. Only the unspent part of an entry expires
    (see ``unspent_points``), never more than the current balance; an entry
    with nothing left still gets a zero-point marker.
    """

    horizon = ensure_utc(reference_time) or utcnow()
    window = timedelta(days=expiry_days or settings.points_expiry_days)
    cutoff = horizon - window
    limit = batch_size or settings.points_expiry_batch_size

    offset_entry = aliased(LedgerEntry)
    already_expired = exists().where(
        offset_entry.related_entry_id == LedgerEntry.id,
        offset_entry.kind == LedgerEntryKind.EXPIRE,
    )
    stmt = (
        select(LedgerEntry)
        .where(
            LedgerEntry.kind == LedgerEntryKind.EARN,
            LedgerEntry.status == LedgerEntryStatus.COMPLETED,
            LedgerEntry.occurred_at <= cutoff,
            ~already_expired,
        )
        .order_by(LedgerEntry.occurred_at.asc(), LedgerEntry.id.asc())
        .limit(limit)
    )
    candidates = list((await session.execute(stmt)).scalars().all())

    ledger = LedgerService(session)
    report = ExpirationReport(entries_scanned=len(candidates))
    for earn_entry in candidates:
        customer = await ledger.lock_customer(earn_entry.customer_id)
        remaining = await unspent_points(session, earn_entry)
        expire_amount = min(remaining, int(customer.points_balance or 0))
        metadata = {
            "expired_entry_id": str(earn_entry.id),
            "original_points": int(earn_entry.points),
            "unspent_points": remaining,
            "expiry_days": window.days,
        }
        reference = expiration_reference(earn_entry.id)

        if expire_amount > 0:
            await ledger.record_transaction(
                customer.id,
                kind=LedgerEntryKind.EXPIRE,
                points=expire_amount,
                source=LedgerEntrySource.AUTO_EXPIRE,
                transaction_id=reference,
                metadata=metadata,
                notes="Points expired",
                occurred_at=horizon,
                related_entry_id=earn_entry.id,
            )
            report.total_points_expired += expire_amount
            report.transactions_expired += 1
            report.customer_ids.add(customer.id)
        else:
            session.add(
                LedgerEntry(
                    customer_id=customer.id,
                    kind=LedgerEntryKind.EXPIRE,
                    status=LedgerEntryStatus.COMPLETED,
                    source=LedgerEntrySource.AUTO_EXPIRE,
                    points=0,
                    transaction_id=reference,
                    related_entry_id=earn_entry.id,
                    metadata_json={**metadata, "capped": True},
                    notes="Points expired (balance already spent)",
                    occurred_at=horizon,
                )
            )
            await session.flush()

        if expire_amount < int(earn_entry.points):
            logger.warning(
                "Expiration limited to unspent points",
                entry_id=str(earn_entry.id),
                customer_id=str(customer.id),
                requested=int(earn_entry.points),
                expired=expire_amount,
            )

    logger.info(
        "Processed expiration batch",
        cutoff=cutoff.isoformat(),
        scanned=report.entries_scanned,
        **report.as_dict(),
    )
    return report


__all__ = ["ExpirationReport", "expiration_reference", "expire_points", "unspent_points"]
