"""Points ledger service: transaction log plus the derived customer balance."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Sequence
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.core.clock import utcnow
from loyalty_engine.core.errors import (
    ConflictError,
    InsufficientFundsError,
    NotFoundError,
    StateError,
    ValidationError,
)
from loyalty_engine.models.customer import Customer
from loyalty_engine.models.ledger import (
    LedgerEntry,
    LedgerEntryKind,
    LedgerEntrySource,
    LedgerEntryStatus,
)
from loyalty_engine.observability.loyalty import get_loyalty_store

_POSITIVE_MAGNITUDE_KINDS = {LedgerEntryKind.EARN, LedgerEntryKind.REDEEM, LedgerEntryKind.EXPIRE}
_DEBIT_KINDS = {LedgerEntryKind.REDEEM, LedgerEntryKind.EXPIRE}


def generate_reference(prefix: str) -> str:
    """Return a unique, human readable reference such as ``TXN-5F1C0A9B2E44``."""

    return f"{prefix}-{uuid4().hex[:12].upper()}"


def signed_delta(kind: LedgerEntryKind, points: int) -> int:
    """Translate a caller supplied amount into the stored balance delta.

    Earn, redeem and expire take a positive magnitude; adjust and transfer keep
    the caller's sign.
    """

    if kind in _POSITIVE_MAGNITUDE_KINDS:
        if points <= 0:
            raise ValidationError(
                f"{kind.value} entries require a positive point amount", points=points
            )
        return -points if kind in _DEBIT_KINDS else points
    if points == 0:
        raise ValidationError(f"{kind.value} entries require a non-zero point amount", points=points)
    return points


@dataclass
class BalanceAudit:
    """Stored balance next to the balance derived from completed ledger entries."""

    customer_id: UUID
    stored_balance: int
    ledger_balance: int

    @property
    def consistent(self) -> bool:
        return self.stored_balance == self.ledger_balance


class LedgerService:
    """Owns ledger entries and the ``points_balance`` field they drive.

    Every mutation locks the customer row first so concurrent writes against
    the same customer serialize. The service only flushes; the caller owns the
    surrounding unit of work.
    """

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._store = get_loyalty_store()

    async def lock_customer(self, customer_id: UUID) -> Customer:
        stmt = (
            select(Customer)
            .where(Customer.id == customer_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        customer = result.scalar_one_or_none()
        if customer is None:
            raise NotFoundError("Customer not found", customer_id=str(customer_id))
        return customer

    async def record_transaction(
        self,
        customer_id: UUID,
        *,
        kind: LedgerEntryKind,
        points: int,
        status: LedgerEntryStatus = LedgerEntryStatus.COMPLETED,
        source: LedgerEntrySource = LedgerEntrySource.OTHER,
        transaction_id: str | None = None,
        spend_amount: Decimal | None = None,
        metadata: dict[str, Any] | None = None,
        notes: str | None = None,
        occurred_at: datetime | None = None,
        related_entry_id: UUID | None = None,
    ) -> LedgerEntry:
        """Append a ledger entry, applying its delta when it lands completed."""

        delta = signed_delta(kind, points)
        customer = await self.lock_customer(customer_id)

        reference = transaction_id or generate_reference("TXN")
        if await self._transaction_id_exists(reference):
            raise ConflictError("Duplicate transaction id", transaction_id=reference)

        if status == LedgerEntryStatus.COMPLETED:
            self._apply_delta(customer, delta)

        entry = LedgerEntry(
            customer_id=customer.id,
            kind=kind,
            status=status,
            source=source,
            points=delta,
            spend_amount=spend_amount,
            transaction_id=reference,
            related_entry_id=related_entry_id,
            metadata_json=metadata or {},
            notes=notes,
            occurred_at=occurred_at or utcnow(),
        )
        self._db.add(entry)
        try:
            await self._db.flush()
        except IntegrityError as exc:
            # another writer claimed the transaction id between the check and the insert
            raise ConflictError("Duplicate transaction id", transaction_id=reference) from exc

        self._store.record_ledger_event(f"recorded:{kind.value}", points=abs(delta))
        logger.info(
            "Recorded ledger entry",
            customer_id=str(customer.id),
            transaction_id=reference,
            kind=kind.value,
            status=status.value,
            points=delta,
            balance=customer.points_balance,
        )
        return entry

    async def update_status(
        self,
        entry_id: UUID,
        new_status: LedgerEntryStatus,
        *,
        notes: str | None = None,
    ) -> LedgerEntry:
        """Move an entry through its lifecycle, keeping the balance in step.

        The customer row is locked before the entry's status is read, and the
        entry is re-read under its own row lock, so a caller holding a stale
        copy of the entry cannot apply the same transition twice.
        """

        entry = await self.get_entry(entry_id)
        customer = await self.lock_customer(entry.customer_id)
        await self._db.refresh(entry, with_for_update=True)
        current = LedgerEntryStatus(entry.status)
        completed = LedgerEntryStatus.COMPLETED

        entering = new_status == completed
        leaving = current == completed
        if entering and current != LedgerEntryStatus.PENDING:
            raise StateError(current.value, new_status.value)
        if leaving and new_status != LedgerEntryStatus.CANCELLED:
            raise StateError(current.value, new_status.value)

        if entering:
            self._apply_delta(customer, entry.points)
        elif leaving:
            self._apply_delta(customer, -entry.points)

        entry.status = new_status
        if notes is not None:
            entry.notes = notes
        await self._db.flush()

        self._store.record_ledger_event(f"transition:{current.value}->{new_status.value}")
        logger.info(
            "Updated ledger entry status",
            entry_id=str(entry.id),
            previous_status=current.value,
            status=new_status.value,
            balance=customer.points_balance,
        )
        return entry

    async def delete_transaction(self, entry_id: UUID) -> LedgerEntry:
        """Soft delete an entry; its historical effect on the balance stays."""

        entry = await self.get_entry(entry_id)
        entry.is_deleted = True
        await self._db.flush()
        self._store.record_ledger_event("deleted")
        logger.info("Soft deleted ledger entry", entry_id=str(entry.id), status=entry.status.value)
        return entry

    async def get_entry(self, entry_id: UUID, *, include_deleted: bool = False) -> LedgerEntry:
        stmt = select(LedgerEntry).where(LedgerEntry.id == entry_id)
        if not include_deleted:
            stmt = stmt.where(LedgerEntry.is_deleted.is_(False))
        result = await self._db.execute(stmt)
        entry = result.scalar_one_or_none()
        if entry is None:
            raise NotFoundError("Ledger entry not found", entry_id=str(entry_id))
        return entry

    async def list_customer_entries(
        self,
        customer_id: UUID,
        *,
        status: LedgerEntryStatus | None = None,
        kinds: Sequence[LedgerEntryKind] | None = None,
        limit: int = 25,
        offset: int = 0,
    ) -> list[LedgerEntry]:
        """Return active entries for a customer, newest first."""

        bounded_limit = max(1, min(limit, 100))
        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.customer_id == customer_id, LedgerEntry.is_deleted.is_(False))
            .order_by(LedgerEntry.occurred_at.desc(), LedgerEntry.id.desc())
        )
        if status is not None:
            stmt = stmt.where(LedgerEntry.status == status)
        if kinds:
            stmt = stmt.where(LedgerEntry.kind.in_(list(kinds)))
        stmt = stmt.offset(max(offset, 0)).limit(bounded_limit)
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def get_balance(self, customer_id: UUID) -> int:
        customer = await self._db.get(Customer, customer_id)
        if customer is None:
            raise NotFoundError("Customer not found", customer_id=str(customer_id))
        return int(customer.points_balance or 0)

    async def audit_balance(self, customer_id: UUID) -> BalanceAudit:
        """Compare the stored balance with the sum of completed ledger deltas.

        Soft-deleted entries are included: deleting hides an entry from active
        views but keeps its economic effect.
        """

        stored = await self.get_balance(customer_id)
        stmt = select(func.coalesce(func.sum(LedgerEntry.points), 0)).where(
            LedgerEntry.customer_id == customer_id,
            LedgerEntry.status == LedgerEntryStatus.COMPLETED,
        )
        derived = int((await self._db.execute(stmt)).scalar_one())
        audit = BalanceAudit(customer_id=customer_id, stored_balance=stored, ledger_balance=derived)
        if not audit.consistent:
            logger.warning(
                "Ledger balance drift detected",
                customer_id=str(customer_id),
                stored_balance=stored,
                ledger_balance=derived,
            )
        return audit

    async def _transaction_id_exists(self, transaction_id: str) -> bool:
        stmt = select(LedgerEntry.id).where(LedgerEntry.transaction_id == transaction_id)
        result = await self._db.execute(stmt)
        return result.first() is not None

    def _apply_delta(self, customer: Customer, delta: int) -> None:
        balance = int(customer.points_balance or 0)
        if balance + delta < 0:
            raise InsufficientFundsError(balance=balance, requested=-delta)
        customer.points_balance = balance + delta


__all__ = ["BalanceAudit", "LedgerService", "generate_reference", "signed_delta"]
