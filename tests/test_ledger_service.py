from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from loyalty_engine.core.errors import (
    ConflictError,
    InsufficientFundsError,
    NotFoundError,
    StateError,
    ValidationError,
)
from loyalty_engine.models import Customer, LedgerEntry, LedgerEntryKind, LedgerEntrySource, LedgerEntryStatus
from loyalty_engine.observability import get_loyalty_store
from loyalty_engine.services.ledger import LedgerService, signed_delta


async def _balance(session_factory, customer_id) -> int:
    async with session_factory() as session:
        customer = await session.get(Customer, customer_id)
        return int(customer.points_balance)


def test_signed_delta_by_kind() -> None:
    assert signed_delta(LedgerEntryKind.EARN, 40) == 40
    assert signed_delta(LedgerEntryKind.REDEEM, 40) == -40
    assert signed_delta(LedgerEntryKind.EXPIRE, 40) == -40
    assert signed_delta(LedgerEntryKind.ADJUST, -15) == -15
    assert signed_delta(LedgerEntryKind.TRANSFER, 15) == 15

    with pytest.raises(ValidationError):
        signed_delta(LedgerEntryKind.EARN, 0)
    with pytest.raises(ValidationError):
        signed_delta(LedgerEntryKind.REDEEM, -5)
    with pytest.raises(ValidationError):
        signed_delta(LedgerEntryKind.ADJUST, 0)


@pytest.mark.asyncio
async def test_completed_earn_updates_balance(session_factory, make_customer) -> None:
    customer_id = await make_customer()

    async with session_factory() as session:
        ledger = LedgerService(session)
        entry = await ledger.record_transaction(
            customer_id,
            kind=LedgerEntryKind.EARN,
            points=120,
            source=LedgerEntrySource.PURCHASE,
            spend_amount=Decimal("60.00"),
        )
        await session.commit()

    assert entry.transaction_id.startswith("TXN-")
    assert entry.points == 120
    assert await _balance(session_factory, customer_id) == 120
    assert get_loyalty_store().snapshot().ledger["recorded:earn"] == 1


@pytest.mark.asyncio
async def test_pending_entry_leaves_balance_untouched(session_factory, make_customer) -> None:
    customer_id = await make_customer(points_balance=10)

    async with session_factory() as session:
        await LedgerService(session).record_transaction(
            customer_id,
            kind=LedgerEntryKind.EARN,
            points=50,
            status=LedgerEntryStatus.PENDING,
        )
        await session.commit()

    assert await _balance(session_factory, customer_id) == 10


@pytest.mark.asyncio
async def test_pending_complete_cancel_round_trip(session_factory, make_customer) -> None:
    customer_id = await make_customer(points_balance=30)

    async with session_factory() as session:
        ledger = LedgerService(session)
        entry = await ledger.record_transaction(
            customer_id,
            kind=LedgerEntryKind.EARN,
            points=50,
            status=LedgerEntryStatus.PENDING,
        )
        await session.commit()
        entry_id = entry.id

    async with session_factory() as session:
        await LedgerService(session).update_status(entry_id, LedgerEntryStatus.COMPLETED)
        await session.commit()
    assert await _balance(session_factory, customer_id) == 80

    async with session_factory() as session:
        entry = await LedgerService(session).update_status(
            entry_id, LedgerEntryStatus.CANCELLED, notes="Order refunded"
        )
        await session.commit()
    assert entry.notes == "Order refunded"
    assert await _balance(session_factory, customer_id) == 30


@pytest.mark.asyncio
async def test_invalid_transitions_raise_state_error(session_factory, make_customer) -> None:
    customer_id = await make_customer()

    async with session_factory() as session:
        ledger = LedgerService(session)
        completed = await ledger.record_transaction(customer_id, kind=LedgerEntryKind.EARN, points=20)
        failed = await ledger.record_transaction(
            customer_id,
            kind=LedgerEntryKind.EARN,
            points=20,
            status=LedgerEntryStatus.FAILED,
        )
        await session.commit()

        with pytest.raises(StateError):
            await ledger.update_status(completed.id, LedgerEntryStatus.COMPLETED)
        with pytest.raises(StateError):
            await ledger.update_status(completed.id, LedgerEntryStatus.FAILED)
        with pytest.raises(StateError):
            await ledger.update_status(failed.id, LedgerEntryStatus.COMPLETED)

        # failed -> cancelled neither enters nor leaves completed
        moved = await ledger.update_status(failed.id, LedgerEntryStatus.CANCELLED)
        assert moved.status == LedgerEntryStatus.CANCELLED
        await session.commit()

    assert await _balance(session_factory, customer_id) == 20


@pytest.mark.asyncio
async def test_duplicate_transaction_id_conflicts_without_mutation(session_factory, make_customer) -> None:
    customer_id = await make_customer()

    async with session_factory() as session:
        ledger = LedgerService(session)
        await ledger.record_transaction(customer_id, kind=LedgerEntryKind.EARN, points=25, transaction_id="ORDER-1")
        await session.commit()

    async with session_factory() as session:
        with pytest.raises(ConflictError):
            await LedgerService(session).record_transaction(
                customer_id, kind=LedgerEntryKind.EARN, points=25, transaction_id="ORDER-1"
            )
        await session.rollback()

    assert await _balance(session_factory, customer_id) == 25
    async with session_factory() as session:
        count = (await session.execute(select(func.count(LedgerEntry.id)))).scalar_one()
    assert count == 1


@pytest.mark.asyncio
async def test_unique_transaction_id_conflicts_when_check_is_raced(
    session_factory, make_customer, monkeypatch
) -> None:
    first = await make_customer()
    second = await make_customer()

    async with session_factory() as session:
        await LedgerService(session).record_transaction(
            first, kind=LedgerEntryKind.EARN, points=10, transaction_id="ORDER-9"
        )
        await session.commit()

    async def never_seen(self, transaction_id):
        return False

    # the row lands between the existence check and the insert
    monkeypatch.setattr(LedgerService, "_transaction_id_exists", never_seen)

    async with session_factory() as session:
        with pytest.raises(ConflictError) as exc_info:
            await LedgerService(session).record_transaction(
                second, kind=LedgerEntryKind.EARN, points=10, transaction_id="ORDER-9"
            )
        await session.rollback()

    assert exc_info.value.details == {"transaction_id": "ORDER-9"}
    assert await _balance(session_factory, second) == 0
    assert await _balance(session_factory, first) == 10


@pytest.mark.asyncio
async def test_stale_entry_copy_cannot_complete_twice(session_factory, make_customer) -> None:
    customer_id = await make_customer()

    async with session_factory() as session:
        entry = await LedgerService(session).record_transaction(
            customer_id, kind=LedgerEntryKind.EARN, points=50, status=LedgerEntryStatus.PENDING
        )
        await session.commit()
        entry_id = entry.id

    async with session_factory() as stale_session:
        stale_ledger = LedgerService(stale_session)
        held = await stale_ledger.get_entry(entry_id)
        assert held.status == LedgerEntryStatus.PENDING

        async with session_factory() as session:
            await LedgerService(session).update_status(entry_id, LedgerEntryStatus.COMPLETED)
            await session.commit()

        with pytest.raises(StateError):
            await stale_ledger.update_status(entry_id, LedgerEntryStatus.COMPLETED)
        assert held.status == LedgerEntryStatus.COMPLETED
        await stale_session.rollback()

    assert await _balance(session_factory, customer_id) == 50
    async with session_factory() as session:
        audit = await LedgerService(session).audit_balance(customer_id)
    assert audit.consistent


@pytest.mark.asyncio
async def test_debit_beyond_balance_is_rejected(session_factory, make_customer) -> None:
    customer_id = await make_customer(points_balance=40)

    async with session_factory() as session:
        with pytest.raises(InsufficientFundsError) as exc_info:
            await LedgerService(session).record_transaction(customer_id, kind=LedgerEntryKind.REDEEM, points=41)
        await session.rollback()

    assert exc_info.value.balance == 40
    assert exc_info.value.requested == 41
    assert await _balance(session_factory, customer_id) == 40


@pytest.mark.asyncio
async def test_missing_customer_raises_not_found(session_factory) -> None:
    async with session_factory() as session:
        with pytest.raises(NotFoundError):
            await LedgerService(session).record_transaction(uuid4(), kind=LedgerEntryKind.EARN, points=5)


@pytest.mark.asyncio
async def test_soft_delete_hides_entry_but_keeps_balance(session_factory, make_customer) -> None:
    customer_id = await make_customer()

    async with session_factory() as session:
        ledger = LedgerService(session)
        keep = await ledger.record_transaction(customer_id, kind=LedgerEntryKind.EARN, points=10)
        drop = await ledger.record_transaction(customer_id, kind=LedgerEntryKind.EARN, points=15)
        await session.commit()

        await ledger.delete_transaction(drop.id)
        await session.commit()

        entries = await ledger.list_customer_entries(customer_id)
        assert [entry.id for entry in entries] == [keep.id]
        with pytest.raises(NotFoundError):
            await ledger.get_entry(drop.id)
        assert (await ledger.get_entry(drop.id, include_deleted=True)).is_deleted is True

        audit = await ledger.audit_balance(customer_id)

    assert audit.stored_balance == 25
    assert audit.ledger_balance == 25
    assert audit.consistent


@pytest.mark.asyncio
async def test_balance_matches_ledger_after_mixed_activity(session_factory, make_customer) -> None:
    customer_id = await make_customer()

    async with session_factory() as session:
        ledger = LedgerService(session)
        await ledger.record_transaction(customer_id, kind=LedgerEntryKind.EARN, points=200)
        await ledger.record_transaction(customer_id, kind=LedgerEntryKind.REDEEM, points=70)
        await ledger.record_transaction(customer_id, kind=LedgerEntryKind.ADJUST, points=-5)
        pending = await ledger.record_transaction(
            customer_id,
            kind=LedgerEntryKind.TRANSFER,
            points=12,
            status=LedgerEntryStatus.PENDING,
        )
        await ledger.update_status(pending.id, LedgerEntryStatus.COMPLETED)
        await session.commit()

        audit = await ledger.audit_balance(customer_id)

    assert audit.stored_balance == 137
    assert audit.consistent


@pytest.mark.asyncio
async def test_list_customer_entries_filters(session_factory, make_customer) -> None:
    customer_id = await make_customer()

    async with session_factory() as session:
        ledger = LedgerService(session)
        await ledger.record_transaction(customer_id, kind=LedgerEntryKind.EARN, points=30)
        await ledger.record_transaction(customer_id, kind=LedgerEntryKind.REDEEM, points=10)
        await ledger.record_transaction(
            customer_id,
            kind=LedgerEntryKind.EARN,
            points=5,
            status=LedgerEntryStatus.PENDING,
        )
        await session.commit()

        redeems = await ledger.list_customer_entries(customer_id, kinds=[LedgerEntryKind.REDEEM])
        pending = await ledger.list_customer_entries(customer_id, status=LedgerEntryStatus.PENDING)
        first_page = await ledger.list_customer_entries(customer_id, limit=2)

    assert [entry.points for entry in redeems] == [-10]
    assert [entry.points for entry in pending] == [5]
    assert len(first_page) == 2
