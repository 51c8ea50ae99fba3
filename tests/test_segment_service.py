import datetime as dt
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from loyalty_engine.core.errors import ConflictError, InfrastructureError, NotFoundError
from loyalty_engine.core.settings import settings
from loyalty_engine.models import (
    CustomerSegment,
    LedgerEntryKind,
    RefreshFrequency,
    SegmentMembership,
    SegmentStatus,
)
from loyalty_engine.observability import get_loyalty_store
from loyalty_engine.queue import InProcessJobQueue
from loyalty_engine.schemas.segment import AutoRefresh, SegmentCreate, SegmentUpdate
from loyalty_engine.services.ledger import LedgerService
from loyalty_engine.services.segments import SegmentService, is_refresh_due, refresh_dedupe_key


async def _create(session_factory, **overrides):
    values = {
        "name": "VIP",
        "status": SegmentStatus.ACTIVE,
        "criteria": {"type": "transaction", "min_spend": 1000, "period": "last_90_days"},
    }
    values.update(overrides)
    async with session_factory() as session:
        segment = await SegmentService(session).create_segment(SegmentCreate(**values))
        await session.commit()
        return segment.id


async def _spend(session_factory, customer_id, amount, *, days_ago=1) -> None:
    async with session_factory() as session:
        await LedgerService(session).record_transaction(
            customer_id,
            kind=LedgerEntryKind.EARN,
            points=10,
            spend_amount=Decimal(amount),
            occurred_at=dt.datetime.now(dt.timezone.utc) - dt.timedelta(days=days_ago),
        )
        await session.commit()


async def _members(session_factory, segment_id) -> set:
    async with session_factory() as session:
        result = await session.execute(
            select(SegmentMembership.customer_id).where(SegmentMembership.segment_id == segment_id)
        )
        return set(result.scalars().all())


@pytest.mark.asyncio
async def test_process_segment_adds_eligible_customers(session_factory, make_customer) -> None:
    customer_a = await make_customer()
    customer_b = await make_customer()
    await _spend(session_factory, customer_a, "1200")
    await _spend(session_factory, customer_b, "900")
    segment_id = await _create(session_factory)

    async with session_factory() as session:
        result = await SegmentService(session).process_segment(segment_id)

    assert result.as_dict()["added"] == 1
    assert result.removed == 0
    assert result.total == 1
    assert await _members(session_factory, segment_id) == {customer_a}

    async with session_factory() as session:
        segment = await session.get(CustomerSegment, segment_id)
        assert segment.customer_count == 1
        assert segment.last_refreshed is not None


@pytest.mark.asyncio
async def test_process_segment_is_idempotent_and_removes_stale_members(session_factory, make_customer) -> None:
    customer_a = await make_customer()
    customer_b = await make_customer()
    await _spend(session_factory, customer_a, "1200")
    await _spend(session_factory, customer_b, "1500")
    segment_id = await _create(session_factory)

    async with session_factory() as session:
        await SegmentService(session).process_segment(segment_id)
    async with session_factory() as session:
        rerun = await SegmentService(session).process_segment(segment_id)

    assert (rerun.added, rerun.removed, rerun.total) == (0, 0, 2)
    assert await _members(session_factory, segment_id) == {customer_a, customer_b}

    async with session_factory() as session:
        segment = await session.get(CustomerSegment, segment_id)
        segment.criteria = {"type": "transaction", "min_spend": "1300", "period": "last_90_days"}
        await session.commit()

    async with session_factory() as session:
        narrowed = await SegmentService(session).process_segment(segment_id)

    assert (narrowed.added, narrowed.removed, narrowed.total) == (0, 1, 1)
    assert await _members(session_factory, segment_id) == {customer_b}
    snapshot = get_loyalty_store().snapshot()
    assert snapshot.segments["refreshes"] == 3
    assert snapshot.segments["members_removed"] == 1


@pytest.mark.asyncio
async def test_process_segment_skips_inactive_segments(session_factory, make_customer) -> None:
    customer_id = await make_customer()
    await _spend(session_factory, customer_id, "5000")
    segment_id = await _create(session_factory, status=SegmentStatus.DRAFT)

    async with session_factory() as session:
        result = await SegmentService(session).process_segment(segment_id)

    assert result.skipped is True
    assert await _members(session_factory, segment_id) == set()
    assert get_loyalty_store().snapshot().segments["skipped"] == 1


@pytest.mark.asyncio
async def test_segment_names_are_unique(session_factory) -> None:
    await _create(session_factory, name="Whales")
    other_id = await _create(session_factory, name="Minnows")

    async with session_factory() as session:
        service = SegmentService(session)
        with pytest.raises(ConflictError):
            await service.create_segment(
                SegmentCreate(name="Whales", criteria={"type": "app_type", "types": ["web"]})
            )
        with pytest.raises(ConflictError):
            await service.update_segment(other_id, SegmentUpdate(name="Whales"))


@pytest.mark.asyncio
async def test_update_segment_reports_refresh_need(session_factory) -> None:
    segment_id = await _create(session_factory, status=SegmentStatus.DRAFT)

    async with session_factory() as session:
        service = SegmentService(session)
        segment, needs_refresh = await service.update_segment(segment_id, SegmentUpdate(description="Big spenders"))
        assert needs_refresh is False
        assert segment.description == "Big spenders"

        segment, needs_refresh = await service.update_segment(segment_id, SegmentUpdate(status=SegmentStatus.ACTIVE))
        assert needs_refresh is True

        segment, needs_refresh = await service.update_segment(
            segment_id,
            SegmentUpdate(criteria={"type": "device", "types": ["ios"]}),
        )
        assert needs_refresh is True
        assert segment.segment_type.value == "device"
        await session.commit()


@pytest.mark.asyncio
async def test_delete_segment_removes_memberships(session_factory, make_customer) -> None:
    customer_id = await make_customer()
    await _spend(session_factory, customer_id, "2000")
    segment_id = await _create(session_factory)

    async with session_factory() as session:
        await SegmentService(session).process_segment(segment_id)

    async with session_factory() as session:
        await SegmentService(session).delete_segment(segment_id)
        await session.commit()

    async with session_factory() as session:
        remaining = (await session.execute(select(func.count(SegmentMembership.id)))).scalar_one()
        with pytest.raises(NotFoundError):
            await SegmentService(session).get_segment(segment_id)
    assert remaining == 0


@pytest.mark.asyncio
async def test_get_segment_customers_paginates(session_factory, make_customer) -> None:
    ids = []
    for name in ("Charlie", "Alice", "Bob"):
        customer_id = await make_customer(name=name)
        await _spend(session_factory, customer_id, "1500")
        ids.append(customer_id)
    segment_id = await _create(session_factory)

    async with session_factory() as session:
        await SegmentService(session).process_segment(segment_id)

    async with session_factory() as session:
        page = await SegmentService(session).get_segment_customers(segment_id, limit=2, sort="name_asc")

    assert page.total == 3
    assert page.customer_count == 3
    assert [customer.name for customer in page.customers] == ["Alice", "Bob"]
    assert page.customers[0].metadata["total_spend"].startswith("1500")


@pytest.mark.asyncio
async def test_list_segments_filters(session_factory) -> None:
    await _create(session_factory, name="Spenders")
    await _create(
        session_factory,
        name="Apple fans",
        status=SegmentStatus.DRAFT,
        criteria={"type": "device", "types": ["ios"]},
    )

    async with session_factory() as session:
        service = SegmentService(session)
        active = await service.list_segments(status=SegmentStatus.ACTIVE)
        by_name = await service.list_segments(name="apple")

    assert [segment.name for segment in active] == ["Spenders"]
    assert [segment.name for segment in by_name] == ["Apple fans"]


def test_is_refresh_due_matches_frequency_slot(monkeypatch) -> None:
    monkeypatch.setattr(settings, "segment_refresh_hour", 3)
    monkeypatch.setattr(settings, "segment_refresh_weekday", 0)
    monday_3am = dt.datetime(2026, 3, 16, 3, 0, tzinfo=dt.timezone.utc)
    tuesday_3am = monday_3am + dt.timedelta(days=1)
    monday_4am = monday_3am + dt.timedelta(hours=1)

    def segment(frequency, *, enabled=True, status=SegmentStatus.ACTIVE):
        return CustomerSegment(auto_refresh_enabled=enabled, auto_refresh_frequency=frequency, status=status)

    hourly = segment(RefreshFrequency.HOURLY)
    daily = segment(RefreshFrequency.DAILY)
    weekly = segment(RefreshFrequency.WEEKLY)

    assert is_refresh_due(hourly, monday_4am)
    assert is_refresh_due(daily, tuesday_3am)
    assert not is_refresh_due(daily, monday_4am)
    assert is_refresh_due(weekly, monday_3am)
    assert not is_refresh_due(weekly, tuesday_3am)
    assert not is_refresh_due(segment(RefreshFrequency.HOURLY, enabled=False), monday_4am)
    assert not is_refresh_due(segment(RefreshFrequency.HOURLY, status=SegmentStatus.INACTIVE), monday_4am)


@pytest.mark.asyncio
async def test_segments_due_for_refresh(session_factory, monkeypatch) -> None:
    monkeypatch.setattr(settings, "segment_refresh_hour", 3)
    await _create(session_factory, name="Hourly", auto_refresh=AutoRefresh(enabled=True, frequency="hourly"))
    await _create(session_factory, name="Daily", auto_refresh=AutoRefresh(enabled=True, frequency="daily"))
    await _create(session_factory, name="Manual")

    async with session_factory() as session:
        service = SegmentService(session)
        at_noon = await service.segments_due_for_refresh(dt.datetime(2026, 3, 16, 12, tzinfo=dt.timezone.utc))
        at_three = await service.segments_due_for_refresh(dt.datetime(2026, 3, 16, 3, tzinfo=dt.timezone.utc))

    assert [segment.name for segment in at_noon] == ["Hourly"]
    assert sorted(segment.name for segment in at_three) == ["Daily", "Hourly"]


@pytest.mark.asyncio
async def test_refresh_segment_enqueues_deduplicated_job(session_factory) -> None:
    segment_id = await _create(session_factory)
    queue = InProcessJobQueue(concurrency=1)

    async def handler(payload):
        return payload

    queue.register(settings.segment_refresh_queue, settings.segment_refresh_job, handler)

    async with session_factory() as session:
        service = SegmentService(session, job_queue=queue)
        first = await service.refresh_segment(segment_id)
        second = await service.refresh_segment(segment_id)

        with pytest.raises(InfrastructureError):
            await SegmentService(session).refresh_segment(segment_id)

    assert first is second
    assert first.dedupe_key == refresh_dedupe_key(segment_id)
    assert first.payload == {"segment_id": str(segment_id)}
    await queue.close()
