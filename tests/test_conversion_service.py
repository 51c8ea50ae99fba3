import datetime as dt
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from loyalty_engine.core.errors import InsufficientFundsError, NotFoundError, ValidationError
from loyalty_engine.models import (
    ConversionHistory,
    ConversionRule,
    Customer,
    LedgerEntry,
    LedgerEntryKind,
    LedgerEntrySource,
)
from loyalty_engine.observability import get_loyalty_store
from loyalty_engine.services.conversion import ConversionService, calculate, check_limits, format_rate
from loyalty_engine.services.ledger import LedgerService


def _rule(**overrides) -> ConversionRule:
    values = {
        "rate": Decimal("10"),
        "bonus_percentage": Decimal("0"),
        "min_points_required": 0,
        "max_points_per_conversion": 0,
    }
    values.update(overrides)
    return ConversionRule(**values)


def test_calculate_floors_base_and_bonus() -> None:
    rule = _rule(rate=Decimal("10"), bonus_percentage=Decimal("10"))

    quote = calculate(150, rule)
    assert (quote.base_coins, quote.bonus_coins, quote.total_coins) == (15, 1, 16)

    quote = calculate(99, rule)
    assert (quote.base_coins, quote.bonus_coins) == (9, 0)

    assert calculate(0, rule).total_coins == 0


def test_calculate_is_pure() -> None:
    rule = _rule(rate=Decimal("2.5"), bonus_percentage=Decimal("33"))
    assert calculate(1000, rule) == calculate(1000, rule)
    assert calculate(1000, rule).base_coins == 400
    assert calculate(1000, rule).bonus_coins == 132


def test_calculate_rejects_bad_input() -> None:
    with pytest.raises(ValidationError):
        calculate(10, _rule(rate=Decimal("0")))
    with pytest.raises(ValidationError):
        calculate(-1, _rule())


def test_check_limits_boundaries() -> None:
    rule = _rule(min_points_required=100, max_points_per_conversion=500)
    check_limits(100, rule)
    check_limits(500, rule)
    with pytest.raises(ValidationError):
        check_limits(99, rule)
    with pytest.raises(ValidationError):
        check_limits(501, rule)

    # zero max means unlimited
    check_limits(10_000, _rule(max_points_per_conversion=0))


def test_format_rate() -> None:
    assert format_rate(_rule(rate=Decimal("10.00"))) == "1:10"
    assert format_rate(_rule(rate=Decimal("2.50"))) == "1:2.5"


@pytest.mark.asyncio
async def test_convert_points_with_bonus(session_factory, make_customer, make_rule) -> None:
    customer_id = await make_customer(coins_balance=3)
    rule_id = await make_rule(rate=Decimal("10"), min_points_required=100, bonus_percentage=Decimal("10"))

    async with session_factory() as session:
        await LedgerService(session).record_transaction(customer_id, kind=LedgerEntryKind.EARN, points=500)
        await session.commit()

    async with session_factory() as session:
        history = await ConversionService(session).convert(customer_id, 150)
        await session.commit()

    assert history.rule_id == rule_id
    assert history.base_coins == 15
    assert history.bonus_coins == 1
    assert history.total_coins == 16
    assert history.conversion_rate == "1:10"
    assert history.reference.startswith("CONV-")

    async with session_factory() as session:
        customer = await session.get(Customer, customer_id)
        assert customer.points_balance == 350
        assert customer.coins_balance == 19

        entry = await session.get(LedgerEntry, history.ledger_entry_id)
        assert entry.kind == LedgerEntryKind.REDEEM
        assert entry.source == LedgerEntrySource.CONVERSION
        assert entry.points == -150
        assert entry.transaction_id == history.reference

        audit = await LedgerService(session).audit_balance(customer_id)
        assert audit.consistent
        assert audit.ledger_balance == 350

    snapshot = get_loyalty_store().snapshot()
    assert snapshot.conversions["total"] == 1
    assert snapshot.conversions["coins"] == 16


@pytest.mark.asyncio
async def test_convert_insufficient_balance_leaves_no_trace(session_factory, make_customer, make_rule) -> None:
    customer_id = await make_customer(points_balance=50)
    await make_rule()

    async with session_factory() as session:
        with pytest.raises(InsufficientFundsError):
            await ConversionService(session).convert(customer_id, 100)
        await session.rollback()

    async with session_factory() as session:
        customer = await session.get(Customer, customer_id)
        history_count = (await session.execute(select(func.count(ConversionHistory.id)))).scalar_one()
        ledger_count = (await session.execute(select(func.count(LedgerEntry.id)))).scalar_one()

    assert customer.points_balance == 50
    assert customer.coins_balance == 0
    assert history_count == 0
    assert ledger_count == 0
    assert get_loyalty_store().snapshot().conversions["rejected:insufficient_funds"] == 1


@pytest.mark.asyncio
async def test_convert_enforces_rule_limits(session_factory, make_customer, make_rule) -> None:
    customer_id = await make_customer(points_balance=10_000)
    await make_rule(min_points_required=100, max_points_per_conversion=1000)

    async with session_factory() as session:
        service = ConversionService(session)
        with pytest.raises(ValidationError):
            await service.convert(customer_id, 99)
        with pytest.raises(ValidationError):
            await service.convert(customer_id, 1001)
        with pytest.raises(ValidationError):
            await service.convert(customer_id, 0)

        low = await service.convert(customer_id, 100)
        high = await service.convert(customer_id, 1000)
        await session.commit()

    assert (low.points, high.points) == (100, 1000)
    assert get_loyalty_store().snapshot().conversions["rejected:limits"] == 2


@pytest.mark.asyncio
async def test_resolve_rule_prefers_priority_then_newest(session_factory, make_rule) -> None:
    now = dt.datetime.now(dt.timezone.utc)
    await make_rule(name="low", priority=1)
    high = await make_rule(name="high", priority=5)
    await make_rule(name="expired", priority=9, end_at=now - dt.timedelta(minutes=1))
    await make_rule(name="future", priority=9, start_at=now + dt.timedelta(days=1))
    await make_rule(name="disabled", priority=9, is_active=False)

    async with session_factory() as session:
        service = ConversionService(session)
        rule = await service.resolve_rule()
        active = await service.list_active_rules()

    assert rule.id == high
    assert [item.name for item in active] == ["high", "low"]


@pytest.mark.asyncio
async def test_resolve_explicit_rule(session_factory, make_rule) -> None:
    inactive = await make_rule(name="paused", is_active=False)
    active = await make_rule(name="live")

    async with session_factory() as session:
        service = ConversionService(session)
        assert (await service.resolve_rule(active)).name == "live"
        with pytest.raises(ValidationError):
            await service.resolve_rule(inactive)
        with pytest.raises(NotFoundError):
            await service.resolve_rule(uuid4())


@pytest.mark.asyncio
async def test_resolve_rule_without_active_rules(session_factory) -> None:
    async with session_factory() as session:
        with pytest.raises(NotFoundError):
            await ConversionService(session).resolve_rule()


@pytest.mark.asyncio
async def test_quote_does_not_touch_balances(session_factory, make_customer, make_rule) -> None:
    customer_id = await make_customer(points_balance=300)
    await make_rule(rate=Decimal("4"), bonus_percentage=Decimal("50"))

    async with session_factory() as session:
        rule, quote = await ConversionService(session).quote(300)
        await session.commit()

    assert rule.name == "Standard"
    assert (quote.base_coins, quote.bonus_coins) == (75, 37)

    async with session_factory() as session:
        customer = await session.get(Customer, customer_id)
    assert customer.points_balance == 300
    assert customer.coins_balance == 0


@pytest.mark.asyncio
async def test_list_history_filters_by_customer(session_factory, make_customer, make_rule) -> None:
    first = await make_customer(points_balance=1000)
    second = await make_customer(points_balance=1000)
    await make_rule()

    async with session_factory() as session:
        service = ConversionService(session)
        await service.convert(first, 100)
        await service.convert(first, 200)
        await service.convert(second, 300)
        await session.commit()

        first_history = await service.list_history(customer_id=first)
        fetched = await service.get_history(first_history[0].id)

    assert sorted(item.points for item in first_history) == [100, 200]
    assert fetched.customer_id == first
