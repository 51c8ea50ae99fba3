import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest
import pytest_asyncio


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

from loyalty_engine.db.base import Base  # noqa: E402
from loyalty_engine.db.session import build_engine, build_session_factory  # noqa: E402
from loyalty_engine.models import ConversionRule, Customer  # noqa: E402
from loyalty_engine.observability import get_loyalty_store, get_scheduler_store  # noqa: E402


@pytest_asyncio.fixture
async def session_factory():
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = build_session_factory(engine)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture(autouse=True)
def reset_observability():
    get_loyalty_store().reset()
    get_scheduler_store().reset()
    yield


@pytest.fixture
def make_customer(session_factory):
    """Persist a customer and return its id."""

    counter = {"value": 0}

    async def _make(**overrides):
        counter["value"] += 1
        values = {
            "external_ref": f"cust-{counter['value']}",
            "name": f"Customer {counter['value']}",
            "email": f"customer{counter['value']}@example.com",
            "points_balance": 0,
            "coins_balance": 0,
            "app_types": [],
        }
        values.update(overrides)
        async with session_factory() as session:
            customer = Customer(**values)
            session.add(customer)
            await session.commit()
            return customer.id

    return _make


@pytest.fixture
def make_rule(session_factory):
    """Persist a conversion rule and return its id."""

    async def _make(**overrides):
        values = {
            "name": "Standard",
            "rate": Decimal("10"),
            "min_points_required": 0,
            "max_points_per_conversion": 0,
            "bonus_percentage": Decimal("0"),
            "priority": 0,
            "start_at": datetime.now(timezone.utc) - timedelta(days=1),
            "end_at": None,
            "is_active": True,
        }
        values.update(overrides)
        async with session_factory() as session:
            rule = ConversionRule(**values)
            session.add(rule)
            await session.commit()
            return rule.id

    return _make
