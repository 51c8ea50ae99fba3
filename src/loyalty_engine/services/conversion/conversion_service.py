"""Points to coins conversion engine."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_FLOOR, Decimal
from typing import Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.core.clock import ensure_utc, utcnow
from loyalty_engine.core.errors import InsufficientFundsError, NotFoundError, ValidationError
from loyalty_engine.models.conversion import ConversionHistory, ConversionRule, ConversionStatus
from loyalty_engine.models.ledger import LedgerEntryKind, LedgerEntrySource
from loyalty_engine.observability.loyalty import get_loyalty_store
from loyalty_engine.services.ledger.ledger_service import LedgerService, generate_reference


@dataclass(frozen=True)
class ConversionQuote:
    """Coins a given amount of points buys under a rule."""

    points: int
    base_coins: int
    bonus_coins: int

    @property
    def total_coins(self) -> int:
        return self.base_coins + self.bonus_coins


def calculate(points: int, rule: ConversionRule) -> ConversionQuote:
    """Floor division of points by rate, plus a floored percentage bonus."""

    rate = Decimal(rule.rate)
    if rate <= 0:
        raise ValidationError("Conversion rate must be positive", rule_id=str(rule.id))
    if points < 0:
        raise ValidationError("Points must not be negative", points=points)

    base = int((Decimal(points) / rate).to_integral_value(rounding=ROUND_FLOOR))
    bonus_percentage = Decimal(rule.bonus_percentage or 0)
    bonus = int((Decimal(base) * bonus_percentage / Decimal(100)).to_integral_value(rounding=ROUND_FLOOR))
    return ConversionQuote(points=points, base_coins=base, bonus_coins=bonus)


def format_rate(rule: ConversionRule) -> str:
    rate = Decimal(rule.rate).normalize()
    return f"1:{rate:f}"


def check_limits(points: int, rule: ConversionRule) -> None:
    minimum = int(rule.min_points_required or 0)
    maximum = int(rule.max_points_per_conversion or 0)
    if points < minimum:
        raise ValidationError(
            f"Minimum {minimum} points required for conversion",
            points=points,
            min_points_required=minimum,
        )
    if maximum > 0 and points > maximum:
        raise ValidationError(
            f"Maximum {maximum} points allowed per conversion",
            points=points,
            max_points_per_conversion=maximum,
        )


class ConversionService:
    """Resolves conversion rules and performs atomic points to coins conversions."""

    def __init__(self, db_session: AsyncSession, *, ledger: LedgerService | None = None) -> None:
        self._db = db_session
        self._ledger = ledger or LedgerService(db_session)
        self._store = get_loyalty_store()

    async def list_active_rules(self, *, now: datetime | None = None) -> list[ConversionRule]:
        """Return currently active rules, preferred rule first."""

        moment = ensure_utc(now) or utcnow()
        stmt = (
            select(ConversionRule)
            .where(
                ConversionRule.is_active.is_(True),
                ConversionRule.start_at <= moment,
                or_(ConversionRule.end_at.is_(None), ConversionRule.end_at > moment),
            )
            .order_by(
                ConversionRule.priority.desc(),
                ConversionRule.created_at.desc(),
                ConversionRule.id.desc(),
            )
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def get_rule(self, rule_id: UUID) -> ConversionRule:
        rule = await self._db.get(ConversionRule, rule_id)
        if rule is None:
            raise NotFoundError("Conversion rule not found", rule_id=str(rule_id))
        return rule

    async def resolve_rule(
        self,
        rule_id: UUID | None = None,
        *,
        now: datetime | None = None,
    ) -> ConversionRule:
        if rule_id is not None:
            rule = await self.get_rule(rule_id)
            if not rule.is_currently_active(now):
                raise ValidationError("Conversion rule is not currently active", rule_id=str(rule_id))
            return rule

        rules = await self.list_active_rules(now=now)
        if not rules:
            raise NotFoundError("No active conversion rule")
        return rules[0]

    async def quote(self, points: int, *, rule_id: UUID | None = None) -> tuple[ConversionRule, ConversionQuote]:
        rule = await self.resolve_rule(rule_id)
        return rule, calculate(points, rule)

    async def convert(
        self,
        customer_id: UUID,
        points: int,
        *,
        rule_id: UUID | None = None,
        notes: str | None = None,
    ) -> ConversionHistory:
        """Convert points into coins.

        The history row, the redeem ledger entry and both balance updates are
        flushed together; the caller's unit of work commits or rolls back all
        of them.
        """

        if points <= 0:
            raise ValidationError("Points to convert must be positive", points=points)

        rule = await self.resolve_rule(rule_id)
        try:
            check_limits(points, rule)
        except ValidationError:
            self._store.record_conversion_rejected("limits")
            raise

        customer = await self._ledger.lock_customer(customer_id)
        balance = int(customer.points_balance or 0)
        if balance < points:
            self._store.record_conversion_rejected("insufficient_funds")
            raise InsufficientFundsError(balance=balance, requested=points)

        conversion = calculate(points, rule)
        reference = generate_reference("CONV")
        rate_label = format_rate(rule)

        ledger_entry = await self._ledger.record_transaction(
            customer.id,
            kind=LedgerEntryKind.REDEEM,
            points=points,
            source=LedgerEntrySource.CONVERSION,
            transaction_id=reference,
            metadata={
                "rule_id": str(rule.id),
                "conversion_rate": rate_label,
                "coins": conversion.total_coins,
            },
            notes=notes or "Points converted to coins",
        )
        customer.coins_balance = int(customer.coins_balance or 0) + conversion.total_coins

        history = ConversionHistory(
            customer_id=customer.id,
            rule_id=rule.id,
            ledger_entry_id=ledger_entry.id,
            points=points,
            base_coins=conversion.base_coins,
            bonus_coins=conversion.bonus_coins,
            conversion_rate=rate_label,
            reference=reference,
            status=ConversionStatus.COMPLETED,
            notes=notes,
            processed_at=utcnow(),
        )
        self._db.add(history)
        await self._db.flush()

        self._store.record_conversion(points=points, coins=conversion.total_coins)
        logger.info(
            "Converted points to coins",
            customer_id=str(customer.id),
            rule_id=str(rule.id),
            reference=reference,
            points=points,
            base_coins=conversion.base_coins,
            bonus_coins=conversion.bonus_coins,
        )
        return history

    async def get_history(self, history_id: UUID) -> ConversionHistory:
        history = await self._db.get(ConversionHistory, history_id)
        if history is None:
            raise NotFoundError("Conversion history not found", history_id=str(history_id))
        return history

    async def list_history(
        self,
        *,
        customer_id: UUID | None = None,
        statuses: Sequence[ConversionStatus] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 25,
        offset: int = 0,
    ) -> list[ConversionHistory]:
        bounded_limit = max(1, min(limit, 100))
        stmt = select(ConversionHistory).order_by(
            ConversionHistory.created_at.desc(), ConversionHistory.id.desc()
        )
        if customer_id is not None:
            stmt = stmt.where(ConversionHistory.customer_id == customer_id)
        if statuses:
            stmt = stmt.where(ConversionHistory.status.in_(list(statuses)))
        if start is not None:
            stmt = stmt.where(ConversionHistory.created_at >= start)
        if end is not None:
            stmt = stmt.where(ConversionHistory.created_at <= end)
        stmt = stmt.offset(max(offset, 0)).limit(bounded_limit)
        result = await self._db.execute(stmt)
        return list(result.scalars().all())


__all__ = [
    "ConversionQuote",
    "ConversionService",
    "calculate",
    "check_limits",
    "format_rate",
]
