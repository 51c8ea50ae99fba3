"""Points to coins conversion models."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from loyalty_engine.core.clock import ensure_utc, utcnow
from loyalty_engine.db.base import Base


class ConversionRule(Base):
    """Administrator-defined exchange rate, limits and bonus for conversions."""

    __tablename__ = "conversion_rules"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    rate = Column(Numeric(12, 2), nullable=False)
    min_points_required = Column(Integer, nullable=False, default=0, server_default="0")
    max_points_per_conversion = Column(Integer, nullable=False, default=0, server_default="0")
    bonus_percentage = Column(Numeric(5, 2), nullable=False, default=0, server_default="0")
    priority = Column(Integer, nullable=False, default=0, server_default="0")
    start_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    end_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    conversions = relationship("ConversionHistory", back_populates="rule")

    def is_currently_active(self, now=None) -> bool:
        now = ensure_utc(now) or utcnow()
        start_at = ensure_utc(self.start_at)
        end_at = ensure_utc(self.end_at)
        return bool(self.is_active) and start_at is not None and start_at <= now and (
            end_at is None or end_at > now
        )


class ConversionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ConversionHistory(Base):
    """Immutable record of a committed points to coins conversion."""

    __tablename__ = "conversion_history"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(
        UUID(as_uuid=True),
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    rule_id = Column(UUID(as_uuid=True), ForeignKey("conversion_rules.id"), nullable=True)
    ledger_entry_id = Column(UUID(as_uuid=True), ForeignKey("ledger_entries.id"), nullable=True)
    points = Column(Integer, nullable=False)
    base_coins = Column(Integer, nullable=False)
    bonus_coins = Column(Integer, nullable=False, default=0, server_default="0")
    conversion_rate = Column(String, nullable=False)
    reference = Column(String, nullable=False, unique=True)
    status = Column(
        SqlEnum(ConversionStatus, name="conversion_status"),
        nullable=False,
        default=ConversionStatus.COMPLETED,
        server_default=ConversionStatus.COMPLETED.name,
    )
    notes = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    customer = relationship("Customer", back_populates="conversions")
    rule = relationship("ConversionRule", back_populates="conversions")

    @property
    def total_coins(self) -> int:
        return int(self.base_coins or 0) + int(self.bonus_coins or 0)
