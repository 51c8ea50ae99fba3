"""Points ledger models."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from loyalty_engine.db.base import Base


class LedgerEntryKind(str, Enum):
    """Semantic kinds of balance-affecting events."""

    EARN = "earn"
    REDEEM = "redeem"
    EXPIRE = "expire"
    ADJUST = "adjust"
    TRANSFER = "transfer"


class LedgerEntryStatus(str, Enum):
    """Lifecycle statuses for ledger entries."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class LedgerEntrySource(str, Enum):
    """Where a ledger entry originated."""

    PURCHASE = "purchase"
    REFERRAL = "referral"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    CONVERSION = "conversion"
    AUTO_EXPIRE = "auto_expire"
    OTHER = "other"


class LedgerEntry(Base):
    """Append-only ledger entry; ``points`` holds the signed balance delta."""

    __tablename__ = "ledger_entries"
    __table_args__ = (
        Index("ix_ledger_entries_customer_occurred", "customer_id", "occurred_at"),
        Index("ix_ledger_entries_status_kind", "status", "kind"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(
        UUID(as_uuid=True),
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    kind = Column(SqlEnum(LedgerEntryKind, name="ledger_entry_kind"), nullable=False)
    status = Column(
        SqlEnum(LedgerEntryStatus, name="ledger_entry_status"),
        nullable=False,
        default=LedgerEntryStatus.PENDING,
        server_default=LedgerEntryStatus.PENDING.name,
    )
    source = Column(
        SqlEnum(LedgerEntrySource, name="ledger_entry_source"),
        nullable=False,
        default=LedgerEntrySource.OTHER,
        server_default=LedgerEntrySource.OTHER.name,
    )
    points = Column(Integer, nullable=False)
    spend_amount = Column(Numeric(14, 2), nullable=True)
    transaction_id = Column(String, nullable=False, unique=True)
    # Entry this one compensates, e.g. the earn entry an expire entry offsets
    related_entry_id = Column(
        UUID(as_uuid=True),
        ForeignKey("ledger_entries.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    metadata_json = Column("metadata", JSON, nullable=True)
    notes = Column(Text, nullable=True)
    is_deleted = Column(Boolean, nullable=False, default=False, server_default="false")
    occurred_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    customer = relationship("Customer", back_populates="ledger_entries")
