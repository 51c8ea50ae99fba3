"""Customer segmentation models."""

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
    JSON,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from loyalty_engine.db.base import Base


class SegmentType(str, Enum):
    TRANSACTION = "transaction"
    ENGAGEMENT = "engagement"
    APP_TYPE = "app_type"
    DEVICE = "device"
    CUSTOM = "custom"


class SegmentStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"


class RefreshFrequency(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"


class CustomerSegment(Base):
    """Named, criteria-defined customer audience."""

    __tablename__ = "customer_segments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False, unique=True)
    description = Column(Text, nullable=True)
    segment_type = Column(SqlEnum(SegmentType, name="customer_segment_type"), nullable=False, index=True)
    criteria = Column(JSON, nullable=False, default=dict)
    status = Column(
        SqlEnum(SegmentStatus, name="customer_segment_status"),
        nullable=False,
        default=SegmentStatus.DRAFT,
        server_default=SegmentStatus.DRAFT.name,
        index=True,
    )
    customer_count = Column(Integer, nullable=False, default=0, server_default="0")
    last_refreshed = Column(DateTime(timezone=True), nullable=True)
    auto_refresh_enabled = Column(Boolean, nullable=False, default=False, server_default="false")
    auto_refresh_frequency = Column(
        SqlEnum(RefreshFrequency, name="segment_refresh_frequency"),
        nullable=False,
        default=RefreshFrequency.DAILY,
        server_default=RefreshFrequency.DAILY.name,
    )
    created_by = Column(String, nullable=True)
    updated_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    memberships = relationship(
        "SegmentMembership", back_populates="segment", cascade="all, delete-orphan"
    )


class SegmentMembership(Base):
    """Customer membership in a segment; rows are inserted or deleted, never updated."""

    __tablename__ = "segment_memberships"
    __table_args__ = (
        UniqueConstraint("segment_id", "customer_id", name="uq_segment_memberships_segment_customer"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    segment_id = Column(
        UUID(as_uuid=True),
        ForeignKey("customer_segments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    customer_id = Column(
        UUID(as_uuid=True),
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    added_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    metadata_json = Column("metadata", JSON, nullable=True)

    segment = relationship("CustomerSegment", back_populates="memberships")
    customer = relationship("Customer")
