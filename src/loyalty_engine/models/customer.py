from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    Integer,
    JSON,
    Numeric,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from loyalty_engine.db.base import Base


class DeviceTypeEnum(str, Enum):
    IOS = "ios"
    ANDROID = "android"
    WEB = "web"
    OTHER = "other"


class Customer(Base):
    """Customer profile plus the point and coin balances mutated by the core."""

    __tablename__ = "customers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    external_ref = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    tier = Column(String, nullable=True)

    points_balance = Column(Integer, nullable=False, default=0, server_default="0")
    coins_balance = Column(Integer, nullable=False, default=0, server_default="0")

    app_types = Column(JSON, nullable=False, default=list)
    device_type = Column(SqlEnum(DeviceTypeEnum, name="customer_device_type"), nullable=True)
    device_model = Column(String, nullable=True)
    os_version = Column(String, nullable=True)

    app_opens = Column(Integer, nullable=False, default=0, server_default="0")
    last_active_at = Column(DateTime(timezone=True), nullable=True)
    email_open_rate = Column(Numeric(5, 2), nullable=True)
    email_click_rate = Column(Numeric(5, 2), nullable=True)
    push_open_rate = Column(Numeric(5, 2), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    ledger_entries = relationship("LedgerEntry", back_populates="customer")
    conversions = relationship("ConversionHistory", back_populates="customer")
