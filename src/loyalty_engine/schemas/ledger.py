from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from loyalty_engine.models.ledger import LedgerEntryKind, LedgerEntrySource, LedgerEntryStatus

# meta: schema: ledger


class TransactionCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    customer_id: UUID
    kind: LedgerEntryKind
    points: int
    status: LedgerEntryStatus = LedgerEntryStatus.COMPLETED
    source: LedgerEntrySource = LedgerEntrySource.OTHER
    transaction_id: str | None = Field(None, min_length=1)
    spend_amount: Decimal | None = Field(None, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)
    notes: str | None = None
    occurred_at: datetime | None = None
    actor: str | None = None

    @model_validator(mode="after")
    def _check_points(self) -> "TransactionCreate":
        if self.kind in {LedgerEntryKind.EARN, LedgerEntryKind.REDEEM, LedgerEntryKind.EXPIRE}:
            if self.points <= 0:
                raise ValueError(f"{self.kind.value} entries require a positive point amount")
        elif self.points == 0:
            raise ValueError(f"{self.kind.value} entries require a non-zero point amount")
        return self


class TransactionStatusUpdate(BaseModel):
    entry_id: UUID
    status: LedgerEntryStatus
    notes: str | None = None
    actor: str | None = None


class LedgerEntryView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_id: UUID
    kind: LedgerEntryKind
    status: LedgerEntryStatus
    source: LedgerEntrySource
    points: int
    spend_amount: Decimal | None = None
    transaction_id: str
    notes: str | None = None
    is_deleted: bool
    occurred_at: datetime | None = None


__all__ = ["LedgerEntryView", "TransactionCreate", "TransactionStatusUpdate"]
