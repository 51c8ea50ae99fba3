from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from loyalty_engine.models.conversion import ConversionStatus

# meta: schema: conversion


class ConversionRequest(BaseModel):
    customer_id: UUID
    points: int = Field(..., gt=0)
    rule_id: UUID | None = None
    actor: str | None = None


class CalculationRequest(BaseModel):
    points: int = Field(..., ge=0)
    rule_id: UUID | None = None


class ConversionQuoteView(BaseModel):
    rule_id: UUID
    points: int
    base_coins: int
    bonus_coins: int
    total_coins: int
    conversion_rate: str


class ConversionHistoryView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_id: UUID
    rule_id: UUID | None = None
    points: int
    base_coins: int
    bonus_coins: int
    total_coins: int
    conversion_rate: str
    reference: str
    status: ConversionStatus
    processed_at: datetime | None = None


__all__ = ["CalculationRequest", "ConversionHistoryView", "ConversionQuoteView", "ConversionRequest"]
