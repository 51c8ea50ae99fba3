"""Segment criteria and segment payload schemas.

Criteria form a closed union discriminated on ``type``; each variant is bound to
exactly one evaluator in ``services.segments.criteria``.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)

from loyalty_engine.models.ledger import LedgerEntryKind, LedgerEntrySource
from loyalty_engine.models.segment import RefreshFrequency, SegmentStatus, SegmentType

# meta: schema: customer-segments

TransactionPeriod = Literal["last_7_days", "last_30_days", "last_90_days", "last_year", "all_time"]
LastActiveWindow = Literal[
    "today",
    "this_week",
    "this_month",
    "last_month",
    "inactive_30_days",
    "inactive_90_days",
]
DeviceKind = Literal["ios", "android", "web", "other"]

PredicateField = Literal[
    "external_ref",
    "name",
    "email",
    "tier",
    "is_active",
    "points_balance",
    "coins_balance",
    "app_types",
    "device_type",
    "device_model",
    "os_version",
    "app_opens",
    "last_active_at",
    "email_open_rate",
    "email_click_rate",
    "push_open_rate",
    "created_at",
]
PredicateOperator = Literal[
    "eq",
    "ne",
    "gt",
    "gte",
    "lt",
    "lte",
    "in",
    "not_in",
    "contains",
    "is_null",
    "not_null",
]


class _Criteria(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class TransactionCriteria(_Criteria):
    type: Literal["transaction"] = "transaction"
    period: TransactionPeriod = Field(
        "all_time",
        validation_alias=AliasChoices("period", "transaction_period"),
    )
    transaction_types: list[LedgerEntryKind] = Field(default_factory=list)
    sources: list[LedgerEntrySource] = Field(default_factory=list)
    min_transactions: int | None = Field(None, ge=0)
    max_transactions: int | None = Field(None, ge=0)
    min_points: int | None = None
    max_points: int | None = None
    min_spend: Decimal | None = Field(None, ge=0)
    max_spend: Decimal | None = Field(None, ge=0)

    @model_validator(mode="after")
    def _check_ranges(self) -> "TransactionCriteria":
        for metric in ("transactions", "points", "spend"):
            low = getattr(self, f"min_{metric}")
            high = getattr(self, f"max_{metric}")
            if low is not None and high is not None and low > high:
                raise ValueError(f"min_{metric} must not exceed max_{metric}")
        return self


class EngagementCriteria(_Criteria):
    type: Literal["engagement"] = "engagement"
    min_app_opens: int | None = Field(
        None,
        ge=0,
        validation_alias=AliasChoices("min_app_opens", "app_opens"),
    )
    last_active: LastActiveWindow | None = None
    min_email_open_rate: Decimal | None = Field(None, ge=0, le=100)
    min_email_click_rate: Decimal | None = Field(None, ge=0, le=100)
    min_push_open_rate: Decimal | None = Field(None, ge=0, le=100)


class AppTypeCriteria(_Criteria):
    type: Literal["app_type"] = "app_type"
    types: list[str] = Field(..., min_length=1)


class DeviceCriteria(_Criteria):
    type: Literal["device"] = "device"
    types: list[DeviceKind] = Field(default_factory=list)
    models: list[str] = Field(default_factory=list)
    os_versions: list[str] = Field(default_factory=list)


class Predicate(BaseModel):
    """Whitelisted ``field operator value`` comparison against a customer profile."""

    model_config = ConfigDict(extra="forbid")

    field: PredicateField
    operator: PredicateOperator = "eq"
    value: Any = None

    @model_validator(mode="after")
    def _check_value(self) -> "Predicate":
        if self.operator in {"in", "not_in"} and not isinstance(self.value, list):
            raise ValueError(f"Operator {self.operator} requires a list value")
        if self.operator not in {"is_null", "not_null"} and self.value is None:
            raise ValueError(f"Operator {self.operator} requires a value")
        return self


class CustomCriteria(_Criteria):
    type: Literal["custom"] = "custom"
    match: Literal["all", "any"] = "all"
    predicates: list[Predicate] = Field(..., min_length=1)
    description: str | None = None


SegmentCriteria = Annotated[
    Union[TransactionCriteria, EngagementCriteria, AppTypeCriteria, DeviceCriteria, CustomCriteria],
    Field(discriminator="type"),
]

_CRITERIA_ADAPTER: TypeAdapter[SegmentCriteria] = TypeAdapter(SegmentCriteria)


def parse_criteria(payload: Any) -> SegmentCriteria:
    """Validate a raw criteria mapping (or pass through a parsed model)."""

    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    return _CRITERIA_ADAPTER.validate_python(payload)


class AutoRefresh(BaseModel):
    enabled: bool = False
    frequency: RefreshFrequency = RefreshFrequency.DAILY


class SegmentCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1)
    description: str | None = None
    status: SegmentStatus = SegmentStatus.DRAFT
    criteria: SegmentCriteria
    auto_refresh: AutoRefresh = Field(default_factory=AutoRefresh)
    actor: str | None = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("Segment name must not be blank")
        return stripped


class SegmentUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str | None = None
    description: str | None = None
    status: SegmentStatus | None = None
    criteria: SegmentCriteria | None = None
    auto_refresh: AutoRefresh | None = None
    actor: str | None = None


class SegmentView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None = None
    segment_type: SegmentType
    criteria: dict[str, Any]
    status: SegmentStatus
    customer_count: int = 0
    last_refreshed: datetime | None = None
    auto_refresh_enabled: bool = False
    auto_refresh_frequency: RefreshFrequency = RefreshFrequency.DAILY
    created_by: str | None = None
    updated_by: str | None = None


class SegmentCustomer(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    customer_id: UUID
    external_ref: str
    name: str | None = None
    email: str | None = None
    is_active: bool
    added_at: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)


class SegmentCustomersPage(BaseModel):
    segment_id: UUID
    segment_name: str
    customer_count: int
    last_refreshed: datetime | None = None
    total: int
    limit: int
    offset: int
    customers: list[SegmentCustomer] = Field(default_factory=list)


__all__ = [
    "AppTypeCriteria",
    "AutoRefresh",
    "CustomCriteria",
    "DeviceCriteria",
    "EngagementCriteria",
    "Predicate",
    "SegmentCreate",
    "SegmentCriteria",
    "SegmentCustomer",
    "SegmentCustomersPage",
    "SegmentUpdate",
    "SegmentView",
    "TransactionCriteria",
    "parse_criteria",
]
