"""
Billing engine domain records.

Pydantic models exchanged between the processors and the store implementations.
Money is integer cents, quantities are ``Decimal``, instants are UTC-aware.
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator, model_validator

from dotmac.billing_engine.core.enums import (
    BillingInterval,
    CreditReason,
    InvoiceLineType,
    InvoiceStatus,
    SubscriptionScheduleStatus,
    SubscriptionStatus,
    UsageResolution,
    UsageSource,
)


def ensure_utc(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


UTCDateTime = Annotated[datetime, AfterValidator(ensure_utc)]


def utcnow() -> datetime:
    return datetime.now(UTC)


class BillingEngineModel(BaseModel):
    """Base model for billing engine records."""

    model_config = ConfigDict(use_enum_values=False, validate_assignment=True)


def _check_period(start: datetime | None, end: datetime | None, label: str) -> None:
    if start is not None and end is not None and end <= start:
        raise ValueError(f"{label} end must be later than its start")


# ============================================================================
# Subscriptions
# ============================================================================


class SubscriptionCreate(BillingEngineModel):
    organization_id: str = Field(min_length=1)
    package_id: str = Field(min_length=1)
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    currency: str = Field("usd", min_length=3, max_length=3)
    amount_cents: int = Field(ge=0)
    billing_interval: BillingInterval
    current_period_start: UTCDateTime
    current_period_end: UTCDateTime
    trial_ends_at: UTCDateTime | None = None
    cancel_at_period_end: bool = False
    external_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.lower()

    @model_validator(mode="after")
    def validate_period(self) -> "SubscriptionCreate":
        _check_period(self.current_period_start, self.current_period_end, "Subscription period")
        return self


class SubscriptionUpdate(BillingEngineModel):
    """Partial update; ``None`` leaves a field unchanged."""

    status: SubscriptionStatus | None = None
    package_id: str | None = None
    currency: str | None = None
    amount_cents: int | None = Field(None, ge=0)
    billing_interval: BillingInterval | None = None
    current_period_start: UTCDateTime | None = None
    current_period_end: UTCDateTime | None = None
    trial_ends_at: UTCDateTime | None = None
    cancel_at_period_end: bool | None = None
    canceled_at: UTCDateTime | None = None
    external_id: str | None = None
    metadata: dict[str, Any] | None = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class Subscription(BillingEngineModel):
    id: str
    organization_id: str
    package_id: str
    status: SubscriptionStatus
    currency: str
    amount_cents: int
    billing_interval: BillingInterval
    current_period_start: UTCDateTime
    current_period_end: UTCDateTime
    trial_ends_at: UTCDateTime | None = None
    cancel_at_period_end: bool = False
    canceled_at: UTCDateTime | None = None
    external_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: UTCDateTime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def validate_period(self) -> "Subscription":
        _check_period(self.current_period_start, self.current_period_end, "Subscription period")
        return self

    @property
    def is_active(self) -> bool:
        return self.status in SubscriptionStatus.active_like()


class SubscriptionScheduleCreate(BillingEngineModel):
    subscription_id: str
    target_package_id: str
    effective_at: UTCDateTime
    status: SubscriptionScheduleStatus = SubscriptionScheduleStatus.PENDING
    metadata: dict[str, Any] = Field(default_factory=dict)


class SubscriptionSchedule(SubscriptionScheduleCreate):
    id: str


# ============================================================================
# Usage
# ============================================================================


class UsageEventInput(BillingEngineModel):
    """A usage event as submitted by an emitter; fingerprint is optional."""

    organization_id: str = Field(min_length=1)
    feature_key: str = Field(min_length=1)
    quantity: Decimal = Field(ge=0)
    unit: str = Field(min_length=1)
    recorded_at: UTCDateTime
    source: UsageSource = UsageSource.API
    subscription_id: str | None = None
    tenant_id: str | None = None
    product_id: str | None = None
    fingerprint: str | None = None
    metadata: dict[str, Any] | None = None


class UsageEvent(BillingEngineModel):
    id: str
    organization_id: str
    subscription_id: str | None = None
    tenant_id: str | None = None
    product_id: str | None = None
    feature_key: str
    quantity: Decimal
    unit: str
    recorded_at: UTCDateTime
    source: UsageSource
    fingerprint: str
    metadata: dict[str, Any] | None = None
    created_at: UTCDateTime = Field(default_factory=utcnow)


class UsageAggregateKey(BillingEngineModel):
    """Composite identity of a usage aggregate."""

    model_config = ConfigDict(frozen=True)

    organization_id: str = Field(min_length=1)
    subscription_id: str = Field(min_length=1)
    feature_key: str = Field(min_length=1)
    resolution: UsageResolution
    period_start: UTCDateTime
    period_end: UTCDateTime

    @model_validator(mode="after")
    def validate_period(self) -> "UsageAggregateKey":
        _check_period(self.period_start, self.period_end, "Aggregate period")
        return self


class UsageAggregate(BillingEngineModel):
    id: str
    organization_id: str
    subscription_id: str
    feature_key: str
    resolution: UsageResolution
    period_start: UTCDateTime
    period_end: UTCDateTime
    quantity: Decimal
    unit: str
    source: UsageSource
    created_at: UTCDateTime = Field(default_factory=utcnow)
    updated_at: UTCDateTime = Field(default_factory=utcnow)

    @property
    def key(self) -> UsageAggregateKey:
        return UsageAggregateKey(
            organization_id=self.organization_id,
            subscription_id=self.subscription_id,
            feature_key=self.feature_key,
            resolution=self.resolution,
            period_start=self.period_start,
            period_end=self.period_end,
        )


class UsageRollup(BillingEngineModel):
    """Summed usage for one feature over an aggregation window."""

    feature_key: str
    unit: str
    quantity: Decimal


class UsageTotal(BillingEngineModel):
    """Summed aggregate quantity used to price a usage charge."""

    quantity: Decimal = Decimal(0)
    unit: str | None = None


# ============================================================================
# Invoices
# ============================================================================


class InvoiceLineCreate(BillingEngineModel):
    line_type: InvoiceLineType
    description: str | None = None
    feature_key: str | None = None
    quantity: Decimal = Decimal(1)
    unit_amount_cents: int
    amount_cents: int
    usage_period_start: UTCDateTime | None = None
    usage_period_end: UTCDateTime | None = None
    metadata: dict[str, Any] | None = None


class InvoiceLine(InvoiceLineCreate):
    id: str
    invoice_id: str
    position: int


class InvoiceCreate(BillingEngineModel):
    organization_id: str = Field(min_length=1)
    subscription_id: str | None = None
    number: str = Field(min_length=1)
    status: InvoiceStatus = InvoiceStatus.OPEN
    currency: str = Field("usd", min_length=3, max_length=3)
    subtotal_cents: int
    tax_cents: int = Field(0, ge=0)
    total_cents: int = Field(ge=0)
    balance_cents: int | None = Field(None, ge=0)
    period_start: UTCDateTime | None = None
    period_end: UTCDateTime | None = None
    issued_at: UTCDateTime
    due_at: UTCDateTime | None = None
    paid_at: UTCDateTime | None = None
    voided_at: UTCDateTime | None = None
    external_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_totals(self) -> "InvoiceCreate":
        if self.total_cents != self.subtotal_cents + self.tax_cents:
            raise ValueError("total_cents must equal subtotal_cents + tax_cents")
        if self.balance_cents is not None and self.balance_cents > self.total_cents:
            raise ValueError("balance_cents cannot exceed total_cents")
        _check_period(self.period_start, self.period_end, "Invoice period")
        return self

    @property
    def opening_balance_cents(self) -> int:
        return self.total_cents if self.balance_cents is None else self.balance_cents


class Invoice(BillingEngineModel):
    id: str
    organization_id: str
    subscription_id: str | None = None
    number: str
    status: InvoiceStatus
    currency: str
    subtotal_cents: int
    tax_cents: int
    total_cents: int
    balance_cents: int
    period_start: UTCDateTime | None = None
    period_end: UTCDateTime | None = None
    issued_at: UTCDateTime
    due_at: UTCDateTime | None = None
    paid_at: UTCDateTime | None = None
    voided_at: UTCDateTime | None = None
    external_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    lines: list[InvoiceLine] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in InvoiceStatus.terminal()


# ============================================================================
# Credit memos
# ============================================================================


class CreditMemoCreate(BillingEngineModel):
    organization_id: str = Field(min_length=1)
    invoice_id: str | None = None
    amount_cents: int = Field(ge=0)
    currency: str = Field("usd", min_length=3, max_length=3)
    reason: CreditReason
    expires_at: UTCDateTime | None = None
    metadata: dict[str, Any] | None = None


class CreditMemo(CreditMemoCreate):
    model_config = ConfigDict(frozen=True)

    id: str
    created_at: UTCDateTime = Field(default_factory=utcnow)


__all__ = [
    "UTCDateTime",
    "ensure_utc",
    "utcnow",
    "BillingEngineModel",
    "SubscriptionCreate",
    "SubscriptionUpdate",
    "Subscription",
    "SubscriptionScheduleCreate",
    "SubscriptionSchedule",
    "UsageEventInput",
    "UsageEvent",
    "UsageAggregateKey",
    "UsageAggregate",
    "UsageRollup",
    "UsageTotal",
    "InvoiceLineCreate",
    "InvoiceLine",
    "InvoiceCreate",
    "Invoice",
    "CreditMemoCreate",
    "CreditMemo",
]
