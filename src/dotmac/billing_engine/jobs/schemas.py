"""
Job payload schemas.

Payloads arrive as camelCase JSON from the queue. They are validated here, at the
boundary, before any business logic runs; unknown fields are rejected.
"""

from decimal import Decimal
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from dotmac.billing_engine.core.enums import (
    CreditReason,
    InvoiceLineType,
    InvoiceStatus,
    PaymentSyncEvent,
    UsageResolution,
    UsageSource,
)
from dotmac.billing_engine.core.exceptions import JobValidationError
from dotmac.billing_engine.core.models import UTCDateTime
from dotmac.billing_engine.money_utils import normalize_currency

USAGE_JOB = "usage"
INVOICE_JOB = "invoice"
PAYMENT_SYNC_JOB = "payment-sync"

PayloadT = TypeVar("PayloadT", bound="JobPayload")


class JobPayload(BaseModel):
    """Base for queue payloads: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        str_strip_whitespace=True,
    )

    def to_message(self) -> dict[str, Any]:
        """Serialise back to the camelCase JSON the queue carries."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ============================================================================
# Usage aggregation
# ============================================================================


class UsageJobPayload(JobPayload):
    organization_id: str = Field(min_length=1)
    subscription_id: str = Field(min_length=1)
    period_start: UTCDateTime
    period_end: UTCDateTime
    resolution: UsageResolution | None = None
    source: UsageSource | None = None
    feature_keys: list[str] | None = None
    backfill: bool = False
    context: dict[str, Any] | None = None

    @field_validator("feature_keys")
    @classmethod
    def validate_feature_keys(cls, v: list[str] | None) -> list[str] | None:
        if v is not None and any(not key for key in v):
            raise ValueError("feature keys must not be empty")
        return v


# ============================================================================
# Invoice build
# ============================================================================


class UsageCharge(JobPayload):
    feature_key: str = Field(min_length=1)
    unit_amount_cents: int = Field(ge=0)
    unit: str = Field(min_length=1)
    description: str | None = None
    minimum_amount_cents: int | None = Field(None, ge=0)
    resolution: UsageResolution = UsageResolution.DAILY
    usage_period_start: UTCDateTime | None = None
    usage_period_end: UTCDateTime | None = None


class ExtraLine(JobPayload):
    """Caller-priced line appended as-is (adjustments, credits, one-time charges)."""

    line_type: InvoiceLineType = InvoiceLineType.ADJUSTMENT
    description: str | None = None
    feature_key: str | None = None
    quantity: Decimal = Decimal(1)
    unit_amount_cents: int
    amount_cents: int
    usage_period_start: UTCDateTime | None = None
    usage_period_end: UTCDateTime | None = None
    metadata: dict[str, Any] | None = None

    @field_validator("line_type")
    @classmethod
    def reject_tax_lines(cls, v: InvoiceLineType) -> InvoiceLineType:
        # Tax is derived from the subtotal; a hand-written TAX line would break it.
        if v == InvoiceLineType.TAX:
            raise ValueError("extra lines cannot be TAX lines; use taxCents or taxRateBps")
        return v

    @field_validator("quantity")
    @classmethod
    def validate_quantity(cls, v: Decimal) -> Decimal:
        if not v.is_finite():
            raise ValueError("quantity must be finite")
        return v


class Settle(JobPayload):
    amount_cents: int | None = Field(None, ge=0)
    paid_at: UTCDateTime | None = None


class InvoiceJobPayload(JobPayload):
    organization_id: str = Field(min_length=1)
    subscription_id: str | None = Field(None, min_length=1)
    invoice_number: str | None = Field(None, min_length=1)
    currency: str | None = None
    period_start: UTCDateTime
    period_end: UTCDateTime
    recurring_amount_cents: int | None = Field(None, ge=0)
    recurring_description: str | None = None
    status: InvoiceStatus = InvoiceStatus.OPEN
    issue_date: UTCDateTime | None = None
    due_date: UTCDateTime | None = None
    tax_rate_bps: int | None = Field(None, ge=0, le=10000)
    tax_cents: int | None = Field(None, ge=0)
    metadata: dict[str, Any] | None = None
    usage_charges: list[UsageCharge] = Field(default_factory=list)
    extra_lines: list[ExtraLine] = Field(default_factory=list)
    settle: Settle | None = None
    usage_totals: dict[str, Decimal] | None = Field(
        None, description="Pre-computed quantity per feature key (replay and tests)"
    )

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str | None) -> str | None:
        return normalize_currency(v) if v is not None else None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: InvoiceStatus) -> InvoiceStatus:
        if v not in (InvoiceStatus.DRAFT, InvoiceStatus.OPEN):
            raise ValueError("invoices are created as DRAFT or OPEN")
        return v

    @model_validator(mode="after")
    def validate_usage_totals(self) -> "InvoiceJobPayload":
        if self.usage_totals and any(q < 0 for q in self.usage_totals.values()):
            raise ValueError("usage totals must not be negative")
        return self


# ============================================================================
# Payment sync
# ============================================================================


class Credit(JobPayload):
    amount_cents: int = Field(ge=0)
    reason: CreditReason | None = None
    metadata: dict[str, Any] | None = None


class PaymentSyncJobPayload(JobPayload):
    organization_id: str = Field(min_length=1)
    invoice_id: str = Field(min_length=1)
    event: PaymentSyncEvent
    amount_cents: int | None = Field(None, ge=0)
    paid_at: UTCDateTime | None = None
    status: InvoiceStatus | None = None
    external_payment_id: str | None = None
    metadata: dict[str, Any] | None = None
    note: str | None = None
    credit: Credit | None = None


def _parse(model: type[PayloadT], job_type: str, raw: Any) -> PayloadT:
    if isinstance(raw, model):
        return raw
    if not isinstance(raw, dict):
        raise JobValidationError(
            f"Invalid {job_type} job payload: expected an object",
            context={"job_type": job_type, "received": type(raw).__name__},
        )
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        raise JobValidationError.from_pydantic(job_type, exc) from exc


def parse_usage_job(raw: Any) -> UsageJobPayload:
    return _parse(UsageJobPayload, USAGE_JOB, raw)


def parse_invoice_job(raw: Any) -> InvoiceJobPayload:
    return _parse(InvoiceJobPayload, INVOICE_JOB, raw)


def parse_payment_sync_job(raw: Any) -> PaymentSyncJobPayload:
    return _parse(PaymentSyncJobPayload, PAYMENT_SYNC_JOB, raw)


__all__ = [
    "USAGE_JOB",
    "INVOICE_JOB",
    "PAYMENT_SYNC_JOB",
    "JobPayload",
    "UsageJobPayload",
    "UsageCharge",
    "ExtraLine",
    "Settle",
    "InvoiceJobPayload",
    "Credit",
    "PaymentSyncJobPayload",
    "parse_usage_job",
    "parse_invoice_job",
    "parse_payment_sync_job",
]
