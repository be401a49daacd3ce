"""
Billing engine database tables.

Uniqueness and consistency rules that must hold under concurrent writers are
declared here as constraints so the database enforces them.
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from dotmac.billing_engine.db import Base, TimestampMixin

QUANTITY_TYPE = Numeric(38, 12)

ACTIVE_SUBSCRIPTION_PREDICATE = "status IN ('TRIALING', 'ACTIVE', 'PAST_DUE')"


def _new_id() -> str:
    return str(uuid4())


class SubscriptionEntity(TimestampMixin, Base):
    """Subscription lifecycle rows."""

    __tablename__ = "billing_subscriptions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    package_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    billing_interval: Mapped[str] = mapped_column(String(16), nullable=False)
    current_period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    __table_args__ = (
        CheckConstraint(
            "current_period_end > current_period_start", name="ck_billing_subscriptions_period"
        ),
        # One active-like subscription per organization
        Index(
            "uq_billing_subscriptions_active_org",
            "organization_id",
            unique=True,
            postgresql_where=text(ACTIVE_SUBSCRIPTION_PREDICATE),
            sqlite_where=text(ACTIVE_SUBSCRIPTION_PREDICATE),
        ),
    )


class SubscriptionScheduleEntity(TimestampMixin, Base):
    """Pending plan changes for a subscription."""

    __tablename__ = "billing_subscription_schedules"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    subscription_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("billing_subscriptions.id"), nullable=False, index=True
    )
    target_package_id: Mapped[str] = mapped_column(String(255), nullable=False)
    effective_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )


class UsageEventEntity(Base):
    """Append-only raw usage events."""

    __tablename__ = "billing_usage_events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(255), nullable=False)
    subscription_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tenant_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    product_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    feature_key: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(QUANTITY_TYPE, nullable=False)
    unit: Mapped[str] = mapped_column(String(64), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    source: Mapped[str] = mapped_column(String(16), nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(128), nullable=False)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("fingerprint", name="uq_billing_usage_events_fingerprint"),
        CheckConstraint("quantity >= 0", name="ck_billing_usage_events_quantity"),
        Index("ix_billing_usage_events_org_recorded", "organization_id", "recorded_at"),
        Index(
            "ix_billing_usage_events_org_feature", "organization_id", "feature_key", "recorded_at"
        ),
    )


class UsageAggregateEntity(TimestampMixin, Base):
    """Pre-summed usage per (organization, subscription, feature, resolution, window)."""

    __tablename__ = "billing_usage_aggregates"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(255), nullable=False)
    subscription_id: Mapped[str] = mapped_column(String(64), nullable=False)
    feature_key: Mapped[str] = mapped_column(String(255), nullable=False)
    resolution: Mapped[str] = mapped_column(String(16), nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(QUANTITY_TYPE, nullable=False)
    unit: Mapped[str] = mapped_column(String(64), nullable=False)
    source: Mapped[str] = mapped_column(String(16), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "organization_id",
            "subscription_id",
            "feature_key",
            "resolution",
            "period_start",
            "period_end",
            name="uq_billing_usage_aggregates_key",
        ),
        CheckConstraint("period_end > period_start", name="ck_billing_usage_aggregates_period"),
        Index("ix_billing_usage_aggregates_subscription", "subscription_id", "period_start"),
    )


class InvoiceEntity(TimestampMixin, Base):
    """Invoices; never deleted."""

    __tablename__ = "billing_invoices"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    subscription_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    number: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    subtotal_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tax_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    voided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    __table_args__ = (
        UniqueConstraint("number", name="uq_billing_invoices_number"),
        CheckConstraint(
            "total_cents = subtotal_cents + tax_cents", name="ck_billing_invoices_total"
        ),
        CheckConstraint(
            "balance_cents >= 0 AND balance_cents <= total_cents",
            name="ck_billing_invoices_balance",
        ),
        Index(
            "ix_billing_invoices_subscription_period",
            "subscription_id",
            "period_start",
            "period_end",
        ),
    )


class InvoiceLineEntity(Base):
    """Invoice lines, ordered by ``position``."""

    __tablename__ = "billing_invoice_lines"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    invoice_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("billing_invoices.id"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    line_type: Mapped[str] = mapped_column(String(16), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    feature_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    quantity: Mapped[Decimal] = mapped_column(QUANTITY_TYPE, nullable=False)
    unit_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    usage_period_start: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    usage_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("invoice_id", "position", name="uq_billing_invoice_lines_position"),
    )


class CreditMemoEntity(Base):
    """Credit memos; immutable apart from the invoice link."""

    __tablename__ = "billing_credit_memos"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    invoice_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("billing_invoices.id"), nullable=True, index=True
    )
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    reason: Mapped[str] = mapped_column(String(32), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_billing_credit_memos_amount"),
    )


__all__ = [
    "SubscriptionEntity",
    "SubscriptionScheduleEntity",
    "UsageEventEntity",
    "UsageAggregateEntity",
    "InvoiceEntity",
    "InvoiceLineEntity",
    "CreditMemoEntity",
]
