"""
Billing store protocol.

The processors only talk to storage through this surface. Every call takes the
caller's ``AuthorizationClaims`` first; implementations scope rows to
``claims.organization_id`` when it is set.
"""

from collections.abc import Collection, Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol, TypeAlias, runtime_checkable

from dotmac.billing_engine.claims import AuthorizationClaims
from dotmac.billing_engine.core.enums import (
    InvoiceStatus,
    SubscriptionScheduleStatus,
    SubscriptionStatus,
    UsageResolution,
    UsageSource,
)
from dotmac.billing_engine.core.models import (
    CreditMemo,
    CreditMemoCreate,
    Invoice,
    InvoiceCreate,
    InvoiceLine,
    InvoiceLineCreate,
    Subscription,
    SubscriptionCreate,
    SubscriptionSchedule,
    SubscriptionScheduleCreate,
    SubscriptionUpdate,
    UsageAggregate,
    UsageAggregateKey,
    UsageEvent,
    UsageEventInput,
    UsageTotal,
)

UsageTotalKey: TypeAlias = tuple[str, UsageResolution]


@runtime_checkable
class SubscriptionStore(Protocol):
    """Subscription lifecycle persistence."""

    async def create_subscription(
        self, claims: AuthorizationClaims, data: SubscriptionCreate
    ) -> Subscription: ...

    async def update_subscription(
        self, claims: AuthorizationClaims, subscription_id: str, changes: SubscriptionUpdate
    ) -> Subscription: ...

    async def get_subscription(
        self, claims: AuthorizationClaims, subscription_id: str
    ) -> Subscription | None: ...

    async def get_active_subscription(
        self, claims: AuthorizationClaims, organization_id: str
    ) -> Subscription | None: ...

    async def list_subscriptions(
        self,
        claims: AuthorizationClaims,
        organization_id: str,
        status: SubscriptionStatus | None = None,
    ) -> list[Subscription]: ...

    async def cancel_subscription(
        self,
        claims: AuthorizationClaims,
        subscription_id: str,
        invoice_thru_period: bool = False,
        canceled_at: datetime | None = None,
    ) -> Subscription: ...

    async def schedule_subscription_change(
        self, claims: AuthorizationClaims, data: SubscriptionScheduleCreate
    ) -> SubscriptionSchedule: ...

    async def list_subscription_schedules(
        self, claims: AuthorizationClaims, subscription_id: str
    ) -> list[SubscriptionSchedule]: ...

    async def update_subscription_schedule_status(
        self,
        claims: AuthorizationClaims,
        schedule_id: str,
        status: SubscriptionScheduleStatus,
    ) -> SubscriptionSchedule: ...


@runtime_checkable
class UsageStore(Protocol):
    """Usage events and aggregates."""

    async def insert_usage_events(
        self, claims: AuthorizationClaims, events: Sequence[UsageEventInput]
    ) -> int:
        """Insert fingerprinted events, skipping existing fingerprints; returns rows inserted."""
        ...

    async def fetch_usage_events(
        self,
        claims: AuthorizationClaims,
        organization_id: str,
        subscription_id: str,
        period_start: datetime,
        period_end: datetime,
        feature_keys: Collection[str] | None = None,
    ) -> list[UsageEvent]:
        """Events with ``period_start <= recorded_at < period_end``, oldest first."""
        ...

    async def list_usage_events(
        self,
        claims: AuthorizationClaims,
        organization_id: str,
        feature_key: str | None = None,
        limit: int = 100,
    ) -> list[UsageEvent]: ...

    async def replace_aggregate(
        self,
        claims: AuthorizationClaims,
        key: UsageAggregateKey,
        quantity: Decimal,
        unit: str,
        source: UsageSource,
    ) -> UsageAggregate: ...

    async def increment_aggregate(
        self,
        claims: AuthorizationClaims,
        key: UsageAggregateKey,
        unit: str,
        delta: Decimal,
        source: UsageSource,
    ) -> UsageAggregate: ...

    async def list_usage_aggregates(
        self,
        claims: AuthorizationClaims,
        organization_id: str,
        feature_key: str | None = None,
        resolution: UsageResolution | None = None,
        subscription_id: str | None = None,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        limit: int = 50,
    ) -> list[UsageAggregate]: ...

    async def fetch_usage_totals(
        self,
        claims: AuthorizationClaims,
        organization_id: str,
        subscription_id: str,
        period_start: datetime,
        period_end: datetime,
        charges: Collection[UsageTotalKey],
    ) -> dict[UsageTotalKey, UsageTotal]:
        """Sum aggregates lying inside ``[period_start, period_end]`` per (feature, resolution)."""
        ...


@runtime_checkable
class InvoiceStore(Protocol):
    """Invoices, invoice lines and credit memos."""

    async def create_invoice(
        self,
        claims: AuthorizationClaims,
        data: InvoiceCreate,
        lines: Sequence[InvoiceLineCreate] = (),
    ) -> Invoice:
        """Create the invoice and its lines in one transaction."""
        ...

    async def add_invoice_line(
        self, claims: AuthorizationClaims, invoice_id: str, line: InvoiceLineCreate
    ) -> InvoiceLine: ...

    async def get_invoice(
        self, claims: AuthorizationClaims, invoice_id: str, include_lines: bool = False
    ) -> Invoice | None: ...

    async def find_invoice_for_period(
        self,
        claims: AuthorizationClaims,
        subscription_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> Invoice | None:
        """The non-void invoice already issued for this subscription period, if any."""
        ...

    async def list_invoices(
        self,
        claims: AuthorizationClaims,
        organization_id: str,
        include_lines: bool = False,
        limit: int = 50,
    ) -> list[Invoice]: ...

    async def record_payment(
        self,
        claims: AuthorizationClaims,
        invoice_id: str,
        amount_cents: int,
        paid_at: datetime,
    ) -> Invoice:
        """Atomically reduce the balance (floored at 0); PAID when it reaches 0.

        Only DRAFT and OPEN invoices accept payments.
        """
        ...

    async def update_invoice_status(
        self,
        claims: AuthorizationClaims,
        invoice_id: str,
        status: InvoiceStatus,
        allowed_from: Collection[InvoiceStatus] | None = None,
        paid_at: datetime | None = None,
        voided_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Invoice:
        """Set the status; with ``allowed_from`` only when the current status is in it."""
        ...

    async def attach_external_invoice_id(
        self, claims: AuthorizationClaims, invoice_id: str, external_id: str
    ) -> Invoice: ...

    async def create_credit_memo(
        self, claims: AuthorizationClaims, data: CreditMemoCreate
    ) -> CreditMemo: ...

    async def issue_credit(
        self,
        claims: AuthorizationClaims,
        data: CreditMemoCreate,
        status: InvoiceStatus,
        allowed_from: Collection[InvoiceStatus],
        voided_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[CreditMemo, Invoice]:
        """Create a credit memo against ``data.invoice_id`` and move that invoice to
        ``status`` in one transaction. Nothing is written when the status guard fails.
        """
        ...

    async def list_credit_memos(
        self, claims: AuthorizationClaims, organization_id: str
    ) -> list[CreditMemo]: ...

    async def link_credit_memo_to_invoice(
        self, claims: AuthorizationClaims, credit_memo_id: str, invoice_id: str | None
    ) -> CreditMemo: ...


@runtime_checkable
class BillingStore(SubscriptionStore, UsageStore, InvoiceStore, Protocol):
    """Everything the billing processors need from storage."""


__all__ = [
    "UsageTotalKey",
    "SubscriptionStore",
    "UsageStore",
    "InvoiceStore",
    "BillingStore",
]
