"""
In-memory billing store.

Used by tests and replay tooling. Mirrors the constraints the SQL store gets from
the database (unique fingerprints, aggregate keys and invoice numbers, a single
active subscription per organization) and serialises writes with one lock.
"""

import asyncio
from collections.abc import Collection, Sequence
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import uuid4

import structlog

from dotmac.billing_engine.claims import AuthorizationClaims
from dotmac.billing_engine.core.enums import (
    InvoiceStatus,
    SubscriptionScheduleStatus,
    SubscriptionStatus,
    UsageResolution,
    UsageSource,
)
from dotmac.billing_engine.core.exceptions import (
    CreditMemoNotFoundError,
    DuplicateInvoiceNumberError,
    InvoiceNotFoundError,
    InvoiceStateError,
    SubscriptionError,
    SubscriptionNotFoundError,
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
    ensure_utc,
)
from dotmac.billing_engine.repository.base import UsageTotalKey
from dotmac.billing_engine.repository.payments import apply_payment

logger = structlog.get_logger(__name__)


def _now() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid4())


class InMemoryBillingStore:
    """Dict-backed ``BillingStore`` implementation."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.subscriptions: dict[str, Subscription] = {}
        self.schedules: dict[str, SubscriptionSchedule] = {}
        self.usage_events: dict[str, UsageEvent] = {}
        self.aggregates: dict[UsageAggregateKey, UsageAggregate] = {}
        self.invoices: dict[str, Invoice] = {}
        self.invoice_lines: dict[str, list[InvoiceLine]] = {}
        self.credit_memos: dict[str, CreditMemo] = {}
        self._fingerprints: set[str] = set()

    @property
    def write_count(self) -> int:
        """Rows written so far, across every table."""
        return (
            len(self.subscriptions)
            + len(self.schedules)
            + len(self.usage_events)
            + len(self.aggregates)
            + len(self.invoices)
            + sum(len(lines) for lines in self.invoice_lines.values())
            + len(self.credit_memos)
        )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def create_subscription(
        self, claims: AuthorizationClaims, data: SubscriptionCreate
    ) -> Subscription:
        self._check_org(claims, data.organization_id)
        async with self._lock:
            if data.status in SubscriptionStatus.active_like():
                self._ensure_no_other_active(data.organization_id, exclude_id=None)
            subscription = Subscription(
                id=_new_id(), **data.model_dump(), created_at=_now()
            )
            self.subscriptions[subscription.id] = subscription
            return subscription

    async def update_subscription(
        self, claims: AuthorizationClaims, subscription_id: str, changes: SubscriptionUpdate
    ) -> Subscription:
        async with self._lock:
            current = self._require_subscription(claims, subscription_id)
            updated = Subscription.model_validate(
                {**current.model_dump(), **changes.changes()}
            )
            if updated.status in SubscriptionStatus.active_like():
                self._ensure_no_other_active(updated.organization_id, exclude_id=updated.id)
            self.subscriptions[subscription_id] = updated
            return updated

    async def get_subscription(
        self, claims: AuthorizationClaims, subscription_id: str
    ) -> Subscription | None:
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None or not claims.can_access(subscription.organization_id):
            return None
        return subscription

    async def get_active_subscription(
        self, claims: AuthorizationClaims, organization_id: str
    ) -> Subscription | None:
        if not claims.can_access(organization_id):
            return None
        candidates = [
            s
            for s in self.subscriptions.values()
            if s.organization_id == organization_id
            and s.status in SubscriptionStatus.active_like()
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda s: s.created_at)

    async def list_subscriptions(
        self,
        claims: AuthorizationClaims,
        organization_id: str,
        status: SubscriptionStatus | None = None,
    ) -> list[Subscription]:
        if not claims.can_access(organization_id):
            return []
        rows = [
            s
            for s in self.subscriptions.values()
            if s.organization_id == organization_id and (status is None or s.status == status)
        ]
        return sorted(rows, key=lambda s: s.created_at, reverse=True)

    async def cancel_subscription(
        self,
        claims: AuthorizationClaims,
        subscription_id: str,
        invoice_thru_period: bool = False,
        canceled_at: datetime | None = None,
    ) -> Subscription:
        async with self._lock:
            current = self._require_subscription(claims, subscription_id)
            updated = current.model_copy(
                update={
                    "status": SubscriptionStatus.CANCELED,
                    "canceled_at": ensure_utc(canceled_at) if canceled_at else _now(),
                    "cancel_at_period_end": invoice_thru_period,
                }
            )
            self.subscriptions[subscription_id] = updated
            return updated

    async def schedule_subscription_change(
        self, claims: AuthorizationClaims, data: SubscriptionScheduleCreate
    ) -> SubscriptionSchedule:
        async with self._lock:
            self._require_subscription(claims, data.subscription_id)
            schedule = SubscriptionSchedule(id=_new_id(), **data.model_dump())
            self.schedules[schedule.id] = schedule
            return schedule

    async def list_subscription_schedules(
        self, claims: AuthorizationClaims, subscription_id: str
    ) -> list[SubscriptionSchedule]:
        if await self.get_subscription(claims, subscription_id) is None:
            return []
        rows = [s for s in self.schedules.values() if s.subscription_id == subscription_id]
        return sorted(rows, key=lambda s: s.effective_at)

    async def update_subscription_schedule_status(
        self,
        claims: AuthorizationClaims,
        schedule_id: str,
        status: SubscriptionScheduleStatus,
    ) -> SubscriptionSchedule:
        async with self._lock:
            schedule = self.schedules.get(schedule_id)
            if schedule is None or await self.get_subscription(
                claims, schedule.subscription_id
            ) is None:
                raise SubscriptionError(
                    f"Subscription schedule {schedule_id} not found",
                    context={"schedule_id": schedule_id},
                )
            updated = schedule.model_copy(update={"status": status})
            self.schedules[schedule_id] = updated
            return updated

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    async def insert_usage_events(
        self, claims: AuthorizationClaims, events: Sequence[UsageEventInput]
    ) -> int:
        for event in events:
            self._check_org(claims, event.organization_id)

        inserted = 0
        async with self._lock:
            for event in events:
                if not event.fingerprint:
                    raise ValueError("usage events must be fingerprinted before insert")
                if event.fingerprint in self._fingerprints:
                    continue
                row = UsageEvent(
                    id=_new_id(),
                    **event.model_dump(exclude={"fingerprint"}),
                    fingerprint=event.fingerprint,
                    created_at=_now(),
                )
                self.usage_events[row.id] = row
                self._fingerprints.add(event.fingerprint)
                inserted += 1
        return inserted

    async def fetch_usage_events(
        self,
        claims: AuthorizationClaims,
        organization_id: str,
        subscription_id: str,
        period_start: datetime,
        period_end: datetime,
        feature_keys: Collection[str] | None = None,
    ) -> list[UsageEvent]:
        if not claims.can_access(organization_id):
            return []
        rows = [
            e
            for e in self.usage_events.values()
            if e.organization_id == organization_id
            and e.subscription_id == subscription_id
            and period_start <= e.recorded_at < period_end
            and (feature_keys is None or e.feature_key in feature_keys)
        ]
        return sorted(rows, key=lambda e: e.recorded_at)

    async def list_usage_events(
        self,
        claims: AuthorizationClaims,
        organization_id: str,
        feature_key: str | None = None,
        limit: int = 100,
    ) -> list[UsageEvent]:
        if not claims.can_access(organization_id):
            return []
        rows = [
            e
            for e in self.usage_events.values()
            if e.organization_id == organization_id
            and (feature_key is None or e.feature_key == feature_key)
        ]
        return sorted(rows, key=lambda e: e.recorded_at, reverse=True)[:limit]

    async def replace_aggregate(
        self,
        claims: AuthorizationClaims,
        key: UsageAggregateKey,
        quantity: Decimal,
        unit: str,
        source: UsageSource,
    ) -> UsageAggregate:
        self._check_org(claims, key.organization_id)
        async with self._lock:
            existing = self.aggregates.get(key)
            now = _now()
            aggregate = UsageAggregate(
                id=existing.id if existing else _new_id(),
                **key.model_dump(),
                quantity=quantity,
                unit=unit,
                source=source,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self.aggregates[key] = aggregate
            return aggregate

    async def increment_aggregate(
        self,
        claims: AuthorizationClaims,
        key: UsageAggregateKey,
        unit: str,
        delta: Decimal,
        source: UsageSource,
    ) -> UsageAggregate:
        self._check_org(claims, key.organization_id)
        async with self._lock:
            existing = self.aggregates.get(key)
            now = _now()
            aggregate = UsageAggregate(
                id=existing.id if existing else _new_id(),
                **key.model_dump(),
                quantity=(existing.quantity if existing else Decimal(0)) + delta,
                unit=unit,
                source=source,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self.aggregates[key] = aggregate
            return aggregate

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
    ) -> list[UsageAggregate]:
        if not claims.can_access(organization_id):
            return []
        rows = [
            a
            for a in self.aggregates.values()
            if a.organization_id == organization_id
            and (feature_key is None or a.feature_key == feature_key)
            and (resolution is None or a.resolution == resolution)
            and (subscription_id is None or a.subscription_id == subscription_id)
            and (period_start is None or a.period_start == ensure_utc(period_start))
            and (period_end is None or a.period_end == ensure_utc(period_end))
        ]
        return sorted(rows, key=lambda a: a.period_start, reverse=True)[:limit]

    async def fetch_usage_totals(
        self,
        claims: AuthorizationClaims,
        organization_id: str,
        subscription_id: str,
        period_start: datetime,
        period_end: datetime,
        charges: Collection[UsageTotalKey],
    ) -> dict[UsageTotalKey, UsageTotal]:
        totals = {charge: UsageTotal() for charge in charges}
        if not claims.can_access(organization_id):
            return totals
        for aggregate in self.aggregates.values():
            charge = (aggregate.feature_key, aggregate.resolution)
            if (
                charge in totals
                and aggregate.organization_id == organization_id
                and aggregate.subscription_id == subscription_id
                and aggregate.period_start >= period_start
                and aggregate.period_end <= period_end
            ):
                total = totals[charge]
                totals[charge] = UsageTotal(
                    quantity=total.quantity + aggregate.quantity, unit=aggregate.unit
                )
        return totals

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    async def create_invoice(
        self,
        claims: AuthorizationClaims,
        data: InvoiceCreate,
        lines: Sequence[InvoiceLineCreate] = (),
    ) -> Invoice:
        self._check_org(claims, data.organization_id)
        async with self._lock:
            if any(invoice.number == data.number for invoice in self.invoices.values()):
                raise DuplicateInvoiceNumberError(
                    f"Invoice number {data.number} already exists", number=data.number
                )
            invoice_id = _new_id()
            invoice = Invoice(
                id=invoice_id,
                **data.model_dump(exclude={"balance_cents"}),
                balance_cents=data.opening_balance_cents,
            )
            self.invoices[invoice_id] = invoice
            self.invoice_lines[invoice_id] = [
                InvoiceLine(id=_new_id(), invoice_id=invoice_id, position=position, **line.model_dump())
                for position, line in enumerate(lines)
            ]
            return invoice.model_copy(update={"lines": list(self.invoice_lines[invoice_id])})

    async def add_invoice_line(
        self, claims: AuthorizationClaims, invoice_id: str, line: InvoiceLineCreate
    ) -> InvoiceLine:
        async with self._lock:
            self._require_invoice(claims, invoice_id)
            existing = self.invoice_lines.setdefault(invoice_id, [])
            row = InvoiceLine(
                id=_new_id(), invoice_id=invoice_id, position=len(existing), **line.model_dump()
            )
            existing.append(row)
            return row

    async def get_invoice(
        self, claims: AuthorizationClaims, invoice_id: str, include_lines: bool = False
    ) -> Invoice | None:
        invoice = self.invoices.get(invoice_id)
        if invoice is None or not claims.can_access(invoice.organization_id):
            return None
        return self._with_lines(invoice, include_lines)

    async def find_invoice_for_period(
        self,
        claims: AuthorizationClaims,
        subscription_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> Invoice | None:
        matches = [
            invoice
            for invoice in self.invoices.values()
            if invoice.subscription_id == subscription_id
            and invoice.period_start == period_start
            and invoice.period_end == period_end
            and invoice.status != InvoiceStatus.VOID
            and claims.can_access(invoice.organization_id)
        ]
        if not matches:
            return None
        return max(matches, key=lambda invoice: invoice.issued_at)

    async def list_invoices(
        self,
        claims: AuthorizationClaims,
        organization_id: str,
        include_lines: bool = False,
        limit: int = 50,
    ) -> list[Invoice]:
        if not claims.can_access(organization_id):
            return []
        rows = sorted(
            (i for i in self.invoices.values() if i.organization_id == organization_id),
            key=lambda i: i.issued_at,
            reverse=True,
        )[:limit]
        return [self._with_lines(invoice, include_lines) for invoice in rows]

    async def record_payment(
        self,
        claims: AuthorizationClaims,
        invoice_id: str,
        amount_cents: int,
        paid_at: datetime,
    ) -> Invoice:
        async with self._lock:
            invoice = self._require_invoice(claims, invoice_id)
            if invoice.status not in InvoiceStatus.payable():
                raise InvoiceStateError(
                    f"Invoice {invoice_id} is {invoice.status.value} and cannot accept payments",
                    invoice_id=invoice_id,
                    current_status=invoice.status.value,
                    requested="payment",
                )
            balance, status = apply_payment(invoice.balance_cents, amount_cents, invoice.status)
            updated = invoice.model_copy(
                update={"balance_cents": balance, "status": status, "paid_at": ensure_utc(paid_at)}
            )
            self.invoices[invoice_id] = updated
            return updated

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
        async with self._lock:
            invoice = self._require_invoice(claims, invoice_id)
            if allowed_from is not None and invoice.status not in allowed_from:
                raise InvoiceStateError(
                    f"Invoice {invoice_id} is {invoice.status.value}; "
                    f"cannot move it to {status.value}",
                    invoice_id=invoice_id,
                    current_status=invoice.status.value,
                    requested=status.value,
                )
            update: dict[str, Any] = {"status": status}
            if paid_at is not None:
                update["paid_at"] = ensure_utc(paid_at)
            if voided_at is not None:
                update["voided_at"] = ensure_utc(voided_at)
            if metadata is not None:
                update["metadata"] = metadata
            updated = invoice.model_copy(update=update)
            self.invoices[invoice_id] = updated
            return updated

    async def attach_external_invoice_id(
        self, claims: AuthorizationClaims, invoice_id: str, external_id: str
    ) -> Invoice:
        async with self._lock:
            invoice = self._require_invoice(claims, invoice_id)
            updated = invoice.model_copy(update={"external_id": external_id})
            self.invoices[invoice_id] = updated
            return updated

    # ------------------------------------------------------------------
    # Credit memos
    # ------------------------------------------------------------------

    async def create_credit_memo(
        self, claims: AuthorizationClaims, data: CreditMemoCreate
    ) -> CreditMemo:
        self._check_org(claims, data.organization_id)
        async with self._lock:
            if data.invoice_id is not None:
                self._require_invoice(claims, data.invoice_id)
            memo = CreditMemo(id=_new_id(), **data.model_dump(), created_at=_now())
            self.credit_memos[memo.id] = memo
            return memo

    async def issue_credit(
        self,
        claims: AuthorizationClaims,
        data: CreditMemoCreate,
        status: InvoiceStatus,
        allowed_from: Collection[InvoiceStatus],
        voided_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[CreditMemo, Invoice]:
        self._check_org(claims, data.organization_id)
        if data.invoice_id is None:
            raise ValueError("issue_credit requires an invoice_id")
        async with self._lock:
            invoice = self._require_invoice(claims, data.invoice_id)
            if invoice.status not in allowed_from:
                raise InvoiceStateError(
                    f"Invoice {invoice.id} is {invoice.status.value}; "
                    f"cannot move it to {status.value}",
                    invoice_id=invoice.id,
                    current_status=invoice.status.value,
                    requested=status.value,
                )
            update: dict[str, Any] = {"status": status}
            if voided_at is not None:
                update["voided_at"] = ensure_utc(voided_at)
            if metadata is not None:
                update["metadata"] = metadata
            updated = invoice.model_copy(update=update)
            memo = CreditMemo(id=_new_id(), **data.model_dump(), created_at=_now())
            self.invoices[invoice.id] = updated
            self.credit_memos[memo.id] = memo
            return memo, updated

    async def list_credit_memos(
        self, claims: AuthorizationClaims, organization_id: str
    ) -> list[CreditMemo]:
        if not claims.can_access(organization_id):
            return []
        rows = [m for m in self.credit_memos.values() if m.organization_id == organization_id]
        return sorted(rows, key=lambda m: m.created_at, reverse=True)

    async def link_credit_memo_to_invoice(
        self, claims: AuthorizationClaims, credit_memo_id: str, invoice_id: str | None
    ) -> CreditMemo:
        async with self._lock:
            memo = self.credit_memos.get(credit_memo_id)
            if memo is None or not claims.can_access(memo.organization_id):
                raise CreditMemoNotFoundError(
                    f"Credit memo {credit_memo_id} not found", credit_memo_id=credit_memo_id
                )
            if invoice_id is not None:
                self._require_invoice(claims, invoice_id)
            updated = memo.model_copy(update={"invoice_id": invoice_id})
            self.credit_memos[credit_memo_id] = updated
            return updated

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _check_org(self, claims: AuthorizationClaims, organization_id: str) -> None:
        if not claims.can_access(organization_id):
            raise SubscriptionError(
                "Claims do not grant access to this organization",
                context={"organization_id": organization_id},
            )

    def _ensure_no_other_active(self, organization_id: str, exclude_id: str | None) -> None:
        for subscription in self.subscriptions.values():
            if (
                subscription.organization_id == organization_id
                and subscription.id != exclude_id
                and subscription.status in SubscriptionStatus.active_like()
            ):
                raise SubscriptionError(
                    f"Organization {organization_id} already has an active subscription",
                    context={
                        "organization_id": organization_id,
                        "subscription_id": subscription.id,
                    },
                )

    def _require_subscription(self, claims: AuthorizationClaims, subscription_id: str) -> Subscription:
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None or not claims.can_access(subscription.organization_id):
            raise SubscriptionNotFoundError(
                f"Subscription {subscription_id} not found", subscription_id=subscription_id
            )
        return subscription

    def _require_invoice(self, claims: AuthorizationClaims, invoice_id: str) -> Invoice:
        invoice = self.invoices.get(invoice_id)
        if invoice is None or not claims.can_access(invoice.organization_id):
            raise InvoiceNotFoundError(f"Invoice {invoice_id} not found", invoice_id=invoice_id)
        return invoice

    def _with_lines(self, invoice: Invoice, include_lines: bool) -> Invoice:
        if not include_lines:
            return invoice.model_copy(update={"lines": None})
        lines = sorted(self.invoice_lines.get(invoice.id, []), key=lambda line: line.position)
        return invoice.model_copy(update={"lines": lines})


__all__ = ["InMemoryBillingStore"]
