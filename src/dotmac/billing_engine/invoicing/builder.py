"""
Invoice builder.

Turns an invoice job (subscription, usage aggregates and tax configuration) into
an invoice with its lines, written in one transaction. Lines are persisted in a
fixed order: RECURRING, USAGE (in charge order), TAX, then caller-priced extras.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeAlias

import structlog

from dotmac.billing_engine.claims import AuthorizationClaims, build_service_role_claims
from dotmac.billing_engine.core.enums import (
    InvoiceLineType,
    InvoiceStatus,
    PaymentSyncEvent,
    SettlementAction,
)
from dotmac.billing_engine.core.exceptions import (
    InvalidPeriodError,
    JobValidationError,
    SubscriptionNotFoundError,
    UsageTrackingError,
)
from dotmac.billing_engine.core.models import (
    Invoice,
    InvoiceCreate,
    InvoiceLineCreate,
    Subscription,
    UsageTotal,
    utcnow,
)
from dotmac.billing_engine.invoicing.numbering import generate_invoice_number
from dotmac.billing_engine.jobs.schemas import (
    INVOICE_JOB,
    InvoiceJobPayload,
    UsageCharge,
    parse_invoice_job,
)
from dotmac.billing_engine.metrics import BillingEngineMetrics, get_billing_engine_metrics
from dotmac.billing_engine.money_utils import tax_cents_for, usage_amount_cents
from dotmac.billing_engine.repository.base import BillingStore, UsageTotalKey
from dotmac.billing_engine.settings import BillingSettings
from dotmac.billing_engine.settlement.processor import SettlementProcessor

logger = structlog.get_logger(__name__)

ClaimsBuilder: TypeAlias = Callable[[str], AuthorizationClaims]

RECURRING_FEATURE_KEY = "subscription"


@dataclass(frozen=True)
class InvoiceResult:
    invoice_id: str
    number: str
    status: InvoiceStatus
    subtotal_cents: int
    tax_cents: int
    total_cents: int
    balance_cents: int
    line_count: int
    deduplicated: bool = False
    duration_ms: float = 0.0


@dataclass
class PricedInvoice:
    """Lines and totals for an invoice that has not been written yet."""

    recurring: list[InvoiceLineCreate]
    usage: list[InvoiceLineCreate]
    extras: list[InvoiceLineCreate]
    tax_cents: int
    tax_rate_bps: int | None = None

    @property
    def subtotal_cents(self) -> int:
        return sum(line.amount_cents for line in (*self.recurring, *self.usage, *self.extras))

    @property
    def total_cents(self) -> int:
        return self.subtotal_cents + self.tax_cents

    def lines(self) -> list[InvoiceLineCreate]:
        tax: list[InvoiceLineCreate] = []
        if self.tax_cents > 0:
            tax.append(
                InvoiceLineCreate(
                    line_type=InvoiceLineType.TAX,
                    description="Tax",
                    unit_amount_cents=self.tax_cents,
                    amount_cents=self.tax_cents,
                    metadata=(
                        {"tax_rate_bps": self.tax_rate_bps}
                        if self.tax_rate_bps is not None
                        else None
                    ),
                )
            )
        return [*self.recurring, *self.usage, *tax, *self.extras]


class InvoiceBuilder:
    """Builds invoices from invoice jobs."""

    def __init__(
        self,
        store: BillingStore,
        settlement: SettlementProcessor | None = None,
        claims_builder: ClaimsBuilder = build_service_role_claims,
        metrics: BillingEngineMetrics | None = None,
        settings: BillingSettings | None = None,
    ) -> None:
        self.store = store
        self.claims_builder = claims_builder
        self.metrics = metrics or get_billing_engine_metrics()
        self.settings = settings or BillingSettings()  # type: ignore[call-arg]
        self.settlement = settlement or SettlementProcessor(
            store, claims_builder=claims_builder, metrics=self.metrics
        )

    async def build_invoice(self, raw_job: InvoiceJobPayload | dict[str, Any]) -> InvoiceResult:
        """
        Build, persist and optionally settle one invoice.

        Nothing is written unless the period is valid and the subscription resolves.

        Raises:
            JobValidationError: Malformed job, invalid period, empty or negative invoice
            SubscriptionNotFoundError: Explicit subscription missing, or no active one
            DuplicateInvoiceNumberError: Supplied invoice number already exists
        """
        started = time.perf_counter()
        try:
            job = parse_invoice_job(raw_job)
            if job.period_end <= job.period_start:
                raise InvalidPeriodError(job.period_start, job.period_end)

            claims = self.claims_builder(job.organization_id)
            with self.metrics.span(
                "billing.invoice.build",
                organization_id=job.organization_id,
                subscription_id=job.subscription_id,
            ):
                subscription = await self._resolve_subscription(claims, job)

                if self.settings.dedupe_invoices_by_period and not job.invoice_number:
                    existing = await self.store.find_invoice_for_period(
                        claims, subscription.id, job.period_start, job.period_end
                    )
                    if existing is not None:
                        with_lines = await self.store.get_invoice(
                            claims, existing.id, include_lines=True
                        )
                        return self._deduplicated(with_lines or existing, job, started)

                priced = await self._price(claims, job, subscription)
                invoice = await self._create(claims, job, subscription, priced)
                invoice = await self._settle(claims, job, invoice)
        except Exception as exc:
            self.metrics.record_job_failed(
                INVOICE_JOB,
                getattr(exc, "error_code", type(exc).__name__),
                round((time.perf_counter() - started) * 1000, 2),
            )
            raise

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        line_count = len(priced.lines())
        self.metrics.record_invoice_created(
            job.organization_id, invoice.total_cents, invoice.currency, invoice.status.value
        )
        self.metrics.record_job_completed(INVOICE_JOB, duration_ms)
        logger.info(
            "invoice.job.completed",
            invoice_id=invoice.id,
            number=invoice.number,
            organization_id=job.organization_id,
            subscription_id=subscription.id,
            subtotal_cents=invoice.subtotal_cents,
            tax_cents=invoice.tax_cents,
            total_cents=invoice.total_cents,
            status=invoice.status.value,
            line_count=line_count,
            duration_ms=duration_ms,
        )
        return InvoiceResult(
            invoice_id=invoice.id,
            number=invoice.number,
            status=invoice.status,
            subtotal_cents=invoice.subtotal_cents,
            tax_cents=invoice.tax_cents,
            total_cents=invoice.total_cents,
            balance_cents=invoice.balance_cents,
            line_count=line_count,
            duration_ms=duration_ms,
        )

    async def _resolve_subscription(
        self, claims: AuthorizationClaims, job: InvoiceJobPayload
    ) -> Subscription:
        if job.subscription_id:
            subscription = await self.store.get_subscription(claims, job.subscription_id)
            if subscription is None or subscription.organization_id != job.organization_id:
                raise SubscriptionNotFoundError(
                    f"Subscription {job.subscription_id} not found",
                    subscription_id=job.subscription_id,
                    organization_id=job.organization_id,
                )
            return subscription

        subscription = await self.store.get_active_subscription(claims, job.organization_id)
        if subscription is None:
            raise SubscriptionNotFoundError(
                f"No active subscription for organization {job.organization_id}",
                organization_id=job.organization_id,
            )
        return subscription

    def _deduplicated(
        self, existing: Invoice, job: InvoiceJobPayload, started: float
    ) -> InvoiceResult:
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        self.metrics.record_invoice_deduplicated(job.organization_id)
        self.metrics.record_job_completed(INVOICE_JOB, duration_ms)
        logger.info(
            "invoice.job.deduplicated",
            invoice_id=existing.id,
            number=existing.number,
            organization_id=job.organization_id,
            subscription_id=existing.subscription_id,
            period_start=job.period_start.isoformat(),
            period_end=job.period_end.isoformat(),
        )
        return InvoiceResult(
            invoice_id=existing.id,
            number=existing.number,
            status=existing.status,
            subtotal_cents=existing.subtotal_cents,
            tax_cents=existing.tax_cents,
            total_cents=existing.total_cents,
            balance_cents=existing.balance_cents,
            line_count=len(existing.lines) if existing.lines is not None else 0,
            deduplicated=True,
            duration_ms=duration_ms,
        )

    # ==================== Pricing ====================

    async def _price(
        self, claims: AuthorizationClaims, job: InvoiceJobPayload, subscription: Subscription
    ) -> PricedInvoice:
        recurring = self._recurring_lines(job, subscription)
        usage = await self._usage_lines(claims, job, subscription)
        extras = [
            InvoiceLineCreate(
                line_type=line.line_type,
                description=line.description,
                feature_key=line.feature_key,
                quantity=line.quantity,
                unit_amount_cents=line.unit_amount_cents,
                amount_cents=line.amount_cents,
                usage_period_start=line.usage_period_start,
                usage_period_end=line.usage_period_end,
                metadata=line.metadata,
            )
            for line in job.extra_lines
        ]

        priced = PricedInvoice(recurring=recurring, usage=usage, extras=extras, tax_cents=0)
        if job.tax_cents is not None:
            priced.tax_cents = job.tax_cents
        elif job.tax_rate_bps is not None:
            priced.tax_cents = tax_cents_for(priced.subtotal_cents, job.tax_rate_bps)
            priced.tax_rate_bps = job.tax_rate_bps

        if not priced.lines() and not job.settle:
            raise JobValidationError(
                "Invoice job did not produce any billable lines",
                context={"organization_id": job.organization_id},
            )
        if priced.total_cents < 0:
            raise JobValidationError(
                "Invoice total cannot be negative",
                context={
                    "subtotal_cents": priced.subtotal_cents,
                    "tax_cents": priced.tax_cents,
                },
                recovery_hint="Issue a credit memo instead of a negative invoice",
            )
        return priced

    @staticmethod
    def _recurring_lines(
        job: InvoiceJobPayload, subscription: Subscription
    ) -> list[InvoiceLineCreate]:
        if job.recurring_amount_cents is not None:
            amount = job.recurring_amount_cents
        elif subscription.amount_cents > 0:
            amount = subscription.amount_cents
        else:
            return []
        return [
            InvoiceLineCreate(
                line_type=InvoiceLineType.RECURRING,
                description=job.recurring_description
                or f"{subscription.billing_interval.value.lower()} subscription",
                feature_key=RECURRING_FEATURE_KEY,
                unit_amount_cents=amount,
                amount_cents=amount,
                usage_period_start=job.period_start,
                usage_period_end=job.period_end,
            )
        ]

    async def _usage_lines(
        self, claims: AuthorizationClaims, job: InvoiceJobPayload, subscription: Subscription
    ) -> list[InvoiceLineCreate]:
        if not job.usage_charges:
            return []
        totals = await self._usage_totals(claims, job, subscription)

        lines = []
        for charge in job.usage_charges:
            total = totals.get((charge.feature_key, charge.resolution), UsageTotal())
            if total.unit is not None and total.unit != charge.unit:
                raise UsageTrackingError(
                    f"Usage for {charge.feature_key} is recorded in {total.unit} "
                    f"but priced per {charge.unit}",
                    context={
                        "feature_key": charge.feature_key,
                        "recorded_unit": total.unit,
                        "priced_unit": charge.unit,
                    },
                )
            lines.append(
                InvoiceLineCreate(
                    line_type=InvoiceLineType.USAGE,
                    description=charge.description or f"Usage for {charge.feature_key}",
                    feature_key=charge.feature_key,
                    quantity=total.quantity,
                    unit_amount_cents=charge.unit_amount_cents,
                    amount_cents=usage_amount_cents(
                        total.quantity, charge.unit_amount_cents, charge.minimum_amount_cents
                    ),
                    usage_period_start=charge.usage_period_start or job.period_start,
                    usage_period_end=charge.usage_period_end or job.period_end,
                    metadata={"unit": charge.unit, "resolution": charge.resolution.value},
                )
            )
        return lines

    async def _usage_totals(
        self, claims: AuthorizationClaims, job: InvoiceJobPayload, subscription: Subscription
    ) -> dict[UsageTotalKey, UsageTotal]:
        charges: list[UsageCharge] = job.usage_charges
        if job.usage_totals is not None:
            return {
                (charge.feature_key, charge.resolution): UsageTotal(
                    quantity=job.usage_totals.get(charge.feature_key, 0)
                )
                for charge in charges
            }
        return await self.store.fetch_usage_totals(
            claims,
            job.organization_id,
            subscription.id,
            job.period_start,
            job.period_end,
            charges=[(charge.feature_key, charge.resolution) for charge in charges],
        )

    # ==================== Persistence ====================

    async def _create(
        self,
        claims: AuthorizationClaims,
        job: InvoiceJobPayload,
        subscription: Subscription,
        priced: PricedInvoice,
    ) -> Invoice:
        issued_at = job.issue_date or utcnow()
        total = priced.total_cents
        # PAID exactly when nothing is owed, including invoices that total zero.
        status = InvoiceStatus.PAID if total == 0 else job.status

        data = InvoiceCreate(
            organization_id=job.organization_id,
            subscription_id=subscription.id,
            number=job.invoice_number
            or generate_invoice_number(issued_at, self.settings.invoice_number_prefix),
            status=status,
            currency=job.currency or subscription.currency,
            subtotal_cents=priced.subtotal_cents,
            tax_cents=priced.tax_cents,
            total_cents=total,
            balance_cents=total,
            period_start=job.period_start,
            period_end=job.period_end,
            issued_at=issued_at,
            due_at=job.due_date or job.period_end,
            paid_at=issued_at if status == InvoiceStatus.PAID else None,
            metadata=job.metadata or {},
        )
        return await self.store.create_invoice(claims, data, priced.lines())

    async def _settle(
        self, claims: AuthorizationClaims, job: InvoiceJobPayload, invoice: Invoice
    ) -> Invoice:
        if job.settle is None or invoice.status == InvoiceStatus.PAID:
            return invoice
        amount = (
            job.settle.amount_cents if job.settle.amount_cents is not None else invoice.total_cents
        )
        settled = await self.settlement.record_payment(
            claims, invoice, amount, job.settle.paid_at or utcnow()
        )
        self.metrics.record_settlement(
            job.organization_id,
            PaymentSyncEvent.PAYMENT_SUCCEEDED.value,
            SettlementAction.PAYMENT_RECORDED,
            amount=invoice.balance_cents - settled.balance_cents,
            currency=settled.currency,
        )
        return settled


__all__ = ["InvoiceBuilder", "InvoiceResult", "PricedInvoice", "RECURRING_FEATURE_KEY"]
