"""
Payment settlement.

Applies payment-gateway callbacks to invoices. Every event either moves money
(``PAYMENT_RECORDED``), issues a credit (``CREDIT_ISSUED``) or only changes
bookkeeping (``STATUS_UPDATED``).

State machine::

    DRAFT --sync_status-----------------------> OPEN
    DRAFT/OPEN --payment (balance reaches 0)--> PAID
    DRAFT/OPEN/PAID --dispute-----------------> UNCOLLECTIBLE
    DRAFT/OPEN/PAID --refund------------------> UNCOLLECTIBLE or VOID
    DRAFT/OPEN --sync_status------------------> VOID, UNCOLLECTIBLE, PAID (zero balance)

PAID, VOID and UNCOLLECTIBLE are terminal here. Events against them are logged
and rejected, except a dispute or refund of a PAID invoice (a charge-back of
settled money). A credit memo and the status change it causes are written in
one store call, and every target status is checked before anything is written.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, TypeAlias

import structlog

from dotmac.billing_engine.claims import AuthorizationClaims, build_service_role_claims
from dotmac.billing_engine.core.enums import (
    CreditReason,
    InvoiceStatus,
    PaymentSyncEvent,
    SettlementAction,
)
from dotmac.billing_engine.core.exceptions import (
    InvoiceNotFoundError,
    InvoiceStateError,
    RateLimitError,
)
from dotmac.billing_engine.core.models import CreditMemoCreate, Invoice, utcnow
from dotmac.billing_engine.jobs.schemas import (
    PAYMENT_SYNC_JOB,
    Credit,
    PaymentSyncJobPayload,
    parse_payment_sync_job,
)
from dotmac.billing_engine.metrics import BillingEngineMetrics, get_billing_engine_metrics
from dotmac.billing_engine.repository.base import BillingStore

logger = structlog.get_logger(__name__)

ClaimsBuilder: TypeAlias = Callable[[str], AuthorizationClaims]

CREDIT_EVENTS = frozenset({PaymentSyncEvent.PAYMENT_DISPUTED, PaymentSyncEvent.PAYMENT_REFUNDED})

_DEFAULT_CREDIT_REASONS = {
    PaymentSyncEvent.PAYMENT_DISPUTED: CreditReason.SERVICE_FAILURE,
    PaymentSyncEvent.PAYMENT_REFUNDED: CreditReason.REFUND,
}

# Statuses a credit event may leave the invoice in
_CREDIT_TARGETS = {
    PaymentSyncEvent.PAYMENT_DISPUTED: frozenset({InvoiceStatus.UNCOLLECTIBLE}),
    PaymentSyncEvent.PAYMENT_REFUNDED: frozenset(
        {InvoiceStatus.UNCOLLECTIBLE, InvoiceStatus.VOID}
    ),
}

# Status changes requested by sync_status and payment_failed; staying put is allowed
_FORWARD_TRANSITIONS = {
    InvoiceStatus.DRAFT: frozenset(InvoiceStatus),
    InvoiceStatus.OPEN: frozenset(InvoiceStatus) - {InvoiceStatus.DRAFT},
}


@dataclass(frozen=True)
class SettlementResult:
    invoice_id: str
    status: InvoiceStatus
    action: SettlementAction
    balance_cents: int
    credit_memo_id: str | None = None
    duration_ms: float = 0.0


class SettlementProcessor:
    """Applies payment events to invoices through the billing store."""

    def __init__(
        self,
        store: BillingStore,
        claims_builder: ClaimsBuilder = build_service_role_claims,
        metrics: BillingEngineMetrics | None = None,
    ) -> None:
        self.store = store
        self.claims_builder = claims_builder
        self.metrics = metrics or get_billing_engine_metrics()

    async def apply_payment_event(
        self,
        organization_id: str,
        invoice_id: str,
        event: PaymentSyncEvent,
        amount_cents: int | None = None,
        paid_at: datetime | None = None,
        status: InvoiceStatus | None = None,
        external_payment_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        note: str | None = None,
        credit: Credit | None = None,
        claims: AuthorizationClaims | None = None,
    ) -> SettlementResult:
        """
        Apply one payment-gateway event to an invoice.

        Raises:
            InvoiceNotFoundError: The invoice does not exist for the organization
            InvoiceStateError: The event is not allowed in the invoice's status
        """
        started = time.perf_counter()
        claims = claims or self.claims_builder(organization_id)

        with self.metrics.span(
            "billing.settlement.apply",
            organization_id=organization_id,
            invoice_id=invoice_id,
            payment_event=event.value,
        ):
            try:
                invoice = await self._load_invoice(claims, organization_id, invoice_id)
                self._ensure_event_allowed(invoice, event)

                logger.info(
                    "settlement.event.processing",
                    invoice_id=invoice.id,
                    organization_id=organization_id,
                    payment_event=event.value,
                    amount_cents=amount_cents,
                    external_payment_id=external_payment_id,
                )

                credit_memo_id: str | None = None
                applied_amount = 0
                if event == PaymentSyncEvent.PAYMENT_SUCCEEDED:
                    amount = amount_cents if amount_cents is not None else invoice.total_cents
                    updated = await self.record_payment(claims, invoice, amount, paid_at or utcnow())
                    applied_amount = invoice.balance_cents - updated.balance_cents
                    action = SettlementAction.PAYMENT_RECORDED
                elif event == PaymentSyncEvent.PAYMENT_FAILED:
                    updated = await self._record_failure(
                        claims, invoice, status, external_payment_id, metadata, note
                    )
                    action = SettlementAction.STATUS_UPDATED
                elif event in CREDIT_EVENTS:
                    credit_memo_id, applied_amount, updated = await self._issue_credit(
                        claims,
                        invoice,
                        event,
                        status or InvoiceStatus.UNCOLLECTIBLE,
                        amount_cents,
                        credit,
                        metadata,
                        at=paid_at,
                    )
                    action = SettlementAction.CREDIT_ISSUED
                else:
                    updated = await self._transition(
                        claims,
                        invoice,
                        status or invoice.status,
                        metadata=self._merged_metadata(invoice, metadata),
                        at=paid_at,
                    )
                    action = SettlementAction.STATUS_UPDATED

                if external_payment_id and updated.external_id is None:
                    updated = await self.store.attach_external_invoice_id(
                        claims, updated.id, external_payment_id
                    )
            except RateLimitError as exc:
                logger.warning(
                    "settlement.rate_limited",
                    invoice_id=invoice_id,
                    payment_event=event.value,
                    retry_after=exc.retry_after,
                )
                raise

        self.metrics.record_settlement(
            organization_id, event.value, action, amount=applied_amount, currency=updated.currency
        )
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            "settlement.event.applied",
            invoice_id=updated.id,
            organization_id=organization_id,
            payment_event=event.value,
            action=action.value,
            status=updated.status.value,
            balance_cents=updated.balance_cents,
            credit_memo_id=credit_memo_id,
            duration_ms=duration_ms,
        )
        return SettlementResult(
            invoice_id=updated.id,
            status=updated.status,
            action=action,
            balance_cents=updated.balance_cents,
            credit_memo_id=credit_memo_id,
            duration_ms=duration_ms,
        )

    async def process_payment_sync_job(
        self, raw_payload: PaymentSyncJobPayload | dict[str, Any]
    ) -> SettlementResult:
        started = time.perf_counter()
        try:
            payload = parse_payment_sync_job(raw_payload)
            result = await self.apply_payment_event(
                payload.organization_id,
                payload.invoice_id,
                payload.event,
                amount_cents=payload.amount_cents,
                paid_at=payload.paid_at,
                status=payload.status,
                external_payment_id=payload.external_payment_id,
                metadata=payload.metadata,
                note=payload.note,
                credit=payload.credit,
            )
        except Exception as exc:
            self.metrics.record_job_failed(
                PAYMENT_SYNC_JOB,
                getattr(exc, "error_code", type(exc).__name__),
                round((time.perf_counter() - started) * 1000, 2),
            )
            raise
        self.metrics.record_job_completed(PAYMENT_SYNC_JOB, result.duration_ms)
        return result

    async def record_payment(
        self,
        claims: AuthorizationClaims,
        invoice: Invoice,
        amount_cents: int,
        paid_at: datetime,
    ) -> Invoice:
        """Reduce the balance atomically; the store floors it at zero and sets PAID at zero."""
        if invoice.status not in InvoiceStatus.payable():
            raise self._rejected(invoice, PaymentSyncEvent.PAYMENT_SUCCEEDED.value)
        return await self.store.record_payment(claims, invoice.id, amount_cents, paid_at)

    # Internal helpers -----------------------------------------------------

    async def _load_invoice(
        self, claims: AuthorizationClaims, organization_id: str, invoice_id: str
    ) -> Invoice:
        invoice = await self.store.get_invoice(claims, invoice_id)
        if invoice is None or invoice.organization_id != organization_id:
            raise InvoiceNotFoundError(f"Invoice {invoice_id} not found", invoice_id=invoice_id)
        return invoice

    def _ensure_event_allowed(self, invoice: Invoice, event: PaymentSyncEvent) -> None:
        if not invoice.is_terminal:
            return
        if event in CREDIT_EVENTS and invoice.status == InvoiceStatus.PAID:
            return
        raise self._rejected(invoice, event.value)

    @staticmethod
    def _rejected(invoice: Invoice, requested: str) -> InvoiceStateError:
        logger.warning(
            "settlement.event.rejected",
            invoice_id=invoice.id,
            status=invoice.status.value,
            requested=requested,
        )
        return InvoiceStateError(
            f"Invoice {invoice.id} is {invoice.status.value}; {requested} cannot be applied",
            invoice_id=invoice.id,
            current_status=invoice.status.value,
            requested=requested,
        )

    @staticmethod
    def _merged_metadata(
        invoice: Invoice, metadata: dict[str, Any] | None
    ) -> dict[str, Any] | None:
        if not metadata:
            return None
        return {**invoice.metadata, **metadata}

    async def _record_failure(
        self,
        claims: AuthorizationClaims,
        invoice: Invoice,
        status: InvoiceStatus | None,
        external_payment_id: str | None,
        metadata: dict[str, Any] | None,
        note: str | None,
    ) -> Invoice:
        failure: dict[str, Any] = {"failed_at": utcnow().isoformat()}
        if note:
            failure["note"] = note
        if external_payment_id:
            failure["external_payment_id"] = external_payment_id
        if metadata:
            failure["metadata"] = metadata

        merged = dict(invoice.metadata)
        merged["payment_failures"] = [*merged.get("payment_failures", []), failure]
        return await self._transition(claims, invoice, status or invoice.status, metadata=merged)

    async def _issue_credit(
        self,
        claims: AuthorizationClaims,
        invoice: Invoice,
        event: PaymentSyncEvent,
        target: InvoiceStatus,
        amount_cents: int | None,
        credit: Credit | None,
        metadata: dict[str, Any] | None,
        at: datetime | None = None,
    ) -> tuple[str, int, Invoice]:
        """Issue the credit memo and move the invoice to ``target`` in one store call."""
        if target not in _CREDIT_TARGETS[event]:
            raise self._rejected(invoice, f"{event.value} -> {target.value}")

        if credit is not None:
            amount = credit.amount_cents
        elif amount_cents is not None:
            amount = amount_cents
        elif invoice.status == InvoiceStatus.PAID:
            # Charge-back of a settled invoice: nothing is outstanding, credit what was paid.
            amount = invoice.total_cents
        else:
            amount = invoice.balance_cents

        memo, updated = await self.store.issue_credit(
            claims,
            CreditMemoCreate(
                organization_id=invoice.organization_id,
                invoice_id=invoice.id,
                amount_cents=amount,
                currency=invoice.currency,
                reason=(credit.reason if credit and credit.reason else None)
                or _DEFAULT_CREDIT_REASONS[event],
                metadata=(credit.metadata if credit and credit.metadata else None) or metadata,
            ),
            target,
            allowed_from={invoice.status},
            voided_at=(at or utcnow()) if target == InvoiceStatus.VOID else None,
            metadata=self._merged_metadata(invoice, metadata),
        )
        return memo.id, amount, updated

    async def _transition(
        self,
        claims: AuthorizationClaims,
        invoice: Invoice,
        target: InvoiceStatus,
        metadata: dict[str, Any] | None = None,
        at: datetime | None = None,
    ) -> Invoice:
        """Compare-and-set status change along the forward transitions only.

        ``PAID`` stays equivalent to a zero balance.
        """
        if target not in _FORWARD_TRANSITIONS.get(invoice.status, frozenset()):
            raise self._rejected(invoice, target.value)
        if target == InvoiceStatus.PAID and invoice.balance_cents != 0:
            raise InvoiceStateError(
                f"Invoice {invoice.id} has an outstanding balance and cannot be marked PAID",
                invoice_id=invoice.id,
                current_status=invoice.status.value,
                requested=target.value,
            )
        return await self.store.update_invoice_status(
            claims,
            invoice.id,
            target,
            allowed_from={invoice.status},
            voided_at=(at or utcnow()) if target == InvoiceStatus.VOID else None,
            metadata=metadata,
        )


__all__ = ["SettlementProcessor", "SettlementResult", "CREDIT_EVENTS"]
