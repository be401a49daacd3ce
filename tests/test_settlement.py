"""
Tests for payment settlement.
"""

from datetime import UTC, datetime

import pytest
import pytest_asyncio

from dotmac.billing_engine.claims import build_service_role_claims
from dotmac.billing_engine.core.enums import (
    CreditReason,
    InvoiceStatus,
    PaymentSyncEvent,
    SettlementAction,
)
from dotmac.billing_engine.core.exceptions import (
    InvoiceNotFoundError,
    InvoiceStateError,
    JobValidationError,
    RateLimitError,
)
from dotmac.billing_engine.core.models import InvoiceCreate
from dotmac.billing_engine.jobs.schemas import Credit

pytestmark = pytest.mark.unit

CLAIMS = build_service_role_claims("org-1")


@pytest_asyncio.fixture
async def open_invoice(store):
    """An OPEN invoice for 100.00 with no payments."""
    return await store.create_invoice(
        CLAIMS,
        InvoiceCreate(
            organization_id="org-1",
            number="INV-TEST-1",
            status=InvoiceStatus.OPEN,
            subtotal_cents=10000,
            tax_cents=0,
            total_cents=10000,
            issued_at=datetime(2024, 1, 1, tzinfo=UTC),
        ),
    )


async def reload(store, invoice_id):
    return await store.get_invoice(CLAIMS, invoice_id)


class TestPaymentSucceeded:
    async def test_full_payment_marks_paid(self, settlement, store, open_invoice):
        paid_at = datetime(2024, 1, 15, tzinfo=UTC)
        result = await settlement.apply_payment_event(
            "org-1", open_invoice.id, PaymentSyncEvent.PAYMENT_SUCCEEDED, paid_at=paid_at
        )

        assert result.action == SettlementAction.PAYMENT_RECORDED
        assert result.status == InvoiceStatus.PAID
        assert result.balance_cents == 0
        invoice = await reload(store, open_invoice.id)
        assert invoice.paid_at == paid_at

    async def test_partial_payments_reduce_balance_monotonically(
        self, settlement, store, open_invoice
    ):
        balances = []
        for amount in (3000, 2500, 1000):
            result = await settlement.apply_payment_event(
                "org-1",
                open_invoice.id,
                PaymentSyncEvent.PAYMENT_SUCCEEDED,
                amount_cents=amount,
            )
            balances.append(result.balance_cents)

        assert balances == [7000, 4500, 3500]
        assert (await reload(store, open_invoice.id)).status == InvoiceStatus.OPEN

    async def test_overpayment_floors_at_zero(self, settlement, open_invoice):
        result = await settlement.apply_payment_event(
            "org-1", open_invoice.id, PaymentSyncEvent.PAYMENT_SUCCEEDED, amount_cents=25000
        )

        assert result.balance_cents == 0
        assert result.status == InvoiceStatus.PAID

    async def test_payment_on_paid_invoice_rejected(self, settlement, store, open_invoice):
        await settlement.apply_payment_event(
            "org-1", open_invoice.id, PaymentSyncEvent.PAYMENT_SUCCEEDED
        )

        with pytest.raises(InvoiceStateError) as exc_info:
            await settlement.apply_payment_event(
                "org-1", open_invoice.id, PaymentSyncEvent.PAYMENT_SUCCEEDED, amount_cents=100
            )
        assert exc_info.value.context["current_status"] == "PAID"
        assert (await reload(store, open_invoice.id)).balance_cents == 0

    async def test_external_payment_id_attached_once(self, settlement, store, open_invoice):
        await settlement.apply_payment_event(
            "org-1",
            open_invoice.id,
            PaymentSyncEvent.PAYMENT_SUCCEEDED,
            amount_cents=100,
            external_payment_id="pi_first",
        )
        await settlement.apply_payment_event(
            "org-1",
            open_invoice.id,
            PaymentSyncEvent.PAYMENT_SUCCEEDED,
            amount_cents=100,
            external_payment_id="pi_second",
        )

        assert (await reload(store, open_invoice.id)).external_id == "pi_first"


class TestPaymentFailed:
    async def test_failure_recorded_in_metadata(self, settlement, store, open_invoice):
        result = await settlement.apply_payment_event(
            "org-1",
            open_invoice.id,
            PaymentSyncEvent.PAYMENT_FAILED,
            external_payment_id="pi_1",
            note="card declined",
        )
        await settlement.apply_payment_event(
            "org-1", open_invoice.id, PaymentSyncEvent.PAYMENT_FAILED, note="retry declined"
        )

        assert result.action == SettlementAction.STATUS_UPDATED
        assert result.status == InvoiceStatus.OPEN
        invoice = await reload(store, open_invoice.id)
        failures = invoice.metadata["payment_failures"]
        assert [f["note"] for f in failures] == ["card declined", "retry declined"]
        assert failures[0]["external_payment_id"] == "pi_1"
        assert invoice.balance_cents == 10000

    async def test_failure_can_set_status(self, settlement, open_invoice):
        result = await settlement.apply_payment_event(
            "org-1",
            open_invoice.id,
            PaymentSyncEvent.PAYMENT_FAILED,
            status=InvoiceStatus.UNCOLLECTIBLE,
        )
        assert result.status == InvoiceStatus.UNCOLLECTIBLE


class TestCredits:
    async def test_dispute_issues_credit_and_marks_uncollectible(
        self, settlement, store, open_invoice
    ):
        result = await settlement.apply_payment_event(
            "org-1",
            open_invoice.id,
            PaymentSyncEvent.PAYMENT_DISPUTED,
            credit=Credit(amount_cents=4200),
        )

        assert result.action == SettlementAction.CREDIT_ISSUED
        assert result.status == InvoiceStatus.UNCOLLECTIBLE
        memo = store.credit_memos[result.credit_memo_id]
        assert memo.amount_cents == 4200
        assert memo.reason == CreditReason.SERVICE_FAILURE
        assert memo.invoice_id == open_invoice.id
        assert memo.currency == "usd"

    async def test_refund_defaults_to_outstanding_balance(self, settlement, store, open_invoice):
        await settlement.apply_payment_event(
            "org-1", open_invoice.id, PaymentSyncEvent.PAYMENT_SUCCEEDED, amount_cents=4000
        )

        result = await settlement.apply_payment_event(
            "org-1", open_invoice.id, PaymentSyncEvent.PAYMENT_REFUNDED
        )

        memo = store.credit_memos[result.credit_memo_id]
        assert memo.amount_cents == 6000
        assert memo.reason == CreditReason.REFUND

    async def test_chargeback_of_paid_invoice(self, settlement, store, open_invoice):
        await settlement.apply_payment_event(
            "org-1", open_invoice.id, PaymentSyncEvent.PAYMENT_SUCCEEDED
        )

        result = await settlement.apply_payment_event(
            "org-1", open_invoice.id, PaymentSyncEvent.PAYMENT_DISPUTED
        )

        assert result.status == InvoiceStatus.UNCOLLECTIBLE
        assert store.credit_memos[result.credit_memo_id].amount_cents == 10000

    async def test_credit_reason_override(self, settlement, store, open_invoice):
        result = await settlement.apply_payment_event(
            "org-1",
            open_invoice.id,
            PaymentSyncEvent.PAYMENT_REFUNDED,
            credit=Credit(amount_cents=100, reason=CreditReason.GOODWILL, metadata={"ticket": 7}),
        )

        memo = store.credit_memos[result.credit_memo_id]
        assert memo.reason == CreditReason.GOODWILL
        assert memo.metadata == {"ticket": 7}


class TestSyncStatus:
    async def test_void_stamps_voided_at(self, settlement, store, open_invoice):
        at = datetime(2024, 1, 20, tzinfo=UTC)
        result = await settlement.apply_payment_event(
            "org-1",
            open_invoice.id,
            PaymentSyncEvent.SYNC_STATUS,
            status=InvoiceStatus.VOID,
            paid_at=at,
        )

        assert result.status == InvoiceStatus.VOID
        assert (await reload(store, open_invoice.id)).voided_at == at

    async def test_paid_with_balance_rejected(self, settlement, store, open_invoice):
        with pytest.raises(InvoiceStateError, match="outstanding balance"):
            await settlement.apply_payment_event(
                "org-1", open_invoice.id, PaymentSyncEvent.SYNC_STATUS, status=InvoiceStatus.PAID
            )
        assert (await reload(store, open_invoice.id)).status == InvoiceStatus.OPEN

    async def test_metadata_is_merged(self, settlement, store, open_invoice):
        await settlement.apply_payment_event(
            "org-1",
            open_invoice.id,
            PaymentSyncEvent.SYNC_STATUS,
            metadata={"gateway": "stripe"},
        )
        await settlement.apply_payment_event(
            "org-1",
            open_invoice.id,
            PaymentSyncEvent.SYNC_STATUS,
            metadata={"synced": True},
        )

        invoice = await reload(store, open_invoice.id)
        assert invoice.metadata == {"gateway": "stripe", "synced": True}
        assert invoice.status == InvoiceStatus.OPEN


class TestTerminalInvoices:
    """Terminal invoices never change again."""

    @pytest.mark.parametrize("terminal", [InvoiceStatus.VOID, InvoiceStatus.UNCOLLECTIBLE])
    @pytest.mark.parametrize(
        "event",
        [
            PaymentSyncEvent.PAYMENT_SUCCEEDED,
            PaymentSyncEvent.PAYMENT_FAILED,
            PaymentSyncEvent.PAYMENT_DISPUTED,
            PaymentSyncEvent.PAYMENT_REFUNDED,
            PaymentSyncEvent.SYNC_STATUS,
        ],
    )
    async def test_events_rejected(self, settlement, store, open_invoice, terminal, event):
        await store.update_invoice_status(CLAIMS, open_invoice.id, terminal)

        with pytest.raises(InvoiceStateError):
            await settlement.apply_payment_event(
                "org-1", open_invoice.id, event, status=InvoiceStatus.OPEN
            )

        invoice = await reload(store, open_invoice.id)
        assert invoice.status == terminal
        assert invoice.balance_cents == 10000
        assert store.credit_memos == {}

    async def test_paid_invoice_cannot_be_reopened(self, settlement, store, open_invoice):
        await settlement.apply_payment_event(
            "org-1", open_invoice.id, PaymentSyncEvent.PAYMENT_SUCCEEDED
        )

        with pytest.raises(InvoiceStateError):
            await settlement.apply_payment_event(
                "org-1", open_invoice.id, PaymentSyncEvent.SYNC_STATUS, status=InvoiceStatus.OPEN
            )


class TestLookupAndJobs:
    async def test_unknown_invoice(self, settlement):
        with pytest.raises(InvoiceNotFoundError):
            await settlement.apply_payment_event(
                "org-1", "inv-missing", PaymentSyncEvent.PAYMENT_SUCCEEDED
            )

    async def test_invoice_of_another_org(self, settlement, open_invoice):
        with pytest.raises(InvoiceNotFoundError):
            await settlement.apply_payment_event(
                "org-2", open_invoice.id, PaymentSyncEvent.PAYMENT_SUCCEEDED
            )

    async def test_process_payment_sync_job(self, settlement, open_invoice):
        result = await settlement.process_payment_sync_job(
            {
                "organizationId": "org-1",
                "invoiceId": open_invoice.id,
                "event": "payment_succeeded",
                "amountCents": 2500,
                "paidAt": "2024-01-10T12:00:00Z",
            }
        )

        assert result.balance_cents == 7500
        assert result.action == SettlementAction.PAYMENT_RECORDED

    async def test_process_payment_sync_job_invalid(self, settlement):
        with pytest.raises(JobValidationError):
            await settlement.process_payment_sync_job({"organizationId": "org-1"})

    async def test_rate_limit_propagates(self, settlement, store, open_invoice, monkeypatch):
        async def throttled(*args, **kwargs):
            raise RateLimitError("Too many requests", retry_after=3)

        monkeypatch.setattr(store, "record_payment", throttled)

        with pytest.raises(RateLimitError) as exc_info:
            await settlement.apply_payment_event(
                "org-1", open_invoice.id, PaymentSyncEvent.PAYMENT_SUCCEEDED
            )
        assert exc_info.value.retryable is True


class TestCreditAtomicity:
    """A rejected credit event writes neither the memo nor the status."""

    async def test_rejected_target_leaves_no_memo(self, settlement, store, open_invoice):
        with pytest.raises(InvoiceStateError):
            await settlement.apply_payment_event(
                "org-1",
                open_invoice.id,
                PaymentSyncEvent.PAYMENT_DISPUTED,
                amount_cents=4200,
                status=InvoiceStatus.PAID,
            )

        assert store.credit_memos == {}
        invoice = await reload(store, open_invoice.id)
        assert invoice.status == InvoiceStatus.OPEN
        assert invoice.balance_cents == 10000

    async def test_concurrent_status_change_leaves_no_memo(
        self, settlement, store, open_invoice, monkeypatch
    ):
        original = store.issue_credit

        async def voided_meanwhile(*args, **kwargs):
            await store.update_invoice_status(CLAIMS, open_invoice.id, InvoiceStatus.VOID)
            return await original(*args, **kwargs)

        monkeypatch.setattr(store, "issue_credit", voided_meanwhile)

        with pytest.raises(InvoiceStateError):
            await settlement.apply_payment_event(
                "org-1", open_invoice.id, PaymentSyncEvent.PAYMENT_REFUNDED
            )

        assert store.credit_memos == {}
        assert (await reload(store, open_invoice.id)).status == InvoiceStatus.VOID

    async def test_refund_may_void(self, settlement, store, open_invoice):
        at = datetime(2024, 1, 25, tzinfo=UTC)
        result = await settlement.apply_payment_event(
            "org-1",
            open_invoice.id,
            PaymentSyncEvent.PAYMENT_REFUNDED,
            status=InvoiceStatus.VOID,
            paid_at=at,
        )

        invoice = await reload(store, open_invoice.id)
        assert result.status == InvoiceStatus.VOID
        assert invoice.voided_at == at
        assert store.credit_memos[result.credit_memo_id].amount_cents == 10000

    async def test_dispute_cannot_void(self, settlement, store, open_invoice):
        with pytest.raises(InvoiceStateError):
            await settlement.apply_payment_event(
                "org-1",
                open_invoice.id,
                PaymentSyncEvent.PAYMENT_DISPUTED,
                status=InvoiceStatus.VOID,
            )
        assert store.credit_memos == {}


class TestPaidInvoiceStaysClosed:
    @pytest.mark.parametrize(
        "event", [PaymentSyncEvent.PAYMENT_DISPUTED, PaymentSyncEvent.PAYMENT_REFUNDED]
    )
    @pytest.mark.parametrize("target", [InvoiceStatus.OPEN, InvoiceStatus.DRAFT, InvoiceStatus.PAID])
    async def test_credit_event_cannot_reopen(
        self, settlement, store, open_invoice, event, target
    ):
        await settlement.apply_payment_event(
            "org-1", open_invoice.id, PaymentSyncEvent.PAYMENT_SUCCEEDED
        )

        with pytest.raises(InvoiceStateError):
            await settlement.apply_payment_event("org-1", open_invoice.id, event, status=target)

        invoice = await reload(store, open_invoice.id)
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.balance_cents == 0
        assert store.credit_memos == {}


class TestForwardTransitions:
    async def test_sync_cannot_move_open_back_to_draft(self, settlement, store, open_invoice):
        with pytest.raises(InvoiceStateError):
            await settlement.apply_payment_event(
                "org-1", open_invoice.id, PaymentSyncEvent.SYNC_STATUS, status=InvoiceStatus.DRAFT
            )
        assert (await reload(store, open_invoice.id)).status == InvoiceStatus.OPEN

    async def test_failure_cannot_move_open_back_to_draft(self, settlement, store, open_invoice):
        with pytest.raises(InvoiceStateError):
            await settlement.apply_payment_event(
                "org-1",
                open_invoice.id,
                PaymentSyncEvent.PAYMENT_FAILED,
                status=InvoiceStatus.DRAFT,
            )
        assert "payment_failures" not in (await reload(store, open_invoice.id)).metadata

    async def test_sync_opens_a_draft(self, settlement, store):
        draft = await store.create_invoice(
            CLAIMS,
            InvoiceCreate(
                organization_id="org-1",
                number="INV-DRAFT-1",
                status=InvoiceStatus.DRAFT,
                subtotal_cents=500,
                total_cents=500,
                issued_at=datetime(2024, 1, 1, tzinfo=UTC),
            ),
        )

        result = await settlement.apply_payment_event(
            "org-1", draft.id, PaymentSyncEvent.SYNC_STATUS, status=InvoiceStatus.OPEN
        )

        assert result.status == InvoiceStatus.OPEN
        assert result.action == SettlementAction.STATUS_UPDATED
