"""
Tests for invoice building.

Covers pricing arithmetic, line ordering, deduplication, settlement on build and
the guarantees that nothing is written for rejected jobs.
"""

import random
import re
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from dotmac.billing_engine.claims import build_service_role_claims
from dotmac.billing_engine.core.enums import (
    InvoiceLineType,
    InvoiceStatus,
    SubscriptionStatus,
    UsageResolution,
    UsageSource,
)
from dotmac.billing_engine.core.exceptions import (
    DuplicateInvoiceNumberError,
    InvalidPeriodError,
    JobValidationError,
    SubscriptionNotFoundError,
    UsageTrackingError,
)
from dotmac.billing_engine.core.models import UsageAggregateKey
from dotmac.billing_engine.invoicing.numbering import generate_invoice_number
from dotmac.billing_engine.money_utils import tax_cents_for, usage_amount_cents

pytestmark = pytest.mark.unit

CLAIMS = build_service_role_claims("org-1")


def invoice_job(**overrides):
    payload = {
        "organizationId": "org-1",
        "periodStart": "2024-01-01T00:00:00Z",
        "periodEnd": "2024-02-01T00:00:00Z",
    }
    payload.update(overrides)
    return payload


async def load_invoice(store, invoice_id):
    return await store.get_invoice(CLAIMS, invoice_id, include_lines=True)


class TestInvoiceNumbering:
    def test_format(self):
        number = generate_invoice_number(datetime(2024, 3, 9, tzinfo=UTC))
        assert re.fullmatch(r"INV-20240309-[0-9A-F]{6}", number)

    def test_prefix(self):
        assert generate_invoice_number(datetime(2024, 3, 9, tzinfo=UTC), "ACME").startswith(
            "ACME-20240309-"
        )


class TestBuildInvoice:
    """Pricing and persistence."""

    async def test_recurring_usage_and_tax(self, invoice_builder, store, subscription):
        result = await invoice_builder.build_invoice(
            invoice_job(
                usageCharges=[{"featureKey": "api_calls", "unitAmountCents": 3, "unit": "call"}],
                usageTotals={"api_calls": "1000"},
                taxRateBps=750,
            )
        )

        assert result.subtotal_cents == 13000
        assert result.tax_cents == 975
        assert result.total_cents == 13975
        assert result.balance_cents == 13975
        assert result.status == InvoiceStatus.OPEN
        assert result.line_count == 3

        invoice = await load_invoice(store, result.invoice_id)
        assert invoice.subscription_id == subscription.id
        assert invoice.currency == "usd"
        assert invoice.due_at == datetime(2024, 2, 1, tzinfo=UTC)
        assert [line.line_type for line in invoice.lines] == [
            InvoiceLineType.RECURRING,
            InvoiceLineType.USAGE,
            InvoiceLineType.TAX,
        ]
        recurring, usage, tax = invoice.lines
        assert recurring.amount_cents == 10000
        assert recurring.description == "monthly subscription"
        assert usage.quantity == Decimal(1000)
        assert usage.amount_cents == 3000
        assert usage.metadata == {"unit": "call", "resolution": "DAILY"}
        assert tax.metadata == {"tax_rate_bps": 750}
        assert [line.position for line in invoice.lines] == [0, 1, 2]

    async def test_usage_from_stored_aggregates(self, invoice_builder, store, subscription):
        for day in (1, 2):
            key = UsageAggregateKey(
                organization_id="org-1",
                subscription_id=subscription.id,
                feature_key="storage",
                resolution=UsageResolution.DAILY,
                period_start=datetime(2024, 1, day, tzinfo=UTC),
                period_end=datetime(2024, 1, day + 1, tzinfo=UTC),
            )
            await store.replace_aggregate(CLAIMS, key, Decimal("1.25"), "gb", UsageSource.WORKER)

        result = await invoice_builder.build_invoice(
            invoice_job(
                recurringAmountCents=0,
                usageCharges=[{"featureKey": "storage", "unitAmountCents": 200, "unit": "gb"}],
            )
        )

        invoice = await load_invoice(store, result.invoice_id)
        usage = [line for line in invoice.lines if line.line_type == InvoiceLineType.USAGE]
        assert usage[0].quantity == Decimal("2.5")
        assert usage[0].amount_cents == 500

    async def test_unit_mismatch_rejected(self, invoice_builder, store, subscription):
        key = UsageAggregateKey(
            organization_id="org-1",
            subscription_id=subscription.id,
            feature_key="storage",
            resolution=UsageResolution.DAILY,
            period_start=datetime(2024, 1, 1, tzinfo=UTC),
            period_end=datetime(2024, 1, 2, tzinfo=UTC),
        )
        await store.replace_aggregate(CLAIMS, key, Decimal(3), "gb", UsageSource.WORKER)

        with pytest.raises(UsageTrackingError):
            await invoice_builder.build_invoice(
                invoice_job(
                    usageCharges=[{"featureKey": "storage", "unitAmountCents": 1, "unit": "mb"}]
                )
            )
        assert store.invoices == {}

    async def test_zero_quantity_usage_still_listed(self, invoice_builder, store, subscription):
        result = await invoice_builder.build_invoice(
            invoice_job(
                usageCharges=[{"featureKey": "api_calls", "unitAmountCents": 3, "unit": "call"}],
            )
        )

        invoice = await load_invoice(store, result.invoice_id)
        (usage,) = [line for line in invoice.lines if line.line_type == InvoiceLineType.USAGE]
        assert usage.quantity == Decimal(0)
        assert usage.amount_cents == 0
        assert result.total_cents == 10000

    async def test_minimum_charge(self, invoice_builder, subscription):
        result = await invoice_builder.build_invoice(
            invoice_job(
                recurringAmountCents=0,
                usageCharges=[
                    {
                        "featureKey": "api_calls",
                        "unitAmountCents": 1,
                        "unit": "call",
                        "minimumAmountCents": 500,
                    }
                ],
                usageTotals={"api_calls": "10"},
            )
        )
        assert result.subtotal_cents == 500

    async def test_extra_lines_follow_tax(self, invoice_builder, store, subscription):
        result = await invoice_builder.build_invoice(
            invoice_job(
                taxCents=100,
                extraLines=[
                    {
                        "lineType": "ONE_TIME",
                        "description": "Setup fee",
                        "unitAmountCents": 2500,
                        "amountCents": 2500,
                    },
                    {"description": "Goodwill", "unitAmountCents": -1000, "amountCents": -1000},
                ],
            )
        )

        invoice = await load_invoice(store, result.invoice_id)
        assert [line.line_type for line in invoice.lines] == [
            InvoiceLineType.RECURRING,
            InvoiceLineType.TAX,
            InvoiceLineType.ONE_TIME,
            InvoiceLineType.ADJUSTMENT,
        ]
        assert result.subtotal_cents == 11500
        assert result.tax_cents == 100
        assert result.total_cents == 11600

    async def test_zero_total_is_paid(self, invoice_builder, store, subscription):
        result = await invoice_builder.build_invoice(
            invoice_job(recurringAmountCents=0, invoiceNumber="INV-FREE-1")
        )

        assert result.status == InvoiceStatus.PAID
        assert result.total_cents == 0
        invoice = await load_invoice(store, result.invoice_id)
        assert invoice.balance_cents == 0
        assert invoice.paid_at is not None

    async def test_supplied_number_and_currency(self, invoice_builder, store, subscription):
        result = await invoice_builder.build_invoice(
            invoice_job(invoiceNumber="ACME-0001", currency="EUR", status="DRAFT")
        )

        invoice = await load_invoice(store, result.invoice_id)
        assert invoice.number == "ACME-0001"
        assert invoice.currency == "eur"
        assert invoice.status == InvoiceStatus.DRAFT

    async def test_duplicate_number(self, invoice_builder, subscription):
        await invoice_builder.build_invoice(invoice_job(invoiceNumber="ACME-0001"))

        with pytest.raises(DuplicateInvoiceNumberError):
            await invoice_builder.build_invoice(
                invoice_job(
                    invoiceNumber="ACME-0001",
                    periodStart="2024-02-01T00:00:00Z",
                    periodEnd="2024-03-01T00:00:00Z",
                )
            )

    async def test_explicit_subscription(self, invoice_builder, store, subscription_factory):
        canceled = await subscription_factory(
            status=SubscriptionStatus.CANCELED, amount_cents=4200
        )

        result = await invoice_builder.build_invoice(invoice_job(subscriptionId=canceled.id))

        invoice = await load_invoice(store, result.invoice_id)
        assert invoice.subscription_id == canceled.id
        assert invoice.total_cents == 4200


class TestSettleOnBuild:
    async def test_full_settlement(self, invoice_builder, store, subscription):
        result = await invoice_builder.build_invoice(
            invoice_job(taxRateBps=1000, settle={"paidAt": "2024-02-02T00:00:00Z"})
        )

        assert result.status == InvoiceStatus.PAID
        assert result.balance_cents == 0
        invoice = await load_invoice(store, result.invoice_id)
        assert invoice.paid_at == datetime(2024, 2, 2, tzinfo=UTC)

    async def test_partial_settlement(self, invoice_builder, subscription):
        result = await invoice_builder.build_invoice(invoice_job(settle={"amountCents": 4000}))

        assert result.status == InvoiceStatus.OPEN
        assert result.balance_cents == 6000


class TestRejectedJobs:
    """Rejected jobs never write anything."""

    async def test_missing_subscription(self, invoice_builder, store):
        before = store.write_count
        with pytest.raises(SubscriptionNotFoundError):
            await invoice_builder.build_invoice(invoice_job(subscriptionId="sub-missing"))
        assert store.write_count == before

    async def test_no_active_subscription(self, invoice_builder, store):
        with pytest.raises(SubscriptionNotFoundError) as exc_info:
            await invoice_builder.build_invoice(invoice_job())
        assert exc_info.value.error_code == "SUBSCRIPTION_NOT_FOUND"
        assert store.write_count == 0

    async def test_subscription_of_another_org(self, invoice_builder, store, subscription_factory):
        other = await subscription_factory(organization_id="org-2")
        before = store.write_count

        with pytest.raises(SubscriptionNotFoundError):
            await invoice_builder.build_invoice(invoice_job(subscriptionId=other.id))
        assert store.write_count == before

    async def test_invalid_period(self, invoice_builder, store, subscription):
        before = store.write_count
        with pytest.raises(InvalidPeriodError):
            await invoice_builder.build_invoice(
                invoice_job(periodStart="2024-02-01T00:00:00Z", periodEnd="2024-02-01T00:00:00Z")
            )
        assert store.write_count == before

    async def test_no_billable_lines(self, invoice_builder, store, subscription_factory):
        await subscription_factory(amount_cents=0)
        with pytest.raises(JobValidationError, match="billable lines"):
            await invoice_builder.build_invoice(invoice_job())
        assert store.invoices == {}

    async def test_negative_total(self, invoice_builder, store, subscription):
        with pytest.raises(JobValidationError, match="negative"):
            await invoice_builder.build_invoice(
                invoice_job(extraLines=[{"unitAmountCents": -20000, "amountCents": -20000}])
            )
        assert store.invoices == {}


class TestDeduplication:
    async def test_same_period_returns_existing(self, invoice_builder, store, subscription):
        first = await invoice_builder.build_invoice(invoice_job(taxRateBps=750))
        second = await invoice_builder.build_invoice(invoice_job(taxRateBps=750))

        assert second.deduplicated is True
        assert second.invoice_id == first.invoice_id
        assert second.total_cents == first.total_cents
        assert second.line_count == first.line_count
        assert len(store.invoices) == 1

    async def test_void_invoice_does_not_block(self, invoice_builder, store, subscription):
        first = await invoice_builder.build_invoice(invoice_job())
        await store.update_invoice_status(CLAIMS, first.invoice_id, InvoiceStatus.VOID)

        second = await invoice_builder.build_invoice(invoice_job())

        assert second.deduplicated is False
        assert second.invoice_id != first.invoice_id

    async def test_disabled(self, invoice_builder, store, subscription):
        invoice_builder.settings.dedupe_invoices_by_period = False

        await invoice_builder.build_invoice(invoice_job())
        await invoice_builder.build_invoice(invoice_job())

        assert len(store.invoices) == 2


class TestInvoiceArithmetic:
    """Totals hold for arbitrary charge combinations."""

    async def test_random_combinations(self, invoice_builder, store, subscription):
        rng = random.Random(20240101)
        for index in range(25):
            recurring = rng.randint(0, 50000)
            quantity = Decimal(rng.randint(0, 100000)) / Decimal(100)
            unit_price = rng.randint(0, 500)
            extra = rng.randint(0, 5000)
            bps = rng.randint(0, 2500)

            result = await invoice_builder.build_invoice(
                invoice_job(
                    invoiceNumber=f"PROP-{index}",
                    recurringAmountCents=recurring,
                    usageCharges=[
                        {"featureKey": "api_calls", "unitAmountCents": unit_price, "unit": "call"}
                    ],
                    usageTotals={"api_calls": str(quantity)},
                    extraLines=[
                        {"lineType": "ONE_TIME", "unitAmountCents": extra, "amountCents": extra}
                    ],
                    taxRateBps=bps,
                )
            )

            subtotal = recurring + usage_amount_cents(quantity, unit_price) + extra
            assert result.subtotal_cents == subtotal
            assert result.tax_cents == tax_cents_for(subtotal, bps)
            assert result.total_cents == result.subtotal_cents + result.tax_cents
            assert result.balance_cents == result.total_cents

            invoice = await load_invoice(store, result.invoice_id)
            assert sum(line.amount_cents for line in invoice.lines) == invoice.total_cents
            expected_status = InvoiceStatus.PAID if invoice.total_cents == 0 else InvoiceStatus.OPEN
            assert invoice.status == expected_status
