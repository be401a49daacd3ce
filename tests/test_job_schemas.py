"""Tests for job payload validation."""

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from dotmac.billing_engine.core.enums import (
    InvoiceLineType,
    InvoiceStatus,
    PaymentSyncEvent,
    UsageResolution,
)
from dotmac.billing_engine.core.exceptions import JobValidationError
from dotmac.billing_engine.jobs.schemas import (
    InvoiceJobPayload,
    UsageJobPayload,
    parse_invoice_job,
    parse_payment_sync_job,
    parse_usage_job,
)

pytestmark = pytest.mark.unit


def invoice_payload(**overrides):
    payload = {
        "organizationId": "org-1",
        "periodStart": "2024-01-01T00:00:00Z",
        "periodEnd": "2024-02-01T00:00:00Z",
    }
    payload.update(overrides)
    return payload


class TestUsageJobPayload:
    def test_parses_camel_case(self):
        job = parse_usage_job(
            {
                "organizationId": "org-1",
                "subscriptionId": "sub-1",
                "periodStart": "2024-01-01T00:00:00Z",
                "periodEnd": "2024-01-02T00:00:00Z",
                "resolution": "HOURLY",
                "featureKeys": ["api_calls"],
            }
        )
        assert job.organization_id == "org-1"
        assert job.resolution == UsageResolution.HOURLY
        assert job.feature_keys == ["api_calls"]
        assert job.period_start == datetime(2024, 1, 1, tzinfo=UTC)
        assert job.backfill is False

    def test_accepts_snake_case(self):
        job = parse_usage_job(
            {
                "organization_id": "org-1",
                "subscription_id": "sub-1",
                "period_start": "2024-01-01T00:00:00",
                "period_end": "2024-01-02T00:00:00",
            }
        )
        # Naive timestamps are read as UTC
        assert job.period_end == datetime(2024, 1, 2, tzinfo=UTC)
        assert job.resolution is None

    def test_to_message_round_trips(self):
        job = UsageJobPayload(
            organization_id="org-1",
            subscription_id="sub-1",
            period_start=datetime(2024, 1, 1, tzinfo=UTC),
            period_end=datetime(2024, 1, 2, tzinfo=UTC),
            resolution=UsageResolution.DAILY,
        )
        message = job.to_message()
        assert message["organizationId"] == "org-1"
        assert message["resolution"] == "DAILY"
        assert "featureKeys" not in message
        assert parse_usage_job(message) == job

    def test_empty_feature_key_rejected(self):
        with pytest.raises(JobValidationError):
            parse_usage_job(
                {
                    "organizationId": "org-1",
                    "subscriptionId": "sub-1",
                    "periodStart": "2024-01-01T00:00:00Z",
                    "periodEnd": "2024-01-02T00:00:00Z",
                    "featureKeys": [""],
                }
            )

    @pytest.mark.parametrize("raw", [None, "payload", ["a"]])
    def test_non_object_rejected(self, raw):
        with pytest.raises(JobValidationError) as exc_info:
            parse_usage_job(raw)
        assert exc_info.value.context["job_type"] == "usage"


class TestInvoiceJobPayload:
    def test_defaults(self):
        job = parse_invoice_job(invoice_payload())
        assert job.status == InvoiceStatus.OPEN
        assert job.usage_charges == []
        assert job.extra_lines == []
        assert job.settle is None

    def test_nested_camel_case(self):
        job = parse_invoice_job(
            invoice_payload(
                usageCharges=[
                    {"featureKey": "api_calls", "unitAmountCents": 2, "unit": "call"}
                ],
                extraLines=[{"unitAmountCents": -500, "amountCents": -500}],
                settle={"amountCents": 100},
                usageTotals={"api_calls": "12.5"},
            )
        )
        assert job.usage_charges[0].resolution == UsageResolution.DAILY
        assert job.extra_lines[0].line_type == InvoiceLineType.ADJUSTMENT
        assert job.settle.amount_cents == 100
        assert job.usage_totals == {"api_calls": Decimal("12.5")}

    def test_currency_normalised(self):
        assert parse_invoice_job(invoice_payload(currency="EUR")).currency == "eur"

    def test_unknown_currency_rejected(self):
        with pytest.raises(JobValidationError, match="currency"):
            parse_invoice_job(invoice_payload(currency="ZZZ"))

    @pytest.mark.parametrize("status", ["PAID", "VOID", "UNCOLLECTIBLE"])
    def test_only_draft_or_open(self, status):
        with pytest.raises(JobValidationError):
            parse_invoice_job(invoice_payload(status=status))

    @pytest.mark.parametrize("bps", [-1, 10001])
    def test_tax_rate_bounds(self, bps):
        with pytest.raises(JobValidationError):
            parse_invoice_job(invoice_payload(taxRateBps=bps))

    def test_tax_extra_line_rejected(self):
        with pytest.raises(JobValidationError, match="TAX"):
            parse_invoice_job(
                invoice_payload(
                    extraLines=[{"lineType": "TAX", "unitAmountCents": 5, "amountCents": 5}]
                )
            )

    def test_negative_usage_total_rejected(self):
        with pytest.raises(JobValidationError):
            parse_invoice_job(invoice_payload(usageTotals={"api_calls": "-1"}))

    def test_unknown_field_rejected(self):
        with pytest.raises(JobValidationError) as exc_info:
            parse_invoice_job(invoice_payload(discountCode="SPRING"))
        assert exc_info.value.error_code == "VALIDATION_ERROR"
        assert exc_info.value.context["validation_errors"][0]["loc"] == "discountCode"

    def test_model_instance_passes_through(self):
        job = InvoiceJobPayload.model_validate(invoice_payload())
        assert parse_invoice_job(job) is job


class TestPaymentSyncJobPayload:
    def test_parses_credit(self):
        job = parse_payment_sync_job(
            {
                "organizationId": "org-1",
                "invoiceId": "inv-1",
                "event": "payment_disputed",
                "credit": {"amountCents": 4200, "reason": "SERVICE_FAILURE"},
            }
        )
        assert job.event == PaymentSyncEvent.PAYMENT_DISPUTED
        assert job.credit.amount_cents == 4200

    def test_unknown_event_rejected(self):
        with pytest.raises(JobValidationError):
            parse_payment_sync_job(
                {"organizationId": "org-1", "invoiceId": "inv-1", "event": "payment_exploded"}
            )

    def test_negative_amount_rejected(self):
        with pytest.raises(JobValidationError):
            parse_payment_sync_job(
                {
                    "organizationId": "org-1",
                    "invoiceId": "inv-1",
                    "event": "payment_succeeded",
                    "amountCents": -1,
                }
            )
