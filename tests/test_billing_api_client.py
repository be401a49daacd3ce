"""
Tests for the HTTP billing store, using httpx.MockTransport.
"""

import json
from datetime import UTC, datetime
from decimal import Decimal

import httpx
import pytest

from dotmac.billing_engine.claims import build_service_role_claims
from dotmac.billing_engine.core.enums import CreditReason, InvoiceStatus, UsageResolution
from dotmac.billing_engine.core.exceptions import (
    BillingError,
    DownstreamServiceError,
    DuplicateInvoiceNumberError,
    InvoiceNotFoundError,
    InvoiceStateError,
    JobValidationError,
    RateLimitError,
)
from dotmac.billing_engine.core.models import CreditMemoCreate, InvoiceCreate, UsageEventInput
from dotmac.billing_engine.repository.http_client import BillingApiClient
from dotmac.billing_engine.settings import BillingApiSettings
from dotmac.billing_engine.usage.fingerprint import with_fingerprint

pytestmark = pytest.mark.integration

BASE_URL = "https://billing.test/internal/billing"
CLAIMS = build_service_role_claims("org-1")

INVOICE_BODY = {
    "id": "inv-1",
    "organization_id": "org-1",
    "number": "INV-1",
    "status": "OPEN",
    "currency": "usd",
    "subtotal_cents": 1000,
    "tax_cents": 0,
    "total_cents": 1000,
    "balance_cents": 1000,
    "issued_at": "2024-01-01T00:00:00Z",
}


def make_client(handler) -> BillingApiClient:
    transport = httpx.MockTransport(handler)
    return BillingApiClient(BASE_URL, client=httpx.AsyncClient(transport=transport))


def respond(status_code: int, body=None, headers=None):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json=body, headers=headers)

    return handler


class TestRequests:
    async def test_forwards_claims_as_headers(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["headers"] = request.headers
            seen["url"] = str(request.url)
            return httpx.Response(200, json=INVOICE_BODY)

        client = make_client(handler)
        invoice = await client.get_invoice(CLAIMS, "inv-1", include_lines=True)

        assert invoice.id == "inv-1"
        assert invoice.status == InvoiceStatus.OPEN
        assert seen["headers"]["X-Billing-Subject"] == "service-role"
        assert seen["headers"]["X-Organization-Id"] == "org-1"
        assert seen["url"] == f"{BASE_URL}/invoices/inv-1?include_lines=true"

    async def test_insert_usage_events_body(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"accepted": 1})

        event = with_fingerprint(
            UsageEventInput(
                organization_id="org-1",
                feature_key="api_calls",
                quantity=Decimal("2.5"),
                unit="call",
                recorded_at=datetime(2024, 1, 1, tzinfo=UTC),
            )
        )
        accepted = await make_client(handler).insert_usage_events(CLAIMS, [event])

        assert accepted == 1
        (sent,) = captured["body"]["events"]
        assert sent["quantity"] == "2.5"
        assert sent["fingerprint"] == event.fingerprint

    async def test_usage_totals(self):
        client = make_client(
            respond(
                200,
                [{"feature_key": "api_calls", "resolution": "DAILY", "quantity": "12.5", "unit": "call"}],
            )
        )

        totals = await client.fetch_usage_totals(
            CLAIMS,
            "org-1",
            "sub-1",
            datetime(2024, 1, 1, tzinfo=UTC),
            datetime(2024, 2, 1, tzinfo=UTC),
            charges=[("api_calls", UsageResolution.DAILY), ("storage", UsageResolution.DAILY)],
        )

        assert totals[("api_calls", UsageResolution.DAILY)].quantity == Decimal("12.5")
        assert totals[("storage", UsageResolution.DAILY)].quantity == Decimal(0)

    async def test_issue_credit_sends_memo_and_status_together(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["body"] = json.loads(request.content)
            memo = {
                "id": "cm-1",
                "organization_id": "org-1",
                "invoice_id": "inv-1",
                "amount_cents": 1000,
                "currency": "usd",
                "reason": "REFUND",
                "created_at": "2024-01-02T00:00:00Z",
            }
            invoice = {**INVOICE_BODY, "status": "UNCOLLECTIBLE"}
            return httpx.Response(200, json={"credit_memo": memo, "invoice": invoice})

        data = CreditMemoCreate(
            organization_id="org-1", invoice_id="inv-1", amount_cents=1000, reason=CreditReason.REFUND
        )
        memo, invoice = await make_client(handler).issue_credit(
            CLAIMS, data, InvoiceStatus.UNCOLLECTIBLE, allowed_from={InvoiceStatus.OPEN}
        )

        assert captured["url"] == f"{BASE_URL}/invoices/inv-1/credits"
        assert captured["body"]["status"] == "UNCOLLECTIBLE"
        assert captured["body"]["allowed_from"] == ["OPEN"]
        assert captured["body"]["credit_memo"]["amount_cents"] == 1000
        assert "voided_at" not in captured["body"]
        assert memo.id == "cm-1"
        assert invoice.status == InvoiceStatus.UNCOLLECTIBLE

    async def test_bearer_token_on_default_client(self):
        client = BillingApiClient.from_settings(
            BillingApiSettings(base_url=f"{BASE_URL}/", token="secret", timeout_seconds=2.0)
        )
        http = await client._get_client()

        assert client.base_url == BASE_URL
        assert http.headers["Authorization"] == "Bearer secret"
        await client.close()
        assert client._client is None


class TestErrorMapping:
    async def test_lookup_404_is_none(self):
        client = make_client(respond(404, {"message": "not found"}))
        assert await client.get_invoice(CLAIMS, "inv-404") is None

    async def test_mutation_404_raises(self):
        client = make_client(respond(404, {"message": "Invoice inv-404 not found"}))
        with pytest.raises(InvoiceNotFoundError):
            await client.record_payment(CLAIMS, "inv-404", 100, datetime.now(UTC))

    async def test_duplicate_invoice_number(self):
        client = make_client(
            respond(
                409,
                {
                    "error_code": "DUPLICATE_INVOICE_NUMBER",
                    "message": "Invoice number INV-1 already exists",
                    "context": {"number": "INV-1"},
                },
            )
        )
        data = InvoiceCreate(
            organization_id="org-1",
            number="INV-1",
            subtotal_cents=1000,
            total_cents=1000,
            issued_at=datetime(2024, 1, 1, tzinfo=UTC),
        )

        with pytest.raises(DuplicateInvoiceNumberError) as exc_info:
            await client.create_invoice(CLAIMS, data)
        assert exc_info.value.context["number"] == "INV-1"

    async def test_status_conflict(self):
        client = make_client(
            respond(409, {"message": "Invoice is PAID", "context": {"current_status": "PAID"}})
        )
        with pytest.raises(InvoiceStateError) as exc_info:
            await client.update_invoice_status(
                CLAIMS, "inv-1", InvoiceStatus.VOID, allowed_from={InvoiceStatus.OPEN}
            )
        assert exc_info.value.context["current_status"] == "PAID"

    async def test_validation_error(self):
        client = make_client(respond(422, {"detail": "bad payload"}))
        with pytest.raises(JobValidationError, match="bad payload"):
            await client.list_invoices(CLAIMS, "org-1")

    async def test_rate_limit(self):
        client = make_client(respond(429, {"message": "slow down"}, headers={"Retry-After": "7"}))
        with pytest.raises(RateLimitError) as exc_info:
            await client.list_credit_memos(CLAIMS, "org-1")
        assert exc_info.value.retry_after == 7.0
        assert exc_info.value.retryable is True

    async def test_server_error(self):
        client = make_client(respond(503, {"message": "maintenance"}))
        with pytest.raises(DownstreamServiceError) as exc_info:
            await client.get_active_subscription(CLAIMS, "org-1")
        assert exc_info.value.context["upstream_status"] == 503
        assert exc_info.value.retryable is True

    async def test_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(DownstreamServiceError):
            await make_client(handler).list_subscriptions(CLAIMS, "org-1")

    async def test_other_client_errors(self):
        client = make_client(respond(403, {"message": "forbidden", "error_code": "FORBIDDEN"}))
        with pytest.raises(BillingError) as exc_info:
            await client.list_usage_events(CLAIMS, "org-1")
        assert exc_info.value.error_code == "FORBIDDEN"
        assert exc_info.value.retryable is False
