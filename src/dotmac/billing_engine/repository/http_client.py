"""
Billing API client.

``BillingStore`` implementation that talks to a remote billing service over HTTP
instead of the database. Caller claims are forwarded as headers; HTTP failures are
mapped onto the billing error taxonomy so the job layer can tell retryable
failures (429, 5xx, transport errors) from fatal ones.
"""

from collections.abc import Callable, Collection, Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any, TypeAlias

import httpx
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
    BillingError,
    CreditMemoNotFoundError,
    DownstreamServiceError,
    DuplicateInvoiceNumberError,
    InvoiceNotFoundError,
    InvoiceStateError,
    JobValidationError,
    RateLimitError,
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
)
from dotmac.billing_engine.repository.base import UsageTotalKey
from dotmac.billing_engine.settings import BillingApiSettings

logger = structlog.get_logger(__name__)

SERVICE_NAME = "billing-api"

ErrorFactory: TypeAlias = Callable[[str, dict[str, Any]], BillingError]


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _params(**params: Any) -> dict[str, Any]:
    """Drop unset query parameters."""
    return {key: value for key, value in params.items() if value is not None}


def _retry_after(response: httpx.Response) -> float | None:
    header = response.headers.get("Retry-After")
    if header is None:
        return None
    try:
        return max(float(header), 0.0)
    except ValueError:
        return None


def _error_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"message": response.text}
    return body if isinstance(body, dict) else {"message": str(body)}


class BillingApiClient:
    """HTTP ``BillingStore`` for a remote billing service."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize the billing API client.

        Args:
            base_url: Billing API root (e.g. https://identity.internal/internal/billing)
            token: Bearer token for service-to-service authentication
            timeout: Request timeout in seconds
            client: Pre-built client (tests inject one with a mock transport)
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._client = client

    @classmethod
    def from_settings(cls, settings: BillingApiSettings) -> "BillingApiClient":
        return cls(
            base_url=settings.base_url, token=settings.token, timeout=settings.timeout_seconds
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {"Content-Type": "application/json", "Accept": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url, headers=headers, timeout=httpx.Timeout(self.timeout)
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _claims_headers(claims: AuthorizationClaims) -> dict[str, str]:
        headers = {"X-Billing-Subject": claims.sub, "X-Billing-Role": claims.role}
        if claims.organization_id:
            headers["X-Organization-Id"] = claims.organization_id
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        claims: AuthorizationClaims,
        json: Any = None,
        params: dict[str, Any] | None = None,
        not_found: ErrorFactory | None = None,
        conflict: ErrorFactory | None = None,
    ) -> Any:
        """
        Make a request and map failures onto billing errors.

        Returns the decoded JSON body, or ``None`` for a 404 when ``not_found`` is
        not given (lookups) and for 204 responses.
        """
        client = await self._get_client()
        url = f"{self.base_url}{path}"
        try:
            response = await client.request(
                method, url, json=json, params=params, headers=self._claims_headers(claims)
            )
        except httpx.TransportError as exc:
            logger.warning("billing_api.transport_error", method=method, path=path, error=str(exc))
            raise DownstreamServiceError(
                f"Billing API request failed: {exc}", service=SERVICE_NAME
            ) from exc

        status = response.status_code
        if status == 204:
            return None
        if status < 400:
            return response.json()

        body = _error_body(response)
        message = str(body.get("message") or body.get("detail") or f"HTTP {status}")
        context = body.get("context") if isinstance(body.get("context"), dict) else {}

        if status == 404:
            if not_found is None:
                return None
            raise not_found(message, context)
        if status == 409:
            if body.get("error_code") == "DUPLICATE_INVOICE_NUMBER":
                raise DuplicateInvoiceNumberError(message, number=str(context.get("number", "")))
            if conflict is not None:
                raise conflict(message, context)
            raise BillingError(message, "CONFLICT", status_code=409, context=context)
        if status == 422:
            raise JobValidationError(message, context=context)
        if status == 429:
            retry_after = _retry_after(response)
            logger.warning(
                "billing_api.rate_limited", method=method, path=path, retry_after=retry_after
            )
            raise RateLimitError(message, retry_after=retry_after, service=SERVICE_NAME)
        if status >= 500:
            raise DownstreamServiceError(message, service=SERVICE_NAME, status=status)
        raise BillingError(
            message, body.get("error_code") or "BILLING_API_ERROR", status_code=status, context=context
        )

    # Error factories ----------------------------------------------------

    @staticmethod
    def _subscription_missing(subscription_id: str) -> ErrorFactory:
        return lambda message, context: SubscriptionNotFoundError(
            message, subscription_id=subscription_id
        )

    @staticmethod
    def _invoice_missing(invoice_id: str) -> ErrorFactory:
        return lambda message, context: InvoiceNotFoundError(message, invoice_id=invoice_id)

    @staticmethod
    def _invoice_conflict(invoice_id: str, requested: str) -> ErrorFactory:
        return lambda message, context: InvoiceStateError(
            message,
            invoice_id=invoice_id,
            current_status=str(context.get("current_status", "")),
            requested=requested,
        )

    @staticmethod
    def _subscription_conflict(message: str, context: dict[str, Any]) -> BillingError:
        return SubscriptionError(message, context=context)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def create_subscription(
        self, claims: AuthorizationClaims, data: SubscriptionCreate
    ) -> Subscription:
        body = await self._request(
            "POST",
            "/subscriptions",
            claims,
            json=data.model_dump(mode="json"),
            conflict=self._subscription_conflict,
        )
        return Subscription.model_validate(body)

    async def update_subscription(
        self, claims: AuthorizationClaims, subscription_id: str, changes: SubscriptionUpdate
    ) -> Subscription:
        body = await self._request(
            "PATCH",
            f"/subscriptions/{subscription_id}",
            claims,
            json=changes.model_dump(mode="json", exclude_none=True),
            not_found=self._subscription_missing(subscription_id),
            conflict=self._subscription_conflict,
        )
        return Subscription.model_validate(body)

    async def get_subscription(
        self, claims: AuthorizationClaims, subscription_id: str
    ) -> Subscription | None:
        body = await self._request("GET", f"/subscriptions/{subscription_id}", claims)
        return Subscription.model_validate(body) if body is not None else None

    async def get_active_subscription(
        self, claims: AuthorizationClaims, organization_id: str
    ) -> Subscription | None:
        body = await self._request(
            "GET", f"/organizations/{organization_id}/subscriptions/active", claims
        )
        return Subscription.model_validate(body) if body is not None else None

    async def list_subscriptions(
        self,
        claims: AuthorizationClaims,
        organization_id: str,
        status: SubscriptionStatus | None = None,
    ) -> list[Subscription]:
        body = await self._request(
            "GET",
            f"/organizations/{organization_id}/subscriptions",
            claims,
            params=_params(status=status.value if status else None),
        )
        return [Subscription.model_validate(item) for item in body or []]

    async def cancel_subscription(
        self,
        claims: AuthorizationClaims,
        subscription_id: str,
        invoice_thru_period: bool = False,
        canceled_at: datetime | None = None,
    ) -> Subscription:
        body = await self._request(
            "POST",
            f"/subscriptions/{subscription_id}/cancel",
            claims,
            json={"invoice_thru_period": invoice_thru_period, "canceled_at": _iso(canceled_at)},
            not_found=self._subscription_missing(subscription_id),
        )
        return Subscription.model_validate(body)

    async def schedule_subscription_change(
        self, claims: AuthorizationClaims, data: SubscriptionScheduleCreate
    ) -> SubscriptionSchedule:
        body = await self._request(
            "POST",
            f"/subscriptions/{data.subscription_id}/schedules",
            claims,
            json=data.model_dump(mode="json"),
            not_found=self._subscription_missing(data.subscription_id),
        )
        return SubscriptionSchedule.model_validate(body)

    async def list_subscription_schedules(
        self, claims: AuthorizationClaims, subscription_id: str
    ) -> list[SubscriptionSchedule]:
        body = await self._request("GET", f"/subscriptions/{subscription_id}/schedules", claims)
        return [SubscriptionSchedule.model_validate(item) for item in body or []]

    async def update_subscription_schedule_status(
        self,
        claims: AuthorizationClaims,
        schedule_id: str,
        status: SubscriptionScheduleStatus,
    ) -> SubscriptionSchedule:
        body = await self._request(
            "PATCH",
            f"/subscription-schedules/{schedule_id}",
            claims,
            json={"status": status.value},
            not_found=lambda message, context: SubscriptionError(
                message, context={"schedule_id": schedule_id}
            ),
        )
        return SubscriptionSchedule.model_validate(body)

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    async def insert_usage_events(
        self, claims: AuthorizationClaims, events: Sequence[UsageEventInput]
    ) -> int:
        if not events:
            return 0
        body = await self._request(
            "POST",
            "/usage/events",
            claims,
            json={"events": [event.model_dump(mode="json") for event in events]},
        )
        return int(body["accepted"])

    async def fetch_usage_events(
        self,
        claims: AuthorizationClaims,
        organization_id: str,
        subscription_id: str,
        period_start: datetime,
        period_end: datetime,
        feature_keys: Collection[str] | None = None,
    ) -> list[UsageEvent]:
        params = _params(
            subscription_id=subscription_id,
            period_start=_iso(period_start),
            period_end=_iso(period_end),
        )
        if feature_keys is not None:
            params["feature_key"] = list(feature_keys)
        body = await self._request(
            "GET", f"/organizations/{organization_id}/usage/events/window", claims, params=params
        )
        return [UsageEvent.model_validate(item) for item in body or []]

    async def list_usage_events(
        self,
        claims: AuthorizationClaims,
        organization_id: str,
        feature_key: str | None = None,
        limit: int = 100,
    ) -> list[UsageEvent]:
        body = await self._request(
            "GET",
            f"/organizations/{organization_id}/usage/events",
            claims,
            params=_params(feature_key=feature_key, limit=limit),
        )
        return [UsageEvent.model_validate(item) for item in body or []]

    async def replace_aggregate(
        self,
        claims: AuthorizationClaims,
        key: UsageAggregateKey,
        quantity: Decimal,
        unit: str,
        source: UsageSource,
    ) -> UsageAggregate:
        body = await self._request(
            "PUT",
            "/usage/aggregates",
            claims,
            json={
                "key": key.model_dump(mode="json"),
                "quantity": str(quantity),
                "unit": unit,
                "source": source.value,
            },
        )
        return UsageAggregate.model_validate(body)

    async def increment_aggregate(
        self,
        claims: AuthorizationClaims,
        key: UsageAggregateKey,
        unit: str,
        delta: Decimal,
        source: UsageSource,
    ) -> UsageAggregate:
        body = await self._request(
            "POST",
            "/usage/aggregates/increment",
            claims,
            json={
                "key": key.model_dump(mode="json"),
                "delta": str(delta),
                "unit": unit,
                "source": source.value,
            },
        )
        return UsageAggregate.model_validate(body)

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
        body = await self._request(
            "GET",
            f"/organizations/{organization_id}/usage/aggregates",
            claims,
            params=_params(
                feature_key=feature_key,
                resolution=resolution.value if resolution else None,
                subscription_id=subscription_id,
                period_start=_iso(period_start),
                period_end=_iso(period_end),
                limit=limit,
            ),
        )
        return [UsageAggregate.model_validate(item) for item in body or []]

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
        if not charges:
            return totals
        body = await self._request(
            "POST",
            f"/organizations/{organization_id}/usage/totals",
            claims,
            json={
                "subscription_id": subscription_id,
                "period_start": _iso(period_start),
                "period_end": _iso(period_end),
                "charges": [
                    {"feature_key": feature_key, "resolution": resolution.value}
                    for feature_key, resolution in charges
                ],
            },
        )
        for item in body or []:
            charge = (item["feature_key"], UsageResolution(item["resolution"]))
            if charge in totals:
                totals[charge] = UsageTotal(
                    quantity=Decimal(str(item["quantity"])), unit=item.get("unit")
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
        body = await self._request(
            "POST",
            "/invoices",
            claims,
            json={
                "invoice": data.model_dump(mode="json"),
                "lines": [line.model_dump(mode="json") for line in lines],
            },
        )
        return Invoice.model_validate(body)

    async def add_invoice_line(
        self, claims: AuthorizationClaims, invoice_id: str, line: InvoiceLineCreate
    ) -> InvoiceLine:
        body = await self._request(
            "POST",
            f"/invoices/{invoice_id}/lines",
            claims,
            json=line.model_dump(mode="json"),
            not_found=self._invoice_missing(invoice_id),
        )
        return InvoiceLine.model_validate(body)

    async def get_invoice(
        self, claims: AuthorizationClaims, invoice_id: str, include_lines: bool = False
    ) -> Invoice | None:
        body = await self._request(
            "GET",
            f"/invoices/{invoice_id}",
            claims,
            params={"include_lines": str(include_lines).lower()},
        )
        return Invoice.model_validate(body) if body is not None else None

    async def find_invoice_for_period(
        self,
        claims: AuthorizationClaims,
        subscription_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> Invoice | None:
        body = await self._request(
            "GET",
            f"/subscriptions/{subscription_id}/invoices/by-period",
            claims,
            params=_params(period_start=_iso(period_start), period_end=_iso(period_end)),
        )
        return Invoice.model_validate(body) if body is not None else None

    async def list_invoices(
        self,
        claims: AuthorizationClaims,
        organization_id: str,
        include_lines: bool = False,
        limit: int = 50,
    ) -> list[Invoice]:
        body = await self._request(
            "GET",
            f"/organizations/{organization_id}/invoices",
            claims,
            params={"include_lines": str(include_lines).lower(), "limit": limit},
        )
        return [Invoice.model_validate(item) for item in body or []]

    async def record_payment(
        self,
        claims: AuthorizationClaims,
        invoice_id: str,
        amount_cents: int,
        paid_at: datetime,
    ) -> Invoice:
        body = await self._request(
            "POST",
            f"/invoices/{invoice_id}/payments",
            claims,
            json={"amount_cents": amount_cents, "paid_at": _iso(paid_at)},
            not_found=self._invoice_missing(invoice_id),
            conflict=self._invoice_conflict(invoice_id, "payment"),
        )
        return Invoice.model_validate(body)

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
        payload: dict[str, Any] = {
            "status": status.value,
            "allowed_from": [s.value for s in allowed_from] if allowed_from is not None else None,
            "paid_at": _iso(paid_at),
            "voided_at": _iso(voided_at),
            "metadata": metadata,
        }
        body = await self._request(
            "POST",
            f"/invoices/{invoice_id}/status",
            claims,
            json={key: value for key, value in payload.items() if value is not None},
            not_found=self._invoice_missing(invoice_id),
            conflict=self._invoice_conflict(invoice_id, status.value),
        )
        return Invoice.model_validate(body)

    async def attach_external_invoice_id(
        self, claims: AuthorizationClaims, invoice_id: str, external_id: str
    ) -> Invoice:
        body = await self._request(
            "PUT",
            f"/invoices/{invoice_id}/external-id",
            claims,
            json={"external_id": external_id},
            not_found=self._invoice_missing(invoice_id),
        )
        return Invoice.model_validate(body)

    # ------------------------------------------------------------------
    # Credit memos
    # ------------------------------------------------------------------

    async def create_credit_memo(
        self, claims: AuthorizationClaims, data: CreditMemoCreate
    ) -> CreditMemo:
        body = await self._request(
            "POST",
            "/credit-memos",
            claims,
            json=data.model_dump(mode="json"),
            not_found=self._invoice_missing(data.invoice_id or ""),
        )
        return CreditMemo.model_validate(body)

    async def issue_credit(
        self,
        claims: AuthorizationClaims,
        data: CreditMemoCreate,
        status: InvoiceStatus,
        allowed_from: Collection[InvoiceStatus],
        voided_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[CreditMemo, Invoice]:
        invoice_id = data.invoice_id or ""
        payload: dict[str, Any] = {
            "credit_memo": data.model_dump(mode="json"),
            "status": status.value,
            "allowed_from": [s.value for s in allowed_from],
            "voided_at": _iso(voided_at),
            "metadata": metadata,
        }
        body = await self._request(
            "POST",
            f"/invoices/{invoice_id}/credits",
            claims,
            json={key: value for key, value in payload.items() if value is not None},
            not_found=self._invoice_missing(invoice_id),
            conflict=self._invoice_conflict(invoice_id, status.value),
        )
        return CreditMemo.model_validate(body["credit_memo"]), Invoice.model_validate(
            body["invoice"]
        )

    async def list_credit_memos(
        self, claims: AuthorizationClaims, organization_id: str
    ) -> list[CreditMemo]:
        body = await self._request("GET", f"/organizations/{organization_id}/credit-memos", claims)
        return [CreditMemo.model_validate(item) for item in body or []]

    async def link_credit_memo_to_invoice(
        self, claims: AuthorizationClaims, credit_memo_id: str, invoice_id: str | None
    ) -> CreditMemo:
        body = await self._request(
            "PUT",
            f"/credit-memos/{credit_memo_id}/invoice",
            claims,
            json={"invoice_id": invoice_id},
            not_found=lambda message, context: CreditMemoNotFoundError(
                message, credit_memo_id=credit_memo_id
            ),
        )
        return CreditMemo.model_validate(body)


__all__ = ["BillingApiClient"]
