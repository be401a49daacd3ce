"""
Billing engine exceptions.

Custom exceptions for metering, invoicing and settlement with clear error messages.
Every error carries a machine-readable code, an HTTP-style status, context and a
recovery hint. ``retryable`` tells the job transport whether redelivery can help.
"""

from typing import Any

from pydantic import ValidationError as PydanticValidationError


class BillingError(Exception):
    """
    Base billing engine error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
        retryable: Whether redelivering the job may succeed
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "BILLING_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for job results and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
            "retryable": self.retryable,
        }


class JobValidationError(BillingError):
    """Malformed job payload or invalid input."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "VALIDATION_ERROR",
            status_code=422,
            context=context,
            recovery_hint=recovery_hint or "Fix the payload and submit a new job",
        )

    @classmethod
    def from_pydantic(cls, job_type: str, exc: PydanticValidationError) -> "JobValidationError":
        errors = [
            {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]}
            for err in exc.errors()
        ]
        summary = "; ".join(f"{err['loc']}: {err['msg']}" for err in errors)
        return cls(
            f"Invalid {job_type} job payload: {summary}",
            context={"job_type": job_type, "validation_errors": errors},
        )


class InvalidPeriodError(JobValidationError):
    """Billing or aggregation window whose end is not after its start."""

    def __init__(self, period_start: Any, period_end: Any) -> None:
        super().__init__(
            "periodEnd must be later than periodStart",
            context={"period_start": str(period_start), "period_end": str(period_end)},
            recovery_hint="Submit a window where periodEnd > periodStart",
        )
        self.error_code = "INVALID_PERIOD"


class UsageTrackingError(BillingError):
    """Usage tracking errors."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "USAGE_TRACKING_ERROR",
            status_code=400,
            context=context,
            recovery_hint=recovery_hint,
        )


class SubscriptionError(BillingError):
    """Subscription-related errors."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "SUBSCRIPTION_ERROR",
            status_code=400,
            context=context,
            recovery_hint=recovery_hint,
        )


class SubscriptionNotFoundError(SubscriptionError):
    """Subscription not found error."""

    def __init__(
        self,
        message: str,
        subscription_id: str | None = None,
        organization_id: str | None = None,
    ):
        context = {}
        if subscription_id:
            context["subscription_id"] = subscription_id
        if organization_id:
            context["organization_id"] = organization_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the subscription ID and ensure it exists and is accessible",
        )
        self.error_code = "SUBSCRIPTION_NOT_FOUND"
        self.status_code = 404


class InvoiceError(BillingError):
    """Invoice-related errors."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message, "INVOICE_ERROR", status_code=400, context=context, recovery_hint=recovery_hint
        )


class InvoiceNotFoundError(InvoiceError):
    """Invoice not found error."""

    def __init__(self, message: str, invoice_id: str | None = None) -> None:
        context = {}
        if invoice_id:
            context["invoice_id"] = invoice_id

        super().__init__(
            message, context=context, recovery_hint="Verify the invoice ID and ensure it exists"
        )
        self.error_code = "INVOICE_NOT_FOUND"
        self.status_code = 404


class InvoiceStateError(InvoiceError):
    """Event or transition not allowed in the invoice's current status."""

    def __init__(
        self, message: str, invoice_id: str, current_status: str, requested: str
    ) -> None:
        super().__init__(
            message,
            context={
                "invoice_id": invoice_id,
                "current_status": current_status,
                "requested": requested,
            },
            recovery_hint="Reconcile manually; terminal invoices are never reopened by payment events",
        )
        self.error_code = "INVALID_INVOICE_STATE"
        self.status_code = 409


class DuplicateInvoiceNumberError(InvoiceError):
    """Invoice number already taken."""

    def __init__(self, message: str, number: str) -> None:
        super().__init__(
            message,
            context={"number": number},
            recovery_hint="Use a unique invoice number or look up the existing invoice",
        )
        self.error_code = "DUPLICATE_INVOICE_NUMBER"
        self.status_code = 409


class CreditMemoNotFoundError(BillingError):
    """Credit memo not found error."""

    def __init__(self, message: str, credit_memo_id: str | None = None) -> None:
        super().__init__(
            message,
            "CREDIT_MEMO_NOT_FOUND",
            status_code=404,
            context={"credit_memo_id": credit_memo_id} if credit_memo_id else {},
            recovery_hint="Verify the credit memo ID and ensure it exists",
        )


class BillingConfigurationError(BillingError):
    """Billing configuration errors."""

    def __init__(
        self, message: str, config_key: str | None = None, recovery_hint: str | None = None
    ):
        context = {}
        if config_key:
            context["config_key"] = config_key

        super().__init__(
            message,
            "BILLING_CONFIG_ERROR",
            status_code=500,
            context=context,
            recovery_hint=recovery_hint or "Check billing configuration settings",
        )


class RateLimitError(BillingError):
    """A downstream dependency asked us to slow down (HTTP 429)."""

    retryable = True

    def __init__(
        self, message: str, retry_after: float | None = None, service: str | None = None
    ) -> None:
        context: dict[str, Any] = {}
        if retry_after is not None:
            context["retry_after"] = retry_after
        if service:
            context["service"] = service

        super().__init__(
            message,
            "RATE_LIMITED",
            status_code=429,
            context=context,
            recovery_hint="Retry after the indicated delay",
        )
        self.retry_after = retry_after


class DownstreamServiceError(BillingError):
    """Transient failure of a downstream dependency (5xx, connection reset)."""

    retryable = True

    def __init__(self, message: str, service: str | None = None, status: int | None = None) -> None:
        context: dict[str, Any] = {}
        if service:
            context["service"] = service
        if status is not None:
            context["upstream_status"] = status

        super().__init__(
            message,
            "DOWNSTREAM_ERROR",
            status_code=502,
            context=context,
            recovery_hint="The job will be retried with backoff",
        )


__all__ = [
    "BillingError",
    "JobValidationError",
    "InvalidPeriodError",
    "UsageTrackingError",
    "SubscriptionError",
    "SubscriptionNotFoundError",
    "InvoiceError",
    "InvoiceNotFoundError",
    "InvoiceStateError",
    "DuplicateInvoiceNumberError",
    "CreditMemoNotFoundError",
    "BillingConfigurationError",
    "RateLimitError",
    "DownstreamServiceError",
]
