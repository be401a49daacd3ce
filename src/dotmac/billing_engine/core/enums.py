"""
Billing engine enums.

String enums so values serialise straight into JSON payloads and string columns.
"""

from enum import Enum


class SubscriptionStatus(str, Enum):
    """Subscription status."""

    TRIALING = "TRIALING"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"
    INCOMPLETE = "INCOMPLETE"
    INCOMPLETE_EXPIRED = "INCOMPLETE_EXPIRED"

    @classmethod
    def active_like(cls) -> frozenset["SubscriptionStatus"]:
        """Statuses that make a subscription "the active subscription" of its organization."""
        return frozenset({cls.TRIALING, cls.ACTIVE, cls.PAST_DUE})


class SubscriptionScheduleStatus(str, Enum):
    """Status of a scheduled plan change."""

    PENDING = "PENDING"
    SCHEDULED = "SCHEDULED"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"


class BillingInterval(str, Enum):
    """Recurring charge interval."""

    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    ANNUAL = "ANNUAL"


class UsageSource(str, Enum):
    """Where a usage event or aggregate came from."""

    API = "API"
    WORKER = "WORKER"
    IMPORT = "IMPORT"
    PORTAL = "PORTAL"
    TASKS = "TASKS"
    ADMIN = "ADMIN"


class UsageResolution(str, Enum):
    """Time-bucket granularity for usage aggregates."""

    HOURLY = "HOURLY"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class InvoiceStatus(str, Enum):
    """Invoice status."""

    DRAFT = "DRAFT"
    OPEN = "OPEN"
    PAID = "PAID"
    VOID = "VOID"
    UNCOLLECTIBLE = "UNCOLLECTIBLE"

    @classmethod
    def terminal(cls) -> frozenset["InvoiceStatus"]:
        return frozenset({cls.PAID, cls.VOID, cls.UNCOLLECTIBLE})

    @classmethod
    def payable(cls) -> frozenset["InvoiceStatus"]:
        """Statuses against which a payment may still be recorded."""
        return frozenset({cls.DRAFT, cls.OPEN})

    @property
    def is_terminal(self) -> bool:
        return self in InvoiceStatus.terminal()


class InvoiceLineType(str, Enum):
    """Invoice line type."""

    RECURRING = "RECURRING"
    USAGE = "USAGE"
    ONE_TIME = "ONE_TIME"
    ADJUSTMENT = "ADJUSTMENT"
    CREDIT = "CREDIT"
    TAX = "TAX"


class CreditReason(str, Enum):
    """Why a credit memo was issued."""

    ADJUSTMENT = "ADJUSTMENT"
    REFUND = "REFUND"
    PROMOTION = "PROMOTION"
    SERVICE_FAILURE = "SERVICE_FAILURE"
    GOODWILL = "GOODWILL"
    DUPLICATE_CHARGE = "DUPLICATE_CHARGE"
    OTHER = "OTHER"


class PaymentSyncEvent(str, Enum):
    """Payment-gateway events applied by the settlement processor."""

    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_DISPUTED = "payment_disputed"
    PAYMENT_REFUNDED = "payment_refunded"
    SYNC_STATUS = "sync_status"


class SettlementAction(str, Enum):
    """What a settlement actually did: money moved, or bookkeeping changed."""

    PAYMENT_RECORDED = "PAYMENT_RECORDED"
    STATUS_UPDATED = "STATUS_UPDATED"
    CREDIT_ISSUED = "CREDIT_ISSUED"


__all__ = [
    "SubscriptionStatus",
    "SubscriptionScheduleStatus",
    "BillingInterval",
    "UsageSource",
    "UsageResolution",
    "InvoiceStatus",
    "InvoiceLineType",
    "CreditReason",
    "PaymentSyncEvent",
    "SettlementAction",
]
