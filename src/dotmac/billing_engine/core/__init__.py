"""
Core billing engine types: enums, domain records and the error taxonomy.
"""

from dotmac.billing_engine.core.enums import (
    BillingInterval,
    CreditReason,
    InvoiceLineType,
    InvoiceStatus,
    PaymentSyncEvent,
    SettlementAction,
    SubscriptionScheduleStatus,
    SubscriptionStatus,
    UsageResolution,
    UsageSource,
)
from dotmac.billing_engine.core.exceptions import (
    BillingConfigurationError,
    BillingError,
    CreditMemoNotFoundError,
    DownstreamServiceError,
    DuplicateInvoiceNumberError,
    InvalidPeriodError,
    InvoiceError,
    InvoiceNotFoundError,
    InvoiceStateError,
    JobValidationError,
    RateLimitError,
    SubscriptionError,
    SubscriptionNotFoundError,
    UsageTrackingError,
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
    UsageRollup,
    UsageTotal,
)

__all__ = [
    # Enums
    "BillingInterval",
    "CreditReason",
    "InvoiceLineType",
    "InvoiceStatus",
    "PaymentSyncEvent",
    "SettlementAction",
    "SubscriptionScheduleStatus",
    "SubscriptionStatus",
    "UsageResolution",
    "UsageSource",
    # Exceptions
    "BillingConfigurationError",
    "BillingError",
    "CreditMemoNotFoundError",
    "DownstreamServiceError",
    "DuplicateInvoiceNumberError",
    "InvalidPeriodError",
    "InvoiceError",
    "InvoiceNotFoundError",
    "InvoiceStateError",
    "JobValidationError",
    "RateLimitError",
    "SubscriptionError",
    "SubscriptionNotFoundError",
    "UsageTrackingError",
    # Models
    "CreditMemo",
    "CreditMemoCreate",
    "Invoice",
    "InvoiceCreate",
    "InvoiceLine",
    "InvoiceLineCreate",
    "Subscription",
    "SubscriptionCreate",
    "SubscriptionSchedule",
    "SubscriptionScheduleCreate",
    "SubscriptionUpdate",
    "UsageAggregate",
    "UsageAggregateKey",
    "UsageEvent",
    "UsageEventInput",
    "UsageRollup",
    "UsageTotal",
]
