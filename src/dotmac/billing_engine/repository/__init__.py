"""
Billing store implementations.

- ``SQLAlchemyBillingStore``: direct async database transactions
- ``BillingApiClient``: remote billing API over HTTP
- ``InMemoryBillingStore``: tests and replay
"""

from dotmac.billing_engine.repository.base import (
    BillingStore,
    InvoiceStore,
    SubscriptionStore,
    UsageStore,
    UsageTotalKey,
)
from dotmac.billing_engine.repository.http_client import BillingApiClient
from dotmac.billing_engine.repository.memory import InMemoryBillingStore
from dotmac.billing_engine.repository.sqlalchemy_store import SQLAlchemyBillingStore

__all__ = [
    "BillingStore",
    "SubscriptionStore",
    "UsageStore",
    "InvoiceStore",
    "UsageTotalKey",
    "BillingApiClient",
    "InMemoryBillingStore",
    "SQLAlchemyBillingStore",
]
