"""
Shared fixtures for billing engine tests.

Processors run against the in-memory store unless a test asks for the SQLite one.
"""

import os
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import pytest
import pytest_asyncio

# Keep tests away from any developer .env pointing at PostgreSQL or a live billing API
os.environ.setdefault("STORE_BACKEND", "sqlalchemy")
os.environ.setdefault("OBSERVABILITY__LOG_FORMAT", "text")

from dotmac.billing_engine.claims import build_service_role_claims  # noqa: E402
from dotmac.billing_engine.core.enums import BillingInterval, SubscriptionStatus  # noqa: E402
from dotmac.billing_engine.core.models import Subscription, SubscriptionCreate  # noqa: E402
from dotmac.billing_engine.invoicing.builder import InvoiceBuilder  # noqa: E402
from dotmac.billing_engine.metrics import BillingEngineMetrics  # noqa: E402
from dotmac.billing_engine.repository.memory import InMemoryBillingStore  # noqa: E402
from dotmac.billing_engine.settings import BillingSettings, reset_settings  # noqa: E402
from dotmac.billing_engine.settlement.processor import SettlementProcessor  # noqa: E402
from dotmac.billing_engine.usage.service import UsageService  # noqa: E402

ORG_ID = "org-1"
PERIOD_START = datetime(2024, 1, 1, tzinfo=UTC)
PERIOD_END = datetime(2024, 2, 1, tzinfo=UTC)

SubscriptionFactory = Callable[..., Awaitable[Subscription]]


@pytest.fixture(autouse=True)
def _reset_settings() -> None:
    reset_settings()


@pytest.fixture
def store() -> InMemoryBillingStore:
    return InMemoryBillingStore()


@pytest.fixture
def metrics() -> BillingEngineMetrics:
    return BillingEngineMetrics()


@pytest.fixture
def billing_settings() -> BillingSettings:
    return BillingSettings()  # type: ignore[call-arg]


@pytest.fixture
def usage_service(
    store: InMemoryBillingStore, metrics: BillingEngineMetrics, billing_settings: BillingSettings
) -> UsageService:
    return UsageService(store, metrics=metrics, settings=billing_settings)


@pytest.fixture
def settlement(store: InMemoryBillingStore, metrics: BillingEngineMetrics) -> SettlementProcessor:
    return SettlementProcessor(store, metrics=metrics)


@pytest.fixture
def invoice_builder(
    store: InMemoryBillingStore,
    settlement: SettlementProcessor,
    metrics: BillingEngineMetrics,
    billing_settings: BillingSettings,
) -> InvoiceBuilder:
    return InvoiceBuilder(
        store, settlement=settlement, metrics=metrics, settings=billing_settings
    )


@pytest.fixture
def subscription_factory(store: InMemoryBillingStore) -> SubscriptionFactory:
    """Create subscriptions directly in the store."""

    async def _create(**overrides: Any) -> Subscription:
        data: dict[str, Any] = {
            "organization_id": ORG_ID,
            "package_id": "pkg-pro",
            "status": SubscriptionStatus.ACTIVE,
            "currency": "usd",
            "amount_cents": 10000,
            "billing_interval": BillingInterval.MONTHLY,
            "current_period_start": PERIOD_START,
            "current_period_end": PERIOD_END,
        }
        data.update(overrides)
        claims = build_service_role_claims(data["organization_id"])
        return await store.create_subscription(claims, SubscriptionCreate(**data))

    return _create


@pytest_asyncio.fixture
async def subscription(subscription_factory: SubscriptionFactory) -> AsyncIterator[Subscription]:
    yield await subscription_factory()
