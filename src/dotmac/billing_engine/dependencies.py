"""
Production wiring.

Settings are read once here; the store, claims builder and metrics are built at
process start and injected into the processors, which never look them up again.
"""

from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import structlog

from dotmac.billing_engine.claims import build_service_role_claims
from dotmac.billing_engine.db import create_engine_from_settings
from dotmac.billing_engine.invoicing.builder import InvoiceBuilder
from dotmac.billing_engine.metrics import BillingEngineMetrics, get_billing_engine_metrics
from dotmac.billing_engine.repository.base import BillingStore
from dotmac.billing_engine.repository.http_client import BillingApiClient
from dotmac.billing_engine.repository.sqlalchemy_store import SQLAlchemyBillingStore
from dotmac.billing_engine.settings import Settings, get_settings
from dotmac.billing_engine.settlement.processor import SettlementProcessor
from dotmac.billing_engine.usage.service import ClaimsBuilder, UsageService

logger = structlog.get_logger(__name__)


@dataclass
class BillingEngine:
    """The assembled processors sharing one store."""

    settings: Settings
    store: BillingStore
    metrics: BillingEngineMetrics
    usage: UsageService
    invoices: InvoiceBuilder
    settlement: SettlementProcessor
    _closers: list[Callable[[], Awaitable[None]]] = field(default_factory=list, repr=False)

    async def aclose(self) -> None:
        """Release connections held by the store."""
        while self._closers:
            await self._closers.pop()()


def build_store(settings: Settings) -> tuple[BillingStore, Callable[[], Awaitable[None]]]:
    """Create the configured store and the coroutine that closes it."""
    if settings.store_backend == "http":
        client = BillingApiClient.from_settings(settings.billing_api)
        logger.info("billing.store.configured", backend="http", base_url=client.base_url)
        return client, client.close

    db_engine = create_engine_from_settings(settings)
    logger.info("billing.store.configured", backend="sqlalchemy", dialect=db_engine.dialect.name)
    return SQLAlchemyBillingStore(db_engine), db_engine.dispose


def build_engine(
    settings: Settings | None = None,
    store: BillingStore | None = None,
    claims_builder: ClaimsBuilder = build_service_role_claims,
    metrics: BillingEngineMetrics | None = None,
) -> BillingEngine:
    """
    Assemble the billing processors.

    Args:
        settings: Defaults to the process-wide settings
        store: Overrides the store chosen by ``settings.store_backend``
        claims_builder: Claims used for store calls made on behalf of an organization
        metrics: Defaults to the process-wide metrics collector
    """
    settings = settings or get_settings()
    closers: list[Callable[[], Awaitable[None]]] = []
    if store is None:
        store, closer = build_store(settings)
        closers.append(closer)
    metrics = metrics or get_billing_engine_metrics()

    settlement = SettlementProcessor(store, claims_builder=claims_builder, metrics=metrics)
    return BillingEngine(
        settings=settings,
        store=store,
        metrics=metrics,
        usage=UsageService(
            store, claims_builder=claims_builder, metrics=metrics, settings=settings.billing
        ),
        invoices=InvoiceBuilder(
            store,
            settlement=settlement,
            claims_builder=claims_builder,
            metrics=metrics,
            settings=settings.billing,
        ),
        settlement=settlement,
        _closers=closers,
    )


@asynccontextmanager
async def engine_scope(
    settings: Settings | None = None, store: BillingStore | None = None
) -> AsyncIterator[BillingEngine]:
    """Build an engine for one unit of work and close its store afterwards."""
    engine = build_engine(settings, store=store)
    try:
        yield engine
    finally:
        await engine.aclose()


__all__ = ["BillingEngine", "build_store", "build_engine", "engine_scope"]
