"""
Usage metering service.

Records usage events idempotently and rolls them up into usage aggregates.
"""

import time
from collections.abc import Callable, Collection, Iterable, Iterator, Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, TypeAlias, TypeVar

import structlog
from pydantic import ValidationError

from dotmac.billing_engine.claims import AuthorizationClaims, build_service_role_claims
from dotmac.billing_engine.core.enums import UsageResolution, UsageSource
from dotmac.billing_engine.core.exceptions import InvalidPeriodError, UsageTrackingError
from dotmac.billing_engine.core.models import (
    UsageAggregate,
    UsageAggregateKey,
    UsageEvent,
    UsageEventInput,
    UsageRollup,
    ensure_utc,
)
from dotmac.billing_engine.jobs.schemas import USAGE_JOB, UsageJobPayload, parse_usage_job
from dotmac.billing_engine.metrics import BillingEngineMetrics, get_billing_engine_metrics
from dotmac.billing_engine.repository.base import BillingStore
from dotmac.billing_engine.settings import BillingSettings
from dotmac.billing_engine.usage.fingerprint import with_fingerprint

logger = structlog.get_logger(__name__)

ClaimsBuilder: TypeAlias = Callable[[str], AuthorizationClaims]

T = TypeVar("T")


@dataclass(frozen=True)
class UsageJobResult:
    organization_id: str
    subscription_id: str
    resolution: UsageResolution
    aggregated: int
    duration_ms: float


def _chunks(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class UsageService:
    """
    Usage ingestion and aggregation.

    Handles:
    - Fingerprinting and idempotent batch ingestion of usage events
    - Rolling events up per feature over an aggregation window
    - Writing aggregates (replace for batch jobs, increment for live counters)
    """

    def __init__(
        self,
        store: BillingStore,
        claims_builder: ClaimsBuilder = build_service_role_claims,
        metrics: BillingEngineMetrics | None = None,
        settings: BillingSettings | None = None,
    ) -> None:
        self.store = store
        self.claims_builder = claims_builder
        self.metrics = metrics or get_billing_engine_metrics()
        self.settings = settings or BillingSettings()  # type: ignore[call-arg]

    # ==================== Ingestion ====================

    async def record_usage_events(
        self,
        events: Iterable[UsageEventInput | dict[str, Any]],
        claims: AuthorizationClaims | None = None,
        resolve_subscriptions: bool = True,
    ) -> int:
        """
        Store a batch of usage events, skipping ones already recorded.

        Args:
            events: Events (or raw event dicts) to store
            claims: Caller claims; service-role claims per organization when omitted
            resolve_subscriptions: Attach the organization's active subscription to
                events submitted without one

        Returns:
            Number of newly inserted events. Duplicates are not errors.
        """
        parsed = [self._parse_event(event) for event in events]
        if not parsed:
            return 0

        by_organization: dict[str, list[UsageEventInput]] = {}
        for event in parsed:
            by_organization.setdefault(event.organization_id, []).append(event)

        inserted_total = 0
        for organization_id, org_events in by_organization.items():
            org_claims = claims or self.claims_builder(organization_id)
            if resolve_subscriptions:
                org_events = await self._attach_active_subscription(
                    org_claims, organization_id, org_events
                )

            # Collapse in-batch duplicates before they reach the store.
            unique: dict[str, UsageEventInput] = {}
            for event in map(with_fingerprint, org_events):
                unique.setdefault(event.fingerprint or "", event)

            inserted = 0
            batch = list(unique.values())
            for chunk in _chunks(batch, self.settings.usage_insert_batch_size):
                inserted += await self.store.insert_usage_events(org_claims, chunk)

            self.metrics.record_usage_ingested(organization_id, inserted, len(org_events))
            logger.info(
                "usage.events.recorded",
                organization_id=organization_id,
                submitted=len(org_events),
                inserted=inserted,
                duplicates=len(org_events) - inserted,
            )
            inserted_total += inserted

        return inserted_total

    def _parse_event(self, event: UsageEventInput | dict[str, Any]) -> UsageEventInput:
        if isinstance(event, UsageEventInput):
            return event
        try:
            return UsageEventInput.model_validate(event)
        except ValidationError as exc:
            raise UsageTrackingError(
                "Invalid usage event",
                context={
                    "validation_errors": [
                        {"loc": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]}
                        for err in exc.errors()
                    ]
                },
                recovery_hint="Usage quantities must be non-negative decimals",
            ) from exc

    async def _attach_active_subscription(
        self,
        claims: AuthorizationClaims,
        organization_id: str,
        events: list[UsageEventInput],
    ) -> list[UsageEventInput]:
        if all(event.subscription_id for event in events):
            return events
        subscription = await self.store.get_active_subscription(claims, organization_id)
        if subscription is None:
            return events
        return [
            event
            if event.subscription_id
            else event.model_copy(update={"subscription_id": subscription.id})
            for event in events
        ]

    # ==================== Aggregation ====================

    async def aggregate_usage(
        self,
        organization_id: str,
        subscription_id: str,
        period_start: datetime,
        period_end: datetime,
        resolution: UsageResolution | None = None,
        feature_keys: Collection[str] | None = None,
        claims: AuthorizationClaims | None = None,
    ) -> list[UsageRollup]:
        """
        Sum usage per feature over ``[period_start, period_end)``.

        Quantities are summed as exact decimals. A feature recorded in more than
        one unit inside the window is rejected, since its rollup would be ambiguous.
        """
        period_start, period_end = ensure_utc(period_start), ensure_utc(period_end)
        if period_end <= period_start:
            raise InvalidPeriodError(period_start, period_end)

        claims = claims or self.claims_builder(organization_id)
        with self.metrics.span(
            "billing.usage.aggregate",
            organization_id=organization_id,
            subscription_id=subscription_id,
            resolution=resolution.value if resolution else None,
        ):
            events = await self.store.fetch_usage_events(
                claims,
                organization_id,
                subscription_id,
                period_start,
                period_end,
                feature_keys=feature_keys,
            )
        return self._roll_up(events)

    @staticmethod
    def _roll_up(events: Iterable[UsageEvent]) -> list[UsageRollup]:
        totals: dict[str, Decimal] = {}
        units: dict[str, str] = {}
        for event in events:
            unit = units.setdefault(event.feature_key, event.unit)
            if unit != event.unit:
                raise UsageTrackingError(
                    f"Feature {event.feature_key} was recorded in more than one unit",
                    context={"feature_key": event.feature_key, "units": sorted({unit, event.unit})},
                    recovery_hint="Record each feature in a single unit",
                )
            totals[event.feature_key] = totals.get(event.feature_key, Decimal(0)) + event.quantity
        return [
            UsageRollup(feature_key=feature_key, unit=units[feature_key], quantity=quantity)
            for feature_key, quantity in totals.items()
        ]

    async def process_usage_job(self, raw_payload: UsageJobPayload | dict[str, Any]) -> UsageJobResult:
        """Aggregate one window and replace its aggregates."""
        started = time.perf_counter()
        try:
            payload = parse_usage_job(raw_payload)
            resolution = payload.resolution or self.settings.default_usage_resolution
            source = payload.source or self.settings.default_usage_source
            claims = self.claims_builder(payload.organization_id)
            rollups = await self.aggregate_usage(
                payload.organization_id,
                payload.subscription_id,
                payload.period_start,
                payload.period_end,
                resolution=resolution,
                feature_keys=payload.feature_keys,
                claims=claims,
            )
            for rollup in rollups:
                key = UsageAggregateKey(
                    organization_id=payload.organization_id,
                    subscription_id=payload.subscription_id,
                    feature_key=rollup.feature_key,
                    resolution=resolution,
                    period_start=payload.period_start,
                    period_end=payload.period_end,
                )
                await self.store.replace_aggregate(
                    claims, key, rollup.quantity, rollup.unit, source
                )
        except Exception as exc:
            self.metrics.record_job_failed(
                USAGE_JOB, getattr(exc, "error_code", type(exc).__name__), _elapsed_ms(started)
            )
            raise

        duration_ms = _elapsed_ms(started)
        self.metrics.record_aggregates_written(
            payload.organization_id, resolution.value, len(rollups)
        )
        self.metrics.record_job_completed(USAGE_JOB, duration_ms)
        logger.info(
            "usage.job.completed",
            organization_id=payload.organization_id,
            subscription_id=payload.subscription_id,
            resolution=resolution.value,
            aggregated=len(rollups),
            backfill=payload.backfill,
            duration_ms=duration_ms,
        )
        return UsageJobResult(
            organization_id=payload.organization_id,
            subscription_id=payload.subscription_id,
            resolution=resolution,
            aggregated=len(rollups),
            duration_ms=duration_ms,
        )

    async def increment_aggregate(
        self,
        key: UsageAggregateKey,
        unit: str,
        delta: Decimal,
        source: UsageSource = UsageSource.API,
        claims: AuthorizationClaims | None = None,
    ) -> UsageAggregate:
        """Atomically add ``delta`` to a live counter, creating it when absent."""
        if delta < 0:
            raise UsageTrackingError(
                "Usage increments must not be negative",
                context={"feature_key": key.feature_key, "delta": str(delta)},
            )
        claims = claims or self.claims_builder(key.organization_id)
        return await self.store.increment_aggregate(claims, key, unit, delta, source)

    # ==================== Queries ====================

    async def list_usage_events(
        self,
        organization_id: str,
        feature_key: str | None = None,
        limit: int = 100,
        claims: AuthorizationClaims | None = None,
    ) -> list[UsageEvent]:
        claims = claims or self.claims_builder(organization_id)
        return await self.store.list_usage_events(
            claims, organization_id, feature_key=feature_key, limit=limit
        )

    async def list_usage_aggregates(
        self,
        organization_id: str,
        feature_key: str | None = None,
        resolution: UsageResolution | None = None,
        subscription_id: str | None = None,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        limit: int = 50,
        claims: AuthorizationClaims | None = None,
    ) -> list[UsageAggregate]:
        claims = claims or self.claims_builder(organization_id)
        return await self.store.list_usage_aggregates(
            claims,
            organization_id,
            feature_key=feature_key,
            resolution=resolution,
            subscription_id=subscription_id,
            period_start=period_start,
            period_end=period_end,
            limit=limit,
        )


__all__ = ["UsageService", "UsageJobResult", "ClaimsBuilder"]
