"""
Billing engine metrics and monitoring
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from opentelemetry.metrics import Counter, Histogram, Meter
from opentelemetry.trace import Span, Tracer

from dotmac.billing_engine.core.enums import SettlementAction
from dotmac.billing_engine.telemetry import get_meter, get_tracer, record_error

logger = structlog.get_logger(__name__)


class BillingEngineMetrics:
    """Billing engine metrics collector"""

    def __init__(self, meter: Meter | None = None, tracer: Tracer | None = None) -> None:
        self.meter = meter or get_meter("billing_engine")
        self.tracer = tracer or get_tracer("billing_engine")

        # Usage metrics
        self.usage_events_ingested_counter = self._create_counter(
            name="billing.usage.events_ingested",
            description="Usage events newly stored",
        )
        self.usage_events_duplicate_counter = self._create_counter(
            name="billing.usage.events_duplicate",
            description="Usage events skipped because their fingerprint already existed",
        )
        self.usage_aggregates_written_counter = self._create_counter(
            name="billing.usage.aggregates_written",
            description="Usage aggregates written by aggregation jobs",
        )

        # Invoice metrics
        self.invoice_created_counter = self._create_counter(
            name="billing.invoice.created",
            description="Number of invoices created",
        )
        self.invoice_deduplicated_counter = self._create_counter(
            name="billing.invoice.deduplicated",
            description="Invoice jobs answered with an existing invoice for the period",
        )
        self.invoice_amount_histogram = self._create_histogram(
            name="billing.invoice.amount",
            description="Invoice totals",
            unit="cents",
        )

        # Settlement metrics
        self.settlement_counter = self._create_counter(
            name="billing.settlement.applied",
            description="Payment events applied to invoices",
        )
        self.payment_amount_counter = self._create_counter(
            name="billing.settlement.collected",
            description="Amount applied to invoice balances",
            unit="cents",
        )
        self.credit_amount_histogram = self._create_histogram(
            name="billing.credit_memo.amount",
            description="Credit memo amounts",
            unit="cents",
        )

        # Job metrics
        self.job_failed_counter = self._create_counter(
            name="billing.job.failed",
            description="Billing jobs that raised",
        )
        self.job_duration_histogram = self._create_histogram(
            name="billing.job.duration",
            description="Billing job processing duration",
            unit="ms",
        )

    # Usage metrics
    def record_usage_ingested(self, organization_id: str, inserted: int, submitted: int) -> None:
        """Record a usage ingestion batch"""
        attributes = {"organization_id": organization_id}
        self.usage_events_ingested_counter.add(inserted, attributes)
        duplicates = submitted - inserted
        if duplicates > 0:
            self.usage_events_duplicate_counter.add(duplicates, attributes)

    def record_aggregates_written(self, organization_id: str, resolution: str, count: int) -> None:
        attributes = {"organization_id": organization_id, "resolution": resolution}
        self.usage_aggregates_written_counter.add(count, attributes)

    # Invoice metrics
    def record_invoice_created(
        self, organization_id: str, amount: int, currency: str, status: str
    ) -> None:
        """Record invoice creation"""
        attributes = {"organization_id": organization_id, "currency": currency, "status": status}
        self.invoice_created_counter.add(1, attributes)
        self.invoice_amount_histogram.record(amount, attributes)

    def record_invoice_deduplicated(self, organization_id: str) -> None:
        self.invoice_deduplicated_counter.add(1, {"organization_id": organization_id})

    # Settlement metrics
    def record_settlement(
        self,
        organization_id: str,
        event: str,
        action: SettlementAction,
        amount: int = 0,
        currency: str | None = None,
    ) -> None:
        """Record an applied payment event"""
        attributes = {"organization_id": organization_id, "event": event, "action": action.value}
        self.settlement_counter.add(1, attributes)
        if action == SettlementAction.PAYMENT_RECORDED and amount > 0:
            self.payment_amount_counter.add(
                amount, {"organization_id": organization_id, "currency": currency or ""}
            )
        elif action == SettlementAction.CREDIT_ISSUED:
            self.credit_amount_histogram.record(
                amount, {"organization_id": organization_id, "currency": currency or ""}
            )

    # Job metrics
    def record_job_completed(self, job_type: str, duration_ms: float) -> None:
        self.job_duration_histogram.record(duration_ms, {"job_type": job_type, "success": "true"})

    def record_job_failed(self, job_type: str, error_code: str, duration_ms: float) -> None:
        """Record a job failure"""
        attributes = {"job_type": job_type, "error_code": error_code}
        self.job_failed_counter.add(1, attributes)
        self.job_duration_histogram.record(duration_ms, {"job_type": job_type, "success": "false"})

    @contextmanager
    def span(self, name: str, **attributes: Any) -> Iterator[Span]:
        """Trace a unit of work; exceptions are recorded on the span and re-raised."""
        span_attributes = {key: value for key, value in attributes.items() if value is not None}
        with self.tracer.start_as_current_span(
            name, attributes=span_attributes, record_exception=False, set_status_on_exception=False
        ) as span:
            try:
                yield span
            except Exception as exc:
                record_error(span, exc)
                raise

    # Internal helpers -----------------------------------------------------

    def _create_counter(self, name: str, description: str, unit: str = "1") -> Counter:
        return self.meter.create_counter(name=name, description=description, unit=unit)

    def _create_histogram(self, name: str, description: str, unit: str = "1") -> Histogram:
        return self.meter.create_histogram(name=name, description=description, unit=unit)


# Global metrics instance
_billing_engine_metrics: BillingEngineMetrics | None = None


def get_billing_engine_metrics() -> BillingEngineMetrics:
    """Get the global billing engine metrics instance"""
    global _billing_engine_metrics
    if _billing_engine_metrics is None:
        _billing_engine_metrics = BillingEngineMetrics()
        logger.debug("billing_engine.metrics.initialized")
    return _billing_engine_metrics


def set_billing_engine_metrics(metrics: BillingEngineMetrics | None) -> None:
    """Replace the global metrics instance (tests, custom meter providers)."""
    global _billing_engine_metrics
    _billing_engine_metrics = metrics


__all__ = ["BillingEngineMetrics", "get_billing_engine_metrics", "set_billing_engine_metrics"]
