"""
Celery entry points for billing jobs.

Processors never retry on their own. Here, retryable failures (rate limits,
downstream outages, lost database connections) are handed back to the queue
with exponential backoff; everything else fails the job without retry.
"""

import asyncio
import dataclasses
from enum import Enum
from typing import Any

import structlog
from celery import Task
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError

from dotmac.billing_engine.core.exceptions import BillingError, RateLimitError
from dotmac.billing_engine.dependencies import engine_scope
from dotmac.billing_engine.jobs.celery_app import celery_app
from dotmac.billing_engine.jobs.schemas import INVOICE_JOB, PAYMENT_SYNC_JOB, USAGE_JOB
from dotmac.billing_engine.settings import get_settings

logger = structlog.get_logger(__name__)


def is_retryable(exc: BaseException) -> bool:
    """Whether redelivering the job can succeed."""
    if isinstance(exc, BillingError):
        return exc.retryable
    if isinstance(exc, IntegrityError):
        return False
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    if isinstance(exc, DBAPIError):
        return bool(exc.connection_invalidated)
    return isinstance(exc, (ConnectionError, TimeoutError))


def retry_countdown(exc: BaseException, retries: int, backoff_max: int) -> float:
    """Seconds to wait before the next attempt.

    Rate limits are honoured as given; other failures back off exponentially
    (1, 2, 4, ... seconds) up to ``backoff_max``.
    """
    if isinstance(exc, RateLimitError) and exc.retry_after is not None:
        return max(exc.retry_after, 1.0)
    return float(min(2**retries, backoff_max))


def result_to_dict(result: Any) -> dict[str, Any]:
    """JSON-friendly job result."""
    data = dataclasses.asdict(result)
    return {key: value.value if isinstance(value, Enum) else value for key, value in data.items()}


async def run_job(job_type: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Run one job against a freshly built engine."""
    async with engine_scope() as engine:
        if job_type == USAGE_JOB:
            result: Any = await engine.usage.process_usage_job(payload)
        elif job_type == INVOICE_JOB:
            result = await engine.invoices.build_invoice(payload)
        elif job_type == PAYMENT_SYNC_JOB:
            result = await engine.settlement.process_payment_sync_job(payload)
        else:
            raise ValueError(f"Unknown billing job type: {job_type}")
    return result_to_dict(result)


def _execute(task: Task, job_type: str, payload: dict[str, Any]) -> dict[str, Any]:
    settings = get_settings()
    try:
        return asyncio.run(run_job(job_type, payload))
    except Exception as exc:
        error_code = getattr(exc, "error_code", type(exc).__name__)
        if not is_retryable(exc):
            logger.error(
                "billing.job.failed",
                job_type=job_type,
                task_id=task.request.id,
                error_code=error_code,
                error=str(exc),
            )
            raise

        countdown = retry_countdown(exc, task.request.retries, settings.celery.retry_backoff_max)
        logger.warning(
            "billing.job.retrying",
            job_type=job_type,
            task_id=task.request.id,
            error_code=error_code,
            attempt=task.request.retries + 1,
            countdown=countdown,
        )
        raise task.retry(exc=exc, countdown=countdown, max_retries=settings.celery.max_retries)


@celery_app.task(bind=True, name="billing.usage.aggregate")
def aggregate_usage_task(self: Task, payload: dict[str, Any]) -> dict[str, Any]:
    """Aggregate usage events for one window into usage aggregates."""
    return _execute(self, USAGE_JOB, payload)


@celery_app.task(bind=True, name="billing.invoice.build")
def build_invoice_task(self: Task, payload: dict[str, Any]) -> dict[str, Any]:
    """Build (and optionally settle) one invoice."""
    return _execute(self, INVOICE_JOB, payload)


@celery_app.task(bind=True, name="billing.payment.sync")
def sync_payment_task(self: Task, payload: dict[str, Any]) -> dict[str, Any]:
    """Apply one payment-gateway event to an invoice."""
    return _execute(self, PAYMENT_SYNC_JOB, payload)


TASKS_BY_JOB_TYPE = {
    USAGE_JOB: aggregate_usage_task,
    INVOICE_JOB: build_invoice_task,
    PAYMENT_SYNC_JOB: sync_payment_task,
}


__all__ = [
    "is_retryable",
    "retry_countdown",
    "result_to_dict",
    "run_job",
    "aggregate_usage_task",
    "build_invoice_task",
    "sync_payment_task",
    "TASKS_BY_JOB_TYPE",
]
