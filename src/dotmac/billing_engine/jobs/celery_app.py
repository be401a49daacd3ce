"""
Celery application for the billing job queues.

Run a worker with::

    celery -A dotmac.billing_engine.jobs.celery_app worker -Q billing_usage,billing_invoice,billing_payment
"""

from typing import Any

import structlog
from celery import Celery
from kombu import Queue

from dotmac.billing_engine.settings import get_settings

settings = get_settings()

celery_app = Celery(
    "dotmac_billing_engine",
    broker=settings.celery.broker_url,
    backend=settings.celery.result_backend,
    include=["dotmac.billing_engine.jobs.tasks"],
)

celery_app.conf.update(
    # Task routing
    task_routes={
        "billing.usage.*": {"queue": settings.celery.usage_queue},
        "billing.invoice.*": {"queue": settings.celery.invoice_queue},
        "billing.payment.*": {"queue": settings.celery.payment_queue},
    },
    task_default_queue=settings.celery.usage_queue,
    task_queues=(
        Queue(settings.celery.usage_queue, routing_key=settings.celery.usage_queue),
        Queue(settings.celery.invoice_queue, routing_key=settings.celery.invoice_queue),
        Queue(settings.celery.payment_queue, routing_key=settings.celery.payment_queue),
    ),
    # Task execution settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Task result settings
    result_expires=3600,  # 1 hour
    task_track_started=True,
    task_time_limit=settings.celery.task_time_limit,
    task_soft_time_limit=settings.celery.task_soft_time_limit,
    # Worker settings: a job is acknowledged only after it finished, so a crash redelivers it
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_max_tasks_per_child=1000,
    # Monitoring
    worker_send_task_events=True,
    task_send_sent_event=True,
)


@celery_app.on_after_finalize.connect  # type: ignore[misc]
def log_worker_configuration(sender: Any, **kwargs: Any) -> None:
    logger = structlog.get_logger(__name__)
    logger.info(
        "celery.worker.configured",
        broker=settings.celery.broker_url,
        backend=settings.celery.result_backend,
        queues=[
            settings.celery.usage_queue,
            settings.celery.invoice_queue,
            settings.celery.payment_queue,
        ],
    )


if __name__ == "__main__":
    # For running worker directly: python -m dotmac.billing_engine.jobs.celery_app worker
    celery_app.start()
