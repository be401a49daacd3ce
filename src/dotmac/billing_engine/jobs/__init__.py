"""
Queue job payloads and Celery entry points.

Only the payload schemas are re-exported here; the Celery app and tasks are
imported explicitly by workers (``dotmac.billing_engine.jobs.tasks``).
"""

from dotmac.billing_engine.jobs.schemas import (
    InvoiceJobPayload,
    PaymentSyncJobPayload,
    UsageJobPayload,
    parse_invoice_job,
    parse_payment_sync_job,
    parse_usage_job,
)

__all__ = [
    "UsageJobPayload",
    "InvoiceJobPayload",
    "PaymentSyncJobPayload",
    "parse_usage_job",
    "parse_invoice_job",
    "parse_payment_sync_job",
]
