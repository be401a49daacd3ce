"""
Usage metering: idempotent event ingestion, aggregation and backfill.
"""

from dotmac.billing_engine.usage.backfill import backfill_usage, build_backfill_ranges
from dotmac.billing_engine.usage.fingerprint import compute_usage_fingerprint, with_fingerprint
from dotmac.billing_engine.usage.service import UsageJobResult, UsageService

__all__ = [
    "UsageService",
    "UsageJobResult",
    "compute_usage_fingerprint",
    "with_fingerprint",
    "build_backfill_ranges",
    "backfill_usage",
]
