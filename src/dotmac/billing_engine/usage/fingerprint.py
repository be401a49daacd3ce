"""
Usage event fingerprints.

A fingerprint identifies a usage observation independently of how the emitter
formatted it, so re-delivered events collapse onto one stored row.
"""

import hashlib
from datetime import datetime

from dotmac.billing_engine.core.models import UsageEventInput, ensure_utc
from dotmac.billing_engine.money_utils import decimal_to_plain_string

FIELD_SEPARATOR = "|"


def format_recorded_at(value: datetime) -> str:
    """UTC ISO-8601 with millisecond precision and a ``Z`` suffix."""
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def compute_usage_fingerprint(event: UsageEventInput) -> str:
    parts = [
        event.organization_id,
        event.subscription_id or "",
        event.feature_key,
        event.unit,
        format_recorded_at(event.recorded_at),
        decimal_to_plain_string(event.quantity),
    ]
    return hashlib.sha256(FIELD_SEPARATOR.join(parts).encode("utf-8")).hexdigest()


def with_fingerprint(event: UsageEventInput) -> UsageEventInput:
    """Return the event with a fingerprint, deriving one when it is missing or blank."""
    if event.fingerprint and event.fingerprint.strip():
        return event
    return event.model_copy(update={"fingerprint": compute_usage_fingerprint(event)})


__all__ = ["compute_usage_fingerprint", "format_recorded_at", "with_fingerprint"]
