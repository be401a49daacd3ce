"""
Usage aggregation backfill.

Splits a historical range into aggregation windows and turns each one into a
usage job, either run inline or handed to the job queue.
"""

import calendar
from collections.abc import Awaitable, Callable, Collection
from datetime import datetime, timedelta
from typing import Any, TypeAlias

import structlog

from dotmac.billing_engine.core.enums import UsageResolution
from dotmac.billing_engine.core.exceptions import InvalidPeriodError
from dotmac.billing_engine.core.models import ensure_utc
from dotmac.billing_engine.jobs.schemas import UsageJobPayload

logger = structlog.get_logger(__name__)

DateRange: TypeAlias = tuple[datetime, datetime]
UsageJobDispatcher: TypeAlias = Callable[[UsageJobPayload], Awaitable[Any]]

_FIXED_STEPS = {
    UsageResolution.HOURLY: timedelta(hours=1),
    UsageResolution.DAILY: timedelta(days=1),
    UsageResolution.WEEKLY: timedelta(days=7),
}


def add_months(value: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def build_backfill_ranges(
    start: datetime, end: datetime, resolution: UsageResolution
) -> list[DateRange]:
    """Consecutive windows covering ``[start, end)``; the last one is clipped to ``end``."""
    start, end = ensure_utc(start), ensure_utc(end)
    if end <= start:
        raise InvalidPeriodError(start, end)

    ranges: list[DateRange] = []
    step = 0
    cursor = start
    while cursor < end:
        step += 1
        if resolution == UsageResolution.MONTHLY:
            # Anchor on ``start`` so a clamped short month does not shift later windows.
            upper = add_months(start, step)
        else:
            upper = cursor + _FIXED_STEPS[resolution]
        ranges.append((cursor, min(upper, end)))
        cursor = upper
    return ranges


def backfill_job_id(payload: UsageJobPayload, resolution: UsageResolution) -> str:
    """Stable queue id so a re-run backfill does not enqueue the same window twice."""
    return (
        f"billing-usage:{payload.organization_id}:{payload.subscription_id}:"
        f"{resolution.value}:{payload.period_start.isoformat()}"
    )


async def backfill_usage(
    organization_id: str,
    subscription_id: str,
    start: datetime,
    end: datetime,
    dispatch: UsageJobDispatcher,
    resolution: UsageResolution = UsageResolution.DAILY,
    feature_keys: Collection[str] | None = None,
    initiated_by: str = "cli",
) -> list[UsageJobPayload]:
    """
    Build one usage job per window and hand each to ``dispatch``.

    Args:
        organization_id: Organization to backfill
        subscription_id: Subscription whose usage is re-aggregated
        start: Inclusive start of the range
        end: Exclusive end of the range
        dispatch: Runs the job inline or enqueues it
        resolution: Window size
        feature_keys: Restrict aggregation to these features
        initiated_by: Recorded in the job context

    Returns:
        The dispatched payloads, in window order
    """
    ranges = build_backfill_ranges(start, end, resolution)
    logger.info(
        "usage.backfill.started",
        organization_id=organization_id,
        subscription_id=subscription_id,
        resolution=resolution.value,
        feature_keys=list(feature_keys) if feature_keys else None,
        periods=len(ranges),
    )

    payloads = []
    for period_start, period_end in ranges:
        payload = UsageJobPayload(
            organization_id=organization_id,
            subscription_id=subscription_id,
            period_start=period_start,
            period_end=period_end,
            resolution=resolution,
            feature_keys=list(feature_keys) if feature_keys else None,
            backfill=True,
            context={"initiated_by": initiated_by, "command": "backfill-usage"},
        )
        await dispatch(payload)
        payloads.append(payload)

    logger.info("usage.backfill.dispatched", organization_id=organization_id, dispatched=len(payloads))
    return payloads


__all__ = [
    "DateRange",
    "UsageJobDispatcher",
    "add_months",
    "build_backfill_ranges",
    "backfill_job_id",
    "backfill_usage",
]
