#!/usr/bin/env python
"""
CLI management commands for the DotMac billing engine.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import click
from sqlalchemy.ext.asyncio import AsyncEngine

from dotmac.billing_engine.core.enums import UsageResolution
from dotmac.billing_engine.core.exceptions import BillingError
from dotmac.billing_engine.db import create_all_tables_async, create_engine_from_settings
from dotmac.billing_engine.dependencies import BillingEngine, build_engine
from dotmac.billing_engine.jobs.schemas import (
    INVOICE_JOB,
    PAYMENT_SYNC_JOB,
    USAGE_JOB,
    UsageJobPayload,
)
from dotmac.billing_engine.logging import setup_logging
from dotmac.billing_engine.settings import Settings, get_settings
from dotmac.billing_engine.usage.backfill import backfill_job_id, backfill_usage

DATETIME_FORMATS = ["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M:%S%z"]


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    settings_factory: Callable[[], Settings]
    db_engine_factory: Callable[[Settings], AsyncEngine]
    create_tables: Callable[[AsyncEngine], Awaitable[None]]
    engine_factory: Callable[[Settings], BillingEngine]
    enqueue: Callable[..., Any]
    path_factory: Callable[[str], Path]


def _enqueue_job(job_type: str, payload: dict[str, Any], task_id: str | None = None) -> str:
    """Send a job to its Celery queue and return the task id."""
    from dotmac.billing_engine.jobs.tasks import TASKS_BY_JOB_TYPE

    result = TASKS_BY_JOB_TYPE[job_type].apply_async(kwargs={"payload": payload}, task_id=task_id)
    return str(result.id)


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    return CLIDependencies(
        settings_factory=get_settings,
        db_engine_factory=create_engine_from_settings,
        create_tables=create_all_tables_async,
        engine_factory=build_engine,
        enqueue=_enqueue_job,
        path_factory=Path,
    )


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
def cli() -> None:
    """DotMac billing engine CLI."""
    setup_logging(get_settings().observability)


@cli.command()
def init_database() -> None:
    """Create the billing tables."""
    deps = _get_cli_dependencies()
    settings = deps.settings_factory()

    async def _init() -> None:
        engine = deps.db_engine_factory(settings)
        try:
            await deps.create_tables(engine)
        finally:
            await engine.dispose()

    click.echo("Initializing billing database...")
    asyncio.run(_init())
    click.echo("Billing database initialized successfully!")


@cli.command("backfill-usage")
@click.option("--org", "organization_id", required=True, help="Organization ID")
@click.option("--subscription", "subscription_id", required=True, help="Subscription ID")
@click.option("--start", required=True, type=click.DateTime(DATETIME_FORMATS), help="Range start")
@click.option("--end", required=True, type=click.DateTime(DATETIME_FORMATS), help="Range end")
@click.option(
    "--resolution",
    type=click.Choice([r.value for r in UsageResolution], case_sensitive=False),
    default=UsageResolution.DAILY.value,
    show_default=True,
    help="Aggregation window size",
)
@click.option("--features", default=None, help="Comma-separated feature keys to backfill")
@click.option(
    "--inline/--enqueue",
    default=False,
    help="Run the jobs in this process instead of enqueuing them",
)
def backfill_usage_command(
    organization_id: str,
    subscription_id: str,
    start: datetime,
    end: datetime,
    resolution: str,
    features: str | None,
    inline: bool,
) -> None:
    """Re-aggregate usage for a historical range, one job per window."""
    deps = _get_cli_dependencies()
    settings = deps.settings_factory()
    usage_resolution = UsageResolution(resolution.upper())
    feature_keys = [key.strip() for key in features.split(",") if key.strip()] if features else None

    async def _backfill() -> int:
        if inline:
            engine = deps.engine_factory(settings)
            try:
                payloads = await backfill_usage(
                    organization_id,
                    subscription_id,
                    start,
                    end,
                    dispatch=engine.usage.process_usage_job,
                    resolution=usage_resolution,
                    feature_keys=feature_keys,
                )
            finally:
                await engine.aclose()
            return len(payloads)

        async def _dispatch(payload: UsageJobPayload) -> None:
            deps.enqueue(
                USAGE_JOB,
                payload.to_message(),
                task_id=backfill_job_id(payload, usage_resolution),
            )

        payloads = await backfill_usage(
            organization_id,
            subscription_id,
            start,
            end,
            dispatch=_dispatch,
            resolution=usage_resolution,
            feature_keys=feature_keys,
        )
        return len(payloads)

    try:
        count = asyncio.run(_backfill())
    except BillingError as exc:
        raise click.ClickException(f"{exc.error_code}: {exc.message}") from exc

    verb = "Processed" if inline else "Enqueued"
    click.echo(f"{verb} {count} usage aggregation job(s)")


@cli.command()
@click.argument("job_type", type=click.Choice([USAGE_JOB, INVOICE_JOB, PAYMENT_SYNC_JOB]))
@click.argument("payload_file")
@click.option("--enqueue", is_flag=True, default=False, help="Enqueue instead of running inline")
def run_job(job_type: str, payload_file: str, enqueue: bool) -> None:
    """Run one billing job from a JSON payload file."""
    deps = _get_cli_dependencies()
    try:
        payload = json.loads(deps.path_factory(payload_file).read_text())
    except (OSError, ValueError) as exc:
        raise click.ClickException(f"Cannot read payload {payload_file}: {exc}") from exc

    if enqueue:
        task_id = deps.enqueue(job_type, payload)
        click.echo(f"Enqueued {job_type} job {task_id}")
        return

    settings = deps.settings_factory()

    async def _run() -> Any:
        engine = deps.engine_factory(settings)
        try:
            if job_type == USAGE_JOB:
                return await engine.usage.process_usage_job(payload)
            if job_type == INVOICE_JOB:
                return await engine.invoices.build_invoice(payload)
            return await engine.settlement.process_payment_sync_job(payload)
        finally:
            await engine.aclose()

    try:
        result = asyncio.run(_run())
    except BillingError as exc:
        _echo_json(exc.to_dict())
        raise click.ClickException(f"{exc.error_code}: {exc.message}") from exc

    from dotmac.billing_engine.jobs.tasks import result_to_dict

    _echo_json(result_to_dict(result))


if __name__ == "__main__":
    cli()
