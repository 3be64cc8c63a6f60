"""Operator CLI for running syncs and priming analytics outside the API process."""
import asyncio
import json
from typing import Any

import click

from opspulse.analytics.pulse import TimeRange
from opspulse.container import ServiceContainer, build_container
from opspulse.exceptions import OpsPulseError
from opspulse.models.sync_history import SyncHistoryRecord, SyncType
from opspulse.utils.config import get_settings


def _container() -> ServiceContainer:
    return build_container(get_settings())


def print_sync_summary(record: SyncHistoryRecord) -> None:
    """Print per-entity counters for a finished sync run."""
    click.echo("\n" + "=" * 60)
    click.echo(f"SYNC {record.status.upper()}  ({record.sync_type})")
    click.echo("=" * 60)
    click.echo(f"  Connection:   {record.connection_id}")
    click.echo(f"  Started:      {record.started_at.isoformat()}")
    if record.completed_at:
        click.echo(f"  Completed:    {record.completed_at.isoformat()}")
    if record.cursor:
        click.echo(f"  Cursor:       {record.cursor.isoformat()}")
    click.echo("-" * 60)
    for entity, stats in (record.entity_stats or {}).items():
        click.echo(
            f"  {entity:<16} processed={stats['processed']:<6} created={stats['created']:<6} "
            f"updated={stats['updated']:<6} skipped={stats['skipped']}"
        )
    click.echo("=" * 60 + "\n")


def print_pulse(payload: dict[str, Any]) -> None:
    health = payload["overallHealth"]
    click.echo(f"\nOrganizational pulse for {payload['tenantId']} ({payload['timeRange']})")
    click.echo(f"  Overall health: {health['score']} ({health['status']})")
    for metric in payload["metrics"]:
        unit = metric.get("unit") or ""
        click.echo(
            f"  {metric['key']:<26} {metric['value']:>10.2f} {unit:<10} "
            f"{metric['status']:<10} {metric['trend']} ({metric['changePercent']:+.1f}%)"
        )
    escalations = payload["businessEscalations"]
    click.echo(
        f"  Escalations: {escalations['totalCount']} "
        f"({escalations['totalHoursLost']} hours lost)\n"
    )


@click.group()
def cli() -> None:
    """OpsPulse operator commands."""


@cli.command()
@click.argument("connection_id")
@click.option("--tenant", "tenant_id", required=True, help="Tenant owning the connection")
@click.option(
    "--mode",
    type=click.Choice([sync_type.value for sync_type in SyncType]),
    default=SyncType.INCREMENTAL.value,
    show_default=True,
)
@click.option("--json", "as_json", is_flag=True, help="Print the history record as JSON")
def sync(connection_id: str, tenant_id: str, mode: str, as_json: bool) -> None:
    """Run one sync for CONNECTION_ID and print its history record."""
    container = _container()
    try:
        record = asyncio.run(container.orchestrator.run(connection_id, tenant_id, mode))
    except OpsPulseError as exc:
        raise click.ClickException(f"{exc.__class__.__name__}: {exc}") from exc

    if as_json:
        click.echo(
            json.dumps(
                {
                    "id": record.id,
                    "status": record.status,
                    "sync_type": record.sync_type,
                    "entity_stats": record.entity_stats,
                },
                indent=2,
            )
        )
    else:
        print_sync_summary(record)


@cli.command("init-metrics")
@click.argument("tenant_id")
def init_metrics(tenant_id: str) -> None:
    """Insert the default metric definitions TENANT_ID is missing."""
    created = _container().metric_registry.initialize_defaults(tenant_id)
    click.echo(f"Created {len(created)} metric definition(s) for {tenant_id}")


@cli.command()
@click.argument("tenant_id")
@click.option(
    "--range",
    "time_range",
    type=click.Choice([time_range.value for time_range in TimeRange]),
    default=TimeRange.LAST_MONTH.value,
    show_default=True,
)
@click.option("--json", "as_json", is_flag=True)
def pulse(tenant_id: str, time_range: str, as_json: bool) -> None:
    """Compute the organizational pulse for TENANT_ID without using the cache."""
    payload = asyncio.run(_container().pulse.calculate(tenant_id, time_range))
    if as_json:
        click.echo(json.dumps(payload, indent=2, default=str))
    else:
        print_pulse(payload)


@cli.command("warm-cache")
def warm_cache() -> None:
    """Prime the shared (redis) pulse cache for every tenant with active metrics."""
    summary = asyncio.run(_container().pulse_cache.warm_up())
    click.echo(
        f"Warmed {summary['total'] - summary['failed']} of {summary['total']} entries "
        f"in {summary['attempts']} attempt(s)"
    )


if __name__ == "__main__":
    cli()
