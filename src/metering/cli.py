"""
Metering admin CLI
Command-line administration of tenants, limits and usage counters.
"""

import asyncio
import json
import sys
from typing import Any, Awaitable, Optional, TypeVar

import click
from rich.console import Console
from rich.table import Table
from sqlalchemy.exc import SQLAlchemyError

from metering.config import Settings
from metering.errors import MeteringError
from metering.maintenance import bootstrap
from metering.policy.types import Operation, SubscriptionTier, limit_to_raw
from metering.services import MeteringServices, build_services

console = Console()

T = TypeVar("T")


def run(coro: Awaitable[T]) -> T:
    """Run a coroutine, turning metering errors into a clean exit."""
    try:
        return asyncio.run(coro)  # type: ignore[arg-type]
    except (MeteringError, SQLAlchemyError) as e:
        console.print(f"❌ [red]Error: {e}[/red]")
        sys.exit(1)


def get_services(ctx: click.Context) -> MeteringServices:
    """Build services on first use and close them with the context."""
    if "services" not in ctx.obj:
        overrides: dict[str, Any] = {}
        if ctx.obj.get("database_url"):
            overrides["database_url"] = ctx.obj["database_url"]
        services = build_services(Settings(**overrides))
        services.db_manager.init_db()
        ctx.obj["services"] = services
        ctx.call_on_close(services.db_manager.close)
    return ctx.obj["services"]


def format_limit(raw: int) -> str:
    return "unlimited" if raw == -1 else str(raw)


@click.group()
@click.option("--database-url", "-d", envvar="DATABASE_URL", help="SQLAlchemy database URL")
@click.pass_context
def cli(ctx, database_url: Optional[str]):
    """Tenant metering admin - limits, quotas and rate limit records."""
    ctx.ensure_object(dict)
    ctx.obj["database_url"] = database_url


@cli.command()
@click.pass_context
def init(ctx):
    """Create tables, seed default limits and initialize tenant usage."""
    services = get_services(ctx)
    report = run(bootstrap(services.config_store, services.tenants, services.quota_tracker))

    if report.config_seeded:
        console.print("✅ [green]Seeded limits document with defaults[/green]")
    else:
        console.print("[dim]Limits document already exists[/dim]")
    console.print(f"   Tenants initialized: {len(report.initialized)}")
    console.print(f"   Tenants skipped: {len(report.skipped)}")


# --- config ---


@cli.group()
def config():
    """Inspect the limits document."""


@config.command("show")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def config_show(ctx, as_json: bool):
    """Show effective rate limits and tier quotas."""
    services = get_services(ctx)

    async def load():
        rate_limits = await services.config_cache.get_rate_limit_config(force_refresh=True)
        quotas = await services.config_cache.get_quota_config()
        return rate_limits, quotas

    rate_limits, quotas = run(load())

    if as_json:
        console.print(json.dumps(
            {"rate_limits": rate_limits.to_dict(), "quotas": quotas.to_dict()},
            indent=2,
        ))
        return

    table = Table(title="Rate Limits")
    table.add_column("Operation", style="cyan")
    table.add_column("Per minute", justify="right")
    table.add_column("Per hour", justify="right")
    table.add_column("Per day", justify="right")
    for operation, limits in rate_limits.operations.items():
        table.add_row(
            operation.value,
            str(limits.requests_per_minute),
            str(limits.requests_per_hour),
            str(limits.requests_per_day),
        )
    console.print(table)

    table = Table(title="Monthly Quotas")
    table.add_column("Tier", style="cyan")
    table.add_column("Users", justify="right")
    table.add_column("Bills / month", justify="right")
    table.add_column("Reports / month", justify="right")
    for tier, quota in quotas.tiers.items():
        table.add_row(
            tier.value,
            format_limit(limit_to_raw(quota.max_users)),
            format_limit(limit_to_raw(quota.max_bills_per_month)),
            format_limit(limit_to_raw(quota.max_reports_per_month)),
        )
    console.print(table)


# --- tenant ---


@cli.group()
def tenant():
    """Manage tenants."""


@tenant.command("add")
@click.argument("tenant_id")
@click.option("--name", "-n", default=None, help="Display name")
@click.option(
    "--tier",
    "-t",
    type=click.Choice([t.value for t in SubscriptionTier]),
    default=SubscriptionTier.TRIAL.value,
    show_default=True,
)
@click.pass_context
def tenant_add(ctx, tenant_id: str, name: Optional[str], tier: str):
    """Provision a tenant and start its usage period."""
    services = get_services(ctx)

    async def create():
        info = await services.tenants.create_tenant(tenant_id, name=name, tier=tier)
        await services.quota_tracker.initialize_quota(tenant_id)
        return info

    info = run(create())
    console.print(f"✅ [green]Created tenant {info.tenant_id}[/green] ({info.subscription_tier.value})")


@tenant.command("list")
@click.pass_context
def tenant_list(ctx):
    """List tenants with their current counters."""
    services = get_services(ctx)
    tenants = run(services.tenants.list_tenants())

    table = Table(title=f"Tenants ({len(tenants)})")
    table.add_column("Tenant", style="cyan")
    table.add_column("Tier")
    table.add_column("Bills", justify="right")
    table.add_column("Reports", justify="right")
    table.add_column("Period start")
    for info in tenants:
        usage = info.monthly_usage
        table.add_row(
            info.tenant_id,
            info.subscription_tier.value,
            str(usage.bill_analysis_count) if usage else "-",
            str(usage.report_generation_count) if usage else "-",
            f"{usage.period_start:%Y-%m-%d}" if usage else "[dim]not initialized[/dim]",
        )
    console.print(table)


# --- quota ---


@cli.group()
def quota():
    """Monthly quota administration."""


@quota.command("status")
@click.argument("tenant_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def quota_status(ctx, tenant_id: str, as_json: bool):
    """Show a tenant's monthly usage without counting anything."""
    services = get_services(ctx)

    async def load():
        return {
            operation: await services.quota_tracker.get_quota_status(tenant_id, operation)
            for operation in Operation
        }

    results = run(load())

    if as_json:
        console.print(json.dumps({op.value: r.to_dict() for op, r in results.items()}, indent=2))
        return

    table = Table(title=f"Monthly quota: {tenant_id}")
    table.add_column("Operation", style="cyan")
    table.add_column("Used", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("Used %", justify="right")
    table.add_column("Resets")
    for operation, result in results.items():
        color = "red" if not result.allowed else "yellow" if result.percent_used >= 80 else "green"
        table.add_row(
            operation.value,
            str(result.current),
            format_limit(limit_to_raw(result.limit)),
            "-" if result.remaining is None else str(result.remaining),
            f"[{color}]{result.percent_used:.0f}%[/{color}]",
            f"{result.reset_time:%Y-%m-%d}",
        )
    console.print(table)


@quota.command("reset")
@click.argument("tenant_id")
@click.pass_context
def quota_reset(ctx, tenant_id: str):
    """Zero a tenant's counters for the current month."""
    services = get_services(ctx)
    usage = run(services.quota_tracker.reset_quota(tenant_id))
    console.print(
        f"✅ [green]Quota reset for {tenant_id}[/green] "
        f"(period {usage.period_start:%Y-%m-%d} to {usage.period_end:%Y-%m-%d})"
    )


# --- rate-limit ---


@cli.group("rate-limit")
def rate_limit():
    """Rate limit record administration."""


@rate_limit.command("clear")
@click.argument("tenant_id")
@click.option(
    "--operation",
    "-o",
    type=click.Choice([op.value for op in Operation]),
    default=None,
    help="Only clear this operation",
)
@click.pass_context
def rate_limit_clear(ctx, tenant_id: str, operation: Optional[str]):
    """Delete a tenant's rate limit windows."""
    services = get_services(ctx)
    deleted = run(services.rate_limiter.clear_rate_limit(tenant_id, operation))
    console.print(f"✅ [green]Cleared {deleted} rate limit record(s) for {tenant_id}[/green]")


@rate_limit.command("cleanup")
@click.option(
    "--max-age",
    "max_age",
    type=int,
    default=None,
    help="Delete records not updated for this many seconds (default from settings)",
)
@click.pass_context
def rate_limit_cleanup(ctx, max_age: Optional[int]):
    """Delete stale rate limit records."""
    services = get_services(ctx)
    max_age = max_age if max_age is not None else services.settings.rate_limit_max_age_seconds
    deleted = services.rate_limiter.cleanup_old_rate_limits_sync(max_age)
    console.print(f"✅ [green]Removed {deleted} stale rate limit record(s)[/green]")


def main():
    """CLI entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
