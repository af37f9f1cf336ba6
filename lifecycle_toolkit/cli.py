#!/usr/bin/env python3
"""
Command-line interface for the Data Lifecycle Toolkit.

Provides policy, legal hold, purge, audit and compliance report commands for
operators and schedulers.
"""

import asyncio
import json
import logging
import re
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, Tuple, TypeVar

import click
import pandas as pd  # type: ignore[import-untyped]
from dateutil import parser as date_parser
from dateutil import tz
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from . import __version__
from .audit_trail import AuditQuery
from .config import LifecycleConfig, get_config, set_config
from .exceptions import LifecycleError
from .jobs import PurgeJob
from .legal_hold import HoldStatus
from .policies import DeletionMode
from .purge import CategoryRegistry
from .service import LifecycleService

console = Console()

T = TypeVar("T")

DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhdw])\s*$")
DURATION_UNITS = {
    "s": "seconds",
    "m": "minutes",
    "h": "hours",
    "d": "days",
    "w": "weeks",
}

STATUS_STYLES = {
    "completed": "green",
    "running": "cyan",
    "pending": "dim",
    "failed": "red",
    "cancelled": "yellow",
}


def parse_duration(value: str) -> timedelta:
    """
    Parse durations such as ``90m``, ``24h`` or ``30d``.

    >>> parse_duration("36h")
    datetime.timedelta(days=1, seconds=43200)
    """
    match = DURATION_PATTERN.match(value or "")
    if not match:
        raise ValueError(f"Invalid duration '{value}', expected e.g. 90m, 24h, 30d, 2w")
    amount, unit = match.groups()
    return timedelta(**{DURATION_UNITS[unit]: float(amount)})


def parse_datetime(value: str) -> datetime:
    """Parse a date or timestamp into naive UTC."""
    parsed = date_parser.parse(value)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(tz.UTC).replace(tzinfo=None)
    return parsed


def _duration_option(ctx: click.Context, param: click.Parameter, value: Optional[str]) -> Any:
    if value is None:
        return None
    try:
        return parse_duration(value)
    except ValueError as e:
        raise click.BadParameter(str(e))


def _datetime_option(ctx: click.Context, param: click.Parameter, value: Optional[str]) -> Any:
    if value is None:
        return None
    try:
        return parse_datetime(value)
    except (ValueError, OverflowError) as e:
        raise click.BadParameter(f"Invalid date '{value}': {e}")


def run_with_service(operation: Callable[[LifecycleService], Awaitable[T]]) -> T:
    """Run an async service operation on a service built from the configuration."""
    service = LifecycleService.from_config(get_config())
    try:
        return asyncio.run(operation(service))
    finally:
        service.close()


def _fmt_time(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def _status(value: str) -> str:
    style = STATUS_STYLES.get(value, "white")
    return f"[{style}]{value}[/{style}]"


def _print_job(job: PurgeJob) -> None:
    console.print(
        Panel.fit(
            f"[bold]Purge job[/bold] {job.id}\n"
            f"Status: {_status(job.status)}   Trigger: {job.trigger}   Actor: {job.actor}\n"
            f"Started: {_fmt_time(job.started_at)}   Completed: {_fmt_time(job.completed_at)}\n\n"
            f"Scanned: [cyan]{job.records_scanned:,}[/cyan]   "
            f"Deleted: [green]{job.records_deleted:,}[/green]   "
            f"Archived: [blue]{job.records_archived:,}[/blue]   "
            f"Failed: [red]{job.records_failed:,}[/red]   "
            f"Freed: {job.storage_bytes_freed:,} bytes"
            + (f"\n\n[red]{job.error_message}[/red]" if job.error_message else ""),
            border_style=STATUS_STYLES.get(job.status, "blue"),
        )
    )

    if job.category_metrics:
        table = Table(title="Categories")
        table.add_column("Category", style="cyan")
        table.add_column("Scanned", justify="right")
        table.add_column("Deleted", justify="right", style="green")
        table.add_column("Archived", justify="right", style="blue")
        table.add_column("Failed", justify="right", style="red")
        table.add_column("Held", justify="right", style="yellow")
        table.add_column("Note", style="dim")
        for name, m in sorted(job.category_metrics.items()):
            table.add_row(
                name,
                str(m.records_scanned),
                str(m.records_deleted),
                str(m.records_archived),
                str(m.records_failed),
                str(m.records_skipped_held),
                m.skipped_reason or m.error or "",
            )
        console.print(table)


def _jobs_table(jobs: List[PurgeJob], title: str) -> Table:
    table = Table(title=title)
    table.add_column("Job", style="dim")
    table.add_column("Trigger")
    table.add_column("Status")
    table.add_column("Categories", style="cyan")
    table.add_column("Deleted", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Created")
    for job in jobs:
        table.add_row(
            job.id[:8],
            job.trigger,
            _status(job.status),
            ", ".join(job.target_categories),
            str(job.records_deleted),
            str(job.records_failed),
            _fmt_time(job.created_at),
        )
    return table


@click.group(invoke_without_command=True)
@click.version_option(version=__version__)
@click.option(
    "--config-file",
    type=click.Path(exists=True, dir_okay=False),
    help="JSON or YAML configuration file",
)
@click.pass_context
def cli(ctx: click.Context, config_file: Optional[str]) -> None:
    """Data Lifecycle Toolkit - retention enforcement and purge auditing."""
    if config_file:
        try:
            set_config(LifecycleConfig.from_file(config_file))
        except Exception as e:
            console.print(f"[red]Error loading configuration file: {e}[/red]")
            sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, get_config().log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if ctx.invoked_subcommand is None:
        console.print(
            Panel.fit(
                f"[bold blue]Data Lifecycle Toolkit[/bold blue] v{__version__}\n"
                "[dim]Retention enforcement, legal holds and purge auditing[/dim]\n\n"
                "Use [bold]lifecycle --help[/bold] to see available commands.",
                border_style="blue",
            )
        )


# ----------------------------------------------------------------------
# config
# ----------------------------------------------------------------------


@cli.group()
def config() -> None:
    """Inspect engine configuration."""
    pass


@config.command("show")
@click.option("--format", type=click.Choice(["table", "json", "yaml"]), default="table")
def config_show(format: str) -> None:
    """Display current configuration."""
    try:
        config = get_config()
        config_dict = config.to_dict()

        if format == "json":
            console.print_json(data=config_dict)
        elif format == "yaml":
            import yaml  # type: ignore[import-untyped]

            console.print(yaml.safe_dump(config_dict, default_flow_style=False))
        else:
            table = Table(title="Lifecycle Configuration", show_header=True)
            table.add_column("Setting", style="cyan")
            table.add_column("Value", style="green")

            groups = {
                "General": ["application_name", "environment", "log_level", "database_url"],
                "Purge Execution": [
                    "page_size",
                    "operation_timeout_seconds",
                    "max_retries",
                    "retry_backoff_seconds",
                    "lock_ttl_minutes",
                    "audit_spool_path",
                ],
                "Scheduling": [
                    "short_ttl_threshold_hours",
                    "short_ttl_cadence_minutes",
                    "long_ttl_cadence_minutes",
                    "scheduled_run_hour_utc",
                ],
                "Compliance": ["failure_rate_review_threshold"],
                "Categories": ["category_factory"],
            }

            for group, settings in groups.items():
                table.add_row(f"[bold]{group}[/bold]", "")
                for setting in settings:
                    value = config_dict.get(setting)
                    if value is None:
                        value = "[dim]Not configured[/dim]"
                    table.add_row(f"  {setting}", str(value))

            console.print(table)

    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)


@config.command("validate")
def config_validate() -> None:
    """Validate current configuration."""
    config = get_config()
    issues = []
    warnings = []

    if config.category_factory:
        try:
            registry = CategoryRegistry()
            registry.load_factory(config.category_factory)
            if not len(registry):
                warnings.append(f"{config.category_factory} registered no categories")
        except Exception as e:
            issues.append(f"Category factory cannot be loaded: {e}")
    else:
        warnings.append("No category_factory configured - every purge run will skip all categories")

    if config.database_url.startswith("sqlite") and config.environment == "production":
        warnings.append("SQLite is not recommended for production purge tracking")

    if config.lock_ttl.total_seconds() < config.operation_timeout_seconds * 10:
        warnings.append(
            "lock_ttl_minutes is short compared to operation_timeout_seconds; "
            "a slow run may lose its category lock"
        )

    if issues:
        console.print("[red]✗ Configuration validation failed:[/red]")
        for issue in issues:
            console.print(f"  [red]• {issue}[/red]")
    else:
        console.print("[green]✓ Configuration is valid[/green]")

    if warnings:
        console.print("\n[yellow]⚠ Warnings:[/yellow]")
        for warning in warnings:
            console.print(f"  [yellow]• {warning}[/yellow]")

    if issues:
        sys.exit(1)


# ----------------------------------------------------------------------
# policy
# ----------------------------------------------------------------------


@cli.group()
def policy() -> None:
    """Manage retention policies."""
    pass


@policy.command("list")
@click.option("--all", "include_inactive", is_flag=True, help="Include inactive policies")
def policy_list(include_inactive: bool) -> None:
    """List retention policies."""
    try:
        policies = run_with_service(lambda s: s.list_policies(include_inactive))
    except Exception as e:
        console.print(f"[red]Error listing policies: {e}[/red]")
        sys.exit(1)

    if not policies:
        console.print("[yellow]No retention policies configured[/yellow]")
        return

    table = Table(title="Retention Policies")
    table.add_column("ID", style="dim")
    table.add_column("Category", style="cyan")
    table.add_column("Retention")
    table.add_column("Mode")
    table.add_column("Archive to")
    table.add_column("Active")
    for p in policies:
        table.add_row(
            p.id[:8],
            p.data_category,
            str(p.retention_period),
            p.deletion_mode,
            p.archive_target if p.archive_before_delete else "-",
            "✓" if p.is_active else "✗",
        )
    console.print(table)


@policy.command("set")
@click.argument("category")
@click.option(
    "--retention", required=True, callback=_duration_option, help="Retention, e.g. 24h or 30d"
)
@click.option("--mode", type=click.Choice(["soft", "hard"]), default="hard")
@click.option("--archive-target", help="Archive each record here before deleting it")
@click.option("--cadence", callback=_duration_option, help="Expected interval between runs")
@click.option("--actor", default="cli", help="Recorded in the audit trail")
def policy_set(
    category: str,
    retention: timedelta,
    mode: str,
    archive_target: Optional[str],
    cadence: Optional[timedelta],
    actor: str,
) -> None:
    """Set the active retention policy of CATEGORY."""
    try:
        stored = run_with_service(
            lambda s: s.set_policy(
                category,
                retention,
                deletion_mode=DeletionMode(mode),
                archive_before_delete=bool(archive_target),
                archive_target=archive_target,
                purge_cadence=cadence,
                actor=actor,
            )
        )
    except Exception as e:
        console.print(f"[red]Error setting policy: {e}[/red]")
        sys.exit(1)

    console.print(f"[green]✓[/green] Policy {stored.id} active: {stored.describe()}")


@policy.command("deactivate")
@click.argument("policy_id")
@click.option("--actor", default="cli", help="Recorded in the audit trail")
def policy_deactivate(policy_id: str, actor: str) -> None:
    """Deactivate a retention policy. Its category will no longer be purged."""
    try:
        p = run_with_service(lambda s: s.deactivate_policy(policy_id, actor))
    except Exception as e:
        console.print(f"[red]Error deactivating policy: {e}[/red]")
        sys.exit(1)

    console.print(f"[green]✓[/green] Policy {p.id} for '{p.data_category}' deactivated")


# ----------------------------------------------------------------------
# hold
# ----------------------------------------------------------------------


@cli.group()
def hold() -> None:
    """Manage legal holds."""
    pass


@hold.command("create")
@click.option("--user", "user_ids", multiple=True, help="Owner to hold (repeatable)")
@click.option("--category", "categories", multiple=True, help="Category to hold (repeatable)")
@click.option("--reason", required=True, help="Case or ticket justifying the hold")
@click.option("--created-by", required=True, help="Operator placing the hold")
@click.option("--allow-global", is_flag=True, help="Allow a hold on every user and category")
def hold_create(
    user_ids: Tuple[str, ...],
    categories: Tuple[str, ...],
    reason: str,
    created_by: str,
    allow_global: bool,
) -> None:
    """Place a legal hold."""
    try:
        created = run_with_service(
            lambda s: s.create_hold(
                reason,
                created_by,
                user_ids=user_ids,
                data_categories=categories,
                allow_global=allow_global,
            )
        )
    except Exception as e:
        console.print(f"[red]Error creating hold: {e}[/red]")
        sys.exit(1)

    console.print(f"[green]✓[/green] Legal hold {created.id} is active")


@hold.command("release")
@click.argument("hold_id")
@click.option("--released-by", required=True, help="Operator releasing the hold")
def hold_release(hold_id: str, released_by: str) -> None:
    """Release a legal hold."""
    try:
        released = run_with_service(lambda s: s.release_hold(hold_id, released_by))
    except Exception as e:
        console.print(f"[red]Error releasing hold: {e}[/red]")
        sys.exit(1)

    console.print(f"[green]✓[/green] Legal hold {released.id} released")


@hold.command("list")
@click.option("--status", type=click.Choice(["active", "released"]), help="Filter by status")
def hold_list(status: Optional[str]) -> None:
    """List legal holds."""
    try:
        holds = run_with_service(
            lambda s: s.list_holds(HoldStatus(status) if status else None)
        )
    except Exception as e:
        console.print(f"[red]Error listing holds: {e}[/red]")
        sys.exit(1)

    if not holds:
        console.print("[yellow]No legal holds found[/yellow]")
        return

    table = Table(title="Legal Holds")
    table.add_column("ID", style="dim")
    table.add_column("Status")
    table.add_column("Users", style="cyan")
    table.add_column("Categories", style="cyan")
    table.add_column("Reason")
    table.add_column("Created by")
    table.add_column("Created")
    for h in holds:
        table.add_row(
            h.id[:8],
            "[red]active[/red]" if h.is_active else "[dim]released[/dim]",
            ", ".join(sorted(h.scope.user_ids)) or "*",
            ", ".join(sorted(h.scope.data_categories)) or "*",
            h.reason,
            h.created_by,
            _fmt_time(h.created_at),
        )
    console.print(table)


# ----------------------------------------------------------------------
# purge
# ----------------------------------------------------------------------


@cli.group()
def purge() -> None:
    """Run and inspect purge jobs."""
    pass


@purge.command("run")
@click.option("--category", "categories", multiple=True, help="Category to purge (repeatable)")
@click.option("--dry-run", is_flag=True, help="Only count what would be purged")
@click.option("--actor", default="cli", help="Recorded in the audit trail")
def purge_run(categories: Tuple[str, ...], dry_run: bool, actor: str) -> None:
    """Run a purge now."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        progress.add_task(
            "Counting eligible records..." if dry_run else "Purging expired records...",
            total=None,
        )
        try:
            job = run_with_service(
                lambda s: s.trigger_run(
                    categories=list(categories) or None, dry_run=dry_run, actor=actor
                )
            )
        except Exception as e:
            progress.stop()
            console.print(f"[red]Error running purge: {e}[/red]")
            sys.exit(1)

    _print_job(job)
    if job.status == "failed":
        sys.exit(1)


@purge.command("scheduled")
@click.option("--actor", default="scheduler", help="Recorded in the audit trail")
def purge_scheduled(actor: str) -> None:
    """Purge every category whose cadence has elapsed (for cron or a scheduler)."""
    try:
        jobs = run_with_service(lambda s: s.run_scheduled(actor=actor))
    except Exception as e:
        console.print(f"[red]Error running scheduled purge: {e}[/red]")
        sys.exit(1)

    if not jobs:
        console.print("[dim]No category is due for purging[/dim]")
        return
    console.print(_jobs_table(jobs, "Scheduled purge jobs"))
    if any(job.status == "failed" for job in jobs):
        sys.exit(1)


@purge.command("status")
@click.option("--format", type=click.Choice(["table", "json"]), default="table")
def purge_status(format: str) -> None:
    """Show pending records per category, running jobs and recent jobs."""
    try:
        status = run_with_service(lambda s: s.get_purge_status())
    except Exception as e:
        console.print(f"[red]Error reading purge status: {e}[/red]")
        sys.exit(1)

    if format == "json":
        data = status.model_dump(mode="json")
        data["total_pending"] = status.total_pending
        console.print_json(data=data)
        return

    table = Table(title="Retention Status")
    table.add_column("Category", style="cyan")
    table.add_column("Retention")
    table.add_column("Mode")
    table.add_column("Cutoff")
    table.add_column("Pending", justify="right", style="yellow")
    table.add_column("Last completed")
    table.add_column("Running", style="magenta")
    for c in status.categories:
        table.add_row(
            c.category,
            str(c.retention_period),
            c.deletion_mode + (" + archive" if c.archive_before_delete else ""),
            _fmt_time(c.cutoff),
            str(c.pending_records) if c.pending_records is not None else "[dim]n/a[/dim]",
            _fmt_time(c.last_completed_at),
            (c.running_job_id or "")[:8],
        )
    console.print(table)
    console.print(
        f"Total pending: [yellow]{status.total_pending:,}[/yellow]   "
        f"Next scheduled run: {_fmt_time(status.next_scheduled_run)} UTC"
    )
    if status.recent_jobs:
        console.print()
        console.print(_jobs_table(status.recent_jobs, "Recent jobs"))


@purge.command("job")
@click.argument("job_id")
@click.option("--format", type=click.Choice(["table", "json"]), default="table")
def purge_job(job_id: str, format: str) -> None:
    """Show a purge job."""
    try:
        job = run_with_service(lambda s: s.get_job_status(job_id))
    except Exception as e:
        console.print(f"[red]Error reading job: {e}[/red]")
        sys.exit(1)

    if format == "json":
        console.print_json(data=job.model_dump(mode="json"))
    else:
        _print_job(job)


@purge.command("jobs")
@click.option(
    "--status",
    type=click.Choice(["pending", "running", "completed", "failed", "cancelled"]),
)
@click.option("--category", help="Only jobs targeting this category")
@click.option("--limit", type=int, default=20)
def purge_jobs(status: Optional[str], category: Optional[str], limit: int) -> None:
    """List recent purge jobs."""
    try:
        jobs = run_with_service(
            lambda s: s.list_jobs(status=status, category=category, limit=limit)
        )
    except Exception as e:
        console.print(f"[red]Error listing jobs: {e}[/red]")
        sys.exit(1)

    if not jobs:
        console.print("[yellow]No purge jobs found[/yellow]")
        return
    console.print(_jobs_table(jobs, "Purge jobs"))


@purge.command("cancel")
@click.argument("job_id")
@click.option("--actor", default="cli", help="Recorded in the audit trail")
def purge_cancel(job_id: str, actor: str) -> None:
    """Ask a running job to stop after its current page."""
    try:
        job = run_with_service(lambda s: s.cancel_job(job_id, actor))
    except Exception as e:
        console.print(f"[red]Error cancelling job: {e}[/red]")
        sys.exit(1)

    console.print(f"[green]✓[/green] Cancellation requested for job {job.id} ({job.status})")


@purge.command("force")
@click.argument("category")
@click.argument("record_ids", nargs=-1, required=True)
@click.option("--reason", required=True, help="Why these records must go now")
@click.option("--actor", required=True, help="Operator requesting the purge")
def purge_force(category: str, record_ids: Tuple[str, ...], reason: str, actor: str) -> None:
    """Purge named records of CATEGORY regardless of their age."""
    try:
        result = run_with_service(
            lambda s: s.force_purge(category, list(record_ids), reason, actor)
        )
    except (LifecycleError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    if result.rejected:
        console.print(
            f"[red]✗ Rejected: {len(result.held_ids)} record(s) are under legal hold: "
            f"{', '.join(result.held_ids)}[/red]"
        )
        sys.exit(1)

    console.print(
        f"[green]✓[/green] Job {result.job_id}: {len(result.purged_ids)} purged, "
        f"{len(result.failed_ids)} failed, {len(result.missing_ids)} not found"
    )
    if result.missing_ids:
        console.print(f"  [yellow]Not found: {', '.join(result.missing_ids)}[/yellow]")
    if result.failed_ids:
        console.print(f"  [red]Failed: {', '.join(result.failed_ids)}[/red]")
        sys.exit(1)


# ----------------------------------------------------------------------
# audit
# ----------------------------------------------------------------------


@cli.group()
def audit() -> None:
    """Search and export the purge audit trail."""
    pass


@audit.command("search")
@click.option("--actor", help="Filter by actor")
@click.option("--action", help="Filter by action")
@click.option("--category", help="Filter by data category")
@click.option("--job", "job_id", help="Filter by purge job")
@click.option("--start-date", callback=_datetime_option, help="Start of time range")
@click.option("--end-date", callback=_datetime_option, help="End of time range")
@click.option("--failures", is_flag=True, help="Only unsuccessful actions")
@click.option("--limit", type=int, default=100, help="Maximum results to return")
@click.option("--format", type=click.Choice(["table", "json", "csv"]), default="table")
def audit_search(
    actor: Optional[str],
    action: Optional[str],
    category: Optional[str],
    job_id: Optional[str],
    start_date: Optional[datetime],
    end_date: Optional[datetime],
    failures: bool,
    limit: int,
    format: str,
) -> None:
    """Search audit trail entries."""
    try:
        query = AuditQuery(
            actors=[actor] if actor else None,
            actions=[action] if action else None,
            categories=[category] if category else None,
            job_ids=[job_id] if job_id else None,
            start_date=start_date,
            end_date=end_date,
            failures_only=failures,
            limit=limit,
        )
        entries = run_with_service(lambda s: s.search_audit(query))
    except Exception as e:
        console.print(f"[red]Error searching audit trail: {e}[/red]")
        sys.exit(1)

    if not entries:
        console.print("[yellow]No audit entries found matching criteria[/yellow]")
        return

    if format == "json":
        console.print_json(data=[e.model_dump(mode="json") for e in entries])
    elif format == "csv":
        df = pd.DataFrame([e.model_dump(mode="json") for e in entries])
        print(df.to_csv(index=False))
    else:
        table = Table(title=f"Audit Trail Entries (showing {len(entries)} of {limit})")
        table.add_column("Timestamp", style="cyan")
        table.add_column("Actor", style="green")
        table.add_column("Action", style="yellow")
        table.add_column("Resource", style="blue")
        table.add_column("Job", style="dim")
        table.add_column("Result", style="magenta")
        for entry in entries:
            table.add_row(
                _fmt_time(entry.timestamp),
                entry.actor,
                entry.action,
                f"{entry.resource_type}:{entry.resource_id}",
                (entry.job_id or "")[:8],
                "[green]success[/green]" if entry.success else "[red]failure[/red]",
            )
        console.print(table)


@audit.command("export")
@click.option("--start-date", callback=_datetime_option, required=True, help="Start date")
@click.option("--end-date", callback=_datetime_option, required=True, help="End date")
@click.option("--output", type=click.Path(), required=True, help="Output file path")
@click.option("--format", type=click.Choice(["json", "csv", "excel"]), default="csv")
def audit_export(start_date: datetime, end_date: datetime, output: str, format: str) -> None:
    """Export the audit trail of a period for compliance review."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        task = progress.add_task("Exporting audit trail...", total=None)

        try:

            async def _collect(service: LifecycleService) -> List[Any]:
                rows: List[Any] = []
                offset = 0
                while True:
                    page = await service.search_audit(
                        AuditQuery(
                            start_date=start_date,
                            end_date=end_date,
                            limit=10000,
                            offset=offset,
                            sort_desc=False,
                        )
                    )
                    rows.extend(e.model_dump(mode="json") for e in page)
                    if len(page) < 10000:
                        return rows
                    offset += 10000

            data = run_with_service(_collect)
            progress.update(task, description=f"Found {len(data)} entries, exporting...")

            df = pd.DataFrame(data)
            if "metadata" in df.columns:
                df["metadata"] = df["metadata"].apply(
                    lambda m: json.dumps(m, sort_keys=True) if m else ""
                )

            output_path = Path(output)
            if format == "json":
                df.to_json(output_path, orient="records", date_format="iso", indent=2)
            elif format == "excel":
                df.to_excel(output_path, index=False, engine="openpyxl")
            else:
                df.to_csv(output_path, index=False)

            progress.stop()
            console.print(
                f"[green]✓ Exported {len(data)} audit entries to {output_path}[/green]"
            )

        except Exception as e:
            progress.stop()
            console.print(f"[red]Error exporting audit trail: {e}[/red]")
            sys.exit(1)


@audit.command("verify")
@click.option("--start-date", callback=_datetime_option, help="Start of time range")
@click.option("--end-date", callback=_datetime_option, help="End of time range")
def audit_verify(start_date: Optional[datetime], end_date: Optional[datetime]) -> None:
    """Verify audit entry checksums."""
    try:
        results = run_with_service(
            lambda s: s.audit_log.verify_integrity(start_date, end_date)
        )
    except Exception as e:
        console.print(f"[red]Error verifying audit trail: {e}[/red]")
        sys.exit(1)

    if results["invalid"]:
        console.print(
            f"[red]✗ {results['invalid']} of {results['total_checked']} entries "
            "failed checksum verification[/red]"
        )
        for item in results["invalid_entries"]:
            console.print(f"  [red]• {item['id']} ({item['timestamp']})[/red]")
        sys.exit(1)

    console.print(f"[green]✓ {results['total_checked']} audit entries verified[/green]")


# ----------------------------------------------------------------------
# report
# ----------------------------------------------------------------------


@cli.group()
def report() -> None:
    """Retention compliance reports."""
    pass


@report.command("generate")
@click.option("--start-date", callback=_datetime_option, help="Period start (default: 30 days ago)")
@click.option("--end-date", callback=_datetime_option, help="Period end (default: now)")
@click.option("--generated-by", default="cli", help="Recorded on the report")
@click.option("--regenerate", is_flag=True, help="Ignore a stored report for the period")
@click.option("--format", type=click.Choice(["table", "json"]), default="table")
@click.option("--output", type=click.Path(), help="Write the report as JSON to this file")
def report_generate(
    start_date: Optional[datetime],
    end_date: Optional[datetime],
    generated_by: str,
    regenerate: bool,
    format: str,
    output: Optional[str],
) -> None:
    """Generate (or fetch) the compliance report of a period."""
    end = end_date or datetime.utcnow()
    start = start_date or end - timedelta(days=30)

    try:
        result = run_with_service(
            lambda s: s.get_compliance_report(start, end, generated_by, regenerate)
        )
    except Exception as e:
        console.print(f"[red]Error generating report: {e}[/red]")
        sys.exit(1)

    if output:
        Path(output).write_text(result.model_dump_json(indent=2), encoding="utf-8")
        console.print(f"[green]✓ Report written to {output}[/green]")

    if format == "json":
        console.print_json(data=result.model_dump(mode="json"))
        return

    verdict = (
        "[green]✓ Compliant[/green]"
        if result.is_compliant
        else f"[red]✗ {len(result.violations)} violation(s)[/red]"
    )
    console.print(
        Panel.fit(
            f"[bold]Retention Compliance Report[/bold]\n"
            f"{_fmt_time(result.period_start)} - {_fmt_time(result.period_end)}\n\n"
            f"Jobs: {result.jobs_total} ({result.jobs_completed} completed, "
            f"{result.jobs_failed} failed, {result.jobs_cancelled} cancelled)\n"
            f"Deleted: [green]{result.records_deleted:,}[/green]   "
            f"Archived: [blue]{result.records_archived:,}[/blue]   "
            f"Failed: [red]{result.records_failed:,}[/red]\n\n"
            f"{verdict}",
            border_style="green" if result.is_compliant else "red",
        )
    )

    if result.violations:
        table = Table(title="Violations")
        table.add_column("Type", style="red")
        table.add_column("Category", style="cyan")
        table.add_column("Detail")
        for v in result.violations:
            table.add_row(v.type, v.category or "-", v.message)
        console.print(table)

    if result.recommendations:
        console.print("\n[yellow]Recommendations:[/yellow]")
        for r in result.recommendations:
            console.print(f"  [yellow]• {r.message}[/yellow]")


if __name__ == "__main__":
    cli()
