#!/usr/bin/env python3
"""
Command-line interface for the Safe Delete Engine.

Provides previews, deletes, restores, recycle bin listings and retention
management on top of a SQL database.
"""

import asyncio
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Coroutine, List, Optional, TypeVar

import click
import pandas as pd  # type: ignore[import-untyped]
import pytz
import yaml  # type: ignore[import-untyped]
from dateutil import parser as date_parser  # type: ignore[import-untyped]
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table
from rich.tree import Tree
from sqlalchemy import MetaData, create_engine, text
from sqlalchemy.orm import sessionmaker

from . import __version__
from .config import SafeDeleteConfig, get_config
from .exceptions import DeletionBlocked, SafeDeleteError
from .graph import GraphRegistry
from .services import SafeDeleteService
from .snapshots import Base, DeletionManifest, ManifestState, create_tables
from .validator import Blocker

console = Console()

T = TypeVar("T")


def run(coro: Coroutine[Any, Any, T]) -> T:
    """Run a service coroutine to completion."""
    return asyncio.run(coro)


def parse_identity(value: str) -> Any:
    """Identities given on the command line are integers when they look like one."""
    try:
        return int(value)
    except ValueError:
        return value


def format_timestamp(value: Optional[datetime], config: SafeDeleteConfig) -> str:
    """Render a naive UTC timestamp in the configured timezone."""
    if value is None:
        return "-"
    return (
        pytz.utc.localize(value).astimezone(config.tzinfo).strftime("%Y-%m-%d %H:%M")
    )


def load_registry(engine: Any, registry_path: Optional[str]) -> GraphRegistry:
    """Load the registry file, or derive the registry from the database schema."""
    if registry_path:
        return GraphRegistry.from_yaml(registry_path)

    metadata = MetaData()
    metadata.reflect(bind=engine)
    for table_name in Base.metadata.tables:
        if table_name in metadata.tables:
            metadata.remove(metadata.tables[table_name])
    return GraphRegistry.from_metadata(metadata)


class CliContext:
    """Lazily built service shared by the commands of one invocation."""

    def __init__(self, database_url: Optional[str], registry_path: Optional[str]):
        self.config = get_config()
        self.database_url = database_url or self.config.database_url
        self.registry_path = registry_path or self.config.registry_path
        self._service: Optional[SafeDeleteService] = None

    @property
    def service(self) -> SafeDeleteService:
        if self._service is None:
            if not self.database_url:
                raise click.UsageError(
                    "Database URL required: use --database-url or set "
                    "SAFE_DELETE_DATABASE_URL"
                )
            engine = create_engine(self.database_url)
            create_tables(engine)
            self._service = SafeDeleteService(
                sessionmaker(bind=engine),
                load_registry(engine, self.registry_path),
                config=self.config,
            )
        return self._service


pass_context = click.make_pass_decorator(CliContext)


def print_blockers(blockers: List[Blocker]) -> None:
    table = Table(title=f"Blocking References ({len(blockers)})")
    table.add_column("Referencing record", style="red")
    table.add_column("Field", style="yellow")
    table.add_column("Subtree member", style="cyan")
    table.add_column("Behavior", style="dim")
    for blocker in blockers:
        table.add_row(
            f"{blocker.referencing_type}#{blocker.referencing_identity}",
            blocker.edge.field,
            str(blocker.referenced_member),
            blocker.edge.cascade.value,
        )
    console.print(table)


def fail(action: str, error: Exception) -> None:
    """Print an error and exit with status 1."""
    if isinstance(error, DeletionBlocked):
        console.print(f"[red]✗ {error}[/red]")
        print_blockers(error.blockers)
    elif isinstance(error, SafeDeleteError):
        console.print(f"[red]✗ {action} failed ({error.http_status}): {error}[/red]")
    else:
        console.print(f"[red]Error {action.lower()}: {error}[/red]")
    sys.exit(1)


def manifest_rows(manifests: List[DeletionManifest]) -> List[dict]:
    return [
        {
            **manifest.to_summary(),
            "member_count": manifest.member_count,
            "closed_at": manifest.closed_at.isoformat() if manifest.closed_at else None,
            "closed_by": manifest.closed_by,
        }
        for manifest in manifests
    ]


@click.group(invoke_without_command=True)
@click.version_option(version=__version__)
@click.option(
    "--database-url",
    envvar="SAFE_DELETE_DATABASE_URL",
    help="SQLAlchemy URL of the primary database",
)
@click.option(
    "--registry",
    "registry_path",
    envvar="SAFE_DELETE_REGISTRY_PATH",
    type=click.Path(),
    help="YAML/JSON entity registry (defaults to the database schema)",
)
@click.pass_context
def cli(
    ctx: click.Context, database_url: Optional[str], registry_path: Optional[str]
) -> None:
    """Safe Delete Engine - cascading deletes you can restore."""
    ctx.obj = CliContext(database_url, registry_path)
    if ctx.invoked_subcommand is None:
        console.print(
            Panel.fit(
                f"[bold blue]Safe Delete Engine[/bold blue] v{__version__}\n"
                "[dim]Cascading deletes you can restore[/dim]\n\n"
                "Use [bold]safe-delete --help[/bold] to see available commands.",
                border_style="blue",
            )
        )


@cli.group()
def config() -> None:
    """Manage engine configuration."""
    pass


@config.command("show")
@click.option("--format", type=click.Choice(["table", "json", "yaml"]), default="table")
def config_show(format: str) -> None:
    """Display current configuration."""
    try:
        config_dict = get_config().to_dict()

        if format == "json":
            console.print_json(data=config_dict)
        elif format == "yaml":
            console.print(yaml.dump(config_dict, default_flow_style=False))
        else:
            table = Table(title="Safe Delete Configuration", show_header=True)
            table.add_column("Setting", style="cyan")
            table.add_column("Value", style="green")

            categories = {
                "General": ["application_name", "environment", "timezone"],
                "Storage": ["database_url", "registry_path"],
                "Retention": [
                    "retention_days",
                    "reaper_interval_seconds",
                    "reaper_batch_size",
                    "retain_manifest_tombstones",
                ],
                "Safety": [
                    "lock_timeout_seconds",
                    "max_expansion_depth",
                    "checksum_algorithm",
                    "collision_policy",
                    "require_reason",
                    "reason_min_length",
                ],
                "Recycle Bin": ["default_page_size", "max_page_size"],
            }

            for category, settings in categories.items():
                table.add_row(f"[bold]{category}[/bold]", "")
                for setting in settings:
                    value = config_dict.get(setting)
                    if value is None:
                        value = "[dim]Not configured[/dim]"
                    elif isinstance(value, bool):
                        value = "✓" if value else "✗"
                    table.add_row(f"  {setting}", str(value))

            console.print(table)

    except Exception as e:
        fail("Loading configuration", e)


@config.command("validate")
def config_validate() -> None:
    """Validate current configuration."""
    try:
        config = get_config()
    except Exception as e:
        fail("Validating configuration", e)
        return

    issues = []
    warnings = []

    if config.max_page_size > 10000:
        issues.append("max_page_size above 10000 makes listings unbounded")
    if not config.retain_manifest_tombstones:
        warnings.append(
            "Tombstones disabled: restoring a purged key reports 404 instead of 410"
        )
    if config.environment == "production" and not config.require_reason:
        warnings.append("Deletion reasons are optional in production")
    if config.lock_timeout_seconds > config.reaper_interval_seconds:
        warnings.append("Lock timeout exceeds the reaper interval")

    if issues:
        console.print("[red]✗ Configuration validation failed:[/red]")
        for issue in issues:
            console.print(f"  [red]• {issue}[/red]")
        sys.exit(1)

    console.print("[green]✓ Configuration is valid[/green]")
    if warnings:
        console.print("\n[yellow]⚠ Warnings:[/yellow]")
        for warning in warnings:
            console.print(f"  [yellow]• {warning}[/yellow]")


@cli.group()
def registry() -> None:
    """Inspect the entity graph."""
    pass


@registry.command("show")
@click.option("--format", type=click.Choice(["tree", "json"]), default="tree")
@pass_context
def registry_show(ctx: CliContext, format: str) -> None:
    """Display entity types and their relation edges."""
    try:
        graph = ctx.service.registry

        if format == "json":
            console.print_json(data=graph.to_dict())
            return

        tree = Tree("[bold]Entity Graph[/bold]")
        for entity_type in sorted(graph.all_types(), key=lambda t: t.name):
            identity = entity_type.identity_field or "[dim]keyless[/dim]"
            branch = tree.add(f"[cyan]{entity_type.name}[/cyan] ({identity})")
            for edge in graph.relations(entity_type.name):
                color = "red" if edge.cascade.blocks else "green"
                branch.add(
                    f"[{color}]{edge.cascade.value}[/{color}] "
                    f"{edge.referencing_type}.{edge.field} -> {edge.referenced_type}"
                )
        console.print(tree)

    except Exception as e:
        fail("Loading registry", e)


@cli.command()
@click.argument("entity_type")
@click.argument("identity")
@click.option("--format", type=click.Choice(["table", "json"]), default="table")
@pass_context
def preview(ctx: CliContext, entity_type: str, identity: str, format: str) -> None:
    """Show what deleting a record would remove, without deleting it."""
    try:
        plan = run(ctx.service.preview(entity_type, parse_identity(identity)))
    except Exception as e:
        fail("Preview", e)
        return

    if format == "json":
        console.print_json(data=plan.to_dict())
        return

    table = Table(title=f"Deletion plan for {plan.root_display_name}")
    table.add_column("#", style="dim")
    table.add_column("Record", style="cyan")
    for position, ref in enumerate(plan.deletion_order, 1):
        table.add_row(str(position), str(ref))
    console.print(table)

    if plan.detached:
        console.print(
            f"[yellow]⚠ {len(plan.detached)} external reference(s) would be "
            "left pointing at deleted records[/yellow]"
        )
    if plan.blockers:
        print_blockers(plan.blockers)
        sys.exit(1)
    console.print(f"[green]✓ {len(plan.members)} record(s) can be deleted[/green]")


@cli.command()
@click.argument("entity_type")
@click.argument("identity")
@click.option("--reason", help="Reason for the deletion")
@click.option("--actor", help="Who is deleting")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@pass_context
def delete(
    ctx: CliContext,
    entity_type: str,
    identity: str,
    reason: Optional[str],
    actor: Optional[str],
    yes: bool,
) -> None:
    """Delete a record and everything that cascades from it."""
    if not yes:
        click.confirm(f"Delete {entity_type}#{identity} and its dependents?", abort=True)

    try:
        manifest = run(
            ctx.service.delete(
                entity_type, parse_identity(identity), reason=reason, actor=actor
            )
        )
    except Exception as e:
        fail("Delete", e)
        return

    console.print(
        Panel.fit(
            f"[bold green]✓ Deleted {manifest.root_display_name}[/bold green]\n\n"
            f"Records: [cyan]{manifest.member_count}[/cyan]\n"
            f"Deletion key: [yellow]{manifest.deletion_key}[/yellow]\n"
            f"Restorable until: {format_timestamp(manifest.expires_at, ctx.config)}",
            border_style="green",
        )
    )


@cli.command()
@click.argument("deletion_key")
@click.option("--actor", help="Who is restoring")
@pass_context
def restore(ctx: CliContext, deletion_key: str, actor: Optional[str]) -> None:
    """Restore a deleted subtree."""
    try:
        result = run(ctx.service.restore(deletion_key, actor=actor))
    except Exception as e:
        fail("Restore", e)
        return

    console.print(
        f"[green]✓ Restored {result.root_type}#{result.root_identity} "
        f"({len(result.restored)} record(s))[/green]"
    )
    for ref, new_identity in result.identity_map.items():
        console.print(f"  [yellow]• {ref} restored as #{new_identity}[/yellow]")


@cli.command()
@click.argument("deletion_key")
@click.option("--actor", help="Who is purging")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@pass_context
def purge(ctx: CliContext, deletion_key: str, actor: Optional[str], yes: bool) -> None:
    """Permanently discard a deletion. This cannot be undone."""
    if not yes:
        click.confirm(f"Permanently purge {deletion_key}?", abort=True)

    try:
        removed = run(ctx.service.purge(deletion_key, actor=actor))
    except Exception as e:
        fail("Purge", e)
        return

    console.print(f"[green]✓ Purged {deletion_key} ({removed} snapshot(s))[/green]")


@cli.group()
def manifests() -> None:
    """Recycle bin listing and export."""
    pass


STATE_CHOICES = click.Choice([state.value for state in ManifestState] + ["all"])


@manifests.command("list")
@click.option("--type", "entity_type", help="Filter by root entity type")
@click.option("--state", type=STATE_CHOICES, default="active")
@click.option("--limit", type=int, help="Page size")
@click.option("--offset", type=int, default=0, help="Entries to skip")
@click.option("--format", type=click.Choice(["table", "json"]), default="table")
@pass_context
def manifests_list(
    ctx: CliContext,
    entity_type: Optional[str],
    state: str,
    limit: Optional[int],
    offset: int,
    format: str,
) -> None:
    """List deletion manifests, newest first."""
    try:
        page = run(
            ctx.service.list_manifests(
                entity_type=entity_type,
                state=None if state == "all" else state,
                limit=limit,
                offset=offset,
            )
        )
    except Exception as e:
        fail("Listing manifests", e)
        return

    if format == "json":
        console.print_json(
            data={
                "items": manifest_rows(page.items),
                "total": page.total,
                "limit": page.limit,
                "offset": page.offset,
            }
        )
        return

    if not page.items:
        console.print("[yellow]Recycle bin is empty[/yellow]")
        return

    table = Table(
        title=f"Deletion Manifests ({offset + 1}-{offset + len(page.items)} "
        f"of {page.total})"
    )
    table.add_column("Deletion key", style="yellow")
    table.add_column("Root", style="cyan")
    table.add_column("Records", style="green")
    table.add_column("Deleted", style="dim")
    table.add_column("Expires", style="dim")
    table.add_column("State")
    table.add_column("Reason")

    for manifest in page.items:
        table.add_row(
            manifest.deletion_key,
            manifest.root_display_name or f"{manifest.root_type}#{manifest.root_identity}",
            str(manifest.member_count),
            format_timestamp(manifest.created_at, ctx.config),
            format_timestamp(manifest.expires_at, ctx.config),
            manifest.state.value,
            manifest.reason or "",
        )
    console.print(table)


@manifests.command("export")
@click.option("--output", type=click.Path(), required=True, help="Output file path")
@click.option("--format", type=click.Choice(["json", "csv", "excel"]), default="csv")
@click.option("--state", type=STATE_CHOICES, default="all")
@pass_context
def manifests_export(ctx: CliContext, output: str, format: str, state: str) -> None:
    """Export manifests for reporting."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        progress.add_task("Exporting manifests...", total=None)

        try:
            service = ctx.service
            items: List[DeletionManifest] = []
            page_size = ctx.config.max_page_size
            while True:
                page = run(
                    service.list_manifests(
                        state=None if state == "all" else state,
                        limit=page_size,
                        offset=len(items),
                    )
                )
                items.extend(page.items)
                if not page.has_more:
                    break

            df = pd.DataFrame(manifest_rows(items))

            output_path = Path(output)
            if format == "json":
                df.to_json(output_path, orient="records", date_format="iso", indent=2)
            elif format == "excel":
                df.to_excel(output_path, index=False, engine="openpyxl")
            else:
                df.to_csv(output_path, index=False)

            progress.stop()
            console.print(
                f"[green]✓ Exported {len(items)} manifest(s) to {output_path}[/green]"
            )

        except Exception as e:
            progress.stop()
            fail("Exporting manifests", e)


@cli.command()
@pass_context
def stats(ctx: CliContext) -> None:
    """Display recycle bin statistics."""
    try:
        figures = run(ctx.service.stats())
    except Exception as e:
        fail("Calculating statistics", e)
        return

    console.print(
        Panel.fit(
            f"[bold]Recycle Bin[/bold]\n\n"
            f"Active deletions: [cyan]{figures.total_active:,}[/cyan]\n"
            f"Snapshots held: [green]{figures.total_snapshots:,}[/green]\n"
            f"Expiring within a day: [yellow]{figures.expiring_within_day}[/yellow]",
            border_style="blue",
        )
    )

    if figures.by_type:
        table = Table(title="Active Deletions by Type")
        table.add_column("Entity type", style="cyan")
        table.add_column("Deletions", style="green")
        for entity_type, count in sorted(
            figures.by_type.items(), key=lambda x: x[1], reverse=True
        ):
            table.add_row(entity_type, str(count))
        console.print(table)


@cli.command()
@click.option("--as-of", help="Reference time (ISO 8601), defaults to now")
@click.option("--limit", type=int, help="Maximum manifests to purge")
@pass_context
def reap(ctx: CliContext, as_of: Optional[str], limit: Optional[int]) -> None:
    """Purge deletions whose retention window has elapsed."""
    try:
        now = None
        if as_of:
            parsed = date_parser.isoparse(as_of)
            if parsed.tzinfo is not None:
                parsed = parsed.astimezone(pytz.utc).replace(tzinfo=None)
            now = parsed
        report = run(ctx.service.purge_expired(now=now, limit=limit))
    except Exception as e:
        fail("Reaping", e)
        return

    console.print(
        f"[green]✓ Purged {len(report.purged)} expired manifest(s)[/green]"
        + (f", skipped {len(report.skipped)}" if report.skipped else "")
    )
    for deletion_key, error in report.failed.items():
        console.print(f"  [red]• {deletion_key}: {error}[/red]")
    if report.failed:
        sys.exit(1)


@cli.command()
@pass_context
def doctor(ctx: CliContext) -> None:
    """Run diagnostic checks on the engine setup."""
    console.print("[bold]Running Safe Delete diagnostics...[/bold]\n")

    checks_passed = 0
    checks_failed = 0

    console.print("[green]✓[/green] Configuration loaded successfully")
    checks_passed += 1

    if not ctx.database_url:
        console.print(
            "[yellow]⚠[/yellow] No database configured "
            "(SAFE_DELETE_DATABASE_URL not set)"
        )
        checks_failed += 1
    else:
        try:
            engine = create_engine(ctx.database_url)
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            console.print("[green]✓[/green] Database connection successful")
            checks_passed += 1

            service = ctx.service
            graph = service.registry
            console.print(
                f"[green]✓[/green] Registry loaded: {len(graph.all_types())} "
                f"type(s), {len(graph.all_edges())} edge(s)"
            )
            checks_passed += 1

            figures = run(service.stats())
            console.print(
                f"[green]✓[/green] Engine tables available "
                f"({figures.total_active} active deletion(s))"
            )
            checks_passed += 1
        except Exception as e:
            console.print(f"[red]✗[/red] {e}")
            checks_failed += 1

    console.print("\n[bold]Summary:[/bold]")
    console.print(f"  Checks passed: [green]{checks_passed}[/green]")
    console.print(f"  Checks failed: [red]{checks_failed}[/red]")

    if checks_failed == 0:
        console.print("\n[green]✓ All systems operational[/green]")
    else:
        console.print("\n[yellow]⚠ Some issues detected - review output above[/yellow]")
        sys.exit(1)


if __name__ == "__main__":
    cli()
