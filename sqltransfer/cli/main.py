#!/usr/bin/env python3
"""sqltransfer CLI.

Runs migrations and validations for the configurations of a YAML profile,
shows run history and watermarks, and drives scheduled migrations.
"""

import threading
from typing import List, Optional

import typer
from rich.console import Console

from sqltransfer.cli.commands.watermarks import watermarks_app
from sqltransfer.cli.display import (
    display_error,
    display_run,
    display_tables,
    display_validation_results,
)
from sqltransfer.cli.factories import (
    close_orchestrator,
    create_orchestrator,
    create_recorder,
    load_profile_or_exit,
)
from sqltransfer.core.orchestrator import MigrationOrchestrator
from sqltransfer.core.resolver import TableMappingResolver
from sqltransfer.core.scheduler import MigrationScheduler
from sqltransfer.errors import TransferError
from sqltransfer.logging import configure_logging, get_logger
from sqltransfer.models import RunStatus

logger = get_logger(__name__)
console = Console()

app = typer.Typer(
    name="sqltransfer",
    help="sqltransfer - incremental table migration between databases",
    add_completion=True,
)

app.add_typer(watermarks_app, name="watermarks")


@app.callback()
def main(
    ctx: typer.Context,
    profile: Optional[str] = typer.Option(
        None,
        "--profile",
        "-p",
        help="Profile file (default: $SQLTRANSFER_PROFILE or sqltransfer.yml)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only show warnings and errors"),
) -> None:
    """Copy tables between databases in resumable, watermark-driven batches.

    Examples:
        sqltransfer run nightly --table dbo.Orders
        sqltransfer validate nightly
        sqltransfer watermarks list
    """
    configure_logging(verbose=verbose, quiet=quiet)
    ctx.obj = {"profile": profile, "verbose": verbose}


@app.command()
def run(
    ctx: typer.Context,
    configuration: str = typer.Argument(..., help="Configuration id or name"),
    tables: Optional[List[str]] = typer.Option(
        None, "--table", "-t", help="Only migrate these tables (repeatable)"
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Read and count rows without writing or advancing watermarks"
    ),
    validate: bool = typer.Option(False, "--validate", help="Validate tables after migrating"),
) -> None:
    """Migrate a configuration's tables."""
    orchestrator = _orchestrator_or_exit(ctx)
    try:
        summary = orchestrator.run_migration(
            configuration,
            table_filter=tables or None,
            dry_run=dry_run,
            validate=validate,
            triggered_by="cli",
        )
    except TransferError as e:
        display_error(e, "migration")
        raise typer.Exit(code=1)
    finally:
        close_orchestrator(orchestrator)

    display_run(summary.run, summary.table_metrics)
    if summary.validation_results:
        display_validation_results(summary.validation_results)
    if summary.run.status != RunStatus.COMPLETED:
        raise typer.Exit(code=1)


@app.command()
def validate(
    ctx: typer.Context,
    configuration: str = typer.Argument(..., help="Configuration id or name"),
    tables: Optional[List[str]] = typer.Option(
        None, "--table", "-t", help="Only validate these tables (repeatable)"
    ),
) -> None:
    """Compare source and destination tables of a configuration."""
    orchestrator = _orchestrator_or_exit(ctx)
    try:
        summary = orchestrator.run_validation(
            configuration, table_filter=tables or None, triggered_by="cli"
        )
    except TransferError as e:
        display_error(e, "validation")
        raise typer.Exit(code=1)
    finally:
        close_orchestrator(orchestrator)

    display_validation_results(summary.validation_results)
    if summary.run.status != RunStatus.COMPLETED:
        raise typer.Exit(code=1)


@app.command()
def tables(
    ctx: typer.Context,
    configuration: Optional[str] = typer.Argument(
        None, help="Configuration id or name (default: all active configurations)"
    ),
) -> None:
    """List the source tables the engine is configured to migrate."""
    profile = load_profile_or_exit(ctx)
    resolver = TableMappingResolver(profile.configuration_store())
    try:
        names = resolver.get_processed_tables(configuration)
    except TransferError as e:
        display_error(e, "table listing")
        raise typer.Exit(code=1)
    display_tables(names, configuration)


@app.command()
def status(
    ctx: typer.Context,
    configuration: str = typer.Argument(..., help="Configuration id or name"),
) -> None:
    """Show the last recorded run of a configuration."""
    profile = load_profile_or_exit(ctx)
    resolver = TableMappingResolver(profile.configuration_store())
    try:
        found = resolver.get_configuration(configuration)
        recorder = create_recorder(profile)
        last_run = recorder.get_last_run(found.configuration_id)
        metrics = recorder.get_table_metrics(last_run.run_id) if last_run else []
    except TransferError as e:
        display_error(e, "status check")
        raise typer.Exit(code=1)

    if last_run is None:
        console.print(f"📋 [yellow]No runs recorded for '{found.name}'[/yellow]")
        if not profile.settings.recorder_url:
            console.print("💡 [dim]Set settings.recorder_url to keep run history[/dim]")
        return
    display_run(last_run, metrics)


@app.command()
def schedule(
    ctx: typer.Context,
    once: bool = typer.Option(
        False, "--once", help="Start due migrations, wait for them and exit"
    ),
) -> None:
    """Run scheduled migrations of the profile's configurations."""
    orchestrator = _orchestrator_or_exit(ctx)
    scheduler = MigrationScheduler(orchestrator, orchestrator.resolver.store)
    failed = False
    try:
        if once:
            run_ids = scheduler.run_pending()
            if not run_ids:
                console.print("📋 [yellow]No schedules are due[/yellow]")
            for run_id in run_ids:
                try:
                    summary = orchestrator.wait_for_run(run_id)
                except TransferError as e:
                    display_error(e, f"scheduled run {run_id}")
                    failed = True
                    continue
                display_run(summary.run, summary.table_metrics)
                failed = failed or summary.run.status != RunStatus.COMPLETED
        else:
            stop_event = threading.Event()
            console.print("🕒 [bold blue]Scheduler running, press Ctrl+C to stop[/bold blue]")
            try:
                scheduler.run_forever(stop_event)
            except KeyboardInterrupt:
                stop_event.set()
                console.print("\n⚠️  [yellow]Scheduler stopped by user[/yellow]")
    finally:
        close_orchestrator(orchestrator)

    if failed:
        raise typer.Exit(code=1)


@app.command()
def version() -> None:
    """Show sqltransfer version information."""
    from sqltransfer import __version__

    console.print(f"sqltransfer v{__version__}")


def _orchestrator_or_exit(ctx: typer.Context) -> MigrationOrchestrator:
    profile = load_profile_or_exit(ctx)
    try:
        return create_orchestrator(profile)
    except TransferError as e:
        display_error(e, "engine setup")
        raise typer.Exit(code=1)


def cli() -> None:
    """Entry point for the CLI application."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n⚠️  [yellow]Operation cancelled by user[/yellow]")
        raise typer.Exit(130)


if __name__ == "__main__":
    cli()
