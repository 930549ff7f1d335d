"""Rich display functions for the sqltransfer CLI."""

from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from sqltransfer.models import Run, RunStatus, TableMetric, TableStatus, ValidationResult

console = Console()

_RUN_STYLES = {
    RunStatus.COMPLETED: ("✅", "green"),
    RunStatus.COMPLETED_WITH_ERRORS: ("⚠️", "yellow"),
    RunStatus.FAILED: ("❌", "red"),
    RunStatus.RUNNING: ("🔄", "blue"),
    RunStatus.VALIDATING: ("🔍", "blue"),
}

_TABLE_STYLES = {
    TableStatus.COMPLETED: "green",
    TableStatus.FAILED: "red",
    TableStatus.CANCELLED: "yellow",
    TableStatus.RUNNING: "blue",
    TableStatus.PENDING: "dim",
}


def display_run(run: Run, metrics: Optional[List[TableMetric]] = None) -> None:
    """Display a run's outcome followed by its per-table metrics.

    Args:
        run: Run to display
        metrics: Table metrics recorded for the run
    """
    icon, color = _RUN_STYLES.get(run.status, ("•", "white"))
    mode = " (dry run)" if run.dry_run else ""
    console.print(f"{icon} [bold {color}]Run {run.run_id}: {run.status.value}{mode}[/bold {color}]")

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Property", style="cyan", width=14)
    table.add_column("Value", style="white")

    table.add_row("Configuration", str(run.configuration_id))
    table.add_row("Triggered by", run.triggered_by)
    table.add_row("Started", f"{run.start_time:%Y-%m-%d %H:%M:%S}")
    if run.end_time:
        table.add_row("Finished", f"{run.end_time:%Y-%m-%d %H:%M:%S}")
    table.add_row(
        "Tables",
        f"{run.total_tables_processed} ({run.successful_tables_count} ok, "
        f"{run.failed_tables_count} failed)",
    )
    table.add_row("Rows", f"{run.total_rows_processed:,}")
    table.add_row("Duration", f"{run.elapsed_ms / 1000:.1f}s")
    table.add_row("Throughput", f"{run.average_rows_per_second:,.0f} rows/s")
    if run.message:
        table.add_row("Message", escape(run.message))

    console.print(table)

    if metrics:
        display_table_metrics(metrics)


def display_table_metrics(metrics: List[TableMetric]) -> None:
    """Display per-table progress and outcome."""
    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Table", style="cyan")
    table.add_column("Status")
    table.add_column("Rows", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Watermark", style="dim")
    table.add_column("Message", style="dim", overflow="fold")

    for metric in metrics:
        color = _TABLE_STYLES.get(metric.status, "white")
        rows = f"{metric.rows_processed:,}"
        if metric.total_rows_to_process is not None:
            rows += f" / {metric.total_rows_to_process:,}"
        table.add_row(
            metric.full_name,
            f"[{color}]{metric.status.value}[/{color}]",
            rows,
            f"{metric.elapsed_ms / 1000:.1f}s",
            "" if metric.last_watermark is None else str(metric.last_watermark),
            escape(metric.message or ""),
        )

    console.print(table)


def display_validation_results(results: List[ValidationResult]) -> None:
    """Display one row per validation check."""
    if not results:
        console.print("📋 [yellow]No validation results[/yellow]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Table", style="cyan")
    table.add_column("Check")
    table.add_column("Result")
    table.add_column("Details", style="dim", overflow="fold")

    for result in results:
        outcome = "[green]Passed[/green]" if result.success else "[red]Failed[/red]"
        details = result.details
        if result.error_message:
            details = f"{details} {result.error_message}".strip()
        table.add_row(result.table_name, result.validation_type.value, outcome, escape(details))

    console.print(table)

    failed = sum(1 for r in results if not r.success)
    if failed:
        console.print(f"❌ [bold red]{failed} validation check(s) failed[/bold red]")
    else:
        console.print("✅ [bold green]All validation checks passed[/bold green]")


def display_tables(tables: List[str], configuration: Optional[str] = None) -> None:
    """Display the source tables the engine handles."""
    scope = f" for '{configuration}'" if configuration else ""
    if not tables:
        console.print(f"📋 [yellow]No active tables{scope}[/yellow]")
        return

    console.print(f"📋 [bold blue]Processed tables{scope} ({len(tables)})[/bold blue]")
    for name in tables:
        console.print(f"  • [cyan]{name}[/cyan]")


def display_watermarks(watermarks: List[Dict[str, Any]]) -> None:
    """Display stored watermarks."""
    if not watermarks:
        console.print("📋 [yellow]No watermarks stored[/yellow]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Mapping", justify="right", style="cyan")
    table.add_column("Table")
    table.add_column("Column")
    table.add_column("Type", style="dim")
    table.add_column("Value", style="green")

    for watermark in watermarks:
        table.add_row(
            str(watermark["mapping_id"]),
            str(watermark.get("table") or ""),
            str(watermark.get("column") or ""),
            str(watermark.get("type") or ""),
            str(watermark.get("value")),
        )

    console.print(table)


def display_error(error: Exception, context: str = "") -> None:
    """Display an error with consistent formatting.

    Args:
        error: The exception to display
        context: Short description of what was being done
    """
    context_text = f" during {context}" if context else ""
    console.print(f"❌ [bold red]Error{context_text}[/bold red]")
    console.print(f"🔍 [dim]{escape(str(error))}[/dim]")


def display_info_panel(title: str, content: str, style: str = "blue") -> None:
    """Display information in a Rich panel."""
    console.print(Panel(content, title=title, border_style=style))
