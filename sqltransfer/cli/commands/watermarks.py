"""Watermark inspection and reset commands."""

import typer
from rich.console import Console

from sqltransfer.cli.display import display_error, display_watermarks
from sqltransfer.cli.factories import create_watermark_store, load_profile_or_exit
from sqltransfer.core.resolver import TableMappingResolver
from sqltransfer.errors import TransferError
from sqltransfer.logging import get_logger

logger = get_logger(__name__)
console = Console()

watermarks_app = typer.Typer(
    name="watermarks",
    help="Inspect and reset incremental watermarks",
)


@watermarks_app.command("list")
def list_watermarks(ctx: typer.Context) -> None:
    """List every stored watermark."""
    profile = load_profile_or_exit(ctx)
    store = create_watermark_store(profile)
    try:
        display_watermarks(store.list_watermarks())
    except TransferError as e:
        display_error(e, "watermark listing")
        raise typer.Exit(code=1)
    finally:
        store.backend.close()


@watermarks_app.command("reset")
def reset_watermark(
    ctx: typer.Context,
    configuration: str = typer.Argument(..., help="Configuration id or name"),
    mapping_id: int = typer.Argument(..., help="Table mapping id"),
) -> None:
    """Forget a mapping's watermark so its next run starts from the start value."""
    profile = load_profile_or_exit(ctx)
    try:
        resolver = TableMappingResolver(profile.configuration_store())
        found = resolver.get_configuration(configuration)
    except TransferError as e:
        display_error(e, "watermark reset")
        raise typer.Exit(code=1)

    mapping = next((m for m in found.table_mappings if m.mapping_id == mapping_id), None)
    if mapping is None:
        console.print(
            f"❌ [bold red]Configuration '{found.name}' has no mapping {mapping_id}[/bold red]"
        )
        raise typer.Exit(code=1)

    store = create_watermark_store(profile)
    try:
        deleted = store.reset_watermark(mapping)
    except TransferError as e:
        display_error(e, "watermark reset")
        raise typer.Exit(code=1)
    finally:
        store.backend.close()

    if deleted:
        console.print(f"✅ [green]Reset watermark of {mapping.source_name}[/green]")
    else:
        console.print(f"📋 [yellow]{mapping.source_name} had no stored watermark[/yellow]")
