"""Factory functions that assemble engine components from a profile."""

import os
from typing import Optional

import typer

from sqltransfer.cli.display import display_error
from sqltransfer.connections import ConnectionProvider
from sqltransfer.core.orchestrator import MigrationOrchestrator
from sqltransfer.core.profiles import DEFAULT_PROFILE, TransferProfile, load_profile
from sqltransfer.core.recorder import InMemoryRunRecorder, RunRecorder, SqlRunRecorder
from sqltransfer.core.resolver import TableMappingResolver
from sqltransfer.core.state import DuckDBStateBackend, WatermarkStore
from sqltransfer.logging import get_logger

logger = get_logger(__name__)


def load_profile_for_command(profile_path: Optional[str] = None) -> TransferProfile:
    """Load the profile named on the command line, or the default one.

    Raises:
        FileNotFoundError: If the profile does not exist
        ValueError: If it is invalid
    """
    path = profile_path or os.environ.get("SQLTRANSFER_PROFILE") or DEFAULT_PROFILE
    profile = load_profile(path)
    logger.debug(f"Loaded profile '{path}'")
    return profile


def load_profile_or_exit(ctx: typer.Context) -> TransferProfile:
    """Load the profile chosen by the global ``--profile`` option.

    Displays the problem and exits with code 1 when it cannot be loaded.
    """
    profile_path = (ctx.obj or {}).get("profile")
    try:
        return load_profile_for_command(profile_path)
    except FileNotFoundError as e:
        display_error(e, "profile loading")
        raise typer.Exit(code=1)
    except ValueError as e:
        display_error(e, "profile validation")
        raise typer.Exit(code=1)


def create_watermark_store(profile: TransferProfile) -> WatermarkStore:
    """Watermark store on the profile's DuckDB state file."""
    state_path = profile.settings.state_path
    if not state_path:
        logger.warning("No state_path configured; watermarks are kept in memory only")
    return WatermarkStore(DuckDBStateBackend(state_path))


def create_recorder(profile: TransferProfile) -> RunRecorder:
    """Recorder on the profile's recorder database, in memory when unset."""
    settings = profile.settings
    if settings.recorder_url:
        return SqlRunRecorder.from_url(settings.recorder_url, settings.persistence_retry)
    logger.debug("No recorder_url configured; run history is kept in memory only")
    return InMemoryRunRecorder()


def create_orchestrator(
    profile: TransferProfile,
    recorder: Optional[RunRecorder] = None,
    watermark_store: Optional[WatermarkStore] = None,
) -> MigrationOrchestrator:
    """Wire an orchestrator for the profile's configurations and connections."""
    return MigrationOrchestrator(
        resolver=TableMappingResolver(profile.configuration_store()),
        connections=ConnectionProvider(profile.connections),
        watermark_store=watermark_store or create_watermark_store(profile),
        recorder=recorder or create_recorder(profile),
        settings=profile.settings,
    )


def close_orchestrator(orchestrator: MigrationOrchestrator) -> None:
    """Release executor threads, pooled connections and the state file."""
    orchestrator.shutdown(wait=True)
    orchestrator.connections.dispose()
    orchestrator.watermark_store.backend.close()
