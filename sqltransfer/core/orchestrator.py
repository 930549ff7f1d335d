"""Migration orchestration: the per-table extract, load, advance loop.

The orchestrator is the engine's invocation interface. It opens a Run,
processes each resolved table mapping, records a TableMetric per table and
LogEntry records for notable events, and closes the Run with aggregated
figures. Table failures are isolated unless the mapping is fail-on-error.
Failures of the bookkeeping itself abort the run and reach the caller as
RunAbortedError.
"""

import dataclasses
import threading
import traceback
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from sqlalchemy.engine import Engine

from sqltransfer.connections import ConnectionProvider
from sqltransfer.core.extractor import BatchCursor, BatchExtractor
from sqltransfer.core.loader import BatchLoader
from sqltransfer.core.monitor import MigrationMonitor
from sqltransfer.core.recorder import RunRecorder
from sqltransfer.core.resolver import TableMappingResolver
from sqltransfer.core.settings import EngineSettings
from sqltransfer.core.state import WatermarkStore
from sqltransfer.core.validation import ValidationEngine, summarize
from sqltransfer.errors import (
    NoActiveMappingsError,
    PersistenceError,
    RunAbortedError,
    RunCancelledError,
    TransferError,
)
from sqltransfer.logging import get_logger, parse_log_level
from sqltransfer.models import (
    Configuration,
    LogEntry,
    LogLevel,
    Run,
    RunStatus,
    TableMapping,
    TableMetric,
    TableStatus,
    ValidationResult,
)

logger = get_logger(__name__)

ConfigurationRef = Union[int, str]


@dataclass
class RunSummary:
    """Final state of a run with the records it produced."""

    run: Run
    table_metrics: List[TableMetric] = field(default_factory=list)
    validation_results: List[ValidationResult] = field(default_factory=list)

    @property
    def run_id(self) -> Optional[int]:
        return self.run.run_id

    @property
    def succeeded(self) -> bool:
        return self.run.status == RunStatus.COMPLETED


@dataclass
class _RunContext:
    """Per-run collaborators bound to the configuration's engines."""

    configuration: Configuration
    run: Run
    dry_run: bool
    extractor: BatchExtractor
    loader: Optional[BatchLoader]
    monitor: MigrationMonitor
    cancel_event: threading.Event
    abort_event: threading.Event = field(default_factory=threading.Event)
    source_engine: Optional[Engine] = None
    destination_engine: Optional[Engine] = None


class MigrationOrchestrator:
    """Runs migrations and validations for configurations."""

    def __init__(
        self,
        resolver: TableMappingResolver,
        connections: ConnectionProvider,
        watermark_store: WatermarkStore,
        recorder: RunRecorder,
        settings: Optional[EngineSettings] = None,
    ):
        self.resolver = resolver
        self.connections = connections
        self.watermark_store = watermark_store
        self.recorder = recorder
        self.settings = settings or EngineSettings()

        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.max_concurrent_runs,
            thread_name_prefix="sqltransfer-run",
        )
        self._lock = threading.Lock()
        self._futures: Dict[int, Future] = {}
        self._cancel_events: Dict[int, threading.Event] = {}
        self._mapping_locks: Dict[int, threading.Lock] = {}

    # Invocation interface

    def start_migration(
        self,
        configuration_id: ConfigurationRef,
        table_filter: Optional[Iterable[str]] = None,
        dry_run: bool = False,
        validate: bool = False,
        triggered_by: str = "system",
    ) -> int:
        """Start a migration in the background.

        The Run record exists when this returns; its final status is
        available through the recorder or ``wait_for_run``.

        Returns:
            Id of the new run

        Raises:
            ConfigurationNotFoundError: If the configuration does not exist
            PersistenceError: If the run record cannot be created
        """
        configuration = self.resolver.get_configuration(configuration_id)
        run = self._open_run(configuration, RunStatus.RUNNING, triggered_by, dry_run)
        return self._submit(
            run,
            self._execute_migration,
            configuration,
            run,
            _as_list(table_filter),
            dry_run,
            validate,
        )

    def start_validation(
        self,
        configuration_id: ConfigurationRef,
        table_filter: Optional[Iterable[str]] = None,
        triggered_by: str = "system",
    ) -> int:
        """Start a validation-only run in the background.

        Returns:
            Id of the new run
        """
        configuration = self.resolver.get_configuration(configuration_id)
        run = self._open_run(configuration, RunStatus.VALIDATING, triggered_by, False)
        return self._submit(
            run, self._execute_validation, configuration, run, _as_list(table_filter)
        )

    def run_migration(
        self,
        configuration_id: ConfigurationRef,
        table_filter: Optional[Iterable[str]] = None,
        dry_run: bool = False,
        validate: bool = False,
        triggered_by: str = "system",
    ) -> RunSummary:
        """Run a migration on the calling thread.

        Raises:
            ConfigurationNotFoundError: If the configuration does not exist
            RunAbortedError: If the run hit a fatal error after it started
        """
        configuration = self.resolver.get_configuration(configuration_id)
        run = self._open_run(configuration, RunStatus.RUNNING, triggered_by, dry_run)
        self._register(run.run_id)
        try:
            return self._execute_migration(
                configuration, run, _as_list(table_filter), dry_run, validate
            )
        finally:
            self._unregister(run.run_id)

    def run_validation(
        self,
        configuration_id: ConfigurationRef,
        table_filter: Optional[Iterable[str]] = None,
        triggered_by: str = "system",
    ) -> RunSummary:
        """Run a validation on the calling thread."""
        configuration = self.resolver.get_configuration(configuration_id)
        run = self._open_run(configuration, RunStatus.VALIDATING, triggered_by, False)
        self._register(run.run_id)
        try:
            return self._execute_validation(configuration, run, _as_list(table_filter))
        finally:
            self._unregister(run.run_id)

    def get_processed_tables(self, configuration_id: Optional[ConfigurationRef] = None) -> List[str]:
        """Source tables the engine is configured to handle."""
        return self.resolver.get_processed_tables(configuration_id)

    def wait_for_run(self, run_id: int, timeout: Optional[float] = None) -> RunSummary:
        """Block until a background run finishes and return its summary.

        Raises:
            KeyError: If the run was not started in the background here
            RunAbortedError: If the run hit a fatal error
        """
        with self._lock:
            future = self._futures.get(run_id)
        if future is None:
            raise KeyError(f"Run {run_id} is not a background run of this orchestrator")

        summary = future.result(timeout=timeout)
        with self._lock:
            self._futures.pop(run_id, None)
        return summary

    def cancel_run(self, run_id: int) -> bool:
        """Ask a run to stop before its next batch.

        Returns:
            True if the run was active and has been signalled
        """
        with self._lock:
            event = self._cancel_events.get(run_id)
        if event is None:
            return False
        event.set()
        logger.info(f"Cancellation requested for run {run_id}")
        return True

    def is_active(self, run_id: int) -> bool:
        with self._lock:
            return run_id in self._cancel_events

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting runs; optionally wait for running ones."""
        if not wait:
            with self._lock:
                events = list(self._cancel_events.values())
            for event in events:
                event.set()
        self._executor.shutdown(wait=wait)

    # Run lifecycle

    def _open_run(
        self, configuration: Configuration, status: RunStatus, triggered_by: str, dry_run: bool
    ) -> Run:
        run = Run(
            configuration_id=configuration.configuration_id,
            status=status,
            triggered_by=triggered_by,
            dry_run=dry_run,
        )
        self.recorder.create_run(run)
        mode = " (dry run)" if dry_run else ""
        self._log(
            run,
            LogLevel.INFO,
            f"Run {run.run_id} started for configuration '{configuration.name}'{mode} "
            f"by {triggered_by}",
        )
        return run

    def _submit(self, run: Run, func: Callable[..., RunSummary], *args) -> int:
        self._register(run.run_id)

        def _target():
            try:
                return func(*args)
            finally:
                self._unregister(run.run_id)

        future = self._executor.submit(_target)
        future.add_done_callback(_log_background_failure)
        with self._lock:
            self._futures[run.run_id] = future
        return run.run_id

    def _register(self, run_id: int) -> threading.Event:
        event = threading.Event()
        with self._lock:
            self._cancel_events[run_id] = event
        return event

    def _unregister(self, run_id: int) -> None:
        with self._lock:
            self._cancel_events.pop(run_id, None)

    def _cancel_event(self, run_id: int) -> threading.Event:
        with self._lock:
            return self._cancel_events.setdefault(run_id, threading.Event())

    def _execute_migration(
        self,
        configuration: Configuration,
        run: Run,
        table_filter: Optional[List[str]],
        dry_run: bool,
        validate: bool,
    ) -> RunSummary:
        try:
            try:
                mappings = self.resolver.resolve_mappings(
                    configuration.configuration_id, table_filter
                )
            except NoActiveMappingsError as e:
                self._log(run, LogLevel.WARNING, e.message)
                self._close_run(run, RunStatus.COMPLETED, "No active table mappings to process")
                return RunSummary(run)

            context = self._build_context(configuration, run, dry_run)
            metrics = self._process_tables(context, mappings)
            _aggregate(run, metrics)
            status, message = self._final_status(context, metrics)

            validation_results: List[ValidationResult] = []
            if validate and not dry_run and status != RunStatus.FAILED:
                run.status = RunStatus.VALIDATING
                self.recorder.update_run(run)
                completed = {m.mapping_id for m in metrics if m.success}
                validation_results = self._validate(
                    run,
                    context.source_engine,
                    context.destination_engine,
                    [m for m in mappings if m.mapping_id in completed],
                )
                failed_tables = [t for t, ok in summarize(validation_results).items() if not ok]
                if failed_tables:
                    message = _join(message, f"Validation failed for {', '.join(failed_tables)}")

            self._close_run(run, status, message, progress=context.monitor.summary())
            return RunSummary(run, metrics, validation_results)
        except RunAbortedError:
            raise
        except Exception as e:
            self._abort(run, e)
            raise RunAbortedError(run.run_id, str(e)) from e

    def _execute_validation(
        self, configuration: Configuration, run: Run, table_filter: Optional[List[str]]
    ) -> RunSummary:
        try:
            try:
                mappings = self.resolver.resolve_mappings(
                    configuration.configuration_id, table_filter
                )
            except NoActiveMappingsError as e:
                self._log(run, LogLevel.WARNING, e.message)
                self._close_run(run, RunStatus.COMPLETED, "No active table mappings to validate")
                return RunSummary(run)

            source_engine = self.connections.get_engine(
                configuration.source_connection_id, "read"
            )
            destination_engine = self.connections.get_engine(
                configuration.destination_connection_id, "inspect"
            )
            results = self._validate(run, source_engine, destination_engine, mappings)

            outcome = summarize(results)
            run.total_tables_processed = len(outcome)
            run.successful_tables_count = sum(1 for ok in outcome.values() if ok)
            run.failed_tables_count = run.total_tables_processed - run.successful_tables_count

            if run.failed_tables_count:
                failed = [t for t, ok in outcome.items() if not ok]
                self._close_run(
                    run,
                    RunStatus.COMPLETED_WITH_ERRORS,
                    f"Validation failed for {', '.join(failed)}",
                )
            else:
                self._close_run(run, RunStatus.COMPLETED, "All validations passed")
            return RunSummary(run, [], results)
        except Exception as e:
            self._abort(run, e)
            raise RunAbortedError(run.run_id, str(e)) from e

    def _build_context(self, configuration: Configuration, run: Run, dry_run: bool) -> _RunContext:
        source_engine = self.connections.get_engine(configuration.source_connection_id, "read")
        destination_engine = None
        loader = None
        if not dry_run:
            destination_engine = self.connections.get_engine(
                configuration.destination_connection_id, "write"
            )
            loader = BatchLoader(destination_engine, timeout=self.settings.load_timeout)

        return _RunContext(
            configuration=configuration,
            run=run,
            dry_run=dry_run,
            extractor=BatchExtractor(source_engine, timeout=self.settings.extract_timeout),
            loader=loader,
            monitor=MigrationMonitor(run.run_id, configuration.reporting_frequency),
            cancel_event=self._cancel_event(run.run_id),
            source_engine=source_engine,
            destination_engine=destination_engine,
        )

    def _final_status(self, context: _RunContext, metrics: List[TableMetric]):
        if context.cancel_event.is_set():
            return RunStatus.FAILED, "Run cancelled"

        if context.abort_event.is_set():
            culprit = next(
                (m for m in metrics if m.status == TableStatus.FAILED and self._is_fatal(context, m)),
                None,
            )
            if culprit is not None:
                return RunStatus.FAILED, f"Run aborted after {culprit.full_name} failed: {culprit.message}"
            return RunStatus.FAILED, "Run aborted after a fail-on-error table failed"

        failed = [m for m in metrics if not m.success]
        if failed:
            names = ", ".join(m.full_name for m in failed)
            return RunStatus.COMPLETED_WITH_ERRORS, f"{len(failed)} table(s) failed: {names}"
        return RunStatus.COMPLETED, f"{len(metrics)} table(s) completed"

    @staticmethod
    def _is_fatal(context: _RunContext, metric: TableMetric) -> bool:
        mapping = next(
            (m for m in context.configuration.table_mappings if m.mapping_id == metric.mapping_id),
            None,
        )
        return mapping is None or mapping.fail_on_error

    def _close_run(
        self,
        run: Run,
        status: RunStatus,
        message: Optional[str],
        progress: Optional[str] = None,
    ) -> None:
        run.close(status, message)
        self.recorder.update_run(run)
        level = LogLevel.INFO if status == RunStatus.COMPLETED else LogLevel.WARNING
        if status == RunStatus.FAILED:
            level = LogLevel.ERROR
        figures = f"{run.total_rows_processed} row(s) in {run.elapsed_ms} ms"
        figures += f" ({run.average_rows_per_second:.1f} rows/s"
        figures += f"; {progress})" if progress else ")"
        self._log(
            run,
            level,
            f"Run {run.run_id} finished with status {status.value}: "
            f"{figures}. {message or ''}".rstrip(),
        )

    def _abort(self, run: Run, error: Exception) -> None:
        """Close a run as Failed after a fatal error, as far as the recorder allows."""
        logger.error(f"Run {run.run_id} aborted: {error}")
        run.close(RunStatus.FAILED, f"Fatal error: {error}")
        try:
            self.recorder.update_run(run)
            self._log(run, LogLevel.ERROR, f"Run {run.run_id} aborted", error=error)
        except PersistenceError as e:
            logger.error(f"Could not record failure of run {run.run_id}: {e}")

    # Table processing

    def _process_tables(self, context: _RunContext, mappings: List[TableMapping]) -> List[TableMetric]:
        if self.settings.max_workers <= 1 or len(mappings) <= 1:
            return self._process_sequentially(context, mappings)
        return self._process_in_parallel(context, mappings)

    def _process_sequentially(
        self, context: _RunContext, mappings: List[TableMapping]
    ) -> List[TableMetric]:
        metrics = []
        for index, mapping in enumerate(mappings):
            if context.cancel_event.is_set():
                break
            metric = self._process_table(context, mapping)
            metrics.append(metric)
            if metric.status == TableStatus.CANCELLED:
                break
            if metric.status == TableStatus.FAILED and mapping.fail_on_error:
                context.abort_event.set()
                skipped = [m.source_name for m in mappings[index + 1:]]
                if skipped:
                    self._log(
                        context.run,
                        LogLevel.ERROR,
                        f"{mapping.source_name} failed and is fail-on-error; "
                        f"not starting {', '.join(skipped)}",
                        mapping,
                    )
                break
        return metrics

    def _process_in_parallel(
        self, context: _RunContext, mappings: List[TableMapping]
    ) -> List[TableMetric]:
        def _worker(mapping: TableMapping) -> Optional[TableMetric]:
            if context.cancel_event.is_set() or context.abort_event.is_set():
                return None
            metric = self._process_table(context, mapping)
            if metric.status == TableStatus.FAILED and mapping.fail_on_error:
                context.abort_event.set()
            return metric

        workers = min(self.settings.max_workers, len(mappings))
        logger.info(f"Processing {len(mappings)} table(s) with {workers} worker(s)")
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sqltransfer-table") as pool:
            futures = [pool.submit(_worker, mapping) for mapping in mappings]
            results = [future.result() for future in futures]
        return [metric for metric in results if metric is not None]

    def _process_table(self, context: _RunContext, mapping: TableMapping) -> TableMetric:
        run = context.run
        metric = TableMetric(
            run_id=run.run_id,
            mapping_id=mapping.mapping_id,
            schema_name=mapping.source_schema,
            table_name=mapping.source_table,
        )
        metric.start()
        self.recorder.create_table_metric(metric)
        self._log(run, LogLevel.INFO, f"Starting {mapping.source_name} -> {mapping.destination_name}", mapping)

        with self._mapping_lock(mapping.mapping_id):
            try:
                with context.monitor.table_timer(mapping.source_name):
                    self._copy_table(context, mapping, metric)
                status = TableStatus.COMPLETED
                message = f"Processed {metric.rows_processed} row(s)"
                if context.dry_run:
                    message += " (dry run, nothing written)"
                level, error = LogLevel.INFO, None
            except RunCancelledError as e:
                status, message, level, error = TableStatus.CANCELLED, e.message, LogLevel.WARNING, None
            except PersistenceError:
                raise
            except TransferError as e:
                status, message, level, error = TableStatus.FAILED, str(e), LogLevel.ERROR, e
            except Exception as e:
                status, message, level, error = (
                    TableStatus.FAILED,
                    f"Unexpected error: {e}",
                    LogLevel.ERROR,
                    e,
                )

        metric.finish(status, message)
        self.recorder.update_table_metric(metric)
        self._log(
            run,
            level,
            f"{mapping.source_name} {status.value.lower()}: {message}",
            mapping,
            error=error,
        )
        return metric

    def _copy_table(self, context: _RunContext, mapping: TableMapping, metric: TableMetric) -> None:
        configuration = context.configuration
        extractor = context.extractor

        if not mapping.column_mappings:
            mapping = dataclasses.replace(
                mapping, column_mappings=extractor.discover_columns(mapping)
            )

        watermark, boundary_offset = self.watermark_store.get_position(mapping)
        metric.last_watermark = watermark
        try:
            metric.total_rows_to_process = extractor.count_rows(mapping, watermark)
        except TransferError as e:
            logger.warning(f"Could not estimate rows for {mapping.source_name}: {e}")
        self.recorder.update_table_metric(metric)

        cursor = BatchCursor.start(mapping, watermark, boundary_offset)
        if cursor.offset:
            logger.info(
                f"Resuming {mapping.source_name} after {cursor.offset} row(s) "
                f"at watermark {watermark!r}"
            )
        pending_watermark: Any = None

        while True:
            self._check_cancelled(context, mapping)
            batch = extractor.extract_batch(
                mapping,
                cursor.watermark,
                configuration.batch_size,
                offset=cursor.offset,
                inclusive=cursor.inclusive,
            )
            if batch.is_empty:
                break

            if not context.dry_run:
                context.loader.load_batch(mapping, batch.rows)
            cursor.advance(mapping, batch)
            if not context.dry_run and batch.max_watermark is not None:
                if mapping.uses_keyset_paging:
                    self.watermark_store.advance_watermark(
                        mapping,
                        batch.max_watermark,
                        boundary_offset=cursor.resume_offset(batch),
                    )
                else:
                    pending_watermark = _max(pending_watermark, batch.max_watermark)

            metric.rows_processed += len(batch)
            if batch.max_watermark is not None:
                metric.last_watermark = _max(metric.last_watermark, batch.max_watermark)
            if context.monitor.record_batch(
                mapping.source_name, len(batch), metric.total_rows_to_process
            ):
                self.recorder.update_table_metric(metric)

            if not batch.has_more:
                break

        # Offset-paged incremental tables only know their maximum once exhausted
        if pending_watermark is not None:
            self.watermark_store.advance_watermark(mapping, pending_watermark)

    def _check_cancelled(self, context: _RunContext, mapping: TableMapping) -> None:
        if context.cancel_event.is_set():
            raise RunCancelledError("Run cancelled", mapping.source_name)
        if context.abort_event.is_set():
            raise RunCancelledError(
                "Abandoned after a fail-on-error table failed", mapping.source_name
            )

    def _mapping_lock(self, mapping_id: int) -> threading.Lock:
        with self._lock:
            return self._mapping_locks.setdefault(mapping_id, threading.Lock())

    def _validate(
        self,
        run: Run,
        source_engine: Engine,
        destination_engine: Engine,
        mappings: List[TableMapping],
    ) -> List[ValidationResult]:
        engine = ValidationEngine(
            source_engine,
            destination_engine,
            sample_size=self.settings.validation_sample_size,
            incremental_only=self.settings.validate_incremental_only,
        )
        results = engine.validate(mappings)
        for result in results:
            if not result.success:
                self._log(
                    run,
                    LogLevel.WARNING,
                    f"{result.validation_type.value} validation failed for "
                    f"{result.table_name}: {result.error_message}",
                )
        passed = sum(1 for ok in summarize(results).values() if ok)
        self._log(run, LogLevel.INFO, f"Validated {len(mappings)} table(s), {passed} passed")
        return results

    def _log(
        self,
        run: Run,
        level: LogLevel,
        message: str,
        mapping: Optional[TableMapping] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        logger.log(parse_log_level(level.value), message)
        exception = None
        if error is not None:
            exception = "".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            )
        self.recorder.append_log(
            LogEntry(
                run_id=run.run_id,
                mapping_id=mapping.mapping_id if mapping else None,
                log_level=level,
                message=message,
                exception=exception,
            )
        )


def _aggregate(run: Run, metrics: List[TableMetric]) -> None:
    run.total_tables_processed = len(metrics)
    run.successful_tables_count = sum(1 for m in metrics if m.success)
    run.failed_tables_count = run.total_tables_processed - run.successful_tables_count
    run.total_rows_processed = sum(m.rows_processed for m in metrics)


def _max(current: Any, candidate: Any) -> Any:
    if current is None:
        return candidate
    return candidate if candidate > current else current


def _as_list(table_filter: Optional[Iterable[str]]) -> Optional[List[str]]:
    if table_filter is None:
        return None
    if isinstance(table_filter, str):
        return [table_filter]
    return list(table_filter)


def _join(first: Optional[str], second: str) -> str:
    return f"{first}. {second}" if first else second


def _log_background_failure(future: Future) -> None:
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.error(f"Background run failed: {error}")
