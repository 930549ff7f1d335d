"""Persistence of run, table metric and log records.

The orchestrator writes through the RunRecorder interface only. Writes are
retried a bounded number of times; a write that still fails raises
PersistenceError, which ends the run.
"""

import copy
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from sqltransfer.errors import PersistenceError
from sqltransfer.logging import get_logger
from sqltransfer.models import LogEntry, LogLevel, Run, RunStatus, TableMetric, TableStatus
from sqltransfer.resilience import RetryConfig, RetryHandler

logger = get_logger(__name__)


class RunRecorder(ABC):
    """Append-only sink for run accounting, with read-back for display."""

    @abstractmethod
    def create_run(self, run: Run) -> int:
        """Persist a new run and assign ``run.run_id``."""

    @abstractmethod
    def update_run(self, run: Run) -> None:
        """Persist the current state of a run."""

    @abstractmethod
    def create_table_metric(self, metric: TableMetric) -> int:
        """Persist a new table metric and assign ``metric.metric_id``."""

    @abstractmethod
    def update_table_metric(self, metric: TableMetric) -> None:
        """Persist the current state of a table metric."""

    @abstractmethod
    def append_log(self, entry: LogEntry) -> None:
        """Append a log entry."""

    @abstractmethod
    def get_run(self, run_id: int) -> Optional[Run]:
        """Run by id, or None."""

    @abstractmethod
    def get_table_metrics(self, run_id: int) -> List[TableMetric]:
        """Table metrics of a run in creation order."""

    @abstractmethod
    def get_logs(self, run_id: int) -> List[LogEntry]:
        """Log entries of a run in append order."""

    @abstractmethod
    def get_last_run(self, configuration_id: int) -> Optional[Run]:
        """Most recently started run of a configuration, or None."""


class InMemoryRunRecorder(RunRecorder):
    """Recorder that keeps copies of every record in process memory."""

    def __init__(self):
        self._lock = threading.RLock()
        self._runs: Dict[int, Run] = {}
        self._metrics: Dict[int, TableMetric] = {}
        self._logs: List[LogEntry] = []

    def create_run(self, run: Run) -> int:
        with self._lock:
            run.run_id = len(self._runs) + 1
            self._runs[run.run_id] = copy.copy(run)
            return run.run_id

    def update_run(self, run: Run) -> None:
        with self._lock:
            if run.run_id not in self._runs:
                raise PersistenceError(f"run {run.run_id} does not exist")
            self._runs[run.run_id] = copy.copy(run)

    def create_table_metric(self, metric: TableMetric) -> int:
        with self._lock:
            metric.metric_id = len(self._metrics) + 1
            self._metrics[metric.metric_id] = copy.copy(metric)
            return metric.metric_id

    def update_table_metric(self, metric: TableMetric) -> None:
        with self._lock:
            if metric.metric_id not in self._metrics:
                raise PersistenceError(f"table metric {metric.metric_id} does not exist")
            self._metrics[metric.metric_id] = copy.copy(metric)

    def append_log(self, entry: LogEntry) -> None:
        with self._lock:
            self._logs.append(copy.copy(entry))

    def get_run(self, run_id: int) -> Optional[Run]:
        with self._lock:
            run = self._runs.get(run_id)
            return copy.copy(run) if run else None

    def get_table_metrics(self, run_id: int) -> List[TableMetric]:
        with self._lock:
            return [copy.copy(m) for m in self._metrics.values() if m.run_id == run_id]

    def get_logs(self, run_id: int) -> List[LogEntry]:
        with self._lock:
            return [copy.copy(e) for e in self._logs if e.run_id == run_id]

    def get_last_run(self, configuration_id: int) -> Optional[Run]:
        with self._lock:
            runs = [r for r in self._runs.values() if r.configuration_id == configuration_id]
            if not runs:
                return None
            return copy.copy(max(runs, key=lambda r: (r.start_time, r.run_id)))


metadata = MetaData()

runs_table = Table(
    "transfer_runs",
    metadata,
    Column("run_id", Integer, primary_key=True, autoincrement=True),
    Column("configuration_id", Integer, nullable=False, index=True),
    Column("start_time", DateTime, nullable=False),
    Column("end_time", DateTime),
    Column("status", String(32), nullable=False),
    Column("triggered_by", String(128)),
    Column("dry_run", Boolean, nullable=False, default=False),
    Column("total_tables_processed", Integer, nullable=False, default=0),
    Column("successful_tables_count", Integer, nullable=False, default=0),
    Column("failed_tables_count", Integer, nullable=False, default=0),
    Column("total_rows_processed", Integer, nullable=False, default=0),
    Column("elapsed_ms", Integer, nullable=False, default=0),
    Column("average_rows_per_second", Float, nullable=False, default=0.0),
    Column("message", Text),
)

table_metrics_table = Table(
    "transfer_table_metrics",
    metadata,
    Column("metric_id", Integer, primary_key=True, autoincrement=True),
    Column("run_id", Integer, nullable=False, index=True),
    Column("mapping_id", Integer, nullable=False),
    Column("schema_name", String(128)),
    Column("table_name", String(256), nullable=False),
    Column("status", String(32), nullable=False),
    Column("start_time", DateTime),
    Column("end_time", DateTime),
    Column("rows_processed", Integer, nullable=False, default=0),
    Column("total_rows_to_process", Integer),
    Column("elapsed_ms", Integer, nullable=False, default=0),
    Column("rows_per_second", Float, nullable=False, default=0.0),
    Column("success", Boolean, nullable=False, default=False),
    Column("message", Text),
    Column("last_watermark", String(64)),
)

logs_table = Table(
    "transfer_logs",
    metadata,
    Column("log_id", Integer, primary_key=True, autoincrement=True),
    Column("run_id", Integer, index=True),
    Column("mapping_id", Integer),
    Column("log_time", DateTime, nullable=False),
    Column("log_level", String(16), nullable=False),
    Column("message", Text, nullable=False),
    Column("exception", Text),
)


class SqlRunRecorder(RunRecorder):
    """Recorder backed by three tables in the operator's own database."""

    def __init__(
        self,
        engine: Engine,
        retry_config: Optional[RetryConfig] = None,
        create_tables: bool = True,
    ):
        """Initialize the recorder.

        Args:
            engine: Engine for the bookkeeping database
            retry_config: Retry policy for transient write failures
            create_tables: Create the bookkeeping tables if missing

        Raises:
            PersistenceError: If the tables cannot be created
        """
        self.engine = engine
        self._retry = RetryHandler(retry_config or RetryConfig())
        if create_tables:
            self._execute("create tables", lambda: metadata.create_all(self.engine))

    @classmethod
    def from_url(cls, url: str, retry_config: Optional[RetryConfig] = None) -> "SqlRunRecorder":
        return cls(create_engine(url, pool_pre_ping=True), retry_config)

    def create_run(self, run: Run) -> int:
        run.run_id = self._insert("create run", runs_table, _run_values(run))
        return run.run_id

    def update_run(self, run: Run) -> None:
        self._update(
            "update run", runs_table, runs_table.c.run_id == run.run_id, _run_values(run)
        )

    def create_table_metric(self, metric: TableMetric) -> int:
        metric.metric_id = self._insert(
            "create table metric", table_metrics_table, _metric_values(metric)
        )
        return metric.metric_id

    def update_table_metric(self, metric: TableMetric) -> None:
        self._update(
            "update table metric",
            table_metrics_table,
            table_metrics_table.c.metric_id == metric.metric_id,
            _metric_values(metric),
        )

    def append_log(self, entry: LogEntry) -> None:
        self._insert(
            "append log",
            logs_table,
            {
                "run_id": entry.run_id,
                "mapping_id": entry.mapping_id,
                "log_time": entry.log_time,
                "log_level": entry.log_level.value,
                "message": entry.message,
                "exception": entry.exception,
            },
        )

    def get_run(self, run_id: int) -> Optional[Run]:
        rows = self._select("get run", select(runs_table).where(runs_table.c.run_id == run_id))
        return _run_from_row(rows[0]) if rows else None

    def get_table_metrics(self, run_id: int) -> List[TableMetric]:
        query = (
            select(table_metrics_table)
            .where(table_metrics_table.c.run_id == run_id)
            .order_by(table_metrics_table.c.metric_id)
        )
        return [_metric_from_row(row) for row in self._select("get table metrics", query)]

    def get_logs(self, run_id: int) -> List[LogEntry]:
        query = select(logs_table).where(logs_table.c.run_id == run_id).order_by(logs_table.c.log_id)
        return [
            LogEntry(
                run_id=row.run_id,
                mapping_id=row.mapping_id,
                log_time=row.log_time,
                log_level=LogLevel(row.log_level),
                message=row.message,
                exception=row.exception,
            )
            for row in self._select("get logs", query)
        ]

    def get_last_run(self, configuration_id: int) -> Optional[Run]:
        query = (
            select(runs_table)
            .where(runs_table.c.configuration_id == configuration_id)
            .order_by(runs_table.c.start_time.desc(), runs_table.c.run_id.desc())
            .limit(1)
        )
        rows = self._select("get last run", query)
        return _run_from_row(rows[0]) if rows else None

    def _insert(self, operation: str, table: Table, values: Dict[str, Any]) -> int:
        def _do():
            with self.engine.begin() as connection:
                result = connection.execute(insert(table).values(**values))
                return int(result.inserted_primary_key[0])

        return self._execute(operation, _do)

    def _update(self, operation: str, table: Table, where, values: Dict[str, Any]) -> None:
        def _do():
            with self.engine.begin() as connection:
                result = connection.execute(update(table).where(where).values(**values))
                if result.rowcount == 0:
                    raise PersistenceError(f"{operation}: no matching record")

        self._execute(operation, _do)

    def _select(self, operation: str, query) -> List[Any]:
        def _do():
            with self.engine.connect() as connection:
                return list(connection.execute(query))

        return self._execute(operation, _do)

    def _execute(self, operation: str, func: Callable[[], Any]) -> Any:
        try:
            return self._retry.execute_with_retry(func)
        except PersistenceError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Recorder failed to {operation}: {e}")
            raise PersistenceError(f"failed to {operation}: {str(e).splitlines()[0]}") from e


def _run_values(run: Run) -> Dict[str, Any]:
    return {
        "configuration_id": run.configuration_id,
        "start_time": run.start_time,
        "end_time": run.end_time,
        "status": run.status.value,
        "triggered_by": run.triggered_by,
        "dry_run": run.dry_run,
        "total_tables_processed": run.total_tables_processed,
        "successful_tables_count": run.successful_tables_count,
        "failed_tables_count": run.failed_tables_count,
        "total_rows_processed": run.total_rows_processed,
        "elapsed_ms": run.elapsed_ms,
        "average_rows_per_second": run.average_rows_per_second,
        "message": run.message,
    }


def _metric_values(metric: TableMetric) -> Dict[str, Any]:
    watermark = metric.last_watermark
    if isinstance(watermark, datetime):
        watermark = watermark.isoformat()
    return {
        "run_id": metric.run_id,
        "mapping_id": metric.mapping_id,
        "schema_name": metric.schema_name,
        "table_name": metric.table_name,
        "status": metric.status.value,
        "start_time": metric.start_time,
        "end_time": metric.end_time,
        "rows_processed": metric.rows_processed,
        "total_rows_to_process": metric.total_rows_to_process,
        "elapsed_ms": metric.elapsed_ms,
        "rows_per_second": metric.rows_per_second,
        "success": metric.success,
        "message": metric.message,
        "last_watermark": str(watermark) if watermark is not None else None,
    }


def _run_from_row(row) -> Run:
    return Run(
        run_id=row.run_id,
        configuration_id=row.configuration_id,
        start_time=row.start_time,
        end_time=row.end_time,
        status=RunStatus(row.status),
        triggered_by=row.triggered_by,
        dry_run=bool(row.dry_run),
        total_tables_processed=row.total_tables_processed,
        successful_tables_count=row.successful_tables_count,
        failed_tables_count=row.failed_tables_count,
        total_rows_processed=row.total_rows_processed,
        elapsed_ms=row.elapsed_ms,
        average_rows_per_second=row.average_rows_per_second,
        message=row.message,
    )


def _metric_from_row(row) -> TableMetric:
    return TableMetric(
        metric_id=row.metric_id,
        run_id=row.run_id,
        mapping_id=row.mapping_id,
        schema_name=row.schema_name,
        table_name=row.table_name,
        status=TableStatus(row.status),
        start_time=row.start_time,
        end_time=row.end_time,
        rows_processed=row.rows_processed,
        total_rows_to_process=row.total_rows_to_process,
        elapsed_ms=row.elapsed_ms,
        rows_per_second=row.rows_per_second,
        message=row.message,
        last_watermark=row.last_watermark,
    )
