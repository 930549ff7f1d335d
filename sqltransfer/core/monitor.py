"""Progress reporting for migration runs."""

import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, Optional

from sqltransfer.logging import get_logger

logger = get_logger(__name__)


class MigrationMonitor:
    """Tracks batch progress for one run and logs it at a fixed cadence.

    Thread-safe, so parallel table workers may share one monitor.
    """

    def __init__(self, run_id: Optional[int], reporting_frequency: int = 10):
        self.run_id = run_id
        self.reporting_frequency = max(1, reporting_frequency)
        self._lock = threading.RLock()
        self._tables: Dict[str, Dict[str, Any]] = {}
        self.metrics = {
            "tables_started": 0,
            "tables_completed": 0,
            "tables_failed": 0,
            "batches": 0,
            "rows": 0,
        }

    @contextmanager
    def table_timer(self, table_name: str):
        """Time one table; failures are logged and re-raised."""
        with self._lock:
            self._tables[table_name] = {"batches": 0, "rows": 0, "started": time.time()}
            self.metrics["tables_started"] += 1
        logger.info(f"📊 Run {self.run_id}: starting {table_name}")

        try:
            yield
        except Exception as e:
            duration = self._elapsed(table_name)
            with self._lock:
                self.metrics["tables_failed"] += 1
            logger.error(f"❌ Run {self.run_id}: {table_name} failed after {duration:.2f}s - {e}")
            raise

        duration = self._elapsed(table_name)
        with self._lock:
            self.metrics["tables_completed"] += 1
            rows = self._tables[table_name]["rows"]
        logger.info(
            f"✅ Run {self.run_id}: {table_name} finished, {rows} row(s) in {duration:.2f}s"
        )

    def record_batch(self, table_name: str, rows: int, total: Optional[int] = None) -> bool:
        """Count a processed batch.

        Returns:
            True when this batch is a reporting point, i.e. every
            ``reporting_frequency`` batches
        """
        with self._lock:
            table = self._tables.setdefault(
                table_name, {"batches": 0, "rows": 0, "started": time.time()}
            )
            table["batches"] += 1
            table["rows"] += rows
            self.metrics["batches"] += 1
            self.metrics["rows"] += rows
            batches, processed = table["batches"], table["rows"]

        if batches % self.reporting_frequency != 0:
            return False

        elapsed = self._elapsed(table_name)
        rate = processed / elapsed if elapsed > 0 else 0.0
        if total:
            percent = min(100.0, processed * 100.0 / total)
            logger.info(
                f"📊 Run {self.run_id}: {table_name} {processed}/{total} rows "
                f"({percent:.1f}%), {batches} batches, {rate:.0f} rows/s"
            )
        else:
            logger.info(
                f"📊 Run {self.run_id}: {table_name} {processed} rows, "
                f"{batches} batches, {rate:.0f} rows/s"
            )
        return True

    def get_metrics(self) -> Dict[str, Any]:
        """Get current metrics (thread-safe copy)."""
        with self._lock:
            return self.metrics.copy()

    def summary(self) -> str:
        """One-line account of the batches and tables seen so far."""
        metrics = self.get_metrics()
        return (
            f"{metrics['batches']} batch(es) over {metrics['tables_started']} table(s): "
            f"{metrics['tables_completed']} finished, {metrics['tables_failed']} stopped"
        )

    def _elapsed(self, table_name: str) -> float:
        with self._lock:
            started = self._tables.get(table_name, {}).get("started", time.time())
        return time.time() - started
