"""Watermark persistence for incremental table mappings.

A watermark is the highest incremental value whose batch has been durably
written to the destination. It is stored per table mapping id together with
the incremental type and column it was recorded for, so that a mapping whose
incremental definition changes starts again from its configured start value.

While a table is part-way through rows sharing one incremental value, the
number of those rows already written is stored as the boundary offset. A
run resuming from such a position reads ``>= value`` and skips that many
rows, so an interrupted table never leaves rows behind at its watermark.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import duckdb

from sqltransfer.core.state.backends import StateBackend
from sqltransfer.errors import WatermarkAdvanceError, WatermarkError
from sqltransfer.logging import get_logger
from sqltransfer.models import IncrementalType, TableMapping, coerce_incremental_value, utcnow
from sqltransfer.resilience import RetryConfig, RetryHandler

logger = get_logger(__name__)

KEY_PREFIX = "watermark."


class WatermarkStore:
    """Reads and atomically advances per-mapping watermarks.

    Advances are monotonic: a value lower than the stored one is ignored.
    Callers must only advance after the corresponding batch is committed.
    """

    def __init__(self, state_backend: StateBackend, retry_config: Optional[RetryConfig] = None):
        """Initialize WatermarkStore.

        Args:
            state_backend: Backend for state persistence
            retry_config: Retry policy for transient backend write failures
        """
        self.backend = state_backend
        self._retry = RetryHandler(
            retry_config
            or RetryConfig(
                max_attempts=3,
                initial_delay=0.1,
                retry_on_exceptions=[duckdb.IOException, duckdb.TransactionException],
            )
        )

    @staticmethod
    def get_state_key(mapping_id: int) -> str:
        return f"{KEY_PREFIX}{mapping_id}"

    def get_watermark(self, mapping: TableMapping) -> Any:
        """Last committed incremental value, or the mapping's start value.

        Returns:
            A typed value (``int`` or ``datetime``), or None for
            non-incremental mappings and fresh mappings without a start value

        Raises:
            WatermarkError: If the backend cannot be read
        """
        return self.get_position(mapping)[0]

    def get_position(self, mapping: TableMapping) -> Tuple[Any, int]:
        """Watermark together with its boundary offset.

        Returns:
            ``(watermark, boundary_offset)``; the offset is 0 unless a run
            stopped part-way through rows sharing the watermark value

        Raises:
            WatermarkError: If the backend cannot be read
        """
        if not mapping.is_incremental:
            return None, 0

        key = self.get_state_key(mapping.mapping_id)
        try:
            record = self.backend.get(key)
        except Exception as e:
            logger.error(f"Failed to get watermark for {mapping.source_name}: {e}")
            raise WatermarkError(
                f"Failed to retrieve watermark: {e}", mapping.source_name
            ) from e

        stored = self._decode(record, mapping)
        if stored is None:
            logger.debug(
                f"No stored watermark for {mapping.source_name}, "
                f"using start value {mapping.incremental_start_value!r}"
            )
            return mapping.incremental_start_value, 0

        boundary_offset = int(record.get("boundary_offset") or 0)
        logger.debug(
            f"Retrieved watermark for {mapping.source_name}: {stored!r} "
            f"(boundary offset {boundary_offset})"
        )
        return stored, boundary_offset

    def advance_watermark(self, mapping: TableMapping, value: Any, boundary_offset: int = 0) -> bool:
        """Atomically store a new watermark for a mapping.

        Args:
            mapping: Mapping whose batch was just committed
            value: Maximum incremental value of that batch
            boundary_offset: Rows at ``value`` already written while more
                rows at that value may remain unread; 0 when none remain

        Returns:
            True if the stored value changed, False if it was ignored

        Raises:
            WatermarkAdvanceError: If the value cannot be persisted
        """
        if not mapping.is_incremental or value is None:
            return False
        if boundary_offset < 0:
            raise WatermarkAdvanceError(
                f"boundary offset must not be negative, got {boundary_offset}",
                mapping.source_name,
            )

        try:
            typed_value = coerce_incremental_value(value, mapping.incremental_type)
        except (TypeError, ValueError) as e:
            raise WatermarkAdvanceError(
                f"value {value!r} is not a valid {mapping.incremental_type.value}: {e}",
                mapping.source_name,
            ) from e

        try:
            return self._retry.execute_with_retry(
                self._advance, mapping, typed_value, boundary_offset
            )
        except Exception as e:
            logger.error(f"Failed to advance watermark for {mapping.source_name}: {e}")
            raise WatermarkAdvanceError(str(e), mapping.source_name) from e

    def _advance(self, mapping: TableMapping, value: Any, boundary_offset: int) -> bool:
        key = self.get_state_key(mapping.mapping_id)
        with self.backend.transaction():
            current = self._decode(self.backend.get(key), mapping)
            if current is not None and value < current:
                logger.warning(
                    f"Ignoring watermark {value!r} for {mapping.source_name}: "
                    f"lower than stored {current!r}"
                )
                return False
            self.backend.set(key, self._encode(mapping, value, boundary_offset), utcnow())

        if boundary_offset:
            logger.info(
                f"Advanced watermark for {mapping.source_name} to {value!r} "
                f"with {boundary_offset} boundary row(s) read"
            )
        else:
            logger.info(f"Advanced watermark for {mapping.source_name} to {value!r}")
        return True

    def reset_watermark(self, mapping: TableMapping) -> bool:
        """Forget the stored watermark so the next run starts from the start value.

        Returns:
            True if a watermark existed and was deleted
        """
        key = self.get_state_key(mapping.mapping_id)
        try:
            deleted = self.backend.delete(key)
        except Exception as e:
            raise WatermarkError(f"Failed to reset watermark: {e}", mapping.source_name) from e

        if deleted:
            logger.info(f"Reset watermark for {mapping.source_name}")
        else:
            logger.debug(f"No watermark found to reset for {mapping.source_name}")
        return deleted

    def list_watermarks(self) -> List[Dict[str, Any]]:
        """All stored watermarks as plain dictionaries, ordered by key."""
        try:
            records = self.backend.items(KEY_PREFIX)
        except Exception as e:
            raise WatermarkError(f"Failed to list watermarks: {e}") from e

        watermarks = []
        for key, record in records.items():
            watermarks.append(
                {
                    "mapping_id": int(key[len(KEY_PREFIX):]),
                    "table": record.get("table"),
                    "column": record.get("column"),
                    "type": record.get("type"),
                    "value": record.get("value"),
                    "boundary_offset": int(record.get("boundary_offset") or 0),
                }
            )
        return watermarks

    @staticmethod
    def _encode(mapping: TableMapping, value: Any, boundary_offset: int = 0) -> Dict[str, Any]:
        return {
            "table": mapping.source_name,
            "type": mapping.incremental_type.value,
            "column": mapping.incremental_column,
            "value": value.isoformat() if isinstance(value, datetime) else value,
            "boundary_offset": boundary_offset,
        }

    @staticmethod
    def _decode(record: Optional[Dict[str, Any]], mapping: TableMapping) -> Any:
        if not record or record.get("value") is None:
            return None
        if record.get("type") != mapping.incremental_type.value:
            return None
        if str(record.get("column", "")).lower() != mapping.incremental_column.lower():
            return None
        if mapping.incremental_type == IncrementalType.DATETIME:
            return datetime.fromisoformat(record["value"])
        return coerce_incremental_value(record["value"], mapping.incremental_type)
