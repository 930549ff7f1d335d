"""State backend implementations for watermark persistence.

This module provides the abstract StateBackend interface and a DuckDB
implementation that keeps state in a single self-contained file (or in
memory for tests and dry runs).
"""

import json
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, ContextManager, Dict, Optional

import duckdb

from sqltransfer.logging import get_logger
from sqltransfer.models import utcnow

logger = get_logger(__name__)


class StateBackend(ABC):
    """Abstract interface for state persistence."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Get value for the given key.

        Args:
            key: The state key to retrieve

        Returns:
            The stored value or None if key doesn't exist
        """

    @abstractmethod
    def set(self, key: str, value: Any, timestamp: Optional[datetime] = None) -> None:
        """Set value for the given key.

        Args:
            key: The state key to store
            value: JSON-serializable value to store
            timestamp: Optional timestamp for the operation
        """

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete the given key.

        Returns:
            True if key existed and was deleted, False otherwise
        """

    @abstractmethod
    def items(self, prefix: str = "") -> Dict[str, Any]:
        """All stored values whose key starts with ``prefix``."""

    @abstractmethod
    def transaction(self) -> ContextManager[Any]:
        """Context manager for atomic transactions."""

    @abstractmethod
    def close(self) -> None:
        """Close the backend and clean up resources."""


class DuckDBStateBackend(StateBackend):
    """DuckDB-based state persistence backend.

    A single connection is shared by all callers; a re-entrant lock
    serializes statements and holds for the whole of a transaction, so
    worker threads may share one backend.
    """

    def __init__(
        self,
        path: Optional[str] = None,
        connection: Optional[duckdb.DuckDBPyConnection] = None,
    ):
        """Initialize DuckDB state backend.

        Args:
            path: Database file; an in-memory database is used when omitted
            connection: Optional existing DuckDB connection (takes precedence)
        """
        self.path = path
        self.connection = connection or duckdb.connect(path or ":memory:")
        self._lock = threading.RLock()
        self._create_state_tables()
        logger.info(f"DuckDB state backend initialized ({path or 'in-memory'})")

    def _create_state_tables(self) -> None:
        with self._lock:
            self.connection.execute(
                """
                CREATE TABLE IF NOT EXISTS sqltransfer_state (
                    key VARCHAR PRIMARY KEY,
                    value VARCHAR NOT NULL,  -- JSON encoded
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """
            )
        logger.debug("State tables created successfully")

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            try:
                result = self.connection.execute(
                    "SELECT value FROM sqltransfer_state WHERE key = ?", [key]
                ).fetchone()
            except duckdb.Error as e:
                logger.error(f"Failed to get state for key {key}: {e}")
                raise

        if result is None:
            return None
        return json.loads(result[0])

    def set(self, key: str, value: Any, timestamp: Optional[datetime] = None) -> None:
        json_value = json.dumps(value, default=str)
        ts = timestamp or utcnow()

        with self._lock:
            try:
                self.connection.execute(
                    """
                    INSERT OR REPLACE INTO sqltransfer_state (key, value, updated_at)
                    VALUES (?, ?, ?)
                """,
                    [key, json_value, ts],
                )
            except duckdb.Error as e:
                logger.error(f"Failed to set state for key {key}: {e}")
                raise

        logger.debug(f"Set state for key {key}")

    def delete(self, key: str) -> bool:
        with self._lock:
            try:
                exists = self.connection.execute(
                    "SELECT 1 FROM sqltransfer_state WHERE key = ?", [key]
                ).fetchone()
                if not exists:
                    return False
                self.connection.execute(
                    "DELETE FROM sqltransfer_state WHERE key = ?", [key]
                )
            except duckdb.Error as e:
                logger.error(f"Failed to delete state for key {key}: {e}")
                raise

        logger.debug(f"Deleted state for key {key}")
        return True

    def items(self, prefix: str = "") -> Dict[str, Any]:
        with self._lock:
            rows = self.connection.execute(
                "SELECT key, value FROM sqltransfer_state WHERE starts_with(key, ?) ORDER BY key",
                [prefix],
            ).fetchall()
        return {key: json.loads(value) for key, value in rows}

    def transaction(self) -> ContextManager[Any]:
        return DuckDBTransaction(self.connection, self._lock)

    def close(self) -> None:
        with self._lock:
            if self.connection:
                self.connection.close()
                self.connection = None
                logger.info("DuckDB state backend closed")


class DuckDBTransaction:
    """Context manager for DuckDB transactions."""

    def __init__(self, connection: duckdb.DuckDBPyConnection, lock: threading.RLock):
        self.connection = connection
        self._lock = lock

    def __enter__(self):
        self._lock.acquire()
        try:
            self.connection.execute("BEGIN TRANSACTION")
        except BaseException:
            self._lock.release()
            raise
        logger.debug("Started DuckDB transaction")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """End transaction, rolling back on error."""
        try:
            if exc_type is not None:
                self.connection.execute("ROLLBACK")
                logger.debug("Rolled back DuckDB transaction due to error")
            else:
                self.connection.execute("COMMIT")
                logger.debug("Committed DuckDB transaction")
        finally:
            self._lock.release()
