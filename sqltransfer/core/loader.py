"""Idempotent batch writes to a destination table.

Each batch is written in one destination transaction. When the destination
has a key (declared on the column mappings or its primary key) rows are
upserted, so loading the same batch twice leaves one copy of every row.
"""

import math
import threading
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from sqlalchemy import MetaData, Table, and_, bindparam, text
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError

from sqltransfer.errors import LoadError
from sqltransfer.logging import get_logger
from sqltransfer.models import ColumnMapping, TableMapping, Transformation
from sqltransfer.resilience import call_with_timeout, is_transient_error

logger = get_logger(__name__)

DEFAULT_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

_ON_CONFLICT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


class BatchLoader:
    """Writes extracted batches to the destination database."""

    def __init__(self, engine: Engine, timeout: Optional[float] = None):
        """Initialize the loader.

        Args:
            engine: Destination engine
            timeout: Default seconds allowed per batch write, overridden by
                a mapping's bulk copy timeout
        """
        self.engine = engine
        self.timeout = timeout
        self._tables: Dict[Tuple[Optional[str], str], Table] = {}
        self._lock = threading.Lock()

    def load_batch(self, mapping: TableMapping, rows: pd.DataFrame) -> int:
        """Write a batch of source rows to the mapping's destination table.

        Args:
            mapping: Table mapping being loaded
            rows: Extracted rows keyed by source column name

        Returns:
            Number of rows written

        Raises:
            LoadError: On connectivity, constraint, conversion or timeout failures
        """
        if rows is None or len(rows) == 0:
            return 0

        destination = self._get_table(mapping)
        columns, records = self.prepare_records(mapping, rows, destination)
        keys = self._key_columns(mapping, destination, columns)
        if keys:
            records = _dedupe(records, keys)

        timeout = mapping.bulk_copy_options.timeout or self.timeout
        try:
            call_with_timeout(timeout, self._write, mapping, destination, columns, keys, records)
        except TimeoutError as e:
            raise LoadError(str(e), mapping.destination_name, retryable=True) from e
        except SQLAlchemyError as e:
            raise LoadError(
                str(e).splitlines()[0],
                mapping.destination_name,
                retryable=is_transient_error(e),
            ) from e

        logger.debug(f"Loaded {len(records)} row(s) into {mapping.destination_name}")
        return len(records)

    def prepare_records(
        self, mapping: TableMapping, rows: pd.DataFrame, destination: Table
    ) -> Tuple[List[str], List[Dict[str, Any]]]:
        """Rename, transform and convert rows into insertable dictionaries.

        Returns:
            Destination column names written and one dictionary per row

        Raises:
            LoadError: If a column is missing or a value cannot be converted
        """
        column_mappings = mapping.column_mappings or [
            ColumnMapping(source_column=str(c)) for c in rows.columns
        ]
        options = mapping.bulk_copy_options
        labels = {str(c).lower(): c for c in rows.columns}

        prepared: Dict[str, List[Any]] = {}
        for column in column_mappings:
            label = labels.get(column.source_column.lower())
            if label is None:
                raise LoadError(
                    f"column '{column.source_column}' missing from extracted batch",
                    mapping.destination_name,
                )
            target = _resolve_column(destination, column.destination_column, mapping)

            if not options.keep_identity and (
                column.is_identity or destination.c[target].identity is not None
            ):
                continue

            prepared[target] = [
                self._convert_value(mapping, column, to_native(value))
                for value in rows[label].tolist()
            ]

        columns = list(prepared)
        records = [dict(zip(columns, values)) for values in zip(*prepared.values())]
        return columns, records

    def _convert_value(self, mapping: TableMapping, column: ColumnMapping, value: Any) -> Any:
        if value is not None and column.transformation is not None:
            try:
                value = apply_transformation(
                    value, column.transformation, column.transformation_format
                )
            except (TypeError, ValueError, InvalidOperation) as e:
                raise LoadError(
                    f"cannot apply {column.transformation.value} to "
                    f"{column.source_column}={value!r}: {e}",
                    mapping.destination_name,
                ) from e

        if value is None and column.default_value is not None:
            if not mapping.bulk_copy_options.keep_nulls or not column.allow_null:
                value = column.default_value
        return value

    def _key_columns(
        self, mapping: TableMapping, destination: Table, columns: List[str]
    ) -> List[str]:
        declared = [_resolve_column(destination, k, mapping) for k in mapping.key_columns]
        keys = declared or [c.name for c in destination.primary_key.columns]

        if not keys:
            logger.warning(
                f"{mapping.destination_name} has no key columns; batches are appended "
                f"and a reloaded batch will duplicate rows"
            )
            return []

        missing = [k for k in keys if k not in columns]
        if missing:
            logger.warning(
                f"Key column(s) {missing} of {mapping.destination_name} are not written; "
                f"batches are appended without upsert"
            )
            return []
        return keys

    def _write(
        self,
        mapping: TableMapping,
        destination: Table,
        columns: List[str],
        keys: List[str],
        records: List[Dict[str, Any]],
    ) -> None:
        with self.engine.begin() as connection:
            dialect = connection.dialect.name
            identity_insert = self._identity_insert_needed(mapping, destination, columns, dialect)

            if mapping.bulk_copy_options.table_lock:
                self._lock_table(connection, destination, dialect)
            if identity_insert:
                with identity_insert_enabled(connection, destination):
                    self._write_records(connection, dialect, destination, columns, keys, records)
            else:
                self._write_records(connection, dialect, destination, columns, keys, records)

    def _write_records(
        self,
        connection: Connection,
        dialect: str,
        destination: Table,
        columns: List[str],
        keys: List[str],
        records: List[Dict[str, Any]],
    ) -> None:
        if not keys:
            connection.execute(destination.insert(), records)
        elif dialect in _ON_CONFLICT_INSERTS:
            insert = _ON_CONFLICT_INSERTS[dialect](destination)
            updates = {c: insert.excluded[c] for c in columns if c not in keys}
            if updates:
                statement = insert.on_conflict_do_update(index_elements=keys, set_=updates)
            else:
                statement = insert.on_conflict_do_nothing(index_elements=keys)
            connection.execute(statement, records)
        elif dialect in ("mysql", "mariadb"):
            insert = mysql_insert(destination)
            updates = {c: insert.inserted[c] for c in columns if c not in keys}
            if updates:
                statement = insert.on_duplicate_key_update(updates)
            else:
                statement = insert.prefix_with("IGNORE")
            connection.execute(statement, records)
        else:
            self._delete_then_insert(connection, destination, keys, records)

    @staticmethod
    def _delete_then_insert(
        connection: Connection, destination: Table, keys: List[str], records: List[Dict[str, Any]]
    ) -> None:
        delete = destination.delete().where(
            and_(*[destination.c[k] == bindparam(f"key_{k}") for k in keys])
        )
        connection.execute(delete, [{f"key_{k}": r[k] for k in keys} for r in records])
        connection.execute(destination.insert(), records)

    @staticmethod
    def _identity_insert_needed(
        mapping: TableMapping, destination: Table, columns: List[str], dialect: str
    ) -> bool:
        if dialect != "mssql" or not mapping.bulk_copy_options.keep_identity:
            return False
        return any(destination.c[c].identity is not None for c in columns)

    @staticmethod
    def _lock_table(connection: Connection, destination: Table, dialect: str) -> None:
        if dialect == "postgresql":
            connection.execute(text(f"LOCK TABLE {_quoted(connection, destination)} IN EXCLUSIVE MODE"))
        elif dialect == "mssql":
            connection.execute(
                text(f"SELECT TOP 0 1 FROM {_quoted(connection, destination)} WITH (TABLOCKX)")
            )
        else:
            logger.debug(f"Table lock is not supported for {dialect}; writing without it")

    def _get_table(self, mapping: TableMapping) -> Table:
        key = (mapping.destination_schema, mapping.destination_table)
        with self._lock:
            cached = self._tables.get(key)
        if cached is not None:
            return cached

        try:
            destination = Table(
                mapping.destination_table,
                MetaData(),
                schema=mapping.destination_schema,
                autoload_with=self.engine,
            )
        except NoSuchTableError as e:
            raise LoadError("destination table does not exist", mapping.destination_name) from e
        except SQLAlchemyError as e:
            raise LoadError(
                str(e).splitlines()[0],
                mapping.destination_name,
                retryable=is_transient_error(e),
            ) from e

        with self._lock:
            self._tables[key] = destination
        return destination


def to_native(value: Any) -> Any:
    """Convert pandas/numpy scalars to plain Python values, missing values to None."""
    if value is None or value is pd.NaT:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    if isinstance(value, np.generic):
        value = value.item()
        if isinstance(value, float) and math.isnan(value):
            return None
    return value


def apply_transformation(value: Any, transformation: Transformation, fmt: Optional[str] = None) -> Any:
    """Apply a configured column transformation to a non-null value."""
    if transformation == Transformation.TO_UPPER:
        return str(value).upper()
    if transformation == Transformation.TO_LOWER:
        return str(value).lower()
    if transformation == Transformation.TRIM:
        return str(value).strip()
    if transformation == Transformation.CONVERT_TO_INT:
        return int(Decimal(str(value).strip()))
    if transformation == Transformation.CONVERT_TO_DECIMAL:
        return Decimal(str(value).strip())
    if transformation == Transformation.FORMAT_DATETIME:
        if not isinstance(value, (datetime, date)):
            value = pd.Timestamp(value).to_pydatetime()
        return value.strftime(fmt or DEFAULT_DATETIME_FORMAT)
    raise ValueError(f"Unsupported transformation {transformation}")


def _dedupe(records: List[Dict[str, Any]], keys: List[str]) -> List[Dict[str, Any]]:
    """Keep the last row for each key; one statement cannot upsert a key twice."""
    unique: Dict[tuple, Dict[str, Any]] = {}
    for record in records:
        unique[tuple(record[k] for k in keys)] = record
    if len(unique) < len(records):
        logger.debug(f"Dropped {len(records) - len(unique)} duplicate-key row(s) from batch")
    return list(unique.values())


def _resolve_column(destination: Table, name: str, mapping: TableMapping) -> str:
    if name in destination.c:
        return name
    for column in destination.columns:
        if column.name.lower() == name.lower():
            return column.name
    raise LoadError(
        f"column '{name}' does not exist in destination table", mapping.destination_name
    )


def _quoted(connection: Connection, destination: Table) -> str:
    return connection.dialect.identifier_preparer.format_table(destination)


@contextmanager
def identity_insert_enabled(connection: Connection, destination: Table):
    """Allow explicit identity values on a SQL Server table for the block.

    IDENTITY_INSERT is a session setting that survives a rollback, so it is
    switched off again when the block fails too.
    """
    table = _quoted(connection, destination)
    statement = f"SET IDENTITY_INSERT {table} OFF"
    connection.execute(text(f"SET IDENTITY_INSERT {table} ON"))
    try:
        yield
    except BaseException:
        try:
            connection.execute(text(statement))
        except SQLAlchemyError as e:
            logger.warning(f"Could not switch IDENTITY_INSERT off for {table}: {e}")
        raise
    connection.execute(text(statement))
