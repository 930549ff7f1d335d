"""Batched, ordered reads from a source table.

Every query is built with SQLAlchemy Core against the reflected source
table, so identifiers are quoted by the dialect and watermarks are bound
parameters of the incremental column's type.
"""

import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd
from sqlalchemy import MetaData, Table, and_, func, inspect, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError
from sqlalchemy.sql import Select

from sqltransfer.errors import ExtractionError
from sqltransfer.logging import get_logger
from sqltransfer.models import ColumnMapping, CompareOperator, TableMapping
from sqltransfer.resilience import call_with_timeout, is_transient_error

logger = get_logger(__name__)


@dataclass
class ExtractedBatch:
    """One page of source rows.

    Attributes:
        rows: Extracted rows, one column per selected source column
        max_watermark: Highest incremental value in the page, if any
        has_more: True when the page was full, so another may follow
        boundary_count: Rows in the page whose value equals ``max_watermark``
    """

    rows: pd.DataFrame
    max_watermark: Any = None
    has_more: bool = False
    boundary_count: int = 0

    def __len__(self) -> int:
        return len(self.rows)

    @property
    def is_empty(self) -> bool:
        return len(self.rows) == 0


@dataclass
class BatchCursor:
    """Position of the next page to read for one mapping.

    When batches are ordered by the incremental column the cursor moves its
    lower bound up to the last value seen and skips the rows already read at
    that value, so equal values spanning a page boundary are neither lost
    nor read twice. Otherwise the predicate stays fixed and only the offset
    moves.
    """

    watermark: Any
    inclusive: bool = False
    offset: int = 0

    @classmethod
    def start(cls, mapping: TableMapping, watermark: Any, boundary_offset: int = 0) -> "BatchCursor":
        """Cursor for the first page after a stored position.

        A non-zero ``boundary_offset`` resumes inside the rows sharing the
        watermark value, whatever the mapping's compare operator.
        """
        if boundary_offset and watermark is not None and mapping.uses_keyset_paging:
            return cls(watermark=watermark, inclusive=True, offset=boundary_offset)
        return cls(
            watermark=watermark,
            inclusive=mapping.incremental_compare_operator == CompareOperator.GTE,
        )

    def resume_offset(self, batch: ExtractedBatch) -> int:
        """Boundary offset to store with a keyset page's watermark.

        Call after ``advance``. A full page may be followed by more rows at
        its maximum value, so the rows read at that value are kept; after a
        short page none remain.
        """
        return self.offset if batch.has_more else 0

    def advance(self, mapping: TableMapping, batch: ExtractedBatch) -> None:
        if mapping.uses_keyset_paging and batch.max_watermark is not None:
            if self.inclusive and batch.max_watermark == self.watermark:
                self.offset += batch.boundary_count
            else:
                self.offset = batch.boundary_count
            self.watermark = batch.max_watermark
            self.inclusive = True
        else:
            self.offset += len(batch)


class BatchExtractor:
    """Reads pages of rows from the source database."""

    def __init__(self, engine: Engine, timeout: Optional[float] = None):
        """Initialize the extractor.

        Args:
            engine: Source engine
            timeout: Seconds allowed for each query, None for no limit
        """
        self.engine = engine
        self.timeout = timeout
        self._tables: Dict[Tuple[Optional[str], str], Table] = {}
        self._lock = threading.Lock()

    def extract_batch(
        self,
        mapping: TableMapping,
        watermark: Any,
        batch_size: int,
        offset: int = 0,
        inclusive: Optional[bool] = None,
    ) -> ExtractedBatch:
        """Read one page of rows past the watermark.

        Args:
            mapping: Table mapping to read
            watermark: Lower bound for the incremental column; no bound when None
            batch_size: Maximum rows to return
            offset: Rows to skip after ordering
            inclusive: Compare with ``>=`` instead of ``>``; defaults to the
                mapping's operator

        Returns:
            ExtractedBatch for the page

        Raises:
            ExtractionError: On connectivity, SQL or timeout failures
        """
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")

        query = self.build_query(mapping, watermark, batch_size, offset, inclusive)
        columns, records = self._run(mapping, self._fetch, query)

        max_watermark, boundary_count = None, 0
        if mapping.is_incremental and records:
            position = _position(columns, mapping.incremental_column)
            values = [r[position] for r in records if r[position] is not None]
            if values:
                max_watermark = max(values)
                boundary_count = sum(1 for v in values if v == max_watermark)

        frame = pd.DataFrame(records, columns=columns, dtype=object)
        batch = ExtractedBatch(
            rows=frame,
            max_watermark=max_watermark,
            has_more=len(records) == batch_size,
            boundary_count=boundary_count,
        )
        logger.debug(
            f"Extracted {len(batch)} row(s) from {mapping.source_name} "
            f"(offset={offset}, max={max_watermark!r}, has_more={batch.has_more})"
        )
        return batch

    def build_query(
        self,
        mapping: TableMapping,
        watermark: Any,
        batch_size: int,
        offset: int = 0,
        inclusive: Optional[bool] = None,
    ) -> Select:
        """SELECT of the mapped columns with filter, ordering and paging applied."""
        source = self._get_table(mapping)
        selected = self._selected_columns(mapping, source)

        query = select(*[source.c[name] for name in selected])
        predicate = self._predicate(mapping, source, watermark, inclusive)
        if predicate is not None:
            query = query.where(predicate)

        return (
            query.order_by(*self._order_columns(mapping, source, selected))
            .limit(batch_size)
            .offset(offset)
        )

    def count_rows(self, mapping: TableMapping, watermark: Any) -> int:
        """Rows currently waiting past the watermark, for progress estimates.

        Raises:
            ExtractionError: On connectivity, SQL or timeout failures
        """
        source = self._get_table(mapping)
        query = select(func.count()).select_from(source)
        predicate = self._predicate(mapping, source, watermark, None)
        if predicate is not None:
            query = query.where(predicate)

        def _count():
            with self.engine.connect() as connection:
                return int(connection.execute(query).scalar() or 0)

        return self._run(mapping, _count)

    def discover_columns(self, mapping: TableMapping) -> List[ColumnMapping]:
        """Column mappings for every source column, same names on both sides.

        Raises:
            ExtractionError: If the source table cannot be inspected
        """

        def _discover():
            inspector = inspect(self.engine)
            try:
                columns = inspector.get_columns(mapping.source_table, schema=mapping.source_schema)
            except NoSuchTableError as e:
                raise ExtractionError("source table does not exist", mapping.source_name) from e
            primary_key = inspector.get_pk_constraint(
                mapping.source_table, schema=mapping.source_schema
            ).get("constrained_columns") or []
            return columns, primary_key

        columns, primary_key = self._run(mapping, _discover)
        if not columns:
            raise ExtractionError("source table has no columns or does not exist", mapping.source_name)

        discovered = [
            ColumnMapping(
                source_column=col["name"],
                data_type=str(col["type"]),
                allow_null=bool(col.get("nullable", True)),
                is_key=col["name"] in primary_key,
                is_identity=col.get("identity") is not None,
            )
            for col in columns
        ]
        logger.info(
            f"Discovered {len(discovered)} column(s) for {mapping.source_name}: "
            f"{[c.source_column for c in discovered]}"
        )
        return discovered

    def _fetch(self, query: Select) -> Tuple[List[str], List[tuple]]:
        with self.engine.connect() as connection:
            result = connection.execute(query)
            columns = list(result.keys())
            records = [tuple(row) for row in result.fetchall()]
        return columns, records

    def _run(self, mapping: TableMapping, operation, *args):
        try:
            return call_with_timeout(self.timeout, operation, *args)
        except TimeoutError as e:
            raise ExtractionError(str(e), mapping.source_name, retryable=True) from e
        except SQLAlchemyError as e:
            raise ExtractionError(
                str(e).splitlines()[0], mapping.source_name, retryable=is_transient_error(e)
            ) from e

    def _get_table(self, mapping: TableMapping) -> Table:
        key = (mapping.source_schema, mapping.source_table)
        with self._lock:
            cached = self._tables.get(key)
        if cached is not None:
            return cached

        def _reflect():
            try:
                return Table(
                    mapping.source_table,
                    MetaData(),
                    schema=mapping.source_schema,
                    autoload_with=self.engine,
                )
            except NoSuchTableError as e:
                raise ExtractionError("source table does not exist", mapping.source_name) from e

        source = self._run(mapping, _reflect)

        with self._lock:
            self._tables[key] = source
        return source

    def _selected_columns(self, mapping: TableMapping, source: Table) -> List[str]:
        """Reflected names of the columns to read, incremental column included."""
        wanted = [c.source_column for c in mapping.column_mappings] or [
            c.name for c in source.columns
        ]
        if mapping.is_incremental:
            wanted.append(mapping.incremental_column)

        selected: List[str] = []
        for name in wanted:
            resolved = _resolve_column(source, name, mapping)
            if resolved not in selected:
                selected.append(resolved)
        return selected

    def _predicate(
        self, mapping: TableMapping, source: Table, watermark: Any, inclusive: Optional[bool]
    ):
        clauses = []
        if mapping.is_incremental and watermark is not None:
            column = source.c[_resolve_column(source, mapping.incremental_column, mapping)]
            if inclusive is None:
                inclusive = mapping.incremental_compare_operator == CompareOperator.GTE
            clauses.append(column >= watermark if inclusive else column > watermark)
        if mapping.custom_where_clause:
            clauses.append(text(f"({mapping.custom_where_clause})"))

        if not clauses:
            return None
        return and_(*clauses)

    def _order_columns(self, mapping: TableMapping, source: Table, selected: List[str]):
        """Ordering column first, then key (or all selected) columns as tie-breakers."""
        names: List[str] = []
        if mapping.effective_order_column:
            names.append(_resolve_column(source, mapping.effective_order_column, mapping))

        tie_breakers = mapping.source_key_columns or [
            col.name for col in source.primary_key.columns
        ] or selected
        for name in tie_breakers:
            resolved = _resolve_column(source, name, mapping)
            if resolved not in names:
                names.append(resolved)
        return [source.c[name] for name in names]


def _resolve_column(source: Table, name: str, mapping: TableMapping) -> str:
    """Reflected name of a configured column, matched case-insensitively."""
    if name in source.c:
        return name
    for column in source.columns:
        if column.name.lower() == name.lower():
            return column.name
    raise ExtractionError(f"column '{name}' does not exist in source table", mapping.source_name)


def _position(columns: List[str], name: str) -> int:
    lowered = [c.lower() for c in columns]
    return lowered.index(name.lower())
