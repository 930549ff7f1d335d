"""Post-migration comparison of source and destination tables.

Validation only reads from both databases. Each table gets a RowCount, a
ColumnSchema and a Checksum result; the table passes when all of them pass.
"""

import hashlib
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import MetaData, Table, and_, func, inspect, or_, select, text, tuple_
from sqlalchemy.engine import Engine
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError

from sqltransfer.logging import get_logger
from sqltransfer.models import CompareOperator, TableMapping, ValidationResult, ValidationType

logger = get_logger(__name__)

MAX_MISMATCH_DETAILS = 5

_TYPE_FAMILIES = {
    bool: "boolean",
    int: "numeric",
    float: "numeric",
    Decimal: "numeric",
    str: "string",
    datetime: "temporal",
    date: "temporal",
    time: "temporal",
    bytes: "binary",
}


class ValidationEngine:
    """Compares mapped tables between a source and a destination database."""

    def __init__(
        self,
        source_engine: Engine,
        destination_engine: Engine,
        sample_size: int = 10,
        incremental_only: bool = False,
    ):
        """Initialize the engine.

        Args:
            source_engine: Engine for the source database
            destination_engine: Engine for the destination database
            sample_size: Rows compared by the checksum check
            incremental_only: Restrict row counts to rows past each
                mapping's incremental start value
        """
        self.source_engine = source_engine
        self.destination_engine = destination_engine
        self.sample_size = sample_size
        self.incremental_only = incremental_only

    def validate(
        self, mappings: Iterable[TableMapping], table_names: Optional[Sequence[str]] = None
    ) -> List[ValidationResult]:
        """Validate the given mappings, optionally only those matching table names.

        Returns:
            Results for every check of every selected table
        """
        results: List[ValidationResult] = []
        for mapping in mappings:
            if table_names and not any(mapping.matches(name) for name in table_names):
                continue
            results.extend(self.validate_table(mapping))
        return results

    def validate_table(self, mapping: TableMapping) -> List[ValidationResult]:
        logger.info(f"Validating {mapping.source_name} -> {mapping.destination_name}")
        results = [
            self.check_row_count(mapping),
            self.check_column_schema(mapping),
            self.check_checksum(mapping),
        ]
        for result in results:
            if not result.success:
                logger.warning(
                    f"{result.validation_type.value} validation failed for "
                    f"{result.table_name}: {result.error_message}"
                )
        return results

    def check_row_count(self, mapping: TableMapping) -> ValidationResult:
        """Compare row counts under the mapping's filter."""
        table_name = mapping.source_name
        try:
            source = _reflect(self.source_engine, mapping.source_schema, mapping.source_table)
            destination = _reflect(
                self.destination_engine, mapping.destination_schema, mapping.destination_table
            )
            source_count = _count(
                self.source_engine,
                source,
                self._filters(mapping, source, mapping.incremental_column),
            )
            destination_count = _count(
                self.destination_engine,
                destination,
                self._filters(
                    mapping,
                    destination,
                    mapping.destination_column_for(mapping.incremental_column)
                    if mapping.incremental_column
                    else None,
                ),
            )
        except (SQLAlchemyError, KeyError) as e:
            return _error_result(table_name, ValidationType.ROW_COUNT, e)

        details = f"Source: {source_count}, Destination: {destination_count}"
        if source_count == destination_count:
            return ValidationResult(table_name, ValidationType.ROW_COUNT, True, details)
        return ValidationResult(
            table_name,
            ValidationType.ROW_COUNT,
            False,
            details,
            f"Row count mismatch. {details}",
        )

    def check_column_schema(self, mapping: TableMapping) -> ValidationResult:
        """Check that mapped columns exist on both sides with compatible types."""
        table_name = mapping.source_name
        try:
            source_columns = _columns(self.source_engine, mapping.source_schema, mapping.source_table)
            destination_columns = _columns(
                self.destination_engine, mapping.destination_schema, mapping.destination_table
            )
        except SQLAlchemyError as e:
            return _error_result(table_name, ValidationType.COLUMN_SCHEMA, e)

        pairs = [(c.source_column, c.destination_column) for c in mapping.column_mappings] or [
            (name, name) for name in source_columns
        ]
        transformed = {
            c.source_column.lower() for c in mapping.column_mappings if c.transformation
        }

        problems = []
        for source_name, destination_name in pairs:
            source_type = source_columns.get(source_name.lower())
            destination_type = destination_columns.get(destination_name.lower())
            if source_type is None:
                problems.append(f"source column '{source_name}' is missing")
            elif destination_type is None:
                problems.append(f"destination column '{destination_name}' is missing")
            elif source_name.lower() not in transformed and not types_compatible(
                source_type, destination_type
            ):
                problems.append(
                    f"'{source_name}' ({source_type}) is not compatible with "
                    f"'{destination_name}' ({destination_type})"
                )

        details = f"Checked {len(pairs)} column(s)"
        if not problems:
            return ValidationResult(table_name, ValidationType.COLUMN_SCHEMA, True, details)
        return ValidationResult(
            table_name,
            ValidationType.COLUMN_SCHEMA,
            False,
            details,
            "; ".join(problems),
        )

    def check_checksum(self, mapping: TableMapping) -> ValidationResult:
        """Compare hashes of a sample of rows looked up by key on both sides."""
        table_name = mapping.source_name
        try:
            source = _reflect(self.source_engine, mapping.source_schema, mapping.source_table)
            destination = _reflect(
                self.destination_engine, mapping.destination_schema, mapping.destination_table
            )
        except SQLAlchemyError as e:
            return _error_result(table_name, ValidationType.CHECKSUM, e)

        pairs = self._checksum_columns(mapping, source)
        keys = [(s, d) for s, d, is_key in pairs if is_key]
        if not keys:
            return ValidationResult(
                table_name,
                ValidationType.CHECKSUM,
                True,
                "Skipped: no key columns to match rows on",
            )

        try:
            source_cols = [_column(source, s) for s, _, _ in pairs]
            destination_cols = [_column(destination, d) for _, d, _ in pairs]
            key_count = len(keys)

            sample_query = (
                select(*source_cols).order_by(*source_cols[:key_count]).limit(self.sample_size)
            )
            filters = self._filters(mapping, source, mapping.incremental_column)
            if filters:
                sample_query = sample_query.where(and_(*filters))
            with self.source_engine.connect() as connection:
                source_rows = [tuple(r) for r in connection.execute(sample_query)]

            if not source_rows:
                return ValidationResult(
                    table_name, ValidationType.CHECKSUM, True, "No source rows to sample"
                )

            sample_keys = [row[:key_count] for row in source_rows]
            destination_query = select(*destination_cols).where(
                _key_filter(destination_cols[:key_count], sample_keys)
            )
            with self.destination_engine.connect() as connection:
                destination_rows = {
                    tuple(r)[:key_count]: tuple(r) for r in connection.execute(destination_query)
                }
        except (SQLAlchemyError, KeyError) as e:
            return _error_result(table_name, ValidationType.CHECKSUM, e)

        mismatches = []
        for row in source_rows:
            key = row[:key_count]
            other = destination_rows.get(key)
            if other is None:
                mismatches.append(f"key {_format_key(key)} missing in destination")
            elif row_checksum(row) != row_checksum(other):
                mismatches.append(f"key {_format_key(key)} differs")

        details = f"Compared {len(source_rows)} sampled row(s) on {len(pairs)} column(s)"
        if not mismatches:
            return ValidationResult(table_name, ValidationType.CHECKSUM, True, details)

        shown = mismatches[:MAX_MISMATCH_DETAILS]
        if len(mismatches) > MAX_MISMATCH_DETAILS:
            shown.append(f"... and {len(mismatches) - MAX_MISMATCH_DETAILS} more")
        return ValidationResult(
            table_name,
            ValidationType.CHECKSUM,
            False,
            f"{details}; {len(mismatches)} mismatch(es)",
            "; ".join(shown),
        )

    def _filters(self, mapping: TableMapping, table: Table, incremental_column: Optional[str]):
        """Custom where plus, optionally, the incremental start predicate."""
        clauses = []
        if mapping.custom_where_clause:
            clauses.append(text(f"({mapping.custom_where_clause})"))
        if (
            self.incremental_only
            and mapping.is_incremental
            and incremental_column
            and mapping.incremental_start_value is not None
        ):
            column = _column(table, incremental_column)
            start = mapping.incremental_start_value
            if mapping.incremental_compare_operator == CompareOperator.GTE:
                clauses.append(column >= start)
            else:
                clauses.append(column > start)
        return clauses

    @staticmethod
    def _checksum_columns(mapping: TableMapping, source: Table) -> List[Tuple[str, str, bool]]:
        """(source, destination, is_key) for untransformed columns, keys first."""
        if mapping.column_mappings:
            pairs = [
                (c.source_column, c.destination_column, c.is_key)
                for c in mapping.column_mappings
                if c.transformation is None
            ]
        else:
            primary_key = {c.name for c in source.primary_key.columns}
            pairs = [(c.name, c.name, c.name in primary_key) for c in source.columns]

        if not any(is_key for _, _, is_key in pairs):
            primary_key = {c.name.lower() for c in source.primary_key.columns}
            pairs = [(s, d, s.lower() in primary_key) for s, d, _ in pairs]
        return sorted(pairs, key=lambda p: not p[2])


def summarize(results: Iterable[ValidationResult]) -> Dict[str, bool]:
    """Overall success per table: the AND of its individual checks."""
    outcome: Dict[str, bool] = {}
    for result in results:
        outcome[result.table_name] = outcome.get(result.table_name, True) and result.success
    return outcome


def types_compatible(source_type: Any, destination_type: Any) -> bool:
    """Whether two SQLAlchemy column types belong to the same value family."""
    source_family = _type_family(source_type)
    destination_family = _type_family(destination_type)
    if source_family is None or destination_family is None:
        return str(source_type).split("(")[0].upper() == str(destination_type).split("(")[0].upper()
    if "numeric" in (source_family, destination_family) and "boolean" in (
        source_family,
        destination_family,
    ):
        return True
    return source_family == destination_family


def row_checksum(values: Sequence[Any]) -> str:
    """md5 of a row's normalized values."""
    normalized = "|".join(_normalize(v) for v in values)
    return hashlib.md5(normalized.encode("utf-8")).hexdigest()


def _normalize(value: Any) -> str:
    if value is None:
        return "\\N"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float):
        value = Decimal(repr(round(value, 6)))
    if isinstance(value, (int, Decimal)):
        return format(Decimal(value).normalize(), "f")
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    return str(value).rstrip()


def _type_family(sql_type: Any) -> Optional[str]:
    try:
        python_type = sql_type.python_type
    except (NotImplementedError, AttributeError):
        return None
    for candidate, family in _TYPE_FAMILIES.items():
        if issubclass(python_type, candidate):
            return family
    return None


def _reflect(engine: Engine, schema: Optional[str], name: str) -> Table:
    return Table(name, MetaData(), schema=schema, autoload_with=engine)


def _columns(engine: Engine, schema: Optional[str], name: str) -> Dict[str, Any]:
    inspector = inspect(engine)
    columns = inspector.get_columns(name, schema=schema)
    if not columns:
        raise NoSuchTableError(f"{schema}.{name}" if schema else name)
    return {c["name"].lower(): c["type"] for c in columns}


def _column(table: Table, name: str):
    if name in table.c:
        return table.c[name]
    for column in table.columns:
        if column.name.lower() == name.lower():
            return column
    raise KeyError(f"column '{name}' not found in {table.fullname}")


def _count(engine: Engine, table: Table, clauses: List[Any]) -> int:
    query = select(func.count()).select_from(table)
    if clauses:
        query = query.where(and_(*clauses))
    with engine.connect() as connection:
        return int(connection.execute(query).scalar() or 0)


def _key_filter(key_columns: List[Any], keys: List[tuple]):
    if len(key_columns) == 1:
        return key_columns[0].in_([k[0] for k in keys])
    return or_(*[and_(*[c == v for c, v in zip(key_columns, key)]) for key in keys])


def _format_key(key: tuple) -> str:
    return ", ".join(str(v) for v in key) if len(key) > 1 else str(key[0])


def _error_result(table_name: str, validation_type: ValidationType, error: Exception) -> ValidationResult:
    message = str(error).splitlines()[0] if str(error) else type(error).__name__
    logger.error(f"{validation_type.value} validation error for {table_name}: {message}")
    return ValidationResult(
        table_name,
        validation_type,
        False,
        "Validation could not be completed",
        message,
    )
