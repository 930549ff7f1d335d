"""Typed records shared by the transfer engine.

Configuration-side records (Configuration, TableMapping, ColumnMapping,
BulkCopyOptions, Schedule) are read-only inputs built from profiles.
Run-side records (Run, TableMetric, LogEntry, ValidationResult) are produced
by the orchestrator and handed to the recorder.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import pandas as pd


def utcnow() -> datetime:
    """Naive UTC timestamp used for every record the engine writes."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class IncrementalType(str, Enum):
    NONE = "None"
    INT = "Int"
    BIGINT = "BigInt"
    DATETIME = "DateTime"


class CompareOperator(str, Enum):
    GT = ">"
    GTE = ">="


class Transformation(str, Enum):
    TO_UPPER = "ToUpper"
    TO_LOWER = "ToLower"
    TRIM = "Trim"
    CONVERT_TO_INT = "ConvertToInt"
    CONVERT_TO_DECIMAL = "ConvertToDecimal"
    FORMAT_DATETIME = "FormatDateTime"


class RunStatus(str, Enum):
    RUNNING = "Running"
    COMPLETED = "Completed"
    COMPLETED_WITH_ERRORS = "CompletedWithErrors"
    FAILED = "Failed"
    VALIDATING = "Validating"


class TableStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class ValidationType(str, Enum):
    ROW_COUNT = "RowCount"
    COLUMN_SCHEMA = "ColumnSchema"
    CHECKSUM = "Checksum"


class LogLevel(str, Enum):
    DEBUG = "Debug"
    INFO = "Info"
    WARNING = "Warning"
    ERROR = "Error"


def parse_enum(enum_cls, value: Any, field_name: str, default=None):
    """Parse an enum member from its value or name, case-insensitively.

    Raises:
        ValueError: If the value matches no member
    """
    if value is None or value == "":
        return default
    if isinstance(value, enum_cls):
        return value
    text = str(value).strip().lower()
    for member in enum_cls:
        if text in (member.value.lower(), member.name.lower()):
            return member
    allowed = ", ".join(m.value for m in enum_cls)
    raise ValueError(f"Invalid {field_name} '{value}'. Expected one of: {allowed}")


def coerce_incremental_value(value: Any, incremental_type: IncrementalType) -> Any:
    """Convert a raw watermark value into the Python type of its column.

    Int/BigInt become ``int``; DateTime becomes a naive ``datetime``.
    Strings, dates, numpy scalars and pandas timestamps are accepted.
    """
    if value is None or incremental_type == IncrementalType.NONE:
        return value
    if isinstance(value, float) and pd.isna(value):
        return None

    if incremental_type in (IncrementalType.INT, IncrementalType.BIGINT):
        if isinstance(value, bool):
            raise ValueError(f"Boolean is not a valid {incremental_type.value} watermark")
        return int(value)

    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    timestamp = pd.Timestamp(value)
    if pd.isna(timestamp):
        return None
    return timestamp.to_pydatetime()


@dataclass
class ColumnMapping:
    """One source column copied into one destination column."""

    source_column: str
    destination_column: Optional[str] = None
    data_type: Optional[str] = None
    allow_null: bool = True
    default_value: Any = None
    transformation: Optional[Transformation] = None
    transformation_format: Optional[str] = None
    is_key: bool = False
    is_identity: bool = False

    def __post_init__(self):
        if not self.source_column:
            raise ValueError("Column mapping requires a source column")
        if not self.destination_column:
            self.destination_column = self.source_column

    @classmethod
    def from_dict(cls, config: Any) -> "ColumnMapping":
        """Build a column mapping from a profile entry.

        A bare string maps a column to the same name on the destination.
        """
        if isinstance(config, str):
            return cls(source_column=config)
        if not isinstance(config, dict):
            raise ValueError(f"Column mapping must be a string or dictionary, got {config!r}")

        return cls(
            source_column=config.get("source") or config.get("source_column"),
            destination_column=config.get("destination")
            or config.get("destination_column"),
            data_type=config.get("data_type"),
            allow_null=bool(config.get("allow_null", True)),
            default_value=config.get("default"),
            transformation=parse_enum(
                Transformation, config.get("transformation"), "transformation"
            ),
            transformation_format=config.get("format"),
            is_key=bool(config.get("key", False)),
            is_identity=bool(config.get("identity", False)),
        )


@dataclass
class BulkCopyOptions:
    """Destination write options applied by the loader."""

    keep_identity: bool = True
    keep_nulls: bool = True
    table_lock: bool = False
    timeout: Optional[float] = None

    @classmethod
    def from_dict(cls, config: Optional[Dict[str, Any]]) -> "BulkCopyOptions":
        config = config or {}
        timeout = config.get("timeout")
        return cls(
            keep_identity=bool(config.get("keep_identity", True)),
            keep_nulls=bool(config.get("keep_nulls", True)),
            table_lock=bool(config.get("table_lock", False)),
            timeout=float(timeout) if timeout is not None else None,
        )


@dataclass
class TableMapping:
    """How one source table is copied into one destination table."""

    mapping_id: int
    source_table: str
    destination_table: str
    source_schema: Optional[str] = None
    destination_schema: Optional[str] = None
    column_mappings: List[ColumnMapping] = field(default_factory=list)
    incremental_type: IncrementalType = IncrementalType.NONE
    incremental_column: Optional[str] = None
    incremental_compare_operator: CompareOperator = CompareOperator.GT
    incremental_start_value: Any = None
    custom_where_clause: Optional[str] = None
    order_by_column: Optional[str] = None
    priority: int = 100
    is_active: bool = True
    fail_on_error: bool = True
    bulk_copy_options: BulkCopyOptions = field(default_factory=BulkCopyOptions)

    def __post_init__(self):
        if not self.source_table or not self.destination_table:
            raise ValueError(
                f"Table mapping {self.mapping_id} requires source and destination tables"
            )
        if self.incremental_type != IncrementalType.NONE and not self.incremental_column:
            raise ValueError(
                f"Table mapping {self.mapping_id} ({self.source_table}) uses "
                f"{self.incremental_type.value} incremental type but has no incremental column"
            )
        self.incremental_start_value = coerce_incremental_value(
            self.incremental_start_value, self.incremental_type
        )

    @property
    def source_name(self) -> str:
        return _qualified(self.source_schema, self.source_table)

    @property
    def destination_name(self) -> str:
        return _qualified(self.destination_schema, self.destination_table)

    @property
    def is_incremental(self) -> bool:
        return self.incremental_type != IncrementalType.NONE

    @property
    def effective_order_column(self) -> Optional[str]:
        return self.order_by_column or self.incremental_column

    @property
    def uses_keyset_paging(self) -> bool:
        """True when batches are ordered by the incremental column itself."""
        return self.is_incremental and (
            not self.order_by_column
            or self.order_by_column.lower() == self.incremental_column.lower()
        )

    @property
    def key_columns(self) -> List[str]:
        """Destination names of the columns flagged as keys."""
        return [c.destination_column for c in self.column_mappings if c.is_key]

    @property
    def source_key_columns(self) -> List[str]:
        return [c.source_column for c in self.column_mappings if c.is_key]

    def destination_column_for(self, source_column: str) -> str:
        """Destination name of a source column, or the same name if unmapped."""
        for column in self.column_mappings:
            if column.source_column.lower() == source_column.lower():
                return column.destination_column
        return source_column

    def matches(self, table_name: str) -> bool:
        """Whether a user-supplied table name refers to this mapping."""
        wanted = table_name.strip().lower()
        return wanted in {
            self.source_table.lower(),
            self.source_name.lower(),
            self.destination_table.lower(),
            self.destination_name.lower(),
        }

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "TableMapping":
        """Create a TableMapping from a profile entry.

        Raises:
            ValueError: If required fields are missing or invalid
        """
        if not isinstance(config, dict):
            raise ValueError("Table mapping configuration must be a dictionary")

        mapping_id = config.get("id")
        if mapping_id is None:
            raise ValueError(f"Table mapping for '{config.get('source_table')}' missing 'id'")

        source_table = config.get("source_table")
        incremental = config.get("incremental") or {}

        return cls(
            mapping_id=int(mapping_id),
            source_schema=config.get("source_schema"),
            source_table=source_table,
            destination_schema=config.get("destination_schema"),
            destination_table=config.get("destination_table") or source_table,
            column_mappings=[
                ColumnMapping.from_dict(c) for c in config.get("columns") or []
            ],
            incremental_type=parse_enum(
                IncrementalType,
                incremental.get("type"),
                "incremental type",
                IncrementalType.NONE,
            ),
            incremental_column=incremental.get("column"),
            incremental_compare_operator=parse_enum(
                CompareOperator,
                incremental.get("operator"),
                "compare operator",
                CompareOperator.GT,
            ),
            incremental_start_value=incremental.get("start_value"),
            custom_where_clause=config.get("where"),
            order_by_column=config.get("order_by"),
            priority=int(config.get("priority", 100)),
            is_active=bool(config.get("active", True)),
            fail_on_error=bool(config.get("fail_on_error", True)),
            bulk_copy_options=BulkCopyOptions.from_dict(config.get("bulk_copy")),
        )


def _qualified(schema: Optional[str], table: str) -> str:
    return f"{schema}.{table}" if schema else table


@dataclass
class Schedule:
    """When a configuration should be migrated automatically."""

    schedule_id: int
    configuration_id: int
    schedule_type: str = "Interval"
    frequency: int = 10
    frequency_unit: str = "Minutes"
    start_time: Optional[time] = None
    week_days: List[str] = field(default_factory=list)
    validate_after: bool = False
    is_active: bool = True
    last_run_time: Optional[datetime] = None
    next_run_time: Optional[datetime] = None

    @classmethod
    def from_dict(cls, configuration_id: int, config: Dict[str, Any]) -> "Schedule":
        start_time = config.get("start_time")
        if isinstance(start_time, str):
            start_time = time.fromisoformat(start_time)
        elif isinstance(start_time, int):
            # YAML 1.1 reads an unquoted 02:30 as the sexagesimal integer 150
            start_time = time(start_time // 60 % 24, start_time % 60)

        return cls(
            schedule_id=int(config.get("id", 0)),
            configuration_id=configuration_id,
            schedule_type=config.get("type", "Interval"),
            frequency=int(config.get("frequency", 10)),
            frequency_unit=config.get("unit", "Minutes"),
            start_time=start_time,
            week_days=list(config.get("week_days") or []),
            validate_after=bool(config.get("validate", False)),
            is_active=bool(config.get("active", True)),
        )


@dataclass
class Configuration:
    """A source/destination pair plus the tables copied between them."""

    configuration_id: int
    name: str
    source_connection_id: str
    destination_connection_id: str
    batch_size: int = 5000
    reporting_frequency: int = 10
    is_active: bool = True
    description: Optional[str] = None
    table_mappings: List[TableMapping] = field(default_factory=list)
    schedules: List[Schedule] = field(default_factory=list)

    def __post_init__(self):
        if self.batch_size <= 0:
            raise ValueError(
                f"Configuration '{self.name}' batch_size must be positive, got {self.batch_size}"
            )
        if self.reporting_frequency <= 0:
            self.reporting_frequency = 1

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "Configuration":
        """Create a Configuration from a profile entry.

        Raises:
            ValueError: If required fields are missing
        """
        for required in ("id", "name", "source", "destination"):
            if config.get(required) in (None, ""):
                raise ValueError(
                    f"Configuration '{config.get('name', '?')}' missing required '{required}' field"
                )

        configuration_id = int(config["id"])
        mappings = [TableMapping.from_dict(m) for m in config.get("table_mappings") or []]
        seen = set()
        for mapping in mappings:
            if mapping.mapping_id in seen:
                raise ValueError(
                    f"Configuration '{config['name']}' has duplicate mapping id {mapping.mapping_id}"
                )
            seen.add(mapping.mapping_id)

        return cls(
            configuration_id=configuration_id,
            name=config["name"],
            source_connection_id=config["source"],
            destination_connection_id=config["destination"],
            batch_size=int(config.get("batch_size", 5000)),
            reporting_frequency=int(config.get("reporting_frequency", 10)),
            is_active=bool(config.get("active", True)),
            description=config.get("description"),
            table_mappings=mappings,
            schedules=[
                Schedule.from_dict(configuration_id, s)
                for s in config.get("schedules") or []
            ],
        )


@dataclass
class Run:
    """One invocation of the engine against a configuration."""

    configuration_id: int
    run_id: Optional[int] = None
    start_time: datetime = field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    status: RunStatus = RunStatus.RUNNING
    triggered_by: str = "system"
    dry_run: bool = False
    total_tables_processed: int = 0
    successful_tables_count: int = 0
    failed_tables_count: int = 0
    total_rows_processed: int = 0
    elapsed_ms: int = 0
    average_rows_per_second: float = 0.0
    message: Optional[str] = None

    @property
    def is_finished(self) -> bool:
        return self.end_time is not None

    def close(self, status: RunStatus, message: Optional[str] = None) -> None:
        """Set the final status, end time and throughput figures."""
        self.status = status
        if message:
            self.message = message
        self.end_time = utcnow()
        self.elapsed_ms = max(
            0, int((self.end_time - self.start_time).total_seconds() * 1000)
        )
        self.average_rows_per_second = rows_per_second(
            self.total_rows_processed, self.elapsed_ms
        )


@dataclass
class TableMetric:
    """Progress and outcome of one table within one run."""

    run_id: Optional[int]
    mapping_id: int
    schema_name: Optional[str]
    table_name: str
    metric_id: Optional[int] = None
    status: TableStatus = TableStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    rows_processed: int = 0
    total_rows_to_process: Optional[int] = None
    elapsed_ms: int = 0
    rows_per_second: float = 0.0
    message: Optional[str] = None
    last_watermark: Any = None

    @property
    def success(self) -> bool:
        return self.status == TableStatus.COMPLETED

    @property
    def full_name(self) -> str:
        return _qualified(self.schema_name, self.table_name)

    def start(self) -> None:
        self.status = TableStatus.RUNNING
        self.start_time = utcnow()

    def finish(self, status: TableStatus, message: Optional[str] = None) -> None:
        self.status = status
        if message:
            self.message = message
        self.end_time = utcnow()
        started = self.start_time or self.end_time
        self.elapsed_ms = max(0, int((self.end_time - started).total_seconds() * 1000))
        self.rows_per_second = rows_per_second(self.rows_processed, self.elapsed_ms)


@dataclass
class LogEntry:
    run_id: Optional[int]
    log_level: LogLevel
    message: str
    mapping_id: Optional[int] = None
    exception: Optional[str] = None
    log_time: datetime = field(default_factory=utcnow)


@dataclass
class ValidationResult:
    """Outcome of one validation check on one table."""

    table_name: str
    validation_type: ValidationType
    success: bool
    details: str = ""
    error_message: Optional[str] = None

    def __bool__(self) -> bool:
        """Returns True if validation passed."""
        return self.success


def rows_per_second(rows: int, elapsed_ms: int) -> float:
    """Throughput in rows per second, 0 when no time elapsed."""
    if elapsed_ms <= 0:
        return 0.0
    return rows / (elapsed_ms / 1000.0)
