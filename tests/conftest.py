"""Pytest configuration for sqltransfer tests."""

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import pytest
from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    func,
    select,
)
from sqlalchemy.engine import Engine

from sqltransfer.connections import ConnectionDefinition, ConnectionProvider
from sqltransfer.core.orchestrator import MigrationOrchestrator
from sqltransfer.core.recorder import InMemoryRunRecorder
from sqltransfer.core.resolver import InMemoryConfigurationStore, TableMappingResolver
from sqltransfer.core.settings import EngineSettings
from sqltransfer.core.state import DuckDBStateBackend, WatermarkStore
from sqltransfer.models import (
    ColumnMapping,
    Configuration,
    IncrementalType,
    TableMapping,
)

BASE_TIME = datetime(2024, 1, 1, 0, 0, 0)


class OrdersTables:
    """Creates and inspects ``Orders``-shaped tables in SQLite databases."""

    @staticmethod
    def define(metadata: MetaData, name: str = "Orders") -> Table:
        return Table(
            name,
            metadata,
            Column("OrderId", Integer, primary_key=True, autoincrement=False),
            Column("Customer", String(50)),
            Column("Amount", Integer),
            Column("ModifiedAt", DateTime),
        )

    def create(self, engine: Engine, name: str = "Orders", rows: int = 0) -> Table:
        metadata = MetaData()
        table = self.define(metadata, name)
        metadata.create_all(engine)
        if rows:
            self.insert(engine, table, range(1, rows + 1))
        return table

    @staticmethod
    def record(order_id: int) -> Dict[str, Any]:
        return {
            "OrderId": order_id,
            "Customer": f"customer-{order_id % 7}",
            "Amount": order_id * 10,
            "ModifiedAt": BASE_TIME + timedelta(minutes=order_id),
        }

    def insert(self, engine: Engine, table: Table, ids: Iterable[int], **overrides) -> None:
        records = [{**self.record(i), **overrides} for i in ids]
        if records:
            with engine.begin() as connection:
                connection.execute(table.insert(), records)

    @staticmethod
    def count(engine: Engine, name: str = "Orders") -> int:
        table = Table(name, MetaData(), autoload_with=engine)
        with engine.connect() as connection:
            return connection.execute(select(func.count()).select_from(table)).scalar()

    @staticmethod
    def rows(engine: Engine, name: str = "Orders") -> List[tuple]:
        table = Table(name, MetaData(), autoload_with=engine)
        with engine.connect() as connection:
            query = select(table).order_by(*table.primary_key.columns)
            return [tuple(row) for row in connection.execute(query)]


def orders_columns() -> List[ColumnMapping]:
    return [
        ColumnMapping(source_column="OrderId", is_key=True),
        ColumnMapping(source_column="Customer"),
        ColumnMapping(source_column="Amount"),
        ColumnMapping(source_column="ModifiedAt"),
    ]


@pytest.fixture
def orders() -> OrdersTables:
    return OrdersTables()


@pytest.fixture
def source_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'source.db'}"


@pytest.fixture
def destination_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'destination.db'}"


@pytest.fixture
def source_engine(source_url):
    engine = create_engine(source_url)
    yield engine
    engine.dispose()


@pytest.fixture
def destination_engine(destination_url):
    engine = create_engine(destination_url)
    yield engine
    engine.dispose()


@pytest.fixture
def make_mapping():
    """Factory for an incremental Orders mapping with overridable fields."""

    def _make(**overrides) -> TableMapping:
        values = {
            "mapping_id": 1,
            "source_table": "Orders",
            "destination_table": "Orders",
            "column_mappings": orders_columns(),
            "incremental_type": IncrementalType.INT,
            "incremental_column": "OrderId",
        }
        values.update(overrides)
        return TableMapping(**values)

    return _make


@pytest.fixture
def state_backend():
    backend = DuckDBStateBackend()
    yield backend
    backend.close()


@pytest.fixture
def watermark_store(state_backend) -> WatermarkStore:
    return WatermarkStore(state_backend)


@pytest.fixture
def recorder() -> InMemoryRunRecorder:
    return InMemoryRunRecorder()


@pytest.fixture
def make_configuration():
    """Factory for a configuration between the ``source`` and ``destination`` connections."""

    def _make(mappings: List[TableMapping], **overrides) -> Configuration:
        values = {
            "configuration_id": 1,
            "name": "nightly",
            "source_connection_id": "source",
            "destination_connection_id": "destination",
            "batch_size": 100,
            "reporting_frequency": 1,
            "table_mappings": mappings,
        }
        values.update(overrides)
        return Configuration(**values)

    return _make


@pytest.fixture
def make_orchestrator(source_url, destination_url, watermark_store, recorder):
    """Factory wiring an orchestrator to the SQLite source and destination."""
    created = []

    def _make(
        configurations: List[Configuration],
        settings: Optional[EngineSettings] = None,
        connections: Optional[Dict[str, ConnectionDefinition]] = None,
    ) -> MigrationOrchestrator:
        definitions = connections or {
            "source": ConnectionDefinition("source", source_url, access="read"),
            "destination": ConnectionDefinition("destination", destination_url, access="write"),
        }
        orchestrator = MigrationOrchestrator(
            resolver=TableMappingResolver(InMemoryConfigurationStore(configurations)),
            connections=ConnectionProvider(definitions),
            watermark_store=watermark_store,
            recorder=recorder,
            settings=settings or EngineSettings(extract_timeout=None, load_timeout=None),
        )
        created.append(orchestrator)
        return orchestrator

    yield _make

    for orchestrator in created:
        orchestrator.shutdown(wait=True)
        orchestrator.connections.dispose()
