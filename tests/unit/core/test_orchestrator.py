"""Tests for MigrationOrchestrator."""

from unittest.mock import patch

import pytest

from sqltransfer.connections import ConnectionDefinition
from sqltransfer.core.monitor import MigrationMonitor
from sqltransfer.core.settings import EngineSettings
from sqltransfer.errors import (
    ConfigurationNotFoundError,
    PersistenceError,
    RunAbortedError,
)
from sqltransfer.models import RunStatus, TableStatus


@pytest.fixture
def customers_mapping(make_mapping):
    def _make(**overrides):
        values = {
            "mapping_id": 2,
            "source_table": "Customers",
            "destination_table": "Customers",
            "priority": 10,
        }
        values.update(overrides)
        return make_mapping(**values)

    return _make


class TestRunMigration:
    def test_copies_table_in_batches(
        self, make_orchestrator, make_configuration, make_mapping, source_engine,
        destination_engine, orders, watermark_store,
    ):
        orders.create(source_engine, rows=250)
        orders.create(destination_engine)
        mapping = make_mapping()
        orchestrator = make_orchestrator([make_configuration([mapping])])

        with patch.object(
            watermark_store, "advance_watermark", wraps=watermark_store.advance_watermark
        ) as advance:
            summary = orchestrator.run_migration(1)

        assert summary.succeeded
        assert summary.run.total_rows_processed == 250
        assert summary.run.message == "1 table(s) completed"
        assert [call.args[1] for call in advance.call_args_list] == [100, 200, 250]

        metric = summary.table_metrics[0]
        assert metric.status == TableStatus.COMPLETED
        assert metric.rows_processed == 250
        assert metric.total_rows_to_process == 250
        assert metric.last_watermark == 250

        assert orders.count(destination_engine) == 250
        assert watermark_store.get_watermark(mapping) == 250

    def test_second_run_copies_only_new_rows(
        self, make_orchestrator, make_configuration, make_mapping, source_engine,
        destination_engine, orders,
    ):
        table = orders.create(source_engine, rows=50)
        orders.create(destination_engine)
        orchestrator = make_orchestrator([make_configuration([make_mapping()])])
        orchestrator.run_migration(1)

        orders.insert(source_engine, table, range(51, 61))
        summary = orchestrator.run_migration(1)

        assert summary.run.total_rows_processed == 10
        assert orders.count(destination_engine) == 60

    def test_final_log_reports_batch_progress(
        self, make_orchestrator, make_configuration, make_mapping, source_engine,
        destination_engine, orders, recorder,
    ):
        orders.create(source_engine, rows=250)
        orders.create(destination_engine)
        orchestrator = make_orchestrator([make_configuration([make_mapping()])])

        summary = orchestrator.run_migration(1)

        final = recorder.get_logs(summary.run_id)[-1].message
        assert final.startswith(f"Run {summary.run_id} finished with status Completed")
        assert "3 batch(es) over 1 table(s): 1 finished, 0 stopped" in final

    def test_run_records_are_persisted(
        self, make_orchestrator, make_configuration, make_mapping, source_engine,
        destination_engine, orders, recorder,
    ):
        orders.create(source_engine, rows=5)
        orders.create(destination_engine)
        orchestrator = make_orchestrator([make_configuration([make_mapping()])])

        summary = orchestrator.run_migration("nightly", triggered_by="cli")

        stored = recorder.get_run(summary.run_id)
        assert stored.status == RunStatus.COMPLETED
        assert stored.triggered_by == "cli"
        assert stored.end_time is not None
        assert recorder.get_table_metrics(summary.run_id)[0].rows_processed == 5
        messages = [e.message for e in recorder.get_logs(summary.run_id)]
        assert messages[0].startswith(f"Run {summary.run_id} started for configuration 'nightly'")

    def test_discovers_columns_when_none_mapped(
        self, make_orchestrator, make_configuration, make_mapping, source_engine,
        destination_engine, orders,
    ):
        orders.create(source_engine, rows=30)
        orders.create(destination_engine)
        orchestrator = make_orchestrator([make_configuration([make_mapping(column_mappings=[])])])

        assert orchestrator.run_migration(1).succeeded
        assert orders.rows(destination_engine) == orders.rows(source_engine)

    def test_offset_paged_table_advances_once(
        self, make_orchestrator, make_configuration, make_mapping, source_engine,
        destination_engine, orders, watermark_store,
    ):
        orders.create(source_engine, rows=250)
        orders.create(destination_engine)
        orchestrator = make_orchestrator(
            [make_configuration([make_mapping(order_by_column="Customer")])]
        )

        with patch.object(
            watermark_store, "advance_watermark", wraps=watermark_store.advance_watermark
        ) as advance:
            summary = orchestrator.run_migration(1)

        assert summary.run.total_rows_processed == 250
        assert advance.call_count == 1
        assert advance.call_args.args[1] == 250

    def test_failed_table_does_not_stop_others(
        self, make_orchestrator, make_configuration, make_mapping, customers_mapping,
        source_engine, destination_engine, orders, watermark_store, recorder,
    ):
        orders.create(source_engine, rows=20)
        orders.create(source_engine, "Customers", rows=20)
        orders.create(destination_engine)
        customers = customers_mapping(fail_on_error=False)
        orchestrator = make_orchestrator([make_configuration([make_mapping(), customers])])

        summary = orchestrator.run_migration(1)

        assert summary.run.status == RunStatus.COMPLETED_WITH_ERRORS
        assert summary.run.message == "1 table(s) failed: Customers"
        assert summary.run.successful_tables_count == 1
        assert summary.run.failed_tables_count == 1

        failed, completed = summary.table_metrics
        assert failed.table_name == "Customers"
        assert failed.status == TableStatus.FAILED
        assert "destination table does not exist" in failed.message
        assert completed.status == TableStatus.COMPLETED
        assert watermark_store.get_watermark(customers) is None

        errors = [e for e in recorder.get_logs(summary.run_id) if e.exception]
        assert errors and "LoadError" in errors[0].exception

    def test_fail_on_error_table_aborts_run(
        self, make_orchestrator, make_configuration, make_mapping, customers_mapping,
        source_engine, destination_engine, orders, recorder,
    ):
        orders.create(source_engine, rows=20)
        orders.create(source_engine, "Customers", rows=20)
        orders.create(destination_engine)
        orchestrator = make_orchestrator(
            [make_configuration([make_mapping(), customers_mapping(fail_on_error=True)])]
        )

        summary = orchestrator.run_migration(1)

        assert summary.run.status == RunStatus.FAILED
        assert summary.run.message.startswith("Run aborted after Customers failed")
        assert [m.table_name for m in summary.table_metrics] == ["Customers"]
        assert orders.count(destination_engine) == 0
        assert any("not starting Orders" in e.message for e in recorder.get_logs(summary.run_id))

    def test_dry_run_writes_nothing(
        self, make_orchestrator, make_configuration, make_mapping, source_engine, orders,
        watermark_store,
    ):
        orders.create(source_engine, rows=250)
        mapping = make_mapping()
        orchestrator = make_orchestrator([make_configuration([mapping])])

        summary = orchestrator.run_migration(1, dry_run=True)

        assert summary.succeeded
        assert summary.run.dry_run
        assert summary.run.total_rows_processed == 250
        assert summary.table_metrics[0].message == "Processed 250 row(s) (dry run, nothing written)"
        assert watermark_store.get_watermark(mapping) is None

    def test_cancellation_stops_before_next_batch(
        self, make_orchestrator, make_configuration, make_mapping, source_engine,
        destination_engine, orders, watermark_store,
    ):
        orders.create(source_engine, rows=250)
        orders.create(destination_engine)
        mapping = make_mapping()
        orchestrator = make_orchestrator([make_configuration([mapping])])

        def cancel_after_batch(monitor, table_name, rows, total=None):
            orchestrator.cancel_run(monitor.run_id)
            return False

        with patch.object(
            MigrationMonitor, "record_batch", autospec=True, side_effect=cancel_after_batch
        ):
            summary = orchestrator.run_migration(1)

        assert summary.run.status == RunStatus.FAILED
        assert summary.run.message == "Run cancelled"
        assert summary.table_metrics[0].status == TableStatus.CANCELLED
        assert summary.table_metrics[0].rows_processed == 100
        assert watermark_store.get_watermark(mapping) == 100
        assert orders.count(destination_engine) == 100

    def test_recorder_failure_aborts_run(
        self, make_orchestrator, make_configuration, make_mapping, source_engine,
        destination_engine, orders, recorder,
    ):
        orders.create(source_engine, rows=10)
        orders.create(destination_engine)
        orchestrator = make_orchestrator([make_configuration([make_mapping()])])

        with patch.object(
            recorder, "update_table_metric", side_effect=PersistenceError("disk gone")
        ):
            with pytest.raises(RunAbortedError) as exc_info:
                orchestrator.run_migration(1)

        run = recorder.get_run(exc_info.value.run_id)
        assert run.status == RunStatus.FAILED
        assert "disk gone" in run.message

    def test_unknown_configuration_creates_no_run(self, make_orchestrator, recorder):
        orchestrator = make_orchestrator([])

        with pytest.raises(ConfigurationNotFoundError):
            orchestrator.run_migration(99)
        assert recorder.get_last_run(99) is None

    def test_no_active_mappings_completes_empty_run(
        self, make_orchestrator, make_configuration, make_mapping
    ):
        orchestrator = make_orchestrator([make_configuration([make_mapping()])])

        summary = orchestrator.run_migration(1, table_filter=["Nope"])

        assert summary.run.status == RunStatus.COMPLETED
        assert summary.run.message == "No active table mappings to process"
        assert summary.table_metrics == []

    def test_unreachable_destination_fails_table(
        self, make_orchestrator, make_configuration, make_mapping, source_engine, orders,
        source_url, tmp_path,
    ):
        orders.create(source_engine, rows=10)
        connections = {
            "source": ConnectionDefinition("source", source_url, access="read"),
            "destination": ConnectionDefinition(
                "destination", f"sqlite:///{tmp_path / 'missing' / 'nowhere.db'}", access="write"
            ),
        }
        orchestrator = make_orchestrator(
            [make_configuration([make_mapping()])], connections=connections
        )

        summary = orchestrator.run_migration(1)

        assert summary.run.status == RunStatus.FAILED
        assert summary.table_metrics[0].status == TableStatus.FAILED
        assert "Load error" in summary.table_metrics[0].message


class TestParallelAndBackground:
    def test_parallel_tables(
        self, make_orchestrator, make_configuration, make_mapping, customers_mapping,
        source_engine, destination_engine, orders,
    ):
        for name in ("Orders", "Customers"):
            orders.create(source_engine, name, rows=120)
            orders.create(destination_engine, name)
        orchestrator = make_orchestrator(
            [make_configuration([make_mapping(), customers_mapping()])],
            settings=EngineSettings(extract_timeout=None, load_timeout=None, max_workers=2),
        )

        summary = orchestrator.run_migration(1)

        assert summary.succeeded
        assert summary.run.total_rows_processed == 240
        assert orders.count(destination_engine, "Customers") == 120

    def test_start_and_wait(
        self, make_orchestrator, make_configuration, make_mapping, source_engine,
        destination_engine, orders, recorder,
    ):
        orders.create(source_engine, rows=30)
        orders.create(destination_engine)
        orchestrator = make_orchestrator([make_configuration([make_mapping()])])

        run_id = orchestrator.start_migration(1)
        assert recorder.get_run(run_id) is not None

        summary = orchestrator.wait_for_run(run_id, timeout=30)

        assert summary.succeeded
        assert not orchestrator.is_active(run_id)
        with pytest.raises(KeyError):
            orchestrator.wait_for_run(run_id)

    def test_cancel_unknown_run(self, make_orchestrator):
        assert make_orchestrator([]).cancel_run(42) is False

    def test_get_processed_tables(self, make_orchestrator, make_configuration, make_mapping):
        orchestrator = make_orchestrator([make_configuration([make_mapping(source_schema="dbo")])])
        assert orchestrator.get_processed_tables() == ["dbo.Orders"]


class TestValidationRuns:
    def test_migration_with_validation(
        self, make_orchestrator, make_configuration, make_mapping, source_engine,
        destination_engine, orders,
    ):
        orders.create(source_engine, rows=40)
        orders.create(destination_engine)
        orchestrator = make_orchestrator([make_configuration([make_mapping()])])

        summary = orchestrator.run_migration(1, validate=True)

        assert summary.run.status == RunStatus.COMPLETED
        assert len(summary.validation_results) == 3
        assert all(summary.validation_results)

    def test_failed_validation_is_reported_in_message(
        self, make_orchestrator, make_configuration, make_mapping, source_engine,
        destination_engine, orders,
    ):
        orders.create(source_engine, rows=40)
        table = orders.create(destination_engine)
        orders.insert(destination_engine, table, [1000])
        orchestrator = make_orchestrator([make_configuration([make_mapping()])])

        summary = orchestrator.run_migration(1, validate=True)

        assert summary.run.status == RunStatus.COMPLETED
        assert "Validation failed for Orders" in summary.run.message

    def test_validation_only_run(
        self, make_orchestrator, make_configuration, make_mapping, source_engine,
        destination_engine, orders,
    ):
        orders.create(source_engine, rows=1000)
        orders.create(destination_engine, rows=998)
        orchestrator = make_orchestrator([make_configuration([make_mapping()])])

        summary = orchestrator.run_validation(1)

        assert summary.run.status == RunStatus.COMPLETED_WITH_ERRORS
        assert summary.run.message == "Validation failed for Orders"
        assert summary.run.failed_tables_count == 1
        row_count = next(r for r in summary.validation_results if r.validation_type.value == "RowCount")
        assert row_count.details == "Source: 1000, Destination: 998"

    def test_background_validation(
        self, make_orchestrator, make_configuration, make_mapping, source_engine,
        destination_engine, orders,
    ):
        orders.create(source_engine, rows=10)
        orders.create(destination_engine, rows=10)
        orchestrator = make_orchestrator([make_configuration([make_mapping()])])

        run_id = orchestrator.start_validation(1)
        summary = orchestrator.wait_for_run(run_id, timeout=30)

        assert summary.run.status == RunStatus.COMPLETED
        assert summary.run.message == "All validations passed"
