"""Tests for the sqltransfer command line."""

import pytest
import yaml
from typer.testing import CliRunner

from sqltransfer.cli.main import app


@pytest.fixture
def runner():
    """Create a CLI runner for testing."""
    return CliRunner()


@pytest.fixture
def write_profile(tmp_path, source_url, destination_url):
    """Write a profile with one Orders configuration; returns its path."""

    def _write(recorder=True, schedules=None, **mapping_overrides):
        mapping = {
            "id": 1,
            "source_table": "Orders",
            "incremental": {"type": "Int", "column": "OrderId"},
            "columns": [
                {"source": "OrderId", "key": True},
                "Customer",
                "Amount",
                "ModifiedAt",
            ],
        }
        mapping.update(mapping_overrides)
        settings = {
            "state_path": str(tmp_path / "state.duckdb"),
            "extract_timeout": 0,
            "load_timeout": 0,
        }
        if recorder:
            settings["recorder_url"] = f"sqlite:///{tmp_path / 'runs.db'}"
        profile = {
            "settings": settings,
            "connections": {
                "source": {"url": source_url, "access": "read"},
                "destination": {"url": destination_url, "access": "write"},
            },
            "configurations": [
                {
                    "id": 1,
                    "name": "nightly",
                    "source": "source",
                    "destination": "destination",
                    "batch_size": 10,
                    "table_mappings": [mapping],
                    "schedules": schedules or [],
                }
            ],
        }
        path = tmp_path / "sqltransfer.yml"
        path.write_text(yaml.safe_dump(profile))
        return str(path)

    return _write


@pytest.fixture
def populated(source_engine, destination_engine, orders):
    orders.create(source_engine, rows=25)
    orders.create(destination_engine)


class TestRunCommand:
    def test_run_migrates_configuration(self, runner, write_profile, populated, orders, destination_engine):
        result = runner.invoke(app, ["-p", write_profile(), "run", "nightly"])

        assert result.exit_code == 0, result.output
        assert "Completed" in result.output
        assert orders.count(destination_engine) == 25

    def test_dry_run(self, runner, write_profile, populated, orders, destination_engine):
        result = runner.invoke(app, ["-p", write_profile(), "run", "1", "--dry-run"])

        assert result.exit_code == 0, result.output
        assert "dry run" in result.output
        assert orders.count(destination_engine) == 0

    def test_run_with_validation(self, runner, write_profile, populated):
        result = runner.invoke(app, ["-p", write_profile(), "run", "nightly", "--validate"])

        assert result.exit_code == 0, result.output
        assert "All validation checks passed" in result.output

    def test_failed_table_exits_non_zero(self, runner, write_profile, populated):
        profile = write_profile(destination_table="Missing")

        result = runner.invoke(app, ["-p", profile, "run", "nightly"])

        assert result.exit_code == 1
        assert "Failed" in result.output

    def test_unknown_configuration(self, runner, write_profile):
        result = runner.invoke(app, ["-p", write_profile(), "run", "weekly"])

        assert result.exit_code == 1
        assert "Configuration 'weekly' not found" in result.output

    def test_missing_profile(self, runner, tmp_path):
        result = runner.invoke(app, ["-p", str(tmp_path / "nope.yml"), "run", "nightly"])

        assert result.exit_code == 1
        assert "profile loading" in result.output


class TestValidateCommand:
    def test_validate_mismatch_exits_non_zero(
        self, runner, write_profile, source_engine, destination_engine, orders
    ):
        orders.create(source_engine, rows=20)
        orders.create(destination_engine, rows=18)

        result = runner.invoke(app, ["-p", write_profile(), "validate", "nightly"])

        assert result.exit_code == 1
        assert "validation check(s) failed" in result.output

    def test_validate_after_migration(self, runner, write_profile, populated):
        profile = write_profile()
        runner.invoke(app, ["-p", profile, "run", "nightly"])

        result = runner.invoke(app, ["-p", profile, "validate", "nightly", "--table", "Orders"])

        assert result.exit_code == 0, result.output


class TestInspectionCommands:
    def test_tables(self, runner, write_profile):
        result = runner.invoke(app, ["-p", write_profile(), "tables"])

        assert result.exit_code == 0
        assert "Orders" in result.output

    def test_status_shows_last_run(self, runner, write_profile, populated):
        profile = write_profile()
        runner.invoke(app, ["-p", profile, "run", "nightly"])

        result = runner.invoke(app, ["-p", profile, "status", "nightly"])

        assert result.exit_code == 0, result.output
        assert "Run 1: Completed" in result.output

    def test_status_without_history(self, runner, write_profile):
        result = runner.invoke(app, ["-p", write_profile(recorder=False), "status", "nightly"])

        assert result.exit_code == 0
        assert "No runs recorded for 'nightly'" in result.output
        assert "recorder_url" in result.output

    def test_version(self, runner):
        result = runner.invoke(app, ["version"])

        assert result.exit_code == 0
        assert "sqltransfer v" in result.output


class TestWatermarkCommands:
    def test_list_and_reset(self, runner, write_profile, populated):
        profile = write_profile()
        runner.invoke(app, ["-p", profile, "run", "nightly"])

        listed = runner.invoke(app, ["-p", profile, "watermarks", "list"])
        assert listed.exit_code == 0, listed.output
        assert "Orders" in listed.output
        assert "25" in listed.output

        reset = runner.invoke(app, ["-p", profile, "watermarks", "reset", "nightly", "1"])
        assert reset.exit_code == 0, reset.output
        assert "Reset watermark of Orders" in reset.output

        again = runner.invoke(app, ["-p", profile, "watermarks", "reset", "nightly", "1"])
        assert "had no stored watermark" in again.output

    def test_list_empty(self, runner, write_profile):
        result = runner.invoke(app, ["-p", write_profile(), "watermarks", "list"])

        assert result.exit_code == 0
        assert "No watermarks stored" in result.output

    def test_reset_unknown_mapping(self, runner, write_profile):
        result = runner.invoke(app, ["-p", write_profile(), "watermarks", "reset", "nightly", "7"])

        assert result.exit_code == 1
        assert "has no mapping 7" in result.output


class TestScheduleCommand:
    def test_once_runs_due_schedules(self, runner, write_profile, populated, orders, destination_engine):
        profile = write_profile(schedules=[{"id": 1, "type": "Interval", "frequency": 10}])

        result = runner.invoke(app, ["-p", profile, "schedule", "--once"])

        assert result.exit_code == 0, result.output
        assert orders.count(destination_engine) == 25

    def test_once_without_schedules(self, runner, write_profile):
        result = runner.invoke(app, ["-p", write_profile(), "schedule", "--once"])

        assert result.exit_code == 0
        assert "No schedules are due" in result.output
