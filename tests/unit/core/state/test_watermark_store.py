"""Tests for WatermarkStore."""

from datetime import datetime
from unittest.mock import MagicMock, Mock

import duckdb
import pytest

from sqltransfer.core.state import WatermarkStore
from sqltransfer.errors import WatermarkAdvanceError, WatermarkError
from sqltransfer.models import IncrementalType
from sqltransfer.resilience import RetryConfig


class TestWatermarkStore:
    def test_get_state_key(self):
        assert WatermarkStore.get_state_key(12) == "watermark.12"

    def test_non_incremental_mapping_has_no_watermark(self, watermark_store, make_mapping):
        mapping = make_mapping(incremental_type=IncrementalType.NONE, incremental_column=None)
        assert watermark_store.get_watermark(mapping) is None
        assert watermark_store.advance_watermark(mapping, 5) is False

    def test_fresh_mapping_returns_start_value(self, watermark_store, make_mapping):
        assert watermark_store.get_watermark(make_mapping(incremental_start_value=100)) == 100
        assert watermark_store.get_watermark(make_mapping(mapping_id=2)) is None

    def test_advance_and_read_back(self, watermark_store, make_mapping):
        mapping = make_mapping(incremental_start_value=0)
        assert watermark_store.advance_watermark(mapping, 100) is True
        assert watermark_store.get_watermark(mapping) == 100

    def test_advance_is_monotonic(self, watermark_store, make_mapping):
        mapping = make_mapping()
        watermark_store.advance_watermark(mapping, 200)

        assert watermark_store.advance_watermark(mapping, 150) is False
        assert watermark_store.get_watermark(mapping) == 200

        assert watermark_store.advance_watermark(mapping, 200) is True
        assert watermark_store.get_watermark(mapping) == 200

    def test_boundary_offset_is_stored_with_the_value(self, watermark_store, make_mapping):
        mapping = make_mapping(incremental_start_value=0)
        assert watermark_store.get_position(mapping) == (0, 0)

        watermark_store.advance_watermark(mapping, 100, boundary_offset=40)
        assert watermark_store.get_position(mapping) == (100, 40)
        assert watermark_store.get_watermark(mapping) == 100

        # Same value, more boundary rows read, then the boundary exhausted
        assert watermark_store.advance_watermark(mapping, 100, boundary_offset=80) is True
        assert watermark_store.get_position(mapping) == (100, 80)
        watermark_store.advance_watermark(mapping, 100)
        assert watermark_store.get_position(mapping) == (100, 0)

    def test_negative_boundary_offset(self, watermark_store, make_mapping):
        with pytest.raises(WatermarkAdvanceError, match="must not be negative"):
            watermark_store.advance_watermark(make_mapping(), 10, boundary_offset=-1)

    def test_datetime_round_trip(self, watermark_store, make_mapping):
        mapping = make_mapping(
            incremental_type=IncrementalType.DATETIME, incremental_column="ModifiedAt"
        )
        watermark_store.advance_watermark(mapping, "2024-05-01 12:30:15.250000")
        assert watermark_store.get_watermark(mapping) == datetime(2024, 5, 1, 12, 30, 15, 250000)

    def test_changed_incremental_column_starts_over(self, watermark_store, make_mapping):
        watermark_store.advance_watermark(make_mapping(), 500)
        changed = make_mapping(incremental_column="Amount", incremental_start_value=1)
        assert watermark_store.get_watermark(changed) == 1

    def test_invalid_value(self, watermark_store, make_mapping):
        with pytest.raises(WatermarkAdvanceError, match="not a valid Int"):
            watermark_store.advance_watermark(make_mapping(), "abc")

    def test_reset(self, watermark_store, make_mapping):
        mapping = make_mapping(incremental_start_value=3)
        watermark_store.advance_watermark(mapping, 10)

        assert watermark_store.reset_watermark(mapping) is True
        assert watermark_store.get_watermark(mapping) == 3
        assert watermark_store.reset_watermark(mapping) is False

    def test_list_watermarks(self, watermark_store, make_mapping):
        watermark_store.advance_watermark(make_mapping(mapping_id=2), 20)
        watermark_store.advance_watermark(make_mapping(mapping_id=1), 10)

        listed = watermark_store.list_watermarks()
        assert [w["mapping_id"] for w in listed] == [1, 2]
        assert listed[0] == {
            "mapping_id": 1,
            "table": "Orders",
            "column": "OrderId",
            "type": "Int",
            "value": 10,
            "boundary_offset": 0,
        }


class TestWatermarkStoreFailures:
    @pytest.fixture
    def mock_backend(self):
        backend = Mock()
        backend.get.return_value = None
        transaction = MagicMock()
        transaction.__enter__ = Mock(return_value=transaction)
        transaction.__exit__ = Mock(return_value=None)
        backend.transaction.return_value = transaction
        return backend

    def test_read_failure(self, mock_backend, make_mapping):
        mock_backend.get.side_effect = Exception("Backend error")
        store = WatermarkStore(mock_backend)

        with pytest.raises(WatermarkError) as exc_info:
            store.get_watermark(make_mapping())
        assert "Failed to retrieve watermark" in str(exc_info.value)
        assert "[Orders]" in str(exc_info.value)

    def test_transient_write_failure_is_retried(self, mock_backend, make_mapping):
        mock_backend.set.side_effect = [duckdb.IOException("busy"), None]
        store = WatermarkStore(
            mock_backend,
            RetryConfig(
                max_attempts=3, initial_delay=0.0, jitter=False,
                retry_on_exceptions=[duckdb.IOException],
            ),
        )

        assert store.advance_watermark(make_mapping(), 10) is True
        assert mock_backend.set.call_count == 2

    def test_persistent_write_failure(self, mock_backend, make_mapping):
        mock_backend.set.side_effect = Exception("disk full")
        store = WatermarkStore(mock_backend)

        with pytest.raises(WatermarkAdvanceError) as exc_info:
            store.advance_watermark(make_mapping(), 10)
        assert "disk full" in str(exc_info.value)
