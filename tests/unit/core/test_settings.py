"""Tests for engine settings."""

import pytest

from sqltransfer.core.settings import EngineSettings


class TestEngineSettings:
    def test_defaults(self):
        settings = EngineSettings()
        assert settings.max_workers == 1
        assert settings.extract_timeout == 300.0
        assert settings.state_path is None

    def test_from_dict_converts_substituted_strings(self):
        settings = EngineSettings.from_dict(
            {
                "max_workers": "4",
                "load_timeout": "120",
                "validate_incremental_only": "true",
                "state_path": "state.duckdb",
            }
        )
        assert settings.max_workers == 4
        assert settings.load_timeout == 120.0
        assert settings.validate_incremental_only is True
        assert settings.state_path == "state.duckdb"

    def test_empty_value_disables_timeout(self):
        assert EngineSettings.from_dict({"extract_timeout": ""}).extract_timeout is None

    def test_unknown_keys_rejected(self):
        with pytest.raises(ValueError, match="Unknown settings: batch"):
            EngineSettings.from_dict({"batch": 10})

    def test_invalid_value(self):
        with pytest.raises(ValueError, match="Invalid value 'many'"):
            EngineSettings.from_dict({"max_workers": "many"})

    def test_max_workers_must_be_positive(self):
        with pytest.raises(ValueError):
            EngineSettings(max_workers=0)

    def test_persistence_retry(self):
        retry = EngineSettings(persistence_max_attempts=5, persistence_initial_delay=0.1).persistence_retry
        assert retry.max_attempts == 5
        assert retry.initial_delay == 0.1
