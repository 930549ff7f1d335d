"""Tests for profile loading and validation."""

from textwrap import dedent

import pytest

from sqltransfer.core.profiles import load_profile, parse_profile

PROFILE = dedent(
    """
    settings:
      max_workers: 2
      state_path: ${STATE_PATH|state.duckdb}
    connections:
      source_db:
        url: ${SOURCE_URL}
        access: read
      warehouse: sqlite:///warehouse.db
    configurations:
      - id: 1
        name: nightly
        source: source_db
        destination: warehouse
        batch_size: 500
        table_mappings:
          - id: 10
            source_schema: dbo
            source_table: Orders
            incremental: {type: Int, column: OrderId}
          - id: 11
            source_table: Customers
            active: false
        schedules:
          - id: 1
            type: Interval
            frequency: 15
    """
)


class TestLoadProfile:
    def test_loads_and_substitutes(self, tmp_path):
        path = tmp_path / "sqltransfer.yml"
        path.write_text(PROFILE)

        profile = load_profile(str(path), variables={"SOURCE_URL": "sqlite:///src.db"})

        assert profile.path == str(path)
        assert profile.settings.max_workers == 2
        assert profile.settings.state_path == "state.duckdb"
        assert profile.connections["source_db"].url == "sqlite:///src.db"
        assert profile.connections["warehouse"].access == "readwrite"

        configuration = profile.configurations[0]
        assert configuration.batch_size == 500
        assert [m.mapping_id for m in configuration.table_mappings] == [10, 11]
        assert configuration.schedules[0].frequency == 15

        store = profile.configuration_store()
        assert store.find("nightly") is configuration

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_profile(str(tmp_path / "missing.yml"))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yml"
        path.write_text("connections: [unclosed")
        with pytest.raises(ValueError, match="Invalid YAML"):
            load_profile(str(path))


class TestValidateProfile:
    def _base(self):
        return {
            "connections": {
                "src": {"url": "sqlite://", "access": "read"},
                "dst": {"url": "sqlite://", "access": "write"},
            },
            "configurations": [
                {
                    "id": 1,
                    "name": "one",
                    "source": "src",
                    "destination": "dst",
                    "table_mappings": [{"id": 1, "source_table": "A"}],
                }
            ],
        }

    def test_valid_profile(self):
        profile = parse_profile(self._base())
        assert len(profile.configurations) == 1

    def test_undefined_connection(self):
        data = self._base()
        data["configurations"][0]["destination"] = "nowhere"
        with pytest.raises(ValueError, match="destination connection 'nowhere' is not defined"):
            parse_profile(data)

    def test_read_only_destination(self):
        data = self._base()
        data["configurations"][0]["destination"] = "src"
        with pytest.raises(ValueError, match="read-only connection 'src' as its destination"):
            parse_profile(data)

    def test_mapping_ids_unique_across_configurations(self):
        data = self._base()
        data["configurations"].append(
            {
                "id": 2,
                "name": "two",
                "source": "src",
                "destination": "dst",
                "table_mappings": [{"id": 1, "source_table": "B"}],
            }
        )
        with pytest.raises(ValueError, match="Mapping id 1 is used by both 'one' and 'two'"):
            parse_profile(data)

    def test_duplicate_configuration_ids(self):
        data = self._base()
        duplicate = dict(data["configurations"][0], name="copy", table_mappings=[])
        data["configurations"].append(duplicate)
        with pytest.raises(ValueError, match="Duplicate configuration id 1"):
            parse_profile(data)

    def test_invalid_record_reported_with_profile_label(self):
        data = self._base()
        data["configurations"][0]["table_mappings"][0]["incremental"] = {"type": "Int"}
        with pytest.raises(ValueError, match="Profile validation failed for '<profile>'"):
            parse_profile(data)

    def test_profile_must_be_mapping(self):
        with pytest.raises(ValueError, match="must be a YAML mapping"):
            parse_profile(["not", "a", "mapping"])
