"""Tests for the DuckDB backend.

These run against a real in-memory DuckDB database and check the
conditional-write contract and both index scans directly, without the store.
"""

from datetime import datetime, timedelta, timezone

import pytest

from resource_vault.adapters.storage.duckdb_backend import DuckDBBackend
from resource_vault.domain.ports import CONDITION_FAILED, ErrorKind, StorageError
from resource_vault.domain.resource import Resource
from resource_vault.infrastructure.config_manager import DatabaseConfig

T0 = datetime(2024, 2, 1, tzinfo=timezone.utc)


def make(kind="Observation", resource_id="o1", version=1, seconds=0, owner="Patient/p1", deleted=False, **body):
    return Resource(
        kind=kind,
        id=resource_id,
        version=version,
        last_modified=T0 + timedelta(seconds=seconds),
        owner=owner,
        deleted=deleted,
        body=body or {"status": "final"},
    )


def put(backend, resource):
    assert backend.insert_current(resource).is_success()
    assert backend.insert_history(resource).is_success()


class TestConstruction:
    """Test backend construction and schema creation."""

    def test_rejects_foreign_config(self):
        with pytest.raises(StorageError):
            DuckDBBackend(db_config=DatabaseConfig(db_type="postgresql", host="db", database="vault"))

    def test_rejects_missing_directory(self, tmp_path):
        with pytest.raises(StorageError):
            DuckDBBackend(db_path=str(tmp_path / "missing" / "vault.duckdb"))

    def test_schema_is_created_lazily(self):
        backend = DuckDBBackend(db_path=":memory:")
        try:
            result = backend.get_current("Patient", "p1")
            assert result.is_success()
            assert result.value is None
        finally:
            backend.close()

    def test_initialize_schema_is_idempotent(self, backend):
        assert backend.initialize_schema().is_success()

    def test_file_database_persists_across_instances(self, tmp_path):
        path = str(tmp_path / "vault.duckdb")
        first = DuckDBBackend(db_path=path)
        put(first, make())
        first.close()

        second = DuckDBBackend(db_path=path)
        try:
            assert second.get_current("Observation", "o1").value == make()
        finally:
            second.close()

    def test_custom_table_name(self):
        backend = DuckDBBackend(db_path=":memory:", table_name="vault_rows")
        try:
            put(backend, make())
            assert backend.table == "vault_rows"
            assert backend.get_current("Observation", "o1").value is not None
        finally:
            backend.close()


class TestConditionalWrites:
    """Test insert-if-absent and compare-and-swap."""

    def test_round_trip_current_row(self, backend):
        resource = make(code={"coding": [{"code": "8480-6"}]}, value=120.5)
        put(backend, resource)
        assert backend.get_current("Observation", "o1").value == resource

    def test_second_insert_current_fails_condition(self, backend):
        put(backend, make())
        result = backend.insert_current(make(status="amended"))
        assert result.is_error(CONDITION_FAILED)
        assert backend.get_current("Observation", "o1").value.body == {"status": "final"}

    def test_history_row_is_insert_only(self, backend):
        put(backend, make())
        assert backend.insert_history(make(status="amended")).is_error(CONDITION_FAILED)
        assert backend.get_history("Observation", "o1", 1).value.body == {"status": "final"}

    def test_swap_current_on_expected_version(self, backend):
        put(backend, make())
        v2 = make(version=2, seconds=10, owner="Patient/p2", status="amended")
        backend.insert_history(v2)

        assert backend.swap_current(v2, expected_version=1).is_success()
        assert backend.get_current("Observation", "o1").value == v2

    def test_swap_current_on_stale_version_fails_condition(self, backend):
        put(backend, make())
        v2 = make(version=2, seconds=10)
        assert backend.swap_current(v2, expected_version=1).is_success()

        stale = make(version=2, seconds=20, status="lost")
        assert backend.swap_current(stale, expected_version=1).is_error(CONDITION_FAILED)
        assert backend.get_current("Observation", "o1").value == v2

    def test_swap_current_on_missing_row_fails_condition(self, backend):
        assert backend.swap_current(make(version=2), expected_version=1).is_error(CONDITION_FAILED)

    def test_list_history_newest_first(self, backend):
        put(backend, make())
        for version in (2, 3):
            backend.insert_history(make(version=version, seconds=version))
        versions = backend.list_history("Observation", "o1").value
        assert [v.version for v in versions] == [3, 2, 1]

    def test_get_missing_history(self, backend):
        assert backend.get_history("Observation", "o1", 4).value is None


class TestIndexScans:
    """Test the kind and owner index scans."""

    @pytest.fixture
    def populated(self, backend):
        put(backend, make(resource_id="o1", seconds=1, owner="Patient/p1"))
        put(backend, make(resource_id="o2", seconds=2, owner="Patient/p2"))
        put(backend, make(resource_id="o3", seconds=3, owner="Patient/p1", deleted=True))
        put(backend, make(resource_id="o4", seconds=4, owner="Patient/p1"))
        put(backend, make(kind="Encounter", resource_id="e1", seconds=5, owner="Patient/p1"))
        return backend

    def test_kind_scan_orders_by_recency(self, populated):
        page = populated.query_by_kind("Observation").value
        assert [r.id for r in page.rows] == ["o4", "o2", "o1"]
        assert page.total == 3

    def test_kind_scan_includes_tombstones_on_request(self, populated):
        page = populated.query_by_kind("Observation", include_deleted=True).value
        assert [r.id for r in page.rows] == ["o4", "o3", "o2", "o1"]

    def test_kind_scan_limit_and_offset(self, populated):
        page = populated.query_by_kind("Observation", limit=1, offset=1).value
        assert [r.id for r in page.rows] == ["o2"]
        assert page.total == 3

    def test_kind_scan_updated_after_is_exclusive(self, populated):
        page = populated.query_by_kind("Observation", updated_after=T0 + timedelta(seconds=2)).value
        assert [r.id for r in page.rows] == ["o4"]

    def test_kind_scan_ignores_history_rows(self, populated):
        populated.insert_history(make(resource_id="o1", version=2, seconds=9))
        page = populated.query_by_kind("Observation").value
        assert [r.version for r in page.rows if r.id == "o1"] == [1]

    def test_owner_scan_is_restricted_to_kind(self, populated):
        page = populated.query_by_owner("Patient/p1", "Observation").value
        assert [r.id for r in page.rows] == ["o4", "o1"]
        assert page.total == 2

        encounters = populated.query_by_owner("Patient/p1", "Encounter").value
        assert [r.id for r in encounters.rows] == ["e1"]

    def test_owner_scan_follows_swapped_owner(self, populated):
        moved = make(resource_id="o1", version=2, seconds=10, owner="Patient/p2")
        populated.swap_current(moved, expected_version=1)

        assert [r.id for r in populated.query_by_owner("Patient/p1", "Observation").value.rows] == ["o4"]
        assert [r.id for r in populated.query_by_owner("Patient/p2", "Observation").value.rows] == ["o1", "o2"]

    def test_unowned_rows_are_not_in_owner_index(self, backend):
        put(backend, make(kind="Practitioner", resource_id="dr1", owner=None))
        assert backend.query_by_owner("Patient/p1", "Practitioner").value.rows == []


class TestFailures:
    """Test that DuckDB errors become BackendUnavailable results."""

    def test_ping(self, backend):
        assert backend.ping().is_success()

    def test_closed_backend_reconnects(self, backend):
        backend.close()
        assert backend.ping().is_success()

    def test_corrupt_document_is_backend_failure(self, backend):
        backend._get_connection().execute(
            f"INSERT INTO {backend.table} VALUES "
            f"('RESOURCE#Patient#bad', 'CURRENT', 'Patient', 'bad', 1, FALSE, NULL, '{{not json', "
            f"'RESOURCE_TYPE#Patient', '2024-01-01T00:00:00.000000Z', NULL, NULL)"
        )
        result = backend.get_current("Patient", "bad")
        assert result.is_error(ErrorKind.BACKEND_UNAVAILABLE)
        assert result.error_details["operation"] == "get_current"
