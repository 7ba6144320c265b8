"""Test suite for the PostgreSQL backend using mocked database connections.

All database operations are mocked so the SQL issued for each conditional
write and index scan can be checked without a running PostgreSQL server.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import psycopg2
import pytest
from psycopg2 import pool as real_pool

from resource_vault.adapters.storage.postgres_backend import PostgresBackend
from resource_vault.adapters.storage.rows import encode_document
from resource_vault.domain.ports import CONDITION_FAILED, ErrorKind, StorageError
from resource_vault.domain.resource import Resource
from resource_vault.infrastructure.config_manager import DatabaseConfig

T0 = datetime(2024, 2, 1, tzinfo=timezone.utc)


@pytest.fixture
def mock_psycopg2():
    """Patch the pool module imported by the backend.

    ThreadedConnectionPool is replaced so no real connection is attempted.
    """
    with patch('resource_vault.adapters.storage.postgres_backend.pool') as mock_pool_module:
        mock_pool = MagicMock()
        mock_conn = MagicMock()
        mock_cursor = MagicMock()
        mock_conn.cursor.return_value = mock_cursor
        mock_pool.getconn.return_value = mock_conn

        mock_threaded_pool_class = MagicMock(return_value=mock_pool)
        mock_pool_module.ThreadedConnectionPool = mock_threaded_pool_class
        mock_pool_module.PoolError = real_pool.PoolError

        yield {
            'pool_module': mock_pool_module,
            'pool': mock_pool,
            'conn': mock_conn,
            'cursor': mock_cursor,
            'ThreadedConnectionPool': mock_threaded_pool_class,
        }


@pytest.fixture
def db_config():
    return DatabaseConfig(
        db_type="postgresql",
        host="db.internal",
        port=5433,
        database="vault",
        username="vault_user",
        password="s3cret",
        statement_timeout_ms=2500,
    )


@pytest.fixture
def pg_backend(mock_psycopg2, db_config):
    backend = PostgresBackend(db_config=db_config)
    backend._initialized = True
    return backend


@pytest.fixture
def observation():
    return Resource(
        kind="Observation",
        id="o1",
        version=2,
        last_modified=T0,
        owner="Patient/p1",
        body={"status": "final"},
    )


def executed_sql(cursor) -> list[str]:
    return [" ".join(c.args[0].split()) for c in cursor.execute.call_args_list]


class TestConstruction:
    """Test configuration handling."""

    def test_connection_params(self, mock_psycopg2, db_config):
        backend = PostgresBackend(db_config=db_config)

        params = backend.connection_params
        assert params["host"] == "db.internal"
        assert params["port"] == 5433
        assert params["database"] == "vault"
        assert params["password"] == "s3cret"
        assert params["sslmode"] == "require"
        assert params["options"] == "-c statement_timeout=2500"

    def test_pool_is_created_lazily(self, mock_psycopg2, db_config):
        backend = PostgresBackend(db_config=db_config)
        mock_psycopg2['ThreadedConnectionPool'].assert_not_called()

        backend.ping()

        mock_psycopg2['ThreadedConnectionPool'].assert_called_once()
        kwargs = mock_psycopg2['ThreadedConnectionPool'].call_args.kwargs
        assert kwargs["minconn"] == 1
        assert kwargs["maxconn"] == db_config.pool_size + db_config.max_overflow

    def test_from_connection_string(self, mock_psycopg2):
        backend = PostgresBackend(connection_string="postgresql://u:p@pg.example:5432/vault?sslmode=disable")
        assert backend.connection_params["host"] == "pg.example"
        assert backend.connection_params["database"] == "vault"
        assert backend.connection_params["sslmode"] == "disable"

    def test_requires_config(self, mock_psycopg2):
        with pytest.raises(StorageError):
            PostgresBackend()

    def test_rejects_duckdb_config(self, mock_psycopg2):
        with pytest.raises(StorageError):
            PostgresBackend(db_config=DatabaseConfig(db_type="duckdb"))

    def test_requires_host_and_database(self, mock_psycopg2):
        with pytest.raises(StorageError):
            PostgresBackend(db_config=DatabaseConfig(db_type="postgresql", host="db.internal"))


class TestSchema:
    """Test schema creation."""

    def test_initialize_schema_creates_partial_indexes(self, mock_psycopg2, db_config):
        backend = PostgresBackend(db_config=db_config)

        assert backend.initialize_schema().is_success()

        statements = executed_sql(mock_psycopg2['cursor'])
        assert statements[0].startswith("CREATE TABLE IF NOT EXISTS resources")
        assert "document JSONB NOT NULL" in statements[0]
        assert "WHERE sk = 'CURRENT'" in statements[1]
        assert "(gsi2pk, gsi2sk)" in statements[2]
        mock_psycopg2['conn'].commit.assert_called_once()
        assert backend._initialized is True

    def test_first_call_initializes_schema(self, mock_psycopg2, db_config):
        backend = PostgresBackend(db_config=db_config)
        backend.ping()
        statements = executed_sql(mock_psycopg2['cursor'])
        assert statements[0].startswith("CREATE TABLE")
        assert statements[-1] == "SELECT 1"


class TestConditionalWrites:
    """Test insert-if-absent and compare-and-swap statements."""

    def test_insert_current_uses_on_conflict(self, pg_backend, mock_psycopg2, observation):
        mock_psycopg2['cursor'].rowcount = 1

        assert pg_backend.insert_current(observation).is_success()

        sql = executed_sql(mock_psycopg2['cursor'])[0]
        assert "ON CONFLICT (pk, sk) DO NOTHING" in sql
        values = mock_psycopg2['cursor'].execute.call_args.args[1]
        assert values[:2] == ["RESOURCE#Observation#o1", "CURRENT"]
        assert values[7].adapted == encode_document(observation)
        assert values[10:] == ["OWNER#Patient/p1", "RESOURCE#Observation#o1"]

    def test_insert_history_uses_version_marker(self, pg_backend, mock_psycopg2, observation):
        mock_psycopg2['cursor'].rowcount = 1
        pg_backend.insert_history(observation)
        values = mock_psycopg2['cursor'].execute.call_args.args[1]
        assert values[1] == "v2"

    def test_existing_row_fails_condition(self, pg_backend, mock_psycopg2, observation):
        mock_psycopg2['cursor'].rowcount = 0
        assert pg_backend.insert_current(observation).is_error(CONDITION_FAILED)

    def test_swap_current_is_guarded_by_version(self, pg_backend, mock_psycopg2, observation):
        mock_psycopg2['cursor'].rowcount = 1

        assert pg_backend.swap_current(observation, expected_version=1).is_success()

        sql = executed_sql(mock_psycopg2['cursor'])[0]
        assert sql.startswith("UPDATE resources SET kind = %s")
        assert sql.endswith("WHERE pk = %s AND sk = %s AND version = %s")
        params = mock_psycopg2['cursor'].execute.call_args.args[1]
        assert params[-3:] == ["RESOURCE#Observation#o1", "CURRENT", 1]

    def test_swap_current_lost_fails_condition(self, pg_backend, mock_psycopg2, observation):
        mock_psycopg2['cursor'].rowcount = 0
        assert pg_backend.swap_current(observation, expected_version=1).is_error(CONDITION_FAILED)


class TestReads:
    """Test point reads and scans."""

    def test_get_current_decodes_jsonb(self, pg_backend, mock_psycopg2, observation):
        mock_psycopg2['cursor'].fetchone.return_value = (encode_document(observation),)
        assert pg_backend.get_current("Observation", "o1").value == observation

    def test_get_current_missing(self, pg_backend, mock_psycopg2):
        mock_psycopg2['cursor'].fetchone.return_value = None
        assert pg_backend.get_current("Observation", "o1").value is None

    def test_query_by_owner(self, pg_backend, mock_psycopg2, observation):
        cursor = mock_psycopg2['cursor']
        cursor.fetchone.return_value = (1,)
        cursor.fetchall.return_value = [(encode_document(observation),)]

        page = pg_backend.query_by_owner(
            "Patient/p1", "Observation", updated_after=datetime(2024, 1, 1, tzinfo=timezone.utc), limit=5, offset=10
        ).value

        assert page.total == 1
        assert page.rows == [observation]
        count_sql, select_sql = executed_sql(cursor)
        assert "gsi2pk = %s AND gsi2sk LIKE %s AND sk = %s AND deleted = FALSE AND gsi1sk > %s" in count_sql
        assert select_sql.endswith("ORDER BY gsi1sk DESC, resource_id DESC LIMIT %s OFFSET %s")
        params = cursor.execute.call_args.args[1]
        assert params == [
            "OWNER#Patient/p1", "RESOURCE#Observation#%", "CURRENT",
            "2024-01-01T00:00:00.000000Z", 5, 10,
        ]

    def test_query_by_kind_with_tombstones(self, pg_backend, mock_psycopg2):
        cursor = mock_psycopg2['cursor']
        cursor.fetchone.return_value = (0,)
        cursor.fetchall.return_value = []

        page = pg_backend.query_by_kind("Patient", include_deleted=True).value

        assert page.rows == []
        assert "deleted = FALSE" not in executed_sql(cursor)[0]


class TestFailures:
    """Test error handling and transaction rollback."""

    def test_database_error_rolls_back(self, pg_backend, mock_psycopg2):
        mock_psycopg2['cursor'].execute.side_effect = psycopg2.OperationalError("server closed the connection")

        result = pg_backend.get_current("Patient", "p1")

        assert result.is_error(ErrorKind.BACKEND_UNAVAILABLE)
        assert "server closed the connection" in result.error
        mock_psycopg2['conn'].rollback.assert_called_once()
        mock_psycopg2['pool'].putconn.assert_called_once_with(mock_psycopg2['conn'])

    def test_pool_creation_failure(self, mock_psycopg2, db_config):
        mock_psycopg2['ThreadedConnectionPool'].side_effect = psycopg2.OperationalError("no route to host")
        backend = PostgresBackend(db_config=db_config)

        result = backend.ping()

        assert result.is_error(ErrorKind.BACKEND_UNAVAILABLE)

    def test_close_releases_pool(self, pg_backend, mock_psycopg2):
        pg_backend.ping()
        pg_backend.close()
        mock_psycopg2['pool'].closeall.assert_called_once()
        assert pg_backend._connection_pool is None
