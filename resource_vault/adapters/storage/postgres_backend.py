"""PostgreSQL Storage Backend.

This adapter implements ResourceBackendPort on PostgreSQL for deployments
where several store instances share one database.

Security Impact:
    - Connection credentials are managed via DatabaseConfig and never logged
    - SSL mode defaults to 'require'
    - Every session carries a statement timeout so no call blocks indefinitely

Architecture:
    - Implements ResourceBackendPort (Hexagonal Architecture)
    - Conditional writes are single statements: INSERT ... ON CONFLICT DO
      NOTHING for insert-if-absent and UPDATE ... WHERE version = %s for the
      compare-and-swap, so concurrent store instances need no locks
    - Partial indexes on the current rows serve the two index scans
    - Connection pooling for performance
"""

import logging
from datetime import datetime
from typing import Any, Callable, Optional, TypeVar

import psycopg2
from psycopg2 import pool
from psycopg2.extras import Json
from pydantic import ValidationError as PydanticValidationError

from resource_vault.domain.keys import (
    CURRENT_MARKER,
    kind_index_key,
    owner_index_key,
    partition_key,
    recency_sort_key,
    version_marker,
)
from resource_vault.domain.ports import (
    CONDITION_FAILED,
    ErrorKind,
    ResourceBackendPort,
    Result,
    RowPage,
    StorageError,
)
from resource_vault.domain.resource import Resource
from resource_vault.adapters.storage.rows import COLUMNS, decode_document, encode_document, row_values
from resource_vault.infrastructure.config_manager import DatabaseConfig

logger = logging.getLogger(__name__)

T = TypeVar('T')


class PostgresBackend(ResourceBackendPort):
    """PostgreSQL implementation of ResourceBackendPort.

    Parameters:
        db_config: DatabaseConfig from configuration manager (preferred)
        connection_string: Full PostgreSQL connection string (alternative)

    Example Usage:
        ```python
        backend = PostgresBackend(db_config=get_database_config())
        result = backend.initialize_schema()
        if result.is_success():
            store = ResourceStore(backend)
        ```

    Raises:
        StorageError: If the configuration does not describe a PostgreSQL database
    """

    def __init__(
        self,
        db_config: Optional[DatabaseConfig] = None,
        connection_string: Optional[str] = None,
    ):
        if db_config is None:
            if not connection_string:
                raise StorageError(
                    "PostgresBackend requires db_config or connection_string",
                    operation="__init__"
                )
            db_config = DatabaseConfig(db_type="postgresql", connection_string=connection_string)
        if db_config.db_type != "postgresql":
            raise StorageError(
                f"DatabaseConfig type '{db_config.db_type}' does not match PostgreSQL backend",
                operation="__init__"
            )
        if not (db_config.host and db_config.database):
            raise StorageError(
                "PostgreSQL configuration requires host and database",
                operation="__init__"
            )

        self.db_config = db_config
        self.table = db_config.table_name
        self.pool_size = db_config.pool_size
        self.max_overflow = db_config.max_overflow
        self.connection_params = {
            "host": db_config.host,
            "port": db_config.port or 5432,
            "database": db_config.database,
            "user": db_config.username,
            "password": db_config.password.get_secret_value() if db_config.password else None,
            "sslmode": db_config.ssl_mode or "require",
            "connect_timeout": db_config.connect_timeout,
            "options": f"-c statement_timeout={db_config.statement_timeout_ms}",
        }
        self._connection_pool = None
        self._initialized = False

    def _get_connection_pool(self) -> pool.ThreadedConnectionPool:
        """Get or create the connection pool (created lazily).

        Raises:
            StorageError: If the pool cannot be created
        """
        if self._connection_pool is None:
            try:
                self._connection_pool = pool.ThreadedConnectionPool(
                    minconn=1,
                    maxconn=self.pool_size + self.max_overflow,
                    **self.connection_params
                )
                logger.info("Created PostgreSQL connection pool")
            except psycopg2.Error as e:
                raise StorageError(
                    f"Failed to create PostgreSQL connection pool: {str(e)}",
                    operation="connect",
                    details={"host": self.connection_params.get("host", "N/A")}
                )
        return self._connection_pool

    def _get_connection(self):
        try:
            return self._get_connection_pool().getconn()
        except pool.PoolError as e:
            raise StorageError(f"Failed to get connection from pool: {str(e)}", operation="get_connection")

    def _return_connection(self, conn) -> None:
        try:
            self._get_connection_pool().putconn(conn)
        except (pool.PoolError, StorageError) as e:
            logger.warning(f"Error returning connection to pool: {str(e)}")

    def _run(self, operation: str, action: Callable[[Any], T]) -> Result[T]:
        """Run ``action(cursor)`` in one transaction and wrap the outcome."""
        conn = None
        try:
            if not self._initialized and operation != "initialize_schema":
                init_result = self.initialize_schema()
                if not init_result.is_success():
                    return init_result
            conn = self._get_connection()
            cursor = conn.cursor()
            value = action(cursor)
            conn.commit()
            cursor.close()
            return Result.success_result(value)
        except (psycopg2.Error, StorageError, PydanticValidationError) as e:
            if conn is not None:
                try:
                    conn.rollback()
                except psycopg2.Error:
                    logger.warning("Rollback failed", exc_info=True)
            error_msg = f"PostgreSQL {operation} failed: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                error_msg,
                error_type=ErrorKind.BACKEND_UNAVAILABLE.value,
                error_details={"operation": operation}
            )
        finally:
            if conn is not None:
                self._return_connection(conn)

    def initialize_schema(self) -> Result[None]:
        """Create the resource table and its two index projections."""
        table = self.table

        def create(cursor) -> None:
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    pk VARCHAR(255) NOT NULL,
                    sk VARCHAR(32) NOT NULL,
                    kind VARCHAR(64) NOT NULL,
                    resource_id VARCHAR(64) NOT NULL,
                    version INTEGER NOT NULL CHECK (version >= 1),
                    deleted BOOLEAN NOT NULL DEFAULT FALSE,
                    owner VARCHAR(255),
                    document JSONB NOT NULL,
                    gsi1pk VARCHAR(128) NOT NULL,
                    gsi1sk VARCHAR(32) NOT NULL,
                    gsi2pk VARCHAR(255),
                    gsi2sk VARCHAR(255),
                    PRIMARY KEY (pk, sk)
                )
            """)
            cursor.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{table}_gsi1 "
                f"ON {table} (gsi1pk, gsi1sk DESC) WHERE sk = 'CURRENT'"
            )
            cursor.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{table}_gsi2 "
                f"ON {table} (gsi2pk, gsi2sk) WHERE sk = 'CURRENT'"
            )

        result = self._run("initialize_schema", create)
        if result.is_success():
            self._initialized = True
            logger.info(f"Resource table '{table}' ready")
        return result

    def _insert_if_absent(self, operation: str, resource: Resource, current: bool) -> Result[None]:
        values = row_values(resource, current=current, document=Json(encode_document(resource)))
        placeholders = ", ".join("%s" for _ in COLUMNS)

        def insert(cursor) -> int:
            cursor.execute(
                f"INSERT INTO {self.table} ({', '.join(COLUMNS)}) VALUES ({placeholders}) "
                f"ON CONFLICT (pk, sk) DO NOTHING",
                values
            )
            return cursor.rowcount

        result = self._run(operation, insert)
        if result.is_success() and result.value == 0:
            return Result.failure_result(
                f"Row for {resource.full_reference} already exists",
                error_type=CONDITION_FAILED
            )
        if result.is_success():
            return Result.success_result(None)
        return result

    def _fetch_document(self, operation: str, pk: str, sk: str) -> Result[Optional[Resource]]:
        def fetch(cursor) -> Optional[Resource]:
            cursor.execute(f"SELECT document FROM {self.table} WHERE pk = %s AND sk = %s", [pk, sk])
            row = cursor.fetchone()
            return decode_document(row[0]) if row else None

        return self._run(operation, fetch)

    def get_current(self, kind: str, resource_id: str) -> Result[Optional[Resource]]:
        return self._fetch_document("get_current", partition_key(kind, resource_id), CURRENT_MARKER)

    def insert_current(self, resource: Resource) -> Result[None]:
        return self._insert_if_absent("insert_current", resource, current=True)

    def insert_history(self, resource: Resource) -> Result[None]:
        return self._insert_if_absent("insert_history", resource, current=False)

    def swap_current(self, resource: Resource, expected_version: int) -> Result[None]:
        """Compare-and-swap the current row on its version column."""
        pk = partition_key(resource.kind, resource.id)
        values = row_values(resource, current=True, document=Json(encode_document(resource)))
        assignments = ", ".join(f"{column} = %s" for column in COLUMNS[2:])

        def swap(cursor) -> int:
            cursor.execute(
                f"UPDATE {self.table} SET {assignments} WHERE pk = %s AND sk = %s AND version = %s",
                values[2:] + [pk, CURRENT_MARKER, expected_version]
            )
            return cursor.rowcount

        result = self._run("swap_current", swap)
        if result.is_success() and result.value == 0:
            return Result.failure_result(
                f"Current row of {resource.full_reference} is not at version {expected_version}",
                error_type=CONDITION_FAILED
            )
        if result.is_success():
            return Result.success_result(None)
        return result

    def get_history(self, kind: str, resource_id: str, version: int) -> Result[Optional[Resource]]:
        return self._fetch_document("get_history", partition_key(kind, resource_id), version_marker(version))

    def list_history(self, kind: str, resource_id: str) -> Result[list[Resource]]:
        def fetch(cursor) -> list[Resource]:
            cursor.execute(
                f"SELECT document FROM {self.table} WHERE pk = %s AND sk <> %s ORDER BY version DESC",
                [partition_key(kind, resource_id), CURRENT_MARKER]
            )
            return [decode_document(row[0]) for row in cursor.fetchall()]

        return self._run("list_history", fetch)

    def _scan(
        self,
        operation: str,
        conditions: list[str],
        params: list[Any],
        updated_after: Optional[datetime],
        include_deleted: bool,
        limit: int,
        offset: int,
    ) -> Result[RowPage]:
        conditions = conditions + ["sk = %s"]
        params = params + [CURRENT_MARKER]
        if not include_deleted:
            conditions.append("deleted = FALSE")
        if updated_after is not None:
            conditions.append("gsi1sk > %s")
            params.append(recency_sort_key(updated_after))
        where = " AND ".join(conditions)

        def scan(cursor) -> RowPage:
            cursor.execute(f"SELECT COUNT(*) FROM {self.table} WHERE {where}", params)
            total = cursor.fetchone()[0]
            cursor.execute(
                f"SELECT document FROM {self.table} WHERE {where} "
                f"ORDER BY gsi1sk DESC, resource_id DESC LIMIT %s OFFSET %s",
                params + [limit, offset]
            )
            return RowPage(rows=[decode_document(row[0]) for row in cursor.fetchall()], total=int(total))

        return self._run(operation, scan)

    def query_by_kind(
        self,
        kind: str,
        updated_after: Optional[datetime] = None,
        include_deleted: bool = False,
        limit: int = 20,
        offset: int = 0
    ) -> Result[RowPage]:
        return self._scan(
            "query_by_kind", ["gsi1pk = %s"], [kind_index_key(kind)],
            updated_after, include_deleted, limit, offset
        )

    def query_by_owner(
        self,
        owner: str,
        kind: str,
        updated_after: Optional[datetime] = None,
        include_deleted: bool = False,
        limit: int = 20,
        offset: int = 0
    ) -> Result[RowPage]:
        return self._scan(
            "query_by_owner", ["gsi2pk = %s", "gsi2sk LIKE %s"],
            [owner_index_key(owner), partition_key(kind, "%")],
            updated_after, include_deleted, limit, offset
        )

    def ping(self) -> Result[None]:
        def ping(cursor) -> None:
            cursor.execute("SELECT 1")
            cursor.fetchone()

        return self._run("ping", ping)

    def close(self) -> None:
        """Close the connection pool and release resources."""
        if self._connection_pool is not None:
            try:
                self._connection_pool.closeall()
                logger.info("Closed PostgreSQL connection pool")
            except pool.PoolError as e:
                logger.warning(f"Error closing connection pool: {str(e)}")
            finally:
                self._connection_pool = None
