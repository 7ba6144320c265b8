"""DuckDB Storage Backend.

This adapter implements ResourceBackendPort on DuckDB, an in-process database.
It is the default backend and runs fully in memory for development and tests.

Security Impact:
    - Only validated Resource instances are persisted
    - History rows are insert-only; the adapter never updates or deletes them
    - Table names are validated identifiers before they reach SQL

Architecture:
    - Implements ResourceBackendPort (Hexagonal Architecture)
    - One table holds the current row and all history rows of every identity
    - DuckDB allows a single writing process per database file, so conditional
      writes are made atomic by serializing statements on one connection
"""

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

import duckdb
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
from resource_vault.adapters.storage.rows import COLUMNS, decode_document, row_values
from resource_vault.infrastructure.config_manager import DatabaseConfig

logger = logging.getLogger(__name__)

T = TypeVar('T')

_BACKEND_ERRORS = (duckdb.Error, StorageError, PydanticValidationError)


class DuckDBBackend(ResourceBackendPort):
    """DuckDB implementation of ResourceBackendPort.

    Parameters:
        db_config: DatabaseConfig from configuration manager (preferred)
        db_path: Path to DuckDB database file (or ':memory:' for in-memory)
        table_name: Resource table name (ignored when db_config is given)

    Example Usage:
        ```python
        backend = DuckDBBackend(db_path=":memory:")
        backend.initialize_schema()
        store = ResourceStore(backend)
        ```
    """

    def __init__(
        self,
        db_config: Optional[DatabaseConfig] = None,
        db_path: Optional[str] = None,
        table_name: str = "resources",
    ):
        if db_config:
            if db_config.db_type != "duckdb":
                raise StorageError(
                    f"DatabaseConfig type '{db_config.db_type}' does not match DuckDB backend",
                    operation="__init__"
                )
            self.db_config = db_config
        else:
            self.db_config = DatabaseConfig(db_type="duckdb", db_path=db_path, table_name=table_name)

        self.db_path = self.db_config.db_path or ":memory:"
        self.table = self.db_config.table_name
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.RLock()
        self._initialized = False

        if self.db_path != ":memory:" and not Path(self.db_path).parent.exists():
            raise StorageError(
                f"Database directory does not exist: {Path(self.db_path).parent}",
                operation="__init__"
            )

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create the DuckDB connection (created lazily)."""
        if self._connection is None:
            try:
                self._connection = duckdb.connect(self.db_path)
                logger.info(f"Connected to DuckDB database: {self.db_path}")
            except duckdb.Error as e:
                raise StorageError(
                    f"Failed to connect to DuckDB: {str(e)}",
                    operation="connect",
                    details={"db_path": self.db_path}
                )
        return self._connection

    def _run(self, operation: str, action: Callable[[duckdb.DuckDBPyConnection], T]) -> Result[T]:
        """Run ``action`` under the connection lock and wrap the outcome."""
        with self._lock:
            try:
                if not self._initialized and operation != "initialize_schema":
                    self._create_schema(self._get_connection())
                return Result.success_result(action(self._get_connection()))
            except duckdb.ConstraintException as e:
                return Result.failure_result(str(e), error_type=CONDITION_FAILED)
            except _BACKEND_ERRORS as e:
                error_msg = f"DuckDB {operation} failed: {str(e)}"
                logger.error(error_msg, exc_info=True)
                return Result.failure_result(
                    error_msg,
                    error_type=ErrorKind.BACKEND_UNAVAILABLE.value,
                    error_details={"operation": operation}
                )

    def _create_schema(self, conn: duckdb.DuckDBPyConnection) -> None:
        # Index columns are plain columns here; DuckDB's zonemaps keep the
        # scans cheap and ART indexes would turn in-place updates into
        # delete+insert pairs.
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {self.table} (
                pk VARCHAR NOT NULL,
                sk VARCHAR NOT NULL,
                kind VARCHAR NOT NULL,
                resource_id VARCHAR NOT NULL,
                version INTEGER NOT NULL,
                deleted BOOLEAN NOT NULL DEFAULT FALSE,
                owner VARCHAR,
                document VARCHAR NOT NULL,
                gsi1pk VARCHAR NOT NULL,
                gsi1sk VARCHAR NOT NULL,
                gsi2pk VARCHAR,
                gsi2sk VARCHAR,
                PRIMARY KEY (pk, sk)
            )
        """)
        self._initialized = True

    def initialize_schema(self) -> Result[None]:
        """Create the resource table if it does not exist."""
        result = self._run("initialize_schema", self._create_schema)
        if result.is_success():
            logger.info(f"Resource table '{self.table}' ready")
        return result

    def _insert(self, conn: duckdb.DuckDBPyConnection, resource: Resource, current: bool) -> None:
        placeholders = ", ".join("?" for _ in COLUMNS)
        conn.execute(
            f"INSERT INTO {self.table} ({', '.join(COLUMNS)}) VALUES ({placeholders})",
            row_values(resource, current=current)
        )

    def _fetch_document(self, conn: duckdb.DuckDBPyConnection, pk: str, sk: str) -> Optional[Resource]:
        row = conn.execute(
            f"SELECT document FROM {self.table} WHERE pk = ? AND sk = ?",
            [pk, sk]
        ).fetchone()
        return decode_document(row[0]) if row else None

    def get_current(self, kind: str, resource_id: str) -> Result[Optional[Resource]]:
        return self._run(
            "get_current",
            lambda conn: self._fetch_document(conn, partition_key(kind, resource_id), CURRENT_MARKER)
        )

    def insert_current(self, resource: Resource) -> Result[None]:
        """Insert-if-absent on the current row; a duplicate key is a failed condition."""
        return self._run("insert_current", lambda conn: self._insert(conn, resource, current=True))

    def insert_history(self, resource: Resource) -> Result[None]:
        return self._run("insert_history", lambda conn: self._insert(conn, resource, current=False))

    def swap_current(self, resource: Resource, expected_version: int) -> Result[None]:
        """Overwrite the current row if it is still at ``expected_version``.

        Check and write happen inside one transaction while holding the
        connection lock.
        """
        pk = partition_key(resource.kind, resource.id)

        def swap(conn: duckdb.DuckDBPyConnection) -> bool:
            conn.execute("BEGIN TRANSACTION")
            try:
                row = conn.execute(
                    f"SELECT version FROM {self.table} WHERE pk = ? AND sk = ?",
                    [pk, CURRENT_MARKER]
                ).fetchone()
                if row is None or row[0] != expected_version:
                    conn.execute("ROLLBACK")
                    return False
                values = row_values(resource, current=True)
                assignments = ", ".join(f"{column} = ?" for column in COLUMNS[2:])
                conn.execute(
                    f"UPDATE {self.table} SET {assignments} WHERE pk = ? AND sk = ?",
                    values[2:] + [pk, CURRENT_MARKER]
                )
                conn.execute("COMMIT")
                return True
            except duckdb.Error:
                conn.execute("ROLLBACK")
                raise

        result = self._run("swap_current", swap)
        if result.is_success() and not result.value:
            return Result.failure_result(
                f"Current row of {resource.full_reference} is not at version {expected_version}",
                error_type=CONDITION_FAILED
            )
        if result.is_success():
            return Result.success_result(None)
        return result

    def get_history(self, kind: str, resource_id: str, version: int) -> Result[Optional[Resource]]:
        return self._run(
            "get_history",
            lambda conn: self._fetch_document(conn, partition_key(kind, resource_id), version_marker(version))
        )

    def list_history(self, kind: str, resource_id: str) -> Result[list[Resource]]:
        def fetch(conn: duckdb.DuckDBPyConnection) -> list[Resource]:
            rows = conn.execute(
                f"SELECT document FROM {self.table} WHERE pk = ? AND sk <> ? ORDER BY version DESC",
                [partition_key(kind, resource_id), CURRENT_MARKER]
            ).fetchall()
            return [decode_document(row[0]) for row in rows]

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
        conditions = conditions + ["sk = ?"]
        params = params + [CURRENT_MARKER]
        if not include_deleted:
            conditions.append("deleted = FALSE")
        if updated_after is not None:
            conditions.append("gsi1sk > ?")
            params.append(recency_sort_key(updated_after))
        where = " AND ".join(conditions)

        def scan(conn: duckdb.DuckDBPyConnection) -> RowPage:
            total = conn.execute(f"SELECT COUNT(*) FROM {self.table} WHERE {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT document FROM {self.table} WHERE {where} "
                f"ORDER BY gsi1sk DESC, resource_id DESC LIMIT ? OFFSET ?",
                params + [limit, offset]
            ).fetchall()
            return RowPage(rows=[decode_document(row[0]) for row in rows], total=int(total))

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
            "query_by_kind", ["gsi1pk = ?"], [kind_index_key(kind)],
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
            "query_by_owner", ["gsi2pk = ?", "starts_with(gsi2sk, ?)"],
            [owner_index_key(owner), partition_key(kind, "")],
            updated_after, include_deleted, limit, offset
        )

    def ping(self) -> Result[None]:
        """Run a trivial query to check connectivity."""
        def ping(conn: duckdb.DuckDBPyConnection) -> None:
            conn.execute("SELECT 1").fetchone()

        return self._run("ping", ping)

    def close(self) -> None:
        """Close the DuckDB connection."""
        with self._lock:
            if self._connection is not None:
                try:
                    self._connection.close()
                    logger.info("Closed DuckDB connection")
                except duckdb.Error as e:
                    logger.warning(f"Error closing DuckDB connection: {str(e)}")
                finally:
                    self._connection = None
                    self._initialized = False
