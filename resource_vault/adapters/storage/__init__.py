"""Storage backends for Resource Vault.

This module contains storage adapters that implement the ResourceBackendPort
interface for persisting versioned resources and their index projections.
"""

from resource_vault.adapters.storage.duckdb_backend import DuckDBBackend
from resource_vault.adapters.storage.postgres_backend import PostgresBackend

__all__ = ["DuckDBBackend", "PostgresBackend"]
