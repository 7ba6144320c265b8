"""Application wiring for Resource Vault.

Builds the backend selected by configuration and the ResourceStore on top of
it. Entry points (API lifespan, CLI) call these factories explicitly; nothing
here caches a process-wide store or backend.
"""

import logging
from typing import Optional

from resource_vault.adapters.storage import DuckDBBackend, PostgresBackend
from resource_vault.domain.ports import ClockPort, ResourceBackendPort, StorageError
from resource_vault.domain.services.resource_store import ResourceStore
from resource_vault.infrastructure.config_manager import DatabaseConfig
from resource_vault.infrastructure.settings import Settings

logger = logging.getLogger(__name__)


def create_backend(db_config: DatabaseConfig) -> ResourceBackendPort:
    """Create the storage backend described by ``db_config``.

    Raises:
        ValueError: If database type is unsupported
    """
    if db_config.db_type == "duckdb":
        logger.info(f"Initializing DuckDB backend with path: {db_config.db_path or ':memory:'}")
        return DuckDBBackend(db_config=db_config)
    elif db_config.db_type == "postgresql":
        logger.info(f"Initializing PostgreSQL backend with host: {db_config.host}")
        return PostgresBackend(db_config=db_config)
    else:
        raise ValueError(f"Unsupported database type: {db_config.db_type}")


def create_store(
    settings: Optional[Settings] = None,
    backend: Optional[ResourceBackendPort] = None,
    clock: Optional[ClockPort] = None,
) -> ResourceStore:
    """Create a ResourceStore with an initialized backend.

    Parameters:
        settings: Application settings (defaults to Settings())
        backend: Pre-built backend; built from settings.db_config when omitted
        clock: Clock/ID source (defaults to SystemClock)

    Raises:
        StorageError: If the backend schema cannot be initialized
    """
    settings = settings or Settings()
    backend = backend or create_backend(settings.db_config)

    init_result = backend.initialize_schema()
    if not init_result.is_success():
        raise StorageError(
            f"Failed to initialize backend: {init_result.error}",
            operation="initialize_schema"
        )
    return ResourceStore(backend, clock=clock, config=settings.store_config)
