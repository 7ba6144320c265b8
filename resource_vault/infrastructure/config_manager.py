"""Configuration Manager for Backend Credentials and Store Settings.

This module loads database credentials and store settings from environment
variables or a JSON file and validates them with Pydantic before anything
connects to a backend.

Security Impact:
    - Credentials are held as SecretStr and never logged
    - Configuration is validated before use (fail-fast)
    - Connection strings are parsed without code execution

Architecture:
    - Infrastructure layer, isolated from the domain core
    - Produces explicit config objects; nothing here is a process-wide singleton
"""

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, quote_plus, unquote, urlparse

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

from resource_vault.domain.resource import DEFAULT_SUPPORTED_KINDS, OwnerPolicy
from resource_vault.domain.services.resource_store import StoreConfig

logger = logging.getLogger(__name__)

ENV_PREFIX = "RV_"

SUPPORTED_DB_TYPES = ("duckdb", "postgresql")

_TABLE_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


class DatabaseConfig(BaseModel):
    """Backend connection settings.

    Parameters:
        db_type: Backend type ('duckdb' or 'postgresql')
        db_path: DuckDB database file, or ':memory:'
        table_name: Name of the single resource table
        host: PostgreSQL host
        port: PostgreSQL port
        database: PostgreSQL database name
        username: PostgreSQL user
        password: PostgreSQL password (secret)
        connection_string: Full connection string (secret); wins over the fields
        ssl_mode: PostgreSQL sslmode
        pool_size: Connection pool size
        max_overflow: Extra connections allowed above pool_size
        connect_timeout: Seconds to wait for a connection
        statement_timeout_ms: Per-statement timeout applied to each session
    """

    db_type: str = Field(default="duckdb", description="Backend type (duckdb, postgresql)")
    db_path: Optional[str] = Field(None, description="Path to DuckDB database file")
    table_name: str = Field(default="resources", description="Resource table name")
    host: Optional[str] = Field(None, description="Database host")
    port: Optional[int] = Field(None, description="Database port")
    database: Optional[str] = Field(None, description="Database name")
    username: Optional[str] = Field(None, description="Database username")
    password: Optional[SecretStr] = Field(None, description="Database password (secret)")
    connection_string: Optional[SecretStr] = Field(None, description="Full connection string (secret)")
    ssl_mode: Optional[str] = Field(None, description="SSL mode (require, prefer, disable)")
    pool_size: int = Field(default=5, ge=1, description="Connection pool size")
    max_overflow: int = Field(default=10, ge=0, description="Maximum connection pool overflow")
    connect_timeout: int = Field(default=10, ge=1, description="Connect timeout in seconds")
    statement_timeout_ms: int = Field(default=5000, ge=0, description="Statement timeout in milliseconds")

    @field_validator("db_type")
    @classmethod
    def validate_db_type(cls, v: str) -> str:
        """Validate backend type."""
        normalized = v.lower()
        if normalized == "postgres":
            normalized = "postgresql"
        if normalized not in SUPPORTED_DB_TYPES:
            raise ValueError(f"Unsupported database type: {v}. Supported: {list(SUPPORTED_DB_TYPES)}")
        return normalized

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: Optional[str]) -> Optional[str]:
        """Check that the DuckDB file's directory exists (the file may not yet)."""
        if v is None or v == ":memory:":
            return v
        db_path_obj = Path(v)
        if not db_path_obj.parent.exists():
            raise ValueError(f"Database directory does not exist: {db_path_obj.parent}")
        return str(db_path_obj)

    @field_validator("table_name")
    @classmethod
    def validate_table_name(cls, v: str) -> str:
        """Table names are interpolated into SQL, so only plain identifiers pass."""
        if not _TABLE_NAME_PATTERN.match(v):
            raise ValueError(f"Invalid table name: {v!r}")
        return v

    @staticmethod
    def _parse_postgresql_connection_string(conn_str: str) -> Dict[str, Any]:
        """Split a postgresql:// (or postgres://) URL into its components.

        Parameters:
            conn_str: PostgreSQL connection string

        Returns:
            Dictionary with host, port, database, username, password and ssl_mode
        """
        parsed = urlparse(conn_str)
        if parsed.scheme not in ("postgresql", "postgres"):
            raise ValueError(f"Unsupported connection string scheme: {parsed.scheme}")

        result: Dict[str, Any] = {
            "host": parsed.hostname,
            "port": parsed.port,
            "database": parsed.path.lstrip("/") if parsed.path else None,
            "username": unquote(parsed.username) if parsed.username else None,
            "password": unquote(parsed.password) if parsed.password else None,
        }
        query_params = parse_qs(parsed.query)
        if "sslmode" in query_params:
            result["ssl_mode"] = query_params["sslmode"][0]
        return result

    @model_validator(mode="after")
    def sync_connection_string_and_fields(self) -> "DatabaseConfig":
        """Keep connection_string and the individual fields consistent.

        A connection string always wins: its parts overwrite the fields. With
        no connection string, one is built from host/database when possible.
        """
        if self.db_type != "postgresql":
            return self

        if self.connection_string:
            parsed = self._parse_postgresql_connection_string(self.connection_string.get_secret_value())
            for name in ("host", "port", "database", "username", "ssl_mode"):
                if parsed.get(name):
                    setattr(self, name, parsed[name])
            if parsed.get("password"):
                self.password = SecretStr(parsed["password"])
        elif self.host and self.database:
            self.connection_string = SecretStr(self._build_connection_string(quote=True))
        return self

    def _build_connection_string(self, quote: bool) -> str:
        username = self.username or ""
        password = self.password.get_secret_value() if self.password else ""
        if quote:
            username = quote_plus(username)
            password = quote_plus(password)
        auth = username + (f":{password}" if password else "")
        ssl_part = f"?sslmode={self.ssl_mode}" if self.ssl_mode else ""
        return f"postgresql://{auth}@{self.host}:{self.port or 5432}/{self.database}{ssl_part}"

    def get_connection_string(self) -> str:
        """Get the connection string (or DuckDB path) for this backend.

        Security Impact:
            - Password is read from SecretStr but not logged
        """
        if self.db_type == "duckdb":
            return self.db_path or ":memory:"
        if self.connection_string:
            return self.connection_string.get_secret_value()
        if not (self.host and self.database):
            raise ValueError("postgresql requires host and database")
        return self._build_connection_string(quote=True)


class ConfigManager:
    """Loads backend and store configuration from trusted sources.

    Example Usage:
        ```python
        config = ConfigManager.from_environment()
        db_config = config.get_database_config()
        store_config = config.get_store_config()

        config = ConfigManager.from_file("vault.json")
        ```
    """

    def __init__(self, config_data: Dict[str, Any]):
        self._config_data = config_data
        self._database_config: Optional[DatabaseConfig] = None
        self._store_config: Optional[StoreConfig] = None

    @classmethod
    def from_environment(
        cls,
        env_file: Optional[Path] = None,
        default_db_path: Optional[str] = None
    ) -> "ConfigManager":
        """Load configuration from RV_* environment variables.

        Environment Variables:
            - RV_DB_TYPE, RV_DB_PATH, RV_DB_TABLE
            - RV_DB_HOST, RV_DB_PORT, RV_DB_NAME, RV_DB_USER
            - RV_DB_PASSWORD, RV_DB_CONNECTION_STRING (secrets)
            - RV_DB_SSL_MODE, RV_DB_CONNECT_TIMEOUT, RV_DB_STATEMENT_TIMEOUT_MS
            - RV_SUPPORTED_KINDS (comma-separated), RV_DEFAULT_PAGE_SIZE,
              RV_MAX_PAGE_SIZE, RV_MAX_WRITE_ATTEMPTS, RV_OWNER_POLICY

        A ``.env`` file in the working directory (or ``env_file``) is loaded
        first; variables already set in the environment are not overridden.
        ``default_db_path`` is the DuckDB file used when RV_DB_PATH is unset
        (in-memory when both are absent).
        """
        env_path = env_file or Path.cwd() / ".env"
        if env_path.exists():
            load_dotenv(env_path, override=False)
            logger.debug(f"Loaded environment variables from {env_path}")

        def env(name: str) -> Optional[str]:
            value = os.getenv(f"{ENV_PREFIX}{name}")
            return value if value not in (None, "") else None

        database = {
            "db_type": env("DB_TYPE") or "duckdb",
            "db_path": env("DB_PATH") or default_db_path,
            "table_name": env("DB_TABLE"),
            "host": env("DB_HOST"),
            "port": env("DB_PORT"),
            "database": env("DB_NAME"),
            "username": env("DB_USER"),
            "password": env("DB_PASSWORD"),
            "connection_string": env("DB_CONNECTION_STRING"),
            "ssl_mode": env("DB_SSL_MODE"),
            "connect_timeout": env("DB_CONNECT_TIMEOUT"),
            "statement_timeout_ms": env("DB_STATEMENT_TIMEOUT_MS"),
        }
        kinds = env("SUPPORTED_KINDS")
        store = {
            "supported_kinds": [k.strip() for k in kinds.split(",") if k.strip()] if kinds else None,
            "default_page_size": env("DEFAULT_PAGE_SIZE"),
            "max_page_size": env("MAX_PAGE_SIZE"),
            "max_write_attempts": env("MAX_WRITE_ATTEMPTS"),
            "owner_policy": env("OWNER_POLICY"),
        }
        return cls({
            "database": {k: v for k, v in database.items() if v is not None},
            "store": {k: v for k, v in store.items() if v is not None},
        })

    @classmethod
    def from_file(cls, config_path: str) -> "ConfigManager":
        """Load configuration from a JSON file with "database" and "store" sections.

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config file is not valid JSON
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        if config_file.stat().st_mode & 0o077 != 0:
            logger.warning(
                f"Configuration file has overly permissive permissions: {config_path}. "
                "Consider setting to 600 for credential files."
            )

        try:
            with open(config_file, "r") as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in configuration file: {str(e)}")
        return cls(config_data)

    def get_database_config(self) -> DatabaseConfig:
        """Get the validated backend configuration."""
        if self._database_config is None:
            self._database_config = DatabaseConfig(**self._config_data.get("database", {}))
        return self._database_config

    def get_store_config(self) -> StoreConfig:
        """Get the validated store configuration.

        Raises:
            ValueError: If a store setting is out of range
        """
        if self._store_config is None:
            self._store_config = StoreSettings(**self._config_data.get("store", {})).to_store_config()
        return self._store_config

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by dotted key (e.g. "database.host")."""
        value: Any = self._config_data
        for k in key.split("."):
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
        return value if value is not None else default


class StoreSettings(BaseModel):
    """Validated store settings before they become a StoreConfig."""

    supported_kinds: list[str] = Field(default_factory=lambda: list(DEFAULT_SUPPORTED_KINDS))
    default_page_size: int = Field(default=20, ge=1)
    max_page_size: int = Field(default=1000, ge=1)
    max_write_attempts: int = Field(default=3, ge=1)
    owner_policy: OwnerPolicy = OwnerPolicy.REJECT

    @field_validator("supported_kinds")
    @classmethod
    def validate_supported_kinds(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("at least one supported kind is required")
        for kind in v:
            if not re.match(r"^[A-Z][A-Za-z]*$", kind):
                raise ValueError(f"Invalid resource kind: {kind!r}")
        return v

    @model_validator(mode="after")
    def check_page_sizes(self) -> "StoreSettings":
        if self.default_page_size > self.max_page_size:
            raise ValueError("default_page_size cannot exceed max_page_size")
        return self

    def to_store_config(self) -> StoreConfig:
        return StoreConfig(
            supported_kinds=tuple(self.supported_kinds),
            default_page_size=self.default_page_size,
            max_page_size=self.max_page_size,
            max_write_attempts=self.max_write_attempts,
            owner_policy=self.owner_policy,
        )


# ============================================================================
# Convenience Functions
# ============================================================================

def get_database_config() -> DatabaseConfig:
    """Load the backend configuration from the environment.

    Defaults to an in-memory DuckDB database when nothing is configured.
    """
    return ConfigManager.from_environment().get_database_config()


def get_store_config() -> StoreConfig:
    """Load the store configuration from the environment."""
    return ConfigManager.from_environment().get_store_config()
