"""Application Settings and Configuration.

This module combines configuration from the configuration manager with
application-level settings (name, logging, API bind address, CORS origins).

Security Impact:
    - Settings are loaded from secure configuration sources
    - Sensitive values are never logged
"""

import os
from typing import Optional

from resource_vault import __version__
from resource_vault.domain.services.resource_store import StoreConfig
from resource_vault.infrastructure.config_manager import ConfigManager, DatabaseConfig

# Application metadata
APP_NAME = "Resource-Vault"
APP_VERSION = __version__


class Settings:
    """Application settings built from a ConfigManager and the environment.

    Instances are created explicitly by the entry points (API lifespan, CLI);
    nothing in the package holds a global Settings object.

    Parameters:
        config_manager: Source of backend and store configuration
                        (defaults to ConfigManager.from_environment())
    """

    def __init__(self, config_manager: Optional[ConfigManager] = None):
        self._config_manager = config_manager

        self.app_name = os.getenv("RV_APP_NAME", APP_NAME)
        self.log_level = os.getenv("RV_LOG_LEVEL", "INFO")
        self.json_logs = os.getenv("RV_JSON_LOGS", "false").lower() == "true"
        self.api_host = os.getenv("RV_API_HOST", "127.0.0.1")
        self.api_port = int(os.getenv("RV_API_PORT", "8000"))
        self.cors_origins = [
            origin.strip() for origin in os.getenv("RV_CORS_ORIGINS", "*").split(",") if origin.strip()
        ]

    @property
    def config_manager(self) -> ConfigManager:
        if self._config_manager is None:
            self._config_manager = ConfigManager.from_environment()
        return self._config_manager

    @property
    def db_config(self) -> DatabaseConfig:
        """Backend configuration, validated on first access."""
        return self.config_manager.get_database_config()

    @property
    def store_config(self) -> StoreConfig:
        """Store configuration, validated on first access."""
        return self.config_manager.get_store_config()

    def describe_backend(self) -> str:
        """Human-readable backend location (no credentials)."""
        db_config = self.db_config
        if db_config.db_type == "duckdb":
            return f"duckdb:{db_config.db_path or ':memory:'}"
        return f"postgresql://{db_config.host}:{db_config.port or 5432}/{db_config.database}"
