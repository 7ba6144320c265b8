"""Response models for the Resource Vault API."""

from resource_vault.api.models.health import DatabaseHealth, HealthResponse

__all__ = ["DatabaseHealth", "HealthResponse"]
