"""Infrastructure layer for Resource Vault (configuration, logging)."""
