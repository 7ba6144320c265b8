"""HTTP routing adapter for Resource Vault (FastAPI)."""
