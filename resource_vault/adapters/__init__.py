"""Adapters for Resource Vault."""
