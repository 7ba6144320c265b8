"""Domain Services.

This package contains domain services that implement business logic
without storage or transport dependencies.
"""

from resource_vault.domain.services.resource_store import ResourceStore, StoreConfig

__all__ = ['ResourceStore', 'StoreConfig']
