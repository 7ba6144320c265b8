"""Domain layer for Resource Vault.

This module contains the core versioning logic and resource schemas.
All domain models are pure Python with no external dependencies beyond Pydantic.
"""

from .resource import (
    Resource,
    QueryParams,
    ResultEntry,
    ResultSet,
    OwnerPolicy,
)

__all__ = [
    "Resource",
    "QueryParams",
    "ResultEntry",
    "ResultSet",
    "OwnerPolicy",
]
