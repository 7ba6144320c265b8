"""Domain Ports - Abstract Contracts for Resource Persistence.

This module defines the Port interfaces (abstract contracts) that storage Adapters
must implement, together with the Result type and the error taxonomy shared by
the store and its collaborators.

Security Impact:
    - Errors carry kind/id/operation context but never the resource body
    - Backend outages are reported distinctly from missing resources
    - Conditional writes are part of the contract, not an adapter detail

Architecture:
    - Pure abstract interfaces with zero infrastructure dependencies
    - Adapters (DuckDB, PostgreSQL) implement ResourceBackendPort
    - The Resource Store depends only on these ports
"""

import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Generic, Optional, TypeVar, Union

from resource_vault.domain.resource import Resource

# Type variable for Result generic
T = TypeVar('T')


# ============================================================================
# Error Kinds
# ============================================================================

class ErrorKind(str, Enum):
    """Enumerated error kinds reported by the Resource Store."""
    UNSUPPORTED_KIND = "UnsupportedKind"
    INVALID_PAYLOAD = "InvalidPayload"
    KIND_MISMATCH = "KindMismatch"
    NOT_FOUND = "NotFound"
    ALREADY_EXISTS = "AlreadyExists"
    BACKEND_UNAVAILABLE = "BackendUnavailable"
    CONFLICT = "Conflict"


# Reported by backends only; the store translates it before returning.
CONDITION_FAILED = "ConditionFailed"


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating success or failure without exceptions.

    Store operations and backend adapters return a Result instead of raising,
    so that callers can branch on ``error_type`` and apply their own retry or
    response-mapping policy.

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error message (only present if success=False)
        error_type: Error kind (an ErrorKind value, or ConditionFailed from backends)
        error_details: Additional error context (kind, id, operation, ...)

    Example:
        ```python
        result = store.read("Patient", "123")
        if result.is_success():
            print(result.value.version)
        elif result.error_type == ErrorKind.NOT_FOUND:
            ...
        ```
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None

    @classmethod
    def success_result(cls, value: T) -> 'Result[T]':
        """Create a successful result.

        Parameters:
            value: The successful result value

        Returns:
            Result: Success result with the value
        """
        return cls(
            success=True,
            value=value,
            error=None,
            error_type=None,
            error_details=None
        )

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message or exception
            error_type: Error kind; derived from the exception when omitted
            error_details: Additional context (kind, id, operation, ...)

        Returns:
            Result: Failure result with error information
        """
        error_message = str(error) if isinstance(error, Exception) else error

        if error_type is None and isinstance(error, ResourceStoreError):
            error_type = error.error_kind.value
        error_type_name = error_type or (type(error).__name__ if isinstance(error, Exception) else "UnknownError")

        details = dict(error_details or {})
        if isinstance(error, ResourceStoreError):
            for key, value in error.context().items():
                details.setdefault(key, value)

        return cls(
            success=False,
            value=None,
            error=error_message,
            error_type=str(error_type_name.value if isinstance(error_type_name, ErrorKind) else error_type_name),
            error_details=details
        )

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success

    def is_error(self, kind: Union[ErrorKind, str]) -> bool:
        """Check whether this is a failure of the given kind."""
        expected = kind.value if isinstance(kind, ErrorKind) else kind
        return not self.success and self.error_type == expected


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class ResourceStoreError(Exception):
    """Base exception for all Resource Store errors.

    Attributes:
        kind: Resource kind involved (if known)
        resource_id: Resource identifier involved (if known)
        operation: Store operation being attempted
        details: Additional error details
    """

    error_kind: ErrorKind = ErrorKind.BACKEND_UNAVAILABLE

    def __init__(
        self,
        message: str,
        kind: Optional[str] = None,
        resource_id: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[dict] = None
    ):
        super().__init__(message)
        self.kind = kind
        self.resource_id = resource_id
        self.operation = operation
        self.details = details or {}

    def context(self) -> dict:
        """Return the logging/response context for this error."""
        context = {"kind": self.kind, "id": self.resource_id, "operation": self.operation}
        context.update(self.details)
        return context


class UnsupportedKindError(ResourceStoreError):
    """Raised when a resource kind is not in the supported-kind set."""
    error_kind = ErrorKind.UNSUPPORTED_KIND


class InvalidPayloadError(ResourceStoreError):
    """Raised when a payload (or query) is absent or malformed."""
    error_kind = ErrorKind.INVALID_PAYLOAD


class KindMismatchError(ResourceStoreError):
    """Raised when ``payload.resourceType`` disagrees with the requested kind."""
    error_kind = ErrorKind.KIND_MISMATCH


class NotFoundError(ResourceStoreError):
    """Raised when no row exists for an identity (or version)."""
    error_kind = ErrorKind.NOT_FOUND


class AlreadyExistsError(ResourceStoreError):
    """Raised when the conditional insert on create is rejected."""
    error_kind = ErrorKind.ALREADY_EXISTS


class ConflictError(ResourceStoreError):
    """Raised when a versioned write keeps losing its compare-and-swap."""
    error_kind = ErrorKind.CONFLICT


class StorageError(ResourceStoreError):
    """Raised when the backend cannot be reached or a storage operation fails.

    This exception is raised by adapters during connection setup and is
    reported as ``BackendUnavailable`` by the store.
    """
    error_kind = ErrorKind.BACKEND_UNAVAILABLE


# ============================================================================
# Backend Port
# ============================================================================

@dataclass(frozen=True)
class RowPage:
    """One page of rows returned by an index scan.

    Attributes:
        rows: Resources in index order (most recently modified first)
        total: Number of rows matching the scan, ignoring limit/offset
    """
    rows: list[Resource] = field(default_factory=list)
    total: int = 0


class ResourceBackendPort(ABC):
    """Abstract contract for the key-value/index backend.

    Every identity occupies one "current" row (overwritten in place) and one
    immutable history row per version. All methods return Result objects;
    a rejected condition is reported with ``error_type == "ConditionFailed"``
    and any transport/storage failure with ``"BackendUnavailable"``.

    Key Principles:
        - Conditional writes: insert-if-absent and compare-and-swap on version
        - Two index scans: (kind, last_modified) and (owner, kind/id)
        - No retries: adapters surface failures immediately
    """

    @abstractmethod
    def initialize_schema(self) -> Result[None]:
        """Create tables and indexes if they do not exist."""
        pass

    @abstractmethod
    def get_current(self, kind: str, resource_id: str) -> Result[Optional[Resource]]:
        """Look up the current row for an identity.

        Returns:
            Result[Optional[Resource]]: The current resource, or None if absent
        """
        pass

    @abstractmethod
    def insert_current(self, resource: Resource) -> Result[None]:
        """Insert the current row only if the identity has none (create path)."""
        pass

    @abstractmethod
    def swap_current(self, resource: Resource, expected_version: int) -> Result[None]:
        """Overwrite the current row only if it is still at ``expected_version``."""
        pass

    @abstractmethod
    def insert_history(self, resource: Resource) -> Result[None]:
        """Append the history row for ``resource.version`` only if absent."""
        pass

    @abstractmethod
    def get_history(self, kind: str, resource_id: str, version: int) -> Result[Optional[Resource]]:
        """Look up one immutable history row."""
        pass

    @abstractmethod
    def list_history(self, kind: str, resource_id: str) -> Result[list[Resource]]:
        """Return every history row for an identity, newest first."""
        pass

    @abstractmethod
    def query_by_kind(
        self,
        kind: str,
        updated_after: Optional[datetime] = None,
        include_deleted: bool = False,
        limit: int = 20,
        offset: int = 0
    ) -> Result[RowPage]:
        """Scan the kind-wide recency index (most recent first)."""
        pass

    @abstractmethod
    def query_by_owner(
        self,
        owner: str,
        kind: str,
        updated_after: Optional[datetime] = None,
        include_deleted: bool = False,
        limit: int = 20,
        offset: int = 0
    ) -> Result[RowPage]:
        """Scan the owner index restricted to one kind (most recent first)."""
        pass

    @abstractmethod
    def ping(self) -> Result[None]:
        """Check that the backend is reachable."""
        pass

    def close(self) -> None:
        """Release backend resources (optional)."""
        return None


# ============================================================================
# Clock / ID Port
# ============================================================================

class ClockPort(ABC):
    """Source of write timestamps and fresh identifiers."""

    @abstractmethod
    def now(self) -> datetime:
        """Return a timezone-aware UTC timestamp, never earlier than the last one."""
        pass

    @abstractmethod
    def new_id(self) -> str:
        """Return a globally unique identifier."""
        pass


class SystemClock(ClockPort):
    """Wall-clock implementation with uuid4 identifiers.

    Timestamps handed out by one instance strictly increase; if the wall
    clock stalls or steps backwards the previous value is bumped by one
    microsecond.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._last: Optional[datetime] = None

    def now(self) -> datetime:
        with self._lock:
            current = datetime.now(timezone.utc)
            if self._last is not None and current <= self._last:
                current = self._last + timedelta(microseconds=1)
            self._last = current
            return current

    def new_id(self) -> str:
        return str(uuid.uuid4())
