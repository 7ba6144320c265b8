"""Versioned Resource Store.

The store assigns identity and version numbers and enforces the
create/update/delete rules. It stamps metadata, derives index placement
for the backend and assembles search result sets. All durable state lives in
the injected backend; the store itself holds no locks and no shared mutable
state, so any number of instances can serve the same backend concurrently.

Security Impact:
    - Payloads are validated before any backend call
    - Backend outages are surfaced as BackendUnavailable, never as NotFound
    - Tombstoned resources are never resurrected

Architecture:
    - Depends only on ResourceBackendPort and ClockPort (Hexagonal Architecture)
    - Resource ids are masked in every log record it emits
    - Every public operation returns a Result; domain errors are never raised
    - Versioned writes use conditional history inserts plus a compare-and-swap
      on the current row, retried a bounded number of times
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar, Union

from pydantic import ValidationError as PydanticValidationError

from resource_vault.domain.ports import (
    CONDITION_FAILED,
    AlreadyExistsError,
    ClockPort,
    ConflictError,
    ErrorKind,
    InvalidPayloadError,
    KindMismatchError,
    NotFoundError,
    ResourceBackendPort,
    ResourceStoreError,
    Result,
    StorageError,
    SystemClock,
    UnsupportedKindError,
)
from resource_vault.domain.resource import (
    DEFAULT_SUPPORTED_KINDS,
    OwnerExtractionError,
    OwnerPolicy,
    ParsedPayload,
    QueryParams,
    Resource,
    ResultEntry,
    ResultSet,
    default_profile,
    extract_owner,
    normalize_reference,
    parse_payload,
)
from resource_vault.infrastructure.logging_config import mask_identifier, mask_reference

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class StoreConfig:
    """Configuration for ResourceStore behavior.

    Attributes:
        supported_kinds: Resource kinds accepted by the store
        default_page_size: Search limit when the query gives none
        max_page_size: Upper bound applied to any requested limit
        max_write_attempts: Compare-and-swap attempts before reporting Conflict
        owner_policy: REJECT payloads lacking a required owner reference, or
                      place them in the UNKNOWN owner bucket
    """
    supported_kinds: tuple[str, ...] = DEFAULT_SUPPORTED_KINDS
    default_page_size: int = 20
    max_page_size: int = 1000
    max_write_attempts: int = 3
    owner_policy: OwnerPolicy = OwnerPolicy.REJECT


class ResourceStore:
    """Versioned store for schema-tagged clinical resources.

    Parameters:
        backend: Key-value/index backend adapter
        clock: Timestamp and identifier source (defaults to SystemClock)
        config: Store configuration (defaults to StoreConfig())

    Example Usage:
        ```python
        backend = DuckDBBackend(db_path=":memory:")
        backend.initialize_schema()
        store = ResourceStore(backend)

        created = store.create("Patient", {"name": [{"family": "A"}]})
        if created.is_success():
            store.update("Patient", created.value.id, {"name": [{"family": "B"}]})
        ```
    """

    def __init__(
        self,
        backend: ResourceBackendPort,
        clock: Optional[ClockPort] = None,
        config: Optional[StoreConfig] = None
    ):
        self.backend = backend
        self.clock = clock or SystemClock()
        self.config = config or StoreConfig()
        if self.config.max_write_attempts < 1:
            raise ValueError("max_write_attempts must be at least 1")

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def create(self, kind: str, payload: Any) -> Result[Resource]:
        """Create a resource at version 1.

        The id comes from ``payload["id"]`` when present (trusted, not checked
        ahead of the write) or is freshly generated. The current row is
        inserted conditionally, so of two concurrent creates for one identity
        exactly one succeeds.

        Parameters:
            kind: Resource kind tag
            payload: Structured object; ``resourceType`` must match ``kind`` if given

        Returns:
            Result[Resource]: The stamped resource, or one of UnsupportedKind,
            InvalidPayload, KindMismatch, AlreadyExists, BackendUnavailable
        """
        return self._execute("create", kind, _payload_id(payload), lambda: self._create(kind, payload))

    def read(self, kind: str, resource_id: str) -> Result[Resource]:
        """Return the current version of an identity, tombstones included."""
        return self._execute("read", kind, resource_id, lambda: self._read(kind, resource_id))

    def update(self, kind: str, resource_id: str, payload: Any) -> Result[Resource]:
        """Replace the body of an existing resource, producing version ``v + 1``.

        Returns:
            Result[Resource]: The new version, or one of UnsupportedKind,
            InvalidPayload, KindMismatch, NotFound, Conflict, BackendUnavailable
        """
        return self._execute("update", kind, resource_id, lambda: self._update(kind, resource_id, payload))

    def delete(self, kind: str, resource_id: str) -> Result[None]:
        """Tombstone a resource: same body, ``deleted=True``, version ``v + 1``."""
        return self._execute("delete", kind, resource_id, lambda: self._delete(kind, resource_id))

    def search(
        self,
        kind: str,
        query: Union[QueryParams, dict, None] = None
    ) -> Result[ResultSet]:
        """Search current resources of one kind.

        With ``owner`` the owner index is scanned, otherwise the kind-wide
        recency index. Tombstones are left out unless ``include_deleted`` is
        set. Items come most recently modified first, at most ``limit`` of them.

        Parameters:
            kind: Resource kind tag
            query: QueryParams, a dict of its fields, or None for defaults

        Returns:
            Result[ResultSet]: Result set, or one of UnsupportedKind,
            InvalidPayload (malformed query), BackendUnavailable
        """
        return self._execute("search", kind, None, lambda: self._search(kind, query))

    def read_version(self, kind: str, resource_id: str, version: int) -> Result[Resource]:
        """Return one immutable history version of an identity."""
        return self._execute(
            "read_version", kind, resource_id,
            lambda: self._read_version(kind, resource_id, version)
        )

    def history(self, kind: str, resource_id: str) -> Result[list[Resource]]:
        """Return every version of an identity, newest first."""
        return self._execute("history", kind, resource_id, lambda: self._history(kind, resource_id))

    # ------------------------------------------------------------------
    # Operation bodies (raise ResourceStoreError subclasses)
    # ------------------------------------------------------------------

    def _create(self, kind: str, payload: Any) -> Resource:
        self._check_kind(kind, "create")
        parsed = self._parse(kind, payload, "create")
        resource_id = parsed.id or self.clock.new_id()

        resource = Resource(
            kind=kind,
            id=resource_id,
            version=1,
            last_modified=self.clock.now(),
            owner=self._owner(kind, resource_id, parsed, "create"),
            body=parsed.body,
            profile=parsed.profile or default_profile(kind),
        )

        inserted = self.backend.insert_current(resource)
        if inserted.is_error(CONDITION_FAILED):
            raise AlreadyExistsError(
                f"Resource {resource.full_reference} already exists",
                kind=kind, resource_id=resource_id, operation="create"
            )
        self._unwrap(inserted, "create", kind, resource_id)

        # A failure here leaves v1 unarchived; the next write restores it
        self._archive(resource, "create")

        logger.info(
            f"Created {mask_reference(kind, resource_id)} (version 1)",
            extra={"extra_fields": {
                "operation": "create", "kind": kind, "id": mask_identifier(resource_id), "version": 1
            }}
        )
        return resource

    def _read(self, kind: str, resource_id: str) -> Resource:
        self._check_kind(kind, "read")
        self._check_id(kind, resource_id, "read")
        return self._load_current(kind, resource_id, "read")

    def _update(self, kind: str, resource_id: str, payload: Any) -> Resource:
        self._check_kind(kind, "update")
        self._check_id(kind, resource_id, "update")
        parsed = self._parse(kind, payload, "update")
        if parsed.id is not None and parsed.id != resource_id:
            raise InvalidPayloadError(
                f"Payload id {parsed.id!r} does not match {kind}/{resource_id}",
                kind=kind, resource_id=resource_id, operation="update"
            )
        owner = self._owner(kind, resource_id, parsed, "update")

        def successor(current: Resource) -> Resource:
            return current.next_version(
                self.clock.now(),
                body=parsed.body,
                owner=owner,
                profile=parsed.profile or current.profile,
            )

        return self._write_next_version(kind, resource_id, "update", successor)

    def _delete(self, kind: str, resource_id: str) -> None:
        self._check_kind(kind, "delete")
        self._check_id(kind, resource_id, "delete")
        self._write_next_version(
            kind, resource_id, "delete",
            lambda current: current.next_version(self.clock.now(), deleted=True)
        )

    def _search(self, kind: str, query: Union[QueryParams, dict, None]) -> ResultSet:
        self._check_kind(kind, "search")
        params = self._query_params(kind, query)
        limit = min(params.limit or self.config.default_page_size, self.config.max_page_size)

        if params.owner is not None:
            try:
                owner = normalize_reference(params.owner)
            except ValueError as e:
                raise InvalidPayloadError(str(e), kind=kind, operation="search")
            page_result = self.backend.query_by_owner(
                owner, kind,
                updated_after=params.updated_after,
                include_deleted=params.include_deleted,
                limit=limit,
                offset=params.offset,
            )
            index_path = "owner"
        else:
            page_result = self.backend.query_by_kind(
                kind,
                updated_after=params.updated_after,
                include_deleted=params.include_deleted,
                limit=limit,
                offset=params.offset,
            )
            index_path = "kind"
        page = self._unwrap(page_result, "search", kind, None)

        rows = page.rows
        if not params.include_deleted:
            rows = [row for row in rows if not row.deleted]
        rows = sorted(rows, key=lambda row: (row.last_modified, row.id), reverse=True)[:limit]

        result_set = ResultSet(
            id=self.clock.new_id(),
            total_hint=max(page.total, len(rows)),
            items=[ResultEntry(resource=row, full_reference=row.full_reference) for row in rows],
        )
        logger.info(
            f"Search on {kind} via {index_path} index returned {len(rows)} of {result_set.total_hint}",
            extra={"extra_fields": {"operation": "search", "kind": kind, "index": index_path}}
        )
        return result_set

    def _read_version(self, kind: str, resource_id: str, version: int) -> Resource:
        self._check_kind(kind, "read_version")
        self._check_id(kind, resource_id, "read_version")
        if isinstance(version, bool) or not isinstance(version, int) or version < 1:
            raise InvalidPayloadError(
                f"Invalid version: {version!r}",
                kind=kind, resource_id=resource_id, operation="read_version"
            )
        row = self._unwrap(
            self.backend.get_history(kind, resource_id, version),
            "read_version", kind, resource_id
        )
        if row is None:
            # The current row holds version v until its history row is restored
            current = self._unwrap(
                self.backend.get_current(kind, resource_id), "read_version", kind, resource_id
            )
            if current is not None and current.version == version:
                return current
            raise NotFoundError(
                f"Resource {kind}/{resource_id} version {version} not found",
                kind=kind, resource_id=resource_id, operation="read_version",
                details={"version": version}
            )
        return row

    def _history(self, kind: str, resource_id: str) -> list[Resource]:
        self._check_kind(kind, "history")
        self._check_id(kind, resource_id, "history")
        rows = self._unwrap(
            self.backend.list_history(kind, resource_id),
            "history", kind, resource_id
        )
        current = self._unwrap(self.backend.get_current(kind, resource_id), "history", kind, resource_id)
        if current is not None and all(row.version != current.version for row in rows):
            rows = [*rows, current]
        if not rows:
            raise NotFoundError(
                f"Resource {kind}/{resource_id} not found",
                kind=kind, resource_id=resource_id, operation="history"
            )
        return sorted(rows, key=lambda row: row.version, reverse=True)

    # ------------------------------------------------------------------
    # Versioned write path
    # ------------------------------------------------------------------

    def _write_next_version(
        self,
        kind: str,
        resource_id: str,
        operation: str,
        build: Callable[[Resource], Resource]
    ) -> Resource:
        """Append version ``v + 1`` and move the current pointer to it.

        The history insert is conditional on the version being absent and the
        pointer move is a compare-and-swap on ``v``. A lost condition means
        another writer got there first: re-read and try again, up to
        ``max_write_attempts`` times.
        """
        attempts = self.config.max_write_attempts
        for attempt in range(1, attempts + 1):
            current = self._load_current(kind, resource_id, operation)
            if current.deleted:
                raise NotFoundError(
                    f"Resource {current.full_reference} is deleted",
                    kind=kind, resource_id=resource_id, operation=operation,
                    details={"deleted": True, "version": current.version}
                )

            self._ensure_archived(current, operation)
            candidate = build(current)

            archived = self.backend.insert_history(candidate)
            if archived.is_error(CONDITION_FAILED):
                logger.info(
                    f"Version {candidate.version} of {mask_reference(kind, resource_id)} already written "
                    f"(attempt {attempt}/{attempts})"
                )
                self._roll_forward(current, operation)
                continue
            self._unwrap(archived, operation, kind, resource_id)

            swapped = self.backend.swap_current(candidate, expected_version=current.version)
            if swapped.is_error(CONDITION_FAILED):
                # Our history row is in place; only a roll-forward of that row
                # can have moved the pointer past v.
                latest = self._load_current(kind, resource_id, operation)
                if latest.version < candidate.version:
                    raise ConflictError(
                        f"Current row of {kind}/{resource_id} did not advance to "
                        f"version {candidate.version}",
                        kind=kind, resource_id=resource_id, operation=operation,
                        details={"version": candidate.version}
                    )
            else:
                self._unwrap(swapped, operation, kind, resource_id)

            logger.info(
                f"{operation.capitalize()}d {mask_reference(kind, resource_id)} "
                f"(version {current.version} -> {candidate.version})",
                extra={"extra_fields": {
                    "operation": operation,
                    "kind": kind,
                    "id": mask_identifier(resource_id),
                    "old_version": current.version,
                    "new_version": candidate.version,
                }}
            )
            return candidate

        raise ConflictError(
            f"Gave up writing {kind}/{resource_id} after {attempts} attempts",
            kind=kind, resource_id=resource_id, operation=operation,
            details={"attempts": attempts}
        )

    def _roll_forward(self, current: Resource, operation: str) -> None:
        """Point the current row at history row ``v + 1`` if one exists.

        Repairs identities whose previous writer appended its history row but
        never moved the current pointer.
        """
        successor = self._unwrap(
            self.backend.get_history(current.kind, current.id, current.version + 1),
            operation, current.kind, current.id
        )
        if successor is None:
            return
        swapped = self.backend.swap_current(successor, expected_version=current.version)
        if swapped.is_error(CONDITION_FAILED):
            return
        self._unwrap(swapped, operation, current.kind, current.id)
        logger.warning(
            f"Rolled current row of {mask_reference(current.kind, current.id)} "
            f"forward to version {successor.version}"
        )

    def _ensure_archived(self, current: Resource, operation: str) -> None:
        """Write history row ``v`` from the current row if it is missing.

        Repairs identities whose create moved the current row but failed to
        archive version 1.
        """
        archived = self._unwrap(
            self.backend.get_history(current.kind, current.id, current.version),
            operation, current.kind, current.id
        )
        if archived is not None:
            return
        logger.warning(
            f"History row v{current.version} of {mask_reference(current.kind, current.id)} "
            "missing; restoring it from the current row"
        )
        self._archive(current, operation)

    def _archive(self, resource: Resource, operation: str) -> None:
        """Insert a history row, tolerating one that is already present."""
        archived = self.backend.insert_history(resource)
        if archived.is_error(CONDITION_FAILED):
            logger.info(
                f"History row v{resource.version} of {mask_reference(resource.kind, resource.id)} "
                "already present; keeping it"
            )
            return
        self._unwrap(archived, operation, resource.kind, resource.id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _execute(
        self,
        operation: str,
        kind: str,
        resource_id: Optional[str],
        action: Callable[[], T]
    ) -> Result[T]:
        logger.debug(
            f"Resource operation {operation.upper()} {mask_reference(kind, resource_id)}",
            extra={"extra_fields": {"operation": operation, "kind": kind, "id": mask_identifier(resource_id)}}
        )
        try:
            value = action()
        except ResourceStoreError as e:
            if e.kind is None:
                e.kind = kind
            if e.resource_id is None:
                e.resource_id = resource_id
            if e.operation is None:
                e.operation = operation

            # The message itself names the resource, so only masked context is logged
            context = {**e.context(), "id": mask_identifier(e.resource_id)}
            log = logger.error if e.error_kind == ErrorKind.BACKEND_UNAVAILABLE else logger.warning
            log(
                f"{operation} {mask_reference(kind, e.resource_id)} failed: {e.error_kind.value}",
                extra={"extra_fields": {"error_kind": e.error_kind.value, **context}}
            )
            return Result.failure_result(e)
        return Result.success_result(value)

    def _check_kind(self, kind: Any, operation: str) -> None:
        if not isinstance(kind, str) or kind not in self.config.supported_kinds:
            raise UnsupportedKindError(f"Unsupported resource type: {kind}", operation=operation)

    def _check_id(self, kind: str, resource_id: Any, operation: str) -> None:
        if not isinstance(resource_id, str) or not resource_id.strip():
            raise InvalidPayloadError("Invalid resource ID", kind=kind, operation=operation)

    def _parse(self, kind: str, payload: Any, operation: str) -> ParsedPayload:
        if payload is None:
            raise InvalidPayloadError("Invalid resource: payload is required", kind=kind, operation=operation)
        try:
            parsed = parse_payload(payload)
        except ValueError as e:
            raise InvalidPayloadError(f"Invalid resource: {e}", kind=kind, operation=operation)
        if parsed.kind is not None and parsed.kind != kind:
            raise KindMismatchError(
                f"Resource type mismatch: expected {kind}, got {parsed.kind}",
                kind=kind, operation=operation,
                details={"payload_kind": parsed.kind}
            )
        return parsed

    def _owner(self, kind: str, resource_id: str, parsed: ParsedPayload, operation: str) -> Optional[str]:
        try:
            return extract_owner(kind, resource_id, parsed.body, self.config.owner_policy)
        except OwnerExtractionError as e:
            raise InvalidPayloadError(
                f"Invalid resource: {e}",
                kind=kind, resource_id=resource_id, operation=operation
            )

    def _query_params(self, kind: str, query: Union[QueryParams, dict, None]) -> QueryParams:
        if query is None:
            return QueryParams()
        if isinstance(query, QueryParams):
            return query
        try:
            return QueryParams.model_validate(query)
        except PydanticValidationError as e:
            raise InvalidPayloadError(
                f"Invalid search parameters: {e.error_count()} error(s)",
                kind=kind, operation="search",
                details={"fields": [".".join(str(p) for p in err["loc"]) for err in e.errors()]}
            )

    def _load_current(self, kind: str, resource_id: str, operation: str) -> Resource:
        current = self._unwrap(self.backend.get_current(kind, resource_id), operation, kind, resource_id)
        if current is None:
            raise NotFoundError(
                f"Resource {kind}/{resource_id} not found",
                kind=kind, resource_id=resource_id, operation=operation
            )
        return current

    @staticmethod
    def _unwrap(result: Result[T], operation: str, kind: str, resource_id: Optional[str]) -> T:
        """Return a backend result's value or raise StorageError."""
        if result.is_success():
            return result.value
        raise StorageError(
            f"Backend failure during {operation}: {result.error}",
            kind=kind, resource_id=resource_id, operation=operation,
            details={"backend_error": result.error_type}
        )


def _payload_id(payload: Any) -> Optional[str]:
    if isinstance(payload, dict) and isinstance(payload.get("id"), str):
        return payload["id"]
    return None
