"""Resource Schema Definitions.

This module defines the canonical models for versioned clinical resources and
the envelopes used by search. A Resource is schema-tagged (``kind``) but its
``body`` stays schema-agnostic: any JSON object is accepted, validated only as
a tree of primitives, mappings and sequences.

Security Impact:
    - Bodies are validated as JSON values before they reach a backend
    - Identity fields (kind, id) are immutable once stamped
    - Owner references are extracted explicitly and fail closed

Architecture:
    - Pure domain models with zero infrastructure dependencies
    - Models are immutable and validated before use (Pydantic V2)
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    JsonValue,
    TypeAdapter,
    field_validator,
)

DEFAULT_SUPPORTED_KINDS = (
    "Patient",
    "Encounter",
    "Practitioner",
    "DocumentReference",
    "Observation",
    "Condition",
)

# Kinds whose index placement requires a subject reference
OWNER_REQUIRED_KINDS = frozenset({"Encounter", "Observation", "Condition", "DocumentReference"})

# Kinds that never carry an owner
UNOWNED_KINDS = frozenset({"Practitioner"})

OWNER_KIND = "Patient"
UNKNOWN_OWNER = "unknown"

PROFILE_BASE_URL = "http://hl7.org/fhir/StructureDefinition"

# Fields managed by the store; stripped from the incoming payload
RESERVED_FIELDS = ("resourceType", "id", "meta")

_REFERENCE_PATTERN = re.compile(r"^([A-Z][A-Za-z]*)/([^/\s]+)$")
_ID_PATTERN = re.compile(r"^[^/\s]{1,64}$")

_BODY_ADAPTER = TypeAdapter(dict[str, JsonValue])


class OwnerPolicy(str, Enum):
    """What to do with a payload lacking a required owner reference."""
    REJECT = "reject"
    UNKNOWN = "unknown"


class OwnerExtractionError(ValueError):
    """Raised when a required owner reference is missing or malformed."""
    pass


def utc(value: datetime) -> datetime:
    """Normalize a datetime to timezone-aware UTC (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_valid_id(resource_id: Any) -> bool:
    """Check that an identifier is a non-empty string usable in a reference."""
    return isinstance(resource_id, str) and bool(_ID_PATTERN.match(resource_id))


class Resource(BaseModel):
    """A versioned, schema-tagged clinical resource.

    Parameters:
        kind: Resource kind tag (e.g. "Patient"); immutable after creation
        id: Identifier unique within the kind; immutable after creation
        version: Gap-free version number starting at 1
        last_modified: UTC timestamp of the write that produced this version
        deleted: Tombstone flag; never goes back to False
        owner: Optional "Kind/id" cross-reference used for index placement
        body: Kind-specific payload, opaque to the store
        profile: Profile URIs stamped into ``meta.profile``
    """

    model_config = ConfigDict(frozen=True)

    kind: str = Field(..., min_length=1, description="Resource kind tag")
    id: str = Field(..., min_length=1, description="Resource identifier")
    version: int = Field(..., ge=1, description="Version number (starts at 1)")
    last_modified: datetime = Field(..., description="UTC timestamp of this version")
    deleted: bool = Field(default=False, description="Tombstone flag")
    owner: Optional[str] = Field(None, description="Owner reference (Kind/id)")
    body: dict[str, JsonValue] = Field(default_factory=dict, description="Kind-specific payload")
    profile: list[str] = Field(default_factory=list, description="Profile URIs")

    @field_validator("last_modified")
    @classmethod
    def validate_last_modified(cls, v: datetime) -> datetime:
        """Store every timestamp as timezone-aware UTC."""
        return utc(v)

    @property
    def full_reference(self) -> str:
        """Reference string for this identity (``kind/id``)."""
        return f"{self.kind}/{self.id}"

    def next_version(
        self,
        last_modified: datetime,
        body: Optional[dict[str, Any]] = None,
        owner: Optional[str] = None,
        profile: Optional[list[str]] = None,
        deleted: Optional[bool] = None,
    ) -> "Resource":
        """Stamp the successor of this version.

        Fields not given are carried over. The tombstone flag can only be
        raised, never cleared.
        """
        return Resource(
            kind=self.kind,
            id=self.id,
            version=self.version + 1,
            last_modified=last_modified,
            deleted=self.deleted or bool(deleted),
            owner=self.owner if body is None else owner,
            body=self.body if body is None else body,
            profile=self.profile if profile is None else profile,
        )

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the resource wire shape.

        Returns:
            dict with ``resourceType``, ``id`` and ``meta`` followed by the body
            fields; tombstones carry ``"_deleted": true``.
        """
        wire: dict[str, Any] = {
            "resourceType": self.kind,
            "id": self.id,
            "meta": {
                "versionId": str(self.version),
                "lastUpdated": self.last_modified.isoformat().replace("+00:00", "Z"),
                "profile": list(self.profile),
            },
        }
        for key, value in self.body.items():
            if key not in wire:
                wire[key] = value
        if self.deleted:
            wire["_deleted"] = True
        return wire


class ParsedPayload(BaseModel):
    """Caller payload split into store-managed fields and the body."""

    model_config = ConfigDict(frozen=True)

    kind: Optional[str] = None
    id: Optional[str] = None
    profile: list[str] = Field(default_factory=list)
    body: dict[str, JsonValue] = Field(default_factory=dict)


def parse_payload(payload: Any) -> ParsedPayload:
    """Split a caller payload into kind, id, profile and body.

    Parameters:
        payload: Structured object (usually decoded JSON)

    Returns:
        ParsedPayload

    Raises:
        ValueError: If the payload is not a JSON object or its fields are malformed
    """
    if not isinstance(payload, dict):
        raise ValueError("payload must be a JSON object")

    declared_kind = payload.get("resourceType")
    if declared_kind is not None and not isinstance(declared_kind, str):
        raise ValueError("resourceType must be a string")

    resource_id = payload.get("id")
    if resource_id is not None and not is_valid_id(resource_id):
        raise ValueError(f"invalid resource id: {resource_id!r}")

    profile: list[str] = []
    meta = payload.get("meta")
    if meta is not None:
        if not isinstance(meta, dict):
            raise ValueError("meta must be an object")
        raw_profile = meta.get("profile") or []
        if not isinstance(raw_profile, list) or not all(isinstance(p, str) for p in raw_profile):
            raise ValueError("meta.profile must be a list of strings")
        profile = list(raw_profile)

    raw_body = {k: v for k, v in payload.items() if k not in RESERVED_FIELDS}
    # Bodies must be plain JSON trees; pydantic reports anything else
    body = _BODY_ADAPTER.validate_python(raw_body, strict=True)

    return ParsedPayload(kind=declared_kind, id=resource_id, profile=profile, body=body)


def default_profile(kind: str) -> list[str]:
    return [f"{PROFILE_BASE_URL}/{kind}"]


def normalize_reference(reference: str, default_kind: str = OWNER_KIND) -> str:
    """Turn ``"123"`` or ``"Patient/123"`` into a ``Kind/id`` reference.

    Raises:
        ValueError: If the reference is empty or malformed
    """
    if not isinstance(reference, str) or not reference.strip():
        raise ValueError("reference must be a non-empty string")
    reference = reference.strip()
    if "/" not in reference:
        if not is_valid_id(reference):
            raise ValueError(f"malformed reference: {reference!r}")
        return f"{default_kind}/{reference}"
    if not _REFERENCE_PATTERN.match(reference):
        raise ValueError(f"malformed reference: {reference!r}")
    return reference


def extract_owner(
    kind: str,
    resource_id: str,
    body: dict[str, Any],
    policy: OwnerPolicy = OwnerPolicy.REJECT,
) -> Optional[str]:
    """Derive the owner cross-reference used for index placement.

    A Patient owns itself; Practitioner has no owner. Other kinds are owned by
    ``subject.reference`` (or ``patient.reference``). A malformed reference is
    always rejected. A missing one is rejected for kinds that require an
    owner, unless ``policy`` is UNKNOWN, in which case the sentinel bucket is
    used.

    Parameters:
        kind: Resource kind
        resource_id: Resource identifier
        body: Validated body
        policy: Owner policy for kinds that require an owner

    Returns:
        Owner reference, ``"unknown"``, or None for unowned kinds

    Raises:
        OwnerExtractionError: If the owner cannot be derived under the policy
    """
    if kind == OWNER_KIND:
        return f"{OWNER_KIND}/{resource_id}"
    if kind in UNOWNED_KINDS:
        return None

    reference = None
    for field_name in ("subject", "patient"):
        holder = body.get(field_name)
        if holder is None:
            continue
        if not isinstance(holder, dict) or not isinstance(holder.get("reference"), str):
            raise OwnerExtractionError(f"{field_name}.reference must be a string")
        reference = holder["reference"]
        break

    if reference is not None:
        if not _REFERENCE_PATTERN.match(reference):
            raise OwnerExtractionError(f"malformed owner reference: {reference!r}")
        return reference

    if kind not in OWNER_REQUIRED_KINDS:
        return None
    if policy == OwnerPolicy.UNKNOWN:
        return UNKNOWN_OWNER
    raise OwnerExtractionError(f"{kind} requires a subject reference")


class QueryParams(BaseModel):
    """Search options recognized by the store.

    Parameters:
        limit: Maximum number of items (store default when omitted)
        offset: Number of matching items to skip
        owner: Owner reference filter ("Patient/123" or "123")
        updated_after: Only resources modified strictly after this instant
        include_deleted: Include tombstoned resources

    The camelCase names ``updatedAfter`` and ``includeDeleted`` are accepted
    as aliases.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    limit: Optional[int] = Field(None, ge=1, description="Page size")
    offset: int = Field(default=0, ge=0, description="Items to skip")
    owner: Optional[str] = Field(None, min_length=1, description="Owner reference")
    updated_after: Optional[datetime] = Field(None, alias="updatedAfter", description="Modified-after filter")
    include_deleted: bool = Field(default=False, alias="includeDeleted", description="Include tombstones")

    @field_validator("updated_after")
    @classmethod
    def validate_updated_after(cls, v: Optional[datetime]) -> Optional[datetime]:
        return utc(v) if v is not None else None


class ResultEntry(BaseModel):
    """One search hit."""

    model_config = ConfigDict(frozen=True)

    resource: Resource
    full_reference: str


class ResultSet(BaseModel):
    """Paginated, ordered search envelope (most recently modified first)."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: Literal["searchset"] = "searchset"
    total_hint: int = Field(default=0, ge=0)
    items: list[ResultEntry] = Field(default_factory=list)

    @property
    def resources(self) -> list[Resource]:
        return [entry.resource for entry in self.items]

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the Bundle wire shape."""
        return {
            "resourceType": "Bundle",
            "id": self.id,
            "type": self.type,
            "total": self.total_hint,
            "entry": [
                {"fullUrl": entry.full_reference, "resource": entry.resource.to_wire()}
                for entry in self.items
            ],
        }
