"""Row encoding shared by the SQL storage adapters."""

import json
from typing import Any

from resource_vault.domain.keys import placement_for
from resource_vault.domain.resource import Resource

# Column order used by every INSERT
COLUMNS = (
    "pk", "sk", "kind", "resource_id", "version", "deleted", "owner",
    "document", "gsi1pk", "gsi1sk", "gsi2pk", "gsi2sk",
)


def encode_document(resource: Resource) -> dict[str, Any]:
    return resource.model_dump(mode="json")


def row_values(resource: Resource, current: bool, document: Any = None) -> list[Any]:
    """Column values for the current row or the history row of ``resource``.

    Parameters:
        resource: Stamped resource
        current: True for the current-pointer row
        document: Adapter-specific document value (defaults to a JSON string)
    """
    placement = placement_for(resource, current=current)
    if document is None:
        document = json.dumps(encode_document(resource))
    return [
        placement.pk,
        placement.sk,
        resource.kind,
        resource.id,
        resource.version,
        resource.deleted,
        resource.owner,
        document,
        placement.gsi1pk,
        placement.gsi1sk,
        placement.gsi2pk,
        placement.gsi2sk,
    ]


def decode_document(document: Any) -> Resource:
    """Rebuild a Resource from a stored document (JSON text or decoded dict)."""
    if isinstance(document, (str, bytes)):
        return Resource.model_validate_json(document)
    return Resource.model_validate(document)
