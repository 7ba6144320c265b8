"""Row keys and index placement for stored resources.

Every identity is stored as one current row plus one row per version, all
sharing the partition key ``RESOURCE#<kind>#<id>``. The sort key tells them
apart (``CURRENT`` or ``v<n>``). Index columns are derived here so that every
backend places rows identically.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from resource_vault.domain.resource import Resource, utc

CURRENT_MARKER = "CURRENT"

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def partition_key(kind: str, resource_id: str) -> str:
    return f"RESOURCE#{kind}#{resource_id}"


def version_marker(version: int) -> str:
    return f"v{version}"


def kind_index_key(kind: str) -> str:
    return f"RESOURCE_TYPE#{kind}"


def owner_index_key(owner: str) -> str:
    return f"OWNER#{owner}"


def recency_sort_key(moment: datetime) -> str:
    """Fixed-width UTC timestamp, so lexical order equals time order."""
    return utc(moment).strftime(_TIMESTAMP_FORMAT)


@dataclass(frozen=True)
class IndexPlacement:
    """Primary and secondary-index keys of one stored row."""
    pk: str
    sk: str
    gsi1pk: str
    gsi1sk: str
    gsi2pk: Optional[str]
    gsi2sk: Optional[str]


def placement_for(resource: Resource, current: bool) -> IndexPlacement:
    """Compute the keys for the current row or the history row of ``resource``.

    Parameters:
        resource: Stamped resource
        current: True for the current-pointer row, False for the history row

    Returns:
        IndexPlacement; owner index keys are None for unowned resources
    """
    owned = resource.owner is not None
    return IndexPlacement(
        pk=partition_key(resource.kind, resource.id),
        sk=CURRENT_MARKER if current else version_marker(resource.version),
        gsi1pk=kind_index_key(resource.kind),
        gsi1sk=recency_sort_key(resource.last_modified),
        gsi2pk=owner_index_key(resource.owner) if owned else None,
        gsi2sk=partition_key(resource.kind, resource.id) if owned else None,
    )
