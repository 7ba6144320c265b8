"""Resource endpoints.

Routes HTTP verbs to ResourceStore operations and marshals resources to their
wire form. No business rules live here.
"""

import json
import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse
from pydantic import TypeAdapter, ValidationError as PydanticValidationError
from starlette.concurrency import run_in_threadpool

from resource_vault.api.dependencies import StoreDep
from resource_vault.api.errors import unwrap
from resource_vault.domain.ports import InvalidPayloadError, Result
from resource_vault.domain.resource import Resource

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/fhir", tags=["resources"])

FHIR_JSON = "application/fhir+json"

_DATETIME = TypeAdapter(datetime)


def _resource_response(resource: Resource, status_code: int = 200) -> JSONResponse:
    headers = {
        "ETag": f'W/"{resource.version}"',
        "Last-Modified": resource.last_modified.strftime("%a, %d %b %Y %H:%M:%S GMT"),
    }
    if status_code == 201:
        headers["Location"] = f"/fhir/{resource.kind}/{resource.id}/_history/{resource.version}"
    return JSONResponse(
        status_code=status_code,
        content=resource.to_wire(),
        headers=headers,
        media_type=FHIR_JSON,
    )


def _invalid(kind: str, message: str) -> Result:
    return Result.failure_result(InvalidPayloadError(message, kind=kind))


async def _read_json(request: Request, kind: str) -> Any:
    body = await request.body()
    if not body:
        return None
    try:
        return json.loads(body)
    except json.JSONDecodeError as e:
        unwrap(_invalid(kind, f"Request body is not valid JSON: {e.msg}"))
    except UnicodeDecodeError:
        unwrap(_invalid(kind, "Request body is not valid UTF-8"))


def _parse_last_updated(kind: str, value: Optional[str]) -> Optional[datetime]:
    """Accept ``_lastUpdated=gt<instant>`` or a bare instant."""
    if value is None:
        return None
    raw = value[2:] if value.startswith("gt") else value
    try:
        return _DATETIME.validate_python(raw)
    except PydanticValidationError:
        unwrap(_invalid(kind, f"Invalid _lastUpdated value: {value!r}"))


@router.get("/{kind}")
async def search_resources(
    kind: str,
    store: StoreDep,
    count: Optional[int] = Query(None, alias="_count"),
    offset: int = Query(0, alias="_offset"),
    subject: Optional[str] = Query(None),
    last_updated: Optional[str] = Query(None, alias="_lastUpdated"),
    include_deleted: bool = Query(False, alias="_include_deleted"),
) -> JSONResponse:
    """Search resources of one kind; returns a searchset Bundle."""
    query = {
        "limit": count,
        "offset": offset,
        "owner": subject,
        "updated_after": _parse_last_updated(kind, last_updated),
        "include_deleted": include_deleted,
    }
    result_set = unwrap(await run_in_threadpool(
        store.search, kind, {k: v for k, v in query.items() if v is not None}
    ))
    return JSONResponse(content=result_set.to_wire(), media_type=FHIR_JSON)


@router.post("/{kind}")
async def create_resource(kind: str, request: Request, store: StoreDep) -> JSONResponse:
    """Create a resource; 201 with a Location header on success."""
    payload = await _read_json(request, kind)
    resource = unwrap(await run_in_threadpool(store.create, kind, payload))
    return _resource_response(resource, status_code=201)


@router.get("/{kind}/{resource_id}")
async def read_resource(kind: str, resource_id: str, store: StoreDep) -> JSONResponse:
    resource = unwrap(await run_in_threadpool(store.read, kind, resource_id))
    return _resource_response(resource)


@router.put("/{kind}/{resource_id}")
async def update_resource(kind: str, resource_id: str, request: Request, store: StoreDep) -> JSONResponse:
    payload = await _read_json(request, kind)
    resource = unwrap(await run_in_threadpool(store.update, kind, resource_id, payload))
    return _resource_response(resource)


@router.delete("/{kind}/{resource_id}")
async def delete_resource(kind: str, resource_id: str, store: StoreDep) -> JSONResponse:
    unwrap(await run_in_threadpool(store.delete, kind, resource_id))
    return JSONResponse(content={"message": "Resource deleted successfully"})


@router.get("/{kind}/{resource_id}/_history")
async def resource_history(kind: str, resource_id: str, store: StoreDep) -> JSONResponse:
    """All versions of a resource as a history Bundle, newest first."""
    versions = unwrap(await run_in_threadpool(store.history, kind, resource_id))
    bundle = {
        "resourceType": "Bundle",
        "type": "history",
        "total": len(versions),
        "entry": [
            {
                "fullUrl": version.full_reference,
                "resource": version.to_wire(),
            }
            for version in versions
        ],
    }
    return JSONResponse(content=bundle, media_type=FHIR_JSON)


@router.get("/{kind}/{resource_id}/_history/{version}")
async def read_resource_version(kind: str, resource_id: str, version: str, store: StoreDep) -> JSONResponse:
    if not version.isdigit():
        unwrap(_invalid(kind, f"Invalid version: {version!r}"))
    resource = unwrap(await run_in_threadpool(store.read_version, kind, resource_id, int(version)))
    return _resource_response(resource)
