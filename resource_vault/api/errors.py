"""Mapping from store error kinds to HTTP responses.

The store reports typed errors only; transport status codes are decided here
and nowhere else.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from resource_vault.domain.ports import ErrorKind, Result
from resource_vault.infrastructure.logging_config import mask_path

logger = logging.getLogger(__name__)

STATUS_BY_ERROR_KIND = {
    ErrorKind.UNSUPPORTED_KIND.value: 400,
    ErrorKind.INVALID_PAYLOAD.value: 400,
    ErrorKind.KIND_MISMATCH.value: 400,
    ErrorKind.NOT_FOUND.value: 404,
    ErrorKind.ALREADY_EXISTS.value: 409,
    ErrorKind.CONFLICT.value: 409,
    ErrorKind.BACKEND_UNAVAILABLE.value: 503,
}


class StoreResultError(Exception):
    """Raised by route handlers to turn a failed Result into a response."""

    def __init__(self, result: Result):
        super().__init__(result.error)
        self.result = result

    @property
    def status_code(self) -> int:
        return STATUS_BY_ERROR_KIND.get(self.result.error_type, 500)


def unwrap(result: Result):
    """Return the result value, or raise StoreResultError for a failure."""
    if result.is_failure():
        raise StoreResultError(result)
    return result.value


async def store_result_error_handler(request: Request, exc: StoreResultError) -> JSONResponse:
    """Render a failed store Result as a JSON error body."""
    details = exc.result.error_details or {}
    content = {
        "error": exc.result.error,
        "error_type": exc.result.error_type,
        "details": {k: v for k, v in details.items() if v is not None},
    }
    if exc.status_code >= 500:
        logger.error(f"{request.method} {mask_path(request.url.path)} - {exc.result.error_type}")
    if exc.status_code == 503:
        return JSONResponse(status_code=503, content=content, headers={"Retry-After": "1"})
    return JSONResponse(status_code=exc.status_code, content=content)
