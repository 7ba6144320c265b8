"""Middleware configuration for the HTTP adapter."""

import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from resource_vault.infrastructure.logging_config import mask_path

logger = logging.getLogger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request and stamps X-Request-ID / X-Process-Time headers."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()
        path = mask_path(request.url.path)
        context = {"request_id": request_id, "endpoint": path}

        logger.info(f"{request.method} {path}", extra=context)
        try:
            response = await call_next(request)
        except Exception as e:
            process_time = time.time() - start_time
            logger.error(
                f"{request.method} {path} - Error: {str(e)} - Time: {process_time:.3f}s",
                exc_info=True,
                extra=context
            )
            return JSONResponse(
                status_code=500,
                content={"error": "Internal server error", "request_id": request_id},
                headers={"X-Request-ID": request_id}
            )

        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = f"{process_time:.3f}"
        response.headers["X-Request-ID"] = request_id
        logger.info(
            f"{request.method} {path} - Status: {response.status_code} - Time: {process_time:.3f}s",
            extra=context
        )
        return response


def setup_middleware(app) -> None:
    """Attach middleware to the application."""
    app.add_middleware(LoggingMiddleware)
