"""FastAPI application for Resource Vault.

This module sets up the HTTP adapter: the store is built in the lifespan,
routes map verbs onto store operations, and store error kinds are turned into
status codes by a single exception handler. Cross-origin access is governed
by RV_CORS_ORIGINS.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from resource_vault import __version__
from resource_vault.api.errors import StoreResultError, store_result_error_handler
from resource_vault.api.middleware import setup_middleware
from resource_vault.api.routes import health, resources
from resource_vault.infrastructure.logging_config import setup_logging
from resource_vault.infrastructure.settings import Settings
from resource_vault.main import create_store

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the FastAPI application.

    Parameters:
        settings: Application settings (defaults to Settings() at startup)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app_settings = settings or Settings()
        setup_logging(use_json=app_settings.json_logs, log_level=app_settings.log_level)
        if getattr(app.state, "store", None) is None:
            app.state.store = create_store(app_settings)
        logger.info(f"{app_settings.app_name} API starting up (backend: {app_settings.describe_backend()})")
        logger.info("API documentation available at /api/docs")
        yield
        logger.info(f"{app_settings.app_name} API shutting down...")
        app.state.store.backend.close()
        app.state.store = None

    app = FastAPI(
        title="Resource Vault API",
        description="Versioned storage and search for clinical resources",
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan
    )

    # CORS configuration (RV_CORS_ORIGINS, comma-separated; "*" allows any origin)
    cors_origins = (settings or Settings()).cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials="*" not in cors_origins,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["ETag", "Last-Modified", "Location", "X-Request-ID"],
    )

    app.add_exception_handler(StoreResultError, store_result_error_handler)
    setup_middleware(app)

    app.include_router(health.router)
    app.include_router(resources.router)

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "message": "Resource Vault API",
            "version": __version__,
            "docs": "/api/docs",
            "health": "/api/health"
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = Settings()
    uvicorn.run(
        "resource_vault.api.main:app",
        host=_settings.api_host,
        port=_settings.api_port,
        log_level="info"
    )
