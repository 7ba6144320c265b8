"""Dependency injection for the HTTP adapter."""

import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Request

from resource_vault.domain.services.resource_store import ResourceStore

logger = logging.getLogger(__name__)


def get_resource_store(request: Request) -> ResourceStore:
    """Return the store created for this application in its lifespan.

    Raises:
        HTTPException: 503 if the application has no store yet
    """
    store = getattr(request.app.state, "store", None)
    if store is None:
        logger.error("Resource store requested before application startup completed")
        raise HTTPException(status_code=503, detail="Resource store is not initialized")
    return store


# Type alias for dependency injection
StoreDep = Annotated[ResourceStore, Depends(get_resource_store)]
