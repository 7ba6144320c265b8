"""Health check models."""

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field

from resource_vault import __version__


class DatabaseHealth(BaseModel):
    """Backend health status.

    Attributes:
        status: Connection status
        type: Backend type (duckdb or postgresql)
        response_time_ms: Round-trip time of the ping in milliseconds (optional)
    """
    status: Literal["connected", "disconnected"]
    type: str
    response_time_ms: float | None = Field(None, description="Backend response time in milliseconds")


class HealthResponse(BaseModel):
    """Health check response.

    Attributes:
        status: Overall service status
        timestamp: Current timestamp
        version: Application version
        database: Backend health information
    """
    status: Literal["healthy", "unhealthy"]
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), description="Current UTC timestamp"
    )
    version: str = Field(default=__version__, description="Application version")
    database: DatabaseHealth
