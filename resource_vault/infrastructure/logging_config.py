"""Structured logging configuration.

JSON lines for production, a human-readable format for development. Store
operations attach their context (operation, kind, id, versions) through
``extra={"extra_fields": {...}}``, which the JSON formatter merges into each
record.

Security Impact:
    - Resource bodies are never part of log context
    - Resource ids are masked (first four characters kept) wherever they are logged
    - Structured format enables better log analysis
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

MASK = "***"

# Visible prefix of a masked identifier
_VISIBLE_CHARS = 4

# Resource paths look like /fhir/<kind>/<id>[/...]
_RESOURCE_PATH_PREFIX = "fhir"


def mask_identifier(value: Optional[Any]) -> Optional[str]:
    """Mask a resource identifier before it is logged.

    Identifiers can point at a single patient, so only the first four
    characters are kept; identifiers of four characters or fewer are hidden
    entirely.

    Example:
        mask_identifier("3f2a9c1e") -> "3f2a***"
        mask_identifier("p1") -> "***"
    """
    if value is None:
        return None
    text = str(value)
    if len(text) <= _VISIBLE_CHARS:
        return MASK
    return text[:_VISIBLE_CHARS] + MASK


def mask_reference(kind: Any, resource_id: Optional[Any]) -> str:
    """Render ``kind/id`` with the id masked."""
    if resource_id is None:
        return str(kind)
    return f"{kind}/{mask_identifier(resource_id)}"


def mask_path(path: str) -> str:
    """Mask the resource id segment of a request path."""
    segments = path.split("/")
    # ["", "fhir", kind, id, ...]
    if len(segments) > 3 and segments[1] == _RESOURCE_PATH_PREFIX and segments[3]:
        segments[3] = mask_identifier(segments[3])
    return "/".join(segments)


class StructuredFormatter(logging.Formatter):
    """Structured JSON formatter for logs."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Parameters:
            record: Log record to format

        Returns:
            JSON string representation of log record
        """
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            for key, value in extra_fields.items():
                log_data.setdefault(key, value)

        for attr in ("request_id", "client_ip", "endpoint"):
            if hasattr(record, attr):
                log_data[attr] = getattr(record, attr)

        return json.dumps(log_data, default=str)


def setup_logging(use_json: bool = False, log_level: str = "INFO") -> None:
    """Setup application logging.

    Parameters:
        use_json: Use JSON formatting (for production)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)

    if use_json:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    # Third-party loggers are noisy at INFO
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("fastapi").setLevel(logging.WARNING)
