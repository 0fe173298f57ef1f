"""
Small helpers shared by routers and services.
"""

import logging
import uuid
from datetime import datetime, timezone
from fastapi import HTTPException

logger = logging.getLogger(__name__)


def parse_uuid(value: str, field_name: str = "id") -> uuid.UUID:
    """Parse a path/query/body value as a UUID; malformed input is a 400, not a 500."""
    try:
        return uuid.UUID(str(value))
    except (ValueError, AttributeError, TypeError):
        raise HTTPException(status_code=400, detail=f"'{field_name}' is not a valid UUID: {value!r}")


def safe_error_detail(exc: Exception, fallback: str = "Orchestration failed. Check server logs for details.") -> str:
    """Log the real exception server-side and hand the client a generic message."""
    logger.error(f"Request failed: {type(exc).__name__}: {exc}", exc_info=True)
    return fallback


def utcnow() -> datetime:
    """Naive UTC now; DB columns are TIMESTAMP WITHOUT TIME ZONE."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
