from fastapi import HTTPException
from typing import Optional, Dict, Any

from grantkeeper.domain.errors import (
    GrantKeeperError, ValidationError, ConflictError, ProvisioningError,
    PersistenceError, NotFoundError
)

# Ordered most specific first; the first matching family wins.
STATUS_BY_FAMILY = [
    (ValidationError, 422),
    (ConflictError, 409),
    (NotFoundError, 404),
    (ProvisioningError, 502),
    (PersistenceError, 503),
]

def raise_grantkeeper_error(
    code: str,
    status_code: int,
    message: str,
    details: Optional[Dict[str, Any]] = None
) -> None:
    """Raise a standardized GrantKeeper HTTPException.

    Args:
        code: Error code (INVALID_NAME, ALREADY_EXPIRED, etc.)
        status_code: HTTP Status Code (409, 422, etc.)
        message: Human readable message
        details: Optional extra details
    """
    error_body: Dict[str, Any] = {
        "code": code,
        "message": message
    }
    if details:
        error_body["details"] = details

    raise HTTPException(status_code=status_code, detail={"error": error_body})


def status_for(exc: GrantKeeperError) -> int:
    for family, status_code in STATUS_BY_FAMILY:
        if isinstance(exc, family):
            return status_code
    return 500


def raise_domain_error(exc: GrantKeeperError) -> None:
    """Translate a domain error into the standard HTTP error body."""
    raise_grantkeeper_error(exc.code, status_for(exc), exc.message, exc.details or None)
