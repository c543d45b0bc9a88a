"""Token check for the Admin API."""
import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException

from grantkeeper.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class AdminContext:
    """Identity of the operator making an admin request."""
    actor_id: str


async def require_admin(
    x_admin_token: Optional[str] = Header(None),
    x_admin_actor: Optional[str] = Header(None),
) -> AdminContext:
    if not x_admin_token or not hmac.compare_digest(x_admin_token.encode(), settings.admin_api_token.encode()):
        logger.warning("Rejected admin request with missing or invalid token")
        raise HTTPException(
            status_code=401,
            detail={"error": {"code": "AUTH_INVALID", "message": "Missing or invalid admin token"}}
        )
    return AdminContext(actor_id=f"admin:{x_admin_actor or 'operator'}")
