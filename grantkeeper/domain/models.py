"""Account Domain Models."""
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

SYSTEM_ACTOR = "system"
ADMIN_CREATED_REQUESTER = 0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProvisioningState(str, Enum):
    PENDING = "pending"
    CREDENTIAL_FAILED = "credential_failed"
    PROFILE_FAILED = "profile_failed"
    COMPLETE = "complete"


class AuditAction(str, Enum):
    CREATE_ACCOUNT = "CREATE_ACCOUNT"
    FINISH_PROVISIONING = "FINISH_PROVISIONING"
    DELETE_ACCOUNT = "DELETE_ACCOUNT"
    ENABLE_ACCOUNT = "ENABLE_ACCOUNT"
    DISABLE_ACCOUNT = "DISABLE_ACCOUNT"
    EXPIRE_ACCOUNT = "EXPIRE_ACCOUNT"
    REGENERATE_PROFILE = "REGENERATE_PROFILE"
    EXTEND_ACCOUNT = "EXTEND_ACCOUNT"
    SEED_ADMIN = "SEED_ADMIN"


class Account(BaseModel):
    """
    A provisioned, time-bounded access grant.

    ``version`` is the optimistic concurrency token: every store update must
    present the version it read, and the store bumps it on success.
    """
    id: str
    requester_id: int = ADMIN_CREATED_REQUESTER
    name: str = Field(..., min_length=3, max_length=20, pattern=r"^[A-Za-z0-9_]+$")
    credential_secret_ref: str
    active: bool = True
    is_admin: bool = False
    profile_artifact_ref: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    last_seen_at: Optional[datetime] = None
    connected_at: Optional[datetime] = None
    bytes_in: int = Field(default=0, ge=0)
    bytes_out: int = Field(default=0, ge=0)
    max_connections: int = Field(default=3, ge=1, le=10)
    notes: Optional[str] = None
    provisioning_state: ProvisioningState = ProvisioningState.PENDING
    last_provisioning_error: Optional[str] = None
    version: int = 1

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at

    def days_until_expiry(self, now: Optional[datetime] = None) -> int:
        remaining = (self.expires_at - (now or utcnow())).total_seconds()
        return math.ceil(remaining / 86400)

    def public_view(self) -> dict:
        """Serializable view without the credential reference."""
        return self.model_dump(mode="json", exclude={"credential_secret_ref"})


class AuditRecord(BaseModel):
    event_id: str
    actor_id: str
    action: AuditAction
    target_account_id: Optional[str] = None
    detail: str = ""
    success: bool = True
    timestamp: datetime = Field(default_factory=utcnow)


class ConnectionObservation(BaseModel):
    """One client row of a connection-status snapshot."""
    name: str
    real_address: str = ""
    bytes_received: int = Field(default=0, ge=0)
    bytes_sent: int = Field(default=0, ge=0)
    connected_since: Optional[datetime] = None
