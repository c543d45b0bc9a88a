"""Admin API Router - Accounts, Reconciliation, Audit.

All routes require the ``X-Admin-Token`` header. Domain errors are returned
in the standard ``{"error": {code, message, details}}`` body.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from grantkeeper.dependencies import get_audit_sink, get_orchestrator, get_reconciler
from grantkeeper.domain.accounts.orchestrator import AccountOrchestrator
from grantkeeper.domain.errors import GrantKeeperError
from grantkeeper.domain.models import ADMIN_CREATED_REQUESTER
from grantkeeper.domain.sink import AuditSink
from grantkeeper.errors import raise_domain_error, raise_grantkeeper_error
from grantkeeper.jobs.expiration import ExpirationReconciler
from grantkeeper.middleware.auth_admin import AdminContext, require_admin

router = APIRouter()
logger = logging.getLogger(__name__)


# ============ Pydantic Models ============

class AccountCreate(BaseModel):
    name: str
    password: str
    requester_id: int = ADMIN_CREATED_REQUESTER
    notes: Optional[str] = None
    max_connections: Optional[int] = Field(default=None, ge=1, le=10)


class FinishRequest(BaseModel):
    password: Optional[str] = None


class ExtendRequest(BaseModel):
    days: int


# ============ Accounts ============

@router.get("/accounts")
async def list_accounts(
    admin: AdminContext = Depends(require_admin),
    orchestrator: AccountOrchestrator = Depends(get_orchestrator),
):
    accounts = await orchestrator.list_accounts()
    return {"accounts": [a.public_view() for a in accounts], "total": len(accounts)}


@router.post("/accounts", status_code=201)
async def create_account(
    data: AccountCreate,
    admin: AdminContext = Depends(require_admin),
    orchestrator: AccountOrchestrator = Depends(get_orchestrator),
):
    """Create an account on behalf of a requester (0 for admin-created)."""
    try:
        account = await orchestrator.create(
            data.requester_id, data.name, data.password,
            actor_id=admin.actor_id, notes=data.notes, max_connections=data.max_connections,
        )
    except GrantKeeperError as e:
        raise_domain_error(e)
    return account.public_view()


@router.get("/accounts/{account_id}")
async def get_account(
    account_id: str,
    admin: AdminContext = Depends(require_admin),
    orchestrator: AccountOrchestrator = Depends(get_orchestrator),
):
    try:
        account = await orchestrator.get_account(account_id)
    except GrantKeeperError as e:
        raise_domain_error(e)
    return account.public_view()


@router.delete("/accounts/{account_id}")
async def delete_account(
    account_id: str,
    admin: AdminContext = Depends(require_admin),
    orchestrator: AccountOrchestrator = Depends(get_orchestrator),
):
    try:
        cleanup_complete = await orchestrator.delete(account_id, admin.actor_id)
    except GrantKeeperError as e:
        raise_domain_error(e)
    return {"deleted": True, "id": account_id, "cleanup_complete": cleanup_complete}


@router.post("/accounts/{account_id}:enable")
async def enable_account(
    account_id: str,
    admin: AdminContext = Depends(require_admin),
    orchestrator: AccountOrchestrator = Depends(get_orchestrator),
):
    try:
        account = await orchestrator.set_active(account_id, True, admin.actor_id)
    except GrantKeeperError as e:
        raise_domain_error(e)
    return account.public_view()


@router.post("/accounts/{account_id}:disable")
async def disable_account(
    account_id: str,
    admin: AdminContext = Depends(require_admin),
    orchestrator: AccountOrchestrator = Depends(get_orchestrator),
):
    try:
        account = await orchestrator.set_active(account_id, False, admin.actor_id)
    except GrantKeeperError as e:
        raise_domain_error(e)
    return account.public_view()


@router.post("/accounts/{account_id}:regenerate")
async def regenerate_profile(
    account_id: str,
    admin: AdminContext = Depends(require_admin),
    orchestrator: AccountOrchestrator = Depends(get_orchestrator),
):
    try:
        result = await orchestrator.regenerate(account_id, admin.actor_id)
    except GrantKeeperError as e:
        raise_domain_error(e)
    return {"account": result.account.public_view(), "previous_artifact_ref": result.previous_artifact_ref}


@router.post("/accounts/{account_id}:finish")
async def finish_provisioning(
    account_id: str,
    data: Optional[FinishRequest] = None,
    admin: AdminContext = Depends(require_admin),
    orchestrator: AccountOrchestrator = Depends(get_orchestrator),
):
    """Retry the failed provisioning steps of a half-provisioned account."""
    try:
        account = await orchestrator.finish_provisioning(
            account_id, data.password if data else None, admin.actor_id
        )
    except GrantKeeperError as e:
        raise_domain_error(e)
    return account.public_view()


@router.post("/accounts/{account_id}:extend")
async def extend_account(
    account_id: str,
    data: ExtendRequest,
    admin: AdminContext = Depends(require_admin),
    orchestrator: AccountOrchestrator = Depends(get_orchestrator),
):
    try:
        account = await orchestrator.extend(account_id, data.days, admin.actor_id)
    except GrantKeeperError as e:
        raise_domain_error(e)
    return account.public_view()


# ============ Reconciliation ============

@router.post("/reconcile")
async def run_reconcile(
    admin: AdminContext = Depends(require_admin),
    reconciler: ExpirationReconciler = Depends(get_reconciler),
):
    """Trigger an expiration pass now."""
    report = await reconciler.run_once()
    if report is None:
        return {"status": "skipped", "reason": "scan already in progress"}
    return {
        "status": "completed",
        "scanned": report.scanned,
        "deactivated": report.deactivated,
        "failed": report.failed,
    }


# ============ Audit ============

@router.get("/audit")
async def list_audit_events(
    limit: int = Query(100, ge=1, le=1000),
    admin: AdminContext = Depends(require_admin),
    audit: AuditSink = Depends(get_audit_sink),
):
    recent = getattr(audit, "recent", None)
    if recent is None:
        raise_grantkeeper_error("AUDIT_UNAVAILABLE", 501, "Configured audit sink does not support queries")
    events = await recent(limit)
    return {"events": [e.model_dump(mode="json") for e in events]}
