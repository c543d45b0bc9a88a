"""Account Lifecycle Orchestrator.

Sequences every account operation across the three coupled resources: the
account row (AccountStore), the OS credential and the connection profile
(ResourceProvisioner).

Ordering:
    create   row -> credential -> profile -> row(complete)
    delete   credential -> artifacts -> row (row removal always happens)
    enable/disable   row -> credential, row rolled back on failure
    regenerate       profile -> row (row untouched on failure)

Create is deliberately not transactional: once the row exists the name is
reserved, and a provisioning failure leaves the row inactive with
``provisioning_state`` recording which step failed, so that
``finish_provisioning`` can resume from there.
"""
import asyncio
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from uuid6 import uuid7

from grantkeeper.domain.credentials import hash_secret
from grantkeeper.domain.errors import (
    AccountNotFoundError, AlreadyExpiredError, ConcurrentModificationError,
    DuplicateNameError, GrantKeeperError, ProvisioningFailedError,
    ProvisioningIncompleteError, ValidationError, WeakSecretError
)
from grantkeeper.domain.interfaces import AccountStore, ResourceProvisioner
from grantkeeper.domain.models import (
    ADMIN_CREATED_REQUESTER, SYSTEM_ACTOR, Account, AuditAction,
    ProvisioningState, utcnow
)
from grantkeeper.domain.sink import AuditSink
from grantkeeper.domain.validation import validate_name, validate_secret
from grantkeeper.settings import settings

logger = logging.getLogger(__name__)

ADMIN_ACCOUNT_NAME = "admin"
MAX_PATCH_ATTEMPTS = 3


@dataclass
class RegenerateResult:
    account: Account
    # Left for the caller to clean up; never retried here
    previous_artifact_ref: Optional[str]


class AccountOrchestrator:
    def __init__(
        self,
        store: AccountStore,
        provisioner: ResourceProvisioner,
        audit: AuditSink,
        validity_days: Optional[int] = None,
        admin_validity_days: Optional[int] = None,
        max_connections: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
        secret_hasher: Callable[[str], str] = hash_secret,
    ):
        self.store = store
        self.provisioner = provisioner
        self.audit = audit
        self.validity = timedelta(days=validity_days or settings.default_validity_days)
        self.admin_validity = timedelta(days=admin_validity_days or settings.admin_validity_days)
        self.max_connections = max_connections or settings.max_connections_per_account
        self.clock = clock
        self.secret_hasher = secret_hasher

    # --- Lookups ---

    async def get_account(self, account_id: str) -> Account:
        account = await self.store.find_by_id(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    async def get_by_name(self, name: str) -> Optional[Account]:
        return await self.store.find_by_name(name)

    async def get_by_requester(self, requester_id: int) -> Optional[Account]:
        return await self.store.find_by_requester(requester_id)

    async def list_accounts(self) -> List[Account]:
        return await self.store.list_accounts()

    # --- Create ---

    async def create(
        self,
        requester_id: int,
        name: str,
        secret: str,
        actor_id: Optional[str] = None,
        notes: Optional[str] = None,
        max_connections: Optional[int] = None,
    ) -> Account:
        actor = str(actor_id or requester_id)
        name = validate_name(name)
        secret = validate_secret(secret)

        # Advisory only; the store's unique constraint decides
        if await self.store.find_by_name(name):
            await self._audit(actor, AuditAction.CREATE_ACCOUNT, None, f"Name already taken: {name}", False)
            raise DuplicateNameError(name)

        now = self.clock()
        account = Account(
            id=str(uuid7()),
            requester_id=requester_id or ADMIN_CREATED_REQUESTER,
            name=name,
            credential_secret_ref=await asyncio.to_thread(self.secret_hasher, secret),
            active=True,
            created_at=now,
            expires_at=now + self.validity,
            max_connections=max_connections or self.max_connections,
            notes=notes,
            provisioning_state=ProvisioningState.PENDING,
        )

        try:
            account = await self.store.create(account)
        except DuplicateNameError:
            await self._audit(actor, AuditAction.CREATE_ACCOUNT, None, f"Name already taken: {name}", False)
            raise

        account = await self._provision(account, secret, actor, AuditAction.CREATE_ACCOUNT)
        logger.info(f"New account registered: {name} (requester {requester_id})")
        return account

    async def finish_provisioning(
        self,
        account_id: str,
        secret: Optional[str] = None,
        actor_id: str = SYSTEM_ACTOR,
    ) -> Account:
        """Resume a create that failed after the row was persisted."""
        account = await self.get_account(account_id)
        state = account.provisioning_state
        if state == ProvisioningState.COMPLETE:
            return account

        if state == ProvisioningState.PROFILE_FAILED:
            return await self._provision(
                account, None, str(actor_id), AuditAction.FINISH_PROVISIONING, reenable=True
            )

        # Credential never got created (or the outcome is unknown): needs the secret again
        if secret is None:
            raise WeakSecretError("Password is required to finish provisioning this account")
        secret = validate_secret(secret)
        account = await self.store.update(
            account.id,
            {"credential_secret_ref": await asyncio.to_thread(self.secret_hasher, secret)},
            account.version,
        )
        return await self._provision(account, secret, str(actor_id), AuditAction.FINISH_PROVISIONING)

    async def _provision(
        self,
        account: Account,
        secret: Optional[str],
        actor: str,
        action: AuditAction,
        reenable: bool = False,
    ) -> Account:
        name = account.name

        if secret is not None:
            try:
                await self.provisioner.create_credential(name, secret)
            except Exception as e:
                logger.error(f"Credential creation failed for {name}: {e}")
                await self._mark_failed(account, ProvisioningState.CREDENTIAL_FAILED, e)
                await self._audit(actor, action, account.id, f"Credential creation failed for {name}: {e}", False)
                raise ProvisioningFailedError(
                    f"Failed to create credential for {name}", account.id, name, "credential"
                ) from e

        try:
            artifact_ref = await self.provisioner.generate_profile(name)
        except Exception as e:
            logger.error(f"Profile generation failed for {name}: {e}")
            # The row goes inactive, so the credential must not stay usable
            await self._safe_provisioner_call(self.provisioner.disable_credential, name)
            await self._mark_failed(account, ProvisioningState.PROFILE_FAILED, e)
            await self._audit(actor, action, account.id, f"Profile generation failed for {name}: {e}", False)
            raise ProvisioningFailedError(
                f"Failed to generate profile for {name}", account.id, name, "profile"
            ) from e

        activate = not account.is_expired(self.clock())
        if reenable and activate:
            if not await self._safe_provisioner_call(self.provisioner.enable_credential, name):
                await self._mark_failed(account, ProvisioningState.PROFILE_FAILED, "credential enable failed")
                await self._audit(actor, action, account.id, f"Credential enable failed for {name}", False)
                raise ProvisioningFailedError(
                    f"Failed to enable credential for {name}", account.id, name, "enable"
                )
        elif not activate and secret is not None:
            await self._safe_provisioner_call(self.provisioner.disable_credential, name)

        account, _ = await self._patch_latest(account.id, lambda current: {
            "profile_artifact_ref": artifact_ref,
            "provisioning_state": ProvisioningState.COMPLETE,
            "last_provisioning_error": None,
            "active": activate,
        })
        await self._audit(actor, action, account.id, f"Provisioned account: {name}", True)
        return account

    async def _mark_failed(self, account: Account, state: ProvisioningState, error) -> None:
        try:
            await self._patch_latest(account.id, lambda current: {
                "active": False,
                "provisioning_state": state,
                "last_provisioning_error": str(error),
            })
        except GrantKeeperError as e:
            logger.critical(
                f"Could not record provisioning failure for {account.name} ({account.id}): {e}. "
                "Row left in pending state."
            )

    # --- Delete ---

    async def delete(self, account_id: str, actor_id: str) -> bool:
        """Hard-delete the account. Returns whether external cleanup fully succeeded."""
        account = await self.get_account(account_id)
        name = account.name

        credential_ok = True
        # Half-provisioned rows may still own an OS user
        if not account.is_admin:
            credential_ok = await self._safe_provisioner_call(self.provisioner.delete_credential, name)
            if not credential_ok:
                logger.warning(f"Credential removal failed for {name}; deleting record anyway")
        artifacts_ok = await self._safe_provisioner_call(self.provisioner.cleanup_artifacts, name)
        if not artifacts_ok:
            logger.warning(f"Artifact cleanup failed for {name}; deleting record anyway")

        await self.store.delete(account_id)

        cleanup_ok = credential_ok and artifacts_ok
        detail = f"Deleted account: {name}"
        if not cleanup_ok:
            detail += f" (credential_removed={credential_ok}, artifacts_removed={artifacts_ok})"
        await self._audit(actor_id, AuditAction.DELETE_ACCOUNT, account_id, detail, cleanup_ok)
        logger.info(detail)
        return cleanup_ok

    # --- Enable / Disable ---

    async def set_active(
        self,
        account_id: str,
        desired_active: bool,
        actor_id: str,
        audit_action: Optional[AuditAction] = None,
    ) -> Account:
        action = audit_action or (AuditAction.ENABLE_ACCOUNT if desired_active else AuditAction.DISABLE_ACCOUNT)

        for attempt in range(MAX_PATCH_ATTEMPTS):
            account = await self.get_account(account_id)
            now = self.clock()

            if desired_active and account.is_expired(now):
                await self._audit(actor_id, action, account_id, f"Refused to enable expired account: {account.name}", False)
                raise AlreadyExpiredError(account_id)
            if account.active == desired_active:
                return account
            if desired_active and account.provisioning_state != ProvisioningState.COMPLETE:
                raise ProvisioningIncompleteError(account_id, account.provisioning_state.value)

            try:
                updated = await self.store.update(account_id, {"active": desired_active}, account.version)
            except ConcurrentModificationError:
                # Re-read and re-evaluate; the other writer may already have done our job
                logger.info(f"Version conflict toggling {account.name}, retrying ({attempt + 1})")
                continue
            break
        else:
            raise ConcurrentModificationError(account_id, account.version)

        toggle = self.provisioner.enable_credential if desired_active else self.provisioner.disable_credential
        # The admin account has no OS credential to toggle
        if not account.is_admin and not await self._safe_provisioner_call(toggle, account.name):
            await self._rollback_active(account_id, desired_active, account.active)
            step = "enable" if desired_active else "disable"
            await self._audit(actor_id, action, account_id, f"Credential {step} failed for {account.name}", False)
            raise ProvisioningFailedError(
                f"Failed to {step} credential for {account.name}", account_id, account.name, step
            )

        await self._audit(
            actor_id, action, account_id,
            f"{'Enabled' if desired_active else 'Disabled'} account: {account.name}", True
        )
        return updated

    async def _rollback_active(self, account_id: str, desired_active: bool, previous: bool) -> None:
        """Restore the active flag unless another writer already changed it."""
        for attempt in range(MAX_PATCH_ATTEMPTS):
            try:
                current = await self.store.find_by_id(account_id)
                if current is None or current.active != desired_active:
                    return
                await self.store.update(account_id, {"active": previous}, current.version)
                return
            except ConcurrentModificationError:
                logger.info(f"Version conflict rolling back {account_id}, retrying ({attempt + 1})")
            except GrantKeeperError as e:
                logger.critical(f"Rollback of active flag failed for {account_id}: {e}")
                return
        logger.critical(f"Rollback of active flag for {account_id} gave up after {MAX_PATCH_ATTEMPTS} conflicts")

    # --- Regenerate ---

    async def regenerate(self, account_id: str, actor_id: str) -> RegenerateResult:
        account = await self.get_account(account_id)
        if account.provisioning_state != ProvisioningState.COMPLETE:
            raise ProvisioningIncompleteError(account_id, account.provisioning_state.value)

        try:
            artifact_ref = await self.provisioner.generate_profile(account.name)
        except Exception as e:
            logger.error(f"Profile regeneration failed for {account.name}: {e}")
            await self._audit(actor_id, AuditAction.REGENERATE_PROFILE, account_id, f"Regeneration failed: {e}", False)
            raise ProvisioningFailedError(
                f"Failed to regenerate profile for {account.name}", account_id, account.name, "profile"
            ) from e

        updated, before = await self._patch_latest(account_id, lambda current: {"profile_artifact_ref": artifact_ref})
        await self._audit(actor_id, AuditAction.REGENERATE_PROFILE, account_id, f"Config regenerated for: {account.name}", True)
        return RegenerateResult(account=updated, previous_artifact_ref=before.profile_artifact_ref)

    # --- Extend ---

    async def extend(self, account_id: str, days: int, actor_id: str) -> Account:
        if days <= 0:
            raise ValidationError("Extension must be a positive number of days")
        now = self.clock()

        def patch(current: Account):
            return {"expires_at": max(current.expires_at, now) + timedelta(days=days)}

        updated, _ = await self._patch_latest(account_id, patch)
        await self._audit(actor_id, AuditAction.EXTEND_ACCOUNT, account_id, f"Extended {updated.name} by {days} days", True)
        return updated

    async def _patch_latest(self, account_id: str, make_patch: Callable[[Account], dict]):
        """Apply a patch computed from the freshest row, retrying version conflicts."""
        for attempt in range(MAX_PATCH_ATTEMPTS):
            current = await self.get_account(account_id)
            try:
                updated = await self.store.update(account_id, make_patch(current), current.version)
                return updated, current
            except ConcurrentModificationError:
                logger.info(f"Version conflict patching {account_id}, retrying ({attempt + 1})")
        raise ConcurrentModificationError(account_id, current.version)

    # --- Admin seeding ---

    async def ensure_admin_account(self, requester_id: int, name: str = ADMIN_ACCOUNT_NAME) -> Account:
        existing = await self.store.find_admin()
        if existing:
            return existing

        now = self.clock()
        account = Account(
            id=str(uuid7()),
            requester_id=requester_id,
            name=name,
            # No login secret for the operator account; store an unguessable hash
            credential_secret_ref=await asyncio.to_thread(self.secret_hasher, secrets.token_urlsafe(32)),
            active=True,
            is_admin=True,
            created_at=now,
            expires_at=now + self.admin_validity,
            max_connections=self.max_connections,
            provisioning_state=ProvisioningState.COMPLETE,
        )
        try:
            account = await self.store.create(account)
        except DuplicateNameError:
            # Lost a race with another seeder, or the name is held by a regular account
            existing = await self.store.find_admin()
            if existing:
                return existing
            raise
        await self._audit(SYSTEM_ACTOR, AuditAction.SEED_ADMIN, account.id, f"Created admin account for {requester_id}", True)
        logger.info(f"Created admin account for requester {requester_id}")
        return account

    # --- Helpers ---

    async def _safe_provisioner_call(self, fn, name: str) -> bool:
        try:
            return bool(await fn(name))
        except Exception as e:
            logger.error(f"Provisioner {fn.__name__} raised for {name}: {e}")
            return False

    async def _audit(self, actor_id, action: AuditAction, target_id, detail: str, success: bool) -> None:
        try:
            await self.audit.record(str(actor_id), action, target_id, detail, success)
        except Exception as e:
            logger.error(f"AUDIT LOGGING FAILURE: {e}")
