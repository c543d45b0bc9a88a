"""Memory Store Implementations."""
from typing import Dict, Any, Optional, List
from datetime import datetime
import asyncio
import logging

from grantkeeper.domain.interfaces import AccountStore
from grantkeeper.domain.models import Account
from grantkeeper.domain.errors import (
    DuplicateNameError, ConcurrentModificationError, AccountNotFoundError
)

logger = logging.getLogger(__name__)

IMMUTABLE_FIELDS = {"id", "name", "created_at", "version"}


class MemoryAccountStore(AccountStore):
    """
    Dict-backed account store.

    A single lock serializes writes so the name-uniqueness check and the
    insert happen as one step, and version checks cannot interleave.
    """

    def __init__(self):
        self._accounts: Dict[str, Account] = {}
        self._lock = asyncio.Lock()

    async def find_by_id(self, account_id: str) -> Optional[Account]:
        acc = self._accounts.get(account_id)
        return acc.model_copy() if acc else None

    async def find_by_name(self, name: str) -> Optional[Account]:
        for acc in self._accounts.values():
            if acc.name == name:
                return acc.model_copy()
        return None

    async def find_by_requester(self, requester_id: int) -> Optional[Account]:
        if not requester_id:
            return None
        for acc in self._accounts.values():
            if acc.requester_id == requester_id:
                return acc.model_copy()
        return None

    async def find_admin(self) -> Optional[Account]:
        for acc in self._accounts.values():
            if acc.is_admin:
                return acc.model_copy()
        return None

    async def find_expired_active(self, now: datetime) -> List[Account]:
        return [
            acc.model_copy() for acc in self._accounts.values()
            if acc.active and acc.expires_at < now
        ]

    async def list_accounts(self) -> List[Account]:
        accounts = sorted(self._accounts.values(), key=lambda a: a.created_at, reverse=True)
        return [acc.model_copy() for acc in accounts]

    async def create(self, account: Account) -> Account:
        async with self._lock:
            if any(acc.name == account.name for acc in self._accounts.values()):
                raise DuplicateNameError(account.name)
            if account.is_admin and any(acc.is_admin for acc in self._accounts.values()):
                raise DuplicateNameError(account.name)
            stored = account.model_copy(update={"version": 1})
            self._accounts[stored.id] = stored
            return stored.model_copy()

    async def update(self, account_id: str, patch: Dict[str, Any], expected_version: int) -> Account:
        async with self._lock:
            current = self._accounts.get(account_id)
            if not current:
                raise AccountNotFoundError(account_id)
            if current.version != expected_version:
                raise ConcurrentModificationError(account_id, expected_version, current.version)

            updates = {k: v for k, v in patch.items() if k not in IMMUTABLE_FIELDS}
            updates["version"] = current.version + 1
            # Re-validate so counters and bounds keep their invariants
            updated = Account.model_validate({**current.model_dump(), **updates})
            self._accounts[account_id] = updated
            return updated.model_copy()

    async def delete(self, account_id: str) -> bool:
        async with self._lock:
            return self._accounts.pop(account_id, None) is not None
