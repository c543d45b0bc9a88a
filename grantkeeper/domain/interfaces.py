"""Domain interfaces for persistence stores and external provisioning."""
from abc import ABC, abstractmethod
from typing import List, Optional, Dict, Any
from datetime import datetime

from grantkeeper.domain.models import Account


class AccountStore(ABC):
    """
    Persisted account records.

    ``create`` must reject a duplicate name with DuplicateNameError (the
    storage-level unique constraint is the authority for name uniqueness).
    ``update`` must reject a stale ``expected_version`` with
    ConcurrentModificationError. Infrastructure failures surface as
    PersistenceFailedError with no partial change applied.
    """
    @abstractmethod
    async def find_by_id(self, account_id: str) -> Optional[Account]: pass
    @abstractmethod
    async def find_by_name(self, name: str) -> Optional[Account]: pass
    @abstractmethod
    async def find_by_requester(self, requester_id: int) -> Optional[Account]: pass
    @abstractmethod
    async def find_admin(self) -> Optional[Account]: pass
    @abstractmethod
    async def find_expired_active(self, now: datetime) -> List[Account]: pass
    @abstractmethod
    async def list_accounts(self) -> List[Account]: pass
    @abstractmethod
    async def create(self, account: Account) -> Account: pass
    @abstractmethod
    async def update(self, account_id: str, patch: Dict[str, Any], expected_version: int) -> Account: pass
    @abstractmethod
    async def delete(self, account_id: str) -> bool: pass


class ResourceProvisioner(ABC):
    """
    External credential and connection-profile capability.

    Methods returning a reference raise ProvisionerError on failure; the
    boolean methods report failure by returning False.
    """
    @abstractmethod
    async def create_credential(self, name: str, secret: str) -> str: pass
    @abstractmethod
    async def delete_credential(self, name: str) -> bool: pass
    @abstractmethod
    async def enable_credential(self, name: str) -> bool: pass
    @abstractmethod
    async def disable_credential(self, name: str) -> bool: pass
    @abstractmethod
    async def generate_profile(self, name: str) -> str: pass
    @abstractmethod
    async def cleanup_artifacts(self, name: str) -> bool: pass
