"""In-process provisioner for dev mode: no OS users, no files."""
import logging
import time
from typing import Dict, List

from grantkeeper.domain.interfaces import ResourceProvisioner
from grantkeeper.domain.errors import ProvisionerError

logger = logging.getLogger(__name__)


class MemoryProvisioner(ResourceProvisioner):
    def __init__(self):
        self.credentials: Dict[str, bool] = {}  # name -> enabled
        self.artifacts: Dict[str, List[str]] = {}

    async def create_credential(self, name: str, secret: str) -> str:
        if name in self.credentials:
            raise ProvisionerError("create_credential", name, "credential already exists")
        self.credentials[name] = True
        return f"memory:{name}"

    async def delete_credential(self, name: str) -> bool:
        # Already gone counts as removed
        self.credentials.pop(name, None)
        return True

    async def enable_credential(self, name: str) -> bool:
        if name not in self.credentials:
            return False
        self.credentials[name] = True
        return True

    async def disable_credential(self, name: str) -> bool:
        if name not in self.credentials:
            return False
        self.credentials[name] = False
        return True

    async def generate_profile(self, name: str) -> str:
        ref = f"memory://profiles/{name}_{time.time_ns()}.ovpn"
        self.artifacts.setdefault(name, []).append(ref)
        return ref

    async def cleanup_artifacts(self, name: str) -> bool:
        removed = self.artifacts.pop(name, [])
        logger.debug(f"Dropped {len(removed)} in-memory artifacts for {name}")
        return True
