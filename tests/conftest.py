import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from grantkeeper.adapters.memory_store.stores import MemoryAccountStore
from grantkeeper.domain.accounts.orchestrator import AccountOrchestrator
from grantkeeper.domain.conversation.engine import ConversationEngine
from grantkeeper.domain.credentials import hash_secret
from grantkeeper.domain.errors import ProvisionerError
from grantkeeper.domain.interfaces import ResourceProvisioner
from grantkeeper.domain.sink import MemoryAuditSink


def fast_hash(secret: str) -> str:
    """bcrypt at the minimum cost factor keeps the suite quick."""
    return hash_secret(secret, rounds=4)


class ManualClock:
    """Clock that only moves when a test says so."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeProvisioner(ResourceProvisioner):
    """In-memory provisioner with per-operation fault injection.

    ``fail("disable_credential", "bob", times=1)`` makes the next disable of
    ``bob`` fail once; ``name="*"`` matches every name, ``times=None`` fails
    until ``heal()`` is called.
    """

    def __init__(self):
        self.credentials: Dict[str, bool] = {}
        self.artifacts: Dict[str, List[str]] = {}
        self.calls: List[Tuple[str, str]] = []
        self._failures: Dict[Tuple[str, str], Optional[int]] = {}
        self._seq = 0

    def fail(self, operation: str, name: str = "*", times: Optional[int] = None) -> None:
        self._failures[(operation, name)] = times

    def heal(self) -> None:
        self._failures.clear()

    def calls_for(self, operation: str) -> List[str]:
        return [n for op, n in self.calls if op == operation]

    def _should_fail(self, operation: str, name: str) -> bool:
        for key in ((operation, name), (operation, "*")):
            if key not in self._failures:
                continue
            remaining = self._failures[key]
            if remaining is None:
                return True
            if remaining <= 1:
                del self._failures[key]
            else:
                self._failures[key] = remaining - 1
            return True
        return False

    async def create_credential(self, name: str, secret: str) -> str:
        self.calls.append(("create_credential", name))
        if self._should_fail("create_credential", name):
            raise ProvisionerError("create_credential", name, "injected failure")
        if name in self.credentials:
            raise ProvisionerError("create_credential", name, "credential already exists")
        self.credentials[name] = True
        return f"fake:{name}"

    async def delete_credential(self, name: str) -> bool:
        self.calls.append(("delete_credential", name))
        if self._should_fail("delete_credential", name):
            return False
        self.credentials.pop(name, None)
        return True

    async def enable_credential(self, name: str) -> bool:
        self.calls.append(("enable_credential", name))
        if self._should_fail("enable_credential", name) or name not in self.credentials:
            return False
        self.credentials[name] = True
        return True

    async def disable_credential(self, name: str) -> bool:
        self.calls.append(("disable_credential", name))
        if self._should_fail("disable_credential", name) or name not in self.credentials:
            return False
        self.credentials[name] = False
        return True

    async def generate_profile(self, name: str) -> str:
        self.calls.append(("generate_profile", name))
        if self._should_fail("generate_profile", name):
            raise ProvisionerError("generate_profile", name, "injected failure")
        self._seq += 1
        ref = f"fake://profiles/{name}_{self._seq}.ovpn"
        self.artifacts.setdefault(name, []).append(ref)
        return ref

    async def cleanup_artifacts(self, name: str) -> bool:
        self.calls.append(("cleanup_artifacts", name))
        if self._should_fail("cleanup_artifacts", name):
            return False
        self.artifacts.pop(name, None)
        return True


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store():
    return MemoryAccountStore()


@pytest.fixture
def provisioner():
    return FakeProvisioner()


@pytest.fixture
def audit():
    return MemoryAuditSink()


@pytest.fixture
def secret_hasher():
    return fast_hash


@pytest.fixture
def orchestrator(store, provisioner, audit, clock):
    return AccountOrchestrator(
        store, provisioner, audit,
        validity_days=30,
        admin_validity_days=365,
        max_connections=3,
        clock=clock,
        secret_hasher=fast_hash,
    )


@pytest_asyncio.fixture
async def engine(orchestrator, clock):
    engine = ConversationEngine(orchestrator, idle_timeout_seconds=300, clock=clock)
    yield engine
    await engine.shutdown()
