"""Conversation Session Engine.

Collects account-creation input one field at a time (name, then secret) for
a requester, then hands the pair to the orchestrator's create path.

Sessions live only in this process. Each requester has at most one session;
mutations for one requester are serialized by a per-requester lock, while
different requesters never contend. A session expires a fixed time after it
started: a timer task deletes it and fires ``on_timeout`` once, and lookups
also expire it lazily against the injected clock so expiry is observable
without waiting on the timer.
"""
import asyncio
import dataclasses
import logging
import weakref
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

from grantkeeper.domain.accounts.orchestrator import AccountOrchestrator
from grantkeeper.domain.errors import (
    AlreadyRegisteredError, GrantKeeperError, NameTakenError,
    NoActiveSessionError, SessionAlreadyActiveError
)
from grantkeeper.domain.models import Account, utcnow
from grantkeeper.domain.validation import validate_name, validate_secret
from grantkeeper.settings import settings

logger = logging.getLogger(__name__)


class SessionStep(str, Enum):
    AWAITING_NAME = "AWAITING_NAME"
    AWAITING_SECRET = "AWAITING_SECRET"


class Prompt(str, Enum):
    ASK_NAME = "ask_name"
    ASK_SECRET = "ask_secret"


@dataclass
class ConversationSession:
    requester_id: int
    step: SessionStep
    started_at: datetime
    pending_name: Optional[str] = None


@dataclass
class SessionReply:
    """Outcome of one submitted input.

    Either a ``prompt`` for the next field, or ``completed`` with the created
    account or the error the create path raised.
    """
    prompt: Optional[Prompt] = None
    completed: bool = False
    account: Optional[Account] = None
    error: Optional[GrantKeeperError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


TimeoutCallback = Callable[[int], Awaitable[None]]


class TimeoutNotices:
    """Requesters whose session timed out and who have not been told yet.

    Plugged in as the engine's ``on_timeout`` so that a front end polling
    the session can tell a timeout apart from "never started".
    """

    def __init__(self, max_entries: int = 10000):
        self.max_entries = max_entries
        self._pending: "OrderedDict[int, None]" = OrderedDict()

    async def record(self, requester_id: int) -> None:
        self._pending.pop(requester_id, None)
        self._pending[requester_id] = None
        while len(self._pending) > self.max_entries:
            self._pending.popitem(last=False)

    def pop(self, requester_id: int) -> bool:
        """Consume the notice; True only once per timeout."""
        if requester_id not in self._pending:
            return False
        del self._pending[requester_id]
        return True


class ConversationEngine:
    def __init__(
        self,
        orchestrator: AccountOrchestrator,
        idle_timeout_seconds: Optional[float] = None,
        on_timeout: Optional[TimeoutCallback] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.orchestrator = orchestrator
        self.idle_timeout = timedelta(
            seconds=idle_timeout_seconds if idle_timeout_seconds is not None
            else settings.session_idle_timeout_seconds
        )
        self.on_timeout = on_timeout
        self.clock = clock
        self._sessions: Dict[int, ConversationSession] = {}
        self._timers: Dict[int, asyncio.Task] = {}
        # Locks disappear once no coroutine holds a reference to them
        self._locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, requester_id: int) -> asyncio.Lock:
        lock = self._locks.get(requester_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[requester_id] = lock
        return lock

    # --- Public operations ---

    async def start_session(self, requester_id: int) -> Prompt:
        lock = self._lock_for(requester_id)
        async with lock:
            if await self.orchestrator.get_by_requester(requester_id):
                raise AlreadyRegisteredError(requester_id)
            await self._expire_if_idle(requester_id)
            if requester_id in self._sessions:
                raise SessionAlreadyActiveError(requester_id)

            session = ConversationSession(
                requester_id=requester_id,
                step=SessionStep.AWAITING_NAME,
                started_at=self.clock(),
            )
            self._sessions[requester_id] = session
            self._timers[requester_id] = asyncio.get_running_loop().create_task(
                self._expire_later(requester_id, session)
            )
            logger.info(f"Registration session started for requester {requester_id}")
            return Prompt.ASK_NAME

    async def submit_input(self, requester_id: int, text: str) -> SessionReply:
        lock = self._lock_for(requester_id)
        async with lock:
            await self._expire_if_idle(requester_id)
            session = self._sessions.get(requester_id)
            if session is None:
                raise NoActiveSessionError(requester_id)

            if session.step == SessionStep.AWAITING_NAME:
                name = validate_name(text)
                if await self.orchestrator.get_by_name(name):
                    raise NameTakenError(name)
                session.pending_name = name
                session.step = SessionStep.AWAITING_SECRET
                return SessionReply(prompt=Prompt.ASK_SECRET)

            secret = validate_secret(text)
            # Past validation the session is spent whatever Create returns,
            # and a timeout can no longer touch this registration.
            self._discard(requester_id)
            try:
                account = await self.orchestrator.create(requester_id, session.pending_name, secret)
            except GrantKeeperError as e:
                logger.warning(f"Registration failed for requester {requester_id}: {e.code}")
                return SessionReply(completed=True, error=e)
            return SessionReply(completed=True, account=account)

    async def cancel(self, requester_id: int) -> bool:
        lock = self._lock_for(requester_id)
        async with lock:
            return self._discard(requester_id) is not None

    async def get_session(self, requester_id: int) -> Optional[ConversationSession]:
        lock = self._lock_for(requester_id)
        async with lock:
            await self._expire_if_idle(requester_id)
            session = self._sessions.get(requester_id)
            return dataclasses.replace(session) if session else None

    def active_sessions(self) -> int:
        return len(self._sessions)

    async def shutdown(self) -> None:
        timers = list(self._timers.values())
        self._timers.clear()
        self._sessions.clear()
        for task in timers:
            task.cancel()
        await asyncio.gather(*timers, return_exceptions=True)

    # --- Timeout handling ---

    async def _expire_later(self, requester_id: int, session: ConversationSession) -> None:
        await asyncio.sleep(self.idle_timeout.total_seconds())
        lock = self._lock_for(requester_id)
        async with lock:
            # Only the session this timer was armed for
            if self._sessions.get(requester_id) is session:
                self._discard(requester_id)
                await self._notify_timeout(requester_id)

    async def _expire_if_idle(self, requester_id: int) -> bool:
        session = self._sessions.get(requester_id)
        if session is None or self.clock() - session.started_at < self.idle_timeout:
            return False
        self._discard(requester_id)
        await self._notify_timeout(requester_id)
        return True

    async def _notify_timeout(self, requester_id: int) -> None:
        logger.info(f"Registration session timed out for requester {requester_id}")
        if self.on_timeout is None:
            return
        try:
            await self.on_timeout(requester_id)
        except Exception as e:
            logger.error(f"Timeout notification failed for requester {requester_id}: {e}")

    def _discard(self, requester_id: int) -> Optional[ConversationSession]:
        session = self._sessions.pop(requester_id, None)
        timer = self._timers.pop(requester_id, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()
        return session
