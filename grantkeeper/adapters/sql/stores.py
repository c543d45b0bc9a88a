"""SQL Store Implementations."""
import logging
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any, Callable

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import update, desc
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from grantkeeper.domain.interfaces import AccountStore
from grantkeeper.domain.models import Account, AuditRecord
from grantkeeper.domain.sink import build_record
from grantkeeper.domain.errors import (
    DuplicateNameError, ConcurrentModificationError, AccountNotFoundError,
    PersistenceFailedError
)
from grantkeeper.adapters.sql.models import AccountRow, AuditEventRow

logger = logging.getLogger(__name__)

IMMUTABLE_FIELDS = {"id", "name", "created_at", "version"}
DATETIME_FIELDS = ("created_at", "expires_at", "last_seen_at", "connected_at")


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_dict(obj):
    if not obj:
        return None
    d = {c.name: getattr(obj, c.name) for c in obj.__table__.columns}
    for field in DATETIME_FIELDS:
        if field in d:
            d[field] = _as_utc(d[field])
    return d


def to_account(row: Optional[AccountRow]) -> Optional[Account]:
    if row is None:
        return None
    return Account.model_validate(to_dict(row))


class SqlAccountStore(AccountStore):
    """
    AccountStore over SQLAlchemy.

    Blocking ORM work runs in the threadpool with one short-lived session per
    call, so every operation is its own transaction.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    async def _run(self, fn, *args):
        try:
            return await run_in_threadpool(fn, *args)
        except SQLAlchemyError as e:
            logger.error(f"Account store operation failed: {e}")
            raise PersistenceFailedError(f"Account store unavailable: {e.__class__.__name__}") from e

    # --- Reads ---

    async def find_by_id(self, account_id: str) -> Optional[Account]:
        return await self._run(self._find_one, AccountRow.id == account_id)

    async def find_by_name(self, name: str) -> Optional[Account]:
        return await self._run(self._find_one, AccountRow.name == name)

    async def find_by_requester(self, requester_id: int) -> Optional[Account]:
        if not requester_id:
            return None
        return await self._run(self._find_one, AccountRow.requester_id == requester_id)

    async def find_admin(self) -> Optional[Account]:
        return await self._run(self._find_one, AccountRow.is_admin.is_(True))

    def _find_one(self, criterion) -> Optional[Account]:
        with self.session_factory() as db:
            return to_account(db.query(AccountRow).filter(criterion).first())

    async def find_expired_active(self, now: datetime) -> List[Account]:
        return await self._run(self._find_expired_active, now)

    def _find_expired_active(self, now: datetime) -> List[Account]:
        with self.session_factory() as db:
            rows = db.query(AccountRow).filter(
                AccountRow.active.is_(True),
                AccountRow.expires_at < now
            ).all()
            return [to_account(r) for r in rows]

    async def list_accounts(self) -> List[Account]:
        return await self._run(self._list_accounts)

    def _list_accounts(self) -> List[Account]:
        with self.session_factory() as db:
            rows = db.query(AccountRow).order_by(desc(AccountRow.created_at)).all()
            return [to_account(r) for r in rows]

    # --- Writes ---

    async def create(self, account: Account) -> Account:
        return await self._run(self._create, account)

    def _create(self, account: Account) -> Account:
        with self.session_factory() as db:
            if account.is_admin and db.query(AccountRow).filter(AccountRow.is_admin.is_(True)).first():
                raise DuplicateNameError(account.name)
            data = account.model_dump()
            data["provisioning_state"] = account.provisioning_state.value
            data["version"] = 1
            row = AccountRow(**data)
            db.add(row)
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                if db.query(AccountRow).filter(AccountRow.name == account.name).first():
                    raise DuplicateNameError(account.name) from e
                raise
            return to_account(row)

    async def update(self, account_id: str, patch: Dict[str, Any], expected_version: int) -> Account:
        return await self._run(self._update, account_id, patch, expected_version)

    def _update(self, account_id: str, patch: Dict[str, Any], expected_version: int) -> Account:
        with self.session_factory() as db:
            current = to_account(db.query(AccountRow).filter(AccountRow.id == account_id).first())
            if current is None:
                raise AccountNotFoundError(account_id)
            if current.version != expected_version:
                raise ConcurrentModificationError(account_id, expected_version, current.version)

            updates = {k: v for k, v in patch.items() if k not in IMMUTABLE_FIELDS}
            merged = Account.model_validate({**current.model_dump(), **updates})
            values = {k: getattr(merged, k) for k in updates}
            if "provisioning_state" in values:
                values["provisioning_state"] = merged.provisioning_state.value
            values["version"] = expected_version + 1

            # Compare-and-set: a concurrent writer between read and write loses here
            result = db.execute(
                update(AccountRow)
                .where(AccountRow.id == account_id, AccountRow.version == expected_version)
                .values(**values)
            )
            if result.rowcount != 1:
                db.rollback()
                raise ConcurrentModificationError(account_id, expected_version)
            db.commit()
            return merged.model_copy(update={"version": expected_version + 1})

    async def delete(self, account_id: str) -> bool:
        return await self._run(self._delete, account_id)

    def _delete(self, account_id: str) -> bool:
        with self.session_factory() as db:
            deleted = db.query(AccountRow).filter(AccountRow.id == account_id).delete(synchronize_session=False)
            db.commit()
            return deleted > 0


class SqlAuditSink:
    """Persists audit records to ``audit_events``; never raises to the caller."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    async def record(self, actor_id, action, target_id, detail, success) -> None:
        event = build_record(actor_id, action, target_id, detail, success)
        try:
            await run_in_threadpool(self._append, event)
        except SQLAlchemyError as e:
            logger.error(f"AUDIT LOGGING FAILURE: {e}")

    def _append(self, event: AuditRecord) -> None:
        with self.session_factory() as db:
            db.add(AuditEventRow(
                event_id=event.event_id,
                timestamp=event.timestamp,
                actor_id=event.actor_id,
                action=event.action.value,
                target_account_id=event.target_account_id,
                detail=event.detail,
                success=event.success,
            ))
            db.commit()

    async def recent(self, limit: int = 100) -> List[AuditRecord]:
        return await run_in_threadpool(self._recent, limit)

    def _recent(self, limit: int) -> List[AuditRecord]:
        with self.session_factory() as db:
            rows = db.query(AuditEventRow).order_by(desc(AuditEventRow.timestamp)).limit(limit).all()
            records = [
                AuditRecord(
                    event_id=r.event_id,
                    actor_id=r.actor_id,
                    action=r.action,
                    target_account_id=r.target_account_id,
                    detail=r.detail or "",
                    success=r.success,
                    timestamp=_as_utc(r.timestamp),
                )
                for r in rows
            ]
            # Oldest first, like the in-memory sink
            return list(reversed(records))
