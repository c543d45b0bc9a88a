from typing import Protocol, List, Optional
import json
import logging

from uuid6 import uuid7

from grantkeeper.domain.models import AuditAction, AuditRecord

logger = logging.getLogger("grantkeeper.audit.sink")


class AuditSink(Protocol):
    async def record(
        self,
        actor_id: str,
        action: AuditAction,
        target_id: Optional[str],
        detail: str,
        success: bool
    ) -> None:
        """Append one audit record."""
        ...


def build_record(actor_id, action, target_id, detail, success) -> AuditRecord:
    return AuditRecord(
        event_id=str(uuid7()),
        actor_id=str(actor_id),
        action=action,
        target_account_id=target_id,
        detail=detail,
        success=success,
    )


class StdOutSink:
    def __init__(self):
        self._logger = logging.getLogger("grantkeeper.audit")

    async def record(self, actor_id, action, target_id, detail, success) -> None:
        event = build_record(actor_id, action, target_id, detail, success)
        self._logger.info(json.dumps(event.model_dump(mode="json")))


class MemoryAuditSink:
    """Keeps records in process; used in dev mode and by tests."""

    def __init__(self, max_records: int = 1000):
        self.records: List[AuditRecord] = []
        self.max_records = max_records

    async def record(self, actor_id, action, target_id, detail, success) -> None:
        self.records.append(build_record(actor_id, action, target_id, detail, success))
        if len(self.records) > self.max_records:
            del self.records[: len(self.records) - self.max_records]

    async def recent(self, limit: int = 100) -> List[AuditRecord]:
        return self.records[-limit:]
