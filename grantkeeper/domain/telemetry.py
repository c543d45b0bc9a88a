"""Connection telemetry from OpenVPN status logs.

The status file's client list looks like::

    OpenVPN CLIENT LIST
    Updated,Thu Jun 18 08:12:15 2015
    Common Name,Real Address,Bytes Received,Bytes Sent,Connected Since
    alice,203.0.113.7:51234,1024,2048,Thu Jun 18 08:00:01 2015
    ROUTING TABLE
    ...

Observed byte counters only ever raise the stored ones; a reconnect that
resets the server-side counters never moves an account's totals backwards.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from grantkeeper.domain.errors import ConcurrentModificationError, GrantKeeperError
from grantkeeper.domain.interfaces import AccountStore
from grantkeeper.domain.models import ConnectionObservation, utcnow

logger = logging.getLogger(__name__)

CLIENT_LIST_HEADER = "Common Name,Real Address,Bytes Received,Bytes Sent,Connected Since"
ROUTING_TABLE_MARKER = "ROUTING TABLE"
CONNECTED_SINCE_FORMAT = "%a %b %d %H:%M:%S %Y"
MAX_APPLY_ATTEMPTS = 3


def _parse_int(value: str) -> int:
    try:
        return max(int(value.strip()), 0)
    except ValueError:
        return 0


def _parse_connected_since(value: str) -> Optional[datetime]:
    value = " ".join(value.split())
    try:
        # Status logs carry server-local time without a zone; servers run UTC
        return datetime.strptime(value, CONNECTED_SINCE_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def parse_status_log(text: str) -> List[ConnectionObservation]:
    observations: List[ConnectionObservation] = []
    in_client_section = False

    for line in text.splitlines():
        if CLIENT_LIST_HEADER in line:
            in_client_section = True
            continue
        if in_client_section and ROUTING_TABLE_MARKER in line:
            break
        if not in_client_section or not line.strip():
            continue

        parts = line.split(",")
        if len(parts) < 5:
            continue
        observations.append(ConnectionObservation(
            name=parts[0].strip(),
            real_address=parts[1].strip(),
            bytes_received=_parse_int(parts[2]),
            bytes_sent=_parse_int(parts[3]),
            connected_since=_parse_connected_since(parts[4]),
        ))

    return observations


@dataclass
class TelemetryReport:
    observed: int = 0
    updated: List[str] = field(default_factory=list)
    unknown: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class TelemetryRecorder:
    def __init__(self, store: AccountStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    async def apply(self, observations: List[ConnectionObservation]) -> TelemetryReport:
        report = TelemetryReport(observed=len(observations))
        now = self.clock()

        # One account may hold several concurrent connections
        by_name: Dict[str, List[ConnectionObservation]] = {}
        for obs in observations:
            by_name.setdefault(obs.name, []).append(obs)

        for name, rows in by_name.items():
            try:
                applied = await self._apply_one(name, rows, now)
            except GrantKeeperError as e:
                logger.error(f"Failed to record telemetry for {name}: {e}")
                report.failed.append(name)
                continue
            if applied:
                report.updated.append(name)
            else:
                report.unknown.append(name)

        if report.unknown:
            logger.warning(f"Status log lists unknown clients: {', '.join(report.unknown)}")
        return report

    async def _apply_one(self, name: str, rows: List[ConnectionObservation], now: datetime) -> bool:
        bytes_in = sum(r.bytes_received for r in rows)
        bytes_out = sum(r.bytes_sent for r in rows)
        since = [r.connected_since for r in rows if r.connected_since]
        connected_at = min(since) if since else None

        for attempt in range(MAX_APPLY_ATTEMPTS):
            account = await self.store.find_by_name(name)
            if account is None:
                return False
            patch = {
                "bytes_in": max(account.bytes_in, bytes_in),
                "bytes_out": max(account.bytes_out, bytes_out),
                "last_seen_at": now,
            }
            if connected_at:
                patch["connected_at"] = connected_at
            try:
                await self.store.update(account.id, patch, account.version)
                return True
            except ConcurrentModificationError:
                logger.debug(f"Version conflict recording telemetry for {name}, retrying ({attempt + 1})")
        raise ConcurrentModificationError(account.id, account.version)
