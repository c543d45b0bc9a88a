"""Expiration Reconciler.

Periodically deactivates accounts whose validity has lapsed:
1. Queries active accounts with ``expires_at`` in the past.
2. Disables each one through the orchestrator (row first, then credential).
3. Logs and skips individual failures; the next pass retries them.

A pass that is triggered while another is still running is dropped, not
queued.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from grantkeeper.domain.accounts.orchestrator import AccountOrchestrator
from grantkeeper.domain.models import SYSTEM_ACTOR, AuditAction, utcnow
from grantkeeper.settings import settings

logger = logging.getLogger(__name__)


class ReconcilerState(str, Enum):
    IDLE = "IDLE"
    SCANNING = "SCANNING"


@dataclass
class ReconcileReport:
    scanned: int = 0
    deactivated: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class ExpirationReconciler:
    def __init__(self, orchestrator: AccountOrchestrator, clock: Callable[[], datetime] = utcnow):
        self.orchestrator = orchestrator
        self.clock = clock
        self.state = ReconcilerState.IDLE
        self.last_report: Optional[ReconcileReport] = None

    async def run_once(self) -> Optional[ReconcileReport]:
        """Run a single pass. Returns None if a pass is already in progress."""
        if self.state == ReconcilerState.SCANNING:
            logger.info("Expiration scan already in progress, skipping trigger")
            return None

        self.state = ReconcilerState.SCANNING
        report = ReconcileReport()
        try:
            now = self.clock()
            try:
                expired = await self.orchestrator.store.find_expired_active(now)
            except Exception as e:
                logger.error(f"Expiration scan query failed: {e}", exc_info=True)
                return report

            report.scanned = len(expired)
            for account in expired:
                try:
                    await self.orchestrator.set_active(
                        account.id, False, SYSTEM_ACTOR, audit_action=AuditAction.EXPIRE_ACCOUNT
                    )
                    report.deactivated.append(account.id)
                    logger.info(f"Disabled expired account: {account.name}")
                except Exception as e:
                    report.failed.append(account.id)
                    logger.error(f"Failed to disable expired account {account.name}: {e}")

            if report.scanned:
                logger.info(
                    f"Expiration scan complete: {len(report.deactivated)} disabled, "
                    f"{len(report.failed)} failed"
                )
            return report
        finally:
            self.last_report = report
            self.state = ReconcilerState.IDLE


async def expiration_worker(
    reconciler: ExpirationReconciler,
    shutdown_event: asyncio.Event,
    interval_seconds: Optional[float] = None,
):
    """
    Background worker running expiration passes on a fixed interval.
    Runs once on startup, then every interval, respecting shutdown event.
    """
    interval = interval_seconds or settings.reconcile_interval_seconds
    logger.info(f"Starting Expiration Worker (interval {interval}s)")

    while not shutdown_event.is_set():
        try:
            await reconciler.run_once()
        except Exception as e:
            logger.error(f"Error in expiration worker: {e}", exc_info=True)

        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue

    logger.info("Expiration Worker Stopped")
