import asyncio
import logging
from pathlib import Path
from typing import Optional

from grantkeeper.domain.telemetry import TelemetryRecorder, TelemetryReport, parse_status_log
from grantkeeper.settings import settings

logger = logging.getLogger(__name__)


async def ingest_status_file(recorder: TelemetryRecorder, path: str) -> Optional[TelemetryReport]:
    """Parse one status log and apply it. Returns None when the file is absent."""
    status_path = Path(path)
    if not status_path.exists():
        logger.debug(f"Status log not found: {path}")
        return None
    text = await asyncio.to_thread(status_path.read_text, encoding="utf-8", errors="replace")
    return await recorder.apply(parse_status_log(text))


async def telemetry_worker(
    recorder: TelemetryRecorder,
    shutdown_event: asyncio.Event,
    status_log_path: Optional[str] = None,
    interval_seconds: Optional[float] = None,
):
    """
    Background worker that folds the connection status log into accounts.
    Disabled when no status log path is configured.
    """
    path = status_log_path or settings.status_log_path
    if not path:
        logger.info("Telemetry worker disabled: no status log configured")
        return
    interval = interval_seconds or settings.telemetry_interval_seconds
    logger.info(f"Starting Telemetry Worker ({path}, interval {interval}s)")

    while not shutdown_event.is_set():
        try:
            report = await ingest_status_file(recorder, path)
            if report and report.updated:
                logger.info(f"Recorded telemetry for {len(report.updated)} connected accounts")
        except Exception as e:
            logger.error(f"Error in telemetry worker: {e}", exc_info=True)

        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue

    logger.info("Telemetry Worker Stopped")
