"""
Retention loop for the telemetry store.
"""

import asyncio
import logging
import math
from datetime import timedelta
from typing import Any, Callable

from ..utils.timeparse import utc_now
from .telemetry import TelemetryStore

logger = logging.getLogger(__name__)

RETENTION_INTERVAL_SECONDS = 24 * 60 * 60
DEFAULT_RETENTION_DAYS = 30
MIN_RETENTION_DAYS = 1
MAX_RETENTION_DAYS = 3650


def normalize_retention_days(days: Any) -> int:
    try:
        value = float(days)
    except (TypeError, ValueError):
        return DEFAULT_RETENTION_DAYS
    if not math.isfinite(value):
        return DEFAULT_RETENTION_DAYS
    return int(min(max(math.floor(value), MIN_RETENTION_DAYS), MAX_RETENTION_DAYS))


class RetentionLoop:
    """
    Deletes telemetry older than the configured retention window.

    One sweep runs as soon as the loop starts, then every 24 hours.
    """

    def __init__(self, store: TelemetryStore, get_retention_days: Callable[[], Any]):
        self.store = store
        self._get_retention_days = get_retention_days
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        logger.info("Starting telemetry retention loop")
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Telemetry retention loop stopped")

    async def run_once(self) -> int:
        """Sweep once and return the number of deleted rows."""
        days = normalize_retention_days(self._get_retention_days())
        cutoff = utc_now() - timedelta(days=days)
        deleted = await self.store.delete_older_than(cutoff)
        logger.info("Retention sweep removed %d rows (retention %d days)", deleted, days)
        return deleted

    async def _run(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Telemetry retention sweep failed")
            await asyncio.sleep(RETENTION_INTERVAL_SECONDS)
