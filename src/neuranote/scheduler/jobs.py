"""Scheduler for periodic maintenance using pure asyncio.

Jobs (every sweep interval):
- Expire pending calendar reminders whose time has passed
- Drop expired geofence regions
- Expire lapsed token balances
- Heartbeat: provider health checks
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from neuranote.errors import NeuraNoteError

if TYPE_CHECKING:
    from neuranote.config import NeuraNoteConfig
    from neuranote.core import NeuraNote

logger = logging.getLogger(__name__)


class Scheduler:
    """Simple asyncio-based scheduler for periodic tasks."""

    def __init__(self, app: NeuraNote, config: NeuraNoteConfig) -> None:
        self._app = app
        self._config = config
        self._interval = config.scheduler.sweep_interval

    async def start(self, shutdown_event: asyncio.Event) -> None:
        """Run scheduled jobs until shutdown_event is set."""
        logger.info("Scheduler started (sweep=%ds)", self._interval)

        while not shutdown_event.is_set():
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self._interval)
                break  # shutdown requested
            except asyncio.TimeoutError:
                pass  # interval elapsed, run jobs

            await self.run_once()

        logger.info("Scheduler stopped.")

    async def run_once(self) -> None:
        await self._expire_reminders()
        self._sweep_regions()
        await self._expire_tokens()
        await self._heartbeat()

    async def _expire_reminders(self) -> None:
        try:
            await self._app.reminders.expire_overdue()
        except NeuraNoteError as e:
            logger.error("Reminder expiry failed: %s", e)

    def _sweep_regions(self) -> None:
        self._app.geofences.sweep_expired()

    async def _expire_tokens(self) -> None:
        try:
            expired = await self._app.ledger.expire_all()
        except NeuraNoteError as e:
            logger.error("Token expiry failed: %s", e)
            return
        if expired:
            logger.info("Expired %d token balances", expired)

    async def _heartbeat(self) -> None:
        """Check provider health."""
        for name, healthy in (await self._app.health_check()).items():
            if not healthy:
                logger.warning("Provider %s health check failed", name)
