"""Background ticker driving time-based engine maintenance."""

import asyncio
import logging
from typing import Any, Dict, Optional

from payin_engine.core.config import MonitoringSettings

from .payin_engine_service import PayinEngineService


logger = logging.getLogger(__name__)


class EngineTicker:
    """Periodically run breaker cooldowns, hold expiry, day rollover and anomaly checks."""

    def __init__(self, engine: PayinEngineService, settings: MonitoringSettings, enabled: bool = True) -> None:
        self._engine = engine
        self._settings = settings
        self._enabled = bool(enabled)
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self.last_summary: Optional[Dict[str, Any]] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the ticker loop in a background task if enabled."""
        if not self._enabled:
            logger.info("Engine ticker disabled by ticker.enabled=false")
            return
        if self.is_running:
            logger.info("Engine ticker already running.")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name="payin-engine-ticker")
        logger.info("Engine ticker started interval=%ss", self._settings.tick_interval_sec)

    async def stop(self) -> None:
        """Gracefully stop the background task."""
        if not self._task:
            return
        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            logger.info("Engine ticker task cancelled.")
        except Exception:
            logger.exception("Unexpected error while stopping engine ticker.")
        finally:
            self._task = None

    async def tick_once(self) -> Dict[str, Any]:
        """Run one maintenance cycle off the event loop."""
        summary = await asyncio.to_thread(self._engine.run_maintenance)
        self.last_summary = summary
        return summary

    async def _run_loop(self) -> None:
        logger.info("Engine ticker loop running.")
        while not self._stop_event.is_set():
            try:
                await self.tick_once()
            except Exception:
                logger.exception("Unhandled error during engine tick.")

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=float(self._settings.tick_interval_sec),
                )
            except asyncio.TimeoutError:
                continue
