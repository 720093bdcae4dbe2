from __future__ import annotations

import asyncio
import logging
from typing import Optional

from medsync.config_manager import ConfigManager
from medsync.sync_orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(self, orchestrator: SyncOrchestrator, config_manager: ConfigManager) -> None:
        self.orchestrator = orchestrator
        self.config_manager = config_manager
        self._task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()
        self._manual_trigger_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.get_running_loop().create_task(self._loop(), name="medsync-sync-scheduler")

    async def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=5)
            except asyncio.TimeoutError:
                self._task.cancel()
        self._task = None

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def _should_drain(self) -> bool:
        return self.orchestrator.monitor.is_online and self.orchestrator.store.pending_count() > 0

    async def _drain(self, trigger: str) -> None:
        if not self._should_drain():
            return
        try:
            await self.orchestrator.drain(trigger)
        except Exception:
            logger.exception("Scheduled drain (%s) failed", trigger)

    async def _loop(self) -> None:
        # Flush whatever survived the last shutdown.
        await self._drain("startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = int(config.sync.retry_interval_seconds)
            try:
                if interval_seconds <= 0:
                    await self._manual_trigger_event.wait()
                else:
                    await asyncio.wait_for(self._manual_trigger_event.wait(), timeout=interval_seconds)
                manual = True
            except asyncio.TimeoutError:
                manual = False
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            await self._drain("manual" if manual else "scheduled")
