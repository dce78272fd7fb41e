"""Monitor session: API client + reconciler + channel monitor 조립, hard reset"""

from __future__ import annotations

import asyncio
import logging

import httpx

from taru.api.client import ApiError, TaskApiClient
from taru.channel import ChannelFactory, ChannelHealthMonitor, sse_channel_factory
from taru.config import AppConfig
from taru.output import OutputSession
from taru.reconciler import TaskStateReconciler

logger = logging.getLogger(__name__)


class MonitorSession:
    def __init__(
        self,
        config: AppConfig,
        api: TaskApiClient,
        open_channel: ChannelFactory | None = None,
    ) -> None:
        self.config = config
        self.api = api
        self.reconciler = TaskStateReconciler(api)
        self.monitor: ChannelHealthMonitor | None = None
        self.resets = 0
        self._open_channel = open_channel or sse_channel_factory(api)
        self._reset_task: asyncio.Task | None = None
        self._stopped = False

    async def start(self) -> None:
        """Load the initial snapshot, then start listening for events."""
        await self.reconciler.refresh()
        self.monitor = ChannelHealthMonitor(
            self._open_channel,
            self.reconciler.apply_event,
            self._hard_reset,
            watchdog_interval=self.config.watchdog_interval,
        )
        self.monitor.start()
        logger.info("Monitor session started: %d tasks", len(self.reconciler.current_state().tasks))

    async def stop(self) -> None:
        self._stopped = True
        if self._reset_task and not self._reset_task.done():
            self._reset_task.cancel()
            try:
                await self._reset_task
            except asyncio.CancelledError:
                pass
        if self.monitor is not None:
            await self.monitor.stop()
        await self.reconciler.cancel_pending()

    def open_output(self, task_id: str) -> OutputSession:
        return OutputSession(self.api, task_id)

    # ── Hard reset ──

    def _hard_reset(self) -> None:
        if self._stopped or (self._reset_task and not self._reset_task.done()):
            return
        self._reset_task = asyncio.create_task(self._restart())

    async def _restart(self) -> None:
        """Throw away all local state and start over, like reloading the page."""
        self.resets += 1
        while not self._stopped:
            await asyncio.sleep(self.config.reset_delay)
            if self.monitor is not None:
                await self.monitor.stop()
            self.reconciler.reset()
            try:
                await self.start()
            except (ApiError, httpx.HTTPError) as exc:
                logger.warning("Session reset failed, retrying in %.1fs: %s", self.config.reset_delay, exc)
                continue
            logger.info("Session reset complete")
            return
