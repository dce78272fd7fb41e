"""SSE 이벤트 채널 + health monitor (heartbeat, watchdog, reconnect / hard reset)"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Protocol

import httpx
from httpx_sse import SSEError

from taru.api.client import ApiError, TaskApiClient
from taru.models import ChannelState, PingEvent, TaskEvent, UpdateConfigEvent, parse_event

logger = logging.getLogger(__name__)


class ReadyState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class RecoveryAction(str, Enum):
    NONE = "none"
    RECONNECT = "reconnect"
    HARD_RESET = "hard_reset"


class EventChannel(Protocol):
    ready_state: ReadyState

    def close(self) -> None: ...


MessageHandler = Callable[[EventChannel, str, str], Awaitable[None]]
ErrorHandler = Callable[[EventChannel], object]
ChannelFactory = Callable[[MessageHandler, ErrorHandler], EventChannel]


class SseEventChannel:
    """One connection to the server's ``/events`` stream.

    Messages are handed to ``on_message`` in arrival order and awaited before
    the next one is read. When the stream fails or ends on its own,
    ``on_error`` is called once. A channel is never reopened; the monitor
    builds a new one.
    """

    def __init__(self, api: TaskApiClient, on_message: MessageHandler, on_error: ErrorHandler) -> None:
        self.ready_state = ReadyState.CONNECTING
        self._api = api
        self._on_message = on_message
        self._on_error = on_error
        self._closed = False
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        try:
            async with self._api.connect_events() as source:
                self.ready_state = ReadyState.OPEN
                async for sse in source.aiter_sse():
                    if self._closed:
                        break
                    await self._on_message(self, sse.event, sse.data)
        except (ApiError, SSEError, httpx.HTTPError) as exc:
            logger.info("Event channel failed: %s", exc)
        finally:
            self.ready_state = ReadyState.CLOSED
        if not self._closed:
            self._closed = True
            self._on_error(self)

    def close(self) -> None:
        self._closed = True
        self.ready_state = ReadyState.CLOSED
        if not self._task.done() and self._task is not asyncio.current_task():
            self._task.cancel()


def sse_channel_factory(api: TaskApiClient) -> ChannelFactory:
    def open_channel(on_message: MessageHandler, on_error: ErrorHandler) -> EventChannel:
        return SseEventChannel(api, on_message, on_error)

    return open_channel


class ChannelHealthMonitor:
    """Keeps one logical event session alive.

    A channel that fails after its first heartbeat is replaced and a full
    resync is requested once the new channel is healthy. A channel that fails
    before any heartbeat escalates to ``on_hard_reset``: the initial state
    may never have arrived, so local state cannot be trusted. Failures of a
    channel that has already been replaced are ignored, which makes the
    watchdog and the error callback safe to race.
    """

    def __init__(
        self,
        open_channel: ChannelFactory,
        dispatch: Callable[[TaskEvent], Awaitable[None]],
        on_hard_reset: Callable[[], object],
        watchdog_interval: float = 1.0,
    ) -> None:
        self._open_channel = open_channel
        self._dispatch = dispatch
        self._on_hard_reset = on_hard_reset
        self._interval = watchdog_interval
        self._channel: EventChannel | None = None
        self._watchdog: asyncio.Task | None = None
        self._resync_pending = False
        self.state = ChannelState.CLOSED

    @property
    def channel(self) -> EventChannel | None:
        return self._channel

    def start(self) -> None:
        self._connect()
        self._watchdog = asyncio.create_task(self._watch())

    async def stop(self) -> None:
        self.state = ChannelState.CLOSED
        if self._channel is not None:
            self._channel.close()
        watchdog = self._watchdog
        self._watchdog = None
        if watchdog and not watchdog.done() and watchdog is not asyncio.current_task():
            watchdog.cancel()
            try:
                await watchdog
            except asyncio.CancelledError:
                pass

    def _connect(self) -> None:
        self.state = ChannelState.CONNECTING
        self._channel = self._open_channel(self._on_message, self.handle_failure)

    async def _on_message(self, channel: EventChannel, name: str, data: str) -> None:
        if channel is not self._channel or self.state == ChannelState.CLOSED:
            return
        event = parse_event(name, data)
        if isinstance(event, PingEvent):
            if self.state == ChannelState.CONNECTING:
                self.state = ChannelState.HEALTHY
                logger.info("Event channel healthy")
            if not self._resync_pending:
                return
            self._resync_pending = False
            event = UpdateConfigEvent()
        try:
            await self._dispatch(event)
        except (ApiError, httpx.HTTPError, ValueError) as exc:
            logger.warning("Applying %s failed: %s", type(event).__name__, exc)

    def handle_failure(self, channel: EventChannel | None = None) -> RecoveryAction:
        """React to a closed or failed channel. Idempotent per channel."""
        channel = channel or self._channel
        if self.state == ChannelState.CLOSED or channel is None or channel is not self._channel:
            return RecoveryAction.NONE
        channel.close()
        if self.state == ChannelState.HEALTHY:
            logger.info("Event channel lost, reconnecting")
            self._resync_pending = True
            self._connect()
            return RecoveryAction.RECONNECT

        logger.warning("Event channel failed before first heartbeat, resetting session")
        self.state = ChannelState.CLOSED
        if self._watchdog and self._watchdog is not asyncio.current_task():
            self._watchdog.cancel()
        self._on_hard_reset()
        return RecoveryAction.HARD_RESET

    async def _watch(self) -> None:
        # closed notifications are not guaranteed, so poll as well
        while self.state != ChannelState.CLOSED:
            await asyncio.sleep(self._interval)
            channel = self._channel
            if channel is not None and channel.ready_state == ReadyState.CLOSED:
                logger.info("Watchdog found event channel closed")
                self.handle_failure(channel)
