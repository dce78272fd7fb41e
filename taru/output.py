"""Output viewing session: 태스크 출력 스트림 → 스타일 세그먼트"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

import httpx

from taru.api.client import TaskApiClient
from taru.colorizer import ColorizerState, StyledSegment, feed, finish

logger = logging.getLogger(__name__)


class OutputSession:
    def __init__(self, api: TaskApiClient, task_id: str) -> None:
        self.api = api
        self.task_id = task_id
        self.state: ColorizerState | None = None
        self._response: httpx.Response | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def segments(self) -> AsyncIterator[StyledSegment]:
        """Yield styled segments as chunks arrive, until the server ends the stream."""
        self.state = ColorizerState()
        async with self.api.open_output(self.task_id) as resp:
            self._response = resp
            try:
                async for chunk in resp.aiter_bytes():
                    if self._closed:
                        break
                    self.state, segments = feed(self.state, chunk)
                    for seg in segments:
                        if self._closed:
                            break
                        yield seg
            except (httpx.HTTPError, httpx.StreamError):
                if not self._closed:
                    raise
            finally:
                self._response = None
        if not self._closed:
            for seg in finish(self.state):
                yield seg
        self.state = None
        logger.debug("Output stream of %s ended", self.task_id)

    async def collect(self) -> list[StyledSegment]:
        return [seg async for seg in self.segments()]

    async def close(self) -> None:
        """Stop viewing. Chunks still in flight are discarded."""
        self._closed = True
        self.state = None
        if self._response is not None:
            await self._response.aclose()
