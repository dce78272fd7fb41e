"""taru 서버 REST + SSE 클라이언트 (httpx)"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import quote

import httpx
from httpx_sse import EventSource, aconnect_sse

from taru.config import AppConfig

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Non-success response from the task server."""

    def __init__(self, status_code: int, message: str = "") -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"HTTP {status_code}: {message}" if message else f"HTTP {status_code}")


def _task_path(task_id: str, suffix: str = "") -> str:
    return f"/task/{quote(task_id, safe='')}{suffix}"


def _check(resp: httpx.Response) -> httpx.Response:
    if resp.is_success:
        return resp
    raise ApiError(resp.status_code, resp.text[:500])


class TaskApiClient:
    def __init__(self, config: AppConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        headers = {"X-User": config.user} if config.user else {}
        self._timeout = config.request_timeout
        self._client = httpx.AsyncClient(
            base_url=config.api_url,
            headers=headers,
            timeout=config.request_timeout,
            transport=transport,
        )

    @property
    def _stream_timeout(self) -> httpx.Timeout:
        # streams stay open until the server closes them
        return httpx.Timeout(self._timeout, read=None)

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> TaskApiClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ── Tasks ──

    async def fetch_tasks(self) -> dict[str, dict[str, Any]]:
        resp = _check(await self._client.get("/tasks"))
        return resp.json()

    async def run_task(self, task_id: str, arguments: Mapping[str, Any] | None = None) -> None:
        """Start a task. Raises ApiError(409) if it is already running."""
        params = {k: str(v) for k, v in (arguments or {}).items()}
        _check(await self._client.post(_task_path(task_id), params=params))
        logger.info("Run requested: %s %s", task_id, params or "")

    async def stop_task(self, task_id: str) -> None:
        _check(await self._client.post(_task_path(task_id, "/stop")))
        logger.info("Stop requested: %s", task_id)

    # ── Output ──

    async def fetch_output_lines(self, task_id: str) -> list[str]:
        """Run ``task_id`` and return its captured output split into lines."""
        resp = _check(await self._client.post(_task_path(task_id, "/output"), timeout=self._stream_timeout))
        text = resp.text.strip()
        return text.split("\n") if text else []

    @asynccontextmanager
    async def open_output(self, task_id: str) -> AsyncIterator[httpx.Response]:
        """Open the live output byte stream of ``task_id``."""
        async with self._client.stream("GET", _task_path(task_id, "/output"), timeout=self._stream_timeout) as resp:
            if not resp.is_success:
                await resp.aread()
                _check(resp)
            yield resp

    # ── Events ──

    @asynccontextmanager
    async def connect_events(self) -> AsyncIterator[EventSource]:
        async with aconnect_sse(self._client, "GET", "/events", timeout=self._stream_timeout) as source:
            if not source.response.is_success:
                await source.response.aread()
                _check(source.response)
            yield source
