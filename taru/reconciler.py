"""Task state reconciler: 스냅샷 + 푸시 이벤트 병합"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, NamedTuple, Protocol

import httpx

from taru.api.client import ApiError
from taru.models import (
    ArgumentSpec,
    ChangeDataEvent,
    FinishedEvent,
    PingEvent,
    StartedEvent,
    TaskEvent,
    TaskRecord,
    TaskState,
    UnknownEvent,
    UpdateConfigEvent,
)

logger = logging.getLogger(__name__)


class TaskSource(Protocol):
    async def fetch_tasks(self) -> dict[str, dict[str, Any]]: ...

    async def fetch_output_lines(self, task_id: str) -> list[str]: ...


@dataclass
class CachedOutput:
    """Enum domain cache slot: last fetched lines and the fetch in flight, if any."""

    lines: list[str] | None = None
    pending: asyncio.Task | None = None


@dataclass
class ArgumentBinding:
    task: str
    argument: str
    value: Any = None


class ReconcilerView(NamedTuple):
    tasks: Mapping[str, TaskRecord]
    categories: Mapping[str, list[str]]


def build_categories(tasks: Mapping[str, TaskRecord]) -> dict[str, list[str]]:
    categories: dict[str, list[str]] = {}
    for task_id in sorted(tasks):
        categories.setdefault(tasks[task_id].category, []).append(task_id)
    return categories


def _pick(previous: Any, domain: list[str]) -> Any:
    if previous in domain:
        return previous
    return domain[0] if domain else None


def _parse_snapshot(tasks: Mapping[str, Mapping[str, Any]] | Iterable[Mapping[str, Any]]) -> dict[str, TaskRecord]:
    if isinstance(tasks, Mapping):
        items = [(task_id, fields) for task_id, fields in tasks.items()]
    else:
        items = [(fields.get("id") or fields["name"], fields) for fields in tasks]
    return {task_id: TaskRecord.model_validate({**fields, "id": task_id}) for task_id, fields in items}


class TaskStateReconciler:
    def __init__(self, api: TaskSource) -> None:
        self._api = api
        self._tasks: dict[str, TaskRecord] = {}
        self._categories: dict[str, list[str]] = {}
        self._outputs: dict[str, CachedOutput] = {}
        self._bindings: dict[tuple[str, str], ArgumentBinding] = {}
        self._background: set[asyncio.Task] = set()
        self.listeners: list[Callable[[TaskEvent], None]] = []

    # ── Read view ──

    def current_state(self) -> ReconcilerView:
        return ReconcilerView(MappingProxyType(self._tasks), MappingProxyType(self._categories))

    def get(self, task_id: str) -> TaskRecord | None:
        return self._tasks.get(task_id)

    def binding(self, task_id: str, argument: str) -> ArgumentBinding | None:
        return self._bindings.get((task_id, argument))

    def options_for(self, task_id: str, argument: str) -> list[str]:
        task = self._tasks.get(task_id)
        spec = _find_argument(task, argument) if task else None
        if spec is None:
            return []
        if spec.enum_source is None:
            return list(spec.options)
        cached = self._outputs.get(spec.enum_source)
        if spec.enum_source not in self._tasks or cached is None or cached.lines is None:
            return []
        return list(cached.lines)

    # ── Snapshot ──

    def load_snapshot(self, tasks: Mapping[str, Mapping[str, Any]] | Iterable[Mapping[str, Any]]) -> None:
        """Merge a full task collection.

        Records present before and after keep their identity and are updated
        field by field. Only fields present in the payload are overwritten, so
        client-side state the server does not report survives.
        """
        incoming = _parse_snapshot(tasks)
        for task_id, record in incoming.items():
            current = self._tasks.get(task_id)
            if current is None:
                self._tasks[task_id] = record
                continue
            for name in record.model_fields_set - {"id"}:
                setattr(current, name, getattr(record, name))
        for task_id in [t for t in self._tasks if t not in incoming]:
            self._remove(task_id)
        self._drop_orphaned_bindings()
        self._categories = build_categories(self._tasks)
        logger.debug("Snapshot loaded: %d tasks, %d categories", len(self._tasks), len(self._categories))

    async def refresh(self) -> None:
        self.load_snapshot(await self._api.fetch_tasks())

    def _remove(self, task_id: str) -> None:
        del self._tasks[task_id]
        cached = self._outputs.pop(task_id, None)
        if cached is not None and cached.pending is not None:
            cached.pending.cancel()
        for key in [k for k in self._bindings if k[0] == task_id]:
            del self._bindings[key]

    def _drop_orphaned_bindings(self) -> None:
        # an enum source that left the task set has no options
        for binding in self._bindings.values():
            spec = _find_argument(self._tasks.get(binding.task), binding.argument)
            if spec is not None and spec.enum_source is not None and spec.enum_source not in self._tasks:
                binding.value = None

    def reset(self) -> None:
        for fetch in self._background:
            fetch.cancel()
        self._background.clear()
        self._tasks.clear()
        self._categories = {}
        self._outputs.clear()
        self._bindings.clear()

    # ── Events ──

    async def apply_event(self, event: TaskEvent) -> None:
        if isinstance(event, StartedEvent):
            changed = self._on_started(event)
        elif isinstance(event, FinishedEvent):
            changed = self._on_finished(event)
        elif isinstance(event, UpdateConfigEvent):
            await self.refresh()
            changed = True
        elif isinstance(event, ChangeDataEvent):
            changed = self._on_change_data(event)
        elif isinstance(event, (PingEvent, UnknownEvent)):
            changed = False
        else:
            logger.debug("Ignoring event %r", event)
            changed = False
        if changed:
            for listener in self.listeners:
                listener(event)

    def _lookup(self, task_id: str, kind: str) -> TaskRecord | None:
        task = self._tasks.get(task_id)
        if task is None:
            logger.debug("Dropping %s event for unknown task %s", kind, task_id)
        return task

    def _on_started(self, event: StartedEvent) -> bool:
        task = self._lookup(event.task, "started")
        if task is None:
            return False
        task.state = TaskState.RUNNING
        task.argument_values = dict(event.arguments)
        return True

    def _on_finished(self, event: FinishedEvent) -> bool:
        task = self._lookup(event.task, "finished")
        if task is None:
            return False
        task.state = TaskState.FINISHED
        task.exit_code = event.exit_code
        cached = self._outputs.get(event.task)
        if cached is not None and cached.lines is not None and self._has_dependents(event.task):
            self._start_fetch(event.task, cached)
        return True

    def _on_change_data(self, event: ChangeDataEvent) -> bool:
        task = self._lookup(event.task, "change_data")
        if task is None:
            return False
        task.data[event.key] = event.value
        return True

    # ── Enum domains ──

    def _has_dependents(self, source: str) -> bool:
        return any(
            arg.enum_source == source
            for task_id, task in self._tasks.items()
            if task_id != source
            for arg in task.arguments
        )

    async def resolve_arguments(self, task_id: str) -> dict[str, Any]:
        """Bind every argument of ``task_id`` to a value from its domain.

        Enum domains are fetched on first use and shared between tasks. An
        enum source missing from the task set resolves to no options.
        """
        task = self._tasks.get(task_id)
        if task is None:
            return {}
        values: dict[str, Any] = {}
        for arg in task.arguments:
            domain = await self._domain(arg)
            binding = self._bindings.setdefault((task_id, arg.name), ArgumentBinding(task_id, arg.name))
            binding.value = _pick(binding.value, domain)
            values[arg.name] = binding.value
        return values

    async def _domain(self, arg: ArgumentSpec) -> list[str]:
        if arg.enum_source is None:
            return list(arg.options)
        if arg.enum_source not in self._tasks:
            return []
        cached = self._outputs.setdefault(arg.enum_source, CachedOutput())
        if cached.lines is None:
            fetch = cached.pending or self._start_fetch(arg.enum_source, cached)
            try:
                await asyncio.shield(fetch)
            except (ApiError, httpx.HTTPError):
                pass  # logged by _on_fetch_done
            except asyncio.CancelledError:
                if not fetch.cancelled():
                    raise
        return list(cached.lines or [])

    def _start_fetch(self, source: str, cached: CachedOutput) -> asyncio.Task:
        fetch = asyncio.create_task(self._fetch_output(source, cached))
        cached.pending = fetch
        self._background.add(fetch)
        fetch.add_done_callback(functools.partial(self._on_fetch_done, source, cached))
        return fetch

    async def _fetch_output(self, source: str, cached: CachedOutput) -> list[str]:
        lines = await self._api.fetch_output_lines(source)
        # a newer fetch for the same source supersedes this one
        if cached.pending is asyncio.current_task() and self._outputs.get(source) is cached:
            cached.lines = lines
            self._reresolve(source, lines)
        return lines

    def _on_fetch_done(self, source: str, cached: CachedOutput, fetch: asyncio.Task) -> None:
        self._background.discard(fetch)
        if cached.pending is fetch:
            cached.pending = None
        if fetch.cancelled():
            return
        exc = fetch.exception()
        if exc:
            logger.warning("Fetching output of %s failed, keeping last domain: %s", source, exc)

    def _reresolve(self, source: str, lines: list[str]) -> None:
        for binding in self._bindings.values():
            spec = _find_argument(self._tasks.get(binding.task), binding.argument)
            if spec is not None and spec.enum_source == source:
                binding.value = _pick(binding.value, lines)

    async def wait_idle(self) -> None:
        """Wait for in-flight output fetches to settle."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def cancel_pending(self) -> None:
        """Cancel in-flight output fetches and wait until they have unwound."""
        pending = list(self._background)
        for fetch in pending:
            fetch.cancel()
        await asyncio.gather(*pending, return_exceptions=True)


def _find_argument(task: TaskRecord | None, name: str) -> ArgumentSpec | None:
    if task is None:
        return None
    return next((a for a in task.arguments if a.name == name), None)
