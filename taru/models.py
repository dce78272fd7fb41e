"""TaskRecord, ArgumentSpec, TaskEvent 모델"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)


class TaskState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    FINISHED = "finished"


class ChannelState(str, Enum):
    CONNECTING = "connecting"
    HEALTHY = "healthy"
    CLOSED = "closed"


class TaskMeta(BaseModel):
    model_config = ConfigDict(extra="allow")

    description: str = ""
    category: str = ""
    downloadable: bool = False


class ArgumentSpec(BaseModel):
    name: str
    options: list[str] = Field(default_factory=list)
    enum_source: str | None = None  # task id whose output lines are the domain


class TaskRecord(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    id: str
    meta: TaskMeta = Field(default_factory=TaskMeta)
    can_run: bool = False
    can_view_output: bool = False
    arguments: list[ArgumentSpec] = Field(default_factory=list)
    state: TaskState = TaskState.IDLE
    exit_code: int | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    argument_values: dict[str, Any] = Field(default_factory=dict)

    @field_validator("meta", mode="before")
    @classmethod
    def _null_meta(cls, v: Any) -> Any:
        # server sends `null` for tasks without meta
        return v if v is not None else {}

    @field_validator("state", mode="before")
    @classmethod
    def _server_state(cls, v: Any) -> Any:
        return TaskState.IDLE if v == "new" else v

    @property
    def category(self) -> str:
        return self.meta.category or ""

    @property
    def stopped(self) -> bool:
        """Finished without an exit code: killed or stopped from the dashboard."""
        return self.state == TaskState.FINISHED and self.exit_code is None


# ── Push events ──


class PingEvent(BaseModel):
    pass


class StartedEvent(BaseModel):
    task: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class FinishedEvent(BaseModel):
    task: str
    exit_code: int | None = None


class UpdateConfigEvent(BaseModel):
    pass


class ChangeDataEvent(BaseModel):
    task: str
    key: str
    value: Any = None


class UnknownEvent(BaseModel):
    name: str
    data: str = ""


TaskEvent = Union[PingEvent, StartedEvent, FinishedEvent, UpdateConfigEvent, ChangeDataEvent, UnknownEvent]


def parse_event(name: str, data: str) -> TaskEvent:
    """Build the event variant for one SSE message.

    Known kinds with a malformed payload degrade to UnknownEvent so the
    dispatcher ignores them instead of failing the channel.
    """
    if name == "ping":
        return PingEvent()
    if name == "update_config":
        return UpdateConfigEvent()
    try:
        if name == "started":
            return StartedEvent.model_validate(json.loads(data))
        if name == "finished":
            return FinishedEvent.model_validate(json.loads(data))
        if name == "change_data":
            task, key, value = json.loads(data)
            return ChangeDataEvent(task=task, key=key, value=value)
    except (ValueError, TypeError) as exc:
        logger.warning("Malformed %s event payload %r: %s", name, data[:200], exc)
    return UnknownEvent(name=name, data=data)
