"""Monitor session tests (mock API + in-memory channel)"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from taru.config import AppConfig
from taru.main import describe_event
from taru.models import ChannelState, FinishedEvent, StartedEvent, TaskState, UpdateConfigEvent
from taru.session import MonitorSession
from tests.fakes import FakeFactory

SNAPSHOT = {
    "build": {"name": "build", "meta": {"category": "ci"}, "state": "new"},
    "lint": {"name": "lint", "meta": {"category": "ci"}, "state": "finished", "exit_code": 0},
}


@pytest.fixture
async def setup():
    api = AsyncMock()
    api.fetch_tasks.return_value = SNAPSHOT
    factory = FakeFactory()
    session = MonitorSession(AppConfig(watchdog_interval=0.01, reset_delay=0), api, open_channel=factory)
    await session.start()
    yield session, api, factory
    await session.stop()


async def test_start_loads_snapshot(setup):
    session, api, factory = setup
    view = session.reconciler.current_state()
    assert set(view.tasks) == {"build", "lint"}
    assert dict(view.categories) == {"ci": ["build", "lint"]}
    assert session.monitor.state == ChannelState.CONNECTING
    assert len(factory.channels) == 1


async def test_events_reach_reconciler(setup):
    session, _, factory = setup
    channel = factory.channels[0]
    await channel.send("ping")
    await channel.send("started", json.dumps({"task": "build", "arguments": {}}))
    assert session.reconciler.get("build").state == TaskState.RUNNING

    await channel.send("change_data", json.dumps(["build", "progress", 40]))
    assert session.reconciler.get("build").data == {"progress": 40}


async def test_reconnect_resyncs_snapshot(setup):
    session, api, factory = setup
    build = session.reconciler.get("build")
    await factory.channels[0].send("ping")
    factory.channels[0].fail()

    api.fetch_tasks.return_value = {"build": {"name": "build", "meta": {"category": "ci"}, "state": "running"}}
    await factory.channels[1].send("ping")

    assert api.fetch_tasks.await_count == 2
    assert session.reconciler.get("build") is build
    assert build.state == TaskState.RUNNING
    assert session.reconciler.get("lint") is None
    assert session.resets == 0


async def test_failure_before_heartbeat_rebuilds_session(setup):
    session, api, factory = setup
    first_monitor = session.monitor
    factory.channels[0].fail()
    await session._reset_task

    assert session.resets == 1
    assert session.monitor is not first_monitor
    assert first_monitor.state == ChannelState.CLOSED
    assert api.fetch_tasks.await_count == 2
    assert len(factory.channels) == 2
    assert set(session.reconciler.current_state().tasks) == {"build", "lint"}


async def test_describe_event(setup):
    session, _, _ = setup
    r = session.reconciler
    assert describe_event(FinishedEvent(task="build", exit_code=None), r) == "build stopped"
    assert describe_event(FinishedEvent(task="build", exit_code=3), r) == "build finished (exit=3)"
    assert describe_event(StartedEvent(task="build", arguments={"n": 1}), r) == "build started n=1"
    assert describe_event(UpdateConfigEvent(), r) == "config reloaded: 2 tasks in 1 categories"


async def test_stop_cancels_inflight_refetch():
    api = AsyncMock()
    api.fetch_tasks.return_value = {
        "hosts": {"name": "hosts", "state": "new"},
        "deploy": {"name": "deploy", "state": "new", "arguments": [{"name": "host", "enum_source": "hosts"}]},
    }

    async def lines(task_id):
        if api.fetch_output_lines.await_count > 1:
            await asyncio.Event().wait()
        return ["web1"]

    api.fetch_output_lines.side_effect = lines
    session = MonitorSession(AppConfig(watchdog_interval=0.01), api, open_channel=FakeFactory())
    await session.start()
    await session.reconciler.resolve_arguments("deploy")
    await session.reconciler.apply_event(FinishedEvent(task="hosts", exit_code=0))
    await asyncio.sleep(0)

    await asyncio.wait_for(session.stop(), 1)
    assert session.monitor.state == ChannelState.CLOSED
