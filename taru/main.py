"""CLI 진입점: 모니터 세션 실행 / 태스크 출력 스트리밍"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from taru.api.client import TaskApiClient
from taru.config import AppConfig, load_config
from taru.models import ChangeDataEvent, FinishedEvent, StartedEvent, TaskEvent, UpdateConfigEvent
from taru.output import OutputSession
from taru.reconciler import TaskStateReconciler
from taru.render import render_ansi
from taru.session import MonitorSession

logger = logging.getLogger("taru")


def describe_event(event: TaskEvent, reconciler: TaskStateReconciler) -> str:
    if isinstance(event, StartedEvent):
        args = " ".join(f"{k}={v}" for k, v in event.arguments.items())
        return f"{event.task} started {args}".rstrip()
    if isinstance(event, FinishedEvent):
        if event.exit_code is None:
            return f"{event.task} stopped"
        return f"{event.task} finished (exit={event.exit_code})"
    if isinstance(event, ChangeDataEvent):
        return f"{event.task} data {event.key}={event.value!r}"
    if isinstance(event, UpdateConfigEvent):
        view = reconciler.current_state()
        return f"config reloaded: {len(view.tasks)} tasks in {len(view.categories)} categories"
    return type(event).__name__


async def watch(config: AppConfig) -> None:
    async with TaskApiClient(config) as api:
        session = MonitorSession(config, api)
        session.reconciler.listeners.append(lambda e: logger.info(describe_event(e, session.reconciler)))
        await session.start()
        for category, task_ids in session.reconciler.current_state().categories.items():
            logger.info("[%s] %s", category or "-", ", ".join(task_ids))
        try:
            await asyncio.Event().wait()
        finally:
            await session.stop()


async def stream_output(config: AppConfig, task_id: str) -> None:
    async with TaskApiClient(config) as api:
        output = OutputSession(api, task_id)
        async for seg in output.segments():
            sys.stdout.write(render_ansi([seg]))
            sys.stdout.flush()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="taru-monitor", description="Live monitor for a taru task server")
    parser.add_argument("--config", type=Path, default=None, help="path to config.yaml")
    parser.add_argument("--output", metavar="TASK", default=None, help="stream the output of TASK and exit")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    logging.basicConfig(level=config.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logger.info("Connecting to %s", config.api_url)

    try:
        if args.output:
            asyncio.run(stream_output(config, args.output))
        else:
            asyncio.run(watch(config))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
