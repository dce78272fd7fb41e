"""config.yaml → Pydantic 설정"""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel


_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config.yaml"


class AppConfig(BaseModel):
    base_url: str = "http://localhost:3000"
    api_prefix: str = "/api/v1"
    user: str | None = None  # sent as X-User when the server has users configured
    request_timeout: float = 30.0
    watchdog_interval: float = 1.0  # seconds between channel status polls
    reset_delay: float = 3.0  # wait before rebuilding the session after a hard reset
    log_level: str = "INFO"

    @property
    def api_url(self) -> str:
        return self.base_url.rstrip("/") + self.api_prefix


def load_config(path: Path | None = None) -> AppConfig:
    p = path or Path(os.environ.get("TARU_CONFIG", _CONFIG_PATH))
    if not p.exists():
        return AppConfig()
    with open(p) as f:
        raw = yaml.safe_load(f) or {}
    return AppConfig(**raw)
