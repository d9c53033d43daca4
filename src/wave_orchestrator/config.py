"""Configuration loading from environment variables."""

import os
import socket
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".wave_orchestrator" / "ledger.db")
    max_concurrency: int = 3
    poll_interval: float = 0.5
    stale_after_hours: float = 4.0
    escalate_after: int = 1
    worker_id: str = field(default_factory=_default_worker_id)
    log_level: str = "WARNING"
    slack_bot_token: str | None = None
    slack_channel: str | None = None

    @property
    def stale_after(self) -> timedelta:
        return timedelta(hours=self.stale_after_hours)

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("WV_DB_PATH"):
            config.db_path = Path(db)

        if cap := os.environ.get("WV_MAX_CONCURRENCY"):
            config.max_concurrency = int(cap)

        if interval := os.environ.get("WV_POLL_INTERVAL"):
            config.poll_interval = float(interval)

        if hours := os.environ.get("WV_STALE_AFTER_HOURS"):
            config.stale_after_hours = float(hours)

        if cycles := os.environ.get("WV_ESCALATE_AFTER"):
            config.escalate_after = int(cycles)

        if worker := os.environ.get("WV_WORKER_ID"):
            config.worker_id = worker

        if level := os.environ.get("WV_LOG_LEVEL"):
            config.log_level = level.upper()

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("WV_SLACK_CHANNEL")

        if config.max_concurrency < 1:
            raise ValueError(f"WV_MAX_CONCURRENCY must be at least 1, got {config.max_concurrency}")

        return config


def get_config() -> Config:
    return Config.from_env()
