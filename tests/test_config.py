"""Tests for environment configuration."""

from datetime import timedelta
from pathlib import Path

import pytest

from wave_orchestrator.config import Config


def test_defaults(monkeypatch):
    for key in ("WV_DB_PATH", "WV_MAX_CONCURRENCY", "WV_WORKER_ID", "SLACK_BOT_TOKEN"):
        monkeypatch.delenv(key, raising=False)
    config = Config.from_env()
    assert config.db_path == Path.home() / ".wave_orchestrator" / "ledger.db"
    assert config.max_concurrency == 3
    assert config.escalate_after == 1
    assert config.stale_after == timedelta(hours=4)
    assert config.worker_id
    assert config.slack_bot_token is None


def test_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("WV_DB_PATH", str(tmp_path / "x.db"))
    monkeypatch.setenv("WV_MAX_CONCURRENCY", "8")
    monkeypatch.setenv("WV_POLL_INTERVAL", "0.1")
    monkeypatch.setenv("WV_STALE_AFTER_HOURS", "0.5")
    monkeypatch.setenv("WV_ESCALATE_AFTER", "2")
    monkeypatch.setenv("WV_WORKER_ID", "ci-runner")
    monkeypatch.setenv("WV_LOG_LEVEL", "debug")
    monkeypatch.setenv("SLACK_BOT_TOKEN", "xoxb-test")
    monkeypatch.setenv("WV_SLACK_CHANNEL", "#ops")

    config = Config.from_env()
    assert config.db_path == tmp_path / "x.db"
    assert config.max_concurrency == 8
    assert config.poll_interval == 0.1
    assert config.stale_after == timedelta(minutes=30)
    assert config.escalate_after == 2
    assert config.worker_id == "ci-runner"
    assert config.log_level == "DEBUG"
    assert config.slack_bot_token == "xoxb-test"
    assert config.slack_channel == "#ops"


def test_rejects_zero_concurrency(monkeypatch):
    monkeypatch.setenv("WV_MAX_CONCURRENCY", "0")
    with pytest.raises(ValueError):
        Config.from_env()
