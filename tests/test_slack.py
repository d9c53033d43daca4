"""Tests for Slack escalation notifications."""

import pytest

from wave_orchestrator.db.models import Task, TaskStatus
from wave_orchestrator.integrations import slack as slack_mod


class FakeClient:
    def __init__(self):
        self.sent = []

    def chat_postMessage(self, channel, text, blocks=None):
        self.sent.append({"channel": channel, "text": text, "blocks": blocks})
        return {"channel": "C123", "ts": "1700000000.000100"}


def blocked_task():
    return Task(id=4, title="Deploy", status=TaskStatus.BLOCKED, owner="worker-1",
                notes="prod credentials expired", escalated=True)


def test_notifier_disabled_without_settings():
    assert slack_mod.escalation_notifier(None, "#ops") is None
    assert slack_mod.escalation_notifier("xoxb-test", None) is None


def test_notifier_posts_escalation(monkeypatch):
    client = FakeClient()
    monkeypatch.setattr(slack_mod, "get_client", lambda token: client)

    notify = slack_mod.escalation_notifier("xoxb-test", "#ops")
    notify(blocked_task())

    assert len(client.sent) == 1
    message = client.sent[0]
    assert message["channel"] == "#ops"
    assert "Deploy" in message["text"]
    assert "prod credentials expired" in message["blocks"][0]["text"]["text"]


def test_send_without_token():
    with pytest.raises(slack_mod.SlackError):
        slack_mod.send_message(None, "#ops", "hello")


def test_format_escalation_mentions_commands():
    blocks = slack_mod.format_escalation(blocked_task())
    assert "wv blocked unblock 4" in blocks[1]["elements"][0]["text"]
