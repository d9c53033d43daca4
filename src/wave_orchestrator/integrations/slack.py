"""Slack Web API integration for escalations."""

import logging
from collections.abc import Callable
from dataclasses import dataclass

from wave_orchestrator.db.models import Task

logger = logging.getLogger(__name__)


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    from slack_sdk.errors import SlackApiError

    try:
        response = client.chat_postMessage(
            channel=channel,
            text=text,
            blocks=blocks,
        )
    except SlackApiError as e:
        raise SlackError(f"Slack API error: {e.response['error']}") from e

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def format_escalation(task: Task) -> list[dict]:
    """Format a blocked-task escalation as Slack blocks."""
    notes = task.notes.strip() or "(no notes recorded)"
    owner = f" | Last owner: `{task.owner}`" if task.owner else ""
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f":rotating_light: *Blocked task needs attention*\n"
                    f"*{task.title}* (`#{task.id}`){owner}\n"
                    f"Blocker:\n>{notes}"
                ),
            },
        },
        {
            "type": "context",
            "elements": [
                {
                    "type": "mrkdwn",
                    "text": f"Unblock with `wv blocked unblock {task.id}` or cancel with `wv blocked cancel {task.id}`",
                }
            ],
        },
    ]


def escalation_notifier(token: str | None, channel: str | None) -> Callable[[Task], None] | None:
    """Build an ``on_escalate`` hook, or None when Slack is not configured."""
    if not token or not channel:
        return None

    def notify(task: Task):
        send_message(token, channel, f"Blocked task escalated: {task.title}", format_escalation(task))
        logger.info("Escalation for task %s sent to %s", task.id, channel)

    return notify
