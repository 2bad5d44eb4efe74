"""Slack Web API integration."""

from dataclasses import dataclass

from task_conductor.core.events import ALERT_LEVELS, Topic


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
        response = client.chat_postMessage(channel=channel, text=text, blocks=blocks)
    except SlackApiError as e:
        raise SlackError(f"Slack API error: {e.response['error']}") from e

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def format_alert(level: str, message: str, metadata: dict | None = None) -> list[dict]:
    """Format a system alert as Slack blocks."""
    level_emoji = {
        "info": ":information_source:",
        "warning": ":warning:",
        "error": ":x:",
        "critical": ":rotating_light:",
    }
    emoji = level_emoji.get(level, ":grey_question:")
    blocks = [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"{emoji} *{level.upper()}*\n{message}"},
        }
    ]
    if metadata:
        details = " | ".join(f"{k}: `{v}`" for k, v in metadata.items())
        blocks.append({"type": "context", "elements": [{"type": "mrkdwn", "text": details}]})
    return blocks


def format_task_notification(task_id: str, title: str, status: str, spec_id: str | None = None) -> list[dict]:
    """Format a task notification as Slack blocks."""
    status_emoji = {
        "PENDING": ":white_circle:",
        "ASSIGNED": ":large_yellow_circle:",
        "IN_PROGRESS": ":large_blue_circle:",
        "COMPLETED": ":white_check_mark:",
        "FAILED": ":x:",
        "BLOCKED": ":red_circle:",
        "CANCELLED": ":no_entry_sign:",
    }
    emoji = status_emoji.get(status, ":grey_question:")
    spec = f" | Spec: {spec_id}" if spec_id else ""

    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f"{emoji} *Task Update*\n*{title}* (`{task_id}`)\nStatus: *{status}*{spec}",
            },
        }
    ]


class SlackAlertBus:
    """Event bus that posts SYSTEM_ALERT messages at or above ``min_level``,
    and TASK_UPDATE messages whose status is in ``notify_statuses``."""

    def __init__(
        self,
        token: str,
        channel: str,
        min_level: str = "error",
        notify_statuses: tuple[str, ...] = ("COMPLETED", "FAILED"),
    ):
        if min_level not in ALERT_LEVELS:
            raise ValueError(f"Unknown alert level: {min_level}")
        self.token = token
        self.channel = channel
        self.min_level = min_level
        self.notify_statuses = notify_statuses

    def deliver(self, topic: Topic, message: dict):
        if topic == Topic.TASK_UPDATE:
            self._notify_task(message)
            return
        if topic != Topic.SYSTEM_ALERT:
            return
        level = message.get("level", "info")
        if ALERT_LEVELS.get(level, 0) < ALERT_LEVELS[self.min_level]:
            return
        send_message(
            self.token,
            self.channel,
            message.get("message", ""),
            blocks=format_alert(level, message.get("message", ""), message.get("metadata")),
        )

    def _notify_task(self, message: dict):
        status = message.get("status")
        if status not in self.notify_statuses:
            return
        title = message.get("title") or message["task_id"]
        send_message(
            self.token,
            self.channel,
            f"Task {title} {status}",
            blocks=format_task_notification(message["task_id"], title, status, message.get("spec_id")),
        )
