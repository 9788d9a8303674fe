"""Slack Web API notifications."""

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

STATUS_EMOJI = {
    "assigned": ":white_circle:",
    "in-progress": ":large_blue_circle:",
    "in-review": ":eyes:",
    "dev-complete": ":large_green_circle:",
    "merge-review": ":mag:",
    "stage-ready": ":package:",
    "merged": ":white_check_mark:",
}


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
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    from slack_sdk.errors import SlackApiError

    try:
        response = client.chat_postMessage(channel=channel, text=text, blocks=blocks)
    except SlackApiError as e:
        raise SlackError(f"Slack API error: {e.response.get('error', e)}") from e

    return SlackMessage(channel=response["channel"], ts=response["ts"], text=text)


def format_assignment_notification(issue_number: int, title: str, status: str,
                                   instance_id: str | None = None) -> list[dict]:
    emoji = STATUS_EMOJI.get(status, ":grey_question:")
    instance = f" | Instance: `{instance_id}`" if instance_id else ""
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f"{emoji} *Issue #{issue_number}*\n*{title}*\nStatus: *{status}*{instance}",
            },
        }
    ]


def format_batch_report(outcomes: list[tuple[int, str, str]]) -> list[dict]:
    """Blocks for a pipeline batch; outcomes are (issue, outcome, detail)."""
    emoji = {"merged": ":white_check_mark:", "stage-ready": ":package:", "rejected": ":x:"}
    lines = [
        f"{emoji.get(outcome, ':grey_question:')} #{issue}: *{outcome}*" + (f" ({detail})" if detail else "")
        for issue, outcome, detail in outcomes
    ]
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": ":gear: *Merge pipeline batch*\n" + ("\n".join(lines) or "Nothing to merge"),
            },
        }
    ]


class SlackNotifier:
    """Best-effort notifier. Does nothing unless both token and channel are set."""

    def __init__(self, token: str | None, channel: str | None):
        self.token = token
        self.channel = channel

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.channel)

    def notify(self, text: str, blocks: list[dict] | None = None) -> SlackMessage | None:
        if not self.enabled:
            return None
        try:
            return send_message(self.token, self.channel, text, blocks)
        except SlackError as e:
            logger.warning("Slack notification failed: %s", e)
            return None
