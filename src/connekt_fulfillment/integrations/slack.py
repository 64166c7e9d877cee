"""Slack Web API integration."""

from dataclasses import dataclass
from http.client import HTTPException

from connekt_fulfillment.money import format_amount


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None, timeout: float = 5.0):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token, timeout=int(timeout))


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
    timeout: float = 5.0,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    from slack_sdk.errors import SlackApiError

    client = get_client(token, timeout)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    try:
        response = client.chat_postMessage(
            channel=channel,
            text=text,
            blocks=blocks,
        )
    except SlackApiError as e:
        raise SlackError(f"Slack API error: {e.response.get('error', e)}") from e
    except (OSError, HTTPException) as e:
        raise SlackError(f"Slack unreachable: {e!r}") from e
    except ValueError as e:
        raise SlackError(f"Malformed Slack response: {e}") from e

    try:
        return SlackMessage(channel=response["channel"], ts=response["ts"], text=text)
    except (KeyError, TypeError) as e:
        raise SlackError(f"Malformed Slack response: missing {e}") from e


EVENT_EMOJI = {
    "contract_offered": ":envelope:",
    "contract_accepted": ":handshake:",
    "contract_rejected": ":no_entry_sign:",
    "contract_cancelled": ":wastebasket:",
    "task_assigned": ":large_blue_circle:",
    "proof_submitted": ":eyes:",
    "proof_reviewed": ":memo:",
    "task_paid": ":moneybag:",
    "settlement_failed": ":rotating_light:",
}

STATUS_EMOJI = {
    "todo": ":white_circle:",
    "in-progress": ":large_blue_circle:",
    "pending-validation": ":hourglass_flowing_sand:",
    "done": ":white_check_mark:",
    "paid": ":moneybag:",
}


def format_event_text(recipient_id: str, event_type: str, payload: dict) -> str:
    """One-line fallback text for a notification."""
    subject = payload.get("task_id") or payload.get("contract_id") or payload.get("project_id") or ""
    return f"{event_type.replace('_', ' ')} for {recipient_id}" + (f": {subject}" if subject else "")


def format_event_notification(recipient_id: str, event_type: str, payload: dict) -> list[dict]:
    """Format an engine notification as Slack blocks."""
    emoji = EVENT_EMOJI.get(event_type, ":bell:")
    lines = [f"{emoji} *{event_type.replace('_', ' ').capitalize()}* for <@{recipient_id}>"]
    if payload.get("task_id"):
        lines.append(f"Task: `{payload['task_id']}`")
    if payload.get("contract_id"):
        lines.append(f"Contract: `{payload['contract_id']}`")
    if payload.get("amount") and payload.get("currency"):
        lines.append(f"Amount: *{format_amount(payload['amount'], payload['currency'])}*")
    if payload.get("decision"):
        lines.append(f"Decision: *{payload['decision']}*")
    if payload.get("error"):
        lines.append(f"Error: {payload['error']}")

    return [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": "\n".join(lines)},
        }
    ]


def format_task_notification(task_id: str, title: str, status: str, project: str) -> list[dict]:
    """Format a task notification as Slack blocks."""
    emoji = STATUS_EMOJI.get(status, ":grey_question:")

    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f"{emoji} *Task Update*\n*{title}* (`{task_id}`)\nStatus: *{status}* | Project: {project}",
            },
        }
    ]


def format_reconciliation_report(summary: dict) -> list[dict]:
    """Format a reconciliation sweep summary as Slack blocks."""
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    ":mag: *Reconciliation*\n"
                    f"Repaired: {summary.get('repaired', 0)} | "
                    f"Anomalies: {summary.get('anomalies', 0)} | "
                    f"Balance mismatches: {summary.get('balance_mismatches', 0)} | "
                    f"Expired contracts: {summary.get('expired_contracts', 0)}"
                ),
            },
        }
    ]
