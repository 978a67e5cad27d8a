"""
Operator notifications for rollout events.

SlackNotifier posts Block Kit messages to a Slack incoming webhook using the
WebhookClient from slack-sdk:
- rollback and failure alerts (`send_alert`)
- completion notices (`send_completion`)

The webhook call is blocking, so it runs in a worker thread. Delivery failures
(non-200 responses and exceptions) are logged and never raised: a Slack outage
must not hold up the Rollout Controller.

LoggingNotifier is used when SLACK_WEBHOOK_URL is not configured.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from slack_sdk.webhook import WebhookClient

from flag_rollout.services.ports import NotificationPort


logger = logging.getLogger(__name__)

SERVICE_NAME = "Flag Rollout"


# =============================================================================
# Message Formatting
# =============================================================================


def format_notification_blocks(title: str, message: str) -> List[Dict[str, Any]]:
    """
    Build Slack Block Kit blocks for one notification.

    Args:
        title: Header line, shown as plain text.
        message: Body, rendered as mrkdwn.

    Returns:
        List of Block Kit blocks: header, section, context footer.
    """
    timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
    return [
        {
            "type": "header",
            "text": {
                "type": "plain_text",
                "text": title,
                "emoji": True,
            },
        },
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": message,
            },
        },
        {
            "type": "context",
            "elements": [
                {
                    "type": "mrkdwn",
                    "text": f"{SERVICE_NAME} | {timestamp}",
                }
            ],
        },
    ]


# =============================================================================
# Notifiers
# =============================================================================


class SlackNotifier(NotificationPort):
    """NotificationPort backed by a Slack incoming webhook."""

    def __init__(self, webhook_url: str) -> None:
        if not webhook_url:
            raise ValueError("webhook_url is required")
        self._client = WebhookClient(webhook_url)

    async def send_alert(self, message: str) -> None:
        await self._send(":rotating_light: Rollout alert", message)

    async def send_completion(self, message: str) -> None:
        await self._send(":white_check_mark: Rollout completed", message)

    async def _send(self, title: str, message: str) -> bool:
        blocks = format_notification_blocks(title, message)
        try:
            response = await asyncio.to_thread(self._client.send, text=message, blocks=blocks)
        except Exception as e:
            logger.error(f"Failed to send Slack notification: {e}")
            return False

        if response.status_code != 200:
            logger.error(f"Slack webhook returned status {response.status_code}: {response.body}")
            return False

        logger.info(f"Sent Slack notification: {title}")
        return True


class LoggingNotifier(NotificationPort):
    """Writes notifications to the log only."""

    async def send_alert(self, message: str) -> None:
        logger.warning(f"ALERT: {message}")

    async def send_completion(self, message: str) -> None:
        logger.info(f"COMPLETED: {message}")
