"""
Tests for operator notifications.

WebhookClient is patched in every test; no request leaves the process.
"""

import logging
from unittest.mock import Mock, patch

import pytest

from flag_rollout.jobs.notifications import (
    LoggingNotifier,
    SlackNotifier,
    format_notification_blocks,
)


pytestmark = pytest.mark.asyncio

WEBHOOK_URL = "https://hooks.slack.com/services/T000/B000/XXXX"


class TestFormatNotificationBlocks:

    async def test_blocks_layout(self) -> None:
        blocks = format_notification_blocks("Rollout alert", "*express* rolled back")

        assert [b["type"] for b in blocks] == ["header", "section", "context"]
        assert blocks[0]["text"]["text"] == "Rollout alert"
        assert blocks[1]["text"] == {"type": "mrkdwn", "text": "*express* rolled back"}
        assert blocks[2]["elements"][0]["text"].startswith("Flag Rollout | ")


class TestSlackNotifier:

    async def test_requires_webhook_url(self) -> None:
        with pytest.raises(ValueError):
            SlackNotifier("")

    async def test_send_alert_posts_blocks(self) -> None:
        with patch('flag_rollout.jobs.notifications.WebhookClient') as client_cls:
            client = client_cls.return_value
            client.send.return_value = Mock(status_code=200, body="ok")

            notifier = SlackNotifier(WEBHOOK_URL)
            await notifier.send_alert("rollout_x rolled back")

        client_cls.assert_called_once_with(WEBHOOK_URL)
        kwargs = client.send.call_args.kwargs
        assert kwargs["text"] == "rollout_x rolled back"
        assert "alert" in kwargs["blocks"][0]["text"]["text"]

    async def test_send_completion(self) -> None:
        with patch('flag_rollout.jobs.notifications.WebhookClient') as client_cls:
            client = client_cls.return_value
            client.send.return_value = Mock(status_code=200, body="ok")

            await SlackNotifier(WEBHOOK_URL).send_completion("rollout_x done")

        assert "completed" in client.send.call_args.kwargs["blocks"][0]["text"]["text"]

    async def test_non_200_is_logged_not_raised(self, caplog) -> None:
        with patch('flag_rollout.jobs.notifications.WebhookClient') as client_cls:
            client_cls.return_value.send.return_value = Mock(status_code=500, body="invalid_payload")

            with caplog.at_level(logging.ERROR):
                await SlackNotifier(WEBHOOK_URL).send_alert("boom")

        assert "status 500" in caplog.text

    async def test_exception_is_logged_not_raised(self, caplog) -> None:
        with patch('flag_rollout.jobs.notifications.WebhookClient') as client_cls:
            client_cls.return_value.send.side_effect = ConnectionError("no route")

            with caplog.at_level(logging.ERROR):
                await SlackNotifier(WEBHOOK_URL).send_alert("boom")

        assert "no route" in caplog.text


class TestLoggingNotifier:

    async def test_alert_logged_as_warning(self, caplog) -> None:
        with caplog.at_level(logging.INFO):
            await LoggingNotifier().send_alert("rolled back")
            await LoggingNotifier().send_completion("done")

        levels = {r.getMessage(): r.levelno for r in caplog.records}
        assert levels["ALERT: rolled back"] == logging.WARNING
        assert levels["COMPLETED: done"] == logging.INFO
