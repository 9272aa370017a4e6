"""Tests for ExportNotifier and its webhook/SMTP senders."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from export_pipeline.notifications.notifier import ExportNotifier, format_file_size
from export_pipeline.notifications.smtp import SMTPSender, build_email
from export_pipeline.notifications.webhook import WebhookSender, render_event

SCHEDULE = {
    "id": 7,
    "owner_id": "owner-1",
    "name": "Monthly Customers",
    "format": "csv",
    "notifications": {
        "email": {"enabled": True, "recipients": ["a@example.com", "b@example.com"]},
        "webhook": {"enabled": True, "url": "https://hooks.example.com/exports"},
        "in_app": {"enabled": True},
    },
}
COMPLETED_JOB = {
    "export_id": "abc123",
    "status": "completed",
    "total_records": 150,
    "artifact": {"path": "/data/exports/x.csv", "size_bytes": 2048},
    "error": None,
}
FAILED_JOB = {
    "export_id": "def456",
    "status": "failed",
    "artifact": None,
    "error": {"message": "records database unavailable", "code": "QUERY_FAILED"},
}


def _notifier():
    notifier = ExportNotifier(smtp_config={"host": "smtp.example.com", "port": 587})
    notifier._webhook_sender = MagicMock()
    notifier._webhook_sender.send = AsyncMock(return_value=True)
    notifier._smtp_sender = MagicMock()
    notifier._smtp_sender.send = AsyncMock(return_value=True)
    return notifier


class TestMessages:
    @pytest.mark.parametrize(
        "size,expected",
        [(None, "0 bytes"), (0, "0 bytes"), (512, "512 bytes"), (2048, "2 KB"), (1536, "1.5 KB"), (5 * 1024 ** 2, "5 MB")],
    )
    def test_format_file_size(self, size, expected):
        assert format_file_size(size) == expected

    def test_success_message(self):
        subject, body = ExportNotifier.build_message(SCHEDULE, COMPLETED_JOB, "success")
        assert subject == "Scheduled Export Completed"
        assert "Name: Monthly Customers" in body
        assert "Records: 150" in body
        assert "File Size: 2 KB" in body

    def test_custom_subject_and_body(self):
        schedule = {**SCHEDULE, "notifications": {"email": {"subject": "Done!", "body": "Grab it."}}}
        subject, body = ExportNotifier.build_message(schedule, COMPLETED_JOB, "success")
        assert subject == "Done!"
        assert body.startswith("Grab it.")

    def test_failure_message(self):
        subject, body = ExportNotifier.build_message(SCHEDULE, FAILED_JOB, "failure")
        assert subject == "Scheduled Export Failed: Monthly Customers"
        assert "records database unavailable" in body


class TestNotify:
    @pytest.mark.asyncio
    async def test_every_enabled_channel_is_used(self):
        notifier = _notifier()
        await notifier.notify(SCHEDULE, COMPLETED_JOB, "success")

        notifier._webhook_sender.send.assert_awaited_once()
        url, event = notifier._webhook_sender.send.await_args.args
        assert url == "https://hooks.example.com/exports"
        assert event["event_type"] == "scheduled_export_success"
        assert event["status"] == "success"
        assert event["export_id"] == "abc123"

        notifier._smtp_sender.send.assert_awaited_once()
        recipients, subject, _ = notifier._smtp_sender.send.await_args.args
        assert recipients == ["a@example.com", "b@example.com"]
        assert subject == "Scheduled Export Completed"

    @pytest.mark.asyncio
    async def test_no_config_sends_nothing(self):
        notifier = _notifier()
        await notifier.notify({**SCHEDULE, "notifications": {}}, COMPLETED_JOB, "success")
        notifier._webhook_sender.send.assert_not_awaited()
        notifier._smtp_sender.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_channel_errors_are_contained(self):
        notifier = _notifier()
        notifier._webhook_sender.send = AsyncMock(side_effect=RuntimeError("boom"))
        notifier._smtp_sender.send = AsyncMock(side_effect=RuntimeError("smtp down"))

        await notifier.notify(SCHEDULE, FAILED_JOB, "failure")
        notifier._webhook_sender.send.assert_awaited_once()
        notifier._smtp_sender.send.assert_awaited_once()


class TestWebhookSender:
    EVENT = {"subject": "Export done", "body": "Details", "status": "failure", "export_id": "abc123"}

    def test_slack_message_carries_status_colour(self):
        body = render_event("https://hooks.slack.com/services/x", self.EVENT)
        assert body["text"] == "Export done"
        assert body["attachments"][0]["color"] == "#e01e5a"
        assert body["attachments"][0]["text"] == "Details"

    def test_discord_embed(self):
        body = render_event("https://discord.com/api/webhooks/x", {**self.EVENT, "status": "success"})
        assert body["content"] == "Export done"
        assert body["embeds"][0]["color"] == 0x2EB67D

    def test_generic_endpoint_gets_whole_event(self):
        body = render_event("https://example.com/hook", self.EVENT)
        assert body["text"] == "Export done\nDetails"
        assert body["export_id"] == "abc123"

    @pytest.mark.asyncio
    async def test_http_error_returns_false(self):
        sender = WebhookSender()
        request = httpx.Request("POST", "https://example.com/hook")
        response = httpx.Response(500, request=request, text="nope")

        client = MagicMock()
        client.post = AsyncMock(return_value=response)
        client.__aenter__ = AsyncMock(return_value=client)
        client.__aexit__ = AsyncMock(return_value=False)

        with patch("export_pipeline.notifications.webhook.httpx.AsyncClient", return_value=client):
            assert await sender.send("https://example.com/hook", {"subject": "x"}) is False

    @pytest.mark.asyncio
    async def test_connection_error_returns_false(self):
        sender = WebhookSender()
        client = MagicMock()
        client.post = AsyncMock(side_effect=httpx.ConnectError("refused"))
        client.__aenter__ = AsyncMock(return_value=client)
        client.__aexit__ = AsyncMock(return_value=False)

        with patch("export_pipeline.notifications.webhook.httpx.AsyncClient", return_value=client):
            assert await sender.send("https://example.com/hook", {"subject": "x"}) is False


class TestSMTPSender:
    SMTP = {"host": "smtp.example.com", "port": 587, "username": "u", "password": "p", "from_addr": "exports@example.com"}

    def test_build_email_has_text_and_html_parts(self):
        message = build_email("exports@example.com", ["a@example.com", "b@example.com"], "Ready <1>", "Line one\nLine two")
        assert message["To"] == "a@example.com, b@example.com"
        assert message.get_body(("plain",)).get_content().startswith("Line one")
        html_part = message.get_body(("html",)).get_content()
        assert "Line one<br>Line two" in html_part
        assert "Ready &lt;1&gt;" in html_part

    @pytest.mark.asyncio
    async def test_unconfigured_sender_refuses(self):
        assert await SMTPSender({}).send(["a@example.com"], "Subject", "x") is False
        assert await SMTPSender(self.SMTP).send([], "Subject", "x") is False

    @pytest.mark.asyncio
    async def test_send_runs_in_executor(self):
        sender = SMTPSender(self.SMTP)
        with patch.object(SMTPSender, "_send_sync") as send_sync:
            ok = await sender.send(["a@example.com"], "Subject", "hello")
        assert ok is True
        send_sync.assert_called_once()
        config, message, _ = send_sync.call_args.args
        assert config["host"] == "smtp.example.com"
        assert message["From"] == "exports@example.com"

    @pytest.mark.asyncio
    async def test_smtp_failure_returns_false(self):
        sender = SMTPSender(self.SMTP)
        with patch.object(SMTPSender, "_send_sync", side_effect=OSError("connection refused")):
            assert await sender.send(["a@example.com"], "Subject", "hello") is False
