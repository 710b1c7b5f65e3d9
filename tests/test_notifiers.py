"""Tests for notification plugins."""

import logging
import smtplib
from datetime import datetime
from unittest.mock import MagicMock, patch

import requests

from job_warden.config import NotifierConfig, WardenConfig
from job_warden.notifiers import (
    BaseNotifier,
    EmailNotifier,
    NotificationEvent,
    NotificationSink,
    NotifierFactory,
    SlackNotifier,
    WebhookNotifier,
)


def make_event(**kwargs):
    defaults = dict(
        kind=NotificationEvent.NONZERO_EXIT,
        job_name="backup",
        pid=4242,
        body="Process finished with code 1",
        hostname="web-1",
        timestamp=datetime(2024, 1, 15, 10, 30, 0),
    )
    defaults.update(kwargs)
    return NotificationEvent(**defaults)


class TestNotificationEvent:
    """Test NotificationEvent class."""

    def test_subject(self):
        assert make_event().subject == "Job Warden | Process nonzero exit (backup)"

    def test_text(self):
        text = make_event().text
        assert text.startswith("Hostname: web-1\nProcess: backup\nPID: 4242")
        assert text.endswith("\n\nProcess finished with code 1")

    def test_text_without_body(self):
        assert make_event(body=None).text == "Hostname: web-1\nProcess: backup\nPID: 4242"

    def test_to_dict(self):
        data = make_event(kind=NotificationEvent.ERROR).to_dict()

        assert data["kind"] == "error"
        assert data["job_name"] == "backup"
        assert data["pid"] == 4242
        assert "2024-01-15" in data["timestamp"]


class TestEmailNotifier:
    """Test email notification plugin."""

    def test_requires_addresses(self):
        notifier = EmailNotifier(NotifierConfig(type="email"))
        success, message = notifier.send(make_event())

        assert success is False
        assert "required" in message

    @patch("job_warden.notifiers.smtplib.SMTP")
    def test_send(self, mock_smtp):
        server = mock_smtp.return_value.__enter__.return_value
        config = NotifierConfig(
            type="email",
            smtp_host="mail.local",
            from_addr="warden@example.com",
            to_addrs=["ops@example.com"],
        )

        success, message = EmailNotifier(config).send(make_event())

        assert success is True
        mock_smtp.assert_called_once_with("mail.local", 25, timeout=30)
        from_addr, to_addrs, body = server.sendmail.call_args.args
        assert from_addr == "warden@example.com"
        assert to_addrs == ["ops@example.com"]
        assert "Job Warden | Process nonzero exit (backup)" in body
        server.starttls.assert_not_called()

    @patch("job_warden.notifiers.smtplib.SMTP")
    def test_send_failure(self, mock_smtp):
        mock_smtp.side_effect = smtplib.SMTPConnectError(421, "busy")
        config = NotifierConfig(type="email", from_addr="a@example.com", to_addrs=["b@example.com"])

        success, message = EmailNotifier(config).send(make_event())

        assert success is False
        assert "Failed to send mail" in message


class TestSlackNotifier:
    """Test Slack notification plugin."""

    def test_requires_webhook(self):
        success, _ = SlackNotifier(NotifierConfig(type="slack")).send(make_event())
        assert success is False

    @patch("job_warden.notifiers.requests.post")
    def test_send(self, mock_post):
        mock_post.return_value = MagicMock(status_code=200)
        config = NotifierConfig(type="slack", webhook_url="https://hooks.slack.com/x", channel="#ops")

        success, _ = SlackNotifier(config).send(make_event())

        assert success is True
        payload = mock_post.call_args.kwargs["json"]
        assert payload["channel"] == "#ops"
        assert payload["attachments"][0]["title"] == "Job Warden | Process nonzero exit (backup)"


class TestWebhookNotifier:
    """Test generic webhook plugin."""

    @patch("job_warden.notifiers.requests.request")
    def test_send(self, mock_request):
        mock_request.return_value = MagicMock(status_code=204)
        config = NotifierConfig(type="webhook", url="https://example.com/hook", method="PUT")

        success, message = WebhookNotifier(config).send(make_event())

        assert success is True
        assert "204" in message
        assert mock_request.call_args.kwargs["method"] == "PUT"
        assert mock_request.call_args.kwargs["json"]["job_name"] == "backup"

    @patch("job_warden.notifiers.requests.request")
    def test_send_failure(self, mock_request):
        mock_request.side_effect = requests.ConnectionError("refused")
        config = NotifierConfig(type="webhook", url="https://example.com/hook")

        success, message = WebhookNotifier(config).send(make_event())

        assert success is False
        assert "refused" in message


class TestNotifierFactory:
    """Test notifier factory."""

    def test_create(self):
        assert isinstance(NotifierFactory.create(NotifierConfig(type="Email")), EmailNotifier)
        assert isinstance(NotifierFactory.create(NotifierConfig(type="webhook")), WebhookNotifier)

    def test_unknown(self):
        try:
            NotifierFactory.create(NotifierConfig(type="pager"))
        except ValueError as e:
            assert "pager" in str(e)
        else:
            raise AssertionError("expected ValueError")


class RaisingNotifier(BaseNotifier):
    def send(self, event):
        raise RuntimeError("transport exploded")


class RecordingNotifier(BaseNotifier):
    def __init__(self, config):
        super().__init__(config)
        self.events = []

    def send(self, event):
        self.events.append(event)
        return True, "recorded"


class TestNotificationSink:
    """Test fire-and-forget delivery."""

    def test_configure_skips_disabled_and_unknown(self):
        config = WardenConfig.from_dict(
            {
                "notifiers": [
                    {"type": "webhook", "url": "https://example.com"},
                    {"type": "slack", "enabled": False},
                    {"type": "pager"},
                ]
            }
        )
        sink = NotificationSink.from_config(config)

        assert [type(n) for n in sink.notifiers] == [WebhookNotifier]
        sink.close()

    def test_notify_delivers_in_background(self):
        recorder = RecordingNotifier(NotifierConfig(type="record"))
        sink = NotificationSink([recorder])

        future = sink.notify(NotificationEvent.ERROR, "backup", 12, "boom")
        future.result(timeout=5)
        sink.close()

        event = recorder.events[0]
        assert (event.kind, event.job_name, event.pid, event.body) == ("error", "backup", 12, "boom")

    def test_notify_without_notifiers(self):
        sink = NotificationSink()
        assert sink.notify(NotificationEvent.ERROR, "backup") is None
        sink.close()

    def test_delivery_errors_are_logged(self, caplog):
        """A failing transport never propagates."""
        caplog.set_level(logging.INFO, logger="job-warden")
        recorder = RecordingNotifier(NotifierConfig(type="record"))
        sink = NotificationSink([RaisingNotifier(NotifierConfig(type="broken")), recorder])

        sink.deliver(make_event())
        sink.close()

        assert "transport exploded" in caplog.text
        assert len(recorder.events) == 1
