"""Notification plugins for Job Warden."""

from __future__ import annotations

import logging
import smtplib
import socket
import ssl
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from email.mime.text import MIMEText
from typing import Optional

import requests

from .config import NotifierConfig, WardenConfig

logger = logging.getLogger("job-warden")


class NotificationEvent:
    """Represents a notification event."""

    ERROR = "error"
    NONZERO_EXIT = "nonzero exit"

    def __init__(
        self,
        kind: str,
        job_name: str,
        pid: Optional[int] = None,
        body: Optional[str] = None,
        hostname: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ):
        self.kind = kind
        self.job_name = job_name
        self.pid = pid
        self.body = body
        self.hostname = hostname or socket.gethostname()
        self.timestamp = timestamp or datetime.now()

    @property
    def subject(self) -> str:
        return f"Job Warden | Process {self.kind} ({self.job_name})"

    @property
    def text(self) -> str:
        text = f"Hostname: {self.hostname}\nProcess: {self.job_name}\nPID: {self.pid}"
        if self.body:
            text += f"\n\n{self.body}"
        return text

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "kind": self.kind,
            "job_name": self.job_name,
            "pid": self.pid,
            "hostname": self.hostname,
            "body": self.body,
            "timestamp": self.timestamp.isoformat(),
        }


class BaseNotifier(ABC):
    """Base class for notification plugins."""

    def __init__(self, config: NotifierConfig):
        self.config = config

    @abstractmethod
    def send(self, event: NotificationEvent) -> tuple[bool, str]:
        """Send notification. Returns (success, message)."""
        pass


class EmailNotifier(BaseNotifier):
    """Email notification plugin."""

    def send(self, event: NotificationEvent) -> tuple[bool, str]:
        if not self.config.from_addr or not self.config.to_addrs:
            return False, "Email from_addr and to_addrs required"

        msg = MIMEText(event.text, "plain")
        msg["Subject"] = event.subject
        msg["From"] = self.config.from_addr
        msg["To"] = ", ".join(self.config.to_addrs)

        try:
            with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=30) as server:
                if self.config.starttls:
                    server.starttls(context=ssl.create_default_context())
                if self.config.smtp_user and self.config.smtp_password:
                    server.login(self.config.smtp_user, self.config.smtp_password)
                server.sendmail(self.config.from_addr, self.config.to_addrs, msg.as_string())
            return True, f"Message sent to {', '.join(self.config.to_addrs)}"
        except (smtplib.SMTPException, OSError) as e:
            return False, f"Failed to send mail to {', '.join(self.config.to_addrs)}: {e}"


class SlackNotifier(BaseNotifier):
    """Slack notification plugin."""

    def send(self, event: NotificationEvent) -> tuple[bool, str]:
        if not self.config.webhook_url:
            return False, "Slack webhook_url required"

        payload = {
            "attachments": [
                {
                    "color": "danger",
                    "title": event.subject,
                    "text": event.text,
                    "fields": [
                        {"title": "Kind", "value": event.kind, "short": True},
                        {
                            "title": "Time",
                            "value": event.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
                            "short": True,
                        },
                    ],
                    "footer": "Job Warden",
                }
            ]
        }
        if self.config.channel:
            payload["channel"] = self.config.channel

        try:
            response = requests.post(self.config.webhook_url, json=payload, timeout=30)
            response.raise_for_status()
            return True, "Slack notification sent"
        except requests.RequestException as e:
            return False, f"Slack error: {e}"


class WebhookNotifier(BaseNotifier):
    """Generic webhook notification plugin."""

    def send(self, event: NotificationEvent) -> tuple[bool, str]:
        if not self.config.url:
            return False, "Webhook url required"

        try:
            response = requests.request(
                method=self.config.method,
                url=self.config.url,
                json=event.to_dict(),
                headers=self.config.headers,
                timeout=30,
            )
            response.raise_for_status()
            return True, f"Webhook notification sent ({response.status_code})"
        except requests.RequestException as e:
            return False, f"Webhook error: {e}"


class NotifierFactory:
    """Factory for creating notifier instances."""

    _notifiers = {
        "email": EmailNotifier,
        "slack": SlackNotifier,
        "webhook": WebhookNotifier,
    }

    @classmethod
    def create(cls, config: NotifierConfig) -> BaseNotifier:
        """Create a notifier instance from config."""
        notifier_class = cls._notifiers.get(config.type.lower())
        if not notifier_class:
            raise ValueError(f"Unknown notifier type: {config.type}")
        return notifier_class(config)

    @classmethod
    def register(cls, name: str, notifier_class: type):
        """Register a custom notifier type."""
        cls._notifiers[name.lower()] = notifier_class


class NotificationSink:
    """Fire-and-forget delivery of job alerts to every configured notifier."""

    def __init__(self, notifiers: Optional[list[BaseNotifier]] = None, max_workers: int = 2):
        self.notifiers: list[BaseNotifier] = list(notifiers or [])
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")

    @classmethod
    def from_config(cls, config: WardenConfig) -> "NotificationSink":
        sink = cls()
        sink.configure(config)
        return sink

    def configure(self, config: WardenConfig):
        """Replace the notifiers with those described by `config`."""
        notifiers = []
        for notif_config in config.notifiers:
            if not notif_config.enabled:
                continue
            try:
                notifiers.append(NotifierFactory.create(notif_config))
            except ValueError as e:
                logger.warning(f"Failed to create notifier: {e}")
        self.notifiers = notifiers

    def notify(self, kind: str, job_name: str, pid: Optional[int] = None, body: Optional[str] = None) -> Optional[Future]:
        """Queue an alert for delivery and return immediately."""
        if not self.notifiers:
            return None
        event = NotificationEvent(kind=kind, job_name=job_name, pid=pid, body=body)
        return self._executor.submit(self.deliver, event)

    def deliver(self, event: NotificationEvent):
        """Send `event` through every notifier; failures are only logged."""
        for notifier in self.notifiers:
            try:
                success, message = notifier.send(event)
                if success:
                    logger.info(f"Notification sent via {notifier.config.type}: {message}")
                else:
                    logger.warning(f"Notification failed via {notifier.config.type}: {message}")
            except Exception as e:
                logger.error(f"Notification error ({notifier.config.type}): {e}")

    def close(self):
        """Wait for queued notifications and release the worker threads."""
        self._executor.shutdown(wait=True)
