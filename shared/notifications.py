"""
notifications.py - Notification Channels

A notification channel is anything with send(recipient, subject, body) -> bool.
Which implementation a process uses is decided once, at start-up, by
build_notification_sender(); callers never switch channels per call.

CHANNELS:
    - "smtp": SmtpNotificationSender, plain-text email through an SMTP relay
              (Mailpit/Mailhog in development)
    - "mock": MockNotificationSender, keeps messages in memory for tests and
              local runs
"""

import logging
import smtplib
import threading
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Protocol

logger = logging.getLogger(__name__)


class NotificationSender(Protocol):
    def send(self, recipient: str, subject: str, body: str) -> bool: ...


class SmtpNotificationSender:
    """Email sender over SMTP (no authentication, as with Mailpit)."""

    def __init__(self, smtp_host: str, smtp_port: int, from_address: str = "noreply@fulfillment.local", timeout: float = 10.0):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.from_address = from_address
        self.timeout = timeout

    def send(self, recipient: str, subject: str, body: str) -> bool:
        """Send one email. Returns False instead of raising on SMTP errors."""
        try:
            msg = MIMEMultipart()
            msg["From"] = self.from_address
            msg["To"] = recipient
            msg["Subject"] = subject

            msg.attach(MIMEText(body, "plain"))

            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.send_message(msg)

            logger.info(f"Email sent to {recipient}: {subject}")
            return True

        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Error sending email to {recipient}: {e}")
            return False


@dataclass(frozen=True)
class SentNotification:
    recipient: str
    subject: str
    body: str


class MockNotificationSender:
    """Records notifications instead of delivering them."""

    def __init__(self):
        self._sent: List[SentNotification] = []
        self._lock = threading.Lock()

    def send(self, recipient: str, subject: str, body: str) -> bool:
        logger.info(f"MOCK: would send notification to {recipient} - Subject: {subject}")
        with self._lock:
            self._sent.append(SentNotification(recipient, subject, body))
        return True

    @property
    def sent(self) -> List[SentNotification]:
        with self._lock:
            return list(self._sent)

    def clear(self) -> None:
        with self._lock:
            self._sent.clear()


def build_notification_sender(channel: str, smtp_host: str = "localhost", smtp_port: int = 1025,
                              from_address: str = "noreply@fulfillment.local") -> NotificationSender:
    """Pick the process-wide notification channel from configuration."""
    if channel == "smtp":
        return SmtpNotificationSender(smtp_host, smtp_port, from_address)
    if channel == "mock":
        return MockNotificationSender()
    raise ValueError(f"Unknown notification channel: {channel!r}")
