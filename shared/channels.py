"""
Mock notification channels.

These channels simulate delivery by logging the output. In production they
would be backed by providers such as:
- Email: SendGrid, AWS SES
- SMS: Twilio, MSG91
- Push: Firebase Cloud Messaging
- In-app: the notification inbox table read by the app

Design decisions:
- All sends are logged for visibility
- Channels track sent messages for test assertions
- Failures can be simulated randomly (fail_rate) or deterministically (fail_next)
- Channels report failure in the result; retry policy belongs to the dispatcher
"""

import logging
import random
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from shared.models import NotificationChannel

logger = logging.getLogger("notifications")


@dataclass
class NotificationResult:
    """
    Result of a notification send attempt.

    Captures success/failure and metadata for debugging and testing.
    """
    success: bool
    channel: NotificationChannel
    recipient: str
    subject: Optional[str]  # Email subject / push and in-app title
    body: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    error: Optional[str] = None

    def __str__(self) -> str:
        status = "✓" if self.success else "✗"
        label = self.channel.value.upper()
        if self.subject:
            return f"{status} {label} to {self.recipient}: {self.subject}"
        return f"{status} {label} to {self.recipient}: {self.body[:50]}..."


class _MockChannel:
    """Send history and failure simulation shared by every mock channel."""

    channel: NotificationChannel

    def __init__(self, fail_rate: float = 0.0):
        """
        Args:
            fail_rate: Probability of send failure (0.0 to 1.0), for testing.
        """
        self.fail_rate = fail_rate
        self.sent_messages: list[NotificationResult] = []
        self._forced_failures = 0
        self._lock = threading.Lock()

    def fail_next(self, count: int = 1):
        """Make the next ``count`` sends fail regardless of fail_rate."""
        with self._lock:
            self._forced_failures += count

    def _should_fail(self) -> bool:
        with self._lock:
            if self._forced_failures > 0:
                self._forced_failures -= 1
                return True
        return random.random() < self.fail_rate

    def _record(self, recipient: str, subject: Optional[str], body: str) -> NotificationResult:
        label = self.channel.value.upper()
        if self._should_fail():
            result = NotificationResult(
                success=False,
                channel=self.channel,
                recipient=recipient,
                subject=subject,
                body=body,
                error=f"Simulated {self.channel.value} delivery failure",
            )
            logger.error(f"[{label} FAILED] To: {recipient} | Error: {result.error}")
        else:
            result = NotificationResult(
                success=True,
                channel=self.channel,
                recipient=recipient,
                subject=subject,
                body=body,
            )
            logger.info(f"[{label}] To: {recipient} | {subject or body}")
        with self._lock:
            self.sent_messages.append(result)
        return result

    def get_sent_count(self) -> int:
        """Number of send attempts, failed ones included."""
        return len(self.sent_messages)

    def get_successful_sends(self) -> list[NotificationResult]:
        return [m for m in self.sent_messages if m.success]

    def clear_history(self):
        """Clear sent message history (useful between tests)."""
        with self._lock:
            self.sent_messages.clear()

    def find_message_to(self, recipient: str) -> Optional[NotificationResult]:
        """Find the first successful message sent to a recipient."""
        for msg in self.sent_messages:
            if msg.recipient == recipient and msg.success:
                return msg
        return None


class EmailChannel(_MockChannel):
    """Mock email channel."""

    channel = NotificationChannel.EMAIL

    def send(
        self,
        to: str,
        subject: str,
        body: str,
        from_addr: str = "orders@fulfillment.example.com",
    ) -> NotificationResult:
        logger.debug(f"[EMAIL BODY] From: {from_addr} | {body}")
        return self._record(to, subject, body)


class SMSChannel(_MockChannel):
    """
    Mock SMS channel.

    SMS messages are shorter than emails; anything past MAX_LENGTH would be
    split by the provider, so it is logged as a warning.
    """

    channel = NotificationChannel.SMS
    MAX_LENGTH = 160

    def send(self, to: str, message: str) -> NotificationResult:
        if len(message) > self.MAX_LENGTH:
            logger.warning(
                f"[SMS] Message length ({len(message)}) exceeds {self.MAX_LENGTH} chars, "
                "may be split into multiple messages"
            )
        return self._record(to, None, message)


class PushChannel(_MockChannel):
    """Mock push channel. Addressed by user id (device tokens live with the provider)."""

    channel = NotificationChannel.PUSH

    def send(self, user_id: str, title: str, body: str) -> NotificationResult:
        return self._record(user_id, title, body)


class InAppChannel(_MockChannel):
    """Mock in-app inbox."""

    channel = NotificationChannel.IN_APP

    def send(self, user_id: str, title: str, body: str) -> NotificationResult:
        return self._record(user_id, title, body)

    def inbox(self, user_id: str) -> list[NotificationResult]:
        return [m for m in self.sent_messages if m.recipient == user_id and m.success]


class NotificationChannels:
    """
    Facade for all notification channels.

    The dispatcher only talks to this class; it never touches an individual
    channel directly.
    """

    def __init__(
        self,
        email_fail_rate: float = 0.0,
        sms_fail_rate: float = 0.0,
        push_fail_rate: float = 0.0,
        in_app_fail_rate: float = 0.0,
    ):
        self.email = EmailChannel(fail_rate=email_fail_rate)
        self.sms = SMSChannel(fail_rate=sms_fail_rate)
        self.push = PushChannel(fail_rate=push_fail_rate)
        self.in_app = InAppChannel(fail_rate=in_app_fail_rate)

    def get(self, channel: NotificationChannel) -> _MockChannel:
        return {
            NotificationChannel.EMAIL: self.email,
            NotificationChannel.SMS: self.sms,
            NotificationChannel.PUSH: self.push,
            NotificationChannel.IN_APP: self.in_app,
        }[NotificationChannel(channel)]

    def send_email(self, to: str, subject: str, body: str) -> NotificationResult:
        return self.email.send(to, subject, body)

    def send_sms(self, to: str, message: str) -> NotificationResult:
        return self.sms.send(to, message)

    def send_push(self, user_id: str, title: str, body: str) -> NotificationResult:
        return self.push.send(user_id, title, body)

    def store_in_app(self, user_id: str, title: str, body: str) -> NotificationResult:
        return self.in_app.send(user_id, title, body)

    def send(
        self,
        channel: NotificationChannel,
        recipient: str,
        subject: Optional[str],
        body: str,
    ) -> NotificationResult:
        """
        Send via a named channel.

        Args:
            channel: Target channel
            recipient: Email address, phone number, or user id (push/in-app)
            subject: Subject line or title (ignored for SMS)
            body: Message content

        Raises:
            ValueError: If channel is not recognized
        """
        channel = NotificationChannel(channel)
        if channel == NotificationChannel.EMAIL:
            return self.send_email(recipient, subject or "(no subject)", body)
        elif channel == NotificationChannel.SMS:
            return self.send_sms(recipient, body)
        elif channel == NotificationChannel.PUSH:
            return self.send_push(recipient, subject or "", body)
        return self.store_in_app(recipient, subject or "", body)

    def get_all_sent_messages(self) -> list[NotificationResult]:
        return (
            self.in_app.sent_messages
            + self.email.sent_messages
            + self.push.sent_messages
            + self.sms.sent_messages
        )

    def get_total_sent_count(self) -> int:
        return sum(
            ch.get_sent_count() for ch in (self.in_app, self.email, self.push, self.sms)
        )

    def clear_all_history(self):
        for ch in (self.in_app, self.email, self.push, self.sms):
            ch.clear_history()
