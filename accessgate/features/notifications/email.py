"""
Transactional email (finance PIN reset links).

Uses Resend when RESEND_API_KEY is set. Outside production, a missing key
falls back to an in-memory outbox so local runs and tests can read the
message instead of sending it. Delivery failures are raised, never dropped.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import List, Optional, Protocol

import resend

from accessgate.core.config import settings
from accessgate.core.errors import UpstreamError
from accessgate.core.logging import log_event


class EmailDeliveryError(UpstreamError):
    code = "email_delivery_failed"


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    html: str
    text: str


class EmailSender(Protocol):
    def send(self, message: EmailMessage) -> None:
        ...


class ResendEmailSender:
    def __init__(self, api_key: str, from_email: str):
        self.api_key = api_key
        self.from_email = from_email

    def send(self, message: EmailMessage) -> None:
        resend.api_key = self.api_key
        params = {
            "from": self.from_email,
            "to": [message.to],
            "subject": message.subject,
            "html": message.html,
            "text": message.text,
        }
        try:
            resend.Emails.send(params)
        except Exception as e:
            raise EmailDeliveryError(f"Email delivery failed: {e.__class__.__name__}") from e


class InMemoryEmailSender:
    """Collects messages instead of sending them."""

    def __init__(self):
        self.outbox: List[EmailMessage] = []
        self._lock = threading.Lock()

    def send(self, message: EmailMessage) -> None:
        with self._lock:
            self.outbox.append(message)
        log_event("info", "email.captured", event_type="email.captured", extra={"subject": message.subject})

    def last_to(self, recipient: str) -> Optional[EmailMessage]:
        with self._lock:
            for message in reversed(self.outbox):
                if message.to == recipient:
                    return message
        return None


_dev_sender = InMemoryEmailSender()
_sender_override: Optional[EmailSender] = None


def set_email_sender(sender: Optional[EmailSender]) -> None:
    global _sender_override
    _sender_override = sender


def get_email_sender() -> EmailSender:
    if _sender_override is not None:
        return _sender_override
    if settings.RESEND_API_KEY:
        return ResendEmailSender(settings.RESEND_API_KEY, settings.EMAIL_FROM)
    if (settings.ENV or "").lower() == "production":
        raise EmailDeliveryError("Email delivery is not configured")
    return _dev_sender


def build_pin_reset_email(to_email: str, reset_link: str, ttl_minutes: int) -> EmailMessage:
    subject = "Reset your financial PIN"
    html = f"""
    <p>Hi,</p>
    <p>We received a request to reset the PIN that protects your financial data.</p>
    <p><a href="{reset_link}">Reset my PIN</a></p>
    <p>This link expires in {ttl_minutes} minutes and can be used once.</p>
    <p>If you did not ask for this, you can ignore this email; your current PIN keeps working.</p>
    """
    text = (
        "We received a request to reset the PIN that protects your financial data.\n"
        f"Reset it here: {reset_link}\n"
        f"This link expires in {ttl_minutes} minutes and can be used once.\n"
    )
    return EmailMessage(to=to_email, subject=subject, html=html.strip(), text=text)


def send_pin_reset_email(to_email: str, reset_link: str, ttl_minutes: int, sender: Optional[EmailSender] = None) -> None:
    message = build_pin_reset_email(to_email, reset_link, ttl_minutes)
    (sender or get_email_sender()).send(message)
