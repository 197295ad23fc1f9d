"""Outbound transactional email: verification and password-reset links."""

import logging
from typing import Protocol

import httpx

from warden.config import get_settings
from warden.exceptions import EmailDeliveryError

logger = logging.getLogger("warden")

BREVO_API_URL = "https://api.brevo.com/v3/smtp/email"


class EmailSender(Protocol):
    def send_verification_email(self, email: str, name: str, link: str) -> None: ...

    def send_password_reset_email(self, email: str, name: str, link: str) -> None: ...


class ConsoleEmailSender:
    """Development sender: writes links to the log instead of mailing them."""

    def send_verification_email(self, email: str, name: str, link: str) -> None:
        logger.info("EMAIL VERIFICATION for %s: %s", email, link)

    def send_password_reset_email(self, email: str, name: str, link: str) -> None:
        logger.info("PASSWORD RESET for %s: %s", email, link)


class BrevoEmailSender:
    """Sends through the Brevo HTTP API. Any failure raises EmailDeliveryError."""

    def __init__(self, api_key: str, from_address: str, from_name: str, timeout: float = 30.0) -> None:
        self.api_key = api_key
        self.from_address = from_address
        self.from_name = from_name
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key) and bool(self.from_address)

    def send(self, to: str, subject: str, body: str) -> str | None:
        """Send a plain-text message; returns the provider message id."""
        if not self.is_configured:
            raise EmailDeliveryError("Brevo API key or sender address not configured")

        payload = {
            "sender": {"name": self.from_name, "email": self.from_address},
            "to": [{"email": to}],
            "subject": subject,
            "textContent": body,
            "htmlContent": f"<html><body><p>{body.replace(chr(10), '<br>')}</p></body></html>",
        }
        headers = {"accept": "application/json", "api-key": self.api_key, "content-type": "application/json"}

        try:
            response = httpx.post(BREVO_API_URL, json=payload, headers=headers, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise EmailDeliveryError(f"Brevo request failed: {e}") from e

        if response.status_code not in (200, 201):
            raise EmailDeliveryError(f"Brevo API error {response.status_code}: {response.text}")

        message_id = response.json().get("messageId")
        logger.info("Email sent via Brevo to %s (message %s)", to, message_id)
        return message_id

    def send_verification_email(self, email: str, name: str, link: str) -> None:
        self.send(
            email,
            f"Please verify your email address - {self.from_name}",
            f"Hello {name},\n\nPlease confirm your email address by opening this link:\n{link}\n",
        )

    def send_password_reset_email(self, email: str, name: str, link: str) -> None:
        self.send(
            email,
            f"Reset your password - {self.from_name}",
            f"Hello {name},\n\nUse this link to choose a new password. It expires in 1 hour.\n{link}\n",
        )


_email_sender: EmailSender | None = None


def get_email_sender() -> EmailSender:
    """Get singleton email sender for the configured provider."""
    global _email_sender
    if _email_sender is None:
        settings = get_settings()
        if settings.EMAIL_PROVIDER == "brevo":
            _email_sender = BrevoEmailSender(settings.BREVO_API_KEY, settings.EMAIL_FROM_ADDRESS, settings.EMAIL_FROM_NAME)
        else:
            _email_sender = ConsoleEmailSender()
    return _email_sender
