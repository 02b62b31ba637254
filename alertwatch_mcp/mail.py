"""Email composition and SMTP delivery."""

import logging
import smtplib
from email.message import EmailMessage
from email.utils import parseaddr
from typing import Iterable

from .config import DEFAULT_EMAIL_SENDER, DEFAULT_SMTP_HOST, DEFAULT_SMTP_PORT, SMTP_TIMEOUT

logger = logging.getLogger(__name__)


class EmailCompositionError(Exception):
    """Raised when an email cannot be composed from the given fields."""

    pass


def compose_email(
    recipients: list[str],
    subject: str,
    html_body: str,
    sender: str = DEFAULT_EMAIL_SENDER,
) -> EmailMessage:
    """Compose an HTML email.

    Args:
        recipients: Destination addresses
        subject: Subject line
        html_body: HTML body
        sender: From address

    Returns:
        EmailMessage ready to send

    Raises:
        EmailCompositionError: If there are no recipients, an address is
            invalid, or a header cannot be encoded
    """
    if not recipients:
        raise EmailCompositionError("No recipients")

    for recipient in recipients:
        _, address = parseaddr(recipient)
        if not address or "@" not in address:
            raise EmailCompositionError(f"Invalid recipient address: {recipient!r}")

    message = EmailMessage()
    try:
        message["From"] = sender
        message["To"] = ", ".join(recipients)
        message["Subject"] = subject
        message.set_content(html_body, subtype="html")
    except (ValueError, TypeError) as e:
        raise EmailCompositionError(f"Failed to compose email: {e}")

    return message


class SmtpSender:
    """Sends composed emails through an SMTP relay."""

    def __init__(
        self,
        host: str = DEFAULT_SMTP_HOST,
        port: int = DEFAULT_SMTP_PORT,
        timeout: int = SMTP_TIMEOUT,
    ):
        self.host = host
        self.port = port
        self.timeout = timeout

    def send_all(self, messages: Iterable[EmailMessage]):
        """Send all messages over one connection. Delivery errors are logged, not raised."""
        messages = list(messages)
        if not messages:
            return

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                for message in messages:
                    try:
                        smtp.send_message(message)
                    except smtplib.SMTPException as e:
                        logger.warning("Failed to send email %r: %s", message["Subject"], e)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning("Failed to deliver %d email(s) via %s:%s: %s", len(messages), self.host, self.port, e)
