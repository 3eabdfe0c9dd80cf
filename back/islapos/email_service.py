"""
Email service for sending transactional emails (receipts, staff schedules).
Supports SMTP (Gmail, Proton Mail, etc.).
"""

import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Awaitable, Callable, Optional

import aiosmtplib

from .errors import ConfigurationError
from .settings import settings

logger = logging.getLogger(__name__)

Mailer = Callable[..., Awaitable[bool]]


def smtp_configured() -> bool:
    return bool(settings.smtp_host and settings.smtp_user and settings.smtp_password and settings.email_from)


async def send_email(
    to_email: str,
    subject: str,
    html_content: str,
    text_content: Optional[str] = None,
) -> bool:
    """
    Send an email via SMTP.

    Returns True if the server accepted the message, False otherwise.
    """
    if not smtp_configured():
        logger.error("SMTP credentials not configured")
        return False

    from_email = settings.email_from
    from_name = settings.email_from_name

    message = MIMEMultipart("alternative")
    message["Subject"] = subject
    message["From"] = f"{from_name} <{from_email}>" if from_name else from_email
    message["To"] = to_email

    if text_content:
        message.attach(MIMEText(text_content, "plain"))
    message.attach(MIMEText(html_content, "html"))

    # Port 465 is implicit TLS; 587 and the rest negotiate STARTTLS when enabled.
    if settings.smtp_port == 465:
        tls = {"use_tls": True}
    elif settings.smtp_port == 587:
        tls = {"start_tls": True}
    else:
        tls = {"start_tls": settings.smtp_use_tls}

    try:
        await aiosmtplib.send(
            message,
            hostname=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_password,
            **tls,
        )
    except (aiosmtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email to {to_email}: {e}")
        return False
    logger.info(f"Email sent successfully to {to_email}")
    return True


def get_mailer() -> Mailer:
    """Dependency: the configured sender, or a 500 when SMTP is not set up."""
    if not smtp_configured():
        raise ConfigurationError("SMTP is not configured")
    return send_email
