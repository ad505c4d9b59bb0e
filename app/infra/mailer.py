from __future__ import annotations

import os
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Protocol

import structlog

SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USERNAME = os.getenv("SMTP_USERNAME", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_STARTTLS = os.getenv("SMTP_STARTTLS", "true").strip().lower() in {"1", "true", "yes", "on"}
MAIL_FROM_ADDRESS = os.getenv("MAIL_FROM_ADDRESS", "no-reply@example.com")
MAIL_FROM_NAME = os.getenv("MAIL_FROM_NAME", "HSE Action Tracker")
EMAIL_SEND_TIMEOUT_SECONDS = float(os.getenv("EMAIL_SEND_TIMEOUT_SECONDS", "10"))

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class EmailSendResult:
    success: bool
    message_id: str | None = None
    error: str | None = None


class EmailGateway(Protocol):
    def send_email(self, *, to: str | list[str], subject: str, html: str) -> EmailSendResult: ...


class SmtpEmailGateway:
    def __init__(
        self,
        *,
        host: str = SMTP_HOST,
        port: int = SMTP_PORT,
        username: str = SMTP_USERNAME,
        password: str = SMTP_PASSWORD,
        starttls: bool = SMTP_STARTTLS,
        from_address: str = MAIL_FROM_ADDRESS,
        from_name: str = MAIL_FROM_NAME,
        timeout_seconds: float = EMAIL_SEND_TIMEOUT_SECONDS,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._starttls = starttls
        self._from_address = from_address
        self._from_name = from_name
        self._timeout_seconds = timeout_seconds

    def _build_message(self, recipients: list[str], subject: str, html: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = formataddr((self._from_name, self._from_address))
        message["To"] = ", ".join(recipients)
        message["Subject"] = subject
        message["Message-ID"] = make_msgid(domain=self._from_address.rpartition("@")[2] or None)
        message.set_content(f"{subject}\n\nOpen this message in an HTML-capable mail client.")
        message.add_alternative(html, subtype="html")
        return message

    def send_email(self, *, to: str | list[str], subject: str, html: str) -> EmailSendResult:
        recipients = [to] if isinstance(to, str) else list(to)
        if not self._host:
            return EmailSendResult(success=False, error="smtp transport is not configured")
        if not recipients:
            return EmailSendResult(success=False, error="no recipients")

        message = self._build_message(recipients, subject, html)
        try:
            with smtplib.SMTP(self._host, self._port, timeout=self._timeout_seconds) as smtp:
                if self._starttls:
                    smtp.starttls()
                if self._username and self._password:
                    smtp.login(self._username, self._password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("email_send_failed", to=recipients, subject=subject, error=str(exc))
            return EmailSendResult(success=False, error=str(exc))
        return EmailSendResult(success=True, message_id=str(message["Message-ID"]))


def get_email_gateway() -> EmailGateway:
    return SmtpEmailGateway()
