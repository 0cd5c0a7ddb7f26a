from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Protocol
import logging

import aiosmtplib

from beacon.core.config import settings

logger = logging.getLogger(__name__)


class EmailTransport(Protocol):
    async def send_html(self, to: str, subject: str, html: str, *, unsubscribe_url: str | None = None) -> None:
        """Send one message. Raise on any delivery failure."""
        ...


class EmailNotConfigured(RuntimeError):
    pass


class SmtpEmailTransport:
    """One SMTP session per message through aiosmtplib."""

    def __init__(
        self,
        host: str | None,
        port: int,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = False,
        start_tls: bool = True,
        timeout: float = 30,
        sender: str | None = None,
        sender_name: str | None = None,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.start_tls = start_tls
        self.timeout = timeout
        self.sender = sender
        self.sender_name = sender_name

    @classmethod
    def from_settings(cls) -> "SmtpEmailTransport":
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            start_tls=settings.smtp_start_tls,
            timeout=settings.smtp_timeout_seconds,
            sender=settings.email_from,
            sender_name=settings.app_name,
        )

    def build_message(self, to: str, subject: str, html: str, unsubscribe_url: str | None = None) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = formataddr((self.sender_name or "", self.sender or ""))
        msg["To"] = to
        msg["Message-ID"] = make_msgid()
        if unsubscribe_url:
            # RFC 2369 list management
            msg["List-Unsubscribe"] = f"<{unsubscribe_url}>"
        msg.set_content("This message requires an HTML capable mail client.")
        msg.add_alternative(html, subtype="html")
        return msg

    async def send_html(self, to: str, subject: str, html: str, *, unsubscribe_url: str | None = None) -> None:
        if not self.host or not self.sender:
            raise EmailNotConfigured("SMTP_HOST and EMAIL_FROM must be set to send email")
        msg = self.build_message(to, subject, html, unsubscribe_url)
        await aiosmtplib.send(
            msg,
            hostname=self.host,
            port=self.port,
            username=self.username or None,
            password=self.password or None,
            use_tls=self.use_tls,
            start_tls=self.start_tls and not self.use_tls,
            timeout=self.timeout,
        )
        logger.debug("Email sent to %s", to)
