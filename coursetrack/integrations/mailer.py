"""Outbound mail over SMTP.

The SMTP password may be stored encrypted using Fernet (AES-128-CBC)
derived from SECRET_KEY. Missing credentials are not checked up front:
the relay rejects the send and the caller sees ``success: False``.
"""

import base64
import hashlib
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid
from typing import Protocol

from cryptography.fernet import Fernet

logger = logging.getLogger(__name__)

_SENDER_NAME = "Course Activity Tracker"


class MailGateway(Protocol):
    """Mail transport interface."""

    def send(self, to: str, subject: str, html: str, text: str = "") -> dict: ...


# ── Credential encryption ─────────────────────────────────────────────


def _derive_fernet_key(secret: str) -> bytes:
    """Derive a Fernet key from SECRET_KEY using SHA-256."""
    digest = hashlib.sha256(secret.encode()).digest()
    return base64.urlsafe_b64encode(digest)


def encrypt_value(plaintext: str, secret: str) -> str:
    f = Fernet(_derive_fernet_key(secret))
    return f.encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str, secret: str) -> str:
    f = Fernet(_derive_fernet_key(secret))
    return f.decrypt(ciphertext.encode()).decode()


# ── Message building ───────────────────────────────────────────────────


def build_message(sender: str, to: str, subject: str, html: str, text: str = "") -> MIMEMultipart:
    """Build a multipart/alternative message with anti-spam headers."""
    msg = MIMEMultipart("alternative")
    msg["From"] = formataddr((_SENDER_NAME, sender))
    msg["To"] = to
    msg["Reply-To"] = sender
    msg["Date"] = formatdate(localtime=True)
    msg["Message-ID"] = make_msgid(domain=sender.split("@")[-1] if "@" in sender else "local")
    msg["X-Mailer"] = "CourseTrack/1.0"
    msg["Subject"] = subject

    if text:
        msg.attach(MIMEText(text, "plain", "utf-8"))
    msg.attach(MIMEText(html, "html", "utf-8"))
    return msg


# ── Sending ────────────────────────────────────────────────────────────


class SmtpMailer:
    """SMTP relay client with STARTTLS."""

    def __init__(
        self,
        host: str,
        port: int,
        user: str = "",
        password: str = "",
        sender: str = "noreply@university.edu",
        timeout: int = 15,
        secret_key: str = "",
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.sender = sender
        self.timeout = timeout
        self._password = password
        self._secret_key = secret_key

    @classmethod
    def from_settings(cls, config) -> "SmtpMailer":
        return cls(
            host=config.smtp_host,
            port=config.smtp_port,
            user=config.smtp_user,
            password=config.smtp_pass,
            sender=config.smtp_from,
            timeout=config.smtp_timeout,
            secret_key=config.secret_key,
        )

    def _password_plain(self) -> str:
        # Fernet tokens start with 'gAAAAA'
        if self._password.startswith("gAAAAA"):
            return decrypt_value(self._password, self._secret_key)
        return self._password

    def send(self, to: str, subject: str, html: str, text: str = "") -> dict:
        """Send one message. Returns ``{"success": True, "messageId": ...}``
        or ``{"success": False, "error": ...}``."""
        msg = build_message(self.sender, to, subject, html, text)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                server.ehlo()
                server.starttls()
                server.ehlo()
                if self.user:
                    server.login(self.user, self._password_plain())
                server.send_message(msg)
        except Exception as exc:
            logger.exception("Email to %s failed", to)
            return {"success": False, "error": str(exc)}

        logger.info("Email sent to %s: %s", to, msg["Message-ID"])
        return {"success": True, "messageId": msg["Message-ID"]}
