"""
Outbound notifications (verification codes, 2FA setup confirmations).
"""
import os
import ssl
import smtplib
import logging
from abc import ABC, abstractmethod
from email.message import EmailMessage
from typing import Dict, Optional

from ..utils.secrets import get_smtp_password, mask_secret

logger = logging.getLogger(__name__)


class Notifier(ABC):
    """Delivery channel for messages to a user."""

    @abstractmethod
    def send(self, to: str, subject: str, text: str) -> bool:
        """
        Deliver a plain-text message.

        Returns:
            True if the message was handed off.
        """
        pass

    def send_verification_code(self, user: Dict, code: str, expires_minutes: int) -> bool:
        name = user.get("display_name") or user.get("email")
        subject = f"Your verification code for {self.site_name}"
        text = (
            f"Hello {name},\n\n"
            f"Your verification code is: {code}\n\n"
            f"This code will expire in {expires_minutes} minutes.\n\n"
            f"If you did not request this code, please ignore this email.\n\n"
            f"- {self.site_name}"
        )
        return self.send(user["email"], subject, text)

    def send_setup_confirmation(self, user: Dict, method: str) -> bool:
        name = user.get("display_name") or user.get("email")
        subject = f"Two-factor authentication enabled on {self.site_name}"
        text = (
            f"Hello {name},\n\n"
            f"Two-factor authentication ({method}) is now enabled on your account.\n\n"
            f"If you did not make this change, contact support immediately.\n\n"
            f"- {self.site_name}"
        )
        return self.send(user["email"], subject, text)

    @property
    def site_name(self) -> str:
        return os.getenv("FROM_NAME", "ORTHRUS")


class SMTPNotifier(Notifier):
    """
    SMTP delivery with STARTTLS.

    Configured from SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASS, FROM_EMAIL
    and FROM_NAME.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        from_email: Optional[str] = None,
        from_name: Optional[str] = None,
        timeout: int = 10,
    ):
        self.host = host or os.getenv("SMTP_HOST", "localhost")
        self.port = port or int(os.getenv("SMTP_PORT", "587"))
        self.user = user if user is not None else os.getenv("SMTP_USER")
        self.password = password if password is not None else get_smtp_password()
        self.from_email = from_email or os.getenv("FROM_EMAIL", self.user or "no-reply@example.com")
        self.from_name = from_name or os.getenv("FROM_NAME", "ORTHRUS")
        self.timeout = timeout

    @property
    def site_name(self) -> str:
        return self.from_name

    def send(self, to: str, subject: str, text: str) -> bool:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to
        msg.set_content(text)

        ctx = ssl.create_default_context()
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as s:
                s.starttls(context=ctx)
                if self.user and self.password:
                    s.login(self.user, self.password)
                s.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP delivery to {mask_secret(to)} failed: {e}")
            return False

        logger.info(f"Mail sent to {mask_secret(to)}: {subject}")
        return True


class LoggingNotifier(Notifier):
    """
    Development notifier: logs that a message was sent instead of sending it.

    Message bodies contain codes and are never written to the log. With
    keep=True they are recorded in outbox (tests read codes from there).
    """

    def __init__(self, keep: bool = False):
        self.keep = keep
        self.outbox = []

    def send(self, to: str, subject: str, text: str) -> bool:
        if self.keep:
            self.outbox.append({"to": to, "subject": subject, "text": text})
        logger.info(f"[dev mail] to={mask_secret(to)} subject={subject!r}")
        return True


def get_notifier() -> Notifier:
    """SMTP when SMTP_HOST is configured, otherwise the logging notifier."""
    if os.getenv("SMTP_HOST"):
        return SMTPNotifier()
    logger.warning("SMTP_HOST not set - verification e-mails will not be delivered")
    return LoggingNotifier()
