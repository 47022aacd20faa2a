"""
mail/sender.py -- Verification and password-reset email delivery.

Two implementations share one interface:

  SmtpEmailSender    -- sends through aiosmtplib. Non-blocking; every send is
                        bounded by Settings.smtp_timeout_seconds so a hung
                        relay cannot stall the request that issued the code.
  ConsoleEmailSender -- logs the message instead of sending it. Selected when
                        SMTP_HOST is empty (local development).

Both return True on delivery and False on failure. Delivery is best-effort:
a code counts as issued once it is persisted, so callers log a False result
rather than undoing the code.

Usage:
    sender = build_email_sender(get_settings())
    ok = await sender.send_verification_email("alice@example.com", "042917")
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from email.message import EmailMessage

import aiosmtplib

from core.config import Settings

logger = logging.getLogger("otpauth.mail")

_VERIFY_SUBJECT = "Verify your email address"
_VERIFY_BODY = (
    "Hello,\n\n"
    "Your verification code is: {code}\n\n"
    "The code expires in {minutes} minutes. If you did not create an account, "
    "you can ignore this email.\n\n"
    "-- {app_name}"
)

_RESET_SUBJECT = "Reset your password"
_RESET_BODY = (
    "Hello,\n\n"
    "Your password reset code is: {code}\n\n"
    "The code expires in {minutes} minutes. If you did not request a password "
    "reset, you can ignore this email; your password has not been changed.\n\n"
    "-- {app_name}"
)


class _TemplateSender(ABC):
    """Renders the two code emails; subclasses decide how to deliver them."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def _build(self, to_email: str, subject: str, template: str, code: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.settings.mail_from
        message["To"] = to_email
        message["Subject"] = f"[{self.settings.app_name}] {subject}"
        message.set_content(
            template.format(
                code=code,
                minutes=self.settings.otp_expire_seconds // 60,
                app_name=self.settings.app_name,
            )
        )
        return message

    async def send_verification_email(self, to_email: str, code: str) -> bool:
        return await self._deliver(self._build(to_email, _VERIFY_SUBJECT, _VERIFY_BODY, code))

    async def send_password_reset_email(self, to_email: str, code: str) -> bool:
        return await self._deliver(self._build(to_email, _RESET_SUBJECT, _RESET_BODY, code))

    @abstractmethod
    async def _deliver(self, message: EmailMessage) -> bool:
        """Send message. Return True on delivery, False on failure."""


class SmtpEmailSender(_TemplateSender):
    """Deliver through an SMTP relay with aiosmtplib."""

    async def _deliver(self, message: EmailMessage) -> bool:
        s = self.settings
        try:
            await aiosmtplib.send(
                message,
                hostname=s.smtp_host,
                port=s.smtp_port,
                username=s.smtp_username or None,
                password=s.smtp_password or None,
                use_tls=s.smtp_use_tls,
                start_tls=s.smtp_start_tls and not s.smtp_use_tls,
                timeout=s.smtp_timeout_seconds,
            )
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as e:
            logger.error("Email to %s failed (%s): %s", message["To"], message["Subject"], e)
            return False
        logger.info("Email sent to %s (%s)", message["To"], message["Subject"])
        return True


class ConsoleEmailSender(_TemplateSender):
    """Log the rendered email. Development only -- the log contains the code."""

    async def _deliver(self, message: EmailMessage) -> bool:
        logger.warning(
            "SMTP_HOST not configured; email not sent.\nTo: %s\nSubject: %s\n\n%s",
            message["To"],
            message["Subject"],
            message.get_content(),
        )
        return True


def build_email_sender(settings: Settings) -> _TemplateSender:
    """Return the SMTP sender when a relay is configured, the console sender otherwise."""
    if settings.smtp_host:
        return SmtpEmailSender(settings)
    if not settings.debug:
        logger.warning("SMTP_HOST is empty; one-time codes will only be written to the log")
    return ConsoleEmailSender(settings)
