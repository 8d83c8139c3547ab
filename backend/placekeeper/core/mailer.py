# placekeeper/core/mailer.py
"""
Outbound account email.

Notifications are sent after the state change they describe has already been
committed, so a failed send is logged and swallowed rather than undoing it.
Without SMTP_HOST the message is only logged (dev mode).
"""
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from starlette.concurrency import run_in_threadpool

from placekeeper.config import settings

logger = logging.getLogger(__name__)


def _redact(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class Mailer:
    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        base_url: str = "http://localhost:3000",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.base_url = base_url.rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _deliver(self, to_email: str, subject: str, text_body: str) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.from_email
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        html = "<p>" + text_body.replace("\n\n", "</p><p>").replace("\n", "<br>") + "</p>"
        msg.attach(MIMEText(html, "html"))

        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=10) as server:
            if self.smtp_use_tls:
                server.starttls(context=ssl.create_default_context())
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            server.sendmail(self.from_email, [to_email], msg.as_string())

    async def send(self, to_email: str, subject: str, text_body: str) -> None:
        """Send one message; raises on SMTP failure."""
        if not self.is_configured:
            logger.info("[mail:dev] to=%s subject=%r\n%s", _redact(to_email), subject, text_body)
            return
        await run_in_threadpool(self._deliver, to_email, subject, text_body)
        logger.info("[mail] sent subject=%r to=%s", subject, _redact(to_email))

    async def send_safely(self, to_email: str, subject: str, text_body: str) -> bool:
        """Send, but never raise. Returns whether the message went out."""
        try:
            await self.send(to_email, subject, text_body)
            return True
        except Exception:
            logger.exception("[mail] failed to send subject=%r to=%s", subject, _redact(to_email))
            return False

    # -------- account messages --------
    async def send_verification_email(self, to_email: str, username: str, token: str) -> bool:
        link = f"{self.base_url}/verify-email?token={token}"
        return await self.send_safely(
            to_email,
            "Verify your email address",
            f"Hi {username},\n\nConfirm your email address within "
            f"{settings.verification_token_minutes} minutes:\n{link}",
        )

    async def send_welcome_email(self, to_email: str, username: str) -> bool:
        return await self.send_safely(
            to_email, "Welcome to Placekeeper",
            f"Hi {username},\n\nYour email is verified. Start saving your places!",
        )

    async def send_password_reset_email(self, to_email: str, username: str, token: str) -> bool:
        link = f"{self.base_url}/reset-password?token={token}"
        return await self.send_safely(
            to_email,
            "Reset your password",
            f"Hi {username},\n\nReset your password within {settings.reset_token_minutes} minutes:\n{link}\n\n"
            "If you did not ask for this, you can ignore this email.",
        )

    async def send_password_changed_email(self, to_email: str, username: str, ip_address: str | None) -> bool:
        return await self.send_safely(
            to_email,
            "Your password was changed",
            f"Hi {username},\n\nYour password was just changed (from {ip_address or 'an unknown address'}). "
            "All devices have been signed out.\n\nIf this wasn't you, reset your password immediately.",
        )

    async def send_account_locked_email(self, to_email: str, username: str, minutes: int) -> bool:
        return await self.send_safely(
            to_email,
            "Your account was temporarily locked",
            f"Hi {username},\n\nAfter several failed sign-in attempts your account is locked for "
            f"{minutes} minutes.\n\nIf this wasn't you, consider resetting your password.",
        )

    async def send_email_change_verification(self, to_email: str, username: str, token: str) -> bool:
        link = f"{self.base_url}/verify-email-change?token={token}"
        return await self.send_safely(
            to_email,
            "Confirm your new email address",
            f"Hi {username},\n\nConfirm this address as your new sign-in email within "
            f"{settings.email_change_token_minutes} minutes:\n{link}",
        )

    async def send_email_change_alert(self, to_email: str, username: str, new_email: str,
                                      cancel_token: str, ip_address: str | None) -> bool:
        link = f"{self.base_url}/cancel-email-change?token={cancel_token}"
        return await self.send_safely(
            to_email,
            "Email change requested",
            f"Hi {username},\n\nSomeone (from {ip_address or 'an unknown address'}) asked to change your "
            f"account email to {new_email}.\n\nIf this wasn't you, cancel it here:\n{link}",
        )

    async def send_email_change_confirmation(self, to_email: str, username: str) -> bool:
        return await self.send_safely(
            to_email, "Your email address was changed",
            f"Hi {username},\n\nYour account email was changed. All devices have been signed out.",
        )

    async def send_username_changed_email(self, to_email: str, old_username: str, new_username: str) -> bool:
        return await self.send_safely(
            to_email, "Your username was changed",
            f"Hi {new_username},\n\nYour username was changed from {old_username} to {new_username}.\n\n"
            "If this wasn't you, change your password immediately.",
        )

    async def send_account_deletion_email(self, to_email: str, username: str) -> bool:
        return await self.send_safely(
            to_email, "Your account was deleted",
            f"Hi {username},\n\nYour Placekeeper account and its data have been deleted.",
        )


# Global mailer instance
mailer = Mailer(
    smtp_host=settings.smtp_host,
    smtp_port=settings.smtp_port,
    smtp_user=settings.smtp_user,
    smtp_password=settings.smtp_password,
    smtp_use_tls=settings.smtp_use_tls,
    from_email=settings.mail_from,
    base_url=settings.app_base_url,
)
