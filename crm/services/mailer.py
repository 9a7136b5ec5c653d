"""Outbound e-mail through the Resend API."""
from __future__ import annotations

import asyncio
import html
import logging
import re
from urllib.parse import urlencode

import resend
from fastapi import Request

from crm.core.config import Settings, settings
from crm.core.logging_config import anonymize

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@<>\s]+@[^@<>\s]+\.[^@<>\s]+$")
NAME_EMAIL_RE = re.compile(r"^.+ <[^@<>\s]+@[^@<>\s]+\.[^@<>\s]+>$")


class EmailDeliveryError(RuntimeError):
    """Raised when the e-mail provider rejects or cannot accept a message."""


def _layout(title: str, body: str) -> str:
    return f"""
    <html>
        <body style="font-family: sans-serif; line-height: 1.6; color: #333;">
            <h1>{html.escape(title)}</h1>
            {body}
        </body>
    </html>
    """


class Mailer:
    """Send the transactional messages of the auth flows."""

    def __init__(self, config: Settings) -> None:
        self._settings = config

    @property
    def enabled(self) -> bool:
        return bool(self._settings.RESEND_API_KEY)

    def _from_field(self) -> str:
        # Accept either plain email (user@example.com) or "Name <user@example.com>".
        from_raw = (self._settings.RESEND_FROM_EMAIL or "").strip()
        if EMAIL_RE.match(from_raw):
            return f"{self._settings.APP_NAME} <{from_raw}>"
        if NAME_EMAIL_RE.match(from_raw):
            return from_raw
        logger.warning(
            "RESEND_FROM_EMAIL value '%s' is invalid; falling back to noreply",
            from_raw,
        )
        return f"{self._settings.APP_NAME} <noreply@example.com>"

    def _link(self, path: str, token: str) -> str:
        base = self._settings.APP_URL.rstrip("/")
        return f"{base}{path}?{urlencode({'token': token})}"

    async def _send(self, to: str, subject: str, body_html: str, kind: str) -> None:
        if not self.enabled:
            logger.info("E-mail delivery disabled; skipped %s e-mail [to=%s]", kind, anonymize(to))
            return

        params = {
            "from": self._from_field(),
            "to": to,
            "subject": subject,
            "html": body_html,
        }
        resend.api_key = self._settings.RESEND_API_KEY
        try:
            await asyncio.to_thread(resend.Emails.send, params)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to send %s e-mail [to=%s]", kind, anonymize(to), exc_info=exc)
            raise EmailDeliveryError(f"Failed to send {kind} e-mail") from exc

        logger.info("Sent %s e-mail [to=%s]", kind, anonymize(to))

    async def send_verification_email(self, email: str, name: str, token: str) -> None:
        link = self._link("/auth/verify-email", token)
        if not self.enabled and self._settings.DEBUG:
            # In development, show the link instead of sending email
            logger.info("Verification link for %s: %s", anonymize(email), link)
        body = _layout(
            "Verify Your Email Address",
            f"<p>Hi {html.escape(name)},</p>"
            f"<p>Thanks for signing up for {html.escape(self._settings.APP_NAME)}! "
            "Please verify your email address to get started.</p>"
            f'<p><a href="{link}">Verify Email</a></p>'
            f"<p>This link will expire in {self._settings.EMAIL_VERIFICATION_TTL_HOURS} hours.</p>",
        )
        await self._send(email, "Verify Your Email Address", body, "verification")

    async def send_password_reset_email(self, email: str, name: str, token: str) -> None:
        link = self._link("/auth/reset-password", token)
        if not self.enabled and self._settings.DEBUG:
            logger.info("Password reset link for %s: %s", anonymize(email), link)
        body = _layout(
            "Reset Your Password",
            f"<p>Hi {html.escape(name)},</p>"
            "<p>We received a request to reset your password.</p>"
            f'<p><a href="{link}">Reset Password</a></p>'
            f"<p>This link will expire in {self._settings.PASSWORD_RESET_TTL_MINUTES} minutes. "
            "If you didn't request this, you can ignore this email.</p>",
        )
        await self._send(email, "Reset Your Password", body, "password reset")

    async def send_security_alert_email(
        self, email: str, name: str, alert_type: str, details: str
    ) -> None:
        details_html = "<br>".join(html.escape(line) for line in details.splitlines())
        body = _layout(
            "Security Alert",
            f"<p>Hi {html.escape(name)},</p>"
            f"<p>We detected unusual activity on your account: "
            f"<strong>{html.escape(alert_type)}</strong></p>"
            f"<p>{details_html}</p>"
            "<p>If this wasn't you, reset your password and enable two-factor authentication.</p>",
        )
        await self._send(email, "Security Alert for Your Account", body, "security alert")

    async def send_account_activated_email(self, email: str, name: str) -> None:
        body = _layout(
            "Your Account Has Been Activated",
            f"<p>Hi {html.escape(name)},</p>"
            f"<p>Your {html.escape(self._settings.APP_NAME)} account is active. "
            "You can now sign in.</p>"
            f'<p><a href="{self._settings.APP_URL.rstrip("/")}/auth/signin">Sign in</a></p>',
        )
        await self._send(email, "Your Account Has Been Activated", body, "account activated")


def get_mailer(request: Request) -> Mailer:
    """Dependency returning the mailer built at start-up."""
    mailer = getattr(request.app.state, "mailer", None)
    if mailer is None:
        mailer = Mailer(settings)
        request.app.state.mailer = mailer
    return mailer


__all__ = ["EmailDeliveryError", "Mailer", "get_mailer"]
