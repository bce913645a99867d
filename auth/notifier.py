"""
auth/notifier.py -- Outbound account emails, dispatched off the request path.

Two pieces:

  EmailSender -- renders and sends one message over SMTP (smtplib). When no
      SMTP host is configured it logs the message instead, which is the
      development default.

  NotificationDispatcher -- the only thing flows talk to. submit() drops a
      Notification on an asyncio.Queue and returns immediately; a background
      task started by the application lifespan drains the queue and hands each
      message to the sender on the thread pool. A failed send is logged and
      dropped. Nothing here can fail or delay the request that triggered it.

Flows call submit() only after their state transition has been saved, so a
verification or reset email is never sent for a token that did not commit.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import asyncio
import html
import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from starlette.concurrency import run_in_threadpool

from core.config import Settings

logger = logging.getLogger("accountgate.auth.notifier")

VERIFY_EMAIL = "verify_email"
RESET_PASSWORD = "reset_password"


@dataclass(frozen=True)
class Notification:
    kind: str  # VERIFY_EMAIL | RESET_PASSWORD
    to: str
    token: str
    name: str


def redact_email(email: str) -> str:
    """Redact an address for logging: 'ana@x.com' -> 'an***@x.com'."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


# ---------------------------------------------------------------------------
# SMTP sender
# ---------------------------------------------------------------------------


class EmailSender:
    def __init__(self, settings: Settings) -> None:
        self.smtp_host = settings.smtp_host
        self.smtp_port = settings.smtp_port
        self.smtp_user = settings.smtp_user
        self.smtp_password = settings.smtp_password
        self.smtp_use_tls = settings.smtp_use_tls
        self.from_email = settings.email_from
        self.frontend_url = settings.frontend_url.rstrip("/")
        self.verification_hours = settings.email_verification_expire_seconds // 3600
        self.reset_minutes = settings.password_reset_expire_seconds // 60

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def send(self, notification: Notification) -> None:
        """Render and deliver one notification. Raises on transport failure."""
        if notification.kind == VERIFY_EMAIL:
            self.send_verification_email(notification.to, notification.token, notification.name)
        elif notification.kind == RESET_PASSWORD:
            self.send_password_reset_email(notification.to, notification.token, notification.name)
        else:
            raise ValueError(f"Unknown notification kind: {notification.kind!r}")

    def send_verification_email(self, to: str, token: str, name: str) -> None:
        url = f"{self.frontend_url}/verify-email?token={token}"
        body = _render(
            name,
            "Thank you for registering. Please verify your email address by opening the link below:",
            url,
            f"This link will expire in {self.verification_hours} hours.",
        )
        self._send(to, "Verify Your Email Address", body)

    def send_password_reset_email(self, to: str, token: str, name: str) -> None:
        url = f"{self.frontend_url}/reset-password?token={token}"
        body = _render(
            name,
            "You requested to reset your password. Open the link below to choose a new one:",
            url,
            f"This link will expire in {self.reset_minutes} minutes. If you didn't request this, ignore this email.",
        )
        self._send(to, "Reset Your Password", body)

    def _send(self, to: str, subject: str, html_body: str) -> None:
        if not self.is_configured:
            logger.info("SMTP not configured; email to %s not sent (subject=%r)", redact_email(to), subject)
            return

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.from_email
        msg["To"] = to
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        if self.smtp_use_tls:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to, msg.as_string())
        else:
            with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30) as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to, msg.as_string())
        logger.info("Email sent to %s (subject=%r)", redact_email(to), subject)


def _render(name: str, lead: str, url: str, footer: str) -> str:
    safe_url = html.escape(url, quote=True)
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f"<h2>Hello {html.escape(name)}!</h2>"
        f"<p>{lead}</p>"
        f'<p><a href="{safe_url}">{safe_url}</a></p>'
        f'<p style="color: #999; font-size: 12px;">{footer}</p>'
        "</div>"
    )


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class NotificationDispatcher:
    """Fire-and-forget queue in front of an EmailSender."""

    def __init__(self, sender: EmailSender) -> None:
        self._sender = sender
        self._queue: asyncio.Queue[Notification] = asyncio.Queue()

    def submit(self, notification: Notification) -> None:
        """Queue a notification. Never blocks, never raises on delivery problems."""
        self._queue.put_nowait(notification)

    async def deliver(self, notification: Notification) -> bool:
        """Send one notification on the thread pool. Returns False if it failed."""
        try:
            await run_in_threadpool(self._sender.send, notification)
        except Exception:
            logger.exception("Failed to send %s email to %s", notification.kind, redact_email(notification.to))
            return False
        return True

    async def run(self) -> None:
        """Drain the queue forever. Started as a background task in the lifespan.

        CancelledError from task.cancel() at shutdown propagates out of
        queue.get() and unwinds the loop.
        """
        while True:
            notification = await self._queue.get()
            try:
                await self.deliver(notification)
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Deliver everything currently queued. Used at shutdown and in tests."""
        while not self._queue.empty():
            notification = self._queue.get_nowait()
            try:
                await self.deliver(notification)
            finally:
                self._queue.task_done()
