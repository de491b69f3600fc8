from __future__ import annotations

import asyncio
import base64
import json
import logging
from html import escape
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any, Optional, Protocol

from google.auth.exceptions import GoogleAuthError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import Error as GoogleApiError
from httplib2 import HttpLib2Error

from ..config import Settings

logger = logging.getLogger(__name__)

GMAIL_SEND_SCOPES = ["https://www.googleapis.com/auth/gmail.send"]


class MailDeliveryError(Exception):
    """The transport could not hand the message off."""


class MailTransport(Protocol):
    async def send(self, message: EmailMessage) -> None: ...


class GmailTransport:
    """Sends through the Gmail API using a long-lived OAuth refresh token."""

    def __init__(self, *, client_id: str, client_secret: str, refresh_token: str) -> None:
        credentials = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri="https://oauth2.googleapis.com/token",
            client_id=client_id,
            client_secret=client_secret,
            scopes=GMAIL_SEND_SCOPES,
        )
        # discovery + token refresh happen lazily on first send
        self._credentials = credentials
        self._service = None

    def _send_blocking(self, raw: str) -> None:
        if self._service is None:
            self._service = build("gmail", "v1", credentials=self._credentials, cache_discovery=False)
        self._service.users().messages().send(userId="me", body={"raw": raw}).execute()

    async def send(self, message: EmailMessage) -> None:
        raw = base64.urlsafe_b64encode(message.as_bytes()).decode("ascii")
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._send_blocking, raw)
        except (GoogleApiError, GoogleAuthError, HttpLib2Error, OSError) as exc:
            raise MailDeliveryError(f"gmail send failed: {exc}") from exc


class ConsoleTransport:
    """DEV transport: log the message instead of sending it."""

    async def send(self, message: EmailMessage) -> None:
        body = message.get_body(preferencelist=("plain", "html"))
        logger.info(
            "[DEV] mail to=%s subject=%s body=%s",
            message["To"],
            message["Subject"],
            body.get_content().strip() if body else "",
        )


def build_transport(settings: Settings) -> MailTransport:
    if settings.MAIL_BACKEND == "gmail":
        missing = [
            key
            for key, value in [
                ("GOOGLE_CLIENT_ID", settings.GOOGLE_CLIENT_ID),
                ("GOOGLE_CLIENT_SECRET", settings.GOOGLE_CLIENT_SECRET),
                ("GMAIL_REFRESH_TOKEN", settings.GMAIL_REFRESH_TOKEN),
            ]
            if not value
        ]
        if missing:
            raise RuntimeError(f"MAIL_BACKEND=gmail requires: {', '.join(missing)}")
        return GmailTransport(
            client_id=settings.GOOGLE_CLIENT_ID,  # type: ignore[arg-type]
            client_secret=settings.GOOGLE_CLIENT_SECRET,  # type: ignore[arg-type]
            refresh_token=settings.GMAIL_REFRESH_TOKEN,  # type: ignore[arg-type]
        )
    logger.info("Mail delivery in console mode; messages are logged, not sent")
    return ConsoleTransport()


class Mailer:
    """Outbound mail: user-facing messages plus the admin audit mailbox."""

    def __init__(
        self,
        transport: MailTransport,
        *,
        from_address: str,
        admin_email: str,
        from_name: Optional[str] = None,
    ) -> None:
        self._transport = transport
        self._sender = formataddr((from_name, from_address)) if from_name else from_address
        self.admin_email = admin_email

    def _message(self, to: str, subject: str, html: str, text: Optional[str] = None) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self._sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(text or subject)
        msg.add_alternative(html, subtype="html")
        return msg

    async def send_to_user(self, email: str, subject: str, html: str, text: Optional[str] = None) -> None:
        await self._transport.send(self._message(email, subject, html, text))

    async def send_to_admin(self, subject: str, payload: dict[str, Any]) -> None:
        pretty = json.dumps(payload, indent=2, default=str)
        await self._transport.send(self._message(self.admin_email, subject, f"<pre>{escape(pretty)}</pre>", pretty))

    async def send_test(self) -> None:
        await self._transport.send(
            self._message(self.admin_email, "Email System Working", "<h2>Email delivery confirmed</h2>")
        )
