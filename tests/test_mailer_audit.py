import asyncio
import logging

import httplib2
import pytest
from googleapiclient.errors import UnknownApiNameOrVersion

from otpservice.config import Settings
from otpservice.services.audit import AuditDispatcher
from otpservice.services.mailer import ConsoleTransport, GmailTransport, MailDeliveryError, Mailer, build_transport
from tests.conftest import ADMIN


@pytest.mark.asyncio
async def test_admin_mail_renders_payload_as_escaped_json(mailer, transport):
    await mailer.send_to_admin("OTP FAILED", {"email": "a@x.com", "otp": "<b>1</b>"})
    [msg] = transport.to(ADMIN)
    html = msg.get_body(preferencelist=("html",)).get_content()
    assert html.startswith("<pre>")
    assert "&lt;b&gt;1&lt;/b&gt;" in html
    assert msg["From"] == "otp@example.com"


@pytest.mark.asyncio
async def test_user_mail_carries_sender_name(transport):
    m = Mailer(transport, from_address="otp@example.com", from_name="OTP Desk", admin_email=ADMIN)
    await m.send_to_user("a@x.com", "Your OTP", "<h1>123456</h1>", "Your OTP is 123456")
    [msg] = transport.to("a@x.com")
    assert msg["From"] == "OTP Desk <otp@example.com>"
    assert "123456" in msg.get_body(preferencelist=("plain",)).get_content()


@pytest.mark.asyncio
async def test_submit_does_not_wait_for_delivery():
    gate = asyncio.Event()

    class SlowTransport:
        async def send(self, message):
            await gate.wait()

    auditor = AuditDispatcher(Mailer(SlowTransport(), from_address="otp@example.com", admin_email=ADMIN))
    auditor.submit("OTP VERIFIED", {"email": "a@x.com"})
    assert auditor.pending == 1

    gate.set()
    await auditor.drain()
    assert auditor.pending == 0


@pytest.mark.asyncio
async def test_failed_audit_is_logged_not_raised(auditor, transport, caplog):
    transport.fail_for.add(ADMIN)
    with caplog.at_level(logging.ERROR, logger="otpservice.services.audit"):
        task = auditor.submit("OTP Generated", {"email": "a@x.com"})
        await auditor.drain()
    assert task.exception() is None
    assert any("admin audit failed" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_console_transport_logs_message(caplog):
    m = Mailer(ConsoleTransport(), from_address="otp@example.com", admin_email=ADMIN)
    with caplog.at_level(logging.INFO, logger="otpservice.services.mailer"):
        await m.send_to_user("a@x.com", "Your OTP", "<h1>654321</h1>", "Your OTP is 654321")
    assert any("654321" in r.getMessage() for r in caplog.records)


def test_transport_selection():
    base = dict(DATABASE_URL="sqlite+aiosqlite:///:memory:")
    assert isinstance(build_transport(Settings(**base, MAIL_BACKEND="console")), ConsoleTransport)

    with pytest.raises(RuntimeError, match="GMAIL_REFRESH_TOKEN"):
        build_transport(Settings(**base, MAIL_BACKEND="gmail", GOOGLE_CLIENT_ID="id", GOOGLE_CLIENT_SECRET="s"))

    gmail = build_transport(
        Settings(**base, MAIL_BACKEND="gmail", GOOGLE_CLIENT_ID="id", GOOGLE_CLIENT_SECRET="s", GMAIL_REFRESH_TOKEN="r")
    )
    assert isinstance(gmail, GmailTransport)


def test_sync_url_is_derived_for_alembic():
    s = Settings(DATABASE_URL="postgresql+asyncpg://u:p@db/otp")
    assert s.SYNC_DATABASE_URL == "postgresql+psycopg://u:p@db/otp"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        httplib2.ServerNotFoundError("Unable to find the server at gmail.googleapis.com"),
        UnknownApiNameOrVersion("name: gmail  version: v1"),
    ],
)
async def test_gmail_failures_become_mail_delivery_errors(error, monkeypatch):
    gmail = GmailTransport(client_id="id", client_secret="s", refresh_token="r")

    def fail(_raw):
        raise error

    monkeypatch.setattr(gmail, "_send_blocking", fail)
    m = Mailer(gmail, from_address="otp@example.com", admin_email=ADMIN)
    with pytest.raises(MailDeliveryError):
        await m.send_to_user("a@x.com", "Your OTP", "<h1>123456</h1>")
