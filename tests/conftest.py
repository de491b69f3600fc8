import os

# settings are read at import time; point them at throwaway backends first
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./.pytest_otp.db")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("MAIL_BACKEND", "console")
os.environ.setdefault("ADMIN_EMAIL", "audit@example.com")
os.environ.setdefault("MAIL_FROM_ADDRESS", "otp@example.com")

import uuid
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Callable, Optional

import pytest
import pytest_asyncio

from otpservice.db import engine, SessionLocal
from otpservice.models import Base, OtpRecord
from otpservice.repos.otp_records import SqlOtpStore, StoreError
from otpservice.services.audit import AuditDispatcher
from otpservice.services.mailer import MailDeliveryError, Mailer
from otpservice.services.otp_lifecycle import OtpLifecycleManager

ADMIN = "audit@example.com"


# Fresh schema per test, created on the test's own loop; dispose afterwards so
# no pooled connection leaks into the next test's loop.
@pytest_asyncio.fixture(autouse=True, loop_scope="function")
async def _db_schema():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


# Rate limiting lives in Redis; tests never talk to Redis.
@pytest.fixture(autouse=True)
def _no_rate_limit(monkeypatch):
    import otpservice.api.routers.otp as otp_router

    async def _noop(*args, **kwargs):
        return None

    monkeypatch.setattr(otp_router, "limit_otp_request", _noop)
    monkeypatch.setattr(otp_router, "limit_otp_verify", _noop)
    yield


# ---------- doubles ----------
class RecordingTransport:
    """Keeps every message; raises for any recipient listed in fail_for."""

    def __init__(self) -> None:
        self.sent: list[EmailMessage] = []
        self.fail_for: set[str] = set()
        self.on_send: Optional[Callable[[EmailMessage], None]] = None

    async def send(self, message: EmailMessage) -> None:
        if self.on_send:
            self.on_send(message)
        if message["To"] in self.fail_for:
            raise MailDeliveryError(f"refused: {message['To']}")
        self.sent.append(message)

    def to(self, address: str) -> list[EmailMessage]:
        return [m for m in self.sent if m["To"] == address]


class MemoryOtpStore:
    """List-backed store with SqlOtpStore semantics; insertion order is store order."""

    def __init__(self) -> None:
        self.records: list[OtpRecord] = []
        self.broken = False

    def _check(self) -> None:
        if self.broken:
            raise StoreError("store is down")

    async def insert(self, record: OtpRecord) -> OtpRecord:
        self._check()
        now = datetime.now(timezone.utc)
        record.id = uuid.uuid4()
        record.issued_at = now
        record.updated_at = now
        self.records.append(record)
        return record

    async def find_one_unverified(self, email, code, issued_after=None):
        self._check()
        for r in self.records:
            if r.email == email and r.code == code and not r.verified:
                if issued_after is None or r.issued_at >= issued_after:
                    return r
        return None

    async def update(self, record: OtpRecord) -> bool:
        self._check()
        if record.verified:
            return False
        record.verified = True
        record.updated_at = datetime.now(timezone.utc)
        return True

    async def count_outstanding(self, email, issued_after=None) -> int:
        self._check()
        return sum(
            1
            for r in self.records
            if r.email == email and not r.verified and (issued_after is None or r.issued_at >= issued_after)
        )


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def mailer(transport) -> Mailer:
    return Mailer(transport, from_address="otp@example.com", admin_email=ADMIN)


@pytest.fixture
def auditor(mailer) -> AuditDispatcher:
    return AuditDispatcher(mailer)


@pytest.fixture
def memory_store() -> MemoryOtpStore:
    return MemoryOtpStore()


@pytest.fixture
def sql_store() -> SqlOtpStore:
    return SqlOtpStore(SessionLocal)


@pytest.fixture
def manager(memory_store, mailer, auditor) -> OtpLifecycleManager:
    return OtpLifecycleManager(memory_store, mailer, auditor)


def code_in(message: EmailMessage) -> str:
    body = message.get_body(preferencelist=("plain",)).get_content()
    return "".join(ch for ch in body if ch.isdigit())[:6]
