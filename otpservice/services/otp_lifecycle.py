from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from ..models import OtpRecord
from ..observability.metrics import OTP_DELIVERY_FAILED, OTP_ISSUED, OTP_REJECTED, OTP_VERIFIED
from ..repos.otp_records import StoreError
from .audit import AuditDispatcher
from .code_generator import generate_code
from .mailer import MailDeliveryError, Mailer

logger = logging.getLogger(__name__)

OTP_SUBJECT = "Your OTP"


class OtpError(Exception): ...
class IssuanceFailed(OtpError): ...
class InvalidOTP(OtpError): ...
class VerificationFailed(OtpError): ...
class TooManyOutstanding(OtpError): ...


class OtpStore(Protocol):
    async def insert(self, record: OtpRecord) -> OtpRecord: ...
    async def find_one_unverified(
        self, email: str, code: str, issued_after: Optional[datetime] = None
    ) -> Optional[OtpRecord]: ...
    async def update(self, record: OtpRecord) -> bool: ...
    async def count_outstanding(self, email: str, issued_after: Optional[datetime] = None) -> int: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class OtpLifecycleManager:
    """
    Issues and verifies one-time passcodes.

    Issue: generate -> insert (verified=false) -> mail the code -> audit.
    Verify: lookup unverified (email, code) -> flip verified -> audit.
    Audits are handed to the AuditDispatcher and never block or fail the call.

    ttl_seconds and max_outstanding are optional; with both unset codes never
    expire and any number may be outstanding per email.
    """

    def __init__(
        self,
        store: OtpStore,
        mailer: Mailer,
        auditor: AuditDispatcher,
        *,
        ttl_seconds: Optional[int] = None,
        max_outstanding: Optional[int] = None,
        code_generator: Callable[[], str] = generate_code,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self.store = store
        self.mailer = mailer
        self.auditor = auditor
        self.ttl_seconds = ttl_seconds
        self.max_outstanding = max_outstanding
        self._generate = code_generator
        self._clock = clock

    def _issued_after(self) -> Optional[datetime]:
        if not self.ttl_seconds:
            return None
        return self._clock() - timedelta(seconds=self.ttl_seconds)

    def _render(self, code: str) -> tuple[str, str]:
        html = f"<h2>Your OTP</h2><h1>{code}</h1>"
        text = f"Your OTP is {code}"
        if self.ttl_seconds:
            minutes = max(1, self.ttl_seconds // 60)
            html += f"<p>This OTP expires in {minutes} minutes.</p>"
            text += f" (expires in {minutes} minutes)"
        return html, text

    async def issue(self, email: str, origin_address: Optional[str]) -> OtpRecord:
        if not email:
            raise ValueError("email is required")

        if self.max_outstanding is not None:
            try:
                outstanding = await self.store.count_outstanding(email, self._issued_after())
            except StoreError as e:
                logger.exception("otp outstanding count failed")
                raise IssuanceFailed("store unavailable") from e
            if outstanding >= self.max_outstanding:
                logger.info("otp issue refused; outstanding=%d", outstanding, extra={"email": email})
                self.auditor.submit("⛔ OTP REFUSED", {"email": email, "outstanding": outstanding})
                raise TooManyOutstanding(email)

        try:
            code = self._generate()
            record = await self.store.insert(
                OtpRecord(email=email, code=code, verified=False, origin_address=origin_address)
            )
        except Exception as e:
            logger.exception("otp issue failed before delivery")
            raise IssuanceFailed("could not create otp") from e
        OTP_ISSUED.inc()

        html, text = self._render(record.code)
        try:
            await self.mailer.send_to_user(email, OTP_SUBJECT, html, text)
        except Exception as e:
            # the record stays; the admin still hears about it
            OTP_DELIVERY_FAILED.inc()
            if isinstance(e, MailDeliveryError):
                logger.error("otp delivery failed: %s", e, extra={"otp_id": str(record.id)})
            else:
                logger.exception("otp delivery failed unexpectedly", extra={"otp_id": str(record.id)})
            self.auditor.submit("🔐 OTP Generated (delivery failed)", {**record.to_audit(), "delivery": "failed"})
            raise IssuanceFailed("could not deliver otp") from e

        self.auditor.submit("🔐 OTP Generated", record.to_audit())
        return record

    async def verify(self, email: str, code: str) -> OtpRecord:
        try:
            record = await self.store.find_one_unverified(email, code, self._issued_after())
            if record is not None and not await self.store.update(record):
                # a concurrent verify flipped it first
                record = None
        except StoreError as e:
            logger.exception("otp verify failed")
            raise VerificationFailed("store unavailable") from e

        if record is None:
            OTP_REJECTED.inc()
            self.auditor.submit("❌ OTP FAILED", {"email": email, "otp": code})
            raise InvalidOTP(email)

        OTP_VERIFIED.inc()
        self.auditor.submit("✅ OTP VERIFIED", record.to_audit())
        return record
