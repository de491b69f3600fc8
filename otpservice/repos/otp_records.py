from __future__ import annotations
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import OtpRecord


class StoreError(Exception):
    """Raised when the backing database cannot serve a request."""


def _unverified(email: str, issued_after: Optional[datetime]):
    clauses = [OtpRecord.email == email, OtpRecord.verified == False]  # noqa: E712
    if issued_after is not None:
        clauses.append(OtpRecord.issued_at >= issued_after)
    return clauses


async def find_one_unverified(
    db: AsyncSession, *, email: str, code: str, issued_after: Optional[datetime] = None
) -> Optional[OtpRecord]:
    res = await db.execute(
        select(OtpRecord)
        .where(*_unverified(email, issued_after), OtpRecord.code == code)
        .order_by(OtpRecord.issued_at.asc(), OtpRecord.id.asc())
        .limit(1)
    )
    return res.scalar_one_or_none()


async def mark_verified(db: AsyncSession, record_id: uuid.UUID, *, now: datetime) -> bool:
    """Flip verified on a still-unverified row. False means someone else got there first."""
    res = await db.execute(
        update(OtpRecord)
        .where(OtpRecord.id == record_id, OtpRecord.verified == False)  # noqa: E712
        .values(verified=True, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


async def count_outstanding(db: AsyncSession, *, email: str, issued_after: Optional[datetime] = None) -> int:
    res = await db.execute(
        select(func.count()).select_from(OtpRecord).where(*_unverified(email, issued_after))
    )
    return int(res.scalar_one())


class SqlOtpStore:
    """Record store used by the lifecycle manager. Every call runs in its own short transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def insert(self, record: OtpRecord) -> OtpRecord:
        try:
            async with self._session_factory() as db:
                db.add(record)
                await db.commit()
                return record
        except (SQLAlchemyError, OSError) as e:
            raise StoreError("insert failed") from e

    async def find_one_unverified(
        self, email: str, code: str, issued_after: Optional[datetime] = None
    ) -> Optional[OtpRecord]:
        try:
            async with self._session_factory() as db:
                return await find_one_unverified(db, email=email, code=code, issued_after=issued_after)
        except (SQLAlchemyError, OSError) as e:
            raise StoreError("lookup failed") from e

    async def update(self, record: OtpRecord) -> bool:
        """Persist record.verified = True. Only unverified rows are touched."""
        now = datetime.now(timezone.utc)
        try:
            async with self._session_factory() as db:
                ok = await mark_verified(db, record.id, now=now)
                await db.commit()
        except (SQLAlchemyError, OSError) as e:
            raise StoreError("update failed") from e
        if ok:
            record.verified = True
            record.updated_at = now
        return ok

    async def count_outstanding(self, email: str, issued_after: Optional[datetime] = None) -> int:
        try:
            async with self._session_factory() as db:
                return await count_outstanding(db, email=email, issued_after=issued_after)
        except (SQLAlchemyError, OSError) as e:
            raise StoreError("count failed") from e
