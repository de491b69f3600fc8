from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

import sqlalchemy as sa
from sqlalchemy import Index
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------- Base & naming ----------
class Base(DeclarativeBase):
    # Keep index/constraint names stable for cleaner migrations
    metadata = sa.MetaData(
        naming_convention={
            "ix": "ix_%(column_0_label)s",
            "uq": "uq_%(table_name)s_%(column_0_name)s",
            "ck": "ck_%(table_name)s_%(constraint_name)s",
            "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
            "pk": "pk_%(table_name)s",
        }
    )


# ---------- OTP RECORDS ----------
class OtpRecord(Base):
    """One issuance attempt. Re-issuing for an email adds a row, it never overwrites."""
    __tablename__ = "otp_records"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(sa.Text, nullable=False)
    code: Mapped[str] = mapped_column(sa.Text, nullable=False)  # immutable once inserted
    verified: Mapped[bool] = mapped_column(
        sa.Boolean, nullable=False, default=False, server_default=sa.false()
    )  # false -> true only
    origin_address: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)

    issued_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=_utcnow, server_default=sa.func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow, server_default=sa.func.now()
    )

    __table_args__ = (
        Index("ix_otp_records_lookup", "email", "code", "verified"),
        Index("ix_otp_records_issued_at", "issued_at"),
    )

    def to_audit(self) -> dict:
        return {
            "id": str(self.id),
            "email": self.email,
            "code": self.code,
            "verified": self.verified,
            "origin_address": self.origin_address,
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
