from __future__ import annotations

import hmac
from datetime import datetime, timedelta

from sqlalchemy import Boolean, Integer, String, delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from double_optin.db.connection import Base, UTCDateTime, utcnow
from double_optin.db.verification_tokens import normalize_email


class GuestCheckoutVerification(Base):
    """Short-lived marker for a checkout email verified before any account exists."""

    __tablename__ = "guest_checkout_verifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, index=True, nullable=False)
    token: Mapped[str] = mapped_column(String(64), nullable=False)
    verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)


async def store_guest_verification(
    session: AsyncSession,
    *,
    email: str,
    token: str,
    ttl: timedelta,
    now: datetime | None = None,
) -> GuestCheckoutVerification:
    email = normalize_email(email)
    created_at = now or utcnow()
    await session.execute(
        delete(GuestCheckoutVerification)
        .where(GuestCheckoutVerification.email == email)
        .execution_options(synchronize_session=False)
    )
    marker = GuestCheckoutVerification(
        email=email,
        token=token,
        verified=False,
        created_at=created_at,
        expires_at=created_at + ttl,
    )
    session.add(marker)
    await session.flush()
    return marker


async def get_active_guest_verification(
    session: AsyncSession, email: str, *, now: datetime | None = None
) -> GuestCheckoutVerification | None:
    result = await session.execute(
        select(GuestCheckoutVerification)
        .where(
            GuestCheckoutVerification.email == normalize_email(email),
            GuestCheckoutVerification.expires_at > (now or utcnow()),
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def confirm_guest_verification(
    session: AsyncSession,
    *,
    email: str,
    token: str,
    ttl: timedelta,
    now: datetime | None = None,
) -> bool:
    """Mark the marker verified if ``token`` matches. The TTL restarts on success."""
    current = now or utcnow()
    marker = await get_active_guest_verification(session, email, now=current)
    if marker is None or not hmac.compare_digest(marker.token, token.lower()):
        return False
    marker.verified = True
    marker.expires_at = current + ttl
    await session.flush()
    return True


async def mark_guest_verified(
    session: AsyncSession, email: str, *, ttl: timedelta, now: datetime | None = None
) -> bool:
    current = now or utcnow()
    marker = await get_active_guest_verification(session, email, now=current)
    if marker is None:
        return False
    marker.verified = True
    marker.expires_at = current + ttl
    await session.flush()
    return True


async def is_guest_email_verified(session: AsyncSession, email: str, *, now: datetime | None = None) -> bool:
    marker = await get_active_guest_verification(session, email, now=now)
    return marker is not None and marker.verified


async def delete_expired_guest_verifications(session: AsyncSession, *, before: datetime | None = None) -> int:
    result = await session.execute(
        delete(GuestCheckoutVerification)
        .where(GuestCheckoutVerification.expires_at <= (before or utcnow()))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0
