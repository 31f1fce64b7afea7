from __future__ import annotations

import logging
from datetime import datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import Index, Integer, String, Uuid, delete, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from double_optin.db.connection import Base, UTCDateTime, utcnow
from double_optin.models.account import AccountId

logger = logging.getLogger(__name__)

GUEST_OWNER_ID = 0


class VerificationToken(Base):
    __tablename__ = "verification_tokens"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    owner_id: Mapped[int] = mapped_column(AccountId, nullable=False, index=True, default=GUEST_OWNER_ID)
    token: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    otp_code: Mapped[str | None] = mapped_column(String(6), nullable=True, default=None)
    otp_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    token_type: Mapped[str] = mapped_column(String(50), nullable=False, default="registration")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    verified_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, default=None)

    __table_args__ = (
        Index(
            "uq_verification_tokens_active",
            "owner_id",
            "email",
            "token_type",
            unique=True,
            postgresql_where=text("verified_at IS NULL"),
            sqlite_where=text("verified_at IS NULL"),
        ),
    )

    @property
    def is_verified(self) -> bool:
        return self.verified_at is not None

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at


def normalize_email(email: str) -> str:
    return email.strip().lower()


async def _delete_unconsumed_for_tuple(
    session: AsyncSession, *, owner_id: int, email: str, token_type: str
) -> int:
    result = await session.execute(
        delete(VerificationToken)
        .where(
            VerificationToken.owner_id == owner_id,
            VerificationToken.email == email,
            VerificationToken.token_type == token_type,
            VerificationToken.verified_at.is_(None),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def put_token(
    session: AsyncSession,
    *,
    owner_id: int,
    email: str,
    token_type: str,
    token: str,
    ttl: timedelta,
    otp_code: str | None = None,
    now: datetime | None = None,
) -> VerificationToken:
    """Store a fresh token, replacing any unconsumed one for the same owner/email/type.

    The replaced rows are deleted, not just shadowed. If a concurrent writer
    inserts for the same tuple between our delete and insert, the partial
    unique index rejects one of them and we redo the swap once.
    """
    email = normalize_email(email)
    created_at = now or utcnow()
    for attempt in range(2):
        replaced = await _delete_unconsumed_for_tuple(
            session, owner_id=owner_id, email=email, token_type=token_type
        )
        record = VerificationToken(
            owner_id=owner_id,
            token=token,
            otp_code=otp_code.upper() if otp_code else None,
            otp_attempts=0,
            email=email,
            token_type=token_type,
            created_at=created_at,
            expires_at=created_at + ttl,
        )
        try:
            async with session.begin_nested():
                session.add(record)
                await session.flush()
        except IntegrityError:
            if attempt:
                raise
            logger.warning(
                "Concurrent token insert for owner %s type %s; retrying",
                owner_id,
                token_type,
                extra={"event_type": "tokens.put.retry"},
            )
            continue
        if replaced:
            logger.info(
                "Replaced %d unconsumed token(s) for owner %s type %s",
                replaced,
                owner_id,
                token_type,
                extra={"event_type": "tokens.put.replaced"},
            )
        return record
    raise RuntimeError("unreachable")  # pragma: no cover


async def find_by_token(session: AsyncSession, token: str) -> VerificationToken | None:
    """Exact lookup. Callers validate the 64-hex shape first."""
    result = await session.execute(
        select(VerificationToken)
        .where(VerificationToken.token == token.lower())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def find_latest_unconsumed_by_email(session: AsyncSession, email: str) -> VerificationToken | None:
    result = await session.execute(
        select(VerificationToken)
        .where(
            VerificationToken.email == normalize_email(email),
            VerificationToken.verified_at.is_(None),
        )
        .order_by(VerificationToken.created_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def mark_verified(
    session: AsyncSession,
    record_id: UUID,
    *,
    now: datetime | None = None,
    max_attempts: int | None = None,
) -> bool:
    """Consume a record. Returns True only for the call that performed the transition."""
    stmt = update(VerificationToken).where(
        VerificationToken.id == record_id,
        VerificationToken.verified_at.is_(None),
    )
    if max_attempts is not None:
        stmt = stmt.where(VerificationToken.otp_attempts < max_attempts)
    result = await session.execute(
        stmt.values(verified_at=now or utcnow()).execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def increment_attempts(session: AsyncSession, record_id: UUID, *, max_attempts: int) -> int | None:
    """Count one failed OTP submission.

    Compare-and-increment: the counter never moves past ``max_attempts``, so two
    racing wrong guesses cannot both slip under the ceiling. Returns the new
    count, or None when the budget was already spent or the record is consumed.
    """
    result = await session.execute(
        update(VerificationToken)
        .where(
            VerificationToken.id == record_id,
            VerificationToken.verified_at.is_(None),
            VerificationToken.otp_attempts < max_attempts,
        )
        .values(otp_attempts=VerificationToken.otp_attempts + 1)
        .returning(VerificationToken.otp_attempts)
        .execution_options(synchronize_session=False)
    )
    return result.scalar_one_or_none()


async def delete_expired_unconsumed(session: AsyncSession, *, before: datetime | None = None) -> int:
    result = await session.execute(
        delete(VerificationToken)
        .where(
            VerificationToken.expires_at <= (before or utcnow()),
            VerificationToken.verified_at.is_(None),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def delete_unconsumed_for_owner(
    session: AsyncSession, owner_id: int, *, keep_email: str | None = None
) -> int:
    stmt = delete(VerificationToken).where(
        VerificationToken.owner_id == owner_id,
        VerificationToken.verified_at.is_(None),
    )
    if keep_email is not None:
        stmt = stmt.where(VerificationToken.email != normalize_email(keep_email))
    result = await session.execute(stmt.execution_options(synchronize_session=False))
    return result.rowcount or 0
