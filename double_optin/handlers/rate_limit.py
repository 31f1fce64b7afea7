from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta

from pydantic import BaseModel
from sqlalchemy import case, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from double_optin.config import Settings
from double_optin.db.connection import utcnow
from double_optin.db.resend_throttle import ResendThrottle
from double_optin.db.verification_tokens import normalize_email

logger = logging.getLogger(__name__)


class RateLimitResult(BaseModel):
    allowed: bool
    reason: str | None = None
    retry_after_seconds: int | None = None


def account_subject(account_id: int) -> str:
    return f"account:{account_id}"


def _email_digest(email: str) -> str:
    return hashlib.sha256(normalize_email(email).encode("utf-8")).hexdigest()


def checkout_subject(email: str) -> str:
    return f"checkout:{_email_digest(email)}"


def hour_bucket(now: datetime) -> str:
    return now.strftime("%Y%m%d%H")


def _seconds_to_next_hour(now: datetime) -> int:
    next_hour = now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    return max(1, int((next_hour - now).total_seconds()))


async def _get_throttle(session: AsyncSession, subject: str) -> ResendThrottle | None:
    result = await session.execute(
        select(ResendThrottle)
        .where(ResendThrottle.subject == subject)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _evaluate(
    throttle: ResendThrottle | None,
    *,
    now: datetime,
    cooldown_seconds: int,
    max_per_hour: int,
) -> RateLimitResult:
    if throttle is None:
        return RateLimitResult(allowed=True)
    elapsed = (now - throttle.last_resend_at).total_seconds()
    if cooldown_seconds and elapsed < cooldown_seconds:
        return RateLimitResult(
            allowed=False,
            reason="resend_cooldown",
            retry_after_seconds=max(1, int(cooldown_seconds - elapsed)),
        )
    if throttle.hour_bucket == hour_bucket(now) and throttle.resend_count >= max_per_hour:
        return RateLimitResult(
            allowed=False,
            reason="resend_hourly_limit",
            retry_after_seconds=_seconds_to_next_hour(now),
        )
    return RateLimitResult(allowed=True)


async def allow_resend(
    session: AsyncSession,
    subject: str,
    *,
    settings: Settings,
    now: datetime | None = None,
    cooldown_seconds: int | None = None,
    max_per_hour: int | None = None,
) -> RateLimitResult:
    """Read-only check. Does not consume any budget."""
    return _evaluate(
        await _get_throttle(session, subject),
        now=now or utcnow(),
        cooldown_seconds=settings.resend_cooldown_seconds if cooldown_seconds is None else cooldown_seconds,
        max_per_hour=max_per_hour or settings.resend_max_per_hour,
    )


async def record_resend(session: AsyncSession, subject: str, *, now: datetime | None = None) -> None:
    current = now or utcnow()
    bucket = hour_bucket(current)
    throttle = await _get_throttle(session, subject)
    if throttle is None:
        session.add(ResendThrottle(subject=subject, last_resend_at=current, hour_bucket=bucket, resend_count=1))
    else:
        throttle.resend_count = throttle.resend_count + 1 if throttle.hour_bucket == bucket else 1
        throttle.hour_bucket = bucket
        throttle.last_resend_at = current
    await session.flush()


async def _conditional_bump(
    session: AsyncSession,
    subject: str,
    *,
    now: datetime,
    cooldown_seconds: int,
    max_per_hour: int,
) -> int | None:
    bucket = hour_bucket(now)
    stmt = update(ResendThrottle).where(
        ResendThrottle.subject == subject,
        or_(ResendThrottle.hour_bucket != bucket, ResendThrottle.resend_count < max_per_hour),
    )
    if cooldown_seconds:
        stmt = stmt.where(ResendThrottle.last_resend_at <= now - timedelta(seconds=cooldown_seconds))
    result = await session.execute(
        stmt.values(
            resend_count=case(
                (ResendThrottle.hour_bucket == bucket, ResendThrottle.resend_count + 1),
                else_=1,
            ),
            hour_bucket=bucket,
            last_resend_at=now,
        )
        .returning(ResendThrottle.resend_count)
        .execution_options(synchronize_session=False)
    )
    return result.scalar_one_or_none()


async def try_acquire_resend(
    session: AsyncSession,
    subject: str,
    *,
    settings: Settings,
    now: datetime | None = None,
    cooldown_seconds: int | None = None,
    max_per_hour: int | None = None,
) -> RateLimitResult:
    """Check and consume one resend in a single statement.

    Two requests racing for the last slot of the hour cannot both pass: the
    UPDATE only matches while the counter is still under the ceiling.
    """
    current = now or utcnow()
    cooldown = settings.resend_cooldown_seconds if cooldown_seconds is None else cooldown_seconds
    ceiling = max_per_hour or settings.resend_max_per_hour

    for attempt in range(2):
        count = await _conditional_bump(
            session, subject, now=current, cooldown_seconds=cooldown, max_per_hour=ceiling
        )
        if count is not None:
            return RateLimitResult(allowed=True)

        throttle = await _get_throttle(session, subject)
        if throttle is not None:
            denied = _evaluate(throttle, now=current, cooldown_seconds=cooldown, max_per_hour=ceiling)
            if denied.allowed:
                # Row changed between the UPDATE and the read; treat as the limit being hit.
                denied = RateLimitResult(allowed=False, reason="resend_hourly_limit")
            logger.info(
                "Resend denied for %s: %s",
                subject,
                denied.reason,
                extra={"event_type": "rate_limit.denied", "ops_payload": {"reason": denied.reason}},
            )
            return denied

        try:
            async with session.begin_nested():
                session.add(
                    ResendThrottle(
                        subject=subject,
                        last_resend_at=current,
                        hour_bucket=hour_bucket(current),
                        resend_count=1,
                    )
                )
                await session.flush()
        except IntegrityError:
            if attempt:
                raise
            continue
        return RateLimitResult(allowed=True)
    return RateLimitResult(allowed=False, reason="resend_hourly_limit")
