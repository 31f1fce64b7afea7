from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from double_optin.config import Settings
from double_optin.db.resend_throttle import ResendThrottle
from double_optin.handlers import rate_limit
from double_optin.handlers.rate_limit import (
    account_subject,
    allow_resend,
    checkout_subject,
    hour_bucket,
    record_resend,
    try_acquire_resend,
)

NOW = datetime(2026, 3, 1, 12, 10, tzinfo=UTC)


def _settings(**overrides: object) -> Settings:
    return Settings(_env_file=None, **overrides)


def test_subjects_hash_email_addresses() -> None:
    assert account_subject(12) == "account:12"
    assert checkout_subject("Buyer@Example.com") == checkout_subject("buyer@example.com")
    assert "buyer" not in checkout_subject("buyer@example.com")
    assert checkout_subject("buyer@example.com").startswith("checkout:")


def test_hour_bucket_format() -> None:
    assert hour_bucket(NOW) == "2026030112"


@pytest.mark.asyncio
async def test_hourly_ceiling_and_rollover(db_session: AsyncSession) -> None:
    settings = _settings(resend_cooldown_seconds=0, resend_max_per_hour=5)
    subject = account_subject(1)

    for minute in range(5):
        result = await try_acquire_resend(db_session, subject, settings=settings, now=NOW + timedelta(minutes=minute))
        assert result.allowed
    await db_session.commit()

    denied = await try_acquire_resend(db_session, subject, settings=settings, now=NOW + timedelta(minutes=6))
    assert not denied.allowed
    assert denied.reason == "resend_hourly_limit"
    assert denied.retry_after_seconds == 44 * 60

    next_hour = NOW.replace(minute=0) + timedelta(hours=1)
    assert (await try_acquire_resend(db_session, subject, settings=settings, now=next_hour)).allowed


@pytest.mark.asyncio
async def test_cooldown_blocks_quick_resend(db_session: AsyncSession) -> None:
    settings = _settings(resend_cooldown_seconds=60)
    subject = account_subject(2)

    assert (await try_acquire_resend(db_session, subject, settings=settings, now=NOW)).allowed
    too_soon = await try_acquire_resend(db_session, subject, settings=settings, now=NOW + timedelta(seconds=20))
    assert not too_soon.allowed
    assert too_soon.reason == "resend_cooldown"
    assert too_soon.retry_after_seconds == 40

    assert (await try_acquire_resend(db_session, subject, settings=settings, now=NOW + timedelta(seconds=60))).allowed


@pytest.mark.asyncio
async def test_subjects_are_independent(db_session: AsyncSession) -> None:
    settings = _settings(resend_cooldown_seconds=0, resend_max_per_hour=1)

    assert (await try_acquire_resend(db_session, account_subject(1), settings=settings, now=NOW)).allowed
    assert (await try_acquire_resend(db_session, account_subject(2), settings=settings, now=NOW)).allowed
    assert not (await try_acquire_resend(db_session, account_subject(1), settings=settings, now=NOW)).allowed


@pytest.mark.asyncio
async def test_per_call_overrides(db_session: AsyncSession) -> None:
    settings = _settings(resend_cooldown_seconds=60, resend_max_per_hour=5)
    subject = checkout_subject("guest@example.com")

    for _ in range(2):
        result = await try_acquire_resend(
            db_session, subject, settings=settings, now=NOW, cooldown_seconds=0, max_per_hour=2
        )
        assert result.allowed
    third = await try_acquire_resend(
        db_session, subject, settings=settings, now=NOW, cooldown_seconds=0, max_per_hour=2
    )
    assert third.reason == "resend_hourly_limit"


@pytest.mark.asyncio
async def test_allow_resend_does_not_consume(db_session: AsyncSession) -> None:
    settings = _settings(resend_cooldown_seconds=0, resend_max_per_hour=1)
    subject = account_subject(3)

    for _ in range(3):
        assert (await allow_resend(db_session, subject, settings=settings, now=NOW)).allowed

    await record_resend(db_session, subject, now=NOW)
    blocked = await allow_resend(db_session, subject, settings=settings, now=NOW)
    assert blocked.allowed is False
    assert blocked.reason == "resend_hourly_limit"


@pytest.mark.asyncio
async def test_first_use_insert_race_retries_as_update(db_session: AsyncSession) -> None:
    settings = _settings(resend_cooldown_seconds=0, resend_max_per_hour=5)
    subject = account_subject(4)
    # Another request created the row while this one still saw no row.
    await record_resend(db_session, subject, now=NOW)
    await db_session.commit()
    db_session.expunge_all()

    real_bump = rate_limit._conditional_bump
    real_get = rate_limit._get_throttle
    calls = {"bump": 0, "get": 0}

    async def stale_bump(*args: object, **kwargs: object) -> int | None:
        calls["bump"] += 1
        if calls["bump"] == 1:
            return None
        return await real_bump(*args, **kwargs)  # type: ignore[arg-type]

    async def stale_get(*args: object, **kwargs: object) -> ResendThrottle | None:
        calls["get"] += 1
        if calls["get"] == 1:
            return None
        return await real_get(*args, **kwargs)  # type: ignore[arg-type]

    with (
        patch("double_optin.handlers.rate_limit._conditional_bump", side_effect=stale_bump),
        patch("double_optin.handlers.rate_limit._get_throttle", side_effect=stale_get),
    ):
        result = await try_acquire_resend(db_session, subject, settings=settings, now=NOW + timedelta(minutes=1))
    await db_session.commit()

    assert result.allowed
    assert calls["bump"] == 2
    rows = (await db_session.execute(select(ResendThrottle).where(ResendThrottle.subject == subject))).scalars().all()
    assert len(rows) == 1
    assert rows[0].resend_count == 2
