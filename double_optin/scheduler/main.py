from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from double_optin.config import Settings, get_settings
from double_optin.db.connection import utcnow
from double_optin.db.guest_checkout import delete_expired_guest_verifications
from double_optin.db.heartbeat import upsert_heartbeat
from double_optin.db.verification_tokens import delete_expired_unconsumed, delete_unconsumed_for_owner
from double_optin.models.account import Account

logger = logging.getLogger(__name__)

SWEEP_LOCK = asyncio.Lock()


@dataclass(slots=True)
class SweepResult:
    expired_tokens: int = 0
    expired_guest_markers: int = 0
    deleted_accounts: int = 0
    errors: list[str] = field(default_factory=list)


async def _delete_stale_unverified_accounts(
    session: AsyncSession, *, older_than_days: int, now: datetime
) -> int:
    cutoff = now - timedelta(days=older_than_days)
    result = await session.execute(
        select(Account.id, Account.created_at).where(
            Account.is_admin.is_(False),
            Account.email_verified.is_(False),
            Account.verification_pending.is_(True),
            Account.created_at <= cutoff,
        )
    )
    stale = list(result.all())
    for account_id, created_at in stale:
        await delete_unconsumed_for_owner(session, account_id)
        logger.info(
            "Deleting unverified account %s created %s",
            account_id,
            created_at.isoformat(),
            extra={"event_type": "scheduler.sweep.account_deleted", "ops_payload": {"account_id": account_id}},
        )
    if stale:
        await session.execute(
            delete(Account)
            .where(Account.id.in_([account_id for account_id, _ in stale]))
            .execution_options(synchronize_session=False)
        )
    return len(stale)


async def run_sweep(
    *,
    session: AsyncSession,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> SweepResult:
    """Remove expired pending records, and optionally stale unverified accounts.

    Verified tokens are never touched.
    """
    if SWEEP_LOCK.locked():
        return SweepResult(errors=["sweep already running"])

    active_settings = settings or get_settings()
    current = now or utcnow()
    result = SweepResult()
    async with SWEEP_LOCK:
        try:
            result.expired_tokens = await delete_expired_unconsumed(session, before=current)
            result.expired_guest_markers = await delete_expired_guest_verifications(session, before=current)
            if active_settings.delete_unverified_after_days > 0:
                result.deleted_accounts = await _delete_stale_unverified_accounts(
                    session, older_than_days=active_settings.delete_unverified_after_days, now=current
                )
            await session.commit()
            logger.info(
                "Sweep completed: %d tokens, %d guest markers, %d accounts",
                result.expired_tokens,
                result.expired_guest_markers,
                result.deleted_accounts,
                extra={
                    "event_type": "scheduler.sweep.completed",
                    "ops_payload": {
                        "expired_tokens": result.expired_tokens,
                        "expired_guest_markers": result.expired_guest_markers,
                        "deleted_accounts": result.deleted_accounts,
                    },
                },
            )
            return result
        except Exception as exc:  # pragma: no cover
            await session.rollback()
            logger.exception(
                "Sweep failed: %s",
                exc,
                extra={
                    "event_type": "scheduler.sweep.error",
                    "ops_payload": {
                        "exception_type": type(exc).__name__,
                        "exception_message": str(exc),
                    },
                },
            )
            result.errors.append(str(exc))
            return result


async def scheduler_loop(
    *,
    session_factory,
    interval_hours: float,
    settings: Settings | None = None,
) -> None:  # type: ignore[no-untyped-def]
    wait_seconds = max(interval_hours, 0.01) * 3600

    while True:
        async with session_factory() as session:
            result = await run_sweep(session=session, settings=settings)
        async with session_factory() as session:
            detail = (
                f"tokens={result.expired_tokens} "
                f"guest_markers={result.expired_guest_markers} "
                f"accounts={result.deleted_accounts}"
            )
            status = "error" if result.errors else "ok"
            if result.errors:
                detail += f" errors={result.errors}"
            await upsert_heartbeat(session, status=status, detail=detail)
        await asyncio.sleep(wait_seconds)
