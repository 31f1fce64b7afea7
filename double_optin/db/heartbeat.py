from __future__ import annotations

from datetime import datetime, timedelta
from typing import Literal
from uuid import UUID, uuid4

from sqlalchemy import String, Uuid, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from double_optin.db.connection import Base, UTCDateTime, utcnow

SweepHealth = Literal["ok", "degraded", "error", "unknown"]

HEARTBEAT_SINGLETON_ID = UUID("00000000-0000-0000-0000-000000000001")
# A sweep counts as missed after two and a half intervals without a heartbeat.
STALE_AFTER_INTERVALS = 2.5


class SweeperHeartbeat(Base):
    __tablename__ = "sweeper_heartbeat"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    last_run_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="ok")
    detail: Mapped[str | None] = mapped_column(String(256), nullable=True)


async def upsert_heartbeat(
    session: AsyncSession,
    *,
    status: str = "ok",
    detail: str | None = None,
    now: datetime | None = None,
) -> None:
    current = now or utcnow()
    detail = detail[:256] if detail else detail
    row = await session.get(SweeperHeartbeat, HEARTBEAT_SINGLETON_ID)
    if row is None:
        session.add(SweeperHeartbeat(id=HEARTBEAT_SINGLETON_ID, last_run_at=current, status=status, detail=detail))
    else:
        row.last_run_at = current
        row.status = status
        row.detail = detail
    await session.commit()


async def get_heartbeat(session: AsyncSession) -> SweeperHeartbeat | None:
    result = await session.execute(
        select(SweeperHeartbeat).where(SweeperHeartbeat.id == HEARTBEAT_SINGLETON_ID)
    )
    return result.scalar_one_or_none()


def sweep_health(
    row: SweeperHeartbeat | None, *, interval_hours: float, now: datetime | None = None
) -> tuple[SweepHealth, str | None]:
    if row is None:
        return "unknown", "no heartbeat recorded yet"
    if row.status == "error":
        return "error", row.detail or "last run had errors"
    age = (now or utcnow()) - row.last_run_at
    if age > timedelta(hours=interval_hours * STALE_AFTER_INTERVALS):
        hours_ago = age.total_seconds() / 3600
        return "degraded", f"last heartbeat {hours_ago:.1f}h ago (expected every {interval_hours:.1f}h)"
    return "ok", row.detail
