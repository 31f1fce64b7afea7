from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from double_optin.api.authn import require_account_from_bearer
from double_optin.db.connection import check_db_health, get_db
from double_optin.db.heartbeat import get_heartbeat, sweep_health
from double_optin.models.account import Account
from double_optin.ops import events as ops_events
from double_optin.ops.events import EventLevel
from double_optin.services import Services, get_services

router = APIRouter()


class ServiceStatus(BaseModel):
    name: str
    status: Literal["ok", "degraded", "error", "unknown"]
    detail: str | None = None


class OpsStatusResponse(BaseModel):
    generated_at: str
    services: list[ServiceStatus]


class OpsEventResponse(BaseModel):
    timestamp: str
    level: EventLevel
    component: str
    event_type: str
    message: str
    correlation_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


def _require_admin(account: Account = Depends(require_account_from_bearer)) -> Account:
    if not account.is_admin:
        raise HTTPException(status_code=403, detail="admin access required")
    return account


@router.get("/status", response_model=OpsStatusResponse)
async def status(
    _: Account = Depends(_require_admin),
    session: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> OpsStatusResponse:
    settings = services.settings
    db_ok = await check_db_health()
    email_ready = bool(settings.resend_api_key)

    sweep_status, sweep_detail = sweep_health(
        await get_heartbeat(session), interval_hours=settings.sweep_interval_hours
    )

    return OpsStatusResponse(
        generated_at=ops_events.iso_now(),
        services=[
            ServiceStatus(name="api", status="ok"),
            ServiceStatus(name="database", status="ok" if db_ok else "error"),
            ServiceStatus(
                name="email_transport",
                status="ok" if email_ready else "degraded",
                detail="resend enabled" if email_ready else "email sending disabled, logging only",
            ),
            ServiceStatus(name="sweeper", status=sweep_status, detail=sweep_detail),
        ],
    )


@router.get("/events", response_model=list[OpsEventResponse])
async def events(
    _: Account = Depends(_require_admin),
    limit: int = Query(100, ge=1, le=500),
    level: EventLevel | None = Query(default=None),
    event_type: str | None = Query(default=None, alias="type"),
    correlation_id: str | None = Query(default=None),
) -> list[OpsEventResponse]:
    items = ops_events.ops_event_buffer.recent(
        limit=limit, level=level, event_type=event_type, correlation_id=correlation_id
    )
    return [OpsEventResponse(**item) for item in items]
