from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr
from sqlalchemy.ext.asyncio import AsyncSession

from double_optin.api.authn import require_account_from_bearer
from double_optin.db.connection import get_db
from double_optin.db.queries import AccountCreationError, get_order, list_orders_for_customer
from double_optin.handlers.checkout import hold_order
from double_optin.handlers.registration import EMAIL_CHANGED_MESSAGE, change_email
from double_optin.handlers.verification import account_status
from double_optin.models.account import Account
from double_optin.services import Services, get_services

router = APIRouter()


class EmailChangeRequest(BaseModel):
    email: EmailStr


@router.get("/me")
async def me(account: Account = Depends(require_account_from_bearer)) -> dict[str, Any]:
    return {
        "account": account.to_schema().model_dump(mode="json"),
        "status": account_status(account).value,
    }


@router.put("/email")
async def update_email(
    payload: EmailChangeRequest,
    account: Account = Depends(require_account_from_bearer),
    session: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    try:
        request = await change_email(session=session, services=services, account=account, new_email=str(payload.email))
    except AccountCreationError as exc:
        await session.rollback()
        raise HTTPException(status_code=409, detail={"code": "email_exists", "message": str(exc)}) from exc
    return {
        "email": account.email,
        "verification_required": request is not None,
        "message": EMAIL_CHANGED_MESSAGE if request is not None else None,
    }


@router.get("/orders")
async def orders(
    account: Account = Depends(require_account_from_bearer),
    session: AsyncSession = Depends(get_db),
) -> list[dict[str, Any]]:
    rows = await list_orders_for_customer(session, account.id)
    return [row.to_schema().model_dump(mode="json") for row in rows]


@router.post("/orders/{order_id}/hold")
async def hold(
    order_id: int,
    account: Account = Depends(require_account_from_bearer),
    session: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    if not account.is_admin:
        raise HTTPException(status_code=403, detail="admin access required")
    order = await get_order(session, order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="order not found")
    request = await hold_order(session=session, services=services, order=order)
    return {
        "order": order.to_schema().model_dump(mode="json"),
        "verification_sent": bool(request and request.email_sent),
    }
