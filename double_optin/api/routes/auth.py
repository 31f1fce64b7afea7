from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from double_optin.db.connection import get_db
from double_optin.db.queries import AccountCreationError, get_account_by_login
from double_optin.handlers.registration import check_login, register_account, resend_verification
from double_optin.handlers.verification import (
    VerificationOutcome,
    VerificationResult,
    check_status,
    verify_by_otp,
    verify_by_token,
)
from double_optin.models.account import AccountCreate
from double_optin.services import Services, get_services

router = APIRouter()

FAILURE_STATUS = {
    VerificationOutcome.RATE_LIMITED: 429,
    VerificationOutcome.NOT_FOUND: 404,
    VerificationOutcome.EMAIL_FAILED: 502,
}

# A malformed link and an unknown link answer identically.
OPAQUE_LINK_OUTCOMES = frozenset({VerificationOutcome.INVALID_FORMAT, VerificationOutcome.NOT_FOUND})
INVALID_LINK_CODE = "invalid_link"


def raise_for_result(result: VerificationResult) -> dict[str, Any]:
    if result.success:
        return result.model_dump(mode="json")
    status_code = FAILURE_STATUS.get(result.outcome, 400)
    detail: dict[str, Any] = {"code": result.outcome.value, "message": result.message}
    if result.attempts_remaining is not None:
        detail["attempts_remaining"] = result.attempts_remaining
    raise HTTPException(status_code=status_code, detail=detail)


class LoginGateRequest(BaseModel):
    login: str = Field(min_length=1)


class ResendRequest(BaseModel):
    account_id: int


class OtpRequest(BaseModel):
    email: EmailStr
    code: str = Field(min_length=1, max_length=32)


@router.post("/register", status_code=201)
async def register(
    payload: AccountCreate,
    session: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    try:
        account, request = await register_account(session=session, services=services, data=payload)
    except AccountCreationError as exc:
        await session.rollback()
        raise HTTPException(
            status_code=409,
            detail={"code": VerificationOutcome.ACCOUNT_CREATION_FAILED.value, "message": str(exc)},
        ) from exc
    return {
        "account": account.to_schema().model_dump(mode="json"),
        "verification": request.model_dump(mode="json") if request else None,
        "message": services.settings.message_verification_sent if request else None,
    }


@router.post("/login-gate")
async def login_gate(
    payload: LoginGateRequest,
    session: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    account = await get_account_by_login(session, payload.login)
    if account is None:
        # Unknown logins are left to the credential check.
        return {"allowed": True}
    decision = check_login(account, services.settings)
    if not decision.allowed:
        raise HTTPException(status_code=403, detail=decision.model_dump())
    return decision.model_dump()


@router.post("/resend")
async def resend(
    payload: ResendRequest,
    session: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    result = await resend_verification(session=session, services=services, account_id=payload.account_id)
    return raise_for_result(result)


@router.post("/verify/{token}")
async def verify(
    token: str,
    session: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    result = await verify_by_token(session=session, services=services, token=token)
    if result.outcome in OPAQUE_LINK_OUTCOMES:
        raise HTTPException(
            status_code=400,
            detail={"code": INVALID_LINK_CODE, "message": services.settings.message_invalid_link},
        )
    return raise_for_result(result)


@router.post("/verify-otp")
async def verify_otp(
    payload: OtpRequest,
    session: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    result = await verify_by_otp(session=session, services=services, email=str(payload.email), code=payload.code)
    return raise_for_result(result)


@router.get("/status/{account_id}")
async def status(
    account_id: int,
    session: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    account_status = await check_status(session=session, account_id=account_id)
    if account_status is None:
        raise HTTPException(status_code=404, detail="account not found")
    return {"account_id": account_id, "status": account_status.value}
