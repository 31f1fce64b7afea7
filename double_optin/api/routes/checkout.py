from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from double_optin.api.authn import optional_account_from_bearer
from double_optin.api.routes.auth import INVALID_LINK_CODE, raise_for_result
from double_optin.db.connection import get_db
from double_optin.db.queries import AccountCreationError, create_order
from double_optin.handlers.checkout import (
    CheckoutBlockedError,
    CheckoutSubmission,
    check_email_verified,
    confirm_guest_checkout_link,
    intercept_checkout,
    request_guest_checkout_verification,
    validate_blocks_order,
)
from double_optin.handlers.verification import VerificationOutcome, verify_by_otp
from double_optin.models.account import Account
from double_optin.models.order import OrderCreate
from double_optin.security.web_auth import create_web_access_token
from double_optin.services import Services, get_services

router = APIRouter()


class EmailRequest(BaseModel):
    email: EmailStr


class CheckoutOtpRequest(BaseModel):
    email: EmailStr
    code: str = Field(min_length=1, max_length=32)


@router.post("", status_code=201)
async def place_order(
    payload: CheckoutSubmission,
    current_account: Account | None = Depends(optional_account_from_bearer),
    session: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    try:
        decision = await intercept_checkout(
            session=session,
            services=services,
            submission=payload,
            current_account=current_account,
        )
    except AccountCreationError as exc:
        await session.rollback()
        raise HTTPException(
            status_code=400,
            detail={"code": VerificationOutcome.ACCOUNT_CREATION_FAILED.value, "message": str(exc)},
        ) from exc

    if not decision.allowed:
        detail: dict[str, Any] = {"code": decision.code, "message": decision.message}
        if decision.code == "verification_required" and decision.signed_in_account_id is not None:
            detail["account_id"] = decision.signed_in_account_id
            detail["access_token"] = create_web_access_token(account_id=decision.signed_in_account_id)
        status_code = 403 if decision.code == "email_not_verified" else 400
        raise HTTPException(status_code=status_code, detail=detail)

    order = await create_order(
        session,
        OrderCreate(
            billing_email=payload.billing_email,
            customer_id=current_account.id if current_account is not None else None,
            total=payload.total,
        ),
    )
    await session.commit()
    return order.to_schema().model_dump(mode="json")


@router.post("/store-api", status_code=201)
async def store_api_order(
    payload: OrderCreate,
    session: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    try:
        await validate_blocks_order(session=session, order=payload, settings=services.settings)
    except CheckoutBlockedError as exc:
        raise HTTPException(status_code=exc.status_code, detail={"code": exc.code, "message": exc.message}) from exc
    order = await create_order(session, payload)
    await session.commit()
    return order.to_schema().model_dump(mode="json")


@router.post("/verification")
async def request_verification(
    payload: EmailRequest,
    session: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    response = await request_guest_checkout_verification(session=session, services=services, email=str(payload.email))
    if response.outcome == VerificationOutcome.RATE_LIMITED:
        raise HTTPException(status_code=429, detail={"code": response.outcome.value, "message": response.message})
    return response.model_dump(mode="json")


@router.get("/verify")
async def verify_link(
    email: str = Query(min_length=3),
    token: str = Query(min_length=1),
    session: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict[str, str]:
    confirmed = await confirm_guest_checkout_link(
        session=session, settings=services.settings, email=email, token=token
    )
    if not confirmed:
        raise HTTPException(
            status_code=400,
            detail={"code": INVALID_LINK_CODE, "message": "Invalid or expired verification link."},
        )
    return {
        "status": "verified",
        "message": "Your email has been verified. You can now proceed with checkout.",
    }


@router.post("/verification-status")
async def verification_status(
    payload: EmailRequest,
    session: AsyncSession = Depends(get_db),
) -> dict[str, bool]:
    state = await check_email_verified(session=session, email=str(payload.email))
    return state.model_dump()


@router.post("/verify-otp")
async def verify_checkout_otp(
    payload: CheckoutOtpRequest,
    session: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    result = await verify_by_otp(session=session, services=services, email=str(payload.email), code=payload.code)
    return raise_for_result(result)
