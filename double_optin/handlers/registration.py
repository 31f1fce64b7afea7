from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from double_optin.config import Settings
from double_optin.db.queries import AccountCreationError, create_account, get_account, get_account_by_email
from double_optin.db.verification_tokens import delete_unconsumed_for_owner, normalize_email
from double_optin.handlers.rate_limit import account_subject, try_acquire_resend
from double_optin.handlers.verification import (
    VerificationOutcome,
    VerificationRequest,
    VerificationResult,
    request_verification,
)
from double_optin.models.account import Account, AccountCreate

if TYPE_CHECKING:
    from double_optin.services import Services

logger = logging.getLogger(__name__)

RATE_LIMITED_MESSAGE = "Please wait before requesting another verification email."
EMAIL_CHANGED_MESSAGE = (
    "Your email address has been changed. Please check your inbox for a verification email. "
    "You cannot place orders until verified."
)


class GateDecision(BaseModel):
    allowed: bool
    code: str | None = None
    message: str | None = None
    resend_account_id: int | None = None


async def handle_account_created(
    *,
    session: AsyncSession,
    services: Services,
    account: Account,
    token_type: str = "registration",
) -> VerificationRequest | None:
    """Put a new account on hold until its address is confirmed.

    Accounts already flagged by checkout interception are left alone, as are
    administrators.
    """
    if account.verification_pending or account.checkout_pending:
        return None
    if account.is_admin:
        return None

    account.email_verified = False
    account.verification_pending = True
    await session.flush()
    return await request_verification(
        session=session,
        services=services,
        account=account,
        email=account.email,
        token_type=token_type,
    )


async def register_account(
    *,
    session: AsyncSession,
    services: Services,
    data: AccountCreate,
    source: str = "registration",
) -> tuple[Account, VerificationRequest | None]:
    account = await create_account(session, data)
    logger.info(
        "Account %s registered via %s",
        account.id,
        source,
        extra={"event_type": "registration.created", "ops_payload": {"source": source}},
    )
    if not services.settings.enable_registration_gate:
        await session.commit()
        return account, None
    request = await handle_account_created(session=session, services=services, account=account, token_type=source)
    if request is None:
        await session.commit()
    return account, request


def check_login(account: Account, settings: Settings) -> GateDecision:
    if not settings.enable_registration_gate or account.is_admin:
        return GateDecision(allowed=True)
    if account.email_verified:
        return GateDecision(allowed=True)
    return GateDecision(
        allowed=False,
        code="email_not_verified",
        message=settings.message_not_verified,
        resend_account_id=account.id,
    )


async def resend_verification(
    *,
    session: AsyncSession,
    services: Services,
    account_id: int,
    now: datetime | None = None,
) -> VerificationResult:
    settings = services.settings
    account = await get_account(session, account_id)
    if account is None:
        return VerificationResult(success=False, outcome=VerificationOutcome.NOT_FOUND, message="User not found.")
    if account.email_verified:
        return VerificationResult(
            success=True,
            outcome=VerificationOutcome.ALREADY_VERIFIED,
            message=settings.message_already_verified,
            owner_id=account.id,
            email=account.email,
        )

    limit = await try_acquire_resend(session, account_subject(account.id), settings=settings, now=now)
    if not limit.allowed:
        return VerificationResult(
            success=False,
            outcome=VerificationOutcome.RATE_LIMITED,
            message=RATE_LIMITED_MESSAGE,
            owner_id=account.id,
        )

    token_type = "checkout" if account.checkout_pending else "registration"
    request = await request_verification(
        session=session,
        services=services,
        account=account,
        email=account.email,
        token_type=token_type,
        now=now,
    )
    if not request.email_sent:
        return VerificationResult(
            success=False,
            outcome=VerificationOutcome.EMAIL_FAILED,
            message="Failed to send email. Please try again.",
            owner_id=account.id,
            email=account.email,
        )
    return VerificationResult(
        success=True,
        outcome=VerificationOutcome.SENT,
        message=settings.message_resend_success,
        owner_id=account.id,
        email=account.email,
    )


def detect_email_change(account: Account) -> bool:
    """True when the stored address is not the one last confirmed."""
    if account.last_verified_email is None:
        return False
    return normalize_email(account.last_verified_email) != normalize_email(account.email)


async def change_email(
    *,
    session: AsyncSession,
    services: Services,
    account: Account,
    new_email: str,
) -> VerificationRequest | None:
    """Store a new address and, when it differs from the confirmed one, require re-verification.

    Pending tokens for any other address are deleted so old links stop working.
    Returns the issued request, or None when no re-verification was needed.
    """
    new_email = normalize_email(new_email)
    if new_email != account.email:
        holder = await get_account_by_email(session, new_email)
        if holder is not None and holder.id != account.id:
            raise AccountCreationError("An account is already registered with that email address.")
    changed = new_email != account.email
    account.email = new_email

    needs_verification = detect_email_change(account) or (changed and not account.email_verified)
    if not services.settings.enable_registration_gate or account.is_admin or not needs_verification:
        await session.commit()
        return None

    account.email_verified = False
    account.verification_pending = True
    removed = await delete_unconsumed_for_owner(session, account.id, keep_email=new_email)
    logger.info(
        "Email changed for account %s; %d stale token(s) removed",
        account.id,
        removed,
        extra={"event_type": "registration.email_changed"},
    )
    return await request_verification(
        session=session,
        services=services,
        account=account,
        email=new_email,
        token_type="email_change",
    )
