from __future__ import annotations

import hmac
import logging
from datetime import datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from double_optin.db.connection import utcnow
from double_optin.db.queries import get_account
from double_optin.db.verification_tokens import (
    GUEST_OWNER_ID,
    VerificationToken,
    find_by_token,
    find_latest_unconsumed_by_email,
    increment_attempts,
    mark_verified,
    normalize_email,
    put_token,
)
from double_optin.email.templates import Recipient, build_verification_email
from double_optin.models.account import Account
from double_optin.security.tokens import (
    canonicalize_otp,
    generate_link_token,
    generate_otp,
    is_link_token_format,
    is_otp_format,
    normalize_otp_length,
)
from double_optin.signals import VerifiedEvent

if TYPE_CHECKING:
    from double_optin.services import Services

logger = logging.getLogger(__name__)


class VerificationOutcome(StrEnum):
    VERIFIED = "verified"
    ALREADY_VERIFIED = "already_verified"
    INVALID_FORMAT = "invalid_format"
    NOT_FOUND = "not_found"
    NO_PENDING = "no_pending"
    EXPIRED = "expired"
    MAX_ATTEMPTS = "max_attempts"
    INCORRECT_CODE = "incorrect_code"
    RATE_LIMITED = "rate_limited"
    ACCOUNT_CREATION_FAILED = "account_creation_failed"
    SENT = "sent"
    EMAIL_FAILED = "email_failed"


class VerificationResult(BaseModel):
    success: bool
    outcome: VerificationOutcome
    message: str
    owner_id: int | None = None
    email: str | None = None
    attempts_remaining: int | None = None


class VerificationRequest(BaseModel):
    owner_id: int
    email: str
    token_type: str
    method: Literal["link", "otp"]
    expires_at: datetime
    email_sent: bool


class AccountStatus(StrEnum):
    VERIFIED = "verified"
    PENDING = "pending"
    UNVERIFIED = "unverified"


def _failure(outcome: VerificationOutcome, message: str, **extra: object) -> VerificationResult:
    return VerificationResult(success=False, outcome=outcome, message=message, **extra)


async def request_verification(
    *,
    session: AsyncSession,
    services: Services,
    account: Account | None,
    email: str,
    token_type: str,
    now: datetime | None = None,
) -> VerificationRequest:
    """Issue a fresh token (plus a code in OTP mode) and email it.

    The record is committed before the send, so a failed send leaves a
    usable token behind and is only reported through ``email_sent``.
    """
    settings = services.settings
    email = normalize_email(email)
    owner_id = account.id if account is not None else GUEST_OWNER_ID

    token = generate_link_token()
    otp_code: str | None = None
    if settings.otp_enabled:
        otp_code = generate_otp(settings.otp_length, settings.otp_charset)
        ttl = timedelta(minutes=settings.otp_expiry_minutes)
    else:
        ttl = timedelta(hours=settings.link_expiry_hours)

    record = await put_token(
        session,
        owner_id=owner_id,
        email=email,
        token_type=token_type,
        token=token,
        otp_code=otp_code,
        ttl=ttl,
        now=now,
    )
    expires_at = record.expires_at
    await session.commit()

    recipient = Recipient.from_account(account) if account is not None else Recipient.guest(email)
    if otp_code is not None:
        rendered = build_verification_email(settings, recipient=recipient, otp_code=otp_code)
    else:
        rendered = build_verification_email(
            settings, recipient=recipient, verification_url=settings.verification_url(token)
        )

    sent = await services.email_sender.send(
        to=email, subject=rendered.subject, html_body=rendered.html, text_body=rendered.text
    )
    if not sent:
        logger.warning(
            "Failed to send verification email for owner %s; token still valid",
            owner_id,
            extra={"event_type": "verification.email.failed", "ops_payload": {"kind": token_type}},
        )
    else:
        logger.info(
            "Verification requested for owner %s (%s)",
            owner_id,
            token_type,
            extra={"event_type": "verification.requested", "ops_payload": {"kind": token_type}},
        )

    return VerificationRequest(
        owner_id=owner_id,
        email=email,
        token_type=token_type,
        method=settings.verification_method,
        expires_at=expires_at,
        email_sent=sent,
    )


async def _complete(
    *,
    session: AsyncSession,
    services: Services,
    record: VerificationToken,
    now: datetime,
    max_attempts: int | None = None,
) -> VerificationResult | None:
    """Apply the verified transition. None means another request got there first."""
    owner_id, email, token_type = record.owner_id, record.email, record.token_type
    if not await mark_verified(session, record.id, now=now, max_attempts=max_attempts):
        return None

    if owner_id != GUEST_OWNER_ID:
        account = await get_account(session, owner_id)
        if account is not None:
            account.email_verified = True
            account.verification_pending = False
            account.last_verified_email = email
            account.verified_at = now
    await session.commit()

    logger.info(
        "Email verified for owner %s (%s)",
        owner_id,
        token_type,
        extra={"event_type": "verification.verified", "ops_payload": {"kind": token_type}},
    )
    await services.bus.emit(VerifiedEvent(owner_id=owner_id, email=email, token_type=token_type), session)
    return VerificationResult(
        success=True,
        outcome=VerificationOutcome.VERIFIED,
        message=services.settings.message_verification_success,
        owner_id=owner_id,
        email=email,
    )


async def verify_by_token(
    *,
    session: AsyncSession,
    services: Services,
    token: str,
    now: datetime | None = None,
) -> VerificationResult:
    settings = services.settings
    current = now or utcnow()
    token = token.strip()

    if not is_link_token_format(token):
        return _failure(VerificationOutcome.INVALID_FORMAT, settings.message_invalid_link)

    record = await find_by_token(session, token)
    if record is None:
        return _failure(VerificationOutcome.NOT_FOUND, settings.message_invalid_link)

    if record.is_verified:
        return VerificationResult(
            success=True,
            outcome=VerificationOutcome.ALREADY_VERIFIED,
            message=settings.message_already_verified,
            owner_id=record.owner_id,
            email=record.email,
        )

    if record.is_expired(current):
        return _failure(VerificationOutcome.EXPIRED, settings.message_verification_failed, email=record.email)

    result = await _complete(session=session, services=services, record=record, now=current)
    if result is None:
        return VerificationResult(
            success=True,
            outcome=VerificationOutcome.ALREADY_VERIFIED,
            message=settings.message_already_verified,
            owner_id=record.owner_id,
            email=record.email,
        )
    return result


def _otp_format_message(length: int, charset: str) -> str:
    size = normalize_otp_length(length)
    if charset == "numeric":
        return f"Invalid OTP format. Please enter a {size}-digit numeric code."
    return f"Invalid OTP format. Please enter a {size}-character code."


def _max_attempts_message(max_attempts: int) -> str:
    return f"Maximum attempts ({max_attempts}) exceeded. Please request a new code."


async def verify_by_otp(
    *,
    session: AsyncSession,
    services: Services,
    email: str,
    code: str,
    now: datetime | None = None,
) -> VerificationResult:
    """Check a submitted one-time code against the newest pending record for ``email``.

    Format errors are reported before any lookup and never consume an
    attempt. Wrong codes are counted with a compare-and-increment, so the
    attempt budget holds under concurrent submissions.
    """
    settings = services.settings
    current = now or utcnow()
    code = canonicalize_otp(code)
    max_attempts = settings.otp_max_attempts

    if not is_otp_format(code, length=settings.otp_length, charset=settings.otp_charset):
        return _failure(
            VerificationOutcome.INVALID_FORMAT, _otp_format_message(settings.otp_length, settings.otp_charset)
        )

    record = await find_latest_unconsumed_by_email(session, email)
    if record is None or record.otp_code is None:
        return _failure(
            VerificationOutcome.NO_PENDING, "No pending verification found. Please request a new code."
        )

    if record.is_expired(current):
        return _failure(
            VerificationOutcome.EXPIRED, "This code has expired. Please request a new one.", email=record.email
        )

    if record.otp_attempts >= max_attempts:
        return _failure(
            VerificationOutcome.MAX_ATTEMPTS, _max_attempts_message(max_attempts), attempts_remaining=0
        )

    if not hmac.compare_digest(record.otp_code.upper().encode(), code.encode()):
        attempts = await increment_attempts(session, record.id, max_attempts=max_attempts)
        await session.commit()
        remaining = 0 if attempts is None else max_attempts - attempts
        if remaining <= 0:
            logger.info(
                "OTP attempts exhausted for owner %s",
                record.owner_id,
                extra={"event_type": "verification.otp.exhausted"},
            )
            return _failure(
                VerificationOutcome.MAX_ATTEMPTS,
                "Maximum attempts exceeded. Please request a new code.",
                attempts_remaining=0,
            )
        return _failure(
            VerificationOutcome.INCORRECT_CODE,
            f"Incorrect code. {remaining} attempts remaining.",
            attempts_remaining=remaining,
        )

    result = await _complete(
        session=session, services=services, record=record, now=current, max_attempts=max_attempts
    )
    if result is not None:
        return result

    # Lost the race: either a parallel submission consumed the record or the
    # budget ran out between the read and the transition.
    refreshed = await find_by_token(session, record.token)
    if refreshed is not None and refreshed.is_verified:
        return VerificationResult(
            success=True,
            outcome=VerificationOutcome.ALREADY_VERIFIED,
            message=settings.message_already_verified,
            owner_id=refreshed.owner_id,
            email=refreshed.email,
        )
    return _failure(VerificationOutcome.MAX_ATTEMPTS, _max_attempts_message(max_attempts), attempts_remaining=0)


async def check_status(*, session: AsyncSession, account_id: int) -> AccountStatus | None:
    account = await get_account(session, account_id)
    if account is None:
        return None
    return account_status(account)


def account_status(account: Account) -> AccountStatus:
    if account.email_verified:
        return AccountStatus.VERIFIED
    if account.verification_pending:
        return AccountStatus.PENDING
    return AccountStatus.UNVERIFIED
