from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING
from urllib.parse import urlencode

from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from double_optin.config import Settings
from double_optin.db.guest_checkout import (
    confirm_guest_verification,
    get_active_guest_verification,
    is_guest_email_verified,
    mark_guest_verified,
    store_guest_verification,
)
from double_optin.db.queries import (
    create_account,
    get_account,
    get_account_by_email,
    list_orders_for_customer,
    set_order_status,
)
from double_optin.db.verification_tokens import GUEST_OWNER_ID, normalize_email
from double_optin.email.templates import Recipient, build_verification_email
from double_optin.handlers.rate_limit import checkout_subject, try_acquire_resend
from double_optin.handlers.verification import (
    VerificationOutcome,
    VerificationRequest,
    request_verification,
)
from double_optin.models.account import Account, AccountCreate
from double_optin.models.order import Order, OrderCreate, OrderStatus
from double_optin.security.tokens import generate_link_token
from double_optin.signals import VerifiedEvent

if TYPE_CHECKING:
    from double_optin.services import Services

logger = logging.getLogger(__name__)

CHECKOUT_VERIFY_PATH = "/checkout/verify"

MESSAGE_CHECKOUT_NOT_VERIFIED = (
    "Email Verification Required: You must verify your email address before placing an order. "
    "Please check your inbox and click the verification link."
)
MESSAGE_ACCOUNT_CREATED = (
    "Account Created - Email Verification Required! Your account has been created. "
    "A verification email has been sent to your email address. Please check your inbox "
    "(and spam folder), click the verification link, then return to this page to complete your order."
)
MESSAGE_ACCOUNT_EXISTS = "An account is already registered with your email address. Please log in."
MESSAGE_GUEST_NOT_VERIFIED = (
    "Email verification required. Please verify your email address before placing an order. "
    'Enter your email above and click "Send Verification Email".'
)
MESSAGE_CUSTOMER_NOT_VERIFIED = (
    "Email verification required. Please verify your email address before placing an order. "
    "Check your inbox for the verification email."
)
MESSAGE_TOO_MANY_REQUESTS = "Too many verification requests. Please wait before trying again."
NOTE_RELEASED = "Customer email verified. Order released from verification hold."
NOTE_READY = "Email verified - order ready for payment/processing."
NOTE_HELD = "Order on hold until the customer verifies their email address."


class CheckoutBlockedError(Exception):
    """Raised to stop an order from being persisted."""

    def __init__(self, message: str, *, code: str = "email_verification_required", status_code: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code


class CheckoutSubmission(BaseModel):
    billing_email: EmailStr
    billing_first_name: str = ""
    billing_last_name: str = ""
    create_account: bool = False
    account_username: str | None = Field(default=None, max_length=60)
    total: Decimal = Field(default=Decimal("0"), ge=0)


class CheckoutDecision(BaseModel):
    allowed: bool
    code: str | None = None
    message: str | None = None
    signed_in_account_id: int | None = None
    verification: VerificationRequest | None = None


class GuestVerificationResponse(BaseModel):
    outcome: VerificationOutcome
    verified: bool
    pending: bool
    message: str


class EmailVerificationState(BaseModel):
    verified: bool
    pending: bool
    account_exists: bool


def guest_ttl(settings: Settings) -> timedelta:
    return timedelta(minutes=settings.guest_checkout_ttl_minutes)


def checkout_verification_url(settings: Settings, *, email: str, token: str) -> str:
    query = urlencode({"email": email, "token": token})
    return f"{settings.app_public_base_url}{CHECKOUT_VERIFY_PATH}?{query}"


async def is_email_cleared_for_checkout(
    session: AsyncSession, email: str, *, now: datetime | None = None
) -> bool:
    if await is_guest_email_verified(session, email, now=now):
        return True
    account = await get_account_by_email(session, email)
    return account is not None and account.email_verified


async def intercept_checkout(
    *,
    session: AsyncSession,
    services: Services,
    submission: CheckoutSubmission,
    current_account: Account | None,
) -> CheckoutDecision:
    """Decide whether a classic checkout submission may become an order.

    A guest who asks for an account gets one immediately, is signed in, and is
    held at checkout until the address is confirmed.
    """
    settings = services.settings
    if not settings.enable_checkout_gate:
        return CheckoutDecision(allowed=True)

    if current_account is not None:
        if current_account.is_admin or current_account.email_verified:
            return CheckoutDecision(allowed=True)
        return CheckoutDecision(
            allowed=False,
            code="email_not_verified",
            message=MESSAGE_CHECKOUT_NOT_VERIFIED,
            signed_in_account_id=current_account.id,
        )

    email = normalize_email(str(submission.billing_email))
    if submission.create_account:
        if await get_account_by_email(session, email) is not None:
            return CheckoutDecision(allowed=False, code="account_exists", message=MESSAGE_ACCOUNT_EXISTS)

        account = await create_account(
            session,
            AccountCreate(
                email=email,
                username=submission.account_username,
                first_name=submission.billing_first_name,
                last_name=submission.billing_last_name,
            ),
        )
        account.email_verified = False
        account.verification_pending = True
        account.checkout_pending = True
        await session.flush()
        logger.info(
            "Account %s created at checkout; held for verification",
            account.id,
            extra={"event_type": "checkout.account_created"},
        )
        request = await request_verification(
            session=session,
            services=services,
            account=account,
            email=email,
            token_type="checkout",
        )
        return CheckoutDecision(
            allowed=False,
            code="verification_required",
            message=MESSAGE_ACCOUNT_CREATED,
            signed_in_account_id=account.id,
            verification=request,
        )

    if await is_email_cleared_for_checkout(session, email):
        return CheckoutDecision(allowed=True)
    return CheckoutDecision(allowed=False, code="email_verification_required", message=MESSAGE_GUEST_NOT_VERIFIED)


async def validate_blocks_order(
    *,
    session: AsyncSession,
    order: OrderCreate,
    settings: Settings,
) -> None:
    """Raise CheckoutBlockedError unless the order's email is cleared. Nothing is persisted here."""
    if not settings.enable_checkout_gate:
        return

    billing_email = normalize_email(str(order.billing_email))
    if await is_guest_email_verified(session, billing_email):
        return

    account = await get_account(session, order.customer_id) if order.customer_id else None
    if account is None:
        existing = await get_account_by_email(session, billing_email)
        if existing is not None and existing.email_verified:
            return
        raise CheckoutBlockedError(MESSAGE_GUEST_NOT_VERIFIED)

    if account.is_admin or account.email_verified:
        return
    raise CheckoutBlockedError(MESSAGE_CUSTOMER_NOT_VERIFIED)


async def _send_guest_link(services: Services, *, email: str, token: str) -> bool:
    settings = services.settings
    rendered = build_verification_email(
        settings,
        recipient=Recipient.guest(email),
        verification_url=checkout_verification_url(settings, email=email, token=token),
    )
    return await services.email_sender.send(
        to=email, subject=rendered.subject, html_body=rendered.html, text_body=rendered.text
    )


async def request_guest_checkout_verification(
    *,
    session: AsyncSession,
    services: Services,
    email: str,
    now: datetime | None = None,
) -> GuestVerificationResponse:
    settings = services.settings
    email = normalize_email(email)

    limit = await try_acquire_resend(
        session,
        checkout_subject(email),
        settings=settings,
        now=now,
        cooldown_seconds=0,
        max_per_hour=settings.checkout_verification_max_per_hour,
    )
    await session.commit()
    if not limit.allowed:
        return GuestVerificationResponse(
            outcome=VerificationOutcome.RATE_LIMITED, verified=False, pending=False, message=MESSAGE_TOO_MANY_REQUESTS
        )

    account = await get_account_by_email(session, email)
    if account is not None:
        if account.email_verified:
            return GuestVerificationResponse(
                outcome=VerificationOutcome.ALREADY_VERIFIED,
                verified=True,
                pending=False,
                message="Email already verified.",
            )
        request = await request_verification(
            session=session,
            services=services,
            account=account,
            email=email,
            token_type="checkout_existing",
            now=now,
        )
        return GuestVerificationResponse(
            outcome=VerificationOutcome.SENT if request.email_sent else VerificationOutcome.EMAIL_FAILED,
            verified=False,
            pending=True,
            message="Verification email sent.",
        )

    token = generate_link_token()
    await store_guest_verification(session, email=email, token=token, ttl=guest_ttl(settings), now=now)
    await session.commit()
    if settings.otp_enabled:
        request = await request_verification(
            session=session,
            services=services,
            account=None,
            email=email,
            token_type="checkout",
            now=now,
        )
        sent = request.email_sent
    else:
        sent = await _send_guest_link(services, email=email, token=token)

    if not sent:
        logger.warning(
            "Failed to send checkout verification email",
            extra={"event_type": "checkout.guest.email_failed"},
        )
    return GuestVerificationResponse(
        outcome=VerificationOutcome.SENT if sent else VerificationOutcome.EMAIL_FAILED,
        verified=False,
        pending=True,
        message="Verification email sent.",
    )


async def confirm_guest_checkout_link(
    *,
    session: AsyncSession,
    settings: Settings,
    email: str,
    token: str,
    now: datetime | None = None,
) -> bool:
    confirmed = await confirm_guest_verification(
        session, email=email, token=token.strip(), ttl=guest_ttl(settings), now=now
    )
    if confirmed:
        await session.commit()
        logger.info("Guest checkout email confirmed", extra={"event_type": "checkout.guest.verified"})
    return confirmed


async def check_email_verified(*, session: AsyncSession, email: str) -> EmailVerificationState:
    account = await get_account_by_email(session, email)
    if account is not None:
        return EmailVerificationState(
            verified=account.email_verified,
            pending=not account.email_verified,
            account_exists=True,
        )
    marker = await get_active_guest_verification(session, email)
    if marker is None:
        return EmailVerificationState(verified=False, pending=False, account_exists=False)
    return EmailVerificationState(verified=marker.verified, pending=not marker.verified, account_exists=False)


async def release_held_orders(event: VerifiedEvent, session: AsyncSession, *, settings: Settings) -> None:
    """Lift checkout holds once an address is confirmed."""
    if event.owner_id == GUEST_OWNER_ID:
        if not await mark_guest_verified(session, event.email, ttl=guest_ttl(settings)):
            marker = await store_guest_verification(
                session, email=event.email, token=generate_link_token(), ttl=guest_ttl(settings)
            )
            marker.verified = True
            await session.flush()
        return

    account = await get_account(session, event.owner_id)
    if account is None:
        return
    account.checkout_pending = False
    account.last_verified_email = event.email

    held = await list_orders_for_customer(session, account.id, status=OrderStatus.VERIFICATION_PENDING)
    for order in held:
        order.add_note(NOTE_RELEASED)
        set_order_status(order, OrderStatus.PENDING, note=NOTE_READY)
    if held:
        logger.info(
            "Released %d held order(s) for account %s",
            len(held),
            account.id,
            extra={"event_type": "checkout.orders.released"},
        )
    await session.flush()


async def hold_order(*, session: AsyncSession, services: Services, order: Order) -> VerificationRequest | None:
    set_order_status(order, OrderStatus.VERIFICATION_PENDING, note=NOTE_HELD)
    await session.flush()
    account = await get_account(session, order.customer_id) if order.customer_id else None
    if account is None:
        await session.commit()
        return None
    return await request_verification(
        session=session,
        services=services,
        account=account,
        email=account.email,
        token_type="order_verification",
    )
