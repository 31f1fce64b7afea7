from __future__ import annotations

import re

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from double_optin.db.verification_tokens import normalize_email
from double_optin.models.account import Account, AccountCreate
from double_optin.models.order import Order, OrderCreate, OrderStatus

USERNAME_UNSAFE_RE = re.compile(r"[^a-z0-9._-]+")


class AccountCreationError(Exception):
    """The account store refused to create an account. The message is shown as-is."""


async def get_account(session: AsyncSession, account_id: int) -> Account | None:
    result = await session.execute(
        select(Account).where(Account.id == account_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_account_by_email(session: AsyncSession, email: str) -> Account | None:
    result = await session.execute(
        select(Account)
        .where(Account.email == normalize_email(email))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_account_by_login(session: AsyncSession, login: str) -> Account | None:
    """Resolve a login name the way the sign-in form does: username first, then email."""
    value = login.strip()
    result = await session.execute(
        select(Account)
        .where(or_(Account.username == value, Account.email == normalize_email(value)))
        .order_by(Account.id)
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def email_exists(session: AsyncSession, email: str) -> bool:
    return await get_account_by_email(session, email) is not None


async def generate_username(session: AsyncSession, email: str) -> str:
    base = USERNAME_UNSAFE_RE.sub("", normalize_email(email).split("@")[0]) or "customer"
    base = base[:50]
    candidate = base
    suffix = 1
    while True:
        result = await session.execute(select(Account.id).where(Account.username == candidate))
        if result.scalar_one_or_none() is None:
            return candidate
        suffix += 1
        candidate = f"{base}-{suffix}"


async def create_account(session: AsyncSession, data: AccountCreate) -> Account:
    email = normalize_email(str(data.email))
    if await email_exists(session, email):
        raise AccountCreationError("An account is already registered with your email address. Please log in.")
    username = (data.username or "").strip() or await generate_username(session, email)
    account = Account(
        email=email,
        username=username,
        display_name=data.display_name or " ".join(p for p in (data.first_name, data.last_name) if p),
        first_name=data.first_name,
        last_name=data.last_name,
        is_admin=data.is_admin,
    )
    try:
        async with session.begin_nested():
            session.add(account)
            await session.flush()
    except IntegrityError as exc:
        raise AccountCreationError("An account with that username or email already exists.") from exc
    await session.refresh(account)
    return account


async def delete_account(session: AsyncSession, account: Account) -> None:
    await session.delete(account)
    await session.flush()


async def create_order(
    session: AsyncSession,
    data: OrderCreate,
    *,
    status: OrderStatus = OrderStatus.PENDING,
) -> Order:
    order = Order(
        customer_id=data.customer_id,
        billing_email=normalize_email(str(data.billing_email)),
        total=data.total,
        status=status.value,
        notes=[],
    )
    session.add(order)
    await session.flush()
    await session.refresh(order)
    return order


async def get_order(session: AsyncSession, order_id: int) -> Order | None:
    return await session.get(Order, order_id)


async def list_orders_for_customer(
    session: AsyncSession, customer_id: int, *, status: OrderStatus | None = None
) -> list[Order]:
    stmt = select(Order).where(Order.customer_id == customer_id)
    if status is not None:
        stmt = stmt.where(Order.status == status.value)
    result = await session.execute(stmt.order_by(Order.created_at.asc()))
    return list(result.scalars().all())


def set_order_status(order: Order, status: OrderStatus, *, note: str | None = None) -> None:
    order.status = status.value
    if note:
        order.add_note(note)
