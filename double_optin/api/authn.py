from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from double_optin.db.connection import get_db
from double_optin.db.queries import get_account
from double_optin.models.account import Account
from double_optin.security.web_auth import verify_web_access_token


def resolve_account_id_from_bearer(*, authorization: str | None) -> int:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="missing bearer token")
    token = authorization.removeprefix("Bearer ").strip()
    account_id = verify_web_access_token(token=token)
    if account_id is None:
        raise HTTPException(status_code=401, detail="invalid bearer token")
    return account_id


def require_account_id_from_bearer(
    authorization: Annotated[str | None, Header()] = None,
) -> int:
    return resolve_account_id_from_bearer(authorization=authorization)


async def require_account_from_bearer(
    session: Annotated[AsyncSession, Depends(get_db)],
    account_id: Annotated[int, Depends(require_account_id_from_bearer)],
) -> Account:
    account = await get_account(session, account_id)
    if account is None:
        raise HTTPException(status_code=401, detail="unknown account")
    return account


async def optional_account_from_bearer(
    session: Annotated[AsyncSession, Depends(get_db)],
    authorization: Annotated[str | None, Header()] = None,
) -> Account | None:
    """Checkout accepts guests, so a missing header is not an error. A bad one still is."""
    if authorization is None:
        return None
    account_id = resolve_account_id_from_bearer(authorization=authorization)
    account = await get_account(session, account_id)
    if account is None:
        raise HTTPException(status_code=401, detail="unknown account")
    return account
