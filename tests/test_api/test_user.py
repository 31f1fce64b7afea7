from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from double_optin.api.authn import require_account_from_bearer
from double_optin.api.main import app
from double_optin.db.queries import AccountCreationError
from double_optin.handlers.registration import EMAIL_CHANGED_MESSAGE
from double_optin.handlers.verification import VerificationRequest
from double_optin.models import Account, Order, OrderStatus
from double_optin.security.web_auth import create_web_access_token


@pytest.fixture
def current_account(make_account: Callable[..., Account]) -> Iterator[Account]:
    account = make_account(email_verified=True, verification_pending=False, last_verified_email="member@example.com")
    app.dependency_overrides[require_account_from_bearer] = lambda: account
    try:
        yield account
    finally:
        app.dependency_overrides.pop(require_account_from_bearer, None)


def test_me_requires_bearer(client: TestClient) -> None:
    assert client.get("/user/me").status_code == 401


def test_me_rejects_unknown_account(client: TestClient) -> None:
    token = create_web_access_token(account_id=404)
    with patch("double_optin.api.authn.get_account", new_callable=AsyncMock, return_value=None):
        response = client.get("/user/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_me_returns_status(client: TestClient, current_account: Account) -> None:
    response = client.get("/user/me")
    assert response.status_code == 200
    data = response.json()
    assert data["account"]["email"] == "member@example.com"
    assert data["status"] == "verified"


def test_email_change_requires_verification(client: TestClient, current_account: Account) -> None:
    async def _change(*, session, services, account, new_email):  # type: ignore[no-untyped-def]
        account.email = new_email
        return VerificationRequest(
            owner_id=account.id,
            email=new_email,
            token_type="email_change",
            method="link",
            expires_at=datetime(2026, 3, 2, tzinfo=UTC),
            email_sent=True,
        )

    with patch("double_optin.api.routes.user.change_email", side_effect=_change):
        response = client.put("/user/email", json={"email": "moved@example.com"})

    assert response.status_code == 200
    assert response.json() == {
        "email": "moved@example.com",
        "verification_required": True,
        "message": EMAIL_CHANGED_MESSAGE,
    }


def test_email_change_conflict(client: TestClient, current_account: Account) -> None:
    with patch(
        "double_optin.api.routes.user.change_email",
        new_callable=AsyncMock,
        side_effect=AccountCreationError("An account is already registered with that email address."),
    ):
        response = client.put("/user/email", json={"email": "taken@example.com"})

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "email_exists"


def test_orders_listed(client: TestClient, current_account: Account) -> None:
    order = Order(
        id=1,
        customer_id=current_account.id,
        billing_email="member@example.com",
        status=OrderStatus.VERIFICATION_PENDING.value,
        total=Decimal("9.50"),
        notes=["held"],
        created_at=datetime(2026, 3, 1, tzinfo=UTC),
    )
    with patch(
        "double_optin.api.routes.user.list_orders_for_customer", new_callable=AsyncMock, return_value=[order]
    ):
        response = client.get("/user/orders")

    assert response.status_code == 200
    assert response.json()[0]["status"] == "verification-pending"


def test_hold_requires_admin(client: TestClient, current_account: Account) -> None:
    response = client.post("/user/orders/1/hold")
    assert response.status_code == 403


def test_hold_unknown_order(client: TestClient, current_account: Account) -> None:
    current_account.is_admin = True
    with patch("double_optin.api.routes.user.get_order", new_callable=AsyncMock, return_value=None):
        response = client.post("/user/orders/1/hold")
    assert response.status_code == 404
