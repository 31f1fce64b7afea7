from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from double_optin.api.authn import optional_account_from_bearer
from double_optin.api.main import app
from double_optin.handlers.checkout import (
    MESSAGE_ACCOUNT_CREATED,
    MESSAGE_GUEST_NOT_VERIFIED,
    CheckoutBlockedError,
    CheckoutDecision,
    EmailVerificationState,
    GuestVerificationResponse,
)
from double_optin.handlers.verification import VerificationOutcome
from double_optin.models import Account, Order, OrderStatus
from double_optin.security.web_auth import verify_web_access_token


def _order(**overrides: object) -> Order:
    values: dict[str, object] = {
        "id": 501,
        "customer_id": None,
        "billing_email": "guest@example.com",
        "status": OrderStatus.PENDING.value,
        "total": Decimal("25.00"),
        "notes": [],
        "created_at": datetime(2026, 3, 1, tzinfo=UTC),
    }
    values.update(overrides)
    return Order(**values)


@pytest.fixture
def signed_in(make_account: Callable[..., Account]) -> Iterator[Account]:
    account = make_account()
    app.dependency_overrides[optional_account_from_bearer] = lambda: account
    try:
        yield account
    finally:
        app.dependency_overrides.pop(optional_account_from_bearer, None)


class TestPlaceOrder:
    def test_allowed_order_is_created(self, client: TestClient) -> None:
        with (
            patch(
                "double_optin.api.routes.checkout.intercept_checkout",
                new_callable=AsyncMock,
                return_value=CheckoutDecision(allowed=True),
            ),
            patch(
                "double_optin.api.routes.checkout.create_order", new_callable=AsyncMock, return_value=_order()
            ) as mock_create,
        ):
            response = client.post("/checkout", json={"billing_email": "guest@example.com", "total": "25.00"})

        assert response.status_code == 201
        assert response.json()["id"] == 501
        assert mock_create.await_args.args[1].customer_id is None

    def test_new_account_gets_signed_in_and_held(self, client: TestClient) -> None:
        decision = CheckoutDecision(
            allowed=False,
            code="verification_required",
            message=MESSAGE_ACCOUNT_CREATED,
            signed_in_account_id=77,
        )
        with (
            patch(
                "double_optin.api.routes.checkout.intercept_checkout", new_callable=AsyncMock, return_value=decision
            ),
            patch("double_optin.api.routes.checkout.create_order", new_callable=AsyncMock) as mock_create,
        ):
            response = client.post(
                "/checkout", json={"billing_email": "new@example.com", "create_account": True}
            )

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["code"] == "verification_required"
        assert detail["account_id"] == 77
        assert verify_web_access_token(token=detail["access_token"]) == 77
        mock_create.assert_not_awaited()

    def test_unverified_customer_gets_403(self, client: TestClient, signed_in: Account) -> None:
        decision = CheckoutDecision(
            allowed=False, code="email_not_verified", message="verify first", signed_in_account_id=signed_in.id
        )
        with patch(
            "double_optin.api.routes.checkout.intercept_checkout", new_callable=AsyncMock, return_value=decision
        ) as mock_intercept:
            response = client.post("/checkout", json={"billing_email": "member@example.com"})

        assert response.status_code == 403
        assert "access_token" not in response.json()["detail"]
        assert mock_intercept.await_args.kwargs["current_account"] is signed_in

    def test_guest_without_verification_gets_400(self, client: TestClient) -> None:
        decision = CheckoutDecision(
            allowed=False, code="email_verification_required", message=MESSAGE_GUEST_NOT_VERIFIED
        )
        with patch(
            "double_optin.api.routes.checkout.intercept_checkout", new_callable=AsyncMock, return_value=decision
        ):
            response = client.post("/checkout", json={"billing_email": "guest@example.com"})

        assert response.status_code == 400
        assert response.json()["detail"]["message"] == MESSAGE_GUEST_NOT_VERIFIED

    def test_bad_bearer_rejected(self, client: TestClient) -> None:
        response = client.post(
            "/checkout",
            json={"billing_email": "guest@example.com"},
            headers={"Authorization": "Bearer not-a-token"},
        )
        assert response.status_code == 401


class TestStoreApi:
    def test_blocked_order_not_created(self, client: TestClient) -> None:
        with (
            patch(
                "double_optin.api.routes.checkout.validate_blocks_order",
                new_callable=AsyncMock,
                side_effect=CheckoutBlockedError(MESSAGE_GUEST_NOT_VERIFIED),
            ),
            patch("double_optin.api.routes.checkout.create_order", new_callable=AsyncMock) as mock_create,
        ):
            response = client.post("/checkout/store-api", json={"billing_email": "guest@example.com"})

        assert response.status_code == 400
        assert response.json()["detail"] == {
            "code": "email_verification_required",
            "message": MESSAGE_GUEST_NOT_VERIFIED,
        }
        mock_create.assert_not_awaited()

    def test_cleared_order_created(self, client: TestClient, session: AsyncMock) -> None:
        with (
            patch("double_optin.api.routes.checkout.validate_blocks_order", new_callable=AsyncMock),
            patch("double_optin.api.routes.checkout.create_order", new_callable=AsyncMock, return_value=_order()),
        ):
            response = client.post("/checkout/store-api", json={"billing_email": "guest@example.com"})

        assert response.status_code == 201
        session.commit.assert_awaited()


class TestGuestVerification:
    def test_request_sends_email(self, client: TestClient) -> None:
        response_model = GuestVerificationResponse(
            outcome=VerificationOutcome.SENT, verified=False, pending=True, message="Verification email sent."
        )
        with patch(
            "double_optin.api.routes.checkout.request_guest_checkout_verification",
            new_callable=AsyncMock,
            return_value=response_model,
        ):
            response = client.post("/checkout/verification", json={"email": "guest@example.com"})

        assert response.status_code == 200
        assert response.json()["pending"] is True

    def test_request_rate_limited(self, client: TestClient) -> None:
        response_model = GuestVerificationResponse(
            outcome=VerificationOutcome.RATE_LIMITED, verified=False, pending=False, message="slow down"
        )
        with patch(
            "double_optin.api.routes.checkout.request_guest_checkout_verification",
            new_callable=AsyncMock,
            return_value=response_model,
        ):
            response = client.post("/checkout/verification", json={"email": "guest@example.com"})

        assert response.status_code == 429

    def test_link_confirmation(self, client: TestClient) -> None:
        with patch(
            "double_optin.api.routes.checkout.confirm_guest_checkout_link", new_callable=AsyncMock, return_value=True
        ):
            ok = client.get("/checkout/verify", params={"email": "guest@example.com", "token": "ab" * 32})
        with patch(
            "double_optin.api.routes.checkout.confirm_guest_checkout_link", new_callable=AsyncMock, return_value=False
        ):
            bad = client.get("/checkout/verify", params={"email": "guest@example.com", "token": "ab" * 32})

        assert ok.status_code == 200
        assert ok.json()["status"] == "verified"
        assert bad.status_code == 400
        assert bad.json()["detail"]["message"] == "Invalid or expired verification link."

    def test_verification_status(self, client: TestClient) -> None:
        with patch(
            "double_optin.api.routes.checkout.check_email_verified",
            new_callable=AsyncMock,
            return_value=EmailVerificationState(verified=True, pending=False, account_exists=False),
        ):
            response = client.post("/checkout/verification-status", json={"email": "guest@example.com"})

        assert response.json() == {"verified": True, "pending": False, "account_exists": False}
