from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from double_optin.api.main import app
from double_optin.config import Settings
from double_optin.db.connection import get_db
from double_optin.models import Account
from double_optin.services import Services, build_services


@pytest.fixture
def session() -> Iterator[AsyncMock]:
    mock_session = AsyncMock()
    app.dependency_overrides[get_db] = lambda: mock_session
    try:
        yield mock_session
    finally:
        app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def api_services(email_sender: MagicMock) -> Iterator[Services]:
    original = app.state.services
    app.state.services = build_services(Settings(_env_file=None), email_sender=email_sender)
    try:
        yield app.state.services
    finally:
        app.state.services = original


@pytest.fixture
def client(session: AsyncMock, api_services: Services) -> TestClient:
    return TestClient(app)


@pytest.fixture
def make_account() -> Callable[..., Account]:
    def _make(**overrides: Any) -> Account:
        values: dict[str, Any] = {
            "id": 11,
            "email": "member@example.com",
            "username": "member",
            "display_name": "",
            "first_name": "",
            "last_name": "",
            "is_admin": False,
            "email_verified": False,
            "verification_pending": True,
            "checkout_pending": False,
            "last_verified_email": None,
            "verified_at": None,
            "created_at": datetime(2026, 3, 1, tzinfo=UTC),
        }
        values.update(overrides)
        return Account(**values)

    return _make
