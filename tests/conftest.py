from __future__ import annotations

import os
from collections.abc import AsyncIterator, Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from double_optin import models  # noqa: F401
from double_optin.config import Settings
from double_optin.db import guest_checkout, heartbeat, resend_throttle, verification_tokens  # noqa: F401
from double_optin.db.connection import Base
from double_optin.services import Services, build_services

SQLITE_MEMORY_URL = "sqlite+aiosqlite:///:memory:"

# Modules such as double_optin.api.main read settings at import time.
os.environ.setdefault("DATABASE_URL", SQLITE_MEMORY_URL)
os.environ.setdefault("APP_PUBLIC_BASE_URL", "https://shop.example.com")


@pytest.fixture(autouse=True)
def _default_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", SQLITE_MEMORY_URL)
    monkeypatch.setenv("APP_PUBLIC_BASE_URL", "https://shop.example.com")
    monkeypatch.setenv("SITE_NAME", "Example Shop")
    monkeypatch.setenv("ADMIN_EMAIL", "admin@example.com")
    monkeypatch.delenv("RESEND_API_KEY", raising=False)
    from double_optin.config import get_settings

    get_settings.cache_clear()


def requires_test_db() -> bool:
    test_database_url = os.getenv("TEST_DATABASE_URL")
    return bool(test_database_url and test_database_url.startswith("postgresql+asyncpg://"))


@pytest.fixture(scope="session")
def test_database_url() -> str:
    test_database_url = os.getenv("TEST_DATABASE_URL")
    if not requires_test_db():
        pytest.skip("TEST_DATABASE_URL not set for postgres integration tests")
    assert test_database_url is not None
    return test_database_url


@pytest.fixture
async def db_session() -> AsyncIterator[AsyncSession]:
    """Fresh schema per test. Postgres when TEST_DATABASE_URL is set, in-memory SQLite otherwise."""
    if requires_test_db():
        engine = create_async_engine(os.environ["TEST_DATABASE_URL"])
    else:
        engine = create_async_engine(
            SQLITE_MEMORY_URL,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    maker = async_sessionmaker(engine, expire_on_commit=False)
    async with maker() as session:
        yield session
        await session.rollback()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def email_sender() -> MagicMock:
    sender = MagicMock()
    sender.send = AsyncMock(return_value=True)
    return sender


@pytest.fixture
def make_services(email_sender: MagicMock) -> Callable[..., Services]:
    def _make(**overrides: Any) -> Services:
        return build_services(Settings(_env_file=None, **overrides), email_sender=email_sender)

    return _make


@pytest.fixture
def services(make_services: Callable[..., Services]) -> Services:
    return make_services()

