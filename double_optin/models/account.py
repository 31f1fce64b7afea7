from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import BigInteger, Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from double_optin.db.connection import Base, UTCDateTime, utcnow

if TYPE_CHECKING:
    from double_optin.models.order import Order

AccountId = BigInteger().with_variant(Integer, "sqlite")


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(AccountId, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, index=True, nullable=False)
    username: Mapped[str] = mapped_column(String(60), unique=True, index=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String(250), default="", nullable=False)
    first_name: Mapped[str] = mapped_column(String(120), default="", nullable=False)
    last_name: Mapped[str] = mapped_column(String(120), default="", nullable=False)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    email_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    verification_pending: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    checkout_pending: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_verified_email: Mapped[str | None] = mapped_column(String(320), nullable=True, default=None)
    verified_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, default=None)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    orders: Mapped[list[Order]] = relationship(back_populates="customer", passive_deletes=True)

    @property
    def user_name(self) -> str:
        return self.display_name or self.username

    def to_schema(self) -> AccountRead:
        return AccountRead.from_orm_model(self)


class AccountCreate(BaseModel):
    email: EmailStr
    username: str | None = Field(default=None, max_length=60)
    display_name: str = ""
    first_name: str = ""
    last_name: str = ""
    is_admin: bool = False


class AccountRead(BaseModel):
    id: int
    email: EmailStr
    username: str
    display_name: str
    email_verified: bool
    verification_pending: bool
    checkout_pending: bool
    is_admin: bool
    created_at: datetime
    verified_at: datetime | None = None

    @classmethod
    def from_orm_model(cls, db_account: Account) -> AccountRead:
        return cls(
            id=db_account.id,
            email=db_account.email,
            username=db_account.username,
            display_name=db_account.display_name,
            email_verified=db_account.email_verified,
            verification_pending=db_account.verification_pending,
            checkout_pending=db_account.checkout_pending,
            is_admin=db_account.is_admin,
            created_at=db_account.created_at,
            verified_at=db_account.verified_at,
        )
