from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import TYPE_CHECKING

from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import JSON, ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from double_optin.db.connection import Base, UTCDateTime, utcnow
from double_optin.models.account import AccountId

if TYPE_CHECKING:
    from double_optin.models.account import Account


class OrderStatus(StrEnum):
    PENDING = "pending"
    VERIFICATION_PENDING = "verification-pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(AccountId, primary_key=True, autoincrement=True)
    customer_id: Mapped[int | None] = mapped_column(
        AccountId, ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True, index=True
    )
    billing_email: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), default=OrderStatus.PENDING.value, nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    notes: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    customer: Mapped[Account | None] = relationship(back_populates="orders")

    def add_note(self, note: str) -> None:
        # JSON columns only track reassignment.
        self.notes = [*(self.notes or []), note]

    def to_schema(self) -> OrderRead:
        return OrderRead.from_orm_model(self)


class OrderCreate(BaseModel):
    billing_email: EmailStr
    customer_id: int | None = None
    total: Decimal = Field(default=Decimal("0"), ge=0)


class OrderRead(BaseModel):
    id: int
    customer_id: int | None
    billing_email: EmailStr
    status: OrderStatus
    total: Decimal
    notes: list[str]
    created_at: datetime

    @classmethod
    def from_orm_model(cls, db_order: Order) -> OrderRead:
        return cls(
            id=db_order.id,
            customer_id=db_order.customer_id,
            billing_email=db_order.billing_email,
            status=OrderStatus(db_order.status),
            total=db_order.total,
            notes=list(db_order.notes or []),
            created_at=db_order.created_at,
        )
