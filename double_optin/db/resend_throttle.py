from __future__ import annotations

from datetime import datetime

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from double_optin.db.connection import Base, UTCDateTime, utcnow


class ResendThrottle(Base):
    __tablename__ = "resend_throttles"

    subject: Mapped[str] = mapped_column(String(96), primary_key=True)
    last_resend_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    hour_bucket: Mapped[str] = mapped_column(String(10), nullable=False)
    resend_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
