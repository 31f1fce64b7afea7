from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class VerifiedEvent:
    owner_id: int
    email: str
    token_type: str


Subscriber = Callable[[VerifiedEvent, AsyncSession], Awaitable[None]]


@dataclass(slots=True)
class EventBus:
    """In-process fan-out for verification events.

    Subscribers run in registration order after the verification is committed.
    A failing subscriber is logged and skipped; it never undoes the
    verification and never stops later subscribers.
    """

    subscribers: list[Subscriber] = field(default_factory=list)

    def subscribe(self, handler: Subscriber) -> None:
        self.subscribers.append(handler)

    async def emit(self, event: VerifiedEvent, session: AsyncSession) -> None:
        for handler in self.subscribers:
            try:
                await handler(event, session)
                await session.commit()
            except Exception:
                await session.rollback()
                logger.exception(
                    "Verified-event subscriber %s failed",
                    getattr(handler, "__name__", repr(handler)),
                    extra={
                        "event_type": "signals.subscriber.failed",
                        "ops_payload": {"owner_id": event.owner_id, "kind": event.token_type},
                    },
                )
