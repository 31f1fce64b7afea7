from __future__ import annotations

from dataclasses import dataclass, field
from functools import partial

from starlette.requests import Request

from double_optin.config import Settings, get_settings
from double_optin.email.sender import EmailSender, ResendEmailSender
from double_optin.handlers.checkout import release_held_orders
from double_optin.signals import EventBus


@dataclass(slots=True)
class Services:
    """Collaborators shared by every handler call in one process."""

    settings: Settings
    email_sender: EmailSender
    bus: EventBus = field(default_factory=EventBus)


def build_services(
    settings: Settings | None = None,
    *,
    email_sender: EmailSender | None = None,
) -> Services:
    active_settings = settings or get_settings()
    services = Services(
        settings=active_settings,
        email_sender=email_sender or ResendEmailSender.from_settings(active_settings),
    )
    services.bus.subscribe(partial(release_held_orders, settings=active_settings))
    return services


def get_services(request: Request) -> Services:
    return request.app.state.services
