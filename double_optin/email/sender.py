from __future__ import annotations

import logging
from typing import Protocol

import httpx

from double_optin.config import Settings

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


class EmailSender(Protocol):
    async def send(self, *, to: str, subject: str, html_body: str, text_body: str | None = None) -> bool: ...


def _format_from(email_from: str, from_name: str) -> str:
    if from_name:
        return f"{from_name} <{email_from}>"
    return email_from


class ResendEmailSender:
    def __init__(
        self,
        *,
        api_key: str | None,
        email_from: str,
        from_name: str = "",
        http_timeout_seconds: float = 10.0,
    ) -> None:
        self.api_key = api_key
        self.email_from = email_from
        self.from_name = from_name
        self.http_timeout_seconds = http_timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> ResendEmailSender:
        return cls(
            api_key=settings.resend_api_key,
            email_from=settings.email_from,
            from_name=settings.email_from_name or settings.site_name,
            http_timeout_seconds=settings.email_http_timeout_seconds,
        )

    async def send(self, *, to: str, subject: str, html_body: str, text_body: str | None = None) -> bool:
        """Send one HTML email through Resend.

        Returns True if sent successfully (or logged in dev mode), False on failure.
        """
        if not self.api_key:
            logger.info(
                "Verification email for %s: %s (email sending disabled, no RESEND_API_KEY)",
                to,
                subject,
                extra={"event_type": "email.dev_mode"},
            )
            if text_body:
                logger.debug("Email text for %s:\n%s", to, text_body)
            return True

        payload: dict[str, object] = {
            "from": _format_from(self.email_from, self.from_name),
            "to": [to],
            "subject": subject,
            "html": html_body,
        }
        if text_body:
            payload["text"] = text_body

        try:
            async with httpx.AsyncClient(timeout=self.http_timeout_seconds) as client:
                response = await client.post(
                    RESEND_API_URL,
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                )
            if response.status_code >= 400:
                logger.error(
                    "Resend API error %d: %s",
                    response.status_code,
                    response.text,
                    extra={"event_type": "email.send.failed"},
                )
                return False
            logger.info(
                "Verification email sent to %s (Resend ID: %s)",
                to,
                response.json().get("id", "unknown"),
                extra={"event_type": "email.send.ok"},
            )
            return True
        except httpx.HTTPError:
            logger.exception("Failed to send verification email to %s", to, extra={"event_type": "email.send.failed"})
            return False
