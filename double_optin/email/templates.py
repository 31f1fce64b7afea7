from __future__ import annotations

import re
from dataclasses import dataclass
from html import escape

from double_optin.config import Settings
from double_optin.models.account import Account

PLACEHOLDERS = (
    "{user_name}",
    "{user_login}",
    "{user_email}",
    "{first_name}",
    "{last_name}",
    "{site_name}",
    "{site_url}",
    "{admin_email}",
    "{verification_url}",
    "{expiry_hours}",
    "{otp_code}",
    "{expiry_minutes}",
)
PLACEHOLDER_RE = re.compile("|".join(re.escape(placeholder) for placeholder in PLACEHOLDERS))


@dataclass(slots=True, frozen=True)
class Recipient:
    email: str
    user_name: str
    user_login: str
    first_name: str = ""
    last_name: str = ""

    @classmethod
    def from_account(cls, account: Account) -> Recipient:
        return cls(
            email=account.email,
            user_name=account.user_name,
            user_login=account.username,
            first_name=account.first_name,
            last_name=account.last_name,
        )

    @classmethod
    def guest(cls, email: str) -> Recipient:
        return cls(email=email, user_name=email, user_login=email)


@dataclass(slots=True, frozen=True)
class RenderedEmail:
    subject: str
    html: str
    text: str


def replace_placeholders(
    template: str,
    *,
    recipient: Recipient,
    settings: Settings,
    verification_url: str = "",
    otp_code: str = "",
) -> str:
    """Substitute the supported ``{name}`` placeholders. Unknown braces are left alone."""
    values = {
        "{user_name}": recipient.user_name,
        "{user_login}": recipient.user_login,
        "{user_email}": recipient.email,
        "{first_name}": recipient.first_name,
        "{last_name}": recipient.last_name,
        "{site_name}": settings.site_name,
        "{site_url}": settings.app_public_base_url,
        "{admin_email}": settings.admin_email,
        "{verification_url}": verification_url,
        "{expiry_hours}": str(settings.link_expiry_hours),
        "{otp_code}": otp_code,
        "{expiry_minutes}": str(settings.otp_expiry_minutes),
    }
    # One pass, so substituted values are never scanned again.
    return PLACEHOLDER_RE.sub(lambda match: values[match.group(0)], template)


def _paragraphs(text: str) -> str:
    return escape(text).replace("\n", "<br>\n")


def _wrap_html(*, heading: str, body_html: str, action_html: str, footer: str, color: str) -> str:
    return f"""\
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{escape(heading)}</title></head>
<body style="margin:0;padding:0;background-color:#f5f5f5;font-family:system-ui,-apple-system,sans-serif;">
  <table role="presentation" width="100%" cellpadding="0" cellspacing="0" style="padding:40px 20px;">
    <tr><td align="center">
      <table role="presentation" width="600" cellpadding="0" cellspacing="0" style="max-width:600px;">
        <tr><td style="background-color:{escape(color)};padding:30px 40px;text-align:center;border-radius:8px 8px 0 0;">
          <h1 style="margin:0;color:#ffffff;font-size:24px;font-weight:600;">{escape(heading)}</h1>
        </td></tr>
        <tr><td style="background-color:#ffffff;padding:40px;">
          <div style="color:#333333;font-size:16px;line-height:1.6;">{body_html}</div>
          {action_html}
        </td></tr>
        <tr><td style="background-color:#f9f9f9;padding:30px 40px;text-align:center;border-radius:0 0 8px 8px;">
          <p style="margin:0;color:#999999;font-size:13px;line-height:1.5;">{_paragraphs(footer)}</p>
        </td></tr>
      </table>
    </td></tr>
  </table>
</body>
</html>"""


def _link_action(url: str, *, button_text: str, color: str) -> str:
    safe_url = escape(url, quote=True)
    return f"""\
<p style="margin:30px 0;text-align:center;">
            <a href="{safe_url}" style="display:inline-block;background-color:{escape(color)};color:#ffffff;
               padding:16px 40px;font-size:16px;font-weight:600;text-decoration:none;border-radius:6px;">
              {escape(button_text)}
            </a>
          </p>
          <p style="color:#666666;font-size:14px;">If the button above doesn't work, copy and paste this link into your browser:</p>
          <p style="font-size:14px;word-break:break-all;"><a href="{safe_url}">{safe_url}</a></p>"""


def _otp_action(code: str, *, expiry_minutes: int, color: str) -> str:
    return f"""\
<div style="margin:30px 0;text-align:center;">
            <div style="background-color:#f8f9fa;border:2px dashed {escape(color)};border-radius:8px;padding:25px;display:inline-block;">
              <p style="margin:0 0 10px;color:#666666;font-size:14px;">Your verification code is:</p>
              <p style="margin:0;font-size:36px;font-weight:700;letter-spacing:8px;color:{escape(color)};font-family:'Courier New',monospace;">{escape(code)}</p>
            </div>
          </div>
          <p style="color:#666666;font-size:14px;text-align:center;"><strong>This code will expire in {expiry_minutes} minutes.</strong></p>"""


def build_verification_email(
    settings: Settings,
    *,
    recipient: Recipient,
    verification_url: str | None = None,
    otp_code: str | None = None,
) -> RenderedEmail:
    """Render the verification email for either a link or a one-time code.

    Exactly one of ``verification_url`` and ``otp_code`` is expected. The OTP
    variant uses the OTP body template and shows the code instead of a button.
    """
    if (verification_url is None) == (otp_code is None):
        raise ValueError("exactly one of verification_url or otp_code is required")

    def render(template: str) -> str:
        return replace_placeholders(
            template,
            recipient=recipient,
            settings=settings,
            verification_url=verification_url or "",
            otp_code=otp_code or "",
        )

    subject = render(settings.email_subject)
    heading = render(settings.email_heading)
    footer = render(settings.email_footer)
    color = settings.email_button_color

    if otp_code is not None:
        body = render(settings.otp_email_body)
        action_html = _otp_action(otp_code, expiry_minutes=settings.otp_expiry_minutes, color=color)
        text = f"{body}\n\nYour verification code is: {otp_code}\n\n{footer}"
    else:
        assert verification_url is not None
        body = render(settings.email_body)
        action_html = _link_action(verification_url, button_text=settings.email_button_text, color=color)
        text = f"{body}\n\n{verification_url}\n\n{footer}"

    html = _wrap_html(
        heading=heading,
        body_html=_paragraphs(body),
        action_html=action_html,
        footer=footer,
        color=color,
    )
    return RenderedEmail(subject=subject, html=html, text=text)
