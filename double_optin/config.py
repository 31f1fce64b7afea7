from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_EMAIL_BODY = (
    "Hi {user_name},\n\n"
    "Thank you for registering at {site_name}. To complete your registration, "
    "please verify your email address by clicking the button below.\n\n"
    "This link will expire in {expiry_hours} hours.\n\n"
    "If you did not create an account, please ignore this email."
)
DEFAULT_OTP_EMAIL_BODY = (
    "Hi {user_name},\n\n"
    "Use the code below to verify your email address at {site_name}.\n\n"
    "This code will expire in {expiry_minutes} minutes.\n\n"
    "If you did not request this code, please ignore this email."
)


class Settings(BaseSettings):
    database_url: str
    app_public_base_url: str
    site_name: str = "My Store"
    admin_email: str = ""
    cors_allow_origins: str = "http://localhost:3000"

    enable_registration_gate: bool = True
    enable_checkout_gate: bool = True
    verification_method: Literal["link", "otp"] = "link"
    verification_path: str = "/verify"
    link_expiry_hours: int = 24
    otp_length: int = 6
    otp_charset: Literal["numeric", "alphanumeric"] = "alphanumeric"
    otp_expiry_minutes: int = 5
    otp_max_attempts: int = 5

    resend_cooldown_seconds: int = 60
    resend_max_per_hour: int = 5
    checkout_verification_max_per_hour: int = 5
    guest_checkout_ttl_minutes: int = 60

    delete_unverified_after_days: int = 0
    sweep_interval_hours: float = 24.0

    resend_api_key: str | None = None
    email_from: str = "onboarding@resend.dev"
    email_from_name: str = ""
    email_http_timeout_seconds: float = 10.0

    email_subject: str = "Please verify your email address"
    email_heading: str = "Verify Your Email"
    email_body: str = DEFAULT_EMAIL_BODY
    otp_email_body: str = DEFAULT_OTP_EMAIL_BODY
    email_footer: str = (
        "This email was sent from {site_name}. If you have any questions, "
        "please contact us at {admin_email}."
    )
    email_button_text: str = "Verify Email Address"
    email_button_color: str = "#0073aa"

    message_verification_sent: str = (
        "A verification email has been sent to your email address. "
        "Please check your inbox and click the verification link."
    )
    message_verification_success: str = "Your email has been verified successfully! You can now log in."
    message_verification_failed: str = "Email verification failed. The link may have expired or is invalid."
    message_invalid_link: str = "Invalid verification link."
    message_already_verified: str = "Your email has already been verified."
    message_not_verified: str = (
        "Please verify your email address before logging in. "
        "Check your inbox for the verification email."
    )
    message_resend_success: str = "Verification email has been resent. Please check your inbox."

    web_access_token_expiry_hours: int = 24 * 30
    web_access_token_secret: str = "change-me-in-production"

    ops_event_buffer_size: int = 500

    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout_seconds: int = 30
    db_echo_sql: bool = False

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    @field_validator("app_public_base_url")
    @classmethod
    def validate_public_base_url(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("APP_PUBLIC_BASE_URL must be provided")
        return value.rstrip("/")

    @field_validator("otp_length")
    @classmethod
    def validate_otp_length(cls, value: int) -> int:
        if value not in (4, 6):
            raise ValueError("OTP_LENGTH must be 4 or 6")
        return value

    @field_validator(
        "link_expiry_hours",
        "otp_expiry_minutes",
        "otp_max_attempts",
        "resend_max_per_hour",
        "checkout_verification_max_per_hour",
        "guest_checkout_ttl_minutes",
    )
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("value must be at least 1")
        return value

    @field_validator("resend_cooldown_seconds", "delete_unverified_after_days")
    @classmethod
    def validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("value must not be negative")
        return value

    @property
    def otp_enabled(self) -> bool:
        return self.verification_method == "otp"

    def cors_allow_origin_list(self) -> list[str]:
        return [item.strip() for item in self.cors_allow_origins.split(",") if item.strip()]

    def verification_url(self, token: str) -> str:
        return f"{self.app_public_base_url}{self.verification_path}?token={token}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
