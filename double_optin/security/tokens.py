from __future__ import annotations

import re
import secrets
from typing import Literal

OtpCharset = Literal["numeric", "alphanumeric"]

# 0/O and 1/I are left out so codes survive being read aloud or retyped.
NUMERIC_ALPHABET = "23456789"
ALPHANUMERIC_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

LINK_TOKEN_BYTES = 32
LINK_TOKEN_RE = re.compile(r"^[a-f0-9]{64}$", re.IGNORECASE)


def generate_link_token() -> str:
    return secrets.token_hex(LINK_TOKEN_BYTES)


def normalize_otp_length(length: int) -> int:
    return 4 if length == 4 else 6


def otp_alphabet(charset: OtpCharset) -> str:
    return NUMERIC_ALPHABET if charset == "numeric" else ALPHANUMERIC_ALPHABET


def generate_otp(length: int = 6, charset: OtpCharset = "alphanumeric") -> str:
    alphabet = otp_alphabet(charset)
    return "".join(secrets.choice(alphabet) for _ in range(normalize_otp_length(length)))


def is_link_token_format(value: str) -> bool:
    return bool(LINK_TOKEN_RE.fullmatch(value))


def otp_format_pattern(length: int, charset: OtpCharset) -> re.Pattern[str]:
    size = normalize_otp_length(length)
    if charset == "numeric":
        return re.compile(rf"^[0-9]{{{size}}}$")
    return re.compile(rf"^[A-Z0-9]{{{size}}}$", re.IGNORECASE)


def is_otp_format(value: str, *, length: int, charset: OtpCharset) -> bool:
    return bool(otp_format_pattern(length, charset).fullmatch(value))


def canonicalize_otp(value: str) -> str:
    return value.strip().upper()
