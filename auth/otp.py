"""
auth/otp.py -- One-time password generation and challenge checks.

Codes are 6 decimal digits drawn from `secrets` (never `random`) and do not
start with 0, so they survive clients that treat them as integers.

check_challenge() is pure: it takes the stored code, its expiry, the supplied
code and the current time, and raises the specific error for the first
failing condition. Persistence (and the atomic clear) lives in the store.

Layer rule: stdlib only, plus auth.errors / auth.models.
"""

from __future__ import annotations

import hmac
import re
import secrets
from datetime import datetime

from auth.errors import OtpExpired, OtpMismatch, OtpNotIssued
from auth.models import OtpPurpose

OTP_LENGTH = 6

# E.164-ish: optional +, no leading zero, 8-15 digits total.
_PHONE_RE = re.compile(r"^\+?[1-9]\d{7,14}$")
_PHONE_NOISE_RE = re.compile(r"[\s\-().]")


def generate_code(length: int = OTP_LENGTH) -> str:
    low = 10 ** (length - 1)
    return str(low + secrets.randbelow(9 * low))


def normalize_phone(phone: str) -> str:
    """Strip spaces, dashes, dots and parentheses. Does not validate."""
    return _PHONE_NOISE_RE.sub("", phone or "")


def is_valid_phone(phone: str) -> bool:
    return bool(_PHONE_RE.match(phone or ""))


def check_challenge(stored_code: str | None, expiry: datetime | None, supplied: str, now: datetime) -> None:
    """Validate a supplied code against a stored challenge.

    Order: no challenge -> OtpNotIssued; wrong code -> OtpMismatch;
    past expiry -> OtpExpired. Returns None when the code is acceptable.
    """
    if not stored_code or expiry is None:
        raise OtpNotIssued()
    if not hmac.compare_digest(stored_code.encode("utf-8"), (supplied or "").encode("utf-8")):
        raise OtpMismatch()
    if now > expiry:
        raise OtpExpired()


def format_message(code: str, purpose: OtpPurpose, app_name: str, ttl_minutes: int) -> str:
    """Render the SMS body for a code."""
    if purpose is OtpPurpose.REGISTER:
        lead = f"Welcome to {app_name}! Your verification code is {code}."
    elif purpose is OtpPurpose.LOGIN:
        lead = f"Your {app_name} login code is {code}."
    else:
        lead = f"Your {app_name} verification code is {code}."
    return f"{lead} It expires in {ttl_minutes} minutes. Do not share this code."
