"""
core/validator.py -- Input sanitation and validation for credential fields.

Pure functions only: no I/O, no logging, no settings lookups. Callers pass
market-specific switches (india_only) explicitly so results depend on the
arguments alone.

validate(kind, value) returns a ValidationResult -- VALID or Invalid(reason).
The reason strings are user-safe and are surfaced verbatim in
AuthState.Error(VALIDATION, reason).

Sanitation rules:
  sanitize()        -- identifiers and names: whitespace runs collapse to one
                       space, control characters are dropped, ends trimmed.
  sanitize_secret() -- passwords: control characters dropped, ends trimmed.
                       Internal spaces are part of the secret and are kept.
  Both are idempotent: f(f(x)) == f(x).
"""

from __future__ import annotations

import re
import unicodedata
from enum import Enum

from core.models import VALID, PasswordStrength, ValidationResult

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[A-Za-z0-9+_.-]+@([A-Za-z0-9.-]+\.[A-Za-z]{2,})$"
EMAIL_MIN_LENGTH = 5
EMAIL_MAX_LENGTH = 100

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 32
PASSWORD_SYMBOLS = "@$!%*?&"
PASSWORD_STRONG_LENGTH = 12

NAME_PATTERN = r"^[A-Za-z ]+$"
NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 50

PHONE_MIN_LENGTH = 10
PHONE_MAX_LENGTH = 15
INDIAN_PHONE_PATTERN = r"^[6-9][0-9]{9}$"
INDIAN_COUNTRY_CODE = "91"

OTP_PATTERN = r"^[0-9]{6}$"
OTP_LENGTH = 6

_EMAIL_RE = re.compile(EMAIL_PATTERN)
_NAME_RE = re.compile(NAME_PATTERN)
_INDIAN_PHONE_RE = re.compile(INDIAN_PHONE_PATTERN)
_OTP_RE = re.compile(OTP_PATTERN)
_WHITESPACE_RE = re.compile(r"\s+")
_PHONE_SEPARATORS_RE = re.compile(r"[\s\-().]")


class FieldKind(str, Enum):
    EMAIL = "email"
    PASSWORD = "password"  # sign-up rules
    LOGIN_PASSWORD = "login_password"  # sign-in: non-blank only
    NAME = "name"
    PHONE = "phone"
    OTP = "otp"


# ---------------------------------------------------------------------------
# Sanitation
# ---------------------------------------------------------------------------


def _drop_controls(value: str) -> str:
    return "".join(ch for ch in value if unicodedata.category(ch) != "Cc")


def sanitize(value: str | None) -> str:
    """Collapse whitespace, drop control characters, trim. None becomes ""."""
    if not value:
        return ""
    collapsed = _WHITESPACE_RE.sub(" ", value)
    # Dropping a control char can leave two spaces adjacent; collapse again.
    return _WHITESPACE_RE.sub(" ", _drop_controls(collapsed)).strip()


def sanitize_secret(value: str | None) -> str:
    """Drop control characters and trim, keeping internal spaces."""
    if not value:
        return ""
    return _drop_controls(value).strip()


def normalize_email(value: str | None) -> str:
    """Sanitized, lower-cased email. Used for rate-limit keys and lookups."""
    return sanitize(value).lower()


def normalize_phone(value: str | None, india_only: bool = True) -> str:
    """Strip separators and the leading '+' (and the +91 prefix for India).

    Returns the bare number the validator checks. Non-digit characters other
    than separators are kept so validation can reject them.
    """
    cleaned = _PHONE_SEPARATORS_RE.sub("", sanitize(value))
    if cleaned.startswith("+"):
        cleaned = cleaned[1:]
    if india_only and cleaned.startswith(INDIAN_COUNTRY_CODE) and len(cleaned) == 12:
        cleaned = cleaned[2:]
    return cleaned


def normalize_otp(value: str | None) -> str:
    return re.sub(r"\s", "", sanitize(value))


def format_phone(value: str, india_only: bool = True) -> str:
    """Display form: '+91 XXXXX XXXXX' for Indian numbers, '+<digits>' otherwise."""
    number = normalize_phone(value, india_only=india_only)
    if india_only and len(number) == 10:
        return f"+{INDIAN_COUNTRY_CODE} {number[:5]} {number[5:]}"
    return f"+{number}" if number else ""


def mask_email(email: str | None) -> str:
    """Return 'j***@example.com' for log lines. Never log full addresses."""
    if not email or "@" not in email:
        return "***"
    local, _, domain = email.partition("@")
    return f"{local[:1]}***@{domain}"


# ---------------------------------------------------------------------------
# Field validators -- first failing rule wins
# ---------------------------------------------------------------------------


def _validate_email(email: str) -> ValidationResult:
    if not email:
        return ValidationResult.invalid("Email is required")
    if len(email) < EMAIL_MIN_LENGTH:
        return ValidationResult.invalid("Email is too short")
    if len(email) > EMAIL_MAX_LENGTH:
        return ValidationResult.invalid("Email is too long")
    if not _EMAIL_RE.fullmatch(email):
        return ValidationResult.invalid("Please enter a valid email")
    return VALID


def _validate_password(password: str) -> ValidationResult:
    if not password:
        return ValidationResult.invalid("Password is required")
    if len(password) < PASSWORD_MIN_LENGTH:
        return ValidationResult.invalid(f"Password must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(password) > PASSWORD_MAX_LENGTH:
        return ValidationResult.invalid(f"Password must not exceed {PASSWORD_MAX_LENGTH} characters")
    if not any(c.islower() for c in password):
        return ValidationResult.invalid("Password must contain at least one lowercase letter")
    if not any(c.isupper() for c in password):
        return ValidationResult.invalid("Password must contain at least one uppercase letter")
    if not any(c.isdigit() for c in password):
        return ValidationResult.invalid("Password must contain at least one digit")
    if not any(c in PASSWORD_SYMBOLS for c in password):
        return ValidationResult.invalid(f"Password must contain at least one special character ({PASSWORD_SYMBOLS})")
    return VALID


def _validate_login_password(password: str) -> ValidationResult:
    # Sign-in only checks presence. Length/class rules changed over time and
    # must not lock out accounts created under older rules.
    if not password:
        return ValidationResult.invalid("Password is required")
    return VALID


def _validate_name(name: str) -> ValidationResult:
    if not name:
        return ValidationResult.invalid("Name is required")
    if len(name) < NAME_MIN_LENGTH:
        return ValidationResult.invalid("Name is too short")
    if len(name) > NAME_MAX_LENGTH:
        return ValidationResult.invalid("Name is too long")
    if not _NAME_RE.fullmatch(name):
        return ValidationResult.invalid("Name can only contain letters and spaces")
    return VALID


def _validate_phone(phone: str, india_only: bool) -> ValidationResult:
    if not phone:
        return ValidationResult.invalid("Phone number is required")
    if not phone.isdigit() or not phone.isascii():
        return ValidationResult.invalid("Phone number can only contain digits")
    if india_only:
        if len(phone) != 10:
            return ValidationResult.invalid("Phone number must be 10 digits")
        if not _INDIAN_PHONE_RE.fullmatch(phone):
            return ValidationResult.invalid("Please enter a valid phone number")
        return VALID
    if not PHONE_MIN_LENGTH <= len(phone) <= PHONE_MAX_LENGTH:
        return ValidationResult.invalid(f"Phone number must be {PHONE_MIN_LENGTH} to {PHONE_MAX_LENGTH} digits")
    return VALID


def _validate_otp(otp: str) -> ValidationResult:
    if not otp:
        return ValidationResult.invalid("OTP is required")
    if len(otp) != OTP_LENGTH:
        return ValidationResult.invalid(f"OTP must be {OTP_LENGTH} digits")
    if not _OTP_RE.fullmatch(otp):
        return ValidationResult.invalid("Please enter a valid OTP")
    return VALID


def validate(kind: FieldKind, value: str | None, *, india_only: bool = True) -> ValidationResult:
    """Validate an already-sanitized value. Pure and deterministic.

    Callers are expected to run the matching sanitize/normalize helper first;
    validate() does not mutate its input, so unsanitized whitespace shows up
    as an Invalid result rather than being silently fixed.
    """
    value = value or ""
    if kind is FieldKind.EMAIL:
        return _validate_email(value)
    if kind is FieldKind.PASSWORD:
        return _validate_password(value)
    if kind is FieldKind.LOGIN_PASSWORD:
        return _validate_login_password(value)
    if kind is FieldKind.NAME:
        return _validate_name(value)
    if kind is FieldKind.PHONE:
        return _validate_phone(value, india_only)
    if kind is FieldKind.OTP:
        return _validate_otp(value)
    raise ValueError(f"Unknown field kind: {kind!r}")


# ---------------------------------------------------------------------------
# Password strength
# ---------------------------------------------------------------------------


def password_strength(password: str) -> PasswordStrength:
    """Score one point per satisfied rule; 0-2 WEAK, 3-4 MEDIUM, 5-6 STRONG.

    Rules: length >= 8, lowercase, uppercase, digit, allowed symbol,
    length >= 12.
    """
    score = sum(
        (
            len(password) >= PASSWORD_MIN_LENGTH,
            any(c.islower() for c in password),
            any(c.isupper() for c in password),
            any(c.isdigit() for c in password),
            any(c in PASSWORD_SYMBOLS for c in password),
            len(password) >= PASSWORD_STRONG_LENGTH,
        )
    )
    if score <= 2:
        return PasswordStrength.WEAK
    if score <= 4:
        return PasswordStrength.MEDIUM
    return PasswordStrength.STRONG
