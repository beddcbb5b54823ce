"""
auth/errors.py -- Error taxonomy and user-safe message mapping.

Providers speak in their own words ("There is no user record corresponding
to this identifier."). The coordinator must never show those strings, so
classify() maps any failure onto a fixed ErrorKind plus a message from a
fixed table. Anything unrecognised becomes UNKNOWN with a generic message.

Matching is best-effort substring matching, case-insensitive, first rule wins.
Rules are ordered most-specific first.
"""

from __future__ import annotations

import asyncio

from core.models import ErrorKind


class ProviderError(Exception):
    """Raised by an IdentityProvider. message is provider-native, not user-safe."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidTransition(RuntimeError):
    """The coordinator attempted a state transition the machine does not allow."""


MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.VALIDATION: "Please check your input and try again.",
    ErrorKind.RATE_LIMITED: "Too many attempts. Please try again later.",
    ErrorKind.NETWORK: "No internet connection. Please check your network.",
    ErrorKind.CREDENTIAL_REJECTED: "Invalid email or password",
    ErrorKind.PROVIDER_UNAVAILABLE: "The sign-in service is temporarily unavailable. Please try again later.",
    ErrorKind.UNKNOWN: "Authentication failed. Please try again.",
}

# (substring, kind, user-safe message) -- first match wins.
_RULES: tuple[tuple[str, ErrorKind, str], ...] = (
    ("badly formatted", ErrorKind.VALIDATION, "Please enter a valid email address"),
    ("password is too weak", ErrorKind.VALIDATION, "Password is too weak. Please choose a stronger password"),
    ("password is invalid", ErrorKind.CREDENTIAL_REJECTED, "Invalid email or password"),
    ("no user record", ErrorKind.CREDENTIAL_REJECTED, "No account found with this email"),
    ("already in use", ErrorKind.CREDENTIAL_REJECTED, "An account with this email already exists"),
    ("user account has been disabled", ErrorKind.CREDENTIAL_REJECTED, "This account has been disabled"),
    ("verification code", ErrorKind.CREDENTIAL_REJECTED, "The code is invalid or has expired. Request a new one"),
    ("session expired", ErrorKind.CREDENTIAL_REJECTED, "The code is invalid or has expired. Request a new one"),
    ("email is not verified", ErrorKind.CREDENTIAL_REJECTED, "Your email address is not verified with this provider"),
    ("federated token", ErrorKind.CREDENTIAL_REJECTED, "Sign-in with this provider failed. Please try again"),
    ("blocked all requests", ErrorKind.RATE_LIMITED, MESSAGES[ErrorKind.RATE_LIMITED]),
    ("too many", ErrorKind.RATE_LIMITED, MESSAGES[ErrorKind.RATE_LIMITED]),
    ("network", ErrorKind.NETWORK, MESSAGES[ErrorKind.NETWORK]),
    ("timeout", ErrorKind.NETWORK, MESSAGES[ErrorKind.NETWORK]),
    ("timed out", ErrorKind.NETWORK, MESSAGES[ErrorKind.NETWORK]),
    ("unreachable", ErrorKind.NETWORK, MESSAGES[ErrorKind.NETWORK]),
    ("unavailable", ErrorKind.PROVIDER_UNAVAILABLE, MESSAGES[ErrorKind.PROVIDER_UNAVAILABLE]),
    ("internal error", ErrorKind.PROVIDER_UNAVAILABLE, MESSAGES[ErrorKind.PROVIDER_UNAVAILABLE]),
    ("quota", ErrorKind.PROVIDER_UNAVAILABLE, MESSAGES[ErrorKind.PROVIDER_UNAVAILABLE]),
    ("not configured", ErrorKind.PROVIDER_UNAVAILABLE, MESSAGES[ErrorKind.PROVIDER_UNAVAILABLE]),
)


def classify_message(message: str | None) -> tuple[ErrorKind, str]:
    """Map a provider-native message to (ErrorKind, user-safe message)."""
    lowered = (message or "").lower()
    for needle, kind, safe in _RULES:
        if needle in lowered:
            return kind, safe
    return ErrorKind.UNKNOWN, MESSAGES[ErrorKind.UNKNOWN]


def classify(exc: BaseException) -> tuple[ErrorKind, str]:
    """Map any failure raised during a provider call to (ErrorKind, safe message).

    Timeouts and socket-level errors are NETWORK regardless of their text.
    """
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return ErrorKind.NETWORK, MESSAGES[ErrorKind.NETWORK]
    if isinstance(exc, ProviderError):
        return classify_message(exc.message)
    if isinstance(exc, OSError):
        return ErrorKind.NETWORK, MESSAGES[ErrorKind.NETWORK]
    return ErrorKind.UNKNOWN, MESSAGES[ErrorKind.UNKNOWN]
