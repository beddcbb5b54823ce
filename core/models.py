"""
core/models.py -- Domain dataclasses for the auth core.

Pattern: Data class (pure data container, near-zero logic). Stores, the
validator and the coordinator do the work; these types only own shape.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    RATE_LIMITED = "rate_limited"
    NETWORK = "network"
    CREDENTIAL_REJECTED = "credential_rejected"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    UNKNOWN = "unknown"


class PasswordStrength(str, Enum):
    WEAK = "weak"
    MEDIUM = "medium"
    STRONG = "strong"


class StateKind(str, Enum):
    LOADING = "loading"
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Credentials -- tagged union, one frozen dataclass per variant.
#
# Created per request and never persisted. Secret fields use repr=False so
# a credential that ends up in a log line or traceback does not leak them.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EmailPassword:
    email: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class EmailPasswordConfirm:
    name: str
    email: str
    password: str = field(repr=False)
    confirm: str = field(repr=False)


@dataclass(frozen=True)
class PhoneNumber:
    raw: str


@dataclass(frozen=True)
class OtpCode:
    code: str = field(repr=False)
    challenge_id: str = ""


@dataclass(frozen=True)
class FederatedToken:
    provider_token: str = field(repr=False)
    provider: str = "google"


Credential = EmailPassword | EmailPasswordConfirm | PhoneNumber | OtpCode | FederatedToken


# ---------------------------------------------------------------------------
# Session and identity
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Session:
    """Durable device session. Every field returns to its default on sign-out.

    phone is the last number an OTP was requested for, kept so the verify
    screen can show it.
    """

    is_logged_in: bool = False
    user_id: str | None = None
    email: str | None = None
    session_token: str | None = None
    first_launch_consumed: bool = False
    phone: str | None = None


@dataclass(frozen=True)
class SubjectIdentity:
    """Verified identity returned by an identity provider."""

    subject_id: str
    email: str
    display_name: str = ""
    email_verified: bool = False
    photo_ref: str | None = None


# ---------------------------------------------------------------------------
# Auth state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuthState:
    """One of Loading, Unauthenticated, Authenticated, Error(kind, message).

    Use the module-level constants and AuthState.error() rather than building
    instances by hand -- kind/message are only meaningful for ERROR.
    """

    kind: StateKind
    error_kind: ErrorKind | None = None
    message: str = ""

    @classmethod
    def error(cls, error_kind: ErrorKind, message: str) -> AuthState:
        return cls(StateKind.ERROR, error_kind, message)

    @property
    def is_error(self) -> bool:
        return self.kind is StateKind.ERROR

    @property
    def is_authenticated(self) -> bool:
        return self.kind is StateKind.AUTHENTICATED


LOADING = AuthState(StateKind.LOADING)
UNAUTHENTICATED = AuthState(StateKind.UNAUTHENTICATED)
AUTHENTICATED = AuthState(StateKind.AUTHENTICATED)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ValidationResult:
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.reason is None

    @classmethod
    def invalid(cls, reason: str) -> ValidationResult:
        return cls(reason)


VALID = ValidationResult()
