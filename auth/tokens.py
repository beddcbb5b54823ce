"""
auth/tokens.py -- Session tokens, password hashing, and OTP code utilities.

Security design decisions:
  Session tokens: secrets.token_urlsafe(32) gives 256 bits of entropy from the
       OS CSPRNG. The token is opaque -- not a JWT, no claims, nothing is ever
       parsed out of it locally. Its only job is to be infeasible to guess.

  Passwords: bcrypt directly (no passlib wrapper). Bcrypt is the right choice
       for low-entropy secrets because its cost factor makes brute-force
       expensive. _DUMMY_HASH enables timing equalization in the local
       provider so response time does not reveal whether an email exists [C1].

  OTP codes: 6 digits drawn with secrets.randbelow. Stored as
       HMAC-SHA256(SECRET_KEY, challenge_id:code) so a leaked users DB does not
       reveal pending codes, and a code cannot be replayed against a different
       challenge. Comparison is constant-time (hmac.compare_digest).

  SECRET_KEY: sourced from core.config.get_settings() at call time, so tests
       that clear the settings cache pick up the new key.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

import bcrypt

from core.config import get_settings

SESSION_TOKEN_BYTES = 32
OTP_DIGITS = 6

# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


def generate_session_token() -> str:
    """Return a fresh opaque session token (256-bit, URL-safe base64)."""
    return secrets.token_urlsafe(SESSION_TOKEN_BYTES)


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates at 72 bytes. Sign-up caps passwords at 32 characters, so
    only legacy or federated-linked accounts could ever approach the limit.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash or over-long input -- treat as a mismatch.
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("authcore_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run a bcrypt check against the dummy hash and discard the result [C1]."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# OTP codes
# ---------------------------------------------------------------------------


def generate_otp() -> str:
    """Return a zero-padded 6-digit code from the OS CSPRNG."""
    return f"{secrets.randbelow(10**OTP_DIGITS):0{OTP_DIGITS}d}"


def generate_challenge_id() -> str:
    return secrets.token_urlsafe(16)


def hash_otp(challenge_id: str, code: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, "<challenge_id>:<code>") as hex."""
    return hmac.new(
        get_settings().secret_key.encode(),
        f"{challenge_id}:{code}".encode(),
        hashlib.sha256,
    ).hexdigest()


def otp_matches(challenge_id: str, code: str, stored_hash: str) -> bool:
    return hmac.compare_digest(hash_otp(challenge_id, code), stored_hash)
