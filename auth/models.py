"""
auth/models.py -- Dataclasses for the local identity provider's records.

Pattern: Data class (pure data container, zero logic). Mirrors core/models.py
-- dataclasses own shape; UserStore and LocalIdentityProvider do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class User:
    """An account known to the local identity provider.

    email is stored lower-cased and is unique. hashed_password is None for
    phone-only and federated-only accounts (they have no local password).
    federated_provider / federated_subject are filled on first federated
    sign-in and used to find the account on later ones.
    """

    email: str
    display_name: str = ""
    id: str | None = None
    hashed_password: str | None = field(default=None, repr=False)
    phone: str | None = None
    email_verified: bool = False
    photo_ref: str | None = None
    federated_provider: str | None = None  # "google", "oidc"
    federated_subject: str | None = None  # provider's stable user ID
    created_at: str | None = None
    last_login: str | None = None
    is_active: bool = True


@dataclass
class OtpChallenge:
    """A pending phone verification.

    Security design:
    - code_hash is HMAC-SHA256(SECRET_KEY, "<id>:<code>"). The raw code is
      never persisted; it only leaves the process through the delivery hook.
    - failed_attempts caps guessing per challenge independently of the
      coordinator's per-challenge rate limit.
    - consumed challenges are kept (not deleted) until purge so a replayed
      code gets "expired" rather than "unknown".
    """

    id: str
    phone: str
    code_hash: str = field(repr=False)
    expires_at: str
    failed_attempts: int = 0
    consumed: bool = False
    created_at: str | None = None
