"""
auth/users.py -- SQLAlchemy Core persistence for local accounts and OTP challenges.

Pattern: Repository + Data Mapper. UserStore is the repository;
_row_to_user / _row_to_challenge are the mappers. LocalIdentityProvider never
touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  UNIQUE(federated_provider, federated_subject) is enforced in code rather
  than SQL because SQLite treats two NULL values as distinct in UNIQUE
  constraints. link_federated() checks before writing.

DB path: data/users.db by default (Settings.user_db_url).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import threading
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, select
from sqlalchemy.engine import Engine

from auth.models import OtpChallenge, User
from auth.store import make_engine

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(100), unique=True),  # lower-cased; NULL for phone-only users
    Column("display_name", String(50), nullable=False, server_default=""),
    Column("hashed_password", Text),  # NULL for phone/federated-only users
    Column("phone", String(15), unique=True),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("photo_ref", Text),
    Column("federated_provider", String(30)),
    Column("federated_subject", Text),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

_challenges = Table(
    "otp_challenges",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("phone", String(15), nullable=False),
    Column("code_hash", String(64), nullable=False),  # HMAC-SHA256 hex
    Column("expires_at", String(32), nullable=False),
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("consumed", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and OtpChallenge records.

    Usage:
        store = UserStore("sqlite:///data/users.db")
        user_id = store.create_user(User(email="a@b.co", hashed_password=hash_password("...")))
        user = store.get_by_email("a@b.co")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)
        # Serializes check-then-write sequences (email uniqueness, failed
        # attempt counters) across provider worker threads.
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> str:
        """Insert a new user and return its generated id.

        Raises sqlalchemy.exc.IntegrityError if the email (or phone) is taken.
        The provider translates that into its "already in use" error.
        """
        user_id = user.id or str(uuid.uuid4())
        with self._lock, self.engine.begin() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    email=user.email.lower() or None,
                    display_name=user.display_name,
                    hashed_password=user.hashed_password,
                    phone=user.phone,
                    email_verified=1 if user.email_verified else 0,
                    photo_ref=user.photo_ref,
                    federated_provider=user.federated_provider,
                    federated_subject=user.federated_subject,
                    created_at=_now_iso(),
                    is_active=1 if user.is_active else 0,
                )
            )
        return user_id

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_phone(self, phone: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.phone == phone)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_federated(self, provider: str, subject: str) -> User | None:
        """Look up a user by (federated_provider, federated_subject)."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(
                    (_users.c.federated_provider == provider) & (_users.c.federated_subject == subject)
                )
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def link_federated(self, user_id: str, provider: str, subject: str) -> None:
        """Associate a federated identity with an existing user record.

        Raises ValueError if the identity is already linked to another user.
        """
        with self._lock:
            existing = self.get_by_federated(provider, subject)
            if existing is not None and existing.id != user_id:
                raise ValueError(f"{provider} identity is already linked to another account")
            with self.engine.begin() as conn:
                conn.execute(
                    _users.update()
                    .where(_users.c.id == user_id)
                    .values(federated_provider=provider, federated_subject=subject, email_verified=1)
                )

    def update_last_login(self, user_id: str) -> None:
        """Stamp the current UTC timestamp as last_login for the given user."""
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))

    def set_active(self, user_id: str, active: bool) -> bool:
        """Enable or disable an account. Returns True if a row was updated."""
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(is_active=1 if active else 0))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # OTP challenges
    # ------------------------------------------------------------------

    def create_challenge(self, challenge: OtpChallenge) -> None:
        with self._lock, self.engine.begin() as conn:
            conn.execute(
                _challenges.insert().values(
                    id=challenge.id,
                    phone=challenge.phone,
                    code_hash=challenge.code_hash,
                    expires_at=challenge.expires_at,
                    failed_attempts=challenge.failed_attempts,
                    consumed=1 if challenge.consumed else 0,
                    created_at=_now_iso(),
                )
            )

    def get_challenge(self, challenge_id: str) -> OtpChallenge | None:
        with self.engine.connect() as conn:
            row = conn.execute(_challenges.select().where(_challenges.c.id == challenge_id)).fetchone()
        return _row_to_challenge(row) if row is not None else None

    def record_failed_guess(self, challenge_id: str) -> int:
        """Increment the failed-guess counter and return the new value."""
        with self._lock, self.engine.begin() as conn:
            conn.execute(
                _challenges.update()
                .where(_challenges.c.id == challenge_id)
                .values(failed_attempts=_challenges.c.failed_attempts + 1)
            )
            count = conn.execute(
                select(_challenges.c.failed_attempts).where(_challenges.c.id == challenge_id)
            ).scalar()
        return count or 0

    def consume_challenge(self, challenge_id: str) -> bool:
        """Mark a challenge consumed. Returns False if it was already consumed.

        The conditional UPDATE makes consumption single-use even if two
        verifications of the same code race.
        """
        with self._lock, self.engine.begin() as conn:
            result = conn.execute(
                _challenges.update()
                .where((_challenges.c.id == challenge_id) & (_challenges.c.consumed == 0))
                .values(consumed=1)
            )
        return result.rowcount > 0

    def purge_challenges(self, before_iso: str) -> int:
        """Delete challenges that expired before the given timestamp."""
        with self._lock, self.engine.begin() as conn:
            result = conn.execute(_challenges.delete().where(_challenges.c.expires_at < before_iso))
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email or "",
        display_name=row.display_name,
        hashed_password=row.hashed_password,
        phone=row.phone,
        email_verified=bool(row.email_verified),
        photo_ref=row.photo_ref,
        federated_provider=row.federated_provider,
        federated_subject=row.federated_subject,
        created_at=row.created_at,
        last_login=row.last_login,
        is_active=bool(row.is_active),
    )


def _row_to_challenge(row) -> OtpChallenge:
    return OtpChallenge(
        id=row.id,
        phone=row.phone,
        code_hash=row.code_hash,
        expires_at=row.expires_at,
        failed_attempts=row.failed_attempts,
        consumed=bool(row.consumed),
        created_at=row.created_at,
    )
