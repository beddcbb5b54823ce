"""
auth/store.py -- SQLAlchemy Core persistence for the device session.

Pattern: Repository over a flat key/value table (the shape of a mobile
preferences file). SessionStore is the only component that performs durable
I/O on the Session; AuthCoordinator is the only caller of its mutators.

Persisted keys:
  is_logged_in       bool
  user_id            str
  user_email         str
  user_token         str   (opaque session token)
  first_time_launch  bool  (True until onboarding is consumed)
  user_phone         str   (last number an OTP was requested for)
  recently_viewed    list  (derived cache, cleared on sign-out)
  search_history     list  (derived cache, cleared on sign-out)

Values are stored JSON-encoded so bools and lists round-trip without a
column per type.

Atomicity:
  save() and clear() each run in a single transaction, and a process-level
  lock serializes them against load(). A reader never observes a partially
  written or partially cleared session.

DB path: data/session.db by default (Settings.session_db_url).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any

from sqlalchemy import Column, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.pool import StaticPool

from core.models import Session

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_prefs = Table(
    "session_prefs",
    _metadata,
    Column("key", String(64), primary_key=True),
    Column("value", Text, nullable=False),  # JSON-encoded
)

# Session field -> persisted key
_FIELD_KEYS: dict[str, str] = {
    "is_logged_in": "is_logged_in",
    "user_id": "user_id",
    "email": "user_email",
    "session_token": "user_token",
    "first_launch_consumed": "first_time_launch",
    "phone": "user_phone",
}

RECENTLY_VIEWED_KEY = "recently_viewed"
SEARCH_HISTORY_KEY = "search_history"
_DERIVED_KEYS = (RECENTLY_VIEWED_KEY, SEARCH_HISTORY_KEY)

RECENTLY_VIEWED_LIMIT = 20
SEARCH_HISTORY_LIMIT = 10


# ---------------------------------------------------------------------------
# SQLite helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so a reader never blocks behind a writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    """Create an engine; for file-backed SQLite, create the parent directory.

    Shared by SessionStore and UserStore so both get the same SQLite setup.
    """
    connect_args: dict = {}
    engine_kwargs: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        database = make_url(db_url).database
        if not database or database == ":memory:":
            # One shared connection, otherwise every worker thread (provider
            # calls run via asyncio.to_thread) would see its own blank DB.
            engine_kwargs["poolclass"] = StaticPool
        elif not database.startswith("file:"):
            Path(database).parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SessionStore:
    """Durable store for the single device Session.

    Usage:
        store = SessionStore("sqlite:///data/session.db")
        store.save(is_logged_in=True, user_id="u1", email="a@b.co", session_token="...")
        session = store.load()
        store.clear()
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Low-level key/value access
    # ------------------------------------------------------------------

    def _read_all(self) -> dict[str, Any]:
        with self.engine.connect() as conn:
            rows = conn.execute(_prefs.select()).fetchall()
        return {row.key: json.loads(row.value) for row in rows}

    def _write(self, values: dict[str, Any], remove: tuple[str, ...] = ()) -> None:
        """Replace values and delete keys in one transaction."""
        with self.engine.begin() as conn:
            doomed = set(values) | set(remove)
            if doomed:
                conn.execute(_prefs.delete().where(_prefs.c.key.in_(sorted(doomed))))
            if values:
                conn.execute(
                    _prefs.insert(),
                    [{"key": k, "value": json.dumps(v)} for k, v in values.items()],
                )

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def load(self) -> Session:
        """Return the persisted Session; missing keys take their defaults."""
        with self._lock:
            data = self._read_all()
        return Session(
            is_logged_in=bool(data.get("is_logged_in", False)),
            user_id=data.get("user_id") or None,
            email=data.get("user_email") or None,
            session_token=data.get("user_token") or None,
            # Stored as "is this the first launch", default True.
            first_launch_consumed=not data.get("first_time_launch", True),
            phone=data.get("user_phone") or None,
        )

    def save(self, **fields: Any) -> None:
        """Persist a partial update of Session fields atomically.

        Accepts any Session field name. Unknown names raise ValueError before
        anything is written -- fail-fast rather than silently dropping data.
        Passing None for an optional field removes it.
        """
        unknown = set(fields) - set(_FIELD_KEYS)
        if unknown:
            raise ValueError(f"Unknown session fields: {sorted(unknown)!r}")
        values: dict[str, Any] = {}
        removed: list[str] = []
        for name, value in fields.items():
            key = _FIELD_KEYS[name]
            if name == "first_launch_consumed":
                values[key] = not bool(value)
            elif name == "is_logged_in":
                values[key] = bool(value)
            elif value is None:
                removed.append(key)
            else:
                values[key] = str(value)
        with self._lock:
            self._write(values, tuple(removed))

    def clear(self) -> None:
        """Reset every session field and the derived caches in one transaction."""
        with self._lock:
            self._write({}, tuple(_FIELD_KEYS.values()) + _DERIVED_KEYS)

    def is_first_launch(self) -> bool:
        return not self.load().first_launch_consumed

    def mark_first_launch_consumed(self) -> None:
        self.save(first_launch_consumed=True)

    # ------------------------------------------------------------------
    # Derived caches (recently viewed products, search history)
    # ------------------------------------------------------------------

    def _push_front(self, key: str, item: str, limit: int) -> None:
        with self._lock:
            current = self._read_all().get(key, [])
            updated = [item] + [x for x in current if x != item]
            self._write({key: updated[:limit]})

    def add_recently_viewed(self, product_id: str) -> None:
        self._push_front(RECENTLY_VIEWED_KEY, product_id, RECENTLY_VIEWED_LIMIT)

    def add_search(self, query: str) -> None:
        query = query.strip()
        if query:
            self._push_front(SEARCH_HISTORY_KEY, query, SEARCH_HISTORY_LIMIT)

    def recently_viewed(self) -> list[str]:
        with self._lock:
            return list(self._read_all().get(RECENTLY_VIEWED_KEY, []))

    def search_history(self) -> list[str]:
        with self._lock:
            return list(self._read_all().get(SEARCH_HISTORY_KEY, []))

    def clear_derived(self) -> None:
        with self._lock:
            self._write({}, _DERIVED_KEYS)

    def close(self) -> None:
        self.engine.dispose()
