"""
auth/limiter.py -- Per-identifier sliding-window attempt limiter.

Brute-force protection for credential actions. Keys are namespaced strings
("login_<email>", "phone_auth_<phone>") built by rate_limit_key(); the
limiter itself treats them as opaque.

Algorithm (sliding window, not fixed buckets):
  record_attempt(key)  -- append clock() to the key's record.
  is_rate_limited(...) -- purge timestamps at or before now - window, then
                          deny iff the remaining count >= max_attempts.
  clear(key)           -- drop the record (called after a successful auth).

A fixed bucket would let an attacker spend max_attempts at the end of one
bucket and max_attempts again at the start of the next.

Concurrency:
  One lock per AttemptRecord, plus a map lock that is held only while looking
  up, creating or dropping an entry -- never while purging or appending.
  Two keys never contend on the same lock. A record dropped from the map is
  flagged retired; a caller that was waiting on its lock sees the flag and
  re-fetches, so no attempt lands on an orphaned record.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

logger = logging.getLogger("authcore.auth.limiter")

Clock = Callable[[], float]


def rate_limit_key(action: str, identifier: str) -> str:
    """Build a namespaced key. The identifier must already be normalized."""
    return f"{action}_{identifier}"


@dataclass
class AttemptRecord:
    key: str
    timestamps: deque[float] = field(default_factory=deque)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    retired: bool = False

    def purge(self, cutoff: float) -> None:
        # Timestamps are appended in clock order, so expired ones are a prefix.
        while self.timestamps and self.timestamps[0] <= cutoff:
            self.timestamps.popleft()


class RateLimiter:
    """In-memory sliding-window limiter, safe for concurrent callers.

    Usage:
        limiter = RateLimiter()
        if limiter.is_rate_limited(key, max_attempts=5, window_minutes=15):
            ...deny...
        limiter.record_attempt(key)
        ...
        limiter.clear(key)   # on success
    """

    def __init__(self, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self._records: dict[str, AttemptRecord] = {}
        self._map_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Record access
    # ------------------------------------------------------------------

    @contextmanager
    def _locked(self, key: str, create: bool) -> Iterator[AttemptRecord | None]:
        """Yield the live record for key with its lock held (or None)."""
        while True:
            with self._map_lock:
                record = self._records.get(key)
                if record is None and create:
                    record = self._records[key] = AttemptRecord(key)
            if record is None:
                yield None
                return
            record.lock.acquire()
            if record.retired:
                record.lock.release()
                continue
            try:
                yield record
            finally:
                record.lock.release()
            return

    def _retire(self, record: AttemptRecord) -> None:
        """Drop an empty record. Caller holds record.lock."""
        record.retired = True
        with self._map_lock:
            if self._records.get(record.key) is record:
                del self._records[record.key]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def record_attempt(self, key: str) -> None:
        with self._locked(key, create=True) as record:
            record.timestamps.append(self._clock())

    def attempts(self, key: str, window_minutes: float) -> int:
        """Number of attempts for key inside the trailing window."""
        cutoff = self._clock() - window_minutes * 60
        with self._locked(key, create=False) as record:
            if record is None:
                return 0
            record.purge(cutoff)
            count = len(record.timestamps)
            if count == 0:
                self._retire(record)
            return count

    def is_rate_limited(self, key: str, max_attempts: int, window_minutes: float) -> bool:
        """True when the key has used up its attempts inside the window.

        max_attempts <= 0 always denies. window_minutes <= 0 never limits
        (every prior attempt is already outside the window).
        """
        if max_attempts <= 0:
            return True
        count = self.attempts(key, window_minutes)
        if count >= max_attempts:
            logger.info("Rate limit reached (%d/%d attempts in %s min)", count, max_attempts, window_minutes)
            return True
        return False

    def retry_after(self, key: str, max_attempts: int, window_minutes: float) -> int:
        """Seconds until is_rate_limited() would flip to False (0 if not limited)."""
        if max_attempts <= 0:
            return math.ceil(window_minutes * 60)
        window = window_minutes * 60
        now = self._clock()
        with self._locked(key, create=False) as record:
            if record is None:
                return 0
            record.purge(now - window)
            over = len(record.timestamps) - max_attempts
            if over < 0:
                return 0
            # The (over)-th oldest attempt must expire before one slot frees up.
            return max(1, math.ceil(record.timestamps[over] + window - now))

    def clear(self, key: str) -> None:
        with self._map_lock:
            record = self._records.pop(key, None)
        if record is not None:
            with record.lock:
                record.retired = True

    def __len__(self) -> int:
        with self._map_lock:
            return len(self._records)
