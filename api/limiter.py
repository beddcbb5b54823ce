"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

This is the per-IP limit in front of the HTTP credential routes. It is
separate from auth.limiter.RateLimiter, which limits per identifier (email,
phone, challenge) inside the coordinator. One address hammering many
accounts is stopped here; many addresses hammering one account are stopped
there.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def credential_rate_limit() -> str:
    """Limit string for credential routes, read per request (LOGIN_RATE_LIMIT)."""
    return get_settings().login_rate_limit
