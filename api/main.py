"""
api/main.py -- FastAPI application entry point for the auth core.

Exposes the AuthCoordinator over HTTP so a client shell (mobile app, web
front end, test harness) can drive sign-in, sign-up, phone OTP, federated
sign-in and sign-out without embedding the core.

Run with:      uvicorn asgi:app --reload

Middleware (registration order):
  1. TrustedHostMiddleware -- drops requests whose Host is not in ALLOWED_HOSTS
  2. CORSMiddleware        -- browser origins from CORS_ORIGINS, GET/POST only
  3. SlowAPIMiddleware     -- per-IP limits on the credential routes

Lifespan builds the stores, provider and coordinator, resolves the persisted
session once, and starts the OTP purge task; shutdown undoes all of it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.local import build_coordinator
from core.config import get_settings

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authcore.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired OTP challenges every hour.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(60 * 60)
        now = datetime.now(timezone.utc).isoformat()
        purged = await asyncio.to_thread(app.state.users.purge_challenges, now)
        if purged:
            logger.info("Purged %d expired OTP challenges", purged)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the coordinator on startup, release stores on shutdown.

    start() runs before the first request so the persisted session is
    resolved once, not raced by concurrent first requests.
    """
    logger.info("Auth API starting up")
    settings = get_settings()
    coordinator, users = build_coordinator(settings)
    app.state.coordinator = coordinator
    app.state.users = users
    state = await coordinator.start()
    logger.info("Auth initialized (state=%s, federated=%s)", state.kind.value, bool(settings.oidc_client_id))
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    coordinator.store.close()
    users.close()
    logger.info("Auth API shutdown complete")


# ---------------------------------------------------------------------------
# App and middleware
#
# add_middleware() wraps the current stack, so the last one registered sees
# the request first.
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Auth Core API",
    description="Credential authentication and session lifecycle.",
    version=API_VERSION,
    lifespan=lifespan,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=get_settings().allowed_hosts)
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
    max_age=3600,
)
app.add_middleware(SlowAPIMiddleware)
app.state.limiter = limiter  # SlowAPIMiddleware reads it from app.state


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """One access line per request. Bodies carry secrets and are never logged."""
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    level = logging.WARNING if response.status_code >= 500 else logging.INFO
    logger.log(
        level,
        "%s %s -> %d in %.1fms (client=%s)",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
        request.client.host if request.client else "-",
    )
    return response


app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])

# ---------------------------------------------------------------------------
# Exception handlers
#
# Every failure leaves the API in the same {"error": {...}} envelope that the
# auth routes use for Error states, so clients parse one shape.
# ---------------------------------------------------------------------------


def _error_json(
    status_code: int,
    code: str,
    message: str,
    detail: Optional[str] = None,
    retry_after: Optional[int] = None,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    response = JSONResponse(status_code=status_code, content=body.model_dump())
    if retry_after is not None:
        response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Per-IP limit hit (slowapi). Retry-After is the limit's whole window."""
    try:
        retry_after = int(exc.limit.limit.get_expiry())
    except AttributeError:
        retry_after = 60
    logger.warning("Per-IP limit exceeded on %s", request.url.path)
    return _error_json(429, "rate_limited", "Too many requests.", detail=str(exc.detail), retry_after=retry_after)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed body. Echo field locations and error types, never the values."""
    fields = ", ".join(".".join(str(p) for p in err.get("loc", ())) + f" ({err.get('type')})" for err in exc.errors())
    return _error_json(422, "validation_error", "Request validation failed.", detail=fields or None)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Routes raise HTTPException with an ErrorDetail dict; pass it through as-is."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _error_json(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything unhandled: log the traceback, return a generic 500."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_json(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Liveness, version and the coordinator's current state. Not rate-limited."""
    state = request.app.state.coordinator.current_state()
    return HealthResponse(version=API_VERSION, auth_state=state.kind.value)
