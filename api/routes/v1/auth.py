"""
api/routes/v1/auth.py -- Auth state and credential REST endpoints.

Routes:
  GET  /api/v1/auth/state          -- current AuthState
  GET  /api/v1/auth/subject        -- current subject identity (404 if none)
  POST /api/v1/auth/sign-in        -- email + password
  POST /api/v1/auth/sign-up        -- create account, then signed in
  POST /api/v1/auth/phone/otp      -- send a one-time code to a phone
  POST /api/v1/auth/phone/verify   -- complete phone sign-in with the code
  POST /api/v1/auth/federated      -- sign in with a federated ID token
  POST /api/v1/auth/sign-out       -- end the session (always succeeds locally)
  POST /api/v1/auth/clear-error    -- Error -> Unauthenticated

Credential routes return the state the coordinator produced. Error states map
to status codes by kind:

  VALIDATION 422, CREDENTIAL_REJECTED 401, RATE_LIMITED 429 (+ Retry-After),
  NETWORK 503, PROVIDER_UNAVAILABLE 503, UNKNOWN 500

Security:
  [H2] Credential routes are rate-limited per IP (LOGIN_RATE_LIMIT) on top of
       the coordinator's per-identifier limits.
  [M5] Cache-Control: no-store on every credential response.
  The session token is returned once, in the body of the call that created
  the session. A submit while already signed in returns the state only.
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import credential_rate_limit, limiter
from api.models import (
    ErrorDetail,
    ErrorResponse,
    FederatedRequest,
    OtpChallengeResponse,
    OtpRequest,
    OtpVerifyRequest,
    SignInRequest,
    SignInResponse,
    SignUpRequest,
    StateResponse,
    SubjectResponse,
)
from auth.coordinator import AuthCoordinator
from core.models import (
    AuthState,
    EmailPassword,
    EmailPasswordConfirm,
    ErrorKind,
    FederatedToken,
    OtpCode,
    PhoneNumber,
)

router = APIRouter()

_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.CREDENTIAL_REJECTED: 401,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.NETWORK: 503,
    ErrorKind.PROVIDER_UNAVAILABLE: 503,
    ErrorKind.UNKNOWN: 500,
}


def _coordinator(request: Request) -> AuthCoordinator:
    return request.app.state.coordinator


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _error_response(coordinator: AuthCoordinator, state: AuthState) -> JSONResponse:
    resp = JSONResponse(
        status_code=_STATUS_BY_KIND[state.error_kind],
        content=ErrorResponse(error=ErrorDetail(code=state.error_kind.value, message=state.message)).model_dump(),
    )
    if state.error_kind is ErrorKind.RATE_LIMITED:
        resp.headers["Retry-After"] = str(max(1, coordinator.retry_after_seconds()))
    return _no_store(resp)


def _state_response(coordinator: AuthCoordinator, state: AuthState) -> JSONResponse:
    if state.is_error:
        return _error_response(coordinator, state)
    return _no_store(JSONResponse(content=StateResponse.from_state(state).model_dump()))


async def _session_response(coordinator: AuthCoordinator, state: AuthState, was_authenticated: bool) -> JSONResponse:
    """Response for actions that may create a session.

    The token is included only when this call is the one that signed in.
    """
    if not state.is_authenticated or was_authenticated:
        return _state_response(coordinator, state)
    session = await coordinator.current_session()
    return _no_store(
        JSONResponse(
            content=SignInResponse(
                user_id=session.user_id or "",
                email=session.email,
                session_token=session.session_token or "",
            ).model_dump()
        )
    )


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


@router.get("/auth/state", response_model=StateResponse)
async def get_state(request: Request) -> StateResponse:
    """Return the current AuthState (resolving Loading on first use)."""
    coordinator = _coordinator(request)
    return StateResponse.from_state(await coordinator.start())


@router.get("/auth/subject", response_model=SubjectResponse)
async def get_subject(request: Request) -> SubjectResponse:
    """Return the signed-in subject. 404 when nobody is signed in."""
    coordinator = _coordinator(request)
    await coordinator.start()
    subject = coordinator.current_subject()
    if subject is None:
        raise HTTPException(
            status_code=404,
            detail=ErrorDetail(code="not_signed_in", message="No user is signed in.").model_dump(),
        )
    return SubjectResponse.from_subject(subject)


# ---------------------------------------------------------------------------
# Credential actions
# ---------------------------------------------------------------------------


@limiter.limit(credential_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/sign-in")
async def sign_in(request: Request, body: SignInRequest) -> JSONResponse:
    """Sign in with email and password."""
    coordinator = _coordinator(request)
    was_authenticated = (await coordinator.start()).is_authenticated
    state = await coordinator.sign_in(EmailPassword(body.email, body.password))
    return await _session_response(coordinator, state, was_authenticated)


@limiter.limit(credential_rate_limit)  # [H2]
@router.post("/auth/sign-up")
async def sign_up(request: Request, body: SignUpRequest) -> JSONResponse:
    """Create an account with name, email and password, then sign in."""
    coordinator = _coordinator(request)
    was_authenticated = (await coordinator.start()).is_authenticated
    state = await coordinator.sign_up(
        EmailPasswordConfirm(body.name, body.email, body.password, body.confirm_password)
    )
    return await _session_response(coordinator, state, was_authenticated)


@limiter.limit(credential_rate_limit)  # [H2]
@router.post("/auth/phone/otp")
async def request_otp(request: Request, body: OtpRequest) -> JSONResponse:
    """Send a one-time code to the phone number."""
    coordinator = _coordinator(request)
    state = await coordinator.request_otp(PhoneNumber(body.phone))
    challenge_id = coordinator.pending_challenge()
    if state.is_error or state.is_authenticated or challenge_id is None:
        return _state_response(coordinator, state)
    return _no_store(
        JSONResponse(
            content=OtpChallengeResponse(
                state=state.kind.value,
                challenge_id=challenge_id,
                phone=(await coordinator.current_session()).phone,
            ).model_dump()
        )
    )


@limiter.limit(credential_rate_limit)  # [H2]
@router.post("/auth/phone/verify")
async def verify_otp(request: Request, body: OtpVerifyRequest) -> JSONResponse:
    """Complete phone sign-in with the code."""
    coordinator = _coordinator(request)
    was_authenticated = (await coordinator.start()).is_authenticated
    state = await coordinator.verify_otp(OtpCode(body.code, body.challenge_id or ""))
    return await _session_response(coordinator, state, was_authenticated)


@limiter.limit(credential_rate_limit)  # [H2]
@router.post("/auth/federated")
async def sign_in_federated(request: Request, body: FederatedRequest) -> JSONResponse:
    """Sign in with an ID token from the federated provider's own sign-in UI."""
    coordinator = _coordinator(request)
    was_authenticated = (await coordinator.start()).is_authenticated
    state = await coordinator.sign_in_federated(FederatedToken(body.id_token, body.provider))
    return await _session_response(coordinator, state, was_authenticated)


# ---------------------------------------------------------------------------
# Session actions
# ---------------------------------------------------------------------------


@router.post("/auth/sign-out", response_model=StateResponse)
async def sign_out(request: Request) -> JSONResponse:
    """End the session. Provider failures do not keep the user signed in."""
    coordinator = _coordinator(request)
    return _state_response(coordinator, await coordinator.sign_out())


@router.post("/auth/clear-error", response_model=StateResponse)
async def clear_error(request: Request) -> JSONResponse:
    """Dismiss an Error state."""
    coordinator = _coordinator(request)
    return _state_response(coordinator, await coordinator.clear_error())
