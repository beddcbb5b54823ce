"""
API request and response models for the auth core REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in core/models.py, which
own the internal domain representation. Route handlers map between the two.

Request models only bound sizes. Field rules (email grammar, password
classes, phone and OTP shape) belong to the coordinator's validator so the
HTTP surface and the CLI report the same reasons.

Separation of concerns: core/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from core.models import AuthState, SubjectIdentity

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignInRequest(BaseModel):
    """Request body for POST /api/v1/auth/sign-in."""

    email: str = Field(max_length=256)
    password: str = Field(max_length=256)


class SignUpRequest(BaseModel):
    """Request body for POST /api/v1/auth/sign-up."""

    name: str = Field(max_length=256)
    email: str = Field(max_length=256)
    password: str = Field(max_length=256)
    confirm_password: str = Field(max_length=256)


class OtpRequest(BaseModel):
    """Request body for POST /api/v1/auth/phone/otp."""

    phone: str = Field(max_length=32)


class OtpVerifyRequest(BaseModel):
    """Request body for POST /api/v1/auth/phone/verify.

    challenge_id may be omitted to verify against the most recent request.
    """

    code: str = Field(max_length=32)
    challenge_id: Optional[str] = Field(default=None, max_length=64)


class FederatedRequest(BaseModel):
    """Request body for POST /api/v1/auth/federated."""

    id_token: str = Field(max_length=8192)
    provider: str = Field(default="google", max_length=30)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class StateResponse(BaseModel):
    """The coordinator's current AuthState."""

    model_config = ConfigDict(frozen=True)

    state: str
    error_kind: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def from_state(cls, state: AuthState) -> "StateResponse":
        return cls(
            state=state.kind.value,
            error_kind=state.error_kind.value if state.error_kind else None,
            message=state.message or None,
        )


class SignInResponse(BaseModel):
    """Returned once by a sign-in route that produced a new session.

    session_token appears in this body only. The route sets
    Cache-Control: no-store on it.
    """

    model_config = ConfigDict(frozen=True)

    state: str = "authenticated"
    user_id: str
    email: Optional[str] = None
    session_token: str


class OtpChallengeResponse(BaseModel):
    """Returned by POST /api/v1/auth/phone/otp when a code was sent."""

    model_config = ConfigDict(frozen=True)

    state: str
    challenge_id: str
    phone: Optional[str] = None


class SubjectResponse(BaseModel):
    """Response for GET /api/v1/auth/subject."""

    model_config = ConfigDict(frozen=True)

    subject_id: str
    email: str
    display_name: str = ""
    email_verified: bool = False
    photo_ref: Optional[str] = None

    @classmethod
    def from_subject(cls, subject: SubjectIdentity) -> "SubjectResponse":
        return cls(
            subject_id=subject.subject_id,
            email=subject.email,
            display_name=subject.display_name,
            email_verified=subject.email_verified,
            photo_ref=subject.photo_ref,
        )


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    auth_state: str
