"""
API request and response models for the member portal auth endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Role

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: one "@", something on both sides, a dot in the domain.
# Deliverability is the email verification flow's problem, not the schema's.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
USERNAME_PATTERN = r"^[A-Za-z0-9_.-]+$"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=3, max_length=50, pattern=USERNAME_PATTERN)
    password: str = Field(min_length=8, max_length=255)
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    name: str = Field(min_length=1, max_length=50)
    student_number: Optional[str] = Field(default=None, min_length=1, max_length=20)
    phone_number: Optional[str] = Field(default=None, max_length=20)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    Length limits mirror RegisterRequest so obviously invalid input is
    rejected before bcrypt runs.
    """

    username: str = Field(min_length=3, max_length=50)
    password: str = Field(min_length=8, max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Sanitized user projection. Never carries password or session data."""

    model_config = ConfigDict(frozen=True)

    id: str
    username: str
    name: str
    email: str
    student_number: Optional[str]
    role: Role
    created_at: str
    updated_at: str


class TokenResponse(BaseModel):
    """Response for register / login / refresh.

    The refresh token is not part of the body; it is set as an httpOnly
    cookie scoped to the auth routes.
    """

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    username: str
    role: Role


class AvailabilityResponse(BaseModel):
    """Response for GET /api/v1/auth/check-username and /check-email."""

    model_config = ConfigDict(frozen=True)

    available: bool


class LogoutResponse(BaseModel):
    """Response for POST /api/v1/auth/logout and /logout-all."""

    model_config = ConfigDict(frozen=True)

    message: str
    sessions_ended: int


class ErrorDetail(BaseModel):
    """Error payload inside the standard envelope."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Standard error envelope: {"error": {...}}."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
