"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes:
  POST /api/v1/auth/register        -- create account; returns access token, sets refresh cookie
  POST /api/v1/auth/login           -- password login; returns access token, sets refresh cookie
  POST /api/v1/auth/refresh         -- rotate the refresh cookie; returns a new access token
  POST /api/v1/auth/logout          -- end this device's session (or all, without a cookie)
  POST /api/v1/auth/logout-all      -- end every session the caller holds
  GET  /api/v1/auth/me              -- current principal (requires auth)
  GET  /api/v1/auth/check-username  -- is a username free? (public)
  GET  /api/v1/auth/check-email     -- is an email free? (public)

Token transport:
  The access token travels in the JSON body and is sent back by the client
  as Authorization: Bearer. The refresh token only ever travels in an
  httpOnly, samesite=strict cookie scoped to /api/v1/auth, so page scripts
  cannot read it and it is not sent to resource endpoints.

Security:
  POST /login, /register and /refresh are rate-limited per IP.
  Every login and refresh failure is the same 401 whatever the cause; the
  cause is logged by SessionManager. Cache-Control: no-store on every
  response that carries a token.
"""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_limit, refresh_limit
from api.models import (
    AvailabilityResponse,
    LoginRequest,
    LogoutResponse,
    MeResponse,
    RegisterRequest,
    TokenResponse,
    UserResponse,
)
from auth.dependencies import get_current_principal, get_session_manager
from auth.models import AuthError, AuthErrorKind, IssuedSession, Principal, RegistrationCandidate

# Auth policy:
# - POST /api/v1/auth/register:        public
# - POST /api/v1/auth/login:           public
# - POST /api/v1/auth/refresh:         public -- the refresh cookie is the credential
# - POST /api/v1/auth/logout:          requires auth (get_current_principal)
# - POST /api/v1/auth/logout-all:      requires auth (get_current_principal)
# - GET  /api/v1/auth/me:              requires auth (get_current_principal)
# - GET  /api/v1/auth/check-*:         public -- the registration form calls these
router = APIRouter()

_COOKIE_PATH = "/api/v1/auth"

_CONFLICT_MESSAGES = {
    "username": "That username is already taken.",
    "email": "That email is already registered.",
    "student_number": "That student number is already registered.",
}


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_limit)
@router.post("/auth/register", response_model=TokenResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a GUEST account and open its first session.

    409 names the colliding field (username, email or student_number).
    """
    manager = get_session_manager(request)
    result = manager.register(
        RegistrationCandidate(
            username=body.username,
            password=body.password,
            email=body.email,
            name=body.name,
            student_number=body.student_number,
            phone_number=body.phone_number,
        ),
        device_info=_device_info(request),
    )
    if isinstance(result, AuthError):
        if result.kind is AuthErrorKind.CONFLICT:
            raise HTTPException(
                status_code=409,
                detail={
                    "code": "conflict",
                    "message": _CONFLICT_MESSAGES.get(result.field or "", "A required field is already taken."),
                    "detail": result.field,
                },
            )
        raise _unauthorized()
    return _session_response(request, result, status_code=201)


@limiter.limit(login_limit)  # brute-force mitigation -- must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password.

    Returns the same generic error for wrong username and wrong password
    ("bad_credentials") to avoid leaking username existence information.
    """
    manager = get_session_manager(request)
    result = manager.login(body.username, body.password, device_info=_device_info(request))
    if isinstance(result, AuthError):
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid username or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp
    return _session_response(request, result)


@limiter.limit(refresh_limit)
@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request) -> JSONResponse:
    """Exchange the refresh cookie for a new access token and a new refresh cookie.

    The presented refresh token is dead once this returns, whether or not it
    succeeded. On failure the cookie is cleared so the client stops retrying
    with it.
    """
    settings = request.app.state.settings
    token = request.cookies.get(settings.refresh_cookie_name)
    result = (
        get_session_manager(request).refresh(token) if token else AuthError.authentication("missing_refresh_cookie")
    )
    if isinstance(result, AuthError):
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "unauthorized", "message": "Session expired. Please log in again."}},
        )
        _clear_refresh_cookie(request, resp)
        resp.headers["Cache-Control"] = "no-store"
        return resp
    return _session_response(request, result)


@router.get("/auth/check-username", response_model=AvailabilityResponse)
def check_username(
    request: Request,
    username: str = Query(min_length=3, max_length=50),
) -> AvailabilityResponse:
    """Report whether a username is free. Accounts pending deletion still hold theirs."""
    return AvailabilityResponse(available=get_session_manager(request).check_username_availability(username))


@router.get("/auth/check-email", response_model=AvailabilityResponse)
def check_email(
    request: Request,
    email: str = Query(min_length=3, max_length=255),
) -> AvailabilityResponse:
    """Report whether an email address is free."""
    return AvailabilityResponse(available=get_session_manager(request).check_email_availability(email))


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=LogoutResponse)
def logout(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> JSONResponse:
    """End the session behind the refresh cookie; without a cookie, end them all.

    Idempotent: a stale or unknown cookie still returns 200.
    """
    settings = request.app.state.settings
    token = request.cookies.get(settings.refresh_cookie_name)
    ended = get_session_manager(request).logout(principal.subject_id, token)
    resp = JSONResponse(content=LogoutResponse(message="Logged out.", sessions_ended=ended).model_dump())
    _clear_refresh_cookie(request, resp)
    return resp


@router.post("/auth/logout-all", response_model=LogoutResponse)
def logout_all(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> JSONResponse:
    """End every session the caller holds, on every device."""
    ended = get_session_manager(request).logout_all(principal.subject_id)
    resp = JSONResponse(
        content=LogoutResponse(message="Logged out of all devices.", sessions_ended=ended).model_dump()
    )
    _clear_refresh_cookie(request, resp)
    return resp


@router.get("/auth/me", response_model=MeResponse)
async def me(principal: Principal = Depends(get_current_principal)) -> MeResponse:
    """Return identity information for the currently authenticated principal."""
    return MeResponse(user_id=principal.subject_id, username=principal.username, role=principal.role)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"code": "unauthorized", "message": "Authentication required."},
    )


def _device_info(request: Request) -> str | None:
    user_agent = request.headers.get("User-Agent")
    return user_agent[:255] if user_agent else None


def _session_response(request: Request, issued: IssuedSession, status_code: int = 200) -> JSONResponse:
    """Build the token response body and set the refresh cookie."""
    settings = request.app.state.settings
    body = TokenResponse(
        user=UserResponse(**asdict(issued.user)),
        access_token=issued.access_token,
        token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
        expires_in=settings.access_token_expire_seconds,
    )
    resp = JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))
    resp.set_cookie(
        settings.refresh_cookie_name,
        value=issued.refresh_token,
        httponly=True,
        samesite="strict",
        secure=settings.secure_cookies,
        max_age=settings.refresh_token_expire_seconds,
        path=_COOKIE_PATH,
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _clear_refresh_cookie(request: Request, resp: JSONResponse) -> None:
    settings = request.app.state.settings
    resp.delete_cookie(
        settings.refresh_cookie_name,
        path=_COOKIE_PATH,
        httponly=True,
        samesite="strict",
        secure=settings.secure_cookies,
    )
