"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The access token is only accepted from the Authorization: Bearer header. The
refresh token lives in an httpOnly cookie and is never accepted here; the
guard would reject it anyway because its type claim is "refresh".

get_current_principal() raises HTTP 401 if the request is not authenticated.
require_roles(...) builds a dependency that additionally raises HTTP 403 when
the principal's role is not one of the allowed roles.

Layer rule: no imports from api/ or core/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, HTTPException, Request

from auth.guard import AccessGuard
from auth.models import AuthError, Principal, Role
from auth.sessions import SessionManager


def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.session_manager


def get_access_guard(request: Request) -> AccessGuard:
    return request.app.state.access_guard


def bearer_token(request: Request) -> str | None:
    """Return the token from an Authorization: Bearer header, or None."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_principal(request: Request) -> Principal:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(principal: Principal = Depends(get_current_principal)): ...
    """
    token = bearer_token(request)
    result = get_access_guard(request).authenticate(token) if token else AuthError.authentication("missing_token")
    if isinstance(result, AuthError):
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return result


def require_roles(*roles: Role) -> Callable[..., Principal]:
    """Build a dependency that admits only principals holding one of roles.

    Use as a FastAPI dependency:
        @router.post("/admin-only")
        async def route(principal: Principal = Depends(require_roles(Role.ADMIN))): ...
    """
    allowed = frozenset(roles)

    def dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if allowed and principal.role not in allowed:
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "Insufficient role for this resource."},
            )
        return principal

    return dependency
