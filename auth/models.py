"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the session
manager do the work; these classes only own the shape.

Failures are values, not exceptions. SessionManager and AccessGuard return
either their success type or an AuthError, so every caller has to branch on
the result explicitly:

    result = manager.refresh(token)
    if isinstance(result, AuthError):
        ...

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    GUEST = "GUEST"
    MEMBER = "MEMBER"
    ADMIN = "ADMIN"


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class TokenError(str, Enum):
    """Why TokenCodec.verify() rejected a token. Internal only -- never sent to clients."""

    EXPIRED = "expired"
    MALFORMED = "malformed"
    SIGNATURE_INVALID = "signature_invalid"


class AuthErrorKind(str, Enum):
    CONFLICT = "conflict"
    AUTHENTICATION = "authentication"


@dataclass
class User:
    """A portal member as held by the credential store.

    hashed_password is only populated by UserStore.get_credentials_by_username();
    every other read leaves it None so it cannot leak through a default projection.
    """

    username: str
    email: str
    name: str
    role: Role = Role.GUEST
    id: str | None = None
    student_number: str | None = None
    phone_number: str | None = None
    hashed_password: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    deleted_at: str | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass(frozen=True)
class SanitizedUser:
    """Outward projection of a User. Carries no credential material."""

    id: str
    username: str
    name: str
    email: str
    student_number: str | None
    role: Role
    created_at: str
    updated_at: str

    @classmethod
    def from_user(cls, user: User) -> SanitizedUser:
        return cls(
            id=user.id or "",
            username=user.username,
            name=user.name,
            email=user.email,
            student_number=user.student_number,
            role=user.role,
            created_at=user.created_at or "",
            updated_at=user.updated_at or "",
        )


@dataclass
class SessionRecord:
    """One live refresh token bound to one user and one device/login.

    token_hash is HMAC-SHA256(SECRET_KEY, refresh_token). The raw token is never
    persisted. A record is hard-deleted when it is rotated, found expired, or
    logged out; there is no soft state.
    """

    user_id: str
    token_hash: str
    expires_at: str
    id: int | None = None
    device_info: str | None = None
    last_used_at: str | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class RegistrationCandidate:
    username: str
    password: str
    email: str
    name: str
    student_number: str | None = None
    phone_number: str | None = None


@dataclass(frozen=True)
class IssuedSession:
    """Result of register / login / refresh: a fresh token pair plus the sanitized user."""

    access_token: str
    refresh_token: str
    user: SanitizedUser


@dataclass(frozen=True)
class Principal:
    """The authenticated caller, as handed to the resource layer.

    Built from the access token's claims, so role reflects the value at issue
    time. A role change takes effect on the next login or refresh.
    """

    subject_id: str
    username: str
    role: Role


@dataclass(frozen=True)
class AuthError:
    """Typed failure for every auth operation.

    kind is the only part callers may expose. field names the colliding column
    for CONFLICT. reason is the internal cause (expired, reused, ...) and exists
    for logging and tests only.
    """

    kind: AuthErrorKind
    reason: str = ""
    field: str | None = None

    @classmethod
    def authentication(cls, reason: str) -> AuthError:
        return cls(kind=AuthErrorKind.AUTHENTICATION, reason=reason)

    @classmethod
    def conflict(cls, field: str) -> AuthError:
        return cls(kind=AuthErrorKind.CONFLICT, reason=f"{field} already taken", field=field)
