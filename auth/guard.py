"""
auth/guard.py -- Turn a bearer access token into a Principal.

A cryptographically valid access token is not enough on its own: the guard also
requires the subject to be a live (not soft-deleted) user holding at least one
unexpired session. Logging out deletes the sessions, so an access token stops
working at logout rather than at its own exp.

The principal's role comes from the token's claims, not the database. A role
change takes effect on the next login or refresh.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from auth.models import AuthError, Principal, Role, TokenError, TokenKind
from auth.store import SessionStore, UserStore
from auth.tokens import TokenCodec

logger = logging.getLogger("memberportal.auth")


class AccessGuard:
    def __init__(
        self,
        users: UserStore,
        sessions: SessionStore,
        codec: TokenCodec,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.codec = codec
        self._clock = clock

    def authenticate(self, bearer_token: str) -> Principal | AuthError:
        """Validate an access token. Returns the Principal or AuthError(AUTHENTICATION)."""
        claims = self.codec.verify(bearer_token)
        if isinstance(claims, TokenError):
            return AuthError.authentication(f"token_{claims.value}")
        if claims.get("type") != TokenKind.ACCESS.value:
            return AuthError.authentication("wrong_token_kind")

        try:
            role = Role(claims.get("role"))
        except ValueError:
            return AuthError.authentication("token_malformed")
        username = claims.get("username")
        if not isinstance(username, str):
            return AuthError.authentication("token_malformed")

        subject_id = claims["sub"]
        if self.users.get_by_id(subject_id) is None:
            logger.info("Access rejected: subject %s unknown or deleted", subject_id)
            return AuthError.authentication("unknown_user")
        if not self.sessions.has_live_session(subject_id, self._clock()):
            logger.info("Access rejected for user %s: no live session", subject_id)
            return AuthError.authentication("no_session")

        return Principal(subject_id=subject_id, username=username, role=role)
