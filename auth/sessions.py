"""
auth/sessions.py -- Registration, login, refresh-token rotation, and logout.

Every session is a (refresh token, SessionRecord) pair. A pair moves through
ISSUED -> ROTATED | EXPIRED | REVOKED | REUSED, and every terminal state
removes the record:

  ROTATED  refresh() redeemed the token; the record is replaced by a new one
           and its fingerprint is written to the rotated-token ledger.
  EXPIRED  refresh() met a record past expires_at and deleted it.
  REVOKED  logout() / logout_all() deleted it.
  REUSED   a token found in the rotated-token ledger was presented again.
           That is treated as theft: every session the user holds is deleted.

A token that matches no live record and is not in the ledger (logged out, or
never issued) is rejected without touching the user's other sessions.

Failure reporting: every method returns either its result or an AuthError.
login() and refresh() only ever return AuthError(kind=AUTHENTICATION) on
failure, whatever the cause; the cause goes to the log and to
AuthError.reason, never to the client.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError

from auth.models import (
    AuthError,
    IssuedSession,
    RegistrationCandidate,
    SanitizedUser,
    SessionRecord,
    TokenError,
    TokenKind,
    User,
)
from auth.store import SessionStore, UserStore, to_iso
from auth.tokens import TokenCodec, hash_password, verify_password

logger = logging.getLogger("memberportal.auth")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionManager:
    """Orchestrates the credential store, the session store, and the token codec."""

    def __init__(
        self,
        users: UserStore,
        sessions: SessionStore,
        codec: TokenCodec,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        bcrypt_rounds: int = 12,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.codec = codec
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.bcrypt_rounds = bcrypt_rounds
        self._clock = clock
        # Timing equalization: unknown usernames still pay for one bcrypt
        # comparison at the configured cost, so response time does not reveal
        # whether an account exists.
        self._dummy_hash = hash_password("memberportal_timing_dummy", rounds=bcrypt_rounds)

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    def register(self, candidate: RegistrationCandidate, device_info: str | None = None) -> IssuedSession | AuthError:
        """Create a user and open their first session.

        The pre-insert check reports which key collided. The unique constraints
        still decide races: if two registrations pass the check together, the
        loser's INSERT raises IntegrityError and is reported as a conflict too.
        """
        field = self.users.find_conflict(candidate.username, candidate.email, candidate.student_number)
        if field is not None:
            return AuthError.conflict(field)

        user = User(
            username=candidate.username,
            email=candidate.email,
            name=candidate.name,
            student_number=candidate.student_number,
            phone_number=candidate.phone_number,
            hashed_password=hash_password(candidate.password, rounds=self.bcrypt_rounds),
        )
        try:
            user_id = self.users.create_user(user)
        except IntegrityError:
            field = self.users.find_conflict(candidate.username, candidate.email, candidate.student_number)
            logger.info("Registration for %r lost a uniqueness race on %s", candidate.username, field)
            return AuthError.conflict(field or "username")

        created = self.users.get_by_id(user_id)
        if created is None:
            raise RuntimeError(f"User {user_id} not found after insert")
        logger.info("Registered user %s", user_id)
        return self.issue_tokens(created, device_info)

    def login(self, username: str, password: str, device_info: str | None = None) -> IssuedSession | AuthError:
        """Verify a username/password pair and open a new session."""
        user = self.users.get_credentials_by_username(username)
        if user is None or user.hashed_password is None:
            # Equalize timing -- do NOT return before running bcrypt.
            verify_password(password, self._dummy_hash)
            logger.info("Login failed: unknown username")
            return AuthError.authentication("unknown_user")
        if not verify_password(password, user.hashed_password):
            logger.info("Login failed for user %s: bad password", user.id)
            return AuthError.authentication("bad_password")
        return self.issue_tokens(user, device_info)

    def check_username_availability(self, username: str) -> bool:
        return not self.users.is_taken("username", username)

    def check_email_availability(self, email: str) -> bool:
        return not self.users.is_taken("email", email)

    # ------------------------------------------------------------------
    # Token issuance
    # ------------------------------------------------------------------

    def _mint(self, user: User, now: datetime) -> tuple[str, str, datetime]:
        access_token = self.codec.issue(
            TokenKind.ACCESS,
            user.id,
            {"username": user.username, "role": user.role.value},
            ttl=self.access_ttl,
            now=now,
        )
        refresh_token = self.codec.issue(TokenKind.REFRESH, user.id, ttl=self.refresh_ttl, now=now)
        return access_token, refresh_token, now + self.refresh_ttl

    def issue_tokens(self, user: User, device_info: str | None = None) -> IssuedSession:
        """Mint an access/refresh pair and record a brand-new session for it.

        This and the rotation branch of refresh() are the only places a
        session record is created.
        """
        now = self._clock()
        access_token, refresh_token, expires_at = self._mint(user, now)
        self.sessions.create(
            SessionRecord(
                user_id=user.id,
                token_hash=self.codec.hash_token(refresh_token),
                device_info=device_info,
                expires_at=to_iso(expires_at),
                created_at=to_iso(now),
            )
        )
        return IssuedSession(access_token=access_token, refresh_token=refresh_token, user=SanitizedUser.from_user(user))

    # ------------------------------------------------------------------
    # Refresh (rotation + reuse detection)
    # ------------------------------------------------------------------

    def refresh(self, presented_token: str) -> IssuedSession | AuthError:
        """Redeem a refresh token for a new pair, invalidating the old token.

        The session record and the JWT share one lifetime, so an expired token
        is normally turned away by the codec (token_expired) before its record
        is read. Such records are removed by the purge-expired job; the
        session_expired branch only deletes a record whose expires_at passed
        while the JWT itself still verifies.
        """
        claims = self.codec.verify(presented_token)
        if isinstance(claims, TokenError):
            logger.info("Refresh rejected: token %s", claims.value)
            return AuthError.authentication(f"token_{claims.value}")
        if claims.get("type") != TokenKind.REFRESH.value:
            logger.info("Refresh rejected: %s token presented", claims.get("type"))
            return AuthError.authentication("wrong_token_kind")

        user = self.users.get_by_id(claims["sub"])
        if user is None:
            logger.info("Refresh rejected: subject %s unknown or deleted", claims["sub"])
            return AuthError.authentication("unknown_user")

        token_hash = self.codec.hash_token(presented_token)
        record = self.sessions.find_by_hash(user.id, token_hash)
        now = self._clock()

        if record is None:
            if self.sessions.is_rotated(user.id, token_hash):
                revoked = self.sessions.delete_all_for_user(user.id)
                logger.warning(
                    "Refresh token reuse detected for user %s; revoked %d session(s)",
                    user.id,
                    revoked,
                )
                return AuthError.authentication("token_reused")
            logger.info("Refresh rejected for user %s: no live session", user.id)
            return AuthError.authentication("no_session")

        if datetime.fromisoformat(record.expires_at) <= now:
            self.sessions.delete(record.id)
            logger.info("Refresh rejected for user %s: session %s expired", user.id, record.id)
            return AuthError.authentication("session_expired")

        access_token, refresh_token, expires_at = self._mint(user, now)
        replacement = SessionRecord(
            user_id=user.id,
            token_hash=self.codec.hash_token(refresh_token),
            device_info=record.device_info,
            expires_at=to_iso(expires_at),
            last_used_at=to_iso(now),
            created_at=to_iso(now),
        )
        if self.sessions.rotate(record, replacement, now) is None:
            logger.warning("Refresh rejected for user %s: session %s already redeemed", user.id, record.id)
            return AuthError.authentication("rotation_race")
        return IssuedSession(access_token=access_token, refresh_token=refresh_token, user=SanitizedUser.from_user(user))

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self, user_id: str, presented_refresh_token: str | None = None) -> int:
        """End one session (token given) or all sessions (no token).

        Idempotent: a token that matches nothing is not an error. Returns the
        number of sessions removed.
        """
        if presented_refresh_token:
            removed = self.sessions.delete_by_hash(user_id, self.codec.hash_token(presented_refresh_token))
            logger.info("Logout for user %s: %s", user_id, "session ended" if removed else "no matching session")
            return int(removed)
        return self.logout_all(user_id)

    def logout_all(self, user_id: str) -> int:
        """End every session the user holds. Returns the number removed."""
        removed = self.sessions.delete_all_for_user(user_id)
        logger.info("Logout-all for user %s: %d session(s) ended", user_id, removed)
        return removed
