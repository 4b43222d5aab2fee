"""
auth/tokens.py -- JWT codec, refresh-token fingerprinting, and password hashing.

Security design decisions:
  JWT: python-jose with HS256. TokenCodec is constructed once at startup with
       the SECRET_KEY from Settings and is the only holder of that key. It has
       no mutable state, so one instance is shared by every request thread.
       verify() never raises on attacker-controlled input; every failure comes
       back as a TokenError value.

  Token shape: every token carries sub, type ("access" | "refresh"), jti, iat
       and exp. jti is a fresh uuid4 per token so two refresh tokens minted for
       the same user in the same second are still distinct strings (and so have
       distinct fingerprints in the session store).

  Refresh-token fingerprints: HMAC-SHA256(SECRET_KEY, token). Deterministic, so
       the session store finds a record with one indexed equality lookup and
       can delete it conditionally. Someone holding only the database cannot
       recover or forge a usable token from the stored value.

  Passwords: bcrypt directly (no passlib wrapper) with a configurable cost.
       bcrypt refuses input over 72 bytes, so the password is first reduced to
       base64(SHA-256(password)), a fixed 44 bytes. Every password is treated
       the same way, so long passwords neither fail nor collide on a shared
       72-byte prefix.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt
from jose.exceptions import JWTClaimsError

from auth.models import TokenError, TokenKind

_ALGORITHM = "HS256"

# Claims the codec owns. Callers cannot override these through extra_claims.
_RESERVED_CLAIMS = frozenset({"sub", "type", "exp", "iat", "jti"})


# ---------------------------------------------------------------------------
# Password hashing (bcrypt)
# ---------------------------------------------------------------------------


def _bcrypt_input(plain: str) -> bytes:
    return base64.b64encode(hashlib.sha256(plain.encode("utf-8")).digest())


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext password at the given cost."""
    return bcrypt.hashpw(_bcrypt_input(plain), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    The only ValueError bcrypt can raise here is for a stored hash it cannot
    parse (the input is always 44 bytes). That is a failed comparison, not a
    server error.
    """
    try:
        return bcrypt.checkpw(_bcrypt_input(plain), hashed.encode("utf-8"))
    except ValueError:
        return False


# ---------------------------------------------------------------------------
# Token codec
# ---------------------------------------------------------------------------


class TokenCodec:
    """Sign and verify compact expiring tokens.

    Usage:
        codec = TokenCodec(settings.secret_key)
        token = codec.issue(TokenKind.ACCESS, user_id, {"username": "alice", "role": "GUEST"},
                            ttl=timedelta(minutes=15))
        claims = codec.verify(token)
        if isinstance(claims, TokenError):
            ...
    """

    def __init__(self, secret_key: str, algorithm: str = _ALGORITHM) -> None:
        if not secret_key:
            raise ValueError("TokenCodec requires a non-empty secret key.")
        self._secret_key = secret_key
        self._algorithm = algorithm

    def issue(
        self,
        kind: TokenKind,
        subject: str,
        extra_claims: dict[str, Any] | None = None,
        ttl: timedelta = timedelta(minutes=15),
        now: datetime | None = None,
    ) -> str:
        """Encode a signed token for subject that expires ttl after now.

        extra_claims may carry a "jti"; otherwise a random one is generated.
        Other reserved claim names in extra_claims are ignored.
        """
        issued_at = now or datetime.now(timezone.utc)
        claims = dict(extra_claims or {})
        jti = str(claims.pop("jti", None) or uuid.uuid4())
        payload = {k: v for k, v in claims.items() if k not in _RESERVED_CLAIMS}
        payload.update(
            {
                "sub": subject,
                "type": kind.value,
                "jti": jti,
                "iat": issued_at,
                "exp": issued_at + ttl,
            }
        )
        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm)

    def verify(self, token: str) -> dict[str, Any] | TokenError:
        """Decode and verify a token. Returns the claims dict or a TokenError.

        MALFORMED covers anything that is not a parseable JWT of the expected
        shape; SIGNATURE_INVALID covers a well-formed token signed with another
        key or algorithm; EXPIRED covers a valid signature past its exp.
        """
        if not isinstance(token, str) or not token:
            return TokenError.MALFORMED
        try:
            jwt.get_unverified_header(token)
        except (JWTError, ValueError, UnicodeError):
            return TokenError.MALFORMED

        try:
            claims = jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
        except ExpiredSignatureError:
            return TokenError.EXPIRED
        except JWTClaimsError:
            return TokenError.MALFORMED
        except JWTError:
            return TokenError.SIGNATURE_INVALID

        if "exp" not in claims or not isinstance(claims.get("sub"), str):
            return TokenError.MALFORMED
        if claims.get("type") not in {k.value for k in TokenKind}:
            return TokenError.MALFORMED
        return claims

    def hash_token(self, token: str) -> str:
        """Return HMAC-SHA256(SECRET_KEY, token) as a hex string."""
        return hmac.new(self._secret_key.encode(), token.encode(), hashlib.sha256).hexdigest()
