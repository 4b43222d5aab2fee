"""Unit tests for auth/tokens.py -- TokenCodec and password hashing.

Covers:
- issue() / verify() claim layout for access and refresh tokens
- verify() returns a TokenError (never raises) for expired, forged, tampered
  and malformed input
- jti makes tokens minted in the same instant distinct
- hash_token() is deterministic and keyed
- bcrypt helpers
"""

import base64
import json
from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from auth.models import TokenError, TokenKind
from auth.tokens import TokenCodec, hash_password, verify_password


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).rstrip(b"=").decode()


class TestIssueAndVerify:
    def test_access_token_carries_identity_claims(self, codec: TokenCodec) -> None:
        token = codec.issue(TokenKind.ACCESS, "user-1", {"username": "alice", "role": "MEMBER"})
        claims = codec.verify(token)
        assert isinstance(claims, dict)
        assert claims["sub"] == "user-1"
        assert claims["type"] == "access"
        assert claims["username"] == "alice"
        assert claims["role"] == "MEMBER"
        assert "exp" in claims and "jti" in claims

    def test_refresh_token_has_refresh_kind(self, codec: TokenCodec) -> None:
        token = codec.issue(TokenKind.REFRESH, "user-1", ttl=timedelta(days=7))
        claims = codec.verify(token)
        assert claims["type"] == "refresh"
        assert "username" not in claims

    def test_expiry_matches_ttl(self, codec: TokenCodec) -> None:
        now = datetime.now(timezone.utc).replace(microsecond=0)
        token = codec.issue(TokenKind.ACCESS, "user-1", {"username": "a", "role": "GUEST"}, ttl=timedelta(minutes=15), now=now)
        claims = codec.verify(token)
        assert claims["exp"] - claims["iat"] == 15 * 60

    def test_tokens_minted_together_are_distinct(self, codec: TokenCodec) -> None:
        now = datetime.now(timezone.utc)
        first = codec.issue(TokenKind.REFRESH, "user-1", now=now)
        second = codec.issue(TokenKind.REFRESH, "user-1", now=now)
        assert first != second

    def test_reserved_claims_cannot_be_overridden(self, codec: TokenCodec) -> None:
        token = codec.issue(TokenKind.ACCESS, "user-1", {"sub": "admin", "type": "refresh", "role": "GUEST"})
        claims = codec.verify(token)
        assert claims["sub"] == "user-1"
        assert claims["type"] == "access"

    def test_explicit_jti_is_used(self, codec: TokenCodec) -> None:
        token = codec.issue(TokenKind.REFRESH, "user-1", {"jti": "fixed-id"})
        assert codec.verify(token)["jti"] == "fixed-id"

    def test_empty_secret_rejected(self) -> None:
        with pytest.raises(ValueError):
            TokenCodec("")


class TestVerifyFailures:
    def test_expired_token(self, codec: TokenCodec) -> None:
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        token = codec.issue(TokenKind.ACCESS, "user-1", {"username": "a", "role": "GUEST"}, ttl=timedelta(minutes=15), now=past)
        assert codec.verify(token) is TokenError.EXPIRED

    def test_token_signed_with_other_secret(self, codec: TokenCodec) -> None:
        other = TokenCodec("another-secret-key-that-is-long-enough-000000")
        token = other.issue(TokenKind.ACCESS, "user-1", {"username": "a", "role": "ADMIN"})
        assert codec.verify(token) is TokenError.SIGNATURE_INVALID

    def test_tampered_payload(self, codec: TokenCodec) -> None:
        token = codec.issue(TokenKind.ACCESS, "user-1", {"username": "a", "role": "GUEST"})
        header, payload, signature = token.split(".")
        claims = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))
        claims["role"] = "ADMIN"
        forged = ".".join([header, _b64(claims), signature])
        assert codec.verify(forged) is TokenError.SIGNATURE_INVALID

    def test_alg_none_rejected(self, codec: TokenCodec) -> None:
        exp = int((datetime.now(timezone.utc) + timedelta(minutes=5)).timestamp())
        unsigned = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{_b64({'sub': 'user-1', 'type': 'access', 'exp': exp})}."
        assert codec.verify(unsigned) in (TokenError.SIGNATURE_INVALID, TokenError.MALFORMED)

    @pytest.mark.parametrize("garbage", ["", "not-a-token", "a.b.c", "a.b", "....", "ünïcødé.tøkęn.x", None, 12345])
    def test_malformed_input_never_raises(self, codec: TokenCodec, garbage) -> None:
        assert codec.verify(garbage) is TokenError.MALFORMED

    def test_missing_kind_claim_is_malformed(self, codec: TokenCodec, secret_key: str) -> None:
        exp = datetime.now(timezone.utc) + timedelta(minutes=5)
        token = jwt.encode({"sub": "user-1", "exp": exp}, secret_key, algorithm="HS256")
        assert codec.verify(token) is TokenError.MALFORMED

    def test_unknown_kind_claim_is_malformed(self, codec: TokenCodec, secret_key: str) -> None:
        exp = datetime.now(timezone.utc) + timedelta(minutes=5)
        token = jwt.encode({"sub": "user-1", "type": "password-reset", "exp": exp}, secret_key, algorithm="HS256")
        assert codec.verify(token) is TokenError.MALFORMED

    def test_missing_expiry_is_malformed(self, codec: TokenCodec, secret_key: str) -> None:
        token = jwt.encode({"sub": "user-1", "type": "access"}, secret_key, algorithm="HS256")
        assert codec.verify(token) is TokenError.MALFORMED


class TestHashToken:
    def test_deterministic(self, codec: TokenCodec) -> None:
        assert codec.hash_token("abc") == codec.hash_token("abc")
        assert len(codec.hash_token("abc")) == 64

    def test_keyed_by_secret(self, codec: TokenCodec) -> None:
        other = TokenCodec("another-secret-key-that-is-long-enough-000000")
        assert codec.hash_token("abc") != other.hash_token("abc")

    def test_differs_from_input(self, codec: TokenCodec) -> None:
        token = codec.issue(TokenKind.REFRESH, "user-1")
        assert codec.hash_token(token) != token


class TestPasswords:
    def test_round_trip(self) -> None:
        hashed = hash_password("correct-horse", rounds=4)
        assert hashed != "correct-horse"
        assert verify_password("correct-horse", hashed)
        assert not verify_password("wrong-horse", hashed)

    def test_cost_factor_applied(self) -> None:
        assert hash_password("correct-horse", rounds=5).startswith("$2b$05$")

    def test_corrupt_hash_is_a_failed_match(self) -> None:
        assert verify_password("correct-horse", "not-a-bcrypt-hash") is False

    def test_password_over_bcrypt_limit(self) -> None:
        long_password = "p" * 100
        hashed = hash_password(long_password, rounds=4)
        assert verify_password(long_password, hashed)

    def test_long_passwords_sharing_a_prefix_differ(self) -> None:
        hashed = hash_password("x" * 72 + "first", rounds=4)
        assert not verify_password("x" * 72 + "second", hashed)

    def test_multibyte_password(self) -> None:
        password = "비밀번호" * 10  # 120 UTF-8 bytes
        hashed = hash_password(password, rounds=4)
        assert verify_password(password, hashed)
        assert not verify_password("비밀번호" * 9, hashed)
