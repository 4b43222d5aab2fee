"""
auth/store.py -- SQLAlchemy Core persistence layer for users and sessions.

Pattern: Repository + Data Mapper.
UserStore is the credential store, SessionStore is the refresh-token store;
_row_to_user / _row_to_session are the mappers. The session manager and the
access guard never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  hashed_password is excluded from _USER_COLUMNS, the projection every default
  read uses. Only get_credentials_by_username() selects it.

  Soft-deleted users (deleted_at set) are invisible to every default lookup.
  soft_delete_user() removes the user's sessions in the same transaction, so
  a soft-deleted user never has a live session.

Tables:
  users                   -- one row per member.
  refresh_tokens          -- one row per live refresh token (device/login).
  rotated_refresh_tokens  -- fingerprints of tokens already redeemed by a
                             rotation, kept until the token would have expired
                             anyway. Presence here is what identifies a replay.

Timestamps are ISO 8601 UTC strings with fixed microsecond precision, so
string comparison in SQL orders them correctly.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import Role, SessionRecord, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("username", String(50), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("student_number", String(20), unique=True),  # NULL when not supplied
    Column("name", String(50), nullable=False),
    Column("phone_number", String(20)),
    Column("hashed_password", Text, nullable=False),
    Column("role", String(10), nullable=False, server_default=Role.GUEST.value),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("deleted_at", String(32)),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("device_info", String(255)),
    Column("expires_at", String(32), nullable=False),
    Column("last_used_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

_rotated_tokens = Table(
    "rotated_refresh_tokens",
    _metadata,
    Column("token_hash", String(64), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("rotated_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
)

# Default projection: everything except the password hash.
_USER_COLUMNS = [c for c in _users.c if c.name != "hashed_password"]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. foreign_keys=ON is what makes the
    ON DELETE CASCADE on refresh_tokens.user_id actually fire.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(db_url: str) -> Engine:
    """Create an engine for db_url and make sure the auth schema exists."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    _metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Credential store
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        engine = build_engine("sqlite:///portal.db")
        users = UserStore(engine)
        user_id = users.create_user(User(username="alice", email="a@example.com", name="Alice",
                                         hashed_password=hash_password("secret")))
        users.get_by_id(user_id)
    """

    # Business keys checked by find_conflict(), in the order collisions are reported.
    UNIQUE_FIELDS = ("username", "email", "student_number")

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_user(self, user: User) -> str:
        """Insert a new user and return its assigned UUID.

        Raises sqlalchemy.exc.IntegrityError if a unique business key already
        exists. SessionManager.register() catches it as the signal that a
        concurrent registration won the race.
        """
        user_id = user.id or str(uuid.uuid4())
        now = _now_iso()
        with self.engine.begin() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    username=user.username,
                    email=user.email,
                    student_number=user.student_number,
                    name=user.name,
                    phone_number=user.phone_number,
                    hashed_password=user.hashed_password,
                    role=user.role.value,
                    created_at=now,
                    updated_at=now,
                )
            )
        return user_id

    def get_by_id(self, user_id: str, include_deleted: bool = False) -> User | None:
        """Look up a user by primary key. Soft-deleted users are skipped unless asked for."""
        stmt = select(*_USER_COLUMNS).where(_users.c.id == user_id)
        if not include_deleted:
            stmt = stmt.where(_users.c.deleted_at.is_(None))
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> User | None:
        """Look up a live user by exact username (case-sensitive). No password hash."""
        stmt = select(*_USER_COLUMNS).where((_users.c.username == username) & _users.c.deleted_at.is_(None))
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_credentials_by_username(self, username: str) -> User | None:
        """Like get_by_username() but also selects hashed_password. Login only."""
        stmt = select(*_USER_COLUMNS, _users.c.hashed_password).where(
            (_users.c.username == username) & _users.c.deleted_at.is_(None)
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_conflict(self, username: str, email: str, student_number: str | None) -> str | None:
        """Return the first business key already taken by any user, or None.

        Soft-deleted users still hold their keys. A None student_number never
        collides.
        """
        candidates = {"username": username, "email": email, "student_number": student_number}
        clauses = [_users.c[field] == value for field, value in candidates.items() if value is not None]
        stmt = select(_users.c.username, _users.c.email, _users.c.student_number).where(or_(*clauses))
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        for field in self.UNIQUE_FIELDS:
            value = candidates[field]
            if value is not None and any(getattr(r, field) == value for r in rows):
                return field
        return None

    def is_taken(self, field: str, value: str) -> bool:
        """Return True if any user (soft-deleted included) holds value in field."""
        if field not in self.UNIQUE_FIELDS:
            raise ValueError(f"Unknown unique field: {field!r}")
        stmt = select(func.count()).select_from(_users).where(_users.c[field] == value)
        with self.engine.connect() as conn:
            result = conn.execute(stmt).scalar()
        return (result or 0) > 0

    def update_role(self, user_id: str, role: Role) -> bool:
        """Change a live user's role. Returns False if the user was not found.

        Outstanding access tokens keep the old role until they are replaced by
        the next login or refresh.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & _users.c.deleted_at.is_(None))
                .values(role=role.value, updated_at=_now_iso())
            )
        return result.rowcount > 0

    def soft_delete_user(self, user_id: str) -> bool:
        """Mark a user deleted and drop every session they hold, atomically."""
        now = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & _users.c.deleted_at.is_(None))
                .values(deleted_at=now, updated_at=now)
            )
            conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
        return result.rowcount > 0

    def delete_user(self, user_id: str) -> bool:
        """Permanently delete a user. Sessions and tombstones go with it (ON DELETE CASCADE)."""
        with self.engine.begin() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Session store
# ---------------------------------------------------------------------------


class SessionStore:
    """Repository for refresh-token session records and rotation tombstones.

    Records are only ever inserted or hard-deleted, never updated, so a stale
    token can never match a live row.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(self, record: SessionRecord) -> int:
        """Insert a new session record and return its ID."""
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.insert().values(**_session_values(record)))
        return result.inserted_primary_key[0]

    def find_by_hash(self, user_id: str, token_hash: str) -> SessionRecord | None:
        """Return the user's session whose fingerprint equals token_hash, or None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _refresh_tokens.select().where(
                    (_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.token_hash == token_hash)
                )
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_for_user(self, user_id: str) -> list[SessionRecord]:
        """Return all of a user's session records (newest first)."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(_refresh_tokens.c.user_id == user_id)
                .order_by(_refresh_tokens.c.created_at.desc(), _refresh_tokens.c.id.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def count_for_user(self, user_id: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_refresh_tokens).where(_refresh_tokens.c.user_id == user_id)
            ).scalar()
        return result or 0

    def has_live_session(self, user_id: str, now: datetime) -> bool:
        """Return True if the user holds at least one unexpired session."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_refresh_tokens.c.id)
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.expires_at > to_iso(now)))
                .limit(1)
            ).fetchone()
        return row is not None

    def delete(self, record_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.id == record_id))
        return result.rowcount > 0

    def delete_by_hash(self, user_id: str, token_hash: str) -> bool:
        """Delete one of the user's sessions by fingerprint.

        user_id is part of the WHERE clause so one user can never delete
        another user's session, even holding their token.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.delete().where(
                    (_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.token_hash == token_hash)
                )
            )
        return result.rowcount > 0

    def delete_all_for_user(self, user_id: str) -> int:
        """Delete every session the user holds. Returns the number removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
        return result.rowcount

    def is_rotated(self, user_id: str, token_hash: str) -> bool:
        """Return True if token_hash belongs to a token this user already redeemed."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_rotated_tokens.c.token_hash).where(
                    (_rotated_tokens.c.user_id == user_id) & (_rotated_tokens.c.token_hash == token_hash)
                )
            ).fetchone()
        return row is not None

    def rotate(self, old: SessionRecord, new: SessionRecord, now: datetime) -> int | None:
        """Replace old with new in a single transaction.

        The DELETE is conditional on both id and token_hash. If another request
        redeemed the same token first the DELETE affects zero rows and nothing
        is written; None tells the caller it lost the race. Otherwise a
        tombstone for the old fingerprint and the new record are inserted in
        the same transaction and the new record's ID is returned.
        """
        with self.engine.begin() as conn:
            deleted = conn.execute(
                _refresh_tokens.delete().where(
                    (_refresh_tokens.c.id == old.id) & (_refresh_tokens.c.token_hash == old.token_hash)
                )
            )
            if deleted.rowcount != 1:
                return None
            conn.execute(
                _rotated_tokens.insert().values(
                    token_hash=old.token_hash,
                    user_id=old.user_id,
                    rotated_at=to_iso(now),
                    expires_at=old.expires_at,
                )
            )
            result = conn.execute(_refresh_tokens.insert().values(**_session_values(new)))
        return result.inserted_primary_key[0]

    def purge_expired(self, now: datetime) -> int:
        """Delete expired sessions and tombstones. Returns the number of rows removed.

        Meant for an external scheduled job; refresh() also drops expired
        sessions lazily when it meets them.
        """
        cutoff = to_iso(now)
        with self.engine.begin() as conn:
            sessions = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at <= cutoff))
            tombstones = conn.execute(_rotated_tokens.delete().where(_rotated_tokens.c.expires_at <= cutoff))
        return sessions.rowcount + tombstones.rowcount

    def ping(self) -> bool:
        """Cheap liveness probe for the health endpoint."""
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _session_values(record: SessionRecord) -> dict:
    return {
        "user_id": record.user_id,
        "token_hash": record.token_hash,
        "device_info": record.device_info,
        "expires_at": record.expires_at,
        "last_used_at": record.last_used_at,
        "created_at": record.created_at or _now_iso(),
    }


def _row_to_user(row) -> User:
    # hashed_password is only present on rows selected by get_credentials_by_username().
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        student_number=row.student_number,
        name=row.name,
        phone_number=row.phone_number,
        hashed_password=getattr(row, "hashed_password", None),
        role=Role(row.role),
        created_at=row.created_at,
        updated_at=row.updated_at,
        deleted_at=row.deleted_at,
    )


def _row_to_session(row) -> SessionRecord:
    return SessionRecord(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        device_info=row.device_info,
        expires_at=row.expires_at,
        last_used_at=row.last_used_at,
        created_at=row.created_at,
    )
