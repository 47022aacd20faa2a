"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore is the repository;
_row_to_user / _row_to_refresh_token are the mappers. Services and routes
never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  State transitions that must happen at most once are compare-and-set
  updates: the WHERE clause names the expected current state and the caller
  checks rowcount. This covers:
    - refresh token rotation  (is_active = 1 AND expires_at > now)
    - refresh token logout    (same condition)
    - OTP consumption         (stored code hash equals the hash just verified)
    - password-login sessions (stored password hash equals the hash just verified)
  A second concurrent caller matches zero rows and fails instead of
  double-issuing.

Timestamps are stored as fixed-width UTC ISO 8601 strings (microsecond
precision) so lexicographic comparison in SQL matches chronological order.

DB path: auth/otpauth.db unless DATABASE_URL is set.

Layer rule: no imports from api/ or mail/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    event,
    func,
    literal,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import OtpPurpose, OtpSlot, RefreshTokenRecord, User
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # lower-cased before insert
    Column("name", String(100), nullable=False),
    Column("hashed_password", Text, nullable=False),
    Column("is_verified", Integer, nullable=False, server_default="0"),
    Column("verification_code_hash", Text),
    Column("verification_code_expires", String(32)),
    Column("reset_code_hash", Text),
    Column("reset_code_expires", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("expires_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("revoked_at", String(32)),
    Index("ix_refresh_tokens_user_id", "user_id"),
)

# Column pairs backing each OTP channel.
_SLOT_COLUMNS: dict[OtpPurpose, tuple[str, str]] = {
    OtpPurpose.VERIFY: ("verification_code_hash", "verification_code_expires"),
    OtpPurpose.RESET: ("reset_code_hash", "reset_code_expires"),
}


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block behind writers."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _now_iso() -> str:
    return _iso(datetime.now(timezone.utc))


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and RefreshTokenRecord entities.

    Usage:
        store = UserStore()
        user_id = store.create_user(User(email="a@x.com", name="A", hashed_password=h))
        user = store.get_by_email("A@X.com")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Callers treat that as a concurrent duplicate registration.
        """
        now = _now_iso()
        values = {
            "email": normalize_email(user.email),
            "name": user.name,
            "hashed_password": user.hashed_password,
            "is_verified": 1 if user.is_verified else 0,
            "created_at": now,
            "updated_at": now,
        }
        values.update(_slot_values(OtpPurpose.VERIFY, user.verification))
        values.update(_slot_values(OtpPurpose.RESET, user.reset))
        with self.engine.connect() as conn:
            result = conn.execute(_users.insert().values(**values))
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable profile fields (currently only name).

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - {"name"}
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(updated_at=_now_iso(), **fields)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # One-time code slots
    # ------------------------------------------------------------------

    def set_otp_slot(self, user_id: int, purpose: OtpPurpose, slot: OtpSlot) -> bool:
        """Overwrite the user's slot for purpose. Last writer wins."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(updated_at=_now_iso(), **_slot_values(purpose, slot))
            )
            conn.commit()
        return result.rowcount > 0

    def mark_verified(self, user_id: int, expected_code_hash: str) -> bool:
        """Set is_verified and clear the verification slot.

        Conditional on the slot still holding expected_code_hash, so a code is
        consumed at most once and a code replaced by a resend cannot complete
        verification. Returns False when nothing matched.
        """
        hash_col, _ = _SLOT_COLUMNS[OtpPurpose.VERIFY]
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c[hash_col] == expected_code_hash))
                .values(is_verified=1, updated_at=_now_iso(), **_slot_values(OtpPurpose.VERIFY, None))
            )
            conn.commit()
        return result.rowcount > 0

    def complete_password_reset(
        self, user_id: int, expected_code_hash: str, hashed_password: str, now: datetime
    ) -> int | None:
        """Store the new password hash, clear the reset slot, and revoke every session.

        One transaction: the password swap and the bulk deactivation commit
        together, so no refresh token issued against the old password can
        outlive the reset. Same compare-and-set contract as mark_verified().
        Returns the number of revoked refresh tokens, or None when the reset
        slot no longer holds expected_code_hash.
        """
        hash_col, _ = _SLOT_COLUMNS[OtpPurpose.RESET]
        now_iso = _iso(now)
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c[hash_col] == expected_code_hash))
                .values(
                    hashed_password=hashed_password,
                    updated_at=now_iso,
                    **_slot_values(OtpPurpose.RESET, None),
                )
            )
            if result.rowcount != 1:
                return None
            revoked = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.is_active == 1))
                .values(is_active=0, revoked_at=now_iso)
            )
        return revoked.rowcount

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, record: RefreshTokenRecord) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_refresh_tokens.insert().values(**_refresh_token_values(record)))
            conn.commit()
            return result.inserted_primary_key[0]

    def create_refresh_token_for_password(self, record: RefreshTokenRecord, password_hash: str) -> bool:
        """Insert record only while the owner's stored password hash is still password_hash.

        A single INSERT ... SELECT, so a login that verified a password which a
        concurrent reset has since replaced gets no session. Returns False
        when nothing was inserted.
        """
        values = _refresh_token_values(record)
        source = select(*[literal(v) for v in values.values()]).where(
            (_users.c.id == record.user_id) & (_users.c.hashed_password == password_hash)
        )
        with self.engine.connect() as conn:
            result = conn.execute(_refresh_tokens.insert().from_select(list(values), source))
            conn.commit()
        return result.rowcount == 1

    def get_refresh_token(self, token_hash: str) -> RefreshTokenRecord | None:
        """Look up a refresh token record by hash regardless of state."""
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def rotate_refresh_token(self, old_hash: str, successor: RefreshTokenRecord, now: datetime) -> bool:
        """Deactivate old_hash and insert successor in one transaction.

        The deactivation only matches an active, unexpired record. If it
        matches nothing the successor is not inserted and False is returned --
        the presented token was already rotated, logged out, revoked, expired,
        or never existed.
        """
        now_iso = _iso(now)
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(_usable_token(old_hash, now_iso))
                .values(is_active=0, revoked_at=now_iso)
            )
            if result.rowcount != 1:
                return False
            conn.execute(_refresh_tokens.insert().values(**_refresh_token_values(successor)))
        return True

    def deactivate_refresh_token(self, token_hash: str, now: datetime) -> bool:
        """Deactivate one active, unexpired record. Returns False if none matched."""
        now_iso = _iso(now)
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(_usable_token(token_hash, now_iso))
                .values(is_active=0, revoked_at=now_iso)
            )
            conn.commit()
        return result.rowcount > 0

    def deactivate_user_refresh_tokens(self, user_id: int, now: datetime) -> int:
        """Deactivate every active record owned by user_id. Returns the count."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.is_active == 1))
                .values(is_active=0, revoked_at=_iso(now))
            )
            conn.commit()
        return result.rowcount

    def count_active_refresh_tokens(self, user_id: int, now: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_refresh_tokens)
                .where(
                    (_refresh_tokens.c.user_id == user_id)
                    & (_refresh_tokens.c.is_active == 1)
                    & (_refresh_tokens.c.expires_at > _iso(now))
                )
            ).scalar()
        return result or 0

    def purge_refresh_tokens(self, now: datetime) -> int:
        """Delete records that can never be used again (inactive or expired).

        Maintenance only -- nothing in the request path calls this.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                delete(_refresh_tokens).where(
                    or_(_refresh_tokens.c.is_active == 0, _refresh_tokens.c.expires_at <= _iso(now))
                )
            )
            conn.commit()
        return result.rowcount

    def ping(self) -> bool:
        """Cheap connectivity check for the health endpoint."""
        with self.engine.connect() as conn:
            return conn.execute(select(1)).scalar() == 1

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Query fragments and value builders
# ---------------------------------------------------------------------------


def _usable_token(token_hash: str, now_iso: str):
    return (
        (_refresh_tokens.c.token_hash == token_hash)
        & (_refresh_tokens.c.is_active == 1)
        & (_refresh_tokens.c.expires_at > now_iso)
    )


def _slot_values(purpose: OtpPurpose, slot: OtpSlot | None) -> dict:
    hash_col, expires_col = _SLOT_COLUMNS[purpose]
    if slot is None:
        return {hash_col: None, expires_col: None}
    return {hash_col: slot.code_hash, expires_col: _iso(slot.expires_at)}


def _refresh_token_values(record: RefreshTokenRecord) -> dict:
    return {
        "user_id": record.user_id,
        "token_hash": record.token_hash,
        "expires_at": _iso(record.expires_at),
        "is_active": 1 if record.is_active else 0,
        "created_at": _now_iso(),
    }


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_slot(code_hash: str | None, expires: str | None) -> OtpSlot | None:
    if not code_hash or not expires:
        return None
    return OtpSlot(code_hash=code_hash, expires_at=_parse(expires))


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        hashed_password=row.hashed_password,
        is_verified=bool(row.is_verified),
        verification=_row_to_slot(row.verification_code_hash, row.verification_code_expires),
        reset=_row_to_slot(row.reset_code_hash, row.reset_code_expires),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_refresh_token(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=_parse(row.expires_at),
        is_active=bool(row.is_active),
        created_at=row.created_at,
        revoked_at=row.revoked_at,
    )
