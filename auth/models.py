"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container). Stores and services do the work;
these classes only own the domain shape.

Layer rule: no imports from api/ or mail/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class OtpPurpose(str, Enum):
    """Which one-time-code channel a code belongs to."""

    VERIFY = "verify"
    RESET = "reset"


class AuthState(str, Enum):
    """Derived per-user authentication state.

    Never stored -- computed from is_verified and the reset slot by
    auth.service.auth_state().
    """

    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    RESET_PENDING = "reset_pending"


@dataclass(frozen=True)
class OtpSlot:
    """One outstanding one-time code: its bcrypt hash and expiry (UTC).

    A user has one slot per OtpPurpose. Issuing a new code replaces the slot,
    which invalidates the previous code.
    """

    code_hash: str
    expires_at: datetime


@dataclass
class User:
    """A registered account.

    email is stored lower-cased; lookups normalize the same way so the unique
    constraint is effectively case-insensitive.
    """

    email: str
    name: str
    hashed_password: str
    id: int | None = None
    is_verified: bool = False
    verification: OtpSlot | None = None
    reset: OtpSlot | None = None
    created_at: str = ""  # ISO 8601, set by store on insert
    updated_at: str = ""

    def slot(self, purpose: OtpPurpose) -> OtpSlot | None:
        return self.verification if purpose is OtpPurpose.VERIFY else self.reset


@dataclass
class RefreshTokenRecord:
    """Server-side state for one issued refresh token.

    Security design:
    - token_hash is HMAC-SHA256(REFRESH_TOKEN_SECRET, raw_token). The raw token
      is returned to the client once and never persisted.
    - expires_at mirrors the token's signed exp claim.
    - is_active flips to False on rotation, logout, or password reset. A record
      is usable only while active and unexpired.
    """

    user_id: int
    token_hash: str
    expires_at: datetime
    id: int | None = None
    is_active: bool = True
    created_at: str = ""
    revoked_at: str | None = None


@dataclass(frozen=True)
class TokenPair:
    """An access/refresh token pair returned by the token engine."""

    access_token: str
    refresh_token: str
    refresh_expires_at: datetime
