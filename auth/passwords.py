"""
auth/passwords.py -- Password hashing (bcrypt, direct usage, no passlib wrapper).

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error.

The cost factor comes from Settings.password_hash_rounds. Tests lower it to
the bcrypt minimum (4) through the environment.

Timing equalization [C1]: _DUMMY_HASH lets the login path run a full bcrypt
comparison for unknown emails, so response time does not reveal whether an
account exists.
"""

from __future__ import annotations

import bcrypt

from core.config import get_settings


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input past 72 bytes. The API layer caps passwords at 50
    characters, which keeps ASCII input well below that.
    """
    salt = bcrypt.gensalt(rounds=get_settings().password_hash_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


_DUMMY_HASH: str = hash_password("otpauth_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run a bcrypt comparison that always fails [C1]."""
    verify_password(plain, _DUMMY_HASH)
