"""
auth/otp.py -- One-time code generation, sealing, and verification.

Used by both email verification and password reset. Each user has one slot
per OtpPurpose; issuing a code overwrites that slot, so only the most recently
issued code can ever verify.

Security design decisions:
  Codes: 6 decimal digits from secrets.randbelow() over the full 000000-999999
       range. Never derived from time or a counter.

  Storage: bcrypt hash with a fresh salt per issuance (Settings.otp_hash_rounds).
       The plaintext is returned to the caller for delivery and never stored.

  Comparison: bcrypt.checkpw, which compares in constant time.

  Consumption: verify() never clears the slot. The workflow clears it with a
       compare-and-set store update after a successful check, which is also
       what makes a code single-use under concurrent requests.

bcrypt work runs in the Starlette thread pool so the event loop keeps serving
other requests while a code is hashed or checked.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import bcrypt
from starlette.concurrency import run_in_threadpool

from auth.models import OtpPurpose, OtpSlot, User
from auth.store import UserStore
from core.config import Settings, get_settings

logger = logging.getLogger("otpauth.auth.otp")

OTP_LENGTH = 6


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_code() -> str:
    """Return a uniformly random, zero-padded 6-digit code."""
    return f"{secrets.randbelow(10**OTP_LENGTH):0{OTP_LENGTH}d}"


class OtpEngine:
    """Issues and checks one-time codes against a user's OTP slots."""

    def __init__(
        self,
        store: UserStore,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        settings = settings or get_settings()
        self.store = store
        self.ttl = timedelta(seconds=settings.otp_expire_seconds)
        self.rounds = settings.otp_hash_rounds
        self.clock = clock

    def _seal(self, code: str) -> str:
        return bcrypt.hashpw(code.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    async def prepare(self) -> tuple[str, OtpSlot]:
        """Generate a code and its slot without persisting anything.

        Registration uses this so the user row is inserted together with its
        first verification slot.
        """
        code = generate_code()
        code_hash = await run_in_threadpool(self._seal, code)
        return code, OtpSlot(code_hash=code_hash, expires_at=self.clock() + self.ttl)

    async def issue(self, user_id: int, purpose: OtpPurpose) -> str:
        """Store a fresh code in the purpose's slot and return the plaintext.

        Overwrites any outstanding code for the same purpose.
        """
        code, slot = await self.prepare()
        self.store.set_otp_slot(user_id, purpose, slot)
        logger.info("Issued %s code for user %s (expires %s)", purpose.value, user_id, slot.expires_at.isoformat())
        return code

    def is_live(self, slot: OtpSlot | None) -> bool:
        """True if the slot holds a code that has not yet expired."""
        return slot is not None and self.clock() < slot.expires_at

    async def verify(self, user: User, purpose: OtpPurpose, candidate: str) -> bool:
        """Check candidate against the user's slot for purpose.

        False when the slot is empty or expired -- an expired code that has
        not been cleared is treated exactly like no code. Does not clear the
        slot.
        """
        slot = user.slot(purpose)
        if not self.is_live(slot):
            return False
        return await run_in_threadpool(_check, candidate, slot.code_hash)


def _check(candidate: str, code_hash: str) -> bool:
    try:
        return bcrypt.checkpw(candidate.encode("utf-8"), code_hash.encode("utf-8"))
    except ValueError:
        return False
