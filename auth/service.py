"""
auth/service.py -- Authentication workflows: register, verify, login, reset, refresh, logout.

AuthService composes the credential store, OTP engine, token engine, and an
email sender. Each public coroutine is one user-facing operation. It either
returns its result or raises an AuthError subclass that the API layer renders
verbatim.

Per-user state machine (derived by auth_state(), never stored):

    UNVERIFIED --verify_email--> VERIFIED <--reset_password-- RESET_PENDING
                                    |                             ^
                                    +-------forgot_password-------+

  register            -> UNVERIFIED, verification code issued
  verify_email        UNVERIFIED -> VERIFIED, token pair issued
  login               VERIFIED (or RESET_PENDING) only
  resend_verification UNVERIFIED only
  forgot_password     any existing user, reset code issued
  reset_password      live reset code -> all sessions revoked, password replaced

Security notes:
  [C1] Login runs bcrypt even when the email is unknown, and returns the same
       message for unknown email and wrong password. "Email not verified" is
       distinct -- an accepted, minor enumeration trade-off.

  [C2] Verification and reset codes live in separate slots, so a password
       reset request never invalidates a pending verification code.

  [C3] A successful code check is followed by a compare-and-set store update
       keyed on the verified hash. Two concurrent requests with the same code
       cannot both succeed, and neither can a code replaced in between.

  [C4] Password reset revokes every refresh token the user owns in the same
       transaction that stores the new password. The old password may have
       been compromised. A login that verified the old password only gets a
       session if its refresh record lands before that transaction, where the
       revocation then catches it.

Email delivery failures are logged and never roll back an issued code.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from starlette.concurrency import run_in_threadpool

from auth.errors import BadRequestError, ConflictError, NotFoundError, UnauthorizedError
from auth.models import AuthState, OtpPurpose, TokenPair, User
from auth.otp import OtpEngine
from auth.passwords import burn_password_check, hash_password, verify_password
from auth.store import UserStore, normalize_email
from auth.tokens import INVALID_CREDENTIALS, TokenEngine

logger = logging.getLogger("otpauth.auth")

_BAD_CREDENTIALS = INVALID_CREDENTIALS


def auth_state(user: User, now: datetime) -> AuthState:
    """Derive the explicit state tag from the stored flags and slots."""
    if not user.is_verified:
        return AuthState.UNVERIFIED
    if user.reset is not None and now < user.reset.expires_at:
        return AuthState.RESET_PENDING
    return AuthState.VERIFIED


class AuthService:
    """Orchestrates the auth workflows on top of the store and the two engines.

    email_sender is any object with async send_verification_email(email, code)
    and send_password_reset_email(email, code) methods returning bool.
    """

    def __init__(self, store: UserStore, tokens: TokenEngine, otp: OtpEngine, email_sender) -> None:
        self.store = store
        self.tokens = tokens
        self.otp = otp
        self.email_sender = email_sender

    # ------------------------------------------------------------------
    # Registration and verification
    # ------------------------------------------------------------------

    async def register(self, name: str, email: str, password: str) -> str:
        """Create an unverified account and email its verification code.

        Returns the normalized email. Raises ConflictError if taken.
        """
        email = normalize_email(email)
        if self.store.get_by_email(email) is not None:
            raise ConflictError("Email already in use")

        hashed = await run_in_threadpool(hash_password, password)
        code, slot = await self.otp.prepare()
        try:
            user_id = self.store.create_user(User(email=email, name=name, hashed_password=hashed, verification=slot))
        except IntegrityError as exc:
            # A concurrent registration won the unique email constraint.
            raise ConflictError("Email already in use") from exc

        logger.info("Registered user %s", user_id)
        await self._send(self.email_sender.send_verification_email, email, code)
        return email

    async def verify_email(self, email: str, otp: str) -> TokenPair:
        """Consume a verification code, mark the user verified, and log them in."""
        user = self.store.get_by_email(email)
        if user is None or not self.otp.is_live(user.verification):
            raise BadRequestError("User not found or verification code expired")
        if not await self.otp.verify(user, OtpPurpose.VERIFY, otp):
            raise BadRequestError("Invalid verification code")
        # [C3]
        if not self.store.mark_verified(user.id, user.verification.code_hash):
            raise BadRequestError("Invalid verification code")

        logger.info("Verified email for user %s", user.id)
        return self.tokens.issue(user.id)

    async def resend_verification(self, email: str) -> str:
        """Replace the verification code of an unverified user and email it again."""
        user = self.store.get_by_email(email)
        if user is None or auth_state(user, self.otp.clock()) is not AuthState.UNVERIFIED:
            raise NotFoundError("User not found or already verified")

        code = await self.otp.issue(user.id, OtpPurpose.VERIFY)
        await self._send(self.email_sender.send_verification_email, user.email, code)
        return user.email

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str) -> TokenPair:
        """Check credentials and issue a token pair. [C1]"""
        user = self.store.get_by_email(email)
        if user is None:
            await run_in_threadpool(burn_password_check, password)
            logger.info("Login failed: unknown email")
            raise UnauthorizedError(_BAD_CREDENTIALS)
        if not await run_in_threadpool(verify_password, password, user.hashed_password):
            logger.info("Login failed: wrong password for user %s", user.id)
            raise UnauthorizedError(_BAD_CREDENTIALS)
        if auth_state(user, self.otp.clock()) is AuthState.UNVERIFIED:
            logger.info("Login refused: user %s is not verified", user.id)
            raise UnauthorizedError("Email not verified")

        # [C4] no session if a reset replaced the password while it was being checked
        return self.tokens.issue(user.id, password_hash=user.hashed_password)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    async def forgot_password(self, email: str) -> str:
        """Issue a reset code and email it."""
        user = self.store.get_by_email(email)
        if user is None:
            raise NotFoundError("User not found")

        code = await self.otp.issue(user.id, OtpPurpose.RESET)
        await self._send(self.email_sender.send_password_reset_email, user.email, code)
        return user.email

    async def reset_password(self, email: str, otp: str, password: str) -> None:
        """Consume a reset code, revoke all sessions, and store the new password. [C4]"""
        user = self.store.get_by_email(email)
        if user is None or not self.otp.is_live(user.reset):
            raise BadRequestError("User not found or reset code expired")
        if not await self.otp.verify(user, OtpPurpose.RESET, otp):
            raise BadRequestError("Invalid reset code")

        hashed = await run_in_threadpool(hash_password, password)
        # [C3] [C4] password swap and session revocation commit together
        revoked = self.store.complete_password_reset(user.id, user.reset.code_hash, hashed, self.tokens.clock())
        if revoked is None:
            raise BadRequestError("Invalid reset code")
        logger.info("Password reset for user %s; revoked %d refresh token(s)", user.id, revoked)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def refresh(self, refresh_token: str) -> TokenPair:
        return self.tokens.rotate(refresh_token)

    async def logout(self, refresh_token: str | None) -> None:
        if not refresh_token:
            raise UnauthorizedError("Refresh token is required")
        self.tokens.revoke_one(refresh_token)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _send(self, send, email: str, code: str) -> None:
        if not await send(email, code):
            logger.warning("Code email to %s was not delivered; the code stays valid", email)
