"""
auth/tokens.py -- JWT access/refresh tokens, refresh-token state, cookie helpers.

Security design decisions:
  JWT: python-jose with HS256. Access and refresh tokens are signed with two
       different secrets (Settings validates they differ), so neither kind of
       token verifies under the other's key.

  Access tokens: short-lived (15 min default), claims user_id/iat/exp. They are
       stateless -- the short lifetime bounds exposure, so there is no
       revocation list. decode_access_token() returns None on any failure and
       the route layer turns that into 401.

  Refresh tokens: long-lived (7 days default), claims user_id/iat/exp/jti.
       The random jti keeps two tokens minted in the same second for the same
       user distinct. Every issued refresh token has exactly one
       RefreshTokenRecord keyed by HMAC-SHA256(REFRESH_TOKEN_SECRET, token).
       The raw token is never stored.

  Rotation: a refresh token is single-use. rotate() verifies the signature,
       then asks the store to deactivate the presented record and insert the
       successor in one transaction, conditional on the record still being
       active and unexpired. A replayed or concurrently rotated token matches
       nothing and fails with 401.

  Failure messages: every refresh failure (bad signature, expired, inactive,
       unknown) raises the same UnauthorizedError message so callers cannot tell
       which check failed.

Layer rule: no imports from api/ or mail/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.errors import UnauthorizedError
from auth.models import RefreshTokenRecord, TokenPair
from auth.store import UserStore
from core.config import Settings, get_settings

logger = logging.getLogger("otpauth.auth.tokens")

_ALGORITHM = "HS256"

REFRESH_COOKIE_NAME = "refreshToken"
INVALID_REFRESH_TOKEN = "Invalid or expired refresh token"
INVALID_CREDENTIALS = "Invalid email or password"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenEngine:
    """Issues, rotates, and revokes access/refresh token pairs.

    Usage:
        engine = TokenEngine(store)
        pair = engine.issue(user_id)
        pair = engine.rotate(pair.refresh_token)
        engine.revoke_one(pair.refresh_token)
    """

    def __init__(
        self,
        store: UserStore,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock

    # ------------------------------------------------------------------
    # JWT encode / decode
    # ------------------------------------------------------------------

    def create_access_token(self, user_id: int) -> str:
        now = self.clock()
        payload = {
            "user_id": user_id,
            "iat": now,
            "exp": now + timedelta(seconds=self.settings.access_token_expire_seconds),
        }
        return jwt.encode(payload, self.settings.access_token_secret, algorithm=_ALGORITHM)

    def decode_access_token(self, token: str) -> dict | None:
        """Decode and verify an access token. Returns the payload or None on any failure."""
        try:
            payload = jwt.decode(token, self.settings.access_token_secret, algorithms=[_ALGORITHM])
        except JWTError:
            return None
        if not isinstance(payload.get("user_id"), int):
            return None
        return payload

    def _create_refresh_token(self, user_id: int) -> tuple[str, datetime]:
        """Sign a refresh token and return it with the exp claim read back from it."""
        now = self.clock()
        payload = {
            "user_id": user_id,
            "jti": secrets.token_urlsafe(16),
            "iat": now,
            "exp": now + timedelta(seconds=self.settings.refresh_token_expire_seconds),
        }
        token = jwt.encode(payload, self.settings.refresh_token_secret, algorithm=_ALGORITHM)
        # Mirror the signed claim exactly (jose truncates exp to whole seconds).
        exp = jwt.get_unverified_claims(token)["exp"]
        return token, datetime.fromtimestamp(exp, tz=timezone.utc)

    def _decode_refresh_token(self, token: str) -> dict:
        try:
            payload = jwt.decode(
                token,
                self.settings.refresh_token_secret,
                algorithms=[_ALGORITHM],
                options={"require_exp": True, "require_jti": True},
            )
        except JWTError as exc:
            raise UnauthorizedError(INVALID_REFRESH_TOKEN) from exc
        if not isinstance(payload.get("user_id"), int):
            raise UnauthorizedError(INVALID_REFRESH_TOKEN)
        return payload

    def hash_refresh_token(self, token: str) -> str:
        """Return HMAC-SHA256(REFRESH_TOKEN_SECRET, token) as a hex string.

        Deterministic, so records are found by an indexed equality lookup.
        Someone holding a copy of the DB cannot replay the stored values.
        """
        return hmac.new(
            self.settings.refresh_token_secret.encode(),
            token.encode(),
            hashlib.sha256,
        ).hexdigest()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _mint(self, user_id: int) -> tuple[TokenPair, RefreshTokenRecord]:
        access_token = self.create_access_token(user_id)
        refresh_token, expires_at = self._create_refresh_token(user_id)
        record = RefreshTokenRecord(
            user_id=user_id,
            token_hash=self.hash_refresh_token(refresh_token),
            expires_at=expires_at,
        )
        return TokenPair(access_token, refresh_token, expires_at), record

    def issue(self, user_id: int, password_hash: str | None = None) -> TokenPair:
        """Create a new pair and persist an active record for its refresh token.

        With password_hash, the record is only stored while the user's password
        is still that hash. A password replaced in the meantime raises
        UnauthorizedError(INVALID_CREDENTIALS).
        """
        pair, record = self._mint(user_id)
        if password_hash is None:
            self.store.create_refresh_token(record)
        elif not self.store.create_refresh_token_for_password(record, password_hash):
            logger.warning("Password for user %s changed during login; no session issued", user_id)
            raise UnauthorizedError(INVALID_CREDENTIALS)
        logger.info("Issued token pair for user %s", user_id)
        return pair

    def rotate(self, presented: str) -> TokenPair:
        """Exchange a valid refresh token for a new pair; the presented token dies.

        The subject comes from the verified claim, not from the stored record.
        Raises UnauthorizedError on any failure.
        """
        payload = self._decode_refresh_token(presented)
        user_id = payload["user_id"]
        pair, successor = self._mint(user_id)
        if not self.store.rotate_refresh_token(self.hash_refresh_token(presented), successor, self.clock()):
            logger.warning("Refresh token reuse or revoked token presented for user %s", user_id)
            raise UnauthorizedError(INVALID_REFRESH_TOKEN)
        logger.info("Rotated refresh token for user %s", user_id)
        return pair

    def revoke_one(self, presented: str) -> None:
        """Deactivate the record for one refresh token (logout)."""
        if not self.store.deactivate_refresh_token(self.hash_refresh_token(presented), self.clock()):
            raise UnauthorizedError(INVALID_REFRESH_TOKEN)

    def revoke_all(self, user_id: int) -> int:
        """Deactivate every active refresh token the user owns. Returns the count."""
        count = self.store.deactivate_user_refresh_tokens(user_id, self.clock())
        logger.info("Revoked %d refresh token(s) for user %s", count, user_id)
        return count


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_refresh_cookie(response, pair: TokenPair, settings: Settings | None = None) -> None:
    """Write the refresh token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="strict": never sent on cross-site requests.
    secure: set outside debug mode, or whenever SECURE_COOKIES=true.
    max_age: matches the refresh token lifetime.
    """
    settings = settings or get_settings()
    response.set_cookie(
        REFRESH_COOKIE_NAME,
        value=pair.refresh_token,
        httponly=True,
        samesite="strict",
        secure=settings.cookie_secure,
        max_age=settings.refresh_token_expire_seconds,
    )


def clear_refresh_cookie(response, settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    response.delete_cookie(
        REFRESH_COOKIE_NAME,
        httponly=True,
        samesite="strict",
        secure=settings.cookie_secure,
    )
