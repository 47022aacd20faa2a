"""
api/routes/v1/auth.py -- Registration, verification, login, and session endpoints.

Routes:
  POST /api/v1/auth/register             -- create account; emails verification code
  POST /api/v1/auth/verify-email         -- consume code; returns access token + refresh cookie
  POST /api/v1/auth/resend-verification  -- replace and re-send verification code
  POST /api/v1/auth/login                -- password login; access token + refresh cookie
  POST /api/v1/auth/refresh-token        -- rotate refresh token (cookie or body)
  POST /api/v1/auth/logout               -- revoke refresh token; clears cookie
  POST /api/v1/auth/forgot-password      -- email a password reset code
  POST /api/v1/auth/reset-password       -- consume reset code; set new password

All routes are public -- they are how a caller obtains credentials.

Security:
  [H2] Credential and code endpoints are rate-limited per IP (AUTH_RATE_LIMIT).
  [M5] Cache-Control: no-store on every response that carries a token.
  Refresh tokens only travel in the httpOnly cookie on the way out. The body
  is accepted on the way in as a fallback for non-browser clients.

Handlers stay thin: validation is Pydantic's job, workflow and error policy
belong to auth.service.AuthService. Its AuthError exceptions propagate to the
handler in api/main.py.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from api.limiter import AUTH_LIMIT, limiter
from api.models import (
    AccessTokenData,
    EmailData,
    EmailRequest,
    ErrorResponse,
    LoginRequest,
    RefreshTokenRequest,
    RegisterRequest,
    ResetData,
    ResetPasswordRequest,
    VerifyEmailRequest,
    envelope,
)
from auth.errors import BadRequestError, UnauthorizedError
from auth.models import TokenPair
from auth.service import AuthService
from auth.tokens import REFRESH_COOKIE_NAME, clear_refresh_cookie, set_refresh_cookie

router = APIRouter(prefix="/auth")


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _token_response(message: str, pair: TokenPair) -> JSONResponse:
    """Access token in the body, refresh token in the httpOnly cookie."""
    resp = JSONResponse(
        status_code=200,
        content=envelope(message, AccessTokenData(access_token=pair.access_token)),
    )
    set_refresh_cookie(resp, pair)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _presented_refresh_token(request: Request, body: Optional[RefreshTokenRequest]) -> Optional[str]:
    """Cookie first, then the JSON body."""
    return request.cookies.get(REFRESH_COOKIE_NAME) or (body.refresh_token if body else None)


# ---------------------------------------------------------------------------
# Registration and verification
# ---------------------------------------------------------------------------


@limiter.limit(AUTH_LIMIT)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/register", status_code=201)
async def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an unverified account and email a 6-digit verification code."""
    email = await _service(request).register(body.name, body.email, body.password)
    return JSONResponse(
        status_code=201,
        content=envelope(
            "Registration successful. Please check your email for verification code.",
            EmailData(email=email),
        ),
    )


@limiter.limit(AUTH_LIMIT)
@router.post("/verify-email")
async def verify_email(request: Request, body: VerifyEmailRequest) -> JSONResponse:
    """Verify the email address with its code and start a session."""
    pair = await _service(request).verify_email(body.email, body.otp)
    return _token_response("Email verified successfully", pair)


@limiter.limit(AUTH_LIMIT)
@router.post("/resend-verification")
async def resend_verification(request: Request, body: EmailRequest) -> JSONResponse:
    email = await _service(request).resend_verification(body.email)
    return JSONResponse(
        content=envelope("Verification code resent. Please check your email.", EmailData(email=email)),
    )


# ---------------------------------------------------------------------------
# Login and sessions
# ---------------------------------------------------------------------------


@limiter.limit(AUTH_LIMIT)
@router.post("/login")
async def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Unknown email and wrong password produce the same 401 message.
    """
    pair = await _service(request).login(body.email, body.password)
    return _token_response("Login successful", pair)


@router.post("/refresh-token")
async def refresh_token(request: Request, body: Optional[RefreshTokenRequest] = None) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token is spent."""
    presented = _presented_refresh_token(request, body)
    if not presented:
        raise BadRequestError("Refresh token is required")
    pair = await _service(request).refresh(presented)
    return _token_response("Token refreshed successfully", pair)


@router.post("/logout")
async def logout(request: Request, body: Optional[RefreshTokenRequest] = None) -> JSONResponse:
    """Revoke the presented refresh token and clear the cookie.

    The cookie is cleared on failure too, so a client holding a dead token
    does not keep sending it.
    """
    try:
        await _service(request).logout(_presented_refresh_token(request, body))
    except UnauthorizedError as exc:
        resp = JSONResponse(status_code=401, content=ErrorResponse(message=exc.message).model_dump())
    else:
        resp = JSONResponse(content=envelope("Logout successful"))
    clear_refresh_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@limiter.limit(AUTH_LIMIT)
@router.post("/forgot-password")
async def forgot_password(request: Request, body: EmailRequest) -> JSONResponse:
    email = await _service(request).forgot_password(body.email)
    return JSONResponse(
        content=envelope("Password reset instructions sent to your email", EmailData(email=email)),
    )


@limiter.limit(AUTH_LIMIT)
@router.post("/reset-password")
async def reset_password(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    """Set a new password with a reset code. Every existing session is revoked."""
    await _service(request).reset_password(body.email, body.otp, body.password)
    return JSONResponse(content=envelope("Password reset successful", ResetData()))
