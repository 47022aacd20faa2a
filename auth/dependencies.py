"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Protected routes accept one credential: an access token in the
Authorization: Bearer <token> header. Refresh tokens are never accepted here
-- they are signed with a different key and fail verification.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises UnauthorizedError if unauthenticated.

Layer rule: auth/dependencies.py may import from fastapi (for Request)
because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request

from auth.errors import UnauthorizedError
from auth.models import User


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_current_user(request: Request) -> User | None:
    """Authenticate the request via its Bearer access token.

    Returns the User on success, None on any failure. Never raises.
    """
    token = _bearer_token(request)
    if not token:
        return None
    payload = request.app.state.tokens.decode_access_token(token)
    if payload is None:
        return None
    return request.app.state.user_store.get_by_id(payload["user_id"])


def get_current_user(request: Request) -> User:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    token = _bearer_token(request)
    if not token:
        raise UnauthorizedError("Authentication required")
    user = try_get_current_user(request)
    if user is None:
        raise UnauthorizedError("Invalid or expired token")
    return user
