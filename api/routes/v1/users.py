"""
api/routes/v1/users.py -- Profile endpoints for the authenticated user.

Routes:
  GET /api/v1/users/me  -- current user's public profile
  PUT /api/v1/users/me  -- update display name

Both require a Bearer access token (auth.dependencies.get_current_user).
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.models import ProfileUpdate, UserProfile, envelope
from auth.dependencies import get_current_user
from auth.errors import NotFoundError
from auth.models import User

router = APIRouter(prefix="/users")


@router.get("/me")
async def get_me(user: User = Depends(get_current_user)) -> JSONResponse:
    """Return the profile of the token's owner."""
    return JSONResponse(content=envelope("User profile", UserProfile.from_user(user)))


@router.put("/me")
async def update_me(
    request: Request,
    body: ProfileUpdate,
    user: User = Depends(get_current_user),
) -> JSONResponse:
    store = request.app.state.user_store
    if not store.update_user(user.id, name=body.name):
        raise NotFoundError("User not found")
    updated = store.get_by_id(user.id)
    return JSONResponse(content=envelope("Profile updated", UserProfile.from_user(updated)))
