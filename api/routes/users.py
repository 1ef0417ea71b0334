"""
api/routes/users.py -- The signed-in user's own profile.

Routes:
  GET   /api/users/me   -- profile of the session's user
  PATCH /api/users/me   -- update name, bio, avatar_url

Both require a session (get_current_user -> 401 otherwise). Email and role
are not editable here; role changes go through /api/admin.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import ProfilePatch, UserResponse
from auth.dependencies import get_current_user
from auth.identity import IdentityResolver
from auth.models import User

router = APIRouter()


@router.get("/users/me", response_model=UserResponse)
def read_me(current_user: User = Depends(get_current_user)) -> UserResponse:
    return UserResponse.from_user(current_user)


@router.patch("/users/me", response_model=UserResponse)
def update_me(
    request: Request,
    body: ProfilePatch,
    current_user: User = Depends(get_current_user),
) -> UserResponse:
    """Apply a partial profile update. Omitted fields are left unchanged."""
    identity: IdentityResolver = request.app.state.identity
    identity.update_profile(current_user.id, name=body.name, bio=body.bio, avatar_url=body.avatar_url)
    refreshed = request.app.state.user_store.get_user_by_id(current_user.id, with_accounts=True)
    return UserResponse.from_user(refreshed)
