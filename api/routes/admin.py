"""
api/routes/admin.py -- User administration endpoints (ADMIN only).

Routes:
  GET   /api/admin/users                 -- all users, newest first
  GET   /api/admin/stats                 -- user totals per role
  PATCH /api/admin/users/{user_id}/role  -- change a user's role

Every route depends on require_admin, which checks the role carried by the
session claim: 401 without a session, 403 below ADMIN.

A role change is written to the store immediately but reaches the affected
user's session only when that session next refreshes (at most 24 hours).

[M4] An admin cannot demote themselves, so the last admin cannot lock the
     platform out by accident.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import RolePatch, StatsResponse, UserResponse
from auth.dependencies import require_admin
from auth.errors import NotFound
from auth.identity import IdentityResolver
from auth.models import Role, SessionClaims
from auth.store import CredentialStore

logger = logging.getLogger("evblog.api.admin")

router = APIRouter()


@router.get("/admin/users", response_model=list[UserResponse])
def list_users(request: Request, claims: SessionClaims = Depends(require_admin)) -> list[UserResponse]:
    user_store: CredentialStore = request.app.state.user_store
    return [UserResponse.from_user(u) for u in user_store.list_users()]


@router.get("/admin/stats", response_model=StatsResponse)
def stats(request: Request, claims: SessionClaims = Depends(require_admin)) -> StatsResponse:
    """Return total and per-role user counts."""
    user_store: CredentialStore = request.app.state.user_store
    users = user_store.list_users()
    by_role = user_store.count_by_role()
    return StatsResponse(
        total_users=len(users),
        verified_users=sum(1 for u in users if u.email_verified is not None),
        by_role={role.value: count for role, count in by_role.items()},
    )


@router.patch("/admin/users/{user_id}/role", response_model=UserResponse)
def change_role(
    request: Request,
    user_id: int,
    body: RolePatch,
    claims: SessionClaims = Depends(require_admin),
) -> UserResponse:
    """Set a user's role. Returns the updated user."""
    if user_id == claims.user_id and body.role is not Role.ADMIN:  # [M4]
        raise HTTPException(
            status_code=400,
            detail={"code": "cannot_demote_self", "message": "You cannot remove your own admin role."},
        )

    identity: IdentityResolver = request.app.state.identity
    try:
        user = identity.change_role(user_id, body.role)
    except NotFound:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        ) from None
    logger.info("Admin %d set role of user %d to %s", claims.user_id, user_id, body.role.value)
    return UserResponse.from_user(user)
