"""
api/routes/v1/users.py -- User management REST endpoints.

Routes:
  GET /api/v1/users        -- list all users
  POST /api/v1/users       -- invite a user (201)
  PUT /api/v1/users/{id}   -- edit name / role / permissions / status / active

All routes require a verified session with the manage-users capability
(require_user_manager). The last-admin and role-wins invariants live in
auth.directory.UserDirectoryGuard, not here.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import UserEdit, UserEnvelope, UserInvite, UserListResponse, UserResponse
from auth.dependencies import require_user_manager
from auth.directory import UserDirectoryGuard
from auth.sessions import RefreshedSession

router = APIRouter()


@router.get("/users", response_model=UserListResponse)
def list_users(
    request: Request,
    session: RefreshedSession = Depends(require_user_manager),
) -> UserListResponse:
    directory: UserDirectoryGuard = request.app.state.directory
    return UserListResponse(users=[UserResponse.from_user(u) for u in directory.list_users()])


@router.post("/users", response_model=UserEnvelope, status_code=201)
def invite_user(
    request: Request,
    body: UserInvite,
    session: RefreshedSession = Depends(require_user_manager),
) -> UserEnvelope:
    """Create an invited user and send the invitation email.

    The temporary password goes to the mailer only; it is never part of the
    response.
    """
    directory: UserDirectoryGuard = request.app.state.directory
    user = directory.create_invited_user(
        email=body.email,
        name=body.name,
        role=body.role.value,
        raw_permissions=body.permissions,
        invited_by=session.claims.email,
    )
    return UserEnvelope(user=UserResponse.from_user(user))


@router.put("/users/{user_id}", response_model=UserEnvelope)
def edit_user(
    request: Request,
    user_id: str,
    body: UserEdit,
    session: RefreshedSession = Depends(require_user_manager),
) -> UserEnvelope:
    """Apply an edit. Only fields present in the request body are considered."""
    directory: UserDirectoryGuard = request.app.state.directory
    user = directory.apply_user_edit(user_id, body.model_dump(exclude_unset=True, mode="json"))
    return UserEnvelope(user=UserResponse.from_user(user))
