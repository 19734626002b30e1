"""
api/routes/v1/auth.py -- Account and user management REST endpoints.

Routes:
  POST   /api/v1/auth/register        -- self-registration (public, if enabled)
  GET    /api/v1/auth/me              -- current user info (requires auth)
  PATCH  /api/v1/auth/me/password     -- change password; logs out other sessions
  PATCH  /api/v1/auth/me/email        -- change login email (password required)
  GET    /api/v1/auth/me/sessions     -- live refresh tokens of the caller
  POST   /api/v1/auth/users           -- create user (admin only)
  GET    /api/v1/auth/users           -- list all users (admin only)
  PATCH  /api/v1/auth/users/{id}      -- update role/is_active/name/phone (admin only)
  DELETE /api/v1/auth/users/{id}      -- delete user, revoking its tokens first (admin only)

Security:
  POST /register is rate-limited per IP (LOGIN_RATE_LIMIT).
  PATCH/DELETE /users/{id} block self-lockout and removing the last active admin.
  Admin routes check the role from the database (require_admin) and the
  token scope (require_scope): "read" for listing, "write" for changes.
  Deactivation, deletion, and password change revoke refresh tokens so the
  affected sessions cannot be extended.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.limiter import limiter
from api.models import (
    EmailChange,
    PasswordChange,
    RegisterRequest,
    SessionResponse,
    SuccessResponse,
    UserCreate,
    UserPatch,
    UserResponse,
)
from auth.credentials import normalize_phone, register_user, update_email, update_password, verify_password
from auth.dependencies import get_current_user, require_admin, require_scope
from auth.errors import InvalidPassword
from auth.models import User
from auth.refresh import RefreshTokenStore
from auth.store import UserStore
from core.config import get_settings

# Auth policy:
# - POST   /api/v1/auth/register:        public -- gated by SELF_REGISTRATION_ENABLED
# - GET    /api/v1/auth/me:              requires auth (get_current_user)
# - PATCH  /api/v1/auth/me/password:     requires auth + current password
# - PATCH  /api/v1/auth/me/email:        requires auth + current password
# - GET    /api/v1/auth/me/sessions:     requires auth (get_current_user)
# - POST   /api/v1/auth/users:           requires admin + scope write
# - GET    /api/v1/auth/users:           requires admin + scope read
# - PATCH  /api/v1/auth/users/{id}:      requires admin + scope write
# - DELETE /api/v1/auth/users/{id}:      requires admin + scope write
router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(get_settings().login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> UserResponse:
    """Create a viewer account. Field formats are validated by auth.credentials."""
    if not get_settings().self_registration_enabled:
        raise HTTPException(
            status_code=403,
            detail={"error": "forbidden", "error_description": "Self-registration is disabled."},
        )
    user = register_user(
        request.app.state.user_store,
        email=body.email,
        password=body.password,
        name=body.name,
        id_number=body.id_number,
        phone=body.phone,
    )
    return UserResponse.from_user(user)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return the profile of the currently authenticated user."""
    return UserResponse.from_user(current_user)


@router.patch("/auth/me/password", response_model=SuccessResponse)
def change_password(
    request: Request,
    body: PasswordChange,
    current_user: User = Depends(get_current_user),
) -> SuccessResponse:
    """Change the caller's password and revoke every refresh token it holds."""
    if not current_user.hashed_password or not verify_password(body.current_password, current_user.hashed_password):
        raise InvalidPassword()
    update_password(request.app.state.user_store, current_user.id, body.new_password)
    request.app.state.refresh_store.revoke_all(current_user.id)
    return SuccessResponse(message="Password changed. Sign in again on your other devices.")


@router.patch("/auth/me/email", response_model=UserResponse)
def change_email(
    request: Request,
    body: EmailChange,
    current_user: User = Depends(get_current_user),
) -> UserResponse:
    if not current_user.hashed_password or not verify_password(body.password, current_user.hashed_password):
        raise InvalidPassword()
    return UserResponse.from_user(update_email(request.app.state.user_store, current_user.id, body.new_email))


@router.get("/auth/me/sessions", response_model=list[SessionResponse])
def list_sessions(request: Request, current_user: User = Depends(get_current_user)) -> list[SessionResponse]:
    refresh_store: RefreshTokenStore = request.app.state.refresh_store
    return [
        SessionResponse(
            id=t.id,
            client_id=t.client_id,
            scope=" ".join(t.scope),
            user_agent=t.user_agent,
            ip_address=t.ip_address,
            created_at=t.created_at,
            expires_at=t.expires_at,
        )
        for t in refresh_store.list_active(current_user.id)
    ]


# ---------------------------------------------------------------------------
# User management (admin only)
# ---------------------------------------------------------------------------


@router.post(
    "/auth/users",
    response_model=UserResponse,
    status_code=201,
    dependencies=[Depends(require_scope("write"))],
)
def create_user(
    request: Request,
    body: UserCreate,
    current_user: User = Depends(require_admin),
) -> UserResponse:
    """Create a user account with any role. Admin only."""
    user = register_user(
        request.app.state.user_store,
        email=body.email,
        password=body.password,
        role=body.role,
        name=body.name,
        id_number=body.id_number,
        phone=body.phone,
    )
    return UserResponse.from_user(user)


@router.get("/auth/users", response_model=list[UserResponse], dependencies=[Depends(require_scope("read"))])
def list_users(request: Request, current_user: User = Depends(require_admin)) -> list[UserResponse]:
    """List all user accounts. Admin only."""
    user_store: UserStore = request.app.state.user_store
    return [UserResponse.from_user(u) for u in user_store.list_users()]


@router.patch("/auth/users/{user_id}", response_model=UserResponse, dependencies=[Depends(require_scope("write"))])
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    current_user: User = Depends(require_admin),
) -> UserResponse:
    """Update a user's role, active status, name, or phone. Admin only.

    Prevents:
      - Self-deactivation and self-demotion (admin locking themselves out).
      - Deactivating or demoting the last active admin.
    """
    user_store: UserStore = request.app.state.user_store

    target = _get_target(user_store, user_id)
    removes_admin = target.role == "admin" and target.is_active and (
        body.is_active is False or (body.role is not None and body.role != "admin")
    )
    if removes_admin and target.id == current_user.id:
        raise HTTPException(
            status_code=400,
            detail={"error": "self_lockout", "error_description": "You cannot deactivate or demote your own account."},
        )
    if removes_admin and user_store.count_active_admins() <= 1:
        raise HTTPException(
            status_code=400,
            detail={"error": "last_admin", "error_description": "Cannot remove the last active admin account."},
        )

    updates: dict = {}
    if body.role is not None:
        updates["role"] = body.role
    if body.is_active is not None:
        updates["is_active"] = body.is_active
    if body.name is not None:
        updates["name"] = body.name.strip() or None
    if body.phone is not None:
        updates["phone"] = normalize_phone(body.phone)

    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"error": "no_changes", "error_description": "No fields to update."},
        )

    user_store.update_user(user_id, **updates)
    if body.is_active is False:
        request.app.state.refresh_store.revoke_all(user_id)
    return UserResponse.from_user(_get_target(user_store, user_id))


@router.delete("/auth/users/{user_id}", status_code=204, dependencies=[Depends(require_scope("write"))])
def delete_user(
    request: Request,
    user_id: int,
    current_user: User = Depends(require_admin),
) -> Response:
    """Delete an account. Its refresh tokens are revoked before the user row goes."""
    user_store: UserStore = request.app.state.user_store
    refresh_store: RefreshTokenStore = request.app.state.refresh_store

    target = _get_target(user_store, user_id)
    if target.id == current_user.id:
        raise HTTPException(
            status_code=400,
            detail={"error": "self_lockout", "error_description": "You cannot delete your own account."},
        )
    if target.role == "admin" and target.is_active and user_store.count_active_admins() <= 1:
        raise HTTPException(
            status_code=400,
            detail={"error": "last_admin", "error_description": "Cannot remove the last active admin account."},
        )

    refresh_store.revoke_all(user_id)
    user_store.delete_user(user_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_target(user_store: UserStore, user_id: int) -> User:
    target = user_store.get_by_id(user_id)
    if target is None:
        raise HTTPException(
            status_code=404,
            detail={"error": "not_found", "error_description": "User not found."},
        )
    return target
