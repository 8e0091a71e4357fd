"""
api/routes/v1/auth.py -- Sign-in and account administration.

Routes:
  POST  /api/v1/auth/login         -- password login; returns JWT and sets cookie
  POST  /api/v1/auth/logout        -- clears cookie; 200
  GET   /api/v1/auth/me            -- current actor (requires auth)
  POST  /api/v1/auth/users         -- create user (administrator only)
  GET   /api/v1/auth/users         -- list all users (administrator only)
  PATCH /api/v1/auth/users/{id}    -- update name/role/status/branches (administrator only)

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  [C1] Password checks go through authenticate_user() so timing stays uniform.
  [M4] PATCH /users/{id} blocks self-deactivation and demoting the administrator.
  Account creation and every PATCH are written to the audit log (resource_type "user").
  [M5] Login answers, success or failure, are sent with Cache-Control: no-store.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import LoginRequest, LoginResponse, UserCreate, UserPatch, UserResponse
from auth.dependencies import get_current_user, require_admin
from auth.store import UserStore
from auth.tokens import authenticate_user, create_access_token, hash_password, set_auth_cookie
from core.config import get_settings
from core.models import Actor, ActorStatus, Role
from desk.dispatcher import MutationEvent

_settings = get_settings()

# Auth policy:
# - POST  /api/v1/auth/login:       public -- login endpoint must be unauthenticated
# - POST  /api/v1/auth/logout:      public -- clearing a cookie needs no prior auth
# - GET   /api/v1/auth/me:          requires auth (get_current_user)
# - POST  /api/v1/auth/users:       requires administrator (require_admin)
# - GET   /api/v1/auth/users:       requires administrator (require_admin)
# - PATCH /api/v1/auth/users/{id}:  requires administrator (require_admin)
router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password.

    Returns the same generic error for wrong username, wrong password, and
    inactive account ("bad_credentials") to avoid leaking account state.
    """
    user_store: UserStore = request.app.state.user_store
    actor = authenticate_user(user_store, body.username, body.password)
    if actor is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid username or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp

    user_store.update_last_login(actor.id)
    token = create_access_token(actor.id, actor.username, actor.role.value)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=_settings.token_expire_seconds,
            username=actor.username,
            role=actor.role,
        ).model_dump(mode="json"),
    )
    set_auth_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/logout")
async def logout() -> JSONResponse:
    """Drop the access_token cookie. Bearer tokens stay valid until they expire."""
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie("access_token")
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse)
def me(actor: Actor = Depends(get_current_user)) -> UserResponse:
    """Return identity information for the currently authenticated actor."""
    return UserResponse.from_actor(actor)


# ---------------------------------------------------------------------------
# User management (administrator only)
# ---------------------------------------------------------------------------


@router.post("/auth/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    admin: Actor = Depends(require_admin),
) -> UserResponse:
    """Create a new account. A second administrator is refused with 409."""
    user_store: UserStore = request.app.state.user_store
    user_id = user_store.create_user(
        Actor(
            username=body.username,
            name=body.name,
            role=body.role,
            branches=frozenset(b.upper() for b in body.branches),
            hashed_password=hash_password(body.password),
        )
    )
    created = _user_to_response(user_store.get_by_id(user_id))
    _record(
        request,
        admin,
        "CREATE_USER",
        user_id,
        {"username": created.username, "role": created.role.value, "branches": created.branches},
    )
    return created


@router.get("/auth/users", response_model=list[UserResponse])
def list_users(request: Request, admin: Actor = Depends(require_admin)) -> list[UserResponse]:
    """List all accounts."""
    user_store: UserStore = request.app.state.user_store
    return [UserResponse.from_actor(u) for u in user_store.list_users()]


@router.patch("/auth/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    admin: Actor = Depends(require_admin),
) -> UserResponse:
    """Update an account's name, role, active status, or branches.

    [M4] Prevents:
      - Self-deactivation (the administrator locking themselves out).
      - Changing the administrator's own role (no recovery path without DB access).
    """
    user_store: UserStore = request.app.state.user_store

    target = user_store.get_by_id(user_id)
    if target is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )

    updates: dict = {}
    if body.name is not None:
        updates["name"] = body.name
    if body.role is not None:
        if target.id == admin.id and body.role != Role.ADMINISTRATOR:
            raise HTTPException(
                status_code=400,
                detail={"code": "self_demotion", "message": "You cannot change your own role."},
            )
        updates["role"] = body.role
    if body.is_active is not None:
        if not body.is_active and target.id == admin.id:
            raise HTTPException(
                status_code=400,
                detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
            )
        updates["status"] = ActorStatus.ACTIVE if body.is_active else ActorStatus.INACTIVE
    if body.branches is not None:
        updates["branches"] = [b.upper() for b in body.branches]

    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )

    user_store.update_user(user_id, **updates)
    updated = _user_to_response(user_store.get_by_id(user_id))

    details: dict = {"username": target.username, "fields": sorted(updates)}
    if "role" in updates and updates["role"] != target.role:
        details["from_role"] = target.role.value
        details["to_role"] = updated.role.value
    if "status" in updates:
        details["is_active"] = updated.is_active
    if "branches" in updates:
        details["branches"] = updated.branches
    _record(request, admin, "UPDATE_USER", user_id, details)
    return updated


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _record(request: Request, admin: Actor, action: str, user_id: int, details: dict) -> None:
    """Account changes are audited like every other mutation."""
    request.app.state.dispatcher.on_mutation(
        MutationEvent(
            actor_id=admin.id,
            action=action,
            resource_type="user",
            resource_id=user_id,
            details=details,
        )
    )


def _user_to_response(actor: Actor | None) -> UserResponse:
    if actor is None:
        raise HTTPException(
            status_code=500,
            detail={"code": "internal_error", "message": "User not found after write."},
        )
    return UserResponse.from_actor(actor)
