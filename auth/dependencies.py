"""
auth/dependencies.py -- Resolve the calling Actor for route handlers.

Two credential sources are checked in priority order:
  1. JWT cookie ("access_token") -- set by POST /auth/login.
  2. Authorization: Bearer <token> header -- API clients.

Both converge on an Actor reloaded from the UserStore, so deactivation and
role changes apply to tokens that are already issued.

try_get_current_user() returns None instead of raising.
get_current_user() turns that None into a 401.
require_admin() wraps get_current_user() and raises HTTP 403 for any role
other than administrator.

Layer rule: no imports from desk/ or cache/.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.tokens import decode_access_token
from core.models import Actor, Role


def try_get_current_user(request: Request) -> Actor | None:
    """Attempt to authenticate the request via cookie or Bearer header.

    Returns the active Actor on success, None on any failure. Never raises.
    """
    user_store = request.app.state.user_store

    token: str | None = request.cookies.get("access_token")
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]

    if token:
        payload = decode_access_token(token)
        if payload:
            actor = user_store.get_by_id(payload["user_id"])
            if actor and actor.is_active:
                return actor
    return None


def get_current_user(request: Request) -> Actor:
    """Return the authenticated Actor or raise a 401 with code "unauthorized".

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(actor: Actor = Depends(get_current_user)): ...
    """
    actor = try_get_current_user(request)
    if actor is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return actor


def require_admin(request: Request) -> Actor:
    """Require the administrator role. 401 if unauthenticated, 403 otherwise."""
    actor = get_current_user(request)
    if actor.role != Role.ADMINISTRATOR:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Administrator access required."},
        )
    return actor
