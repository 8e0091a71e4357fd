"""
auth/tokens.py -- Session tokens, password hashes, and the login check.

Tokens are HS256 JWTs from python-jose carrying user_id, username (as sub),
role, and exp. A token only names an actor: auth/dependencies.py reloads the
actor on every request, so a deactivated account or a changed role takes
effect without waiting for expiry.

Passwords are hashed with bcrypt. authenticate_user() runs exactly one bcrypt
comparison per call whatever the outcome [C1], against _DUMMY_HASH when the
username is unknown, so login latency does not reveal which accounts exist.

Imports: core/ only.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

if TYPE_CHECKING:
    from auth.store import UserStore
    from core.models import Actor

logger = logging.getLogger("helpdesk.auth")

_settings = get_settings()
_ALGORITHM = "HS256"
_CLAIMS = ("user_id", "role")


def hash_password(plain: str) -> str:
    # bcrypt reads at most 72 bytes; UserCreate caps the length.
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash.
        return False


_DUMMY_HASH: str = hash_password("helpdesk_timing_dummy")


def _lifetime(expire_seconds: int) -> int:
    return expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds


def create_access_token(user_id: int, username: str, role: str, expire_seconds: int = 0) -> str:
    """Sign a token for the actor. expire_seconds <= 0 uses TOKEN_EXPIRE_SECONDS."""
    claims = {
        "sub": username,
        "user_id": user_id,
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=_lifetime(expire_seconds)),
    }
    return jwt.encode(claims, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Return the verified claims, or None for a bad signature, expiry, or missing claim."""
    try:
        claims = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if any(name not in claims for name in _CLAIMS):
        return None
    return claims


def authenticate_user(store: UserStore, username: str, password: str) -> Actor | None:
    """Check a username/password pair and return the active Actor, else None.

    Accounts created without a password (seeded staff that sign in elsewhere)
    can never log in here.
    """
    actor = store.get_by_username(username)
    if actor is None or actor.hashed_password is None:
        verify_password(password, _DUMMY_HASH)  # [C1]
        return None
    if not verify_password(password, actor.hashed_password):
        return None
    if not actor.is_active:
        logger.info("Login refused for inactive account %s", actor.id)
        return None
    return actor


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Attach the token as the httpOnly, SameSite=Lax access_token cookie.

    The cookie is Secure when SECURE_COOKIES=true and expires with the token.
    """
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=_lifetime(expire_seconds),
    )
