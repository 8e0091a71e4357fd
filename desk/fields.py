"""
desk/fields.py -- Small field parsers shared by the ticket and incident managers.

Managers receive plain dicts (the API layer passes model_dump(exclude_unset=True))
so each value is re-checked here and reported as ValidationError with the
offending field name in the error context.
"""

from collections.abc import Iterable, Mapping
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional, TypeVar

from core.errors import ValidationError
from core.models import Actor, Role

if TYPE_CHECKING:
    from auth.store import UserStore

E = TypeVar("E", bound=Enum)


def clean_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def require_text(fields: Mapping[str, Any], names: Iterable[str]) -> None:
    missing = [name for name in names if not clean_text(fields.get(name))]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}.", fields=missing)


def reject_unknown(fields: Mapping[str, Any], allowed: Iterable[str]) -> None:
    unknown = sorted(set(fields) - set(allowed))
    if unknown:
        raise ValidationError(f"Fields cannot be set: {', '.join(unknown)}.", fields=unknown)


def parse_choice(enum_cls: type[E], value: Any, field: str) -> E:
    try:
        return enum_cls(value)
    except ValueError as exc:
        choices = [m.value for m in enum_cls]
        raise ValidationError(f"Invalid {field} '{value}'.", field=field, choices=choices) from exc


def assignable(users: "UserStore", user_id: Optional[int], roles: Iterable[Role], field: str = "assigned_to") -> Optional[Actor]:
    """Return the actor for user_id if it is active and holds one of roles."""
    if user_id is None:
        return None
    actor = users.get_by_id(user_id)
    allowed = frozenset(roles)
    if actor is None or not actor.is_active or actor.role not in allowed:
        raise ValidationError(
            "Assignee must be an active user with role: " + ", ".join(sorted(r.value for r in allowed)) + ".",
            field=field,
            user_id=user_id,
        )
    return actor
