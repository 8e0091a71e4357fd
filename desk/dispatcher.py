"""
desk/dispatcher.py -- Audit and notification side effects of every mutation.

Every manager builds one MutationEvent per successful state change and hands
it to Dispatcher.on_mutation() after its own transaction has committed. The
dispatcher then:

  1. appends exactly one AuditLogEntry for the event, and
  2. writes one Notification per distinct (recipient, type) draft, skipping
     drafts without a recipient.

Both writes are best-effort. A store failure is logged at ERROR with the
event's action and resource and never raised: losing an audit row must not
undo a ticket update that already committed.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError

from core.errors import Forbidden, NotFound
from core.models import Actor, AuditLogEntry, Notification
from core.rbac import Action, can
from desk.store import DeskStore

logger = logging.getLogger("helpdesk.dispatcher")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class NotificationDraft:
    user_id: Optional[int]
    type: str
    title: str
    message: str


@dataclass
class MutationEvent:
    """One state change: who did what to which resource, and who should hear about it."""

    actor_id: Optional[int]
    action: str
    resource_type: str
    resource_id: Optional[int]
    details: dict[str, Any] = field(default_factory=dict)
    notifications: list[NotificationDraft] = field(default_factory=list)


class Dispatcher:
    def __init__(self, store: DeskStore, clock: Callable[[], datetime] = _utcnow) -> None:
        self.store = store
        self.clock = clock

    def on_mutation(self, event: MutationEvent) -> None:
        now = self.clock()
        try:
            self.store.append_audit(
                AuditLogEntry(
                    actor_id=event.actor_id,
                    action=event.action,
                    resource_type=event.resource_type,
                    resource_id=event.resource_id,
                    details=event.details,
                    created_at=now,
                )
            )
        except SQLAlchemyError:
            logger.exception(
                "Audit write failed for %s on %s/%s",
                event.action,
                event.resource_type,
                event.resource_id,
            )

        for draft in _distinct(event.notifications):
            try:
                self.store.insert_notification(
                    Notification(
                        user_id=draft.user_id,
                        type=draft.type,
                        title=draft.title,
                        message=draft.message,
                        resource_type=event.resource_type,
                        resource_id=event.resource_id,
                        created_at=now,
                    )
                )
            except SQLAlchemyError:
                logger.exception(
                    "Notification %s to user %s failed for %s on %s/%s",
                    draft.type,
                    draft.user_id,
                    event.action,
                    event.resource_type,
                    event.resource_id,
                )

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def notifications_for(self, actor: Actor, unread_only: bool = False, limit: int = 50) -> list[Notification]:
        return self.store.list_notifications(actor.id, unread_only=unread_only, limit=limit)

    def unread_count(self, actor: Actor) -> int:
        return self.store.unread_count(actor.id)

    def mark_read(self, actor: Actor, notification_id: int) -> None:
        if not self.store.mark_notification_read(notification_id, actor.id):
            raise NotFound("Notification not found.", notification_id=notification_id)

    def mark_all_read(self, actor: Actor) -> int:
        return self.store.mark_all_read(actor.id)

    def audit_log(self, actor: Actor, limit: int = 100) -> list[AuditLogEntry]:
        if not can(actor, Action.READ_AUDIT):
            raise Forbidden("Only the administrator can read the audit log.")
        return self.store.list_audit(limit=limit)

    def audit_trail(self, actor: Actor, resource_type: str, resource_id: int) -> list[AuditLogEntry]:
        if not can(actor, Action.READ_AUDIT):
            raise Forbidden("Only the administrator can read the audit log.")
        return self.store.audit_for(resource_type, resource_id)


def _distinct(drafts: list[NotificationDraft]) -> list[NotificationDraft]:
    seen: set[tuple[int, str]] = set()
    result: list[NotificationDraft] = []
    for draft in drafts:
        if draft.user_id is None:
            continue
        key = (draft.user_id, draft.type)
        if key not in seen:
            seen.add(key)
            result.append(draft)
    return result
