"""
desk/tickets.py -- Ticket lifecycle: creation, edits, status transitions, comments, deletion.

Status flow (forward only):

    new -> assigned -> in_progress -> waiting_for_user -> resolved -> closed
                  \\_________________________________________/
                         converted_to_incident (conversion only)

Edit lock: once a ticket is resolved, closed, or converted it is immutable.
The one exception is closure bookkeeping -- staff may still move a resolved
ticket to closed. Conversion freezes the ticket through
desk/conversion.py, never through update().

Check order on every mutation: existence (NotFound), visibility (Forbidden),
lock (ImmutableResource), then the specific edit capability (Forbidden).
An end user editing their own resolved ticket therefore always sees
ImmutableResource, not Forbidden.

Every successful mutation commits first, then hands one MutationEvent to the
Dispatcher.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from core.errors import Conflict, DependencyFailure, Forbidden, ImmutableResource, NotFound, ValidationError
from core.models import (
    LOCKED_TICKET_STATUSES,
    STAFF_ROLES,
    TERMINAL_TICKET_STATUSES,
    TICKET_FLOW,
    Actor,
    Attachment,
    Comment,
    Incident,
    Priority,
    Role,
    Ticket,
    TicketStatus,
    TimelineEntry,
)
from core.rbac import Action, can
from core.sla import SlaCalculator
from desk.attachments import AttachmentIndex
from desk.dispatcher import Dispatcher, MutationEvent, NotificationDraft
from desk.fields import assignable, clean_text, parse_choice, reject_unknown, require_text
from desk.numbering import NumberingService
from desk.store import DeskStore

if TYPE_CHECKING:
    from auth.store import UserStore

logger = logging.getLogger("helpdesk.tickets")

_REQUIRED = ("request_type", "title", "description")
_CREATABLE = frozenset({*_REQUIRED, "priority", "category", "affected_system", "branch"})
_EDITABLE = frozenset({"title", "description", "priority", "status", "assigned_to", "affected_system", "category"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TicketView:
    """A ticket as one actor may see it."""

    ticket: Ticket
    comments: list[Comment] = field(default_factory=list)
    incident: Optional[Incident] = None
    timeline: list[TimelineEntry] = field(default_factory=list)
    attachments: list[Attachment] = field(default_factory=list)


class TicketManager:
    def __init__(
        self,
        store: DeskStore,
        users: UserStore,
        sla: SlaCalculator,
        numbering: NumberingService,
        dispatcher: Dispatcher,
        attachments: AttachmentIndex,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.users = users
        self.sla = sla
        self.numbering = numbering
        self.dispatcher = dispatcher
        self.attachments = attachments
        self.clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, actor: Actor, ticket_id: int) -> TicketView:
        """Return the ticket with its comments, linked incident timeline, and attachments.

        Internal comments and internal timeline entries are dropped for actors
        without the view_internal capability.
        """
        ticket = self._visible(actor, ticket_id)
        internal = can(actor, Action.VIEW_INTERNAL, ticket)
        incident = self.store.get_incident_by_source(ticket.id)
        timeline = self.store.list_timeline(incident.id, include_internal=internal) if incident else []
        return TicketView(
            ticket=ticket,
            comments=self.store.list_comments(ticket.id, include_internal=internal),
            incident=incident,
            timeline=timeline,
            attachments=self.attachments.list_attachments("ticket", ticket.id),
        )

    def list_visible(
        self,
        actor: Actor,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        branch: Optional[str] = None,
    ) -> list[Ticket]:
        if not can(actor, Action.READ):
            raise Forbidden("You cannot list tickets.")
        if actor.role == Role.END_USER:
            return self.store.list_tickets(status, priority, branch, created_by=actor.id)
        if actor.role == Role.SUPPORT_AGENT:
            return self.store.list_tickets(status, priority, branch, agent_id=actor.id)
        return self.store.list_tickets(status, priority, branch)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(self, actor: Actor, fields: dict[str, Any]) -> Ticket:
        """File a new ticket.

        The longest-tenured active support agent is assigned when one exists
        (status assigned), otherwise the ticket waits unassigned (status new).
        sla_due and created_at are derived from the same clock reading.
        """
        if not can(actor, Action.CREATE_TICKET):
            raise Forbidden("You cannot create tickets.")
        reject_unknown(fields, _CREATABLE)
        require_text(fields, _REQUIRED)
        priority = parse_choice(Priority, fields.get("priority") or Priority.MEDIUM, "priority")
        branch = self.numbering.resolve_branch(actor, fields.get("branch"))

        now = self.clock()
        assignee = self.users.oldest_active(Role.SUPPORT_AGENT)
        draft = Ticket(
            branch=branch,
            request_type=clean_text(fields["request_type"]),
            title=clean_text(fields["title"]),
            description=clean_text(fields["description"]),
            created_by=actor.id,
            priority=priority,
            status=TicketStatus.ASSIGNED if assignee else TicketStatus.NEW,
            category=clean_text(fields.get("category")) or None,
            assigned_to=assignee.id if assignee else None,
            sla_due=self.sla.due_date(priority, now),
            affected_system=clean_text(fields.get("affected_system")) or None,
            created_at=now,
            updated_at=now,
        )

        def insert(reseed: bool) -> Ticket:
            with self.store.transaction() as conn:
                ticket = replace(draft, ticket_number=self.numbering.next_ticket_number(conn, branch, reseed))
                ticket.id = self.store.insert_ticket(conn, ticket)
            return ticket

        ticket = self.numbering.with_retry(insert)
        logger.info("Ticket %s created by user %s", ticket.ticket_number, actor.id)

        notifications: list[NotificationDraft] = []
        if ticket.assigned_to is not None:
            notifications.append(
                NotificationDraft(
                    ticket.assigned_to,
                    "TICKET_ASSIGNED",
                    "New Ticket Assigned",
                    f"Ticket {ticket.ticket_number} has been assigned to you: {ticket.title}",
                )
            )
        for user_id in self.users.active_ids((Role.SUPPORT_AGENT, Role.ADMINISTRATOR)):
            if user_id not in (actor.id, ticket.assigned_to):
                notifications.append(
                    NotificationDraft(
                        user_id,
                        "NEW_TICKET_CREATED",
                        "New Ticket Created",
                        f"{actor.display_name} created ticket {ticket.ticket_number}: {ticket.title}",
                    )
                )
        self.dispatcher.on_mutation(
            MutationEvent(
                actor_id=actor.id,
                action="CREATE_TICKET",
                resource_type="ticket",
                resource_id=ticket.id,
                details={
                    "ticket_number": ticket.ticket_number,
                    "priority": ticket.priority.value,
                    "assigned_to": ticket.assigned_to,
                },
                notifications=notifications,
            )
        )
        return ticket

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def update(self, actor: Actor, ticket_id: int, fields: dict[str, Any]) -> Ticket:
        ticket = self._visible(actor, ticket_id)
        if not fields:
            raise ValidationError("No fields to update.")
        self._check_mutable(actor, ticket, fields)
        reject_unknown(fields, _EDITABLE)
        if actor.role == Role.END_USER:
            if set(fields) - {"description"}:
                raise Forbidden("You may only edit the description of your ticket.")
            if not can(actor, Action.EDIT_DESCRIPTION, ticket):
                raise Forbidden("You cannot edit this ticket.")
        elif not can(actor, Action.EDIT, ticket):
            raise Forbidden("You cannot edit this ticket.")

        now = self.clock()
        changes = self._diff(ticket, fields, now)
        if not changes:
            return ticket
        changes["updated_at"] = now
        if not self.store.update_ticket(ticket.id, ticket.status, **changes):
            raise Conflict("Ticket changed while you were editing it; reload and retry.", ticket_id=ticket.id)
        updated = replace(ticket, **changes)
        logger.info("Ticket %s updated by user %s: %s", ticket.ticket_number, actor.id, sorted(changes))

        notifications: list[NotificationDraft] = []
        if "assigned_to" in changes and updated.assigned_to not in (None, actor.id):
            notifications.append(
                NotificationDraft(
                    updated.assigned_to,
                    "TICKET_ASSIGNED",
                    "Ticket Assigned",
                    f"Ticket {updated.ticket_number} has been assigned to you",
                )
            )
        if actor.id != ticket.created_by:
            notifications.append(
                NotificationDraft(
                    ticket.created_by,
                    "TICKET_UPDATED",
                    "Ticket Updated",
                    f"Your ticket {updated.ticket_number} has been updated",
                )
            )
        details: dict[str, Any] = {"ticket_number": ticket.ticket_number, "fields": sorted(set(changes) - {"updated_at"})}
        if "status" in changes:
            details["from_status"] = ticket.status.value
            details["to_status"] = updated.status.value
        self.dispatcher.on_mutation(
            MutationEvent(
                actor_id=actor.id,
                action="UPDATE_TICKET",
                resource_type="ticket",
                resource_id=ticket.id,
                details=details,
                notifications=notifications,
            )
        )
        return updated

    def _check_mutable(self, actor: Actor, ticket: Ticket, fields: dict[str, Any]) -> None:
        if ticket.status in TERMINAL_TICKET_STATUSES:
            raise ImmutableResource(
                f"Ticket is {ticket.status.value} and can no longer be changed.",
                ticket_id=ticket.id,
                status=ticket.status.value,
            )
        if ticket.status == TicketStatus.RESOLVED:
            closing = (
                actor.role != Role.END_USER
                and set(fields) == {"status"}
                and fields["status"] == TicketStatus.CLOSED.value
            )
            if not closing:
                raise ImmutableResource(
                    "Ticket is resolved; it can only be closed.",
                    ticket_id=ticket.id,
                    status=ticket.status.value,
                )

    def _diff(self, ticket: Ticket, fields: dict[str, Any], now: datetime) -> dict[str, Any]:
        """Translate requested fields into the column changes they cause."""
        changes: dict[str, Any] = {}
        for name in ("title", "description"):
            if name in fields:
                value = clean_text(fields[name])
                if not value:
                    raise ValidationError(f"{name} cannot be empty.", field=name)
                if value != getattr(ticket, name):
                    changes[name] = value
        for name in ("affected_system", "category"):
            if name in fields:
                value = clean_text(fields[name]) or None
                if value != getattr(ticket, name):
                    changes[name] = value

        if "priority" in fields:
            priority = parse_choice(Priority, fields["priority"], "priority")
            if priority != ticket.priority:
                changes["priority"] = priority
                changes["sla_due"] = self.sla.due_date(priority, now)

        if "assigned_to" in fields:
            assignee = assignable(self.users, fields["assigned_to"], STAFF_ROLES)
            assignee_id = assignee.id if assignee else None
            # Status never moves back to new, so an assigned ticket keeps an assignee.
            if assignee_id is None and ticket.status != TicketStatus.NEW:
                raise ValidationError(
                    "A ticket past new must keep an assignee; reassign it instead.",
                    field="assigned_to",
                    status=ticket.status.value,
                )
            if assignee_id != ticket.assigned_to:
                changes["assigned_to"] = assignee_id

        target = ticket.status
        if "status" in fields:
            target = parse_choice(TicketStatus, fields["status"], "status")
            _check_transition(ticket.status, target)
        elif changes.get("assigned_to") is not None and ticket.status == TicketStatus.NEW:
            target = TicketStatus.ASSIGNED
        if target != ticket.status:
            changes["status"] = target
            if target == TicketStatus.RESOLVED and ticket.resolved_at is None:
                changes["resolved_at"] = now
            if target == TicketStatus.CLOSED:
                changes["closed_at"] = now
                if ticket.resolved_at is None:
                    changes["resolved_at"] = now
        return changes

    # ------------------------------------------------------------------
    # Comments
    # ------------------------------------------------------------------

    def add_comment(self, actor: Actor, ticket_id: int, text: str, internal: bool = False) -> Comment:
        ticket = self._visible(actor, ticket_id)
        if ticket.status in LOCKED_TICKET_STATUSES:
            raise ImmutableResource(
                f"Ticket is {ticket.status.value}; comments are closed.",
                ticket_id=ticket.id,
                status=ticket.status.value,
            )
        body = clean_text(text)
        if not body:
            raise ValidationError("Comment is required.", field="comment")
        if internal and not can(actor, Action.COMMENT_INTERNAL, ticket):
            raise Forbidden("You cannot post internal comments.")
        if not can(actor, Action.COMMENT, ticket):
            raise Forbidden("You cannot comment on this ticket.")

        comment = Comment(
            ticket_id=ticket.id,
            user_id=actor.id,
            comment=body,
            is_internal=internal,
            created_at=self.clock(),
        )
        comment.id = self.store.insert_comment(comment)

        notifications: list[NotificationDraft] = []
        if not internal and actor.id != ticket.created_by:
            notifications.append(
                NotificationDraft(
                    ticket.created_by,
                    "TICKET_COMMENT",
                    "New Comment",
                    f"{actor.display_name} commented on your ticket {ticket.ticket_number}",
                )
            )
        if ticket.assigned_to not in (None, actor.id):
            notifications.append(
                NotificationDraft(
                    ticket.assigned_to,
                    "TICKET_COMMENT",
                    "New Comment",
                    f"{actor.display_name} commented on ticket {ticket.ticket_number}",
                )
            )
        self.dispatcher.on_mutation(
            MutationEvent(
                actor_id=actor.id,
                action="ADD_COMMENT",
                resource_type="ticket",
                resource_id=ticket.id,
                details={"comment_id": comment.id, "is_internal": internal},
                notifications=notifications,
            )
        )
        return comment

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    def delete(self, actor: Actor, ticket_id: int) -> None:
        """Delete an unresolved ticket with its attachments and comments."""
        ticket = self._visible(actor, ticket_id)
        if ticket.status in LOCKED_TICKET_STATUSES:
            raise ImmutableResource(
                f"Ticket is {ticket.status.value} and cannot be deleted.",
                ticket_id=ticket.id,
                status=ticket.status.value,
            )
        if not can(actor, Action.DELETE, ticket):
            raise Forbidden("You cannot delete this ticket.")

        # Files go only after the guarded row delete succeeds, so a lost race keeps them.
        if not self.store.delete_ticket(ticket.id):
            raise Conflict("Ticket changed while it was being deleted; reload and retry.", ticket_id=ticket.id)
        details: dict[str, Any] = {"ticket_number": ticket.ticket_number}
        try:
            details["attachments_removed"] = self.attachments.delete_attachments("ticket", ticket.id)
        except DependencyFailure:
            logger.exception("Ticket %s deleted but its attachments were not removed", ticket.ticket_number)
            details["attachments_removed"] = 0
            details["attachment_cleanup_failed"] = True
        logger.info("Ticket %s deleted by user %s", ticket.ticket_number, actor.id)
        self.dispatcher.on_mutation(
            MutationEvent(
                actor_id=actor.id,
                action="DELETE_TICKET",
                resource_type="ticket",
                resource_id=ticket.id,
                details=details,
            )
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _visible(self, actor: Actor, ticket_id: int) -> Ticket:
        ticket = self.store.get_ticket(ticket_id)
        if ticket is None:
            raise NotFound("Ticket not found.", ticket_id=ticket_id)
        if not can(actor, Action.READ, ticket):
            raise Forbidden("You do not have access to this ticket.", ticket_id=ticket_id)
        return ticket


def _check_transition(current: TicketStatus, target: TicketStatus) -> None:
    if target == TicketStatus.CONVERTED_TO_INCIDENT:
        raise ValidationError("Tickets are converted through the conversion endpoint.", field="status")
    if TICKET_FLOW.index(target) < TICKET_FLOW.index(current):
        raise ValidationError(
            f"Ticket status cannot move back from {current.value} to {target.value}.",
            field="status",
            from_status=current.value,
            to_status=target.value,
        )
