"""
desk/conversion.py -- One-way conversion of a ticket into a security incident.

convert() runs in a single store transaction:

    insert incident (number from NumberingService, source_ticket_id = ticket)
    copy every ticket comment into the timeline as a non-internal entry
    freeze the ticket (status converted_to_incident)
    write the "created from ticket" and "assigned to" timeline entries

A collision on incident_number rolls the transaction back and re-runs it once
with a re-seeded counter. A collision on source_ticket_id means a concurrent
conversion won; the winner's identity is reported as AlreadyConverted.

Incidents left behind by an interrupted conversion (incident row present,
ticket not frozen) are reported as ConversionIncomplete and rolled forward
by reconcile().
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from core.errors import (
    AlreadyConverted,
    Conflict,
    ConversionIncomplete,
    Forbidden,
    ImmutableResource,
    NotFound,
    ValidationError,
)
from core.models import (
    INVESTIGATOR_ROLES,
    STAFF_ROLES,
    Actor,
    DetectionMethod,
    Incident,
    Role,
    Severity,
    Ticket,
    TicketStatus,
    TimelineEntry,
)
from core.rbac import Action, can
from desk.dispatcher import Dispatcher, MutationEvent, NotificationDraft
from desk.fields import assignable, clean_text, parse_choice
from desk.incidents import role_label
from desk.numbering import NumberingService
from desk.store import DeskStore

if TYPE_CHECKING:
    from auth.store import UserStore

logger = logging.getLogger("helpdesk.conversion")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversionCoordinator:
    def __init__(
        self,
        store: DeskStore,
        users: UserStore,
        numbering: NumberingService,
        dispatcher: Dispatcher,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.users = users
        self.numbering = numbering
        self.dispatcher = dispatcher
        self.clock = clock

    def convert(
        self,
        actor: Actor,
        ticket_id: int,
        category: str,
        severity: str = "medium",
        description: Optional[str] = None,
        assignee_id: Optional[int] = None,
    ) -> Incident:
        """Convert a ticket into an incident and freeze the ticket.

        Raises:
            NotFound, Forbidden: the ticket is absent or not convertible by actor.
            AlreadyConverted: the ticket is already the source of an incident.
            ConversionIncomplete: an incident exists but the ticket was never frozen.
            ImmutableResource: the ticket is closed.
            ValidationError: category missing, bad severity, or bad assignee.
        """
        ticket = self.store.get_ticket(ticket_id)
        if ticket is None:
            raise NotFound("Ticket not found.", ticket_id=ticket_id)
        if not can(actor, Action.READ, ticket) or not can(actor, Action.CONVERT, ticket):
            raise Forbidden("You cannot convert this ticket.", ticket_id=ticket_id)

        self._check_not_converted(ticket)
        if ticket.status == TicketStatus.CLOSED:
            raise ImmutableResource(
                "Closed tickets cannot be converted.", ticket_id=ticket.id, status=ticket.status.value
            )

        category = clean_text(category)
        if not category:
            raise ValidationError("Category is required.", field="category")
        level = parse_choice(Severity, severity or Severity.MEDIUM, "severity")
        assignee = self._pick_assignee(assignee_id)

        now = self.clock()
        roles: dict[int, Optional[Role]] = {}
        copied = 0

        def insert(reseed: bool) -> Incident:
            nonlocal copied
            with self.store.transaction() as conn:
                # Read inside the transaction so a comment posted mid-conversion is carried over.
                comments = self.store.list_comments(ticket.id, conn=conn)
                for comment in comments:
                    if comment.user_id not in roles:
                        roles[comment.user_id] = self._role_of(comment.user_id)
                copied = len(comments)
                incident = Incident(
                    incident_number=self.numbering.next_incident_number(conn, ticket.branch, now.year, reseed),
                    branch=ticket.branch,
                    category=category,
                    title=ticket.title,
                    description=clean_text(description) or ticket.description,
                    created_by=actor.id,
                    source_ticket_id=ticket.id,
                    detection_method=DetectionMethod.IT_FOUND,
                    severity=level,
                    affected_asset=clean_text(ticket.affected_system) or None,
                    affected_user_id=ticket.created_by,
                    assigned_to=assignee.id if assignee else None,
                    created_at=now,
                    updated_at=now,
                )
                incident.id = self.store.insert_incident(conn, incident)

                for comment in comments:
                    staff = roles[comment.user_id] in STAFF_ROLES
                    self.store.insert_timeline_entry(
                        TimelineEntry(
                            incident_id=incident.id,
                            user_id=comment.user_id,
                            action="STAFF_COMMENT" if staff else "USER_COMMENT",
                            description=f"[From Ticket] {comment.comment}",
                            is_internal=False,
                            created_at=comment.created_at,
                        ),
                        conn=conn,
                    )

                if not self.store.freeze_ticket(conn, ticket.id, ticket.status, actor.id, now):
                    raise Conflict(
                        "Ticket changed while it was being converted; reload and retry.", ticket_id=ticket.id
                    )

                self.store.insert_timeline_entry(
                    TimelineEntry(
                        incident_id=incident.id,
                        user_id=actor.id,
                        action="CREATED_FROM_TICKET",
                        description=f"Incident created from ticket {ticket.ticket_number}",
                        is_internal=False,
                        created_at=now,
                    ),
                    conn=conn,
                )
                if assignee is not None:
                    self.store.insert_timeline_entry(
                        TimelineEntry(
                            incident_id=incident.id,
                            user_id=actor.id,
                            action="INCIDENT_ASSIGNED",
                            description=f"Incident assigned to {role_label(assignee.role)}: {assignee.display_name}",
                            is_internal=False,
                            created_at=now,
                        ),
                        conn=conn,
                    )
            return incident

        try:
            incident = self.numbering.with_retry(insert)
        except AlreadyConverted:
            winner = self.store.get_incident_by_source(ticket.id)
            raise AlreadyConverted(
                incident_id=winner.id if winner else None,
                incident_number=winner.incident_number if winner else None,
                ticket_id=ticket.id,
            ) from None
        logger.info(
            "Ticket %s converted to incident %s by user %s",
            ticket.ticket_number,
            incident.incident_number,
            actor.id,
        )

        notifications: list[NotificationDraft] = []
        if assignee is not None and assignee.id != actor.id:
            notifications.append(
                NotificationDraft(
                    assignee.id,
                    "INCIDENT_ASSIGNED",
                    "Security Incident Assigned",
                    f"Incident {incident.incident_number} (from ticket {ticket.ticket_number}) has been assigned to you",
                )
            )
        if ticket.created_by != actor.id:
            notifications.append(
                NotificationDraft(
                    ticket.created_by,
                    "TICKET_CONVERTED_TO_INCIDENT",
                    "Ticket Escalated",
                    f"Your ticket {ticket.ticket_number} has been escalated to security incident {incident.incident_number}",
                )
            )
        self.dispatcher.on_mutation(
            MutationEvent(
                actor_id=actor.id,
                action="CONVERT_TICKET",
                resource_type="ticket",
                resource_id=ticket.id,
                details={
                    "ticket_number": ticket.ticket_number,
                    "incident_id": incident.id,
                    "incident_number": incident.incident_number,
                    "assigned_to": incident.assigned_to,
                    "comments_copied": copied,
                },
                notifications=notifications,
            )
        )
        return incident

    def reconcile(self, actor: Actor, ticket_id: int) -> Incident:
        """Freeze a ticket whose incident already exists."""
        if not can(actor, Action.RECONCILE):
            raise Forbidden("Only the administrator can reconcile conversions.")
        ticket = self.store.get_ticket(ticket_id)
        if ticket is None:
            raise NotFound("Ticket not found.", ticket_id=ticket_id)
        incident = self.store.get_incident_by_source(ticket.id)
        if incident is None:
            raise NotFound("No incident references this ticket.", ticket_id=ticket_id)
        if ticket.status == TicketStatus.CONVERTED_TO_INCIDENT:
            raise AlreadyConverted(
                "Ticket conversion is already complete.",
                incident_id=incident.id,
                incident_number=incident.incident_number,
                ticket_id=ticket.id,
            )

        with self.store.transaction() as conn:
            if not self.store.freeze_ticket(conn, ticket.id, ticket.status, actor.id, self.clock()):
                raise Conflict("Ticket changed while it was being reconciled; reload and retry.", ticket_id=ticket.id)
        logger.warning(
            "Reconciled conversion: ticket %s frozen for incident %s by user %s",
            ticket.ticket_number,
            incident.incident_number,
            actor.id,
        )
        self.dispatcher.on_mutation(
            MutationEvent(
                actor_id=actor.id,
                action="RECONCILE_CONVERSION",
                resource_type="ticket",
                resource_id=ticket.id,
                details={
                    "ticket_number": ticket.ticket_number,
                    "incident_id": incident.id,
                    "incident_number": incident.incident_number,
                    "previous_status": ticket.status.value,
                },
            )
        )
        return incident

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_not_converted(self, ticket: Ticket) -> None:
        existing = self.store.get_incident_by_source(ticket.id)
        if existing is not None:
            if ticket.status == TicketStatus.CONVERTED_TO_INCIDENT:
                raise AlreadyConverted(
                    incident_id=existing.id, incident_number=existing.incident_number, ticket_id=ticket.id
                )
            logger.error(
                "Ticket %s has incident %s but was never frozen",
                ticket.ticket_number,
                existing.incident_number,
            )
            raise ConversionIncomplete(
                "Incident exists but the ticket was not frozen; an administrator must reconcile it.",
                incident_id=existing.id,
                incident_number=existing.incident_number,
                ticket_id=ticket.id,
            )
        if ticket.status == TicketStatus.CONVERTED_TO_INCIDENT:
            raise ImmutableResource(
                "Ticket is already converted.", ticket_id=ticket.id, status=ticket.status.value
            )

    def _pick_assignee(self, assignee_id: Optional[int]) -> Optional[Actor]:
        if assignee_id is not None:
            return assignable(self.users, assignee_id, INVESTIGATOR_ROLES, field="assignee_id")
        officer = self.users.oldest_active(Role.SECURITY_OFFICER)
        if officer is None:
            logger.warning("No active security officer; incident will be unassigned")
        return officer

    def _role_of(self, user_id: int) -> Optional[Role]:
        user = self.users.get_by_id(user_id)
        return user.role if user else None
