"""
desk/incidents.py -- Incident lifecycle: creation, investigation updates, timeline.

Status flow (monotonic):

    new -> triaged -> investigating -> contained -> recovered -> closed

Statuses may be skipped but never revisited. The first arrival in triaged,
contained, recovered, or closed stamps the matching *_at column; later
updates never overwrite a stamp. A closed incident is frozen: status,
assignee, investigation fields, and timeline all reject writes.

affected_asset and affected_user_id are not accepted here. They are filled
only by desk/conversion.py from the source ticket.

Timeline entries written by update() share the incident update's
transaction. Status changes into the investigation-progress statuses are
non-internal so the reporter can follow progress on their ticket.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from core.errors import Conflict, Forbidden, ImmutableResource, NotFound, ValidationError
from core.models import (
    INCIDENT_FLOW,
    INCIDENT_STAMPS,
    INVESTIGATOR_ROLES,
    PROGRESS_STATUSES,
    Actor,
    DetectionMethod,
    Impact,
    Incident,
    IncidentStatus,
    Role,
    Severity,
    TimelineEntry,
)
from core.rbac import Action, can
from desk.dispatcher import Dispatcher, MutationEvent, NotificationDraft
from desk.fields import assignable, clean_text, parse_choice, reject_unknown, require_text
from desk.numbering import NumberingService
from desk.store import DeskStore

if TYPE_CHECKING:
    from auth.store import UserStore

logger = logging.getLogger("helpdesk.incidents")

_REQUIRED = ("category", "title", "description")
_IMPACTS = ("impact_confidentiality", "impact_integrity", "impact_availability")
_CREATABLE = frozenset({*_REQUIRED, *_IMPACTS, "severity", "detection_method", "assigned_to", "branch"})
_EDITABLE = frozenset(
    {
        *_REQUIRED,
        *_IMPACTS,
        "severity",
        "status",
        "assigned_to",
        "root_cause",
        "resolution_summary",
    }
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def role_label(role: Role) -> str:
    return role.value.replace("_", " ").title()


@dataclass
class IncidentView:
    incident: Incident
    timeline: list[TimelineEntry] = field(default_factory=list)
    source_ticket_number: Optional[str] = None


class IncidentManager:
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

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, actor: Actor, incident_id: int) -> IncidentView:
        incident = self._readable(actor, incident_id)
        source = self.store.get_ticket(incident.source_ticket_id) if incident.source_ticket_id else None
        return IncidentView(
            incident=incident,
            timeline=self.store.list_timeline(incident.id, include_internal=can(actor, Action.VIEW_INTERNAL)),
            source_ticket_number=source.ticket_number if source else None,
        )

    def list_visible(
        self,
        actor: Actor,
        status: Optional[str] = None,
        severity: Optional[str] = None,
        category: Optional[str] = None,
    ) -> list[Incident]:
        if not can(actor, Action.READ_INCIDENT):
            raise Forbidden("You cannot list incidents.")
        sourced_only = actor.role == Role.SUPPORT_AGENT
        return self.store.list_incidents(status, severity, category, sourced_only=sourced_only)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(self, actor: Actor, fields: dict[str, Any]) -> Incident:
        """Open an incident directly (not from a ticket)."""
        if not can(actor, Action.CREATE_INCIDENT):
            raise Forbidden("Only security officers and administrators can create incidents.")
        reject_unknown(fields, _CREATABLE)
        require_text(fields, _REQUIRED)
        branch = self.numbering.resolve_branch(actor, fields.get("branch"))
        assignee = assignable(self.users, fields.get("assigned_to"), INVESTIGATOR_ROLES)

        now = self.clock()
        draft = Incident(
            branch=branch,
            category=clean_text(fields["category"]),
            title=clean_text(fields["title"]),
            description=clean_text(fields["description"]),
            created_by=actor.id,
            severity=parse_choice(Severity, fields.get("severity") or Severity.MEDIUM, "severity"),
            detection_method=parse_choice(
                DetectionMethod, fields.get("detection_method") or DetectionMethod.USER_REPORTED, "detection_method"
            ),
            impact_confidentiality=parse_choice(Impact, fields.get("impact_confidentiality") or Impact.NONE, "impact_confidentiality"),
            impact_integrity=parse_choice(Impact, fields.get("impact_integrity") or Impact.NONE, "impact_integrity"),
            impact_availability=parse_choice(Impact, fields.get("impact_availability") or Impact.NONE, "impact_availability"),
            assigned_to=assignee.id if assignee else None,
            created_at=now,
            updated_at=now,
        )

        def insert(reseed: bool) -> Incident:
            with self.store.transaction() as conn:
                number = self.numbering.next_incident_number(conn, branch, now.year, reseed)
                incident = replace(draft, incident_number=number)
                incident.id = self.store.insert_incident(conn, incident)
                self.store.insert_timeline_entry(
                    TimelineEntry(
                        incident_id=incident.id,
                        user_id=actor.id,
                        action="CREATED",
                        description=f"Incident created: {incident.title}",
                        is_internal=True,
                        created_at=now,
                    ),
                    conn=conn,
                )
            return incident

        incident = self.numbering.with_retry(insert)
        logger.info("Incident %s created by user %s", incident.incident_number, actor.id)

        notifications = [
            NotificationDraft(
                user_id,
                "INCIDENT_CREATED",
                "New Security Incident",
                f"{actor.display_name} opened incident {incident.incident_number}: {incident.title}",
            )
            for user_id in self.users.active_ids(INVESTIGATOR_ROLES)
            if user_id != actor.id
        ]
        if incident.assigned_to not in (None, actor.id):
            notifications.insert(
                0,
                NotificationDraft(
                    incident.assigned_to,
                    "INCIDENT_ASSIGNED",
                    "Incident Assigned",
                    f"Incident {incident.incident_number} has been assigned to you",
                ),
            )
        self.dispatcher.on_mutation(
            MutationEvent(
                actor_id=actor.id,
                action="CREATE_INCIDENT",
                resource_type="incident",
                resource_id=incident.id,
                details={"incident_number": incident.incident_number, "severity": incident.severity.value},
                notifications=notifications,
            )
        )
        return incident

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def update(self, actor: Actor, incident_id: int, fields: dict[str, Any]) -> Incident:
        incident = self._readable(actor, incident_id)
        if not can(actor, Action.UPDATE_INCIDENT, incident):
            raise Forbidden("Only security officers and administrators can update incidents.")
        self._check_open(incident)
        if not fields:
            raise ValidationError("No fields to update.")
        reject_unknown(fields, _EDITABLE)

        now = self.clock()
        changes = self._diff(incident, fields, now)
        if not changes:
            return incident
        changes["updated_at"] = now
        updated = replace(incident, **changes)

        entries: list[TimelineEntry] = []
        if "status" in changes:
            entries.append(
                TimelineEntry(
                    incident_id=incident.id,
                    user_id=actor.id,
                    action="STATUS_CHANGED",
                    description=f"Status changed from {incident.status.value} to {updated.status.value}",
                    is_internal=updated.status not in PROGRESS_STATUSES,
                    created_at=now,
                )
            )
        assignee = None
        if "assigned_to" in changes and updated.assigned_to is not None:
            assignee = self.users.get_by_id(updated.assigned_to)
            entries.append(
                TimelineEntry(
                    incident_id=incident.id,
                    user_id=actor.id,
                    action="INCIDENT_ASSIGNED",
                    description=f"Incident assigned to {assignee.display_name} ({role_label(assignee.role)})",
                    is_internal=False,
                    created_at=now,
                )
            )

        with self.store.transaction() as conn:
            if not self.store.update_incident(incident.id, incident.status, conn=conn, **changes):
                raise Conflict("Incident changed while you were editing it; reload and retry.", incident_id=incident.id)
            for entry in entries:
                self.store.insert_timeline_entry(entry, conn=conn)
        logger.info("Incident %s updated by user %s: %s", incident.incident_number, actor.id, sorted(changes))

        notifications: list[NotificationDraft] = []
        if assignee is not None and assignee.id != actor.id:
            notifications.append(
                NotificationDraft(
                    assignee.id,
                    "INCIDENT_ASSIGNED",
                    "Incident Assigned",
                    f"Incident {incident.incident_number} has been assigned to you",
                )
            )
        reporter = self._source_creator(incident)
        if reporter is not None and reporter != actor.id:
            notifications.append(
                NotificationDraft(
                    reporter,
                    "INCIDENT_UPDATED",
                    "Incident Updated",
                    f"The incident raised from your ticket ({incident.incident_number}) has been updated",
                )
            )
        details: dict[str, Any] = {
            "incident_number": incident.incident_number,
            "fields": sorted(set(changes) - {"updated_at"}),
        }
        if "status" in changes:
            details["from_status"] = incident.status.value
            details["to_status"] = updated.status.value
        self.dispatcher.on_mutation(
            MutationEvent(
                actor_id=actor.id,
                action="UPDATE_INCIDENT",
                resource_type="incident",
                resource_id=incident.id,
                details=details,
                notifications=notifications,
            )
        )
        return updated

    def _diff(self, incident: Incident, fields: dict[str, Any], now: datetime) -> dict[str, Any]:
        changes: dict[str, Any] = {}
        for name in _REQUIRED:
            if name in fields:
                value = clean_text(fields[name])
                if not value:
                    raise ValidationError(f"{name} cannot be empty.", field=name)
                if value != getattr(incident, name):
                    changes[name] = value
        for name in ("root_cause", "resolution_summary"):
            if name in fields:
                value = clean_text(fields[name]) or None
                if value != getattr(incident, name):
                    changes[name] = value
        if "severity" in fields:
            severity = parse_choice(Severity, fields["severity"], "severity")
            if severity != incident.severity:
                changes["severity"] = severity
        for name in _IMPACTS:
            if name in fields:
                impact = parse_choice(Impact, fields[name], name)
                if impact != getattr(incident, name):
                    changes[name] = impact

        if "assigned_to" in fields:
            assignee = assignable(self.users, fields["assigned_to"], INVESTIGATOR_ROLES)
            assignee_id = assignee.id if assignee else None
            if assignee_id != incident.assigned_to:
                changes["assigned_to"] = assignee_id

        if "status" in fields:
            target = parse_choice(IncidentStatus, fields["status"], "status")
            if INCIDENT_FLOW.index(target) < INCIDENT_FLOW.index(incident.status):
                raise ValidationError(
                    f"Incident status cannot move back from {incident.status.value} to {target.value}.",
                    field="status",
                    from_status=incident.status.value,
                    to_status=target.value,
                )
            if target != incident.status:
                changes["status"] = target
                stamp = INCIDENT_STAMPS.get(target)
                if stamp is not None and getattr(incident, stamp) is None:
                    changes[stamp] = now
        return changes

    # ------------------------------------------------------------------
    # Timeline
    # ------------------------------------------------------------------

    def add_timeline_entry(
        self,
        actor: Actor,
        incident_id: int,
        action: str,
        description: str,
        internal: bool = True,
    ) -> TimelineEntry:
        incident = self._readable(actor, incident_id)
        if not can(actor, Action.ADD_TIMELINE, incident):
            raise Forbidden("Only security officers and administrators can add timeline entries.")
        self._check_open(incident)
        require_text({"action": action, "description": description}, ("action", "description"))

        entry = TimelineEntry(
            incident_id=incident.id,
            user_id=actor.id,
            action=clean_text(action).upper(),
            description=clean_text(description),
            is_internal=internal,
            created_at=self.clock(),
        )
        entry.id = self.store.insert_timeline_entry(entry)

        notifications: list[NotificationDraft] = []
        reporter = self._source_creator(incident)
        if not internal and reporter is not None and reporter != actor.id:
            notifications.append(
                NotificationDraft(
                    reporter,
                    "INCIDENT_TIMELINE_UPDATED",
                    "Incident Update",
                    f"New update on incident {incident.incident_number}: {entry.description[:120]}",
                )
            )
        self.dispatcher.on_mutation(
            MutationEvent(
                actor_id=actor.id,
                action="ADD_TIMELINE_ENTRY",
                resource_type="incident",
                resource_id=incident.id,
                details={"entry_id": entry.id, "timeline_action": entry.action, "is_internal": internal},
                notifications=notifications,
            )
        )
        return entry

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _readable(self, actor: Actor, incident_id: int) -> Incident:
        incident = self.store.get_incident(incident_id)
        if incident is None:
            raise NotFound("Incident not found.", incident_id=incident_id)
        if not can(actor, Action.READ_INCIDENT, incident):
            raise Forbidden("You do not have access to this incident.", incident_id=incident_id)
        return incident

    @staticmethod
    def _check_open(incident: Incident) -> None:
        if incident.status == IncidentStatus.CLOSED:
            raise ImmutableResource(
                "Incident is closed and can no longer be changed.",
                incident_id=incident.id,
                status=incident.status.value,
            )

    def _source_creator(self, incident: Incident) -> Optional[int]:
        if incident.source_ticket_id is None:
            return None
        ticket = self.store.get_ticket(incident.source_ticket_id)
        return ticket.created_by if ticket else None
