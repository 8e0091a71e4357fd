"""Unit tests for desk/conversion.py -- ticket-to-incident conversion.

Covers:
- The incident inherits the ticket's title, branch, reporter and affected system
- Ticket comments are copied into the incident timeline, oldest first
- The ticket is frozen and stays readable by its reporter
- A second conversion reports the existing incident (AlreadyConverted)
- A half-finished conversion is reported (ConversionIncomplete) and reconciled
"""

from contextlib import contextmanager

import pytest

from core.errors import (
    AlreadyConverted,
    ConversionIncomplete,
    Forbidden,
    ImmutableResource,
    NotFound,
    ValidationError,
)
from core.models import Comment, DetectionMethod, Incident, Severity, TicketStatus


def _convert(desk, ticket, actor_key: str = "agent", category: str = "Malware", **kwargs):
    return desk.conversion.convert(desk.actors[actor_key], ticket.id, category, **kwargs)


class TestConvert:
    def test_incident_inherits_ticket_context(self, desk) -> None:
        ticket = desk.ticket(affected_system=" VPN ")
        desk.clock.advance(hours=2)
        incident = _convert(desk, ticket, severity="high")

        assert incident.incident_number == "INC-HQ-2026-000001"
        assert incident.source_ticket_id == ticket.id
        assert incident.title == ticket.title
        assert incident.description == ticket.description
        assert incident.branch == "HQ"
        assert incident.severity == Severity.HIGH
        assert incident.detection_method == DetectionMethod.IT_FOUND
        assert incident.affected_asset == "VPN"
        assert incident.affected_user_id == desk.actors["user"].id
        assert incident.created_by == desk.actors["agent"].id
        assert incident.created_at == desk.clock.now

    def test_description_override(self, desk) -> None:
        ticket = desk.ticket()
        incident = _convert(desk, ticket, description="Beaconing to known C2 host")
        assert incident.description == "Beaconing to known C2 host"

    def test_default_assignee_is_longest_tenured_officer(self, desk) -> None:
        incident = _convert(desk, desk.ticket())
        assert incident.assigned_to == desk.actors["officer"].id

    def test_explicit_assignee(self, desk) -> None:
        incident = _convert(desk, desk.ticket(), assignee_id=desk.actors["officer2"].id)
        assert incident.assigned_to == desk.actors["officer2"].id

    def test_unassigned_without_active_officer(self, desk) -> None:
        for key in ("officer", "officer2"):
            desk.users.update_user(desk.actors[key].id, status="inactive")
        incident = _convert(desk, desk.ticket())
        assert incident.assigned_to is None
        actions = [e.action for e in desk.store.list_timeline(incident.id)]
        assert actions == ["CREATED_FROM_TICKET"]

    def test_ticket_is_frozen(self, desk) -> None:
        ticket = desk.ticket()
        _convert(desk, ticket)
        stored = desk.store.get_ticket(ticket.id)
        assert stored.status == TicketStatus.CONVERTED_TO_INCIDENT
        assert stored.converted_by == desk.actors["agent"].id

        with pytest.raises(ImmutableResource):
            desk.tickets.update(desk.actors["admin"], ticket.id, {"title": "edit"})
        with pytest.raises(ImmutableResource):
            desk.tickets.add_comment(desk.actors["user"], ticket.id, "any news?")
        with pytest.raises(ImmutableResource):
            desk.tickets.delete(desk.actors["admin"], ticket.id)

    def test_reassigned_agent_converts_and_reads_incident(self, desk) -> None:
        ticket = desk.ticket()
        desk.tickets.update(desk.actors["agent"], ticket.id, {"assigned_to": desk.actors["agent2"].id})
        incident = _convert(desk, ticket, actor_key="agent2")

        agent2 = desk.actors["agent2"]
        assert desk.tickets.get(agent2, ticket.id).ticket.status == TicketStatus.CONVERTED_TO_INCIDENT
        assert desk.incidents.get(agent2, incident.id).source_ticket_number == ticket.ticket_number
        with pytest.raises(Forbidden):
            desk.tickets.get(desk.actors["agent"], ticket.id)

    def test_resolved_ticket_can_be_converted(self, desk) -> None:
        ticket = desk.ticket()
        desk.tickets.update(desk.actors["agent"], ticket.id, {"status": "resolved"})
        incident = _convert(desk, ticket, actor_key="officer")
        assert incident.source_ticket_id == ticket.id

    def test_audit_and_notifications(self, desk) -> None:
        ticket = desk.ticket()
        desk.tickets.add_comment(desk.actors["user"], ticket.id, "It happened again")
        incident = _convert(desk, ticket)

        entry = desk.store.audit_for("ticket", ticket.id)[-1]
        assert entry.action == "CONVERT_TICKET"
        assert entry.details["incident_id"] == incident.id
        assert entry.details["incident_number"] == incident.incident_number
        assert entry.details["comments_copied"] == 1

        officer_types = [n.type for n in desk.store.list_notifications(desk.actors["officer"].id)]
        user_notes = desk.store.list_notifications(desk.actors["user"].id)
        assert officer_types == ["INCIDENT_ASSIGNED"]
        assert user_notes[0].type == "TICKET_CONVERTED_TO_INCIDENT"
        assert incident.incident_number in user_notes[0].message


class TestCommentCopy:
    def test_comments_copied_in_order_before_creation_entry(self, desk) -> None:
        ticket = desk.ticket()
        desk.clock.advance(minutes=5)
        desk.tickets.add_comment(desk.actors["user"], ticket.id, "Popup asked for my password")
        desk.clock.advance(minutes=5)
        desk.tickets.add_comment(desk.actors["agent"], ticket.id, "Isolated the laptop", internal=True)
        desk.clock.advance(minutes=5)
        incident = _convert(desk, ticket)

        timeline = desk.store.list_timeline(incident.id)
        assert [e.action for e in timeline] == [
            "USER_COMMENT",
            "STAFF_COMMENT",
            "CREATED_FROM_TICKET",
            "INCIDENT_ASSIGNED",
        ]
        assert timeline[0].description == "[From Ticket] Popup asked for my password"
        assert timeline[1].description == "[From Ticket] Isolated the laptop"
        assert all(not e.is_internal for e in timeline)
        assert timeline[2].description == f"Incident created from ticket {ticket.ticket_number}"
        assert timeline[3].description == "Incident assigned to Security Officer: Officer"

    def test_copied_comment_keeps_original_time_and_author(self, desk) -> None:
        ticket = desk.ticket()
        comment = desk.tickets.add_comment(desk.actors["user"], ticket.id, "First sighting")
        desk.clock.advance(days=1)
        incident = _convert(desk, ticket)
        copied = desk.store.list_timeline(incident.id)[0]
        assert copied.created_at == comment.created_at
        assert copied.user_id == desk.actors["user"].id

    def test_comment_posted_during_conversion_is_copied(self, desk, monkeypatch) -> None:
        ticket = desk.ticket()
        opened = desk.store.transaction

        @contextmanager
        def transaction():
            # A reply lands after the ticket was loaded but before the write begins.
            desk.store.insert_comment(
                Comment(ticket.id, desk.actors["user"].id, "Second popup just now", created_at=desk.clock.now)
            )
            with opened() as conn:
                yield conn

        monkeypatch.setattr(desk.store, "transaction", transaction)
        incident = _convert(desk, ticket)
        monkeypatch.undo()

        timeline = desk.store.list_timeline(incident.id)
        assert timeline[0].description == "[From Ticket] Second popup just now"
        assert desk.store.audit_for("ticket", ticket.id)[-1].details["comments_copied"] == 1

    def test_reporter_follows_progress_through_ticket(self, desk) -> None:
        ticket = desk.ticket()
        incident = _convert(desk, ticket)
        officer = desk.actors["officer"]
        desk.incidents.update(officer, incident.id, {"status": "investigating"})
        desk.incidents.add_timeline_entry(officer, incident.id, "NOTE", "Suspect is the CFO's laptop")
        desk.incidents.add_timeline_entry(officer, incident.id, "UPDATE", "Malware removed", internal=False)

        view = desk.tickets.get(desk.actors["user"], ticket.id)
        assert view.incident.id == incident.id
        descriptions = [e.description for e in view.timeline]
        assert "Status changed from new to investigating" in descriptions
        assert "Malware removed" in descriptions
        assert "Suspect is the CFO's laptop" not in descriptions

        types = [n.type for n in desk.store.list_notifications(desk.actors["user"].id)]
        assert "INCIDENT_UPDATED" in types
        assert "INCIDENT_TIMELINE_UPDATED" in types


class TestRejectedConversions:
    def test_second_conversion_reports_existing_incident(self, desk) -> None:
        ticket = desk.ticket()
        incident = _convert(desk, ticket)
        with pytest.raises(AlreadyConverted) as exc_info:
            _convert(desk, ticket, actor_key="officer")
        assert exc_info.value.incident_id == incident.id
        assert exc_info.value.incident_number == incident.incident_number
        assert exc_info.value.context["ticket_id"] == ticket.id

    def test_losing_a_race_reports_the_winner(self, desk, monkeypatch) -> None:
        ticket = desk.ticket()
        winner = _convert(desk, ticket)
        before = desk.audit_actions()
        monkeypatch.setattr(desk.conversion, "_check_not_converted", lambda ticket: None)

        with pytest.raises(AlreadyConverted) as exc_info:
            _convert(desk, ticket, actor_key="officer")
        assert exc_info.value.incident_id == winner.id
        assert exc_info.value.incident_number == winner.incident_number
        assert len(desk.store.list_incidents()) == 1
        assert desk.audit_actions() == before

    def test_closed_ticket_cannot_be_converted(self, desk) -> None:
        ticket = desk.ticket()
        agent = desk.actors["agent"]
        desk.tickets.update(agent, ticket.id, {"status": "resolved"})
        desk.tickets.update(agent, ticket.id, {"status": "closed"})
        with pytest.raises(ImmutableResource):
            _convert(desk, ticket)
        assert desk.store.list_incidents() == []

    def test_end_user_cannot_convert(self, desk) -> None:
        with pytest.raises(Forbidden):
            _convert(desk, desk.ticket(), actor_key="user")

    def test_agent_cannot_convert_someone_elses_ticket(self, desk) -> None:
        with pytest.raises(Forbidden):
            _convert(desk, desk.ticket(), actor_key="agent2")

    def test_category_required(self, desk) -> None:
        with pytest.raises(ValidationError):
            _convert(desk, desk.ticket(), category="  ")

    def test_bad_severity(self, desk) -> None:
        with pytest.raises(ValidationError):
            _convert(desk, desk.ticket(), severity="apocalyptic")

    def test_assignee_must_be_investigator(self, desk) -> None:
        with pytest.raises(ValidationError):
            _convert(desk, desk.ticket(), assignee_id=desk.actors["agent2"].id)

    def test_missing_ticket(self, desk) -> None:
        with pytest.raises(NotFound):
            desk.conversion.convert(desk.actors["officer"], 404, "Malware")

    def test_failed_conversion_leaves_ticket_untouched(self, desk) -> None:
        ticket = desk.ticket()
        with pytest.raises(ValidationError):
            _convert(desk, ticket, assignee_id=desk.actors["user"].id)
        assert desk.store.get_ticket(ticket.id).status == TicketStatus.ASSIGNED
        assert desk.store.list_incidents() == []


class TestReconcile:
    def _half_converted(self, desk):
        """An incident pointing at a ticket that was never frozen."""
        ticket = desk.ticket()
        with desk.store.transaction() as conn:
            incident = Incident(
                branch="HQ",
                category="Malware",
                title=ticket.title,
                description=ticket.description,
                created_by=desk.actors["agent"].id,
                source_ticket_id=ticket.id,
                incident_number="INC-HQ-2026-000099",
                created_at=desk.clock.now,
            )
            incident.id = desk.store.insert_incident(conn, incident)
        return ticket, incident

    def test_convert_reports_incomplete_conversion(self, desk) -> None:
        ticket, incident = self._half_converted(desk)
        with pytest.raises(ConversionIncomplete) as exc_info:
            _convert(desk, ticket)
        assert exc_info.value.context["incident_id"] == incident.id
        assert exc_info.value.context["partial"] is True
        assert exc_info.value.status_code == 500

    def test_listed_as_unfrozen(self, desk) -> None:
        _ticket, incident = self._half_converted(desk)
        assert [i.id for i in desk.store.list_unfrozen_conversions()] == [incident.id]

    def test_admin_reconciles(self, desk) -> None:
        ticket, incident = self._half_converted(desk)
        result = desk.conversion.reconcile(desk.actors["admin"], ticket.id)
        assert result.id == incident.id
        assert desk.store.get_ticket(ticket.id).status == TicketStatus.CONVERTED_TO_INCIDENT
        assert desk.store.list_unfrozen_conversions() == []
        assert desk.audit_actions()[-1] == "RECONCILE_CONVERSION"

        with pytest.raises(AlreadyConverted):
            _convert(desk, ticket, actor_key="officer")

    def test_reconcile_twice(self, desk) -> None:
        ticket, _incident = self._half_converted(desk)
        desk.conversion.reconcile(desk.actors["admin"], ticket.id)
        with pytest.raises(AlreadyConverted):
            desk.conversion.reconcile(desk.actors["admin"], ticket.id)

    def test_only_admin_reconciles(self, desk) -> None:
        ticket, _incident = self._half_converted(desk)
        with pytest.raises(Forbidden):
            desk.conversion.reconcile(desk.actors["officer"], ticket.id)

    def test_nothing_to_reconcile(self, desk) -> None:
        ticket = desk.ticket()
        with pytest.raises(NotFound):
            desk.conversion.reconcile(desk.actors["admin"], ticket.id)
