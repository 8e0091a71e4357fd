"""Unit tests for desk/dispatcher.py -- audit rows, notification fan-out, and
the notification/audit read side.
"""

import logging

import pytest
from sqlalchemy.exc import OperationalError

from core.errors import Forbidden, NotFound
from desk.dispatcher import MutationEvent, NotificationDraft


def _event(**overrides) -> MutationEvent:
    fields = dict(actor_id=1, action="UPDATE_TICKET", resource_type="ticket", resource_id=7)
    fields.update(overrides)
    return MutationEvent(**fields)


class TestOnMutation:
    def test_exactly_one_audit_row(self, desk) -> None:
        desk.dispatcher.on_mutation(_event(details={"fields": ["title"]}))
        entries = desk.store.list_audit()
        assert len(entries) == 1
        assert entries[0].action == "UPDATE_TICKET"
        assert entries[0].details == {"fields": ["title"]}
        assert entries[0].created_at == desk.clock.now

    def test_duplicate_drafts_collapse(self, desk) -> None:
        uid = desk.actors["user"].id
        desk.dispatcher.on_mutation(
            _event(
                notifications=[
                    NotificationDraft(uid, "TICKET_COMMENT", "a", "first"),
                    NotificationDraft(uid, "TICKET_COMMENT", "b", "second"),
                    NotificationDraft(uid, "TICKET_UPDATED", "c", "third"),
                    NotificationDraft(None, "TICKET_ASSIGNED", "d", "nobody"),
                ]
            )
        )
        notes = desk.store.list_notifications(uid)
        assert sorted(n.type for n in notes) == ["TICKET_COMMENT", "TICKET_UPDATED"]
        assert {n.message for n in notes} == {"first", "third"}
        assert all(n.resource_type == "ticket" and n.resource_id == 7 for n in notes)

    def test_audit_failure_does_not_undo_mutation(self, desk, monkeypatch, caplog) -> None:
        def broken(entry):
            raise OperationalError("INSERT INTO audit_log", {}, Exception("disk I/O error"))

        monkeypatch.setattr(desk.store, "append_audit", broken)
        with caplog.at_level(logging.ERROR, logger="helpdesk.dispatcher"):
            ticket = desk.ticket()

        assert desk.store.get_ticket(ticket.id) is not None
        assert desk.store.list_notifications(desk.actors["agent"].id)
        assert any("Audit write failed for CREATE_TICKET" in r.getMessage() for r in caplog.records)

    def test_notification_failure_is_logged_and_skipped(self, desk, monkeypatch, caplog) -> None:
        def broken(notification):
            raise OperationalError("INSERT INTO notifications", {}, Exception("locked"))

        monkeypatch.setattr(desk.store, "insert_notification", broken)
        with caplog.at_level(logging.ERROR, logger="helpdesk.dispatcher"):
            ticket = desk.ticket()

        assert desk.store.audit_for("ticket", ticket.id)
        assert any("TICKET_ASSIGNED" in r.getMessage() for r in caplog.records)


class TestNotificationReads:
    def test_unread_count_and_mark_read(self, desk) -> None:
        desk.ticket()
        desk.ticket()
        agent = desk.actors["agent"]
        notes = desk.dispatcher.notifications_for(agent)
        assert desk.dispatcher.unread_count(agent) == 2

        desk.dispatcher.mark_read(agent, notes[0].id)
        assert desk.dispatcher.unread_count(agent) == 1
        assert [n.id for n in desk.dispatcher.notifications_for(agent, unread_only=True)] == [notes[1].id]

    def test_mark_all_read(self, desk) -> None:
        desk.ticket()
        desk.ticket()
        admin = desk.actors["admin"]
        assert desk.dispatcher.mark_all_read(admin) == 2
        assert desk.dispatcher.mark_all_read(admin) == 0
        assert desk.dispatcher.unread_count(admin) == 0

    def test_cannot_mark_someone_elses_notification(self, desk) -> None:
        desk.ticket()
        note = desk.dispatcher.notifications_for(desk.actors["agent"])[0]
        with pytest.raises(NotFound):
            desk.dispatcher.mark_read(desk.actors["agent2"], note.id)
        assert desk.dispatcher.unread_count(desk.actors["agent"]) == 1

    def test_limit(self, desk) -> None:
        for _ in range(3):
            desk.ticket()
        assert len(desk.dispatcher.notifications_for(desk.actors["agent"], limit=2)) == 2


class TestAuditReads:
    def test_admin_reads_log_newest_first(self, desk) -> None:
        ticket = desk.ticket()
        desk.tickets.update(desk.actors["agent"], ticket.id, {"status": "in_progress"})
        log = desk.dispatcher.audit_log(desk.actors["admin"])
        assert [e.action for e in log] == ["UPDATE_TICKET", "CREATE_TICKET"]

    def test_trail_for_one_resource(self, desk) -> None:
        first = desk.ticket()
        desk.ticket()
        trail = desk.dispatcher.audit_trail(desk.actors["admin"], "ticket", first.id)
        assert [(e.action, e.resource_id) for e in trail] == [("CREATE_TICKET", first.id)]

    @pytest.mark.parametrize("key", ["officer", "agent", "user"])
    def test_non_admin_denied(self, desk, key: str) -> None:
        with pytest.raises(Forbidden):
            desk.dispatcher.audit_log(desk.actors[key])
        with pytest.raises(Forbidden):
            desk.dispatcher.audit_trail(desk.actors[key], "ticket", 1)
