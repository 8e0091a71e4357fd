"""Unit tests for SLA due dates, breach detection, and SLA rule administration.

Covers:
- due_date() = now + resolution hours of the single active rule
- Priority change on an open ticket recomputes sla_due; other edits do not
- is_breached() ignores resolved/closed/converted tickets
- breached() sorting (most overdue first) and RBAC filtering via SlaAdmin
- One active rule per priority (Conflict on a second one)
"""

from datetime import datetime, timedelta, timezone

import pytest

from core.errors import Conflict, Forbidden, NotFound, ValidationError
from core.models import Priority, SlaRule, Ticket, TicketStatus
from core.sla import SlaCalculator
from desk.store import DeskStore

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _ticket(sla_due, status=TicketStatus.IN_PROGRESS, tid=1) -> Ticket:
    return Ticket(
        branch="HQ",
        request_type="r",
        title="t",
        description="d",
        created_by=1,
        status=status,
        sla_due=sla_due,
        id=tid,
    )


class TestSlaCalculator:
    def test_due_date_uses_active_rule(self) -> None:
        store = DeskStore("sqlite:///:memory:")
        store.insert_sla_rule(SlaRule(Priority.HIGH, 120, 8))
        assert SlaCalculator(store).due_date(Priority.HIGH, T0) == T0 + timedelta(hours=8)

    def test_due_date_none_without_rule(self) -> None:
        store = DeskStore("sqlite:///:memory:")
        assert SlaCalculator(store).due_date(Priority.LOW, T0) is None

    def test_due_date_ignores_inactive_rule(self) -> None:
        store = DeskStore("sqlite:///:memory:")
        store.insert_sla_rule(SlaRule(Priority.LOW, 60, 24, is_active=False))
        assert SlaCalculator(store).due_date(Priority.LOW, T0) is None

    def test_breach_only_when_open_and_past_due(self) -> None:
        past = T0 - timedelta(minutes=1)
        assert SlaCalculator.is_breached(_ticket(past), T0)
        assert not SlaCalculator.is_breached(_ticket(T0), T0)
        assert not SlaCalculator.is_breached(_ticket(None), T0)
        for status in (TicketStatus.RESOLVED, TicketStatus.CLOSED, TicketStatus.CONVERTED_TO_INCIDENT):
            assert not SlaCalculator.is_breached(_ticket(past, status=status), T0)

    def test_breached_sorted_most_overdue_first(self) -> None:
        tickets = [
            _ticket(T0 - timedelta(hours=1), tid=1),
            _ticket(T0 - timedelta(hours=5), tid=2),
            _ticket(T0 + timedelta(hours=1), tid=3),
        ]
        calc = SlaCalculator(DeskStore("sqlite:///:memory:"))
        assert [t.id for t in calc.breached(tickets, T0)] == [2, 1]


class TestSlaOnTickets:
    def test_create_sets_due_from_priority(self, desk) -> None:
        ticket = desk.ticket(priority="urgent")
        assert ticket.sla_due == desk.clock.now + timedelta(hours=4)
        assert ticket.created_at == desk.clock.now

    def test_priority_change_recomputes_due(self, desk) -> None:
        ticket = desk.ticket(priority="low")
        desk.clock.advance(hours=2)
        updated = desk.tickets.update(desk.actors["agent"], ticket.id, {"priority": "urgent"})
        assert updated.sla_due == desk.clock.now + timedelta(hours=4)
        assert desk.store.get_ticket(ticket.id).sla_due == updated.sla_due

    def test_other_edits_keep_due(self, desk) -> None:
        ticket = desk.ticket(priority="high")
        desk.clock.advance(hours=1)
        updated = desk.tickets.update(desk.actors["agent"], ticket.id, {"title": "VPN drops at night"})
        assert updated.sla_due == ticket.sla_due

    def test_rule_edit_does_not_touch_existing_tickets(self, desk) -> None:
        ticket = desk.ticket(priority="medium")
        rule = desk.store.active_sla_rule(Priority.MEDIUM)
        desk.sla_admin.update(desk.actors["admin"], rule.id, {"resolution_time_hours": 48})
        assert desk.store.get_ticket(ticket.id).sla_due == ticket.sla_due

    def test_breaches_report(self, desk) -> None:
        late = desk.ticket(priority="urgent")
        desk.ticket(priority="low")
        desk.clock.advance(hours=5)
        assert [t.id for t in desk.sla_admin.breaches(desk.actors["officer"])] == [late.id]

    def test_breaches_hidden_from_end_users(self, desk) -> None:
        with pytest.raises(Forbidden):
            desk.sla_admin.breaches(desk.actors["user"])


class TestSlaAdmin:
    def test_second_active_rule_for_priority_conflicts(self, desk) -> None:
        with pytest.raises(Conflict):
            desk.sla_admin.create(
                desk.actors["admin"],
                {"priority": "high", "response_time_minutes": 30, "resolution_time_hours": 2},
            )

    def test_inactive_duplicate_allowed_then_activation_conflicts(self, desk) -> None:
        admin = desk.actors["admin"]
        spare = desk.sla_admin.create(
            admin,
            {"priority": "high", "response_time_minutes": 30, "resolution_time_hours": 2, "is_active": False},
        )
        with pytest.raises(Conflict):
            desk.sla_admin.update(admin, spare.id, {"is_active": True})

    def test_swap_active_rule(self, desk) -> None:
        admin = desk.actors["admin"]
        current = desk.store.active_sla_rule(Priority.HIGH)
        spare = desk.sla_admin.create(
            admin,
            {"priority": "high", "response_time_minutes": 30, "resolution_time_hours": 2, "is_active": False},
        )
        desk.sla_admin.update(admin, current.id, {"is_active": False})
        desk.sla_admin.update(admin, spare.id, {"is_active": True})
        assert desk.store.active_sla_rule(Priority.HIGH).id == spare.id

    def test_non_admin_cannot_manage(self, desk) -> None:
        body = {"priority": "low", "response_time_minutes": 1, "resolution_time_hours": 1}
        with pytest.raises(Forbidden):
            desk.sla_admin.create(desk.actors["officer"], body)

    def test_rejects_non_positive_durations(self, desk) -> None:
        rule = desk.store.active_sla_rule(Priority.LOW)
        with pytest.raises(ValidationError):
            desk.sla_admin.update(desk.actors["admin"], rule.id, {"resolution_time_hours": 0})

    def test_delete_is_audited(self, desk) -> None:
        rule = desk.store.active_sla_rule(Priority.LOW)
        desk.sla_admin.delete(desk.actors["admin"], rule.id)
        assert desk.store.get_sla_rule(rule.id) is None
        assert desk.audit_actions()[-1] == "DELETE_SLA_RULE"
        with pytest.raises(NotFound):
            desk.sla_admin.delete(desk.actors["admin"], rule.id)
