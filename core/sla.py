"""
core/sla.py -- SLA deadline computation and breach classification.

SlaCalculator reads the active rule table through any object exposing
active_sla_rule(priority) -> SlaRule | None (desk.store.DeskStore in
production). A priority without an active rule is "not tracked": due_date()
returns None and the ticket can never be breached.

Recomputing the deadline when priority changes is the ticket manager's job.

Layer rule: core/ imports nothing from api/, auth/, desk/, or cache/.
"""

from datetime import datetime, timedelta
from typing import Iterable, Optional, Protocol

from core.models import LOCKED_TICKET_STATUSES, Priority, SlaRule, Ticket


class SlaRuleSource(Protocol):
    def active_sla_rule(self, priority: Priority) -> Optional[SlaRule]: ...


class SlaCalculator:
    def __init__(self, rules: SlaRuleSource) -> None:
        self.rules = rules

    def due_date(self, priority: Priority, now: datetime) -> Optional[datetime]:
        """Return now + resolution hours of the active rule for priority, or None."""
        rule = self.rules.active_sla_rule(Priority(priority))
        if rule is None:
            return None
        return now + timedelta(hours=rule.resolution_time_hours)

    @staticmethod
    def is_breached(ticket: Ticket, now: datetime) -> bool:
        """True iff the ticket is still open and its deadline has passed."""
        if ticket.sla_due is None or ticket.status in LOCKED_TICKET_STATUSES:
            return False
        return now > ticket.sla_due

    def breached(self, tickets: Iterable[Ticket], now: datetime) -> list[Ticket]:
        """Breached tickets, most overdue first."""
        late = [t for t in tickets if self.is_breached(t, now)]
        late.sort(key=lambda t: t.sla_due)
        return late
