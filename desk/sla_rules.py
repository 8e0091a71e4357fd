"""
desk/sla_rules.py -- SLA rule administration and breach reporting.

At most one rule per priority is active. The store's partial unique index
enforces this; a violation comes back as Conflict from DeskStore. Editing a
rule never touches sla_due on existing tickets -- due dates are recomputed
only when a ticket's own priority changes.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from core.errors import Forbidden, NotFound, ValidationError
from core.models import Actor, Priority, Role, SlaRule, Ticket
from core.rbac import Action, can
from core.sla import SlaCalculator
from desk.dispatcher import Dispatcher, MutationEvent
from desk.fields import parse_choice, reject_unknown
from desk.store import DeskStore

logger = logging.getLogger("helpdesk.sla")

_RULE_FIELDS = frozenset({"priority", "response_time_minutes", "resolution_time_hours", "is_active"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _positive(fields: dict[str, Any], name: str) -> int:
    value = fields.get(name)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{name} must be a positive integer.", field=name)
    return value


class SlaAdmin:
    def __init__(
        self,
        store: DeskStore,
        sla: SlaCalculator,
        dispatcher: Dispatcher,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.sla = sla
        self.dispatcher = dispatcher
        self.clock = clock

    def list(self, actor: Actor) -> list[SlaRule]:
        if actor.role == Role.END_USER:
            raise Forbidden("You cannot view SLA rules.")
        return self.store.list_sla_rules()

    def create(self, actor: Actor, fields: dict[str, Any]) -> SlaRule:
        self._require_manage(actor)
        reject_unknown(fields, _RULE_FIELDS)
        now = self.clock()
        rule = SlaRule(
            priority=parse_choice(Priority, fields.get("priority"), "priority"),
            response_time_minutes=_positive(fields, "response_time_minutes"),
            resolution_time_hours=_positive(fields, "resolution_time_hours"),
            is_active=bool(fields.get("is_active", True)),
            created_at=now,
            updated_at=now,
        )
        rule.id = self.store.insert_sla_rule(rule)
        logger.info("SLA rule %s created for priority %s", rule.id, rule.priority.value)
        self._dispatch(actor, "CREATE_SLA_RULE", rule)
        return rule

    def update(self, actor: Actor, rule_id: int, fields: dict[str, Any]) -> SlaRule:
        self._require_manage(actor)
        rule = self._get(rule_id)
        if not fields:
            raise ValidationError("No fields to update.")
        reject_unknown(fields, _RULE_FIELDS)

        changes: dict[str, Any] = {}
        if "priority" in fields:
            changes["priority"] = parse_choice(Priority, fields["priority"], "priority")
        for name in ("response_time_minutes", "resolution_time_hours"):
            if name in fields:
                changes[name] = _positive(fields, name)
        if "is_active" in fields:
            changes["is_active"] = bool(fields["is_active"])
        changes["updated_at"] = self.clock()

        if not self.store.update_sla_rule(rule.id, **changes):
            raise NotFound("SLA rule not found.", rule_id=rule_id)
        updated = replace(rule, **changes)
        logger.info("SLA rule %s updated: %s", rule.id, sorted(changes))
        self._dispatch(actor, "UPDATE_SLA_RULE", updated, fields=sorted(set(changes) - {"updated_at"}))
        return updated

    def delete(self, actor: Actor, rule_id: int) -> None:
        self._require_manage(actor)
        rule = self._get(rule_id)
        if not self.store.delete_sla_rule(rule.id):
            raise NotFound("SLA rule not found.", rule_id=rule_id)
        logger.info("SLA rule %s deleted", rule.id)
        self._dispatch(actor, "DELETE_SLA_RULE", rule)

    def breaches(self, actor: Actor) -> list[Ticket]:
        """Open tickets past their SLA due date that actor may see, most overdue first."""
        if actor.role == Role.END_USER:
            raise Forbidden("You cannot view SLA breaches.")
        tickets = [t for t in self.store.list_sla_tracked_tickets() if can(actor, Action.READ, t)]
        return self.sla.breached(tickets, self.clock())

    def _get(self, rule_id: int) -> SlaRule:
        rule = self.store.get_sla_rule(rule_id)
        if rule is None:
            raise NotFound("SLA rule not found.", rule_id=rule_id)
        return rule

    @staticmethod
    def _require_manage(actor: Actor) -> None:
        if not can(actor, Action.MANAGE_SLA):
            raise Forbidden("Only the administrator can manage SLA rules.")

    def _dispatch(self, actor: Actor, action: str, rule: SlaRule, **extra: Any) -> None:
        self.dispatcher.on_mutation(
            MutationEvent(
                actor_id=actor.id,
                action=action,
                resource_type="sla_rule",
                resource_id=rule.id,
                details={
                    "priority": rule.priority.value,
                    "response_time_minutes": rule.response_time_minutes,
                    "resolution_time_hours": rule.resolution_time_hours,
                    "is_active": rule.is_active,
                    **extra,
                },
            )
        )
