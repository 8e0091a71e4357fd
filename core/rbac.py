"""
core/rbac.py -- Role-based access decisions for tickets and incidents.

can(actor, action, resource) is the single place role rules live. The rules
are data: _CAPABILITIES maps each Role to the actions it holds, and each
action to a predicate evaluated against the resource (or None for
collection-level checks such as "may this actor list tickets at all").

can() never raises. Callers translate a False into core.errors.Forbidden.

Visibility for support agents follows the current assignment: an agent sees
tickets that are unassigned, assigned to them, or that they converted. Once a
ticket is reassigned to someone else, the previous agent loses access unless
they ran the conversion.

Layer rule: core/ imports nothing from api/, auth/, desk/, or cache/.
"""

from enum import Enum
from typing import Callable, Optional, Union

from core.models import LOCKED_TICKET_STATUSES, Actor, Incident, Role, Ticket

Resource = Union[Ticket, Incident, None]
Rule = Callable[[Actor, Resource], bool]


class Action(str, Enum):
    # Tickets
    CREATE_TICKET = "create_ticket"
    READ = "read"
    COMMENT = "comment"
    COMMENT_INTERNAL = "comment_internal"
    EDIT = "edit"
    EDIT_DESCRIPTION = "edit_description"
    DELETE = "delete"
    CONVERT = "convert"
    VIEW_INTERNAL = "view_internal"
    # Incidents
    CREATE_INCIDENT = "create_incident"
    READ_INCIDENT = "read_incident"
    UPDATE_INCIDENT = "update_incident"
    ADD_TIMELINE = "add_timeline"
    # Administration
    MANAGE_SLA = "manage_sla"
    READ_AUDIT = "read_audit"
    MANAGE_USERS = "manage_users"
    RECONCILE = "reconcile"


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------


def _always(actor: Actor, resource: Resource) -> bool:
    return True


def _own_ticket(actor: Actor, resource: Resource) -> bool:
    if resource is None:
        return True
    return isinstance(resource, Ticket) and resource.created_by == actor.id


def _own_open_ticket(actor: Actor, resource: Resource) -> bool:
    if not isinstance(resource, Ticket):
        return False
    return resource.created_by == actor.id and resource.status not in LOCKED_TICKET_STATUSES


def _agent_ticket(actor: Actor, resource: Resource) -> bool:
    if resource is None:
        return True
    if not isinstance(resource, Ticket):
        return False
    return resource.assigned_to in (None, actor.id) or resource.converted_by == actor.id


def _ticket_sourced_incident(actor: Actor, resource: Resource) -> bool:
    if resource is None:
        return True
    return isinstance(resource, Incident) and resource.source_ticket_id is not None


# ---------------------------------------------------------------------------
# Capability table
# ---------------------------------------------------------------------------

_INVESTIGATOR: dict[Action, Rule] = {
    Action.READ: _always,
    Action.COMMENT: _always,
    Action.COMMENT_INTERNAL: _always,
    Action.EDIT: _always,
    Action.EDIT_DESCRIPTION: _always,
    Action.DELETE: _always,
    Action.CONVERT: _always,
    Action.VIEW_INTERNAL: _always,
    Action.CREATE_INCIDENT: _always,
    Action.READ_INCIDENT: _always,
    Action.UPDATE_INCIDENT: _always,
    Action.ADD_TIMELINE: _always,
}

_CAPABILITIES: dict[Role, dict[Action, Rule]] = {
    Role.ADMINISTRATOR: {
        **_INVESTIGATOR,
        Action.CREATE_TICKET: _always,
        Action.MANAGE_SLA: _always,
        Action.READ_AUDIT: _always,
        Action.MANAGE_USERS: _always,
        Action.RECONCILE: _always,
    },
    Role.SECURITY_OFFICER: dict(_INVESTIGATOR),
    Role.SUPPORT_AGENT: {
        Action.READ: _agent_ticket,
        Action.COMMENT: _agent_ticket,
        Action.COMMENT_INTERNAL: _agent_ticket,
        Action.EDIT: _agent_ticket,
        Action.EDIT_DESCRIPTION: _agent_ticket,
        Action.DELETE: _agent_ticket,
        Action.CONVERT: _agent_ticket,
        Action.VIEW_INTERNAL: _always,
        Action.READ_INCIDENT: _ticket_sourced_incident,
    },
    Role.END_USER: {
        Action.CREATE_TICKET: _always,
        Action.READ: _own_ticket,
        Action.COMMENT: _own_open_ticket,
        Action.EDIT_DESCRIPTION: _own_open_ticket,
        Action.DELETE: _own_open_ticket,
    },
}


def can(actor: Optional[Actor], action: Action, resource: Resource = None) -> bool:
    """Return True if actor may perform action on resource."""
    if actor is None or not actor.is_active:
        return False
    rule = _CAPABILITIES.get(actor.role, {}).get(action)
    if rule is None:
        return False
    return rule(actor, resource)
