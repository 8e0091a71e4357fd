"""
core/models.py -- Domain types for the helpdesk and incident engine.

Dataclasses are pure data containers; the managers in desk/ own the rules.
Enums are str subclasses so values compare equal to the plain strings stored
in the database and sent over the wire.

id is None on every entity before the record is written to the store.
Timestamps are timezone-aware UTC datetimes.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

# Pseudo-branch granting every branch. Never used as a numbering scope.
ALL_BRANCHES = "ALL"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Role(str, Enum):
    END_USER = "end_user"
    SUPPORT_AGENT = "support_agent"
    SECURITY_OFFICER = "security_officer"
    ADMINISTRATOR = "administrator"


STAFF_ROLES = frozenset({Role.SUPPORT_AGENT, Role.SECURITY_OFFICER, Role.ADMINISTRATOR})
INVESTIGATOR_ROLES = frozenset({Role.SECURITY_OFFICER, Role.ADMINISTRATOR})


class ActorStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Impact(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class DetectionMethod(str, Enum):
    USER_REPORTED = "user_reported"
    IT_FOUND = "it_found"
    MONITORING = "monitoring"
    EXTERNAL = "external"


class TicketStatus(str, Enum):
    NEW = "new"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    WAITING_FOR_USER = "waiting_for_user"
    RESOLVED = "resolved"
    CLOSED = "closed"
    CONVERTED_TO_INCIDENT = "converted_to_incident"


# Forward order of the main line. converted_to_incident is a side exit and
# only the Conversion Coordinator may enter it.
TICKET_FLOW: tuple[TicketStatus, ...] = (
    TicketStatus.NEW,
    TicketStatus.ASSIGNED,
    TicketStatus.IN_PROGRESS,
    TicketStatus.WAITING_FOR_USER,
    TicketStatus.RESOLVED,
    TicketStatus.CLOSED,
)

# Edits are refused once a ticket reaches any of these.
LOCKED_TICKET_STATUSES = frozenset(
    {TicketStatus.RESOLVED, TicketStatus.CLOSED, TicketStatus.CONVERTED_TO_INCIDENT}
)
TERMINAL_TICKET_STATUSES = frozenset({TicketStatus.CLOSED, TicketStatus.CONVERTED_TO_INCIDENT})


class IncidentStatus(str, Enum):
    NEW = "new"
    TRIAGED = "triaged"
    INVESTIGATING = "investigating"
    CONTAINED = "contained"
    RECOVERED = "recovered"
    CLOSED = "closed"


INCIDENT_FLOW: tuple[IncidentStatus, ...] = tuple(IncidentStatus)

# Status changes into these are visible to the end user on the source ticket.
PROGRESS_STATUSES = frozenset(
    {
        IncidentStatus.TRIAGED,
        IncidentStatus.INVESTIGATING,
        IncidentStatus.CONTAINED,
        IncidentStatus.RECOVERED,
        IncidentStatus.CLOSED,
    }
)

# First arrival in one of these stamps the matching timestamp column.
INCIDENT_STAMPS: dict[IncidentStatus, str] = {
    IncidentStatus.TRIAGED: "triaged_at",
    IncidentStatus.CONTAINED: "contained_at",
    IncidentStatus.RECOVERED: "recovered_at",
    IncidentStatus.CLOSED: "closed_at",
}


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


@dataclass
class Actor:
    """A person who can act on tickets and incidents.

    username is the login (usually an email address). branches holds the
    branch acronyms the actor files and works within; ALL_BRANCHES in the set
    means every branch. hashed_password is only read by auth/tokens.py.
    """

    username: str
    role: Role
    name: str = ""
    id: Optional[int] = None
    status: ActorStatus = ActorStatus.ACTIVE
    branches: frozenset[str] = frozenset()
    hashed_password: Optional[str] = None
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == ActorStatus.ACTIVE

    @property
    def display_name(self) -> str:
        return self.name or self.username


@dataclass
class Ticket:
    branch: str
    request_type: str
    title: str
    description: str
    created_by: int
    priority: Priority = Priority.MEDIUM
    status: TicketStatus = TicketStatus.NEW
    ticket_number: str = ""
    category: Optional[str] = None
    assigned_to: Optional[int] = None
    sla_due: Optional[datetime] = None
    affected_system: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    converted_by: Optional[int] = None
    id: Optional[int] = None


@dataclass
class Incident:
    """A tracked security incident.

    affected_asset and affected_user_id are only ever filled by conversion
    from the source ticket; callers cannot set them directly.
    """

    branch: str
    category: str
    title: str
    description: str
    created_by: int
    severity: Severity = Severity.MEDIUM
    status: IncidentStatus = IncidentStatus.NEW
    detection_method: DetectionMethod = DetectionMethod.USER_REPORTED
    incident_number: str = ""
    source_ticket_id: Optional[int] = None
    impact_confidentiality: Impact = Impact.NONE
    impact_integrity: Impact = Impact.NONE
    impact_availability: Impact = Impact.NONE
    affected_asset: Optional[str] = None
    affected_user_id: Optional[int] = None
    root_cause: Optional[str] = None
    resolution_summary: Optional[str] = None
    assigned_to: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    triaged_at: Optional[datetime] = None
    contained_at: Optional[datetime] = None
    recovered_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class Comment:
    ticket_id: int
    user_id: int
    comment: str
    is_internal: bool = False
    created_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class TimelineEntry:
    incident_id: int
    user_id: int
    action: str  # CREATED | STATUS_CHANGED | INCIDENT_ASSIGNED | USER_COMMENT | STAFF_COMMENT | ...
    description: str
    is_internal: bool = True
    created_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class SlaRule:
    priority: Priority
    response_time_minutes: int
    resolution_time_hours: int
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class AuditLogEntry:
    """Append-only compliance record. Never updated or deleted."""

    actor_id: Optional[int]
    action: str
    resource_type: str
    resource_id: Optional[int]
    details: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class Notification:
    user_id: int
    type: str
    title: str
    message: str
    resource_type: Optional[str] = None
    resource_id: Optional[int] = None
    is_read: bool = False
    created_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class Attachment:
    record_type: str  # "ticket" | "incident"
    record_id: int
    filename: str  # name on disk, inside uploads_dir
    original_name: str
    uploaded_by: Optional[int] = None
    created_at: Optional[datetime] = None
    id: Optional[int] = None
