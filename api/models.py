"""
API request and response models for the helpdesk REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in core/models.py, which
own the internal domain representation. Route handlers map between the two.

Request models only check shape (types, lengths, enum values). Business rules
-- required fields on create, forward-only status, who may set what -- live in
the desk/ managers, so update bodies are forwarded with exclude_unset=True and
a field the caller omitted is never mistaken for a field set to null.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from core.models import (
    Actor,
    AuditLogEntry,
    Comment,
    DetectionMethod,
    Impact,
    Incident,
    IncidentStatus,
    Notification,
    Priority,
    Role,
    Severity,
    SlaRule,
    Ticket,
    TicketStatus,
    TimelineEntry,
)

# ---------------------------------------------------------------------------
# Auth and users
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=128)


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str
    expires_in: int
    username: str
    role: Role


class UserCreate(BaseModel):
    """Request body for POST /api/v1/auth/users (administrator only)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=3, max_length=255)
    name: str = Field(default="", max_length=255)
    password: str = Field(min_length=8, max_length=72)
    role: Role = Role.END_USER
    branches: list[str] = Field(default_factory=list, max_length=50)


class UserPatch(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, max_length=255)
    role: Optional[Role] = None
    is_active: Optional[bool] = None
    branches: Optional[list[str]] = Field(default=None, max_length=50)


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    name: str
    role: Role
    is_active: bool
    branches: list[str]
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None

    @classmethod
    def from_actor(cls, actor: Actor) -> "UserResponse":
        return cls(
            id=actor.id,
            username=actor.username,
            name=actor.name,
            role=actor.role,
            is_active=actor.is_active,
            branches=sorted(actor.branches),
            created_at=actor.created_at,
            last_login=actor.last_login,
        )


# ---------------------------------------------------------------------------
# Tickets
# ---------------------------------------------------------------------------


class TicketCreate(BaseModel):
    """Request body for POST /api/v1/tickets."""

    model_config = ConfigDict(str_strip_whitespace=True)

    request_type: str = Field(max_length=100)
    title: str = Field(max_length=255)
    description: str = Field(max_length=10000)
    priority: Optional[Priority] = None
    category: Optional[str] = Field(default=None, max_length=100)
    affected_system: Optional[str] = Field(default=None, max_length=255)
    branch: Optional[str] = Field(default=None, max_length=20)


class TicketUpdate(BaseModel):
    """Request body for PUT /api/v1/tickets/{id}. Only the fields sent are applied."""

    model_config = ConfigDict(str_strip_whitespace=True)

    title: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = Field(default=None, max_length=10000)
    priority: Optional[Priority] = None
    status: Optional[TicketStatus] = None
    assigned_to: Optional[int] = None
    affected_system: Optional[str] = Field(default=None, max_length=255)
    category: Optional[str] = Field(default=None, max_length=100)


class CommentCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    comment: str = Field(max_length=10000)
    is_internal: bool = False


class ConvertRequest(BaseModel):
    """Request body for POST /api/v1/tickets/{id}/convert."""

    model_config = ConfigDict(str_strip_whitespace=True)

    category: str = Field(max_length=100)
    severity: Severity = Severity.MEDIUM
    description: Optional[str] = Field(default=None, max_length=10000)
    assignee_id: Optional[int] = None


class TicketResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    ticket_number: str
    branch: str
    request_type: str
    category: Optional[str]
    title: str
    description: str
    priority: Priority
    status: TicketStatus
    created_by: int
    assigned_to: Optional[int]
    sla_due: Optional[datetime]
    affected_system: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    resolved_at: Optional[datetime]
    closed_at: Optional[datetime]
    converted_by: Optional[int] = None

    @classmethod
    def from_ticket(cls, ticket: Ticket) -> "TicketResponse":
        return cls(
            id=ticket.id,
            ticket_number=ticket.ticket_number,
            branch=ticket.branch,
            request_type=ticket.request_type,
            category=ticket.category,
            title=ticket.title,
            description=ticket.description,
            priority=ticket.priority,
            status=ticket.status,
            created_by=ticket.created_by,
            assigned_to=ticket.assigned_to,
            sla_due=ticket.sla_due,
            affected_system=ticket.affected_system,
            created_at=ticket.created_at,
            updated_at=ticket.updated_at,
            resolved_at=ticket.resolved_at,
            closed_at=ticket.closed_at,
            converted_by=ticket.converted_by,
        )


class CommentResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    ticket_id: int
    user_id: int
    comment: str
    is_internal: bool
    created_at: Optional[datetime]

    @classmethod
    def from_comment(cls, comment: Comment) -> "CommentResponse":
        return cls(
            id=comment.id,
            ticket_id=comment.ticket_id,
            user_id=comment.user_id,
            comment=comment.comment,
            is_internal=comment.is_internal,
            created_at=comment.created_at,
        )


class TimelineEntryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    incident_id: int
    user_id: int
    action: str
    description: str
    is_internal: bool
    created_at: Optional[datetime]

    @classmethod
    def from_entry(cls, entry: TimelineEntry) -> "TimelineEntryResponse":
        return cls(
            id=entry.id,
            incident_id=entry.incident_id,
            user_id=entry.user_id,
            action=entry.action,
            description=entry.description,
            is_internal=entry.is_internal,
            created_at=entry.created_at,
        )


class LinkedIncident(BaseModel):
    """The incident a converted ticket became, as shown on the ticket."""

    model_config = ConfigDict(frozen=True)

    id: int
    incident_number: str
    status: IncidentStatus


class AttachmentRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    original_name: str
    uploaded_by: Optional[int]
    created_at: Optional[datetime]


class TicketDetailResponse(BaseModel):
    """Response for GET /api/v1/tickets/{id}.

    comments and timeline are already filtered for the caller: end users never
    receive internal entries.
    """

    model_config = ConfigDict(frozen=True)

    ticket: TicketResponse
    comments: list[CommentResponse]
    incident: Optional[LinkedIncident] = None
    timeline: list[TimelineEntryResponse] = Field(default_factory=list)
    attachments: list[AttachmentRow] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Incidents
# ---------------------------------------------------------------------------


class IncidentCreate(BaseModel):
    """Request body for POST /api/v1/incidents.

    affected_asset and affected_user_id are not fields here: they only ever
    come from a converted ticket. extra="forbid" rejects them outright.
    """

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    category: str = Field(max_length=100)
    title: str = Field(max_length=255)
    description: str = Field(max_length=10000)
    branch: Optional[str] = Field(default=None, max_length=20)
    severity: Optional[Severity] = None
    detection_method: Optional[DetectionMethod] = None
    impact_confidentiality: Optional[Impact] = None
    impact_integrity: Optional[Impact] = None
    impact_availability: Optional[Impact] = None
    assigned_to: Optional[int] = None


class IncidentUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    category: Optional[str] = Field(default=None, max_length=100)
    title: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = Field(default=None, max_length=10000)
    severity: Optional[Severity] = None
    status: Optional[IncidentStatus] = None
    impact_confidentiality: Optional[Impact] = None
    impact_integrity: Optional[Impact] = None
    impact_availability: Optional[Impact] = None
    assigned_to: Optional[int] = None
    root_cause: Optional[str] = Field(default=None, max_length=10000)
    resolution_summary: Optional[str] = Field(default=None, max_length=10000)


class TimelineEntryCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    action: str = Field(max_length=50)
    description: str = Field(max_length=10000)
    is_internal: bool = True


class IncidentResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    incident_number: str
    branch: str
    source_ticket_id: Optional[int]
    detection_method: DetectionMethod
    category: str
    title: str
    description: str
    severity: Severity
    status: IncidentStatus
    impact_confidentiality: Impact
    impact_integrity: Impact
    impact_availability: Impact
    affected_asset: Optional[str]
    affected_user_id: Optional[int]
    root_cause: Optional[str]
    resolution_summary: Optional[str]
    created_by: int
    assigned_to: Optional[int]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    triaged_at: Optional[datetime]
    contained_at: Optional[datetime]
    recovered_at: Optional[datetime]
    closed_at: Optional[datetime]

    @classmethod
    def from_incident(cls, incident: Incident) -> "IncidentResponse":
        return cls(
            id=incident.id,
            incident_number=incident.incident_number,
            branch=incident.branch,
            source_ticket_id=incident.source_ticket_id,
            detection_method=incident.detection_method,
            category=incident.category,
            title=incident.title,
            description=incident.description,
            severity=incident.severity,
            status=incident.status,
            impact_confidentiality=incident.impact_confidentiality,
            impact_integrity=incident.impact_integrity,
            impact_availability=incident.impact_availability,
            affected_asset=incident.affected_asset,
            affected_user_id=incident.affected_user_id,
            root_cause=incident.root_cause,
            resolution_summary=incident.resolution_summary,
            created_by=incident.created_by,
            assigned_to=incident.assigned_to,
            created_at=incident.created_at,
            updated_at=incident.updated_at,
            triaged_at=incident.triaged_at,
            contained_at=incident.contained_at,
            recovered_at=incident.recovered_at,
            closed_at=incident.closed_at,
        )


class IncidentDetailResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    incident: IncidentResponse
    timeline: list[TimelineEntryResponse]
    source_ticket_number: Optional[str] = None


# ---------------------------------------------------------------------------
# SLA rules
# ---------------------------------------------------------------------------


class SlaRuleCreate(BaseModel):
    priority: Priority
    response_time_minutes: int = Field(gt=0)
    resolution_time_hours: int = Field(gt=0)
    is_active: bool = True


class SlaRuleUpdate(BaseModel):
    priority: Optional[Priority] = None
    response_time_minutes: Optional[int] = Field(default=None, gt=0)
    resolution_time_hours: Optional[int] = Field(default=None, gt=0)
    is_active: Optional[bool] = None


class SlaRuleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    priority: Priority
    response_time_minutes: int
    resolution_time_hours: int
    is_active: bool
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    @classmethod
    def from_rule(cls, rule: SlaRule) -> "SlaRuleResponse":
        return cls(
            id=rule.id,
            priority=rule.priority,
            response_time_minutes=rule.response_time_minutes,
            resolution_time_hours=rule.resolution_time_hours,
            is_active=rule.is_active,
            created_at=rule.created_at,
            updated_at=rule.updated_at,
        )


# ---------------------------------------------------------------------------
# Notifications and audit
# ---------------------------------------------------------------------------


class NotificationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    type: str
    title: str
    message: str
    resource_type: Optional[str]
    resource_id: Optional[int]
    is_read: bool
    created_at: Optional[datetime]

    @classmethod
    def from_notification(cls, n: Notification) -> "NotificationResponse":
        return cls(
            id=n.id,
            type=n.type,
            title=n.title,
            message=n.message,
            resource_type=n.resource_type,
            resource_id=n.resource_id,
            is_read=n.is_read,
            created_at=n.created_at,
        )


class UnreadCountResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    count: int


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    actor_id: Optional[int]
    action: str
    resource_type: str
    resource_id: Optional[int]
    details: dict[str, Any]
    created_at: Optional[datetime]

    @classmethod
    def from_entry(cls, entry: AuditLogEntry) -> "AuditEntryResponse":
        return cls(
            id=entry.id,
            actor_id=entry.actor_id,
            action=entry.action,
            resource_type=entry.resource_type,
            resource_id=entry.resource_id,
            details=entry.details,
            created_at=entry.created_at,
        )


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload.

    context carries whatever the caller needs to act on the error, for
    example the existing incident's id and number on a repeated conversion.
    """

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    context: Optional[dict[str, Any]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
