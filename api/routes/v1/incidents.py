"""
api/routes/v1/incidents.py -- Security incident routes.

Routes:
  POST /incidents                  -- open an incident directly (investigators)
  GET  /incidents                  -- list incidents the caller may see
  GET  /incidents/{id}             -- incident detail with timeline
  PUT  /incidents/{id}             -- edit fields / move status forward
  POST /incidents/{id}/timeline    -- append a timeline entry

Support agents may read incidents that originated from a ticket; end users
follow an incident only through its source ticket (GET /tickets/{id}).
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request

from api.limiter import limiter
from api.models import (
    IncidentCreate,
    IncidentDetailResponse,
    IncidentResponse,
    IncidentUpdate,
    TimelineEntryCreate,
    TimelineEntryResponse,
)
from auth.dependencies import get_current_user
from core.models import Actor, IncidentStatus, Severity

router = APIRouter(dependencies=[Depends(get_current_user)])


@limiter.limit("30/minute")
@router.post("/incidents", response_model=IncidentResponse, status_code=201)
def create_incident(
    request: Request,
    body: IncidentCreate,
    actor: Actor = Depends(get_current_user),
) -> IncidentResponse:
    incident = request.app.state.incidents.create(actor, body.model_dump(exclude_none=True, mode="json"))
    return IncidentResponse.from_incident(incident)


@limiter.limit("60/minute")
@router.get("/incidents", response_model=list[IncidentResponse])
def list_incidents(
    request: Request,
    status: Optional[IncidentStatus] = None,
    severity: Optional[Severity] = None,
    category: Optional[str] = None,
    actor: Actor = Depends(get_current_user),
) -> list[IncidentResponse]:
    incidents = request.app.state.incidents.list_visible(
        actor,
        status=status.value if status else None,
        severity=severity.value if severity else None,
        category=category,
    )
    return [IncidentResponse.from_incident(i) for i in incidents]


@limiter.limit("60/minute")
@router.get("/incidents/{incident_id}", response_model=IncidentDetailResponse)
def get_incident(
    request: Request,
    incident_id: int,
    actor: Actor = Depends(get_current_user),
) -> IncidentDetailResponse:
    view = request.app.state.incidents.get(actor, incident_id)
    return IncidentDetailResponse(
        incident=IncidentResponse.from_incident(view.incident),
        timeline=[TimelineEntryResponse.from_entry(e) for e in view.timeline],
        source_ticket_number=view.source_ticket_number,
    )


@limiter.limit("30/minute")
@router.put("/incidents/{incident_id}", response_model=IncidentResponse)
def update_incident(
    request: Request,
    incident_id: int,
    body: IncidentUpdate,
    actor: Actor = Depends(get_current_user),
) -> IncidentResponse:
    fields = body.model_dump(exclude_unset=True, mode="json")
    incident = request.app.state.incidents.update(actor, incident_id, fields)
    return IncidentResponse.from_incident(incident)


@limiter.limit("30/minute")
@router.post("/incidents/{incident_id}/timeline", response_model=TimelineEntryResponse, status_code=201)
def add_timeline_entry(
    request: Request,
    incident_id: int,
    body: TimelineEntryCreate,
    actor: Actor = Depends(get_current_user),
) -> TimelineEntryResponse:
    entry = request.app.state.incidents.add_timeline_entry(
        actor, incident_id, body.action, body.description, internal=body.is_internal
    )
    return TimelineEntryResponse.from_entry(entry)
