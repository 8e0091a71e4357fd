"""
api/routes/v1/tickets.py -- Ticket routes, including conversion to an incident.

Routes:
  POST   /tickets                           -- file a ticket
  GET    /tickets                           -- list tickets the caller may see
  GET    /tickets/{id}                      -- ticket detail with comments and linked incident
  PUT    /tickets/{id}                      -- edit fields / move status forward
  DELETE /tickets/{id}                      -- delete an unresolved ticket
  POST   /tickets/{id}/comments             -- add a comment
  POST   /tickets/{id}/convert              -- convert to a security incident
  POST   /tickets/{id}/convert/reconcile    -- finish an interrupted conversion (administrator)

Handlers are thin: they unpack the body, call the manager on app.state, and
map the result. DeskError subclasses raised by the managers are rendered by
the handler in api/main.py.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import limiter
from api.models import (
    AttachmentRow,
    CommentCreate,
    CommentResponse,
    ConvertRequest,
    IncidentResponse,
    LinkedIncident,
    TicketCreate,
    TicketDetailResponse,
    TicketResponse,
    TicketUpdate,
    TimelineEntryResponse,
)
from auth.dependencies import get_current_user
from core.models import Actor, Priority, TicketStatus

router = APIRouter(dependencies=[Depends(get_current_user)])


@limiter.limit("30/minute")
@router.post("/tickets", response_model=TicketResponse, status_code=201)
def create_ticket(
    request: Request,
    body: TicketCreate,
    actor: Actor = Depends(get_current_user),
) -> TicketResponse:
    ticket = request.app.state.tickets.create(actor, body.model_dump(exclude_none=True))
    return TicketResponse.from_ticket(ticket)


@limiter.limit("60/minute")
@router.get("/tickets", response_model=list[TicketResponse])
def list_tickets(
    request: Request,
    status: Optional[TicketStatus] = None,
    priority: Optional[Priority] = None,
    branch: Optional[str] = None,
    actor: Actor = Depends(get_current_user),
) -> list[TicketResponse]:
    """Return tickets visible to the caller, newest first.

    End users see their own tickets; support agents see tickets unassigned,
    assigned to them, or converted by them; investigators see all.
    """
    tickets = request.app.state.tickets.list_visible(
        actor,
        status=status.value if status else None,
        priority=priority.value if priority else None,
        branch=branch.upper() if branch else None,
    )
    return [TicketResponse.from_ticket(t) for t in tickets]


@limiter.limit("60/minute")
@router.get("/tickets/{ticket_id}", response_model=TicketDetailResponse)
def get_ticket(request: Request, ticket_id: int, actor: Actor = Depends(get_current_user)) -> TicketDetailResponse:
    view = request.app.state.tickets.get(actor, ticket_id)
    incident = None
    if view.incident is not None:
        incident = LinkedIncident(
            id=view.incident.id,
            incident_number=view.incident.incident_number,
            status=view.incident.status,
        )
    return TicketDetailResponse(
        ticket=TicketResponse.from_ticket(view.ticket),
        comments=[CommentResponse.from_comment(c) for c in view.comments],
        incident=incident,
        timeline=[TimelineEntryResponse.from_entry(e) for e in view.timeline],
        attachments=[
            AttachmentRow(id=a.id, original_name=a.original_name, uploaded_by=a.uploaded_by, created_at=a.created_at)
            for a in view.attachments
        ],
    )


@limiter.limit("30/minute")
@router.put("/tickets/{ticket_id}", response_model=TicketResponse)
def update_ticket(
    request: Request,
    ticket_id: int,
    body: TicketUpdate,
    actor: Actor = Depends(get_current_user),
) -> TicketResponse:
    """Apply only the fields present in the body. Resolved tickets accept only {"status": "closed"}."""
    fields = body.model_dump(exclude_unset=True, mode="json")
    ticket = request.app.state.tickets.update(actor, ticket_id, fields)
    return TicketResponse.from_ticket(ticket)


@limiter.limit("30/minute")
@router.delete("/tickets/{ticket_id}", status_code=204)
def delete_ticket(request: Request, ticket_id: int, actor: Actor = Depends(get_current_user)) -> Response:
    request.app.state.tickets.delete(actor, ticket_id)
    return Response(status_code=204)


@limiter.limit("30/minute")
@router.post("/tickets/{ticket_id}/comments", response_model=CommentResponse, status_code=201)
def add_comment(
    request: Request,
    ticket_id: int,
    body: CommentCreate,
    actor: Actor = Depends(get_current_user),
) -> CommentResponse:
    comment = request.app.state.tickets.add_comment(actor, ticket_id, body.comment, internal=body.is_internal)
    return CommentResponse.from_comment(comment)


@limiter.limit("10/minute")
@router.post("/tickets/{ticket_id}/convert", response_model=IncidentResponse, status_code=201)
def convert_ticket(
    request: Request,
    ticket_id: int,
    body: ConvertRequest,
    actor: Actor = Depends(get_current_user),
) -> IncidentResponse:
    """Convert the ticket into a security incident.

    A repeated conversion answers 409 already_converted with the existing
    incident's id and number in error.context. A conversion left half done
    answers 500 conversion_incomplete with context.partial = true.
    """
    incident = request.app.state.conversion.convert(
        actor,
        ticket_id,
        category=body.category,
        severity=body.severity.value,
        description=body.description,
        assignee_id=body.assignee_id,
    )
    return IncidentResponse.from_incident(incident)


@limiter.limit("10/minute")
@router.post("/tickets/{ticket_id}/convert/reconcile", response_model=IncidentResponse)
def reconcile_conversion(
    request: Request,
    ticket_id: int,
    actor: Actor = Depends(get_current_user),
) -> IncidentResponse:
    incident = request.app.state.conversion.reconcile(actor, ticket_id)
    return IncidentResponse.from_incident(incident)
