"""
api/routes/v1/sla.py -- SLA rule administration and breach report.

Routes:
  GET    /sla              -- list rules (staff)
  POST   /sla              -- create a rule (administrator)
  GET    /sla/breaches     -- open tickets past their due date (staff)
  PUT    /sla/{rule_id}    -- update a rule (administrator)
  DELETE /sla/{rule_id}    -- delete a rule (administrator)

A second active rule for the same priority answers 409 conflict.
"""

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import limiter
from api.models import SlaRuleCreate, SlaRuleResponse, SlaRuleUpdate, TicketResponse
from auth.dependencies import get_current_user
from core.models import Actor

router = APIRouter(dependencies=[Depends(get_current_user)])


@limiter.limit("60/minute")
@router.get("/sla", response_model=list[SlaRuleResponse])
def list_rules(request: Request, actor: Actor = Depends(get_current_user)) -> list[SlaRuleResponse]:
    return [SlaRuleResponse.from_rule(r) for r in request.app.state.sla_admin.list(actor)]


@limiter.limit("30/minute")
@router.post("/sla", response_model=SlaRuleResponse, status_code=201)
def create_rule(
    request: Request,
    body: SlaRuleCreate,
    actor: Actor = Depends(get_current_user),
) -> SlaRuleResponse:
    rule = request.app.state.sla_admin.create(actor, body.model_dump(mode="json"))
    return SlaRuleResponse.from_rule(rule)


@limiter.limit("60/minute")
@router.get("/sla/breaches", response_model=list[TicketResponse])
def list_breaches(request: Request, actor: Actor = Depends(get_current_user)) -> list[TicketResponse]:
    """Open tickets whose sla_due has passed, most overdue first."""
    return [TicketResponse.from_ticket(t) for t in request.app.state.sla_admin.breaches(actor)]


@limiter.limit("30/minute")
@router.put("/sla/{rule_id}", response_model=SlaRuleResponse)
def update_rule(
    request: Request,
    rule_id: int,
    body: SlaRuleUpdate,
    actor: Actor = Depends(get_current_user),
) -> SlaRuleResponse:
    rule = request.app.state.sla_admin.update(actor, rule_id, body.model_dump(exclude_unset=True, mode="json"))
    return SlaRuleResponse.from_rule(rule)


@limiter.limit("30/minute")
@router.delete("/sla/{rule_id}", status_code=204)
def delete_rule(request: Request, rule_id: int, actor: Actor = Depends(get_current_user)) -> Response:
    request.app.state.sla_admin.delete(actor, rule_id)
    return Response(status_code=204)
