"""
api/routes/v1/audit.py -- Read-only access to the audit log (administrator).

Routes:
  GET /audit                                    -- latest entries (?limit=, max 500)
  GET /audit/{resource_type}/{resource_id}      -- full trail of one ticket, incident, SLA rule, or user account

There is deliberately no write, update, or delete route: entries are only
ever appended by desk/dispatcher.py.
"""

from typing import Literal

from fastapi import APIRouter, Depends, Query, Request

from api.limiter import limiter
from api.models import AuditEntryResponse
from auth.dependencies import get_current_user
from core.models import Actor

router = APIRouter(dependencies=[Depends(get_current_user)])


@limiter.limit("60/minute")
@router.get("/audit", response_model=list[AuditEntryResponse])
def list_audit(
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    actor: Actor = Depends(get_current_user),
) -> list[AuditEntryResponse]:
    entries = request.app.state.dispatcher.audit_log(actor, limit=limit)
    return [AuditEntryResponse.from_entry(e) for e in entries]


@limiter.limit("60/minute")
@router.get("/audit/{resource_type}/{resource_id}", response_model=list[AuditEntryResponse])
def audit_trail(
    request: Request,
    resource_type: Literal["ticket", "incident", "sla_rule", "user"],
    resource_id: int,
    actor: Actor = Depends(get_current_user),
) -> list[AuditEntryResponse]:
    entries = request.app.state.dispatcher.audit_trail(actor, resource_type, resource_id)
    return [AuditEntryResponse.from_entry(e) for e in entries]
