"""
api/routes/v1/notifications.py -- Polling endpoints for in-app notifications.

Routes:
  GET /notifications                 -- latest 50 for the caller (?unread_only=true)
  GET /notifications/unread-count    -- badge counter
  PUT /notifications/read-all        -- mark every unread notification read
  PUT /notifications/{id}/read       -- mark one read (owner only)

Every query is scoped to the calling actor; another user's notification id
answers 404, never 403, so ids of other users' notifications stay hidden.
"""

from fastapi import APIRouter, Depends, Query, Request

from api.limiter import limiter
from api.models import NotificationResponse, UnreadCountResponse
from auth.dependencies import get_current_user
from core.models import Actor

router = APIRouter(dependencies=[Depends(get_current_user)])


@limiter.limit("120/minute")
@router.get("/notifications", response_model=list[NotificationResponse])
def list_notifications(
    request: Request,
    unread_only: bool = False,
    limit: int = Query(default=50, ge=1, le=200),
    actor: Actor = Depends(get_current_user),
) -> list[NotificationResponse]:
    notifications = request.app.state.dispatcher.notifications_for(actor, unread_only=unread_only, limit=limit)
    return [NotificationResponse.from_notification(n) for n in notifications]


@limiter.limit("120/minute")
@router.get("/notifications/unread-count", response_model=UnreadCountResponse)
def unread_count(request: Request, actor: Actor = Depends(get_current_user)) -> UnreadCountResponse:
    return UnreadCountResponse(count=request.app.state.dispatcher.unread_count(actor))


# Registered before /notifications/{notification_id}/read to keep the literal path unambiguous.
@limiter.limit("30/minute")
@router.put("/notifications/read-all")
def mark_all_read(request: Request, actor: Actor = Depends(get_current_user)) -> dict:
    return {"updated": request.app.state.dispatcher.mark_all_read(actor)}


@limiter.limit("120/minute")
@router.put("/notifications/{notification_id}/read")
def mark_read(request: Request, notification_id: int, actor: Actor = Depends(get_current_user)) -> dict:
    request.app.state.dispatcher.mark_read(actor, notification_id)
    return {"id": notification_id, "is_read": True}
