from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from leadengine.api.deps import failure_response, get_current_user, require_permission
from leadengine.core.auth import ActorUser
from leadengine.core.database import get_db
from leadengine.errors import LeadEngineError
from leadengine.notifications.schemas import MarkAllReadResponse, NotificationRead
from leadengine.notifications.service import notification_fanout

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.get("", response_model=list[NotificationRead])
def list_notifications(
    request: Request,
    unread: bool = Query(default=False),
    mine: bool = Query(default=False),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[NotificationRead] | JSONResponse:
    try:
        require_permission(user, "notifications.read")
        return notification_fanout.list_notifications(
            db,
            user.company_id,
            unread_only=unread,
            recipient_agent_id=user.agent_id if mine else None,
            limit=limit,
        )
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "notification_list_failed")


@router.post("/read-all", response_model=MarkAllReadResponse)
def mark_all_as_read(
    request: Request,
    mine: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MarkAllReadResponse | JSONResponse:
    try:
        require_permission(user, "notifications.read")
        return notification_fanout.mark_all_as_read(db, user.company_id, user.agent_id if mine else None)
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "notification_read_all_failed")


@router.post("/{notification_id}/read", response_model=NotificationRead)
def mark_as_read(
    request: Request,
    notification_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> NotificationRead | JSONResponse:
    try:
        require_permission(user, "notifications.read")
        return notification_fanout.mark_as_read(db, user.company_id, notification_id)
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "notification_read_failed")
