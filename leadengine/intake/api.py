from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session

from leadengine.api.deps import error_response, failure_response, get_current_user, require_permission
from leadengine.core.auth import ActorUser
from leadengine.core.database import get_db
from leadengine.errors import LeadEngineError
from leadengine.intake.schemas import IngestionLogRead, IngestionResponse
from leadengine.intake.service import intake_service

router = APIRouter(prefix="/api/intake", tags=["intake"])


@router.get("/{source}/webhook", response_model=None)
def verify_webhook(
    request: Request,
    source: str,
    mode: str | None = Query(default=None, alias="hub.mode"),
    verify_token: str | None = Query(default=None, alias="hub.verify_token"),
    challenge: str | None = Query(default=None, alias="hub.challenge"),
    company_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
) -> PlainTextResponse | JSONResponse:
    try:
        accepted = intake_service.verify_subscription(db, source, mode, verify_token, challenge, company_id)
        return PlainTextResponse(accepted)
    except LeadEngineError as exc:
        return failure_response(request, exc, "webhook_verification_failed")


@router.post("/{source}/webhook", response_model=IngestionResponse)
def receive_webhook(
    request: Request,
    source: str,
    company_id: uuid.UUID = Query(),
    payload: Any = Body(default=None),
    webhook_secret: str | None = Header(default=None, alias="x-webhook-secret"),
    db: Session = Depends(get_db),
) -> IngestionResponse | JSONResponse:
    if not isinstance(payload, (dict, list)):
        return error_response(
            request,
            status_code=status.HTTP_400_BAD_REQUEST,
            code="invalid_payload",
            message="payload must be a JSON object or array",
        )
    try:
        intake_service.authenticate_source(db, company_id, source, webhook_secret)
        return intake_service.ingest(db, company_id, source, payload)
    except LeadEngineError as exc:
        return failure_response(request, exc, "webhook_ingestion_failed")


@router.get("/logs", response_model=list[IngestionLogRead])
def list_ingestion_logs(
    request: Request,
    source: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[IngestionLogRead] | JSONResponse:
    try:
        require_permission(user, "leads.read")
        return intake_service.list_ingestion_logs(db, user.company_id, source=source, limit=limit)
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "ingestion_log_list_failed")
