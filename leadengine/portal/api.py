from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from leadengine.api.deps import error_response, failure_response, get_current_user, require_permission
from leadengine.core.auth import ActorUser
from leadengine.core.database import get_db
from leadengine.errors import LeadEngineError
from leadengine.intake.service import intake_service
from leadengine.portal.schemas import (
    PortalImportErrorRead,
    PortalIngestionResponse,
    RetryImportRequest,
    RetryImportResponse,
)
from leadengine.portal.service import portal_pipeline, resolve_portal

router = APIRouter(prefix="/api/portals", tags=["portals"])


@router.post("/{portal}/webhook", response_model=PortalIngestionResponse)
def receive_portal_webhook(
    request: Request,
    portal: str,
    company_id: uuid.UUID = Query(),
    payload: Any = Body(default=None),
    webhook_secret: str | None = Header(default=None, alias="x-webhook-secret"),
    db: Session = Depends(get_db),
) -> PortalIngestionResponse | JSONResponse:
    if not isinstance(payload, (dict, list)):
        return error_response(
            request,
            status_code=status.HTTP_400_BAD_REQUEST,
            code="invalid_payload",
            message="payload must be a JSON object or array",
        )
    try:
        portal_name = resolve_portal(portal)
        intake_service.authenticate_source(db, company_id, portal_name, webhook_secret)
        return portal_pipeline.ingest(db, company_id, portal_name, payload)
    except LeadEngineError as exc:
        return failure_response(request, exc, "portal_ingestion_failed")


@router.get("/import-errors", response_model=list[PortalImportErrorRead])
def list_import_errors(
    request: Request,
    resolved: bool | None = Query(default=None),
    portal: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PortalImportErrorRead] | JSONResponse:
    try:
        require_permission(user, "portals.read")
        return portal_pipeline.list_errors(db, user.company_id, resolved=resolved, portal=portal, limit=limit)
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "import_error_list_failed")


@router.post("/import-errors/{error_id}/retry", response_model=RetryImportResponse)
def retry_import_error(
    request: Request,
    error_id: uuid.UUID,
    dto: RetryImportRequest | None = None,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RetryImportResponse | JSONResponse:
    try:
        require_permission(user, "portals.write")
        lead_data = dto.lead_data if dto is not None else None
        return portal_pipeline.retry_import(db, user, error_id, lead_data)
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "import_error_retry_failed")


@router.post("/import-errors/{error_id}/resolve", response_model=PortalImportErrorRead)
def resolve_import_error(
    request: Request,
    error_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PortalImportErrorRead | JSONResponse:
    try:
        require_permission(user, "portals.write")
        return portal_pipeline.resolve_error(db, user, error_id)
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "import_error_resolve_failed")
