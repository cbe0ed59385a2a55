from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from leadengine.api.deps import failure_response, get_current_user, require_permission
from leadengine.core.auth import ActorUser
from leadengine.core.database import get_db
from leadengine.errors import LeadEngineError
from leadengine.tenants.schemas import TenantSettingsRead, TenantSettingsUpdate
from leadengine.tenants.service import tenant_settings_service

router = APIRouter(prefix="/api/tenant-settings", tags=["tenant_settings"])


@router.get("", response_model=TenantSettingsRead)
def get_tenant_settings(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TenantSettingsRead | JSONResponse:
    try:
        require_permission(user, "tenant.settings.read")
        return tenant_settings_service.read_settings(db, user.company_id)
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "tenant_settings_get_failed")


@router.put("", response_model=TenantSettingsRead)
def put_tenant_settings(
    request: Request,
    dto: TenantSettingsUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TenantSettingsRead | JSONResponse:
    try:
        require_permission(user, "tenant.settings.write")
        return tenant_settings_service.update_settings(db, user.user_id, user.company_id, dto)
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "tenant_settings_update_failed")
