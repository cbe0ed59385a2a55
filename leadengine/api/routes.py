from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from leadengine.assignment.api import agents_router, leads_router, rules_router
from leadengine.core.auth import AuthUser, get_current_user
from leadengine.core.config import get_settings
from leadengine.intake.api import router as intake_router
from leadengine.metrics import generate_metrics_payload, metrics_content_type
from leadengine.notifications.api import router as notifications_router
from leadengine.portal.api import router as portals_router
from leadengine.tenants.api import router as tenant_settings_router

router = APIRouter()
router.include_router(intake_router)
router.include_router(portals_router)
router.include_router(leads_router)
router.include_router(agents_router)
router.include_router(rules_router)
router.include_router(notifications_router)
router.include_router(tenant_settings_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str] | None]:
    return {
        "sub": user.sub,
        "roles": user.roles,
        "company_id": user.company_id,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
