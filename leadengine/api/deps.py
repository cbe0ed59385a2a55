from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from leadengine.context import get_correlation_id
from leadengine.core.auth import ActorUser, AuthUser, get_current_user as get_auth_user
from leadengine.errors import LeadEngineError

logger = logging.getLogger("leadengine.api")

WILDCARD_PERMISSIONS = {"*", "admin"}


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def failure_response(request: Request, exc: Exception, code: str) -> JSONResponse:
    """Translate a domain error or HTTPException raised inside a route into the error envelope."""
    if isinstance(exc, LeadEngineError):
        if exc.status_code >= 500:
            logger.warning("dependency_unavailable", extra={"error": exc.message})
        return error_response(
            request,
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.details,
        )
    if isinstance(exc, HTTPException):
        return error_response(
            request,
            status_code=exc.status_code,
            code=code,
            message=str(exc.detail),
            details=exc.detail,
        )
    raise exc


def _resolve_company_id(request: Request, auth_user: AuthUser) -> uuid.UUID:
    context = getattr(request.state, "context", None)
    raw = getattr(context, "company_id", None) or request.headers.get("x-company-id") or auth_user.company_id
    if not raw:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="company_id is required")
    try:
        company_id = uuid.UUID(str(raw))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="company_id must be a UUID") from exc
    if auth_user.company_id and auth_user.company_id != str(company_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="company mismatch")
    return company_id


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    company_id = _resolve_company_id(request, auth_user)

    agent_id: uuid.UUID | None = None
    agent_header = request.headers.get("x-agent-id")
    if agent_header:
        try:
            agent_id = uuid.UUID(agent_header)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="x-agent-id must be a UUID") from exc

    context = getattr(request.state, "context", None)
    if context is not None:
        context.company_id = str(company_id)

    return ActorUser(
        user_id=auth_user.sub,
        company_id=company_id,
        permissions=set(auth_user.roles),
        agent_id=agent_id,
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if user.permissions & WILDCARD_PERMISSIONS:
        return
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")
