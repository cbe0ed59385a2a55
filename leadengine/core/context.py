from __future__ import annotations

from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    company_id: str | None
    agent_id: str | None


def tenant_of(request: Request) -> str | None:
    context = getattr(request.state, "context", None)
    resolved = getattr(context, "company_id", None)
    # webhooks carry the tenant in the query string
    return resolved or request.query_params.get("company_id")


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None) or ""
        context = RequestContext(
            request_id=correlation_id,
            correlation_id=correlation_id,
            company_id=request.headers.get("x-company-id"),
            agent_id=request.headers.get("x-agent-id"),
        )
        request.state.context = context
        response = await call_next(request)
        response.headers["x-request-id"] = context.request_id
        if context.company_id:
            response.headers["x-company-id"] = context.company_id
        return response
