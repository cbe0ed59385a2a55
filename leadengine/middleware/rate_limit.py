from __future__ import annotations

import logging
import math
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from leadengine.context import get_correlation_id
from leadengine.core.config import get_settings

logger = logging.getLogger("leadengine.request")

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
# webhooks under /api/intake and /api/portals are never throttled
GUARDED_PREFIXES = ("/api/leads", "/api/agents", "/api/assignment")
WINDOW_SECONDS = 60

BucketKey = tuple[str, str, str]


@dataclass
class _Bucket:
    tokens: float
    refilled_at: float


class MutationBudget:
    """Per caller, tenant and route group token bucket refilled continuously over a minute."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[BucketKey, _Bucket] = {}

    def spend(self, key: BucketKey, per_minute: int) -> int:
        """Consume one token; returns 0 when allowed, otherwise the seconds until the next token."""
        if per_minute <= 0:
            return WINDOW_SECONDS

        now = time.monotonic()
        rate = per_minute / float(WINDOW_SECONDS)
        with self._lock:
            bucket = self._buckets.setdefault(key, _Bucket(tokens=float(per_minute), refilled_at=now))
            bucket.tokens = min(float(per_minute), bucket.tokens + max(0.0, now - bucket.refilled_at) * rate)
            bucket.refilled_at = now
            if bucket.tokens < 1.0:
                return max(1, math.ceil((1.0 - bucket.tokens) / rate))
            bucket.tokens -= 1.0
            return 0

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_budget = MutationBudget()


def _is_guarded(request: Request) -> bool:
    return request.method.upper() in MUTATING_METHODS and request.url.path.startswith(GUARDED_PREFIXES)


def _route_group(path: str) -> str:
    parts = [part for part in path.split("/") if part]
    return parts[1] if len(parts) > 1 else "leads"


def _caller(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Bearer "):
        return "anonymous"

    settings = get_settings()
    try:
        claims: dict[str, Any] = jwt.decode(
            auth_header.removeprefix("Bearer "), settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
    except JWTError:
        return "anonymous"
    subject = claims.get("sub")
    return str(subject) if subject is not None else "anonymous"


def _limited_response(request: Request, retry_after: int) -> JSONResponse:
    correlation_id = (
        get_correlation_id()
        or getattr(request.state, "correlation_id", None)
        or request.headers.get("x-correlation-id")
        or str(uuid.uuid4())
    )
    response = JSONResponse(
        status_code=429,
        content={
            "code": "RATE_LIMITED",
            "message": "Too many requests",
            "details": {"retry_after_seconds": retry_after},
            "correlation_id": correlation_id,
        },
    )
    response.headers["Retry-After"] = str(retry_after)
    response.headers["X-Correlation-Id"] = correlation_id
    return response


class LeadMutationRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled or not _is_guarded(request):
            return await call_next(request)

        key = (_caller(request), request.headers.get("x-company-id", "-"), _route_group(request.url.path))
        retry_after = _budget.spend(key, settings.rate_limit_lead_mutations_per_minute)
        if retry_after == 0:
            return await call_next(request)

        logger.warning(
            "rate_limited",
            extra={"method": request.method, "path": request.url.path, "company_id": key[1], "reason": key[2]},
        )
        return _limited_response(request, retry_after)


def reset_rate_limiter() -> None:
    _budget.clear()
