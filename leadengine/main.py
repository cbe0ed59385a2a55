from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from leadengine.api.routes import router as api_router
from leadengine.core.config import get_settings
from leadengine.core.context import RequestContextMiddleware
from leadengine.core.events import InternalEvent, event_bus
from leadengine.logging import configure_logging
from leadengine.middleware.correlation_id import CorrelationIdMiddleware
from leadengine.middleware.rate_limit import LeadMutationRateLimitMiddleware
from leadengine.middleware.request_logging import RequestLoggingMiddleware
from leadengine.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("leadengine.lifecycle")
_subscriptions_registered = False

_lead_event_types = [
    "lead.created",
    "lead.updated",
    "lead.assigned",
    "assignment.notification.created",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name, "event_payload": event.payload})


def _on_lead_event(event: InternalEvent) -> None:
    payload = event.payload if isinstance(event.payload, dict) else {}
    logger.debug(
        "domain_event",
        extra={
            "event_name": event.name,
            "company_id": payload.get("company_id"),
            "lead_id": payload.get("lead_id"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _lead_event_types:
            event_bus.subscribe(event_name, _on_lead_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Lead Engine API", version="0.1.0", lifespan=lifespan)
app.add_middleware(LeadMutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
