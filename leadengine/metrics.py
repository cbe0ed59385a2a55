from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

lead_ingestion_total = Counter(
    "lead_ingestion_total",
    "Total ingested leads by source and outcome",
    ["source", "outcome"],
)

lead_ingestion_batch_duration_seconds = Histogram(
    "lead_ingestion_batch_duration_seconds",
    "Ingestion batch duration in seconds",
    ["source"],
)

lead_assignments_total = Counter(
    "lead_assignments_total",
    "Total lead assignments by reason",
    ["reason"],
)

lead_assignment_failures_total = Counter(
    "lead_assignment_failures_total",
    "Total failed automatic assignments by error code",
    ["code"],
)

scheduler_jobs_total = Counter(
    "scheduler_jobs_total",
    "Total scheduler passes by job and status",
    ["job_type", "status"],
)

scheduler_job_duration_seconds = Histogram(
    "scheduler_job_duration_seconds",
    "Scheduler pass duration in seconds",
    ["job_type"],
)

portal_import_errors_total = Counter(
    "portal_import_errors_total",
    "Total quarantined portal leads by portal and error type",
    ["portal", "error_type"],
)

assignment_notifications_total = Counter(
    "assignment_notifications_total",
    "Total assignment notifications by type",
    ["notification_type"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    if path in {"/api/intake/{source}/webhook", "/api/portals/{portal}/webhook"}:
        return path
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_lead_ingested(source: str, outcome: str) -> None:
    lead_ingestion_total.labels(source=source, outcome=outcome).inc()


def observe_ingestion_batch(source: str, duration: float) -> None:
    lead_ingestion_batch_duration_seconds.labels(source=source).observe(duration)


def observe_assignment(reason: str, count: int = 1) -> None:
    if count > 0:
        lead_assignments_total.labels(reason=reason).inc(count)


def observe_assignment_failure(code: str) -> None:
    lead_assignment_failures_total.labels(code=code).inc()


def observe_job(job_type: str, status: str, duration: float) -> None:
    scheduler_jobs_total.labels(job_type=job_type, status=status).inc()
    scheduler_job_duration_seconds.labels(job_type=job_type).observe(duration)


def observe_portal_import_error(portal: str, error_type: str) -> None:
    portal_import_errors_total.labels(portal=portal, error_type=error_type).inc()


def observe_notification(notification_type: str) -> None:
    assignment_notifications_total.labels(notification_type=notification_type).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
