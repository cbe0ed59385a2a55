from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from leadengine.assignment.service import assignment_router
from leadengine.core.celery_app import celery_app
from leadengine.core.config import get_settings
from leadengine.core.database import SessionLocal
from leadengine.intake.models import Lead
from leadengine.metrics import observe_job
from leadengine.notifications.service import MAX_ESCALATION_LEVEL, sla_escalation_service
from leadengine.portal.models import PortalImportError
from leadengine.portal.service import portal_pipeline
from leadengine.scheduler.reassignment import auto_reassignment_scheduler, companies_with_active_rules
from leadengine.tenants.service import tenant_settings_service

logger = logging.getLogger("leadengine.tasks")


@contextmanager
def _session_scope() -> Iterator[Session]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def _for_each_company(
    task: str,
    companies: Callable[[Session], list[uuid.UUID]],
    unit: Callable[[Session, uuid.UUID], dict[str, Any]],
) -> dict[str, Any]:
    """Run one unit of work per tenant; a failing tenant is logged and does not stop the others."""
    started = time.perf_counter()
    results: dict[str, Any] = {}
    failures = 0
    with _session_scope() as session:
        for company_id in companies(session):
            try:
                results[str(company_id)] = unit(session, company_id)
            except Exception:
                session.rollback()
                failures += 1
                logger.exception("scheduled_task_failed", extra={"task": task, "company_id": str(company_id)})
    observe_job(task, "failed" if failures else "succeeded", time.perf_counter() - started)
    logger.info("scheduled_task_completed", extra={"task": task, "processed": len(results), "errors": failures})
    return {"companies": results, "failures": failures}


def _companies_with_assigned_leads(session: Session) -> list[uuid.UUID]:
    return list(
        session.scalars(
            select(Lead.company_id)
            .where(Lead.assigned_agent_id.is_not(None), Lead.escalation_level < MAX_ESCALATION_LEVEL)
            .distinct()
        )
    )


def _companies_with_pending_leads(session: Session) -> list[uuid.UUID]:
    return list(session.scalars(select(Lead.company_id).where(Lead.assigned_agent_id.is_(None)).distinct()))


def _companies_with_retryable_imports(session: Session) -> list[uuid.UUID]:
    return list(
        session.scalars(
            select(PortalImportError.company_id)
            .where(
                PortalImportError.resolved.is_(False),
                PortalImportError.error_type == "processing_error",
                PortalImportError.retry_count < get_settings().portal_max_auto_retries,
            )
            .distinct()
        )
    )


def _reassign(session: Session, company_id: uuid.UUID) -> dict[str, Any]:
    result = auto_reassignment_scheduler.run_pass(session, company_id)
    return {
        "lease_acquired": result.lease_acquired,
        "reassigned": result.reassigned,
        "skipped": result.skipped,
        "failed": result.failed,
    }


def _escalate(session: Session, company_id: uuid.UUID) -> dict[str, Any]:
    settings = tenant_settings_service.get_settings(session, company_id)
    return sla_escalation_service.run_sweep(session, company_id, settings).model_dump()


def _retry_imports(session: Session, company_id: uuid.UUID) -> dict[str, Any]:
    resolved = portal_pipeline.auto_retry(session, company_id, get_settings().portal_max_auto_retries)
    return {"resolved": resolved}


def _drain(session: Session, company_id: uuid.UUID) -> dict[str, Any]:
    return {"assigned": assignment_router.drain_pending_queue(session, company_id)}


@celery_app.task(name="leadengine.tasks.run_auto_reassignment")
def run_auto_reassignment() -> dict[str, Any]:
    return _for_each_company("run_auto_reassignment", companies_with_active_rules, _reassign)


@celery_app.task(name="leadengine.tasks.run_sla_escalation")
def run_sla_escalation() -> dict[str, Any]:
    return _for_each_company("run_sla_escalation", _companies_with_assigned_leads, _escalate)


@celery_app.task(name="leadengine.tasks.retry_portal_imports")
def retry_portal_imports() -> dict[str, Any]:
    return _for_each_company("retry_portal_imports", _companies_with_retryable_imports, _retry_imports)


@celery_app.task(name="leadengine.tasks.drain_pending_assignments")
def drain_pending_assignments() -> dict[str, Any]:
    return _for_each_company("drain_pending_assignments", _companies_with_pending_leads, _drain)
