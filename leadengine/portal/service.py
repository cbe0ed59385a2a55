from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from leadengine import audit
from leadengine.core.auth import ActorUser
from leadengine.core.timeutils import utcnow
from leadengine.errors import DuplicateError, NotFoundError, ValidationError
from leadengine.intake.normalizers import PORTAL_SOURCES, canonical_source, get_normalizer
from leadengine.intake.service import IntakeService, intake_service
from leadengine.intake.store import IngestionCounts, UpsertResult
from leadengine.metrics import observe_ingestion_batch, observe_lead_ingested, observe_portal_import_error
from leadengine.otel import get_tracer, tenant_span
from leadengine.portal.models import PortalImportError
from leadengine.portal.schemas import PortalImportErrorRead, PortalIngestionResponse, RetryImportResponse

logger = logging.getLogger("leadengine.portal")
tracer = get_tracer("leadengine.portal")

EVENT_TYPES = {
    "lead": "lead.created",
    "new_lead": "lead.created",
    "enquiry": "lead.created",
    "inquiry": "lead.created",
    "lead.created": "lead.created",
    "lead_created": "lead.created",
    "lead.updated": "lead.updated",
    "lead_updated": "lead.updated",
}


def resolve_portal(portal: str) -> str:
    name = canonical_source(portal)
    if name not in PORTAL_SOURCES:
        raise NotFoundError("unknown portal", details={"portal": portal})
    return name


def normalize_event_type(payload: Any) -> str:
    raw = ""
    if isinstance(payload, dict):
        raw = str(payload.get("event_type") or payload.get("event") or payload.get("type") or "")
    return EVENT_TYPES.get(raw.strip().lower(), "lead.created")


def classify_error(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        return exc.error_type
    if isinstance(exc, DuplicateError):
        return "duplicate"
    if isinstance(exc, IntegrityError) and "unique" in str(exc.orig).lower():
        return "duplicate"
    return "processing_error"


@dataclass(slots=True)
class PortalQuarantinePipeline:
    intake: IntakeService

    def ingest(
        self,
        session: Session,
        company_id: uuid.UUID,
        portal: str,
        payload: Any,
    ) -> PortalIngestionResponse:
        portal_name = resolve_portal(portal)
        event_type = normalize_event_type(payload)
        normalizer = get_normalizer(portal_name)
        counts = IngestionCounts()
        error_ids: list[uuid.UUID] = []
        started = time.perf_counter()

        with tenant_span(tracer, "portal.ingest", company_id, source=portal_name):
            settings = self.intake.tenants.get_settings(session, company_id)
            for record in normalizer.records(payload):
                try:
                    result = self._run(session, company_id, portal_name, record, settings)
                except Exception as exc:
                    error = self._quarantine(session, company_id, portal_name, record, exc)
                    error_ids.append(error.id)
                    counts.add("error")
                    observe_lead_ingested(portal_name, "error")
                    continue
                counts.add(result.outcome)
                observe_lead_ingested(portal_name, result.outcome)

            duration = time.perf_counter() - started
            observe_ingestion_batch(portal_name, duration)
            self.intake.store.record_ingestion(
                session,
                company_id,
                portal_name,
                counts,
                action="portal_webhook",
                duration_ms=int(duration * 1000),
            )

        logger.info(
            "portal_ingestion_completed",
            extra={
                "company_id": str(company_id),
                "source": portal_name,
                "event_name": event_type,
                "processed": counts.processed,
                "created_count": counts.created,
                "errors": counts.errors,
            },
        )
        return PortalIngestionResponse(
            portal=portal_name,
            event_type=event_type,
            processed=counts.processed,
            created=counts.created,
            updated=counts.updated,
            skipped=counts.skipped,
            errors=counts.errors,
            error_ids=error_ids,
        )

    def retry_import(
        self,
        session: Session,
        actor: ActorUser,
        error_id: uuid.UUID,
        lead_data: dict[str, Any] | None = None,
    ) -> RetryImportResponse:
        row = self._get_error(session, actor.company_id, error_id)
        if row.resolved:
            return RetryImportResponse(
                success=True,
                outcome="already_resolved",
                lead_id=row.lead_id,
                error=PortalImportErrorRead.model_validate(row),
            )
        if lead_data is not None:
            row.lead_data = lead_data
            session.commit()

        try:
            result = self._run(session, row.company_id, row.portal_name, row.lead_data, None)
        except Exception as exc:
            session.rollback()
            row = self._get_error(session, actor.company_id, error_id)
            row.retry_count += 1
            row.error_message = str(exc) or exc.__class__.__name__
            row.error_type = classify_error(exc)
            session.commit()
            session.refresh(row)
            logger.warning(
                "portal_retry_failed",
                extra={"company_id": str(row.company_id), "error_id": str(error_id), "error_type": row.error_type},
            )
            return RetryImportResponse(success=False, error=PortalImportErrorRead.model_validate(row))

        row = self._get_error(session, actor.company_id, error_id)
        before = PortalImportErrorRead.model_validate(row)
        row.retry_count += 1
        self._mark_resolved(row, actor.user_id, result.lead_id)
        session.commit()
        session.refresh(row)
        after = PortalImportErrorRead.model_validate(row)
        self._audit(actor, row.id, "retry", before, after)
        logger.info(
            "portal_retry_succeeded",
            extra={"company_id": str(row.company_id), "error_id": str(error_id), "lead_id": str(result.lead_id)},
        )
        return RetryImportResponse(success=True, outcome=result.outcome, lead_id=result.lead_id, error=after)

    def resolve_error(self, session: Session, actor: ActorUser, error_id: uuid.UUID) -> PortalImportErrorRead:
        row = self._get_error(session, actor.company_id, error_id)
        before = PortalImportErrorRead.model_validate(row)
        if not row.resolved:
            self._mark_resolved(row, actor.user_id, row.lead_id)
            session.commit()
            session.refresh(row)
        after = PortalImportErrorRead.model_validate(row)
        self._audit(actor, row.id, "resolve", before, after)
        return after

    def list_errors(
        self,
        session: Session,
        company_id: uuid.UUID,
        *,
        resolved: bool | None = None,
        portal: str | None = None,
        limit: int = 100,
    ) -> list[PortalImportErrorRead]:
        stmt = select(PortalImportError).where(PortalImportError.company_id == company_id)
        if resolved is not None:
            stmt = stmt.where(PortalImportError.resolved.is_(resolved))
        if portal is not None:
            stmt = stmt.where(PortalImportError.portal_name == canonical_source(portal))
        rows = session.scalars(stmt.order_by(PortalImportError.created_at.desc()).limit(limit))
        return [PortalImportErrorRead.model_validate(row) for row in rows]

    def auto_retry(self, session: Session, company_id: uuid.UUID, max_retries: int) -> int:
        """Retry unresolved processing errors below the retry ceiling; returns how many were resolved."""
        pending = session.scalars(
            select(PortalImportError.id)
            .where(
                PortalImportError.company_id == company_id,
                PortalImportError.resolved.is_(False),
                PortalImportError.error_type == "processing_error",
                PortalImportError.retry_count < max_retries,
            )
            .order_by(PortalImportError.created_at.asc())
        ).all()
        actor = ActorUser.system(company_id)
        resolved = 0
        for error_id in pending:
            if self.retry_import(session, actor, error_id).success:
                resolved += 1
        return resolved

    def _run(
        self,
        session: Session,
        company_id: uuid.UUID,
        portal_name: str,
        record: Any,
        settings: Any,
    ) -> UpsertResult:
        lead_input = get_normalizer(portal_name).normalize_record(record)
        return self.intake.process_lead(session, company_id, lead_input, settings)

    @staticmethod
    def _quarantine(
        session: Session,
        company_id: uuid.UUID,
        portal_name: str,
        record: Any,
        exc: Exception,
    ) -> PortalImportError:
        session.rollback()
        error_type = classify_error(exc)
        row = PortalImportError(
            company_id=company_id,
            portal_name=portal_name,
            lead_data=record,
            error_message=str(exc) or exc.__class__.__name__,
            error_type=error_type,
        )
        session.add(row)
        session.commit()
        observe_portal_import_error(portal_name, error_type)
        if error_type == "processing_error":
            logger.exception(
                "portal_lead_quarantined",
                exc_info=exc,
                extra={"company_id": str(company_id), "source": portal_name, "error_id": str(row.id)},
            )
        else:
            logger.warning(
                "portal_lead_quarantined",
                extra={
                    "company_id": str(company_id),
                    "source": portal_name,
                    "error_id": str(row.id),
                    "error_type": error_type,
                },
            )
        return row

    @staticmethod
    def _get_error(session: Session, company_id: uuid.UUID, error_id: uuid.UUID) -> PortalImportError:
        row = session.get(PortalImportError, error_id)
        if row is None or row.company_id != company_id:
            raise NotFoundError("import error not found", details={"error_id": str(error_id)})
        return row

    @staticmethod
    def _mark_resolved(row: PortalImportError, resolved_by: str, lead_id: uuid.UUID | None) -> None:
        row.resolved = True
        row.resolved_at = utcnow()
        row.resolved_by = resolved_by
        row.lead_id = lead_id

    @staticmethod
    def _audit(
        actor: ActorUser,
        error_id: uuid.UUID,
        action: str,
        before: PortalImportErrorRead,
        after: PortalImportErrorRead,
    ) -> None:
        audit.record(
            actor_user_id=actor.user_id,
            company_id=str(actor.company_id),
            entity_type="portal_import_error",
            entity_id=str(error_id),
            action=action,
            before=before.model_dump(mode="json"),
            after=after.model_dump(mode="json"),
        )


portal_pipeline = PortalQuarantinePipeline(intake=intake_service)
