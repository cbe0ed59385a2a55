from __future__ import annotations

import hmac
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from leadengine.assignment.service import AssignmentRouter, assignment_router
from leadengine.core.config import get_settings
from leadengine.core.timeutils import utcnow
from leadengine.errors import (
    AuthenticationError,
    DuplicateError,
    ForbiddenError,
    LeadEngineError,
    NotFoundError,
    ValidationError,
)
from leadengine.intake.dedup import DedupResolver, dedup_resolver
from leadengine.intake.models import IngestionLog, LeadSource
from leadengine.intake.normalizers import CanonicalLeadInput, canonical_source, get_normalizer
from leadengine.intake.schemas import IngestionLogRead, IngestionResponse
from leadengine.intake.store import IngestionCounts, LeadStore, UpsertResult, lead_store
from leadengine.metrics import observe_ingestion_batch, observe_lead_ingested
from leadengine.otel import get_tracer, tenant_span
from leadengine.tenants.models import TenantLeadSettings
from leadengine.tenants.service import TenantSettingsService, tenant_settings_service

logger = logging.getLogger("leadengine.intake")
tracer = get_tracer("leadengine.intake")


@dataclass(slots=True)
class IntakeService:
    resolver: DedupResolver
    store: LeadStore
    router: AssignmentRouter
    tenants: TenantSettingsService

    def verify_subscription(
        self,
        session: Session,
        source: str,
        mode: str | None,
        verify_token: str | None,
        challenge: str | None,
        company_id: uuid.UUID | None = None,
    ) -> str:
        if mode != "subscribe" or not verify_token or challenge is None:
            raise ForbiddenError("verification failed")

        configured = get_settings().webhook_verify_token
        if configured and hmac.compare_digest(configured, verify_token):
            return challenge

        stmt = select(LeadSource.verify_token).where(
            LeadSource.source_name == canonical_source(source),
            LeadSource.verify_token.is_not(None),
        )
        if company_id is not None:
            stmt = stmt.where(LeadSource.company_id == company_id)
        for token in session.scalars(stmt):
            if hmac.compare_digest(token, verify_token):
                return challenge
        raise ForbiddenError("verification failed")

    def authenticate_source(
        self,
        session: Session,
        company_id: uuid.UUID,
        source: str,
        webhook_secret: str | None,
    ) -> LeadSource:
        lead_source = session.scalar(
            select(LeadSource).where(
                LeadSource.company_id == company_id,
                LeadSource.source_name == canonical_source(source),
            )
        )
        if lead_source is None or lead_source.status != "connected":
            raise NotFoundError("lead source not connected", details={"source": canonical_source(source)})
        if lead_source.webhook_secret:
            if not webhook_secret or not hmac.compare_digest(lead_source.webhook_secret, webhook_secret):
                raise AuthenticationError("invalid webhook secret")
        return lead_source

    def process_lead(
        self,
        session: Session,
        company_id: uuid.UUID,
        lead_input: CanonicalLeadInput,
        settings: TenantLeadSettings | None = None,
        now: datetime | None = None,
    ) -> UpsertResult:
        """Resolve, store and (for new leads) route one canonical lead."""
        tenant_settings = settings or self.tenants.get_settings(session, company_id)
        resolution = self.resolver.resolve(session, company_id, lead_input, tenant_settings, now=now)
        result = self.store.upsert(session, company_id, lead_input, resolution, tenant_settings, now=now)
        if result.outcome == "created":
            try:
                self.router.route_new_lead(session, company_id, result.lead_id, now=now)
            except (LeadEngineError, SQLAlchemyError) as exc:
                session.rollback()
                logger.warning(
                    "lead_routing_failed",
                    extra={"company_id": str(company_id), "lead_id": str(result.lead_id), "error": str(exc)[:500]},
                )
        return result

    def ingest(
        self,
        session: Session,
        company_id: uuid.UUID,
        source: str,
        payload: Any,
        *,
        action: str = "webhook",
    ) -> IngestionResponse:
        canonical = canonical_source(source)
        normalizer = get_normalizer(canonical)
        counts = IngestionCounts()
        started = time.perf_counter()
        batch_error: str | None = None

        with tenant_span(tracer, "intake.ingest", company_id, source=canonical) as span:
            try:
                settings = self.tenants.get_settings(session, company_id)
                for lead_input in normalizer.normalize(payload):
                    outcome = self._process_safely(session, company_id, lead_input, settings)
                    counts.add(outcome)
                    observe_lead_ingested(canonical, outcome)
                self._touch_source(session, company_id, canonical, counts.created)
            except SQLAlchemyError as exc:
                session.rollback()
                batch_error = str(exc)
                logger.exception("ingestion_batch_failed", extra={"company_id": str(company_id), "source": canonical})
            finally:
                duration = time.perf_counter() - started
                observe_ingestion_batch(canonical, duration)
                self.store.record_ingestion(
                    session,
                    company_id,
                    canonical,
                    counts,
                    action=action,
                    duration_ms=int(duration * 1000),
                    error_message=batch_error,
                )
            span.set_attribute("processed", counts.processed)

        logger.info(
            "ingestion_completed",
            extra={
                "company_id": str(company_id),
                "source": canonical,
                "processed": counts.processed,
                "created_count": counts.created,
                "updated": counts.updated,
                "skipped": counts.skipped,
                "errors": counts.errors,
            },
        )
        return IngestionResponse(
            success=batch_error is None,
            source=canonical,
            processed=counts.processed,
            created=counts.created,
            updated=counts.updated,
            skipped=counts.skipped,
            errors=counts.errors,
        )

    def list_ingestion_logs(
        self,
        session: Session,
        company_id: uuid.UUID,
        source: str | None = None,
        limit: int = 50,
    ) -> list[IngestionLogRead]:
        stmt = select(IngestionLog).where(IngestionLog.company_id == company_id)
        if source is not None:
            stmt = stmt.where(IngestionLog.source == canonical_source(source))
        rows = session.scalars(stmt.order_by(IngestionLog.created_at.desc()).limit(limit))
        return [IngestionLogRead.model_validate(row) for row in rows]

    def _process_safely(
        self,
        session: Session,
        company_id: uuid.UUID,
        lead_input: CanonicalLeadInput,
        settings: TenantLeadSettings,
    ) -> str:
        try:
            return self.process_lead(session, company_id, lead_input, settings).outcome
        except DuplicateError:
            logger.info("lead_duplicate_rejected", extra={"company_id": str(company_id), "source": lead_input.source})
            return "skipped"
        except ValidationError as exc:
            logger.warning(
                "lead_rejected",
                extra={"company_id": str(company_id), "source": lead_input.source, "error_type": exc.error_type},
            )
            return "error"
        except (LeadEngineError, SQLAlchemyError) as exc:
            session.rollback()
            logger.exception(
                "lead_processing_failed",
                extra={"company_id": str(company_id), "source": lead_input.source, "error": str(exc)},
            )
            return "error"

    @staticmethod
    def _touch_source(session: Session, company_id: uuid.UUID, source: str, created: int) -> None:
        lead_source = session.scalar(
            select(LeadSource).where(LeadSource.company_id == company_id, LeadSource.source_name == source)
        )
        if lead_source is None:
            return
        lead_source.total_leads_fetched += created
        lead_source.last_received_at = utcnow()
        session.commit()


intake_service = IntakeService(
    resolver=dedup_resolver,
    store=lead_store,
    router=assignment_router,
    tenants=tenant_settings_service,
)
