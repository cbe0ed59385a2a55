from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from leadengine import events
from leadengine.context import get_correlation_id
from leadengine.core.timeutils import ensure_utc, utcnow
from leadengine.directory.service import DirectoryService, directory_service
from leadengine.errors import DuplicateError, ValidationError
from leadengine.intake.dedup import Resolution
from leadengine.intake.models import IngestionLog, Lead
from leadengine.intake.normalizers import CanonicalLeadInput
from leadengine.tenants.models import TenantLeadSettings

logger = logging.getLogger("leadengine.intake.store")

UpsertOutcome = Literal["created", "updated", "skipped"]


@dataclass(slots=True)
class UpsertResult:
    outcome: UpsertOutcome
    lead_id: uuid.UUID
    lead: Lead | None = None


@dataclass(slots=True)
class IngestionCounts:
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0

    def add(self, outcome: str) -> None:
        self.processed += 1
        if outcome == "created":
            self.created += 1
        elif outcome == "updated":
            self.updated += 1
        elif outcome == "skipped":
            self.skipped += 1
        else:
            self.errors += 1


def clamp_received_at(provider_created_at: datetime | None, now: datetime) -> datetime:
    provider_created_at = ensure_utc(provider_created_at)
    if provider_created_at is None:
        return now
    if provider_created_at > now:
        logger.warning("future_timestamp_clamped", extra={"reason": provider_created_at.isoformat()})
        return now
    return provider_created_at


@dataclass(slots=True)
class LeadStore:
    directory: DirectoryService = field(default_factory=lambda: directory_service)

    def upsert(
        self,
        session: Session,
        company_id: uuid.UUID,
        lead_input: CanonicalLeadInput,
        resolution: Resolution,
        settings: TenantLeadSettings,
        now: datetime | None = None,
    ) -> UpsertResult:
        if resolution.action == "reject_invalid":
            raise ValidationError(
                resolution.reason or "invalid lead",
                error_type=resolution.error_type or "processing_error",
            )

        if resolution.action == "skip_duplicate" and resolution.existing_lead_id is not None:
            return self._skip(settings, resolution.existing_lead_id, resolution.reason)

        if resolution.action == "update" and resolution.existing_lead_id is not None:
            existing = session.get(Lead, resolution.existing_lead_id)
            if existing is not None:
                return self._update(session, existing, lead_input, resolution.normalized_phone)

        current_time = now or utcnow()
        lead = Lead(
            company_id=company_id,
            source=lead_input.source,
            external_id=lead_input.external_id or None,
            normalized_phone=resolution.normalized_phone or None,
            name=lead_input.name,
            phone=lead_input.phone,
            email=lead_input.email,
            campaign_name=lead_input.campaign_name or None,
            ad_set_name=lead_input.ad_set_name or None,
            ad_name=lead_input.ad_name or None,
            form_id=lead_input.form_id or None,
            form_name=lead_input.form_name or None,
            listing_reference=lead_input.listing_reference or None,
            message=lead_input.message or None,
            stage=self.directory.default_stage(session, company_id),
            assignment_priority="medium",
            is_new=True,
            received_at=clamp_received_at(lead_input.provider_created_at, current_time),
            source_metadata=self._metadata(lead_input),
            created_at=current_time,
        )
        session.add(lead)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            winner = self._find_by_external_id(session, company_id, lead_input)
            if winner is None:
                raise
            logger.info(
                "lead_upsert_conflict",
                extra={"company_id": str(company_id), "source": lead_input.source, "lead_id": str(winner.id)},
            )
            if settings.duplicate_action == "update":
                return self._update(session, winner, lead_input, resolution.normalized_phone)
            return self._skip(settings, winner.id, "external_id")

        session.refresh(lead)
        events.publish(
            {
                "event_type": "lead.created",
                "company_id": str(company_id),
                "lead_id": str(lead.id),
                "source": lead.source,
                "external_id": lead.external_id,
            }
        )
        return UpsertResult(outcome="created", lead_id=lead.id, lead=lead)

    def record_ingestion(
        self,
        session: Session,
        company_id: uuid.UUID,
        source: str,
        counts: IngestionCounts,
        *,
        action: str = "webhook",
        duration_ms: int = 0,
        error_message: str | None = None,
    ) -> IngestionLog:
        if error_message:
            status = "failed"
        elif counts.errors:
            status = "partial"
        else:
            status = "success"
        log_row = IngestionLog(
            company_id=company_id,
            source=source,
            action=action,
            status=status,
            processed=counts.processed,
            created=counts.created,
            updated=counts.updated,
            skipped=counts.skipped,
            errors=counts.errors,
            duration_ms=duration_ms,
            error_message=error_message[:1000] if error_message else None,
            correlation_id=get_correlation_id(),
        )
        session.add(log_row)
        session.commit()
        return log_row

    @staticmethod
    def _metadata(lead_input: CanonicalLeadInput) -> dict:
        metadata = dict(lead_input.metadata)
        if lead_input.agent_reference:
            metadata["agent_reference"] = lead_input.agent_reference
        return metadata

    @staticmethod
    def _find_by_external_id(session: Session, company_id: uuid.UUID, lead_input: CanonicalLeadInput) -> Lead | None:
        if not lead_input.external_id:
            return None
        return session.scalar(
            select(Lead).where(
                Lead.company_id == company_id,
                Lead.source == lead_input.source,
                Lead.external_id == lead_input.external_id,
            )
        )

    @staticmethod
    def _skip(settings: TenantLeadSettings, lead_id: uuid.UUID, reason: str | None) -> UpsertResult:
        if settings.duplicate_action == "reject":
            raise DuplicateError("duplicate lead rejected", details={"lead_id": str(lead_id), "matched_on": reason})
        return UpsertResult(outcome="skipped", lead_id=lead_id)

    def _update(
        self,
        session: Session,
        lead: Lead,
        lead_input: CanonicalLeadInput,
        normalized_phone: str,
    ) -> UpsertResult:
        for field_name in (
            "name",
            "phone",
            "email",
            "campaign_name",
            "ad_set_name",
            "ad_name",
            "form_id",
            "form_name",
            "listing_reference",
            "message",
        ):
            value = getattr(lead_input, field_name)
            if value:
                setattr(lead, field_name, value)
        if normalized_phone:
            lead.normalized_phone = normalized_phone
        lead.source_metadata = {**(lead.source_metadata or {}), **self._metadata(lead_input)}
        lead.row_version += 1
        session.commit()
        events.publish(
            {
                "event_type": "lead.updated",
                "company_id": str(lead.company_id),
                "lead_id": str(lead.id),
                "source": lead.source,
            }
        )
        return UpsertResult(outcome="updated", lead_id=lead.id, lead=lead)


lead_store = LeadStore()
