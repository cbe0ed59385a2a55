from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal

from sqlalchemy import select
from sqlalchemy.orm import Session

from leadengine.core.timeutils import utcnow
from leadengine.intake.models import Lead
from leadengine.intake.normalizers import CanonicalLeadInput
from leadengine.tenants.models import TenantLeadSettings

ResolutionAction = Literal["create", "update", "skip_duplicate", "reject_invalid"]

MIN_PHONE_DIGITS = 10
MAX_PHONE_DIGITS = 15

_NON_DIGITS = re.compile(r"\D+")


def normalize_phone(phone: str | None) -> str:
    """Digits only, with an international ``00`` prefix folded into the bare country code."""
    digits = _NON_DIGITS.sub("", phone or "")
    if digits.startswith("00"):
        digits = digits[2:]
    return digits


def is_valid_phone(normalized_phone: str) -> bool:
    return MIN_PHONE_DIGITS <= len(normalized_phone) <= MAX_PHONE_DIGITS


@dataclass(slots=True)
class Resolution:
    action: ResolutionAction
    normalized_phone: str
    existing_lead_id: uuid.UUID | None = None
    reason: str | None = None
    error_type: str | None = None


@dataclass(slots=True)
class DedupResolver:
    """Advisory classification; the unique constraint in the store stays authoritative."""

    def resolve(
        self,
        session: Session,
        company_id: uuid.UUID,
        lead: CanonicalLeadInput,
        settings: TenantLeadSettings,
        now: datetime | None = None,
    ) -> Resolution:
        normalized_phone = normalize_phone(lead.phone)

        if lead.external_id:
            existing_id = session.scalar(
                select(Lead.id).where(
                    Lead.company_id == company_id,
                    Lead.source == lead.source,
                    Lead.external_id == lead.external_id,
                )
            )
            if existing_id is not None:
                return self.duplicate_resolution(settings, normalized_phone, existing_id, "external_id")

        if normalized_phone and not is_valid_phone(normalized_phone):
            return Resolution(
                action="reject_invalid",
                normalized_phone=normalized_phone,
                reason=f"phone must contain {MIN_PHONE_DIGITS}-{MAX_PHONE_DIGITS} digits",
                error_type="invalid_phone",
            )
        if not normalized_phone and (lead.requires_phone or not lead.email):
            return Resolution(
                action="reject_invalid",
                normalized_phone="",
                reason="phone number is required",
                error_type="missing_phone",
            )

        if normalized_phone and (settings.phone_dedup_policy == "strict" or not lead.external_id):
            match_id = self.find_phone_match(session, company_id, lead, normalized_phone, settings, now)
            if match_id is not None:
                return Resolution(
                    action="skip_duplicate",
                    normalized_phone=normalized_phone,
                    existing_lead_id=match_id,
                    reason="phone",
                )

        return Resolution(action="create", normalized_phone=normalized_phone)

    @staticmethod
    def duplicate_resolution(
        settings: TenantLeadSettings,
        normalized_phone: str,
        existing_id: uuid.UUID,
        reason: str,
    ) -> Resolution:
        action: ResolutionAction = "update" if settings.duplicate_action == "update" else "skip_duplicate"
        return Resolution(action=action, normalized_phone=normalized_phone, existing_lead_id=existing_id, reason=reason)

    def find_phone_match(
        self,
        session: Session,
        company_id: uuid.UUID,
        lead: CanonicalLeadInput,
        normalized_phone: str,
        settings: TenantLeadSettings,
        now: datetime | None = None,
    ) -> uuid.UUID | None:
        window_start = (now or utcnow()) - timedelta(days=settings.duplicate_window_days)
        stmt = select(Lead.id).where(
            Lead.company_id == company_id,
            Lead.normalized_phone == normalized_phone,
            Lead.received_at >= window_start,
        )
        if settings.phone_dedup_scope == "source":
            stmt = stmt.where(Lead.source == lead.source)
        elif settings.phone_dedup_scope == "campaign":
            stmt = stmt.where(Lead.campaign_name == (lead.campaign_name or None))
        return session.scalar(stmt.order_by(Lead.received_at.desc()).limit(1))


dedup_resolver = DedupResolver()
