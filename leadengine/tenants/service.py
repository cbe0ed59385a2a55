from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, time, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from leadengine import audit
from leadengine.tenants.models import TenantLeadSettings
from leadengine.tenants.schemas import TenantSettingsRead, TenantSettingsUpdate

logger = logging.getLogger("leadengine.tenants")

DEFAULT_TENANT_SETTINGS: dict[str, Any] = {
    "default_assignment_method": "round_robin",
    "timezone": "UTC",
    "working_hours_start": "09:00",
    "working_hours_end": "18:00",
    "working_hours_enabled": False,
    "after_hours_action": "assign",
    "max_leads_per_day": 50,
    "duplicate_action": "skip",
    "phone_dedup_policy": "strict",
    "phone_dedup_scope": "tenant",
    "duplicate_window_days": 30,
    "sla_enabled": True,
    "sla_notify_minutes": 15,
    "escalation_enabled": True,
    "escalation_delay_minutes": 30,
}


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":", 1)
    return time(hour=int(hours), minute=int(minutes))


def is_within_working_hours(settings: TenantLeadSettings, now: datetime | None = None) -> bool:
    if not settings.working_hours_enabled:
        return True
    current = now or datetime.now(timezone.utc)
    try:
        zone = ZoneInfo(settings.timezone)
    except ZoneInfoNotFoundError:
        logger.warning("tenant_timezone_unknown", extra={"company_id": str(settings.company_id)})
        zone = ZoneInfo("UTC")
    local_time = current.astimezone(zone).time()
    start = _parse_hhmm(settings.working_hours_start)
    end = _parse_hhmm(settings.working_hours_end)
    if start <= end:
        return start <= local_time < end
    return local_time >= start or local_time < end


@dataclass(slots=True)
class TenantSettingsService:
    def get_settings(self, session: Session, company_id: uuid.UUID) -> TenantLeadSettings:
        row = session.get(TenantLeadSettings, company_id)
        if row is not None:
            return row
        return TenantLeadSettings(company_id=company_id, updated_at=datetime.now(timezone.utc), **DEFAULT_TENANT_SETTINGS)

    def read_settings(self, session: Session, company_id: uuid.UUID) -> TenantSettingsRead:
        return TenantSettingsRead.model_validate(self.get_settings(session, company_id))

    def update_settings(
        self,
        session: Session,
        actor_user_id: str,
        company_id: uuid.UUID,
        payload: TenantSettingsUpdate,
    ) -> TenantSettingsRead:
        changes = payload.model_dump(exclude_unset=True, exclude_none=True)
        row = session.get(TenantLeadSettings, company_id)
        before = TenantSettingsRead.model_validate(row).model_dump(mode="json") if row is not None else None
        if row is None:
            row = TenantLeadSettings(company_id=company_id, **{**DEFAULT_TENANT_SETTINGS, **changes})
            session.add(row)
        else:
            for field_name, value in changes.items():
                setattr(row, field_name, value)

        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            row = session.get(TenantLeadSettings, company_id)
            if row is None:
                raise
            for field_name, value in changes.items():
                setattr(row, field_name, value)
            session.commit()
        session.refresh(row)

        result = TenantSettingsRead.model_validate(row)
        audit.record(
            actor_user_id=actor_user_id,
            company_id=str(company_id),
            entity_type="tenant_lead_settings",
            entity_id=str(company_id),
            action="update",
            before=before,
            after=result.model_dump(mode="json"),
        )
        return result


tenant_settings_service = TenantSettingsService()
