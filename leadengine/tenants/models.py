from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from leadengine.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TenantLeadSettings(Base):
    __tablename__ = "tenant_lead_settings"

    company_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True)
    default_assignment_method: Mapped[str] = mapped_column(
        String(32), nullable=False, default="round_robin", server_default="round_robin"
    )
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC", server_default="UTC")
    working_hours_start: Mapped[str] = mapped_column(String(5), nullable=False, default="09:00", server_default="09:00")
    working_hours_end: Mapped[str] = mapped_column(String(5), nullable=False, default="18:00", server_default="18:00")
    working_hours_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    after_hours_action: Mapped[str] = mapped_column(String(32), nullable=False, default="assign", server_default="assign")
    max_leads_per_day: Mapped[int] = mapped_column(Integer, nullable=False, default=50, server_default="50")
    duplicate_action: Mapped[str] = mapped_column(String(32), nullable=False, default="skip", server_default="skip")
    phone_dedup_policy: Mapped[str] = mapped_column(String(16), nullable=False, default="strict", server_default="strict")
    phone_dedup_scope: Mapped[str] = mapped_column(String(16), nullable=False, default="tenant", server_default="tenant")
    duplicate_window_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30, server_default="30")
    sla_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    sla_notify_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=15, server_default="15")
    escalation_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    escalation_delay_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=30, server_default="30")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
