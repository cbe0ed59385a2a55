from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

AssignmentMethod = Literal["manual", "round_robin", "load_aware", "rules"]
AfterHoursAction = Literal["assign", "hold"]
DuplicateAction = Literal["skip", "update", "reject"]
PhoneDedupPolicy = Literal["strict", "loose"]
PhoneDedupScope = Literal["source", "campaign", "tenant"]

_HHMM = r"^([01]\d|2[0-3]):[0-5]\d$"


class TenantSettingsUpdate(BaseModel):
    default_assignment_method: AssignmentMethod | None = None
    timezone: str | None = Field(default=None, min_length=1, max_length=64)
    working_hours_start: str | None = Field(default=None, pattern=_HHMM)
    working_hours_end: str | None = Field(default=None, pattern=_HHMM)
    working_hours_enabled: bool | None = None
    after_hours_action: AfterHoursAction | None = None
    max_leads_per_day: int | None = Field(default=None, ge=1)
    duplicate_action: DuplicateAction | None = None
    phone_dedup_policy: PhoneDedupPolicy | None = None
    phone_dedup_scope: PhoneDedupScope | None = None
    duplicate_window_days: int | None = Field(default=None, ge=1)
    sla_enabled: bool | None = None
    sla_notify_minutes: int | None = Field(default=None, ge=1)
    escalation_enabled: bool | None = None
    escalation_delay_minutes: int | None = Field(default=None, ge=1)


class TenantSettingsRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    company_id: UUID
    default_assignment_method: AssignmentMethod
    timezone: str
    working_hours_start: str
    working_hours_end: str
    working_hours_enabled: bool
    after_hours_action: AfterHoursAction
    max_leads_per_day: int
    duplicate_action: DuplicateAction
    phone_dedup_policy: PhoneDedupPolicy
    phone_dedup_scope: PhoneDedupScope
    duplicate_window_days: int
    sla_enabled: bool
    sla_notify_minutes: int
    escalation_enabled: bool
    escalation_delay_minutes: int
    updated_at: datetime
