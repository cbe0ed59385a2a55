from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_id: UUID
    lead_id: UUID | None
    recipient_agent_id: UUID | None
    recipient_role: str | None
    notification_type: str
    title: str
    message: str
    is_read: bool
    read_at: datetime | None
    created_at: datetime


class MarkAllReadResponse(BaseModel):
    updated: int


class SlaSweepResult(BaseModel):
    warnings: int = 0
    team_lead_escalations: int = 0
    manager_escalations: int = 0
