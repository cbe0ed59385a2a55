from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class IngestionResponse(BaseModel):
    success: bool = True
    source: str
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0


class IngestionLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_id: UUID
    source: str
    action: str
    status: str
    processed: int
    created: int
    updated: int
    skipped: int
    errors: int
    duration_ms: int
    error_message: str | None
    created_at: datetime
