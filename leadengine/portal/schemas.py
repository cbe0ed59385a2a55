from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict

ImportErrorType = Literal["invalid_phone", "missing_phone", "duplicate", "processing_error"]


class PortalImportErrorRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_id: UUID
    portal_name: str
    lead_data: Any
    error_message: str
    error_type: ImportErrorType
    retry_count: int
    resolved: bool
    resolved_at: datetime | None
    resolved_by: str | None
    lead_id: UUID | None
    created_at: datetime


class PortalIngestionResponse(BaseModel):
    success: bool = True
    portal: str
    event_type: str
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    error_ids: list[UUID] = []


class RetryImportRequest(BaseModel):
    lead_data: dict[str, Any] | None = None


class RetryImportResponse(BaseModel):
    success: bool
    outcome: str | None = None
    lead_id: UUID | None = None
    error: PortalImportErrorRead
