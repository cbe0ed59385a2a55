from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

ChangeReason = Literal[
    "manual", "round_robin", "load_balanced", "rule_match", "portal_mapping", "auto_reassign", "bulk", "undo"
]
SelectionPolicy = Literal["round_robin", "load_aware"]
LeadPriority = Literal["low", "medium", "high", "urgent"]


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_id: UUID
    source: str
    external_id: str | None
    normalized_phone: str | None
    name: str
    phone: str
    email: str
    campaign_name: str | None
    form_name: str | None
    listing_reference: str | None
    stage: str
    assigned_agent_id: UUID | None
    assignment_priority: LeadPriority
    is_new: bool
    received_at: datetime
    assigned_at: datetime | None
    last_contacted_at: datetime | None
    escalation_level: int
    source_metadata: dict
    created_at: datetime


class AssignmentHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    old_agent_id: UUID | None
    new_agent_id: UUID | None
    change_reason: ChangeReason
    changed_by: str
    changed_at: datetime
    can_undo: bool
    undone_at: datetime | None


class AgentLoadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    agent_id: UUID
    current_leads_count: int
    pending_followups_count: int
    assignments_today: int
    assignments_week: int
    conversion_rate: Decimal
    max_leads_capacity: int
    is_available: bool
    last_assignment_at: datetime | None


class AssignLeadRequest(BaseModel):
    agent_id: UUID
    reason: ChangeReason = "manual"


class BulkAssignRequest(BaseModel):
    lead_ids: list[UUID] = Field(min_length=1, max_length=500)
    agent_id: UUID


class BulkAssignResponse(BaseModel):
    assigned: int


class UndoAssignmentResponse(BaseModel):
    undone: bool


class SetPriorityRequest(BaseModel):
    priority: LeadPriority


class SetStageRequest(BaseModel):
    stage: str = Field(min_length=1, max_length=64)


class RecordContactRequest(BaseModel):
    contacted_at: datetime | None = None


class AgentAvailabilityUpdate(BaseModel):
    is_available: bool | None = None
    max_leads_capacity: int | None = Field(default=None, ge=1)
    pending_followups_count: int | None = Field(default=None, ge=0)
    conversion_rate: Decimal | None = Field(default=None, ge=Decimal("0"), le=Decimal("100"))


class AutoReassignmentRuleCreate(BaseModel):
    name: str = Field(default="New Rule", min_length=1)
    days_without_contact: int = Field(default=3, ge=1, le=365)
    use_round_robin: bool = True
    is_active: bool = True
    apply_to_stages: list[str] = Field(default_factory=lambda: ["New", "Contacted"])

    @field_validator("apply_to_stages")
    @classmethod
    def _stages_not_blank(cls, value: list[str]) -> list[str]:
        stages = [item.strip() for item in value if item and item.strip()]
        if not stages:
            raise ValueError("apply_to_stages must name at least one stage")
        return list(dict.fromkeys(stages))


class AutoReassignmentRuleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    days_without_contact: int | None = Field(default=None, ge=1, le=365)
    use_round_robin: bool | None = None
    is_active: bool | None = None
    apply_to_stages: list[str] | None = None

    @field_validator("apply_to_stages")
    @classmethod
    def _stages_not_blank(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        stages = [item.strip() for item in value if item and item.strip()]
        if not stages:
            raise ValueError("apply_to_stages must name at least one stage")
        return list(dict.fromkeys(stages))


class AutoReassignmentRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_id: UUID
    name: str
    days_without_contact: int
    use_round_robin: bool
    is_active: bool
    apply_to_stages: list[str]
    created_at: datetime
    updated_at: datetime


class AutoReassignRunResponse(BaseModel):
    lease_acquired: bool
    interrupted: bool = False
    rules_evaluated: int = 0
    scanned: int = 0
    reassigned: int = 0
    skipped: int = 0
    failed: int = 0


class RoutingConditions(BaseModel):
    source: str | None = None
    campaign_name: str | None = None
    budget_min: Decimal | None = Field(default=None, ge=Decimal("0"))
    budget_max: Decimal | None = Field(default=None, ge=Decimal("0"))
    location: str | None = None
    property_type: str | None = None

    @model_validator(mode="after")
    def _budget_range(self) -> RoutingConditions:
        if self.budget_min is not None and self.budget_max is not None and self.budget_min > self.budget_max:
            raise ValueError("budget_min must not exceed budget_max")
        return self


class LeadRoutingRuleCreate(BaseModel):
    name: str = Field(min_length=1)
    priority: int = 0
    enabled: bool = True
    conditions: RoutingConditions = Field(default_factory=RoutingConditions)
    assign_to_agent_id: UUID | None = None


class LeadRoutingRuleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    priority: int | None = None
    enabled: bool | None = None
    conditions: RoutingConditions | None = None
    assign_to_agent_id: UUID | None = None


class LeadRoutingRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_id: UUID
    name: str
    priority: int
    enabled: bool
    conditions: RoutingConditions
    assign_to_agent_id: UUID | None
    created_at: datetime
    updated_at: datetime


class PortalAgentMappingCreate(BaseModel):
    portal_name: str = Field(min_length=1)
    portal_agent_id: str = Field(min_length=1, max_length=255)
    agent_id: UUID
    is_active: bool = True


class PortalAgentMappingRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_id: UUID
    portal_name: str
    portal_agent_id: str
    agent_id: UUID
    is_active: bool
    created_at: datetime
