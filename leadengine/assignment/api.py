from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from leadengine.api.deps import failure_response, get_current_user, require_permission
from leadengine.assignment.routing import routing_service
from leadengine.assignment.rules import rule_service
from leadengine.assignment.schemas import (
    AgentAvailabilityUpdate,
    AgentLoadRead,
    AssignLeadRequest,
    AssignmentHistoryRead,
    AutoReassignmentRuleCreate,
    AutoReassignmentRuleRead,
    AutoReassignmentRuleUpdate,
    AutoReassignRunResponse,
    BulkAssignRequest,
    BulkAssignResponse,
    LeadRead,
    LeadRoutingRuleCreate,
    LeadRoutingRuleRead,
    LeadRoutingRuleUpdate,
    PortalAgentMappingCreate,
    PortalAgentMappingRead,
    RecordContactRequest,
    SetPriorityRequest,
    SetStageRequest,
    UndoAssignmentResponse,
)
from leadengine.assignment.service import assignment_router
from leadengine.core.auth import ActorUser
from leadengine.core.database import get_db
from leadengine.errors import LeadEngineError
from leadengine.scheduler.reassignment import auto_reassignment_scheduler

leads_router = APIRouter(prefix="/api/leads", tags=["leads"])
agents_router = APIRouter(prefix="/api/agents", tags=["agents"])
rules_router = APIRouter(prefix="/api/assignment", tags=["assignment.rules"])


@leads_router.get("", response_model=list[LeadRead])
def list_leads(
    request: Request,
    pending: bool = Query(default=False),
    agent_id: uuid.UUID | None = Query(default=None),
    stage: str | None = Query(default=None),
    source: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadRead] | JSONResponse:
    try:
        require_permission(user, "leads.read")
        return assignment_router.list_leads(
            db,
            user,
            pending_only=pending,
            agent_id=agent_id,
            stage=stage,
            source=source,
            limit=limit,
            offset=offset,
        )
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "lead_list_failed")


@leads_router.post("/bulk-assign", response_model=BulkAssignResponse)
def bulk_assign(
    request: Request,
    dto: BulkAssignRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BulkAssignResponse | JSONResponse:
    try:
        require_permission(user, "leads.assign")
        assigned = assignment_router.bulk_assign(db, user, dto.lead_ids, dto.agent_id)
        return BulkAssignResponse(assigned=assigned)
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "lead_bulk_assign_failed")


@leads_router.get("/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "leads.read")
        return assignment_router.get_lead(db, user, lead_id)
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "lead_get_failed")


@leads_router.get("/{lead_id}/assignment-history", response_model=list[AssignmentHistoryRead])
def get_assignment_history(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AssignmentHistoryRead] | JSONResponse:
    try:
        require_permission(user, "leads.read")
        return assignment_router.list_history(db, user, lead_id)
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "lead_history_failed")


@leads_router.post("/{lead_id}/assign", response_model=AssignmentHistoryRead)
def assign_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: AssignLeadRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AssignmentHistoryRead | JSONResponse:
    try:
        require_permission(user, "leads.assign")
        return assignment_router.assign_lead(db, user, lead_id, dto.agent_id, dto.reason)
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "lead_assign_failed")


@leads_router.post("/{lead_id}/undo-assignment", response_model=UndoAssignmentResponse)
def undo_assignment(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UndoAssignmentResponse | JSONResponse:
    try:
        require_permission(user, "leads.assign")
        return UndoAssignmentResponse(undone=assignment_router.undo_assignment(db, user, lead_id))
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "lead_undo_failed")


@leads_router.patch("/{lead_id}/priority", response_model=LeadRead)
def set_priority(
    request: Request,
    lead_id: uuid.UUID,
    dto: SetPriorityRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "leads.write")
        return assignment_router.set_priority(db, user, lead_id, dto.priority)
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "lead_priority_failed")


@leads_router.post("/{lead_id}/contact", response_model=LeadRead)
def record_contact(
    request: Request,
    lead_id: uuid.UUID,
    dto: RecordContactRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "leads.write")
        return assignment_router.record_contact(db, user, lead_id, dto.contacted_at)
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "lead_contact_failed")


@leads_router.patch("/{lead_id}/stage", response_model=LeadRead)
def set_stage(
    request: Request,
    lead_id: uuid.UUID,
    dto: SetStageRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "leads.write")
        return assignment_router.set_stage(db, user, lead_id, dto.stage)
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "lead_stage_failed")


@agents_router.get("/load", response_model=list[AgentLoadRead])
def list_agent_loads(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AgentLoadRead] | JSONResponse:
    try:
        require_permission(user, "leads.read")
        return assignment_router.list_agent_loads(db, user)
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "agent_load_list_failed")


@agents_router.patch("/{agent_id}/availability", response_model=AgentLoadRead)
def update_agent_availability(
    request: Request,
    agent_id: uuid.UUID,
    dto: AgentAvailabilityUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AgentLoadRead | JSONResponse:
    try:
        require_permission(user, "agents.manage")
        return assignment_router.update_agent_availability(db, user, agent_id, dto)
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "agent_availability_failed")


@rules_router.get("/rules", response_model=list[AutoReassignmentRuleRead])
def list_rules(
    request: Request,
    active: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AutoReassignmentRuleRead] | JSONResponse:
    try:
        require_permission(user, "assignment.rules.read")
        return rule_service.list_rules(db, user, active_only=active)
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "rule_list_failed")


@rules_router.post("/rules", response_model=AutoReassignmentRuleRead, status_code=status.HTTP_201_CREATED)
def create_rule(
    request: Request,
    dto: AutoReassignmentRuleCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutoReassignmentRuleRead | JSONResponse:
    try:
        require_permission(user, "assignment.rules.write")
        return rule_service.create_rule(db, user, dto)
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "rule_create_failed")


@rules_router.patch("/rules/{rule_id}", response_model=AutoReassignmentRuleRead)
def update_rule(
    request: Request,
    rule_id: uuid.UUID,
    dto: AutoReassignmentRuleUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutoReassignmentRuleRead | JSONResponse:
    try:
        require_permission(user, "assignment.rules.write")
        return rule_service.update_rule(db, user, rule_id, dto)
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "rule_update_failed")


@rules_router.post("/rules/{rule_id}/toggle", response_model=AutoReassignmentRuleRead)
def toggle_rule(
    request: Request,
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutoReassignmentRuleRead | JSONResponse:
    try:
        require_permission(user, "assignment.rules.write")
        return rule_service.toggle_rule(db, user, rule_id)
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "rule_toggle_failed")


@rules_router.delete("/rules/{rule_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_rule(
    request: Request,
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "assignment.rules.write")
        rule_service.delete_rule(db, user, rule_id)
        return {"status": "deleted"}
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "rule_delete_failed")


@rules_router.post("/auto-reassign/run", response_model=AutoReassignRunResponse)
def run_auto_reassignment(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutoReassignRunResponse | JSONResponse:
    try:
        require_permission(user, "assignment.rules.write")
        result = auto_reassignment_scheduler.run_pass(db, user.company_id)
        return AutoReassignRunResponse(
            lease_acquired=result.lease_acquired,
            interrupted=result.interrupted,
            rules_evaluated=result.rules_evaluated,
            scanned=result.scanned,
            reassigned=result.reassigned,
            skipped=result.skipped,
            failed=result.failed,
        )
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "auto_reassign_run_failed")


@rules_router.get("/routing-rules", response_model=list[LeadRoutingRuleRead])
def list_routing_rules(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadRoutingRuleRead] | JSONResponse:
    try:
        require_permission(user, "assignment.rules.read")
        return routing_service.list_rules(db, user)
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "routing_rule_list_failed")


@rules_router.post("/routing-rules", response_model=LeadRoutingRuleRead, status_code=status.HTTP_201_CREATED)
def create_routing_rule(
    request: Request,
    dto: LeadRoutingRuleCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRoutingRuleRead | JSONResponse:
    try:
        require_permission(user, "assignment.rules.write")
        return routing_service.create_rule(db, user, dto)
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "routing_rule_create_failed")


@rules_router.patch("/routing-rules/{rule_id}", response_model=LeadRoutingRuleRead)
def update_routing_rule(
    request: Request,
    rule_id: uuid.UUID,
    dto: LeadRoutingRuleUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRoutingRuleRead | JSONResponse:
    try:
        require_permission(user, "assignment.rules.write")
        return routing_service.update_rule(db, user, rule_id, dto)
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "routing_rule_update_failed")


@rules_router.delete("/routing-rules/{rule_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_routing_rule(
    request: Request,
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "assignment.rules.write")
        routing_service.delete_rule(db, user, rule_id)
        return {"status": "deleted"}
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "routing_rule_delete_failed")


@rules_router.get("/portal-mappings", response_model=list[PortalAgentMappingRead])
def list_portal_mappings(
    request: Request,
    portal: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PortalAgentMappingRead] | JSONResponse:
    try:
        require_permission(user, "assignment.rules.read")
        return routing_service.list_mappings(db, user, portal)
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "portal_mapping_list_failed")


@rules_router.post("/portal-mappings", response_model=PortalAgentMappingRead, status_code=status.HTTP_201_CREATED)
def create_portal_mapping(
    request: Request,
    dto: PortalAgentMappingCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PortalAgentMappingRead | JSONResponse:
    try:
        require_permission(user, "assignment.rules.write")
        return routing_service.create_mapping(db, user, dto)
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "portal_mapping_create_failed")


@rules_router.delete("/portal-mappings/{mapping_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_portal_mapping(
    request: Request,
    mapping_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "assignment.rules.write")
        routing_service.delete_mapping(db, user, mapping_id)
        return {"status": "deleted"}
    except (HTTPException, LeadEngineError) as exc:
        return failure_response(request, exc, "portal_mapping_delete_failed")
