from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from leadengine import audit
from leadengine.assignment.models import LeadRoutingRule, PortalAgentMapping
from leadengine.assignment.schemas import (
    LeadRoutingRuleCreate,
    LeadRoutingRuleRead,
    LeadRoutingRuleUpdate,
    PortalAgentMappingCreate,
    PortalAgentMappingRead,
)
from leadengine.core.auth import ActorUser
from leadengine.directory.service import DirectoryService, directory_service
from leadengine.errors import ConflictError, NotFoundError, ValidationError
from leadengine.intake.models import Lead
from leadengine.intake.normalizers import PORTAL_SOURCES, canonical_source


def _decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    raw = str(value).replace(",", "").strip()
    if not raw:
        return None
    try:
        return Decimal(raw)
    except InvalidOperation:
        return None


def _folded(value: Any) -> str:
    return str(value).strip().casefold() if value is not None else ""


def rule_matches(conditions: dict[str, Any], lead: Lead) -> bool:
    """Every condition that is set must hold; a rule with no conditions matches every lead."""
    metadata = lead.source_metadata or {}

    source = conditions.get("source")
    if source and canonical_source(source) != lead.source:
        return False
    campaign = conditions.get("campaign_name")
    if campaign and _folded(campaign) != _folded(lead.campaign_name):
        return False
    location = conditions.get("location")
    if location and _folded(location) not in _folded(metadata.get("location")):
        return False
    property_type = conditions.get("property_type")
    if property_type and _folded(property_type) != _folded(metadata.get("property_type")):
        return False

    budget_min = _decimal(conditions.get("budget_min"))
    budget_max = _decimal(conditions.get("budget_max"))
    if budget_min is None and budget_max is None:
        return True
    budget = _decimal(metadata.get("budget"))
    if budget is None:
        return False
    if budget_min is not None and budget < budget_min:
        return False
    return budget_max is None or budget <= budget_max


@dataclass(slots=True)
class LeadRoutingService:
    directory: DirectoryService

    # evaluation

    def candidate_rule_agents(self, session: Session, lead: Lead) -> list[tuple[uuid.UUID, uuid.UUID]]:
        """(rule_id, agent_id) for every enabled matching rule, highest priority first."""
        rules = session.scalars(
            select(LeadRoutingRule)
            .where(LeadRoutingRule.company_id == lead.company_id, LeadRoutingRule.enabled.is_(True))
            .order_by(LeadRoutingRule.priority.desc(), LeadRoutingRule.created_at.asc())
        ).all()
        return [
            (rule.id, rule.assign_to_agent_id)
            for rule in rules
            if rule.assign_to_agent_id is not None and rule_matches(rule.conditions or {}, lead)
        ]

    def mapped_agent(self, session: Session, lead: Lead) -> uuid.UUID | None:
        portal_agent_id = (lead.source_metadata or {}).get("agent_reference")
        if lead.source not in PORTAL_SOURCES or not portal_agent_id:
            return None
        return session.scalar(
            select(PortalAgentMapping.agent_id).where(
                PortalAgentMapping.company_id == lead.company_id,
                PortalAgentMapping.portal_name == lead.source,
                PortalAgentMapping.portal_agent_id == str(portal_agent_id),
                PortalAgentMapping.is_active.is_(True),
            )
        )

    # routing rules

    def list_rules(self, session: Session, actor: ActorUser) -> list[LeadRoutingRuleRead]:
        rows = session.scalars(
            select(LeadRoutingRule)
            .where(LeadRoutingRule.company_id == actor.company_id)
            .order_by(LeadRoutingRule.priority.desc(), LeadRoutingRule.created_at.asc())
        )
        return [LeadRoutingRuleRead.model_validate(row) for row in rows]

    def create_rule(self, session: Session, actor: ActorUser, payload: LeadRoutingRuleCreate) -> LeadRoutingRuleRead:
        if payload.assign_to_agent_id is not None:
            self.directory.get_agent(session, actor.company_id, payload.assign_to_agent_id)
        rule = LeadRoutingRule(
            company_id=actor.company_id,
            name=payload.name,
            priority=payload.priority,
            enabled=payload.enabled,
            conditions=payload.conditions.model_dump(mode="json", exclude_none=True),
            assign_to_agent_id=payload.assign_to_agent_id,
            created_by=actor.user_id,
        )
        session.add(rule)
        session.commit()
        session.refresh(rule)
        result = LeadRoutingRuleRead.model_validate(rule)
        self._audit(actor, "lead_routing_rule", rule.id, "create", None, result.model_dump(mode="json"))
        return result

    def update_rule(
        self,
        session: Session,
        actor: ActorUser,
        rule_id: uuid.UUID,
        payload: LeadRoutingRuleUpdate,
    ) -> LeadRoutingRuleRead:
        rule = self._get_rule(session, actor, rule_id)
        before = LeadRoutingRuleRead.model_validate(rule).model_dump(mode="json")
        changes = payload.model_dump(exclude_unset=True)
        if changes.get("assign_to_agent_id") is not None:
            self.directory.get_agent(session, actor.company_id, changes["assign_to_agent_id"])
        if "conditions" in changes:
            conditions = payload.conditions
            changes["conditions"] = conditions.model_dump(mode="json", exclude_none=True) if conditions else {}
        for field_name, value in changes.items():
            if value is None and field_name != "assign_to_agent_id":
                continue
            setattr(rule, field_name, value)
        session.commit()
        session.refresh(rule)
        result = LeadRoutingRuleRead.model_validate(rule)
        self._audit(actor, "lead_routing_rule", rule.id, "update", before, result.model_dump(mode="json"))
        return result

    def delete_rule(self, session: Session, actor: ActorUser, rule_id: uuid.UUID) -> None:
        rule = self._get_rule(session, actor, rule_id)
        before = LeadRoutingRuleRead.model_validate(rule).model_dump(mode="json")
        session.delete(rule)
        session.commit()
        self._audit(actor, "lead_routing_rule", rule_id, "delete", before, None)

    # portal agent mappings

    def list_mappings(
        self,
        session: Session,
        actor: ActorUser,
        portal: str | None = None,
    ) -> list[PortalAgentMappingRead]:
        stmt = select(PortalAgentMapping).where(PortalAgentMapping.company_id == actor.company_id)
        if portal:
            stmt = stmt.where(PortalAgentMapping.portal_name == canonical_source(portal))
        stmt = stmt.order_by(PortalAgentMapping.portal_name.asc(), PortalAgentMapping.portal_agent_id.asc())
        rows = session.scalars(stmt)
        return [PortalAgentMappingRead.model_validate(row) for row in rows]

    def create_mapping(
        self,
        session: Session,
        actor: ActorUser,
        payload: PortalAgentMappingCreate,
    ) -> PortalAgentMappingRead:
        portal_name = canonical_source(payload.portal_name)
        if portal_name not in PORTAL_SOURCES:
            raise ValidationError("unknown portal", details={"portal": payload.portal_name})
        self.directory.get_agent(session, actor.company_id, payload.agent_id)
        mapping = PortalAgentMapping(
            company_id=actor.company_id,
            portal_name=portal_name,
            portal_agent_id=payload.portal_agent_id.strip(),
            agent_id=payload.agent_id,
            is_active=payload.is_active,
        )
        session.add(mapping)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError(
                "portal agent already mapped",
                details={"portal": portal_name, "portal_agent_id": mapping.portal_agent_id},
            ) from exc
        session.refresh(mapping)
        result = PortalAgentMappingRead.model_validate(mapping)
        self._audit(actor, "portal_agent_mapping", mapping.id, "create", None, result.model_dump(mode="json"))
        return result

    def delete_mapping(self, session: Session, actor: ActorUser, mapping_id: uuid.UUID) -> None:
        mapping = session.get(PortalAgentMapping, mapping_id)
        if mapping is None or mapping.company_id != actor.company_id:
            raise NotFoundError("portal agent mapping not found", details={"mapping_id": str(mapping_id)})
        before = PortalAgentMappingRead.model_validate(mapping).model_dump(mode="json")
        session.delete(mapping)
        session.commit()
        self._audit(actor, "portal_agent_mapping", mapping_id, "delete", before, None)

    @staticmethod
    def _get_rule(session: Session, actor: ActorUser, rule_id: uuid.UUID) -> LeadRoutingRule:
        rule = session.get(LeadRoutingRule, rule_id)
        if rule is None or rule.company_id != actor.company_id:
            raise NotFoundError("routing rule not found", details={"rule_id": str(rule_id)})
        return rule

    @staticmethod
    def _audit(
        actor: ActorUser,
        entity_type: str,
        entity_id: uuid.UUID,
        action: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        audit.record(
            actor_user_id=actor.user_id,
            company_id=str(actor.company_id),
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action,
            before=before,
            after=after,
        )


routing_service = LeadRoutingService(directory=directory_service)
