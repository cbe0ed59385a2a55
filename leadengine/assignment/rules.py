from __future__ import annotations

import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from leadengine import audit
from leadengine.assignment.models import AutoReassignmentRule
from leadengine.assignment.schemas import (
    AutoReassignmentRuleCreate,
    AutoReassignmentRuleRead,
    AutoReassignmentRuleUpdate,
)
from leadengine.core.auth import ActorUser
from leadengine.errors import NotFoundError


@dataclass(slots=True)
class AutoReassignmentRuleService:
    def list_rules(self, session: Session, actor: ActorUser, active_only: bool = False) -> list[AutoReassignmentRuleRead]:
        stmt = select(AutoReassignmentRule).where(AutoReassignmentRule.company_id == actor.company_id)
        if active_only:
            stmt = stmt.where(AutoReassignmentRule.is_active.is_(True))
        rows = session.scalars(stmt.order_by(AutoReassignmentRule.created_at.asc()))
        return [AutoReassignmentRuleRead.model_validate(row) for row in rows]

    def create_rule(
        self,
        session: Session,
        actor: ActorUser,
        payload: AutoReassignmentRuleCreate,
    ) -> AutoReassignmentRuleRead:
        rule = AutoReassignmentRule(company_id=actor.company_id, created_by=actor.user_id, **payload.model_dump())
        session.add(rule)
        session.commit()
        session.refresh(rule)
        result = AutoReassignmentRuleRead.model_validate(rule)
        self._audit(actor, rule.id, "create", None, result)
        return result

    def update_rule(
        self,
        session: Session,
        actor: ActorUser,
        rule_id: uuid.UUID,
        payload: AutoReassignmentRuleUpdate,
    ) -> AutoReassignmentRuleRead:
        rule = self._get_rule(session, actor, rule_id)
        before = AutoReassignmentRuleRead.model_validate(rule)
        for field_name, value in payload.model_dump(exclude_unset=True, exclude_none=True).items():
            setattr(rule, field_name, value)
        session.commit()
        session.refresh(rule)
        result = AutoReassignmentRuleRead.model_validate(rule)
        self._audit(actor, rule.id, "update", before, result)
        return result

    def toggle_rule(self, session: Session, actor: ActorUser, rule_id: uuid.UUID) -> AutoReassignmentRuleRead:
        rule = self._get_rule(session, actor, rule_id)
        before = AutoReassignmentRuleRead.model_validate(rule)
        rule.is_active = not rule.is_active
        session.commit()
        session.refresh(rule)
        result = AutoReassignmentRuleRead.model_validate(rule)
        self._audit(actor, rule.id, "toggle", before, result)
        return result

    def delete_rule(self, session: Session, actor: ActorUser, rule_id: uuid.UUID) -> None:
        rule = self._get_rule(session, actor, rule_id)
        before = AutoReassignmentRuleRead.model_validate(rule)
        session.delete(rule)
        session.commit()
        self._audit(actor, rule_id, "delete", before, None)

    @staticmethod
    def _get_rule(session: Session, actor: ActorUser, rule_id: uuid.UUID) -> AutoReassignmentRule:
        rule = session.get(AutoReassignmentRule, rule_id)
        if rule is None or rule.company_id != actor.company_id:
            raise NotFoundError("auto-reassignment rule not found", details={"rule_id": str(rule_id)})
        return rule

    @staticmethod
    def _audit(
        actor: ActorUser,
        rule_id: uuid.UUID,
        action: str,
        before: AutoReassignmentRuleRead | None,
        after: AutoReassignmentRuleRead | None,
    ) -> None:
        audit.record(
            actor_user_id=actor.user_id,
            company_id=str(actor.company_id),
            entity_type="auto_reassignment_rule",
            entity_id=str(rule_id),
            action=action,
            before=before.model_dump(mode="json") if before else None,
            after=after.model_dump(mode="json") if after else None,
        )


rule_service = AutoReassignmentRuleService()
