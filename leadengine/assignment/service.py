from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from leadengine import audit, events
from leadengine.assignment.models import AgentLoad, AssignmentHistory, RoundRobinCursor
from leadengine.assignment.routing import LeadRoutingService, routing_service
from leadengine.assignment.schemas import (
    AgentAvailabilityUpdate,
    AgentLoadRead,
    AssignmentHistoryRead,
    LeadPriority,
    LeadRead,
    SelectionPolicy,
)
from leadengine.core.auth import SYSTEM_ACTOR, ActorUser
from leadengine.core.timeutils import ensure_utc, utcnow
from leadengine.directory.service import DirectoryService, directory_service
from leadengine.errors import (
    ConflictError,
    ForbiddenError,
    LeadEngineError,
    NoAgentsAvailable,
    NotFoundError,
    ValidationError,
)
from leadengine.intake.models import Lead
from leadengine.metrics import observe_assignment, observe_assignment_failure
from leadengine.notifications.service import NotificationFanout, notification_fanout
from leadengine.tenants.models import TenantLeadSettings
from leadengine.tenants.service import TenantSettingsService, is_within_working_hours, tenant_settings_service

logger = logging.getLogger("leadengine.assignment")

T = TypeVar("T")

LEAD_PRIORITIES = ("low", "medium", "high", "urgent")
_NEVER = datetime.min.replace(tzinfo=timezone.utc)


def _same_day(left: datetime | None, right: datetime) -> bool:
    return left is not None and ensure_utc(left).date() == right.date()


def _same_week(left: datetime | None, right: datetime) -> bool:
    return left is not None and ensure_utc(left).isocalendar()[:2] == right.isocalendar()[:2]


def effective_assignments_today(load: AgentLoad, now: datetime) -> int:
    return load.assignments_today if _same_day(load.last_assignment_at, now) else 0


def load_ratio(load: AgentLoad) -> float:
    capacity = load.max_leads_capacity if load.max_leads_capacity > 0 else 1
    return load.current_leads_count / capacity


@dataclass(slots=True)
class AssignmentRouter:
    directory: DirectoryService
    fanout: NotificationFanout
    tenants: TenantSettingsService
    routing: LeadRoutingService

    # reads

    def get_lead(self, session: Session, actor: ActorUser, lead_id: uuid.UUID) -> LeadRead:
        return LeadRead.model_validate(self._load_lead(session, actor.company_id, lead_id))

    def list_leads(
        self,
        session: Session,
        actor: ActorUser,
        *,
        pending_only: bool = False,
        agent_id: uuid.UUID | None = None,
        stage: str | None = None,
        source: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[LeadRead]:
        stmt = select(Lead).where(Lead.company_id == actor.company_id)
        if pending_only:
            stmt = stmt.where(Lead.assigned_agent_id.is_(None))
        if agent_id is not None:
            stmt = stmt.where(Lead.assigned_agent_id == agent_id)
        if stage is not None:
            stmt = stmt.where(Lead.stage == stage)
        if source is not None:
            stmt = stmt.where(Lead.source == source)
        rows = session.scalars(stmt.order_by(Lead.received_at.desc(), Lead.id.asc()).offset(offset).limit(limit))
        return [LeadRead.model_validate(row) for row in rows]

    def list_history(self, session: Session, actor: ActorUser, lead_id: uuid.UUID) -> list[AssignmentHistoryRead]:
        self._load_lead(session, actor.company_id, lead_id)
        rows = session.scalars(
            select(AssignmentHistory)
            .where(AssignmentHistory.lead_id == lead_id)
            .order_by(AssignmentHistory.sequence.asc())
        )
        return [AssignmentHistoryRead.model_validate(row) for row in rows]

    def list_agent_loads(self, session: Session, actor: ActorUser) -> list[AgentLoadRead]:
        agents = self.directory.list_agents(session, actor.company_id)
        for agent in agents:
            self.ensure_agent_load(session, actor.company_id, agent.id)
        rows = session.scalars(
            select(AgentLoad)
            .where(AgentLoad.company_id == actor.company_id, AgentLoad.agent_id.in_([agent.id for agent in agents]))
            .order_by(AgentLoad.agent_id.asc())
        )
        return [AgentLoadRead.model_validate(row) for row in rows]

    # ownership changes

    def assign_lead(
        self,
        session: Session,
        actor: ActorUser,
        lead_id: uuid.UUID,
        agent_id: uuid.UUID,
        reason: str = "manual",
    ) -> AssignmentHistoryRead:
        self.directory.get_agent(session, actor.company_id, agent_id)
        self.ensure_agent_load(session, actor.company_id, agent_id)

        def operation() -> AssignmentHistory:
            lead = self._load_lead(session, actor.company_id, lead_id, lock=True)
            if lead.assigned_agent_id == agent_id:
                latest = self._latest_history(session, lead.id)
                if latest is not None:
                    return latest
            history = self._apply_assignment(session, lead, agent_id, reason, actor.user_id)
            session.commit()
            return history

        history = self._with_conflict_retry(session, operation)
        observe_assignment(reason)
        audit.record(
            actor_user_id=actor.user_id,
            company_id=str(actor.company_id),
            entity_type="lead",
            entity_id=str(lead_id),
            action="assign",
            before={"agent_id": str(history.old_agent_id) if history.old_agent_id else None},
            after={"agent_id": str(agent_id), "reason": reason},
        )
        return AssignmentHistoryRead.model_validate(history)

    def bulk_assign(
        self,
        session: Session,
        actor: ActorUser,
        lead_ids: Iterable[uuid.UUID],
        agent_id: uuid.UUID,
    ) -> int:
        requested = list(dict.fromkeys(lead_ids))
        if not requested:
            raise ValidationError("lead_ids must not be empty")
        self.directory.get_agent(session, actor.company_id, agent_id)
        self.ensure_agent_load(session, actor.company_id, agent_id)

        def operation() -> int:
            leads = session.scalars(
                select(Lead)
                .where(Lead.company_id == actor.company_id, Lead.id.in_(requested))
                .order_by(Lead.id.asc())
                .with_for_update()
                .execution_options(populate_existing=True)
            ).all()
            found = {lead.id for lead in leads}
            missing = [str(lead_id) for lead_id in requested if lead_id not in found]
            if missing:
                session.rollback()
                raise NotFoundError("leads not found", details={"failed_lead_ids": missing})

            assigned = 0
            for lead in leads:
                if lead.assigned_agent_id == agent_id:
                    continue
                try:
                    self._apply_assignment(session, lead, agent_id, "bulk", actor.user_id, notify=False)
                except (LeadEngineError, IntegrityError) as exc:
                    session.rollback()
                    if isinstance(exc, ConflictError):
                        exc.details = {"failed_lead_ids": [str(lead.id)]}
                        raise
                    raise ConflictError(
                        "bulk assignment failed",
                        details={"failed_lead_ids": [str(lead.id)], "error": str(exc)[:200]},
                    ) from exc
                assigned += 1

            if assigned:
                self.fanout.notify(
                    session,
                    company_id=actor.company_id,
                    notification_type="bulk_assigned",
                    title="Leads assigned",
                    message=f"{assigned} leads were assigned to you",
                    recipient_agent_id=agent_id,
                )
            session.commit()
            return assigned

        assigned = self._with_conflict_retry(session, operation)
        observe_assignment("bulk", assigned)
        audit.record(
            actor_user_id=actor.user_id,
            company_id=str(actor.company_id),
            entity_type="lead",
            entity_id=",".join(str(lead_id) for lead_id in requested),
            action="bulk_assign",
            before=None,
            after={"agent_id": str(agent_id), "assigned": assigned},
        )
        return assigned

    def auto_select(
        self,
        session: Session,
        company_id: uuid.UUID,
        policy: SelectionPolicy,
        exclude_agent_ids: Iterable[uuid.UUID] = (),
        now: datetime | None = None,
    ) -> uuid.UUID:
        """Pick an available agent; round-robin advances the tenant cursor within the caller's transaction."""
        current_time = now or utcnow()
        settings = self.tenants.get_settings(session, company_id)
        excluded = set(exclude_agent_ids)
        candidates = self._eligible_loads(session, company_id, settings, excluded, current_time)
        if not candidates:
            raise NoAgentsAvailable("no agents available", details={"company_id": str(company_id), "policy": policy})

        if policy == "load_aware":
            chosen = min(
                candidates,
                key=lambda load: (load_ratio(load), ensure_utc(load.last_assignment_at) or _NEVER, load.agent_id),
            )
            return chosen.agent_id

        if policy != "round_robin":
            raise ValidationError(f"unknown selection policy: {policy}")

        cursor = self._lock_cursor(session, company_id)
        ordered = sorted(load.agent_id for load in candidates)
        chosen_id = ordered[0]
        if cursor.last_agent_id is not None:
            for candidate_id in ordered:
                if candidate_id > cursor.last_agent_id:
                    chosen_id = candidate_id
                    break
        cursor.last_agent_id = chosen_id
        cursor.position += 1
        session.flush()
        return chosen_id

    def route_new_lead(
        self,
        session: Session,
        company_id: uuid.UUID,
        lead_id: uuid.UUID,
        *,
        notify_pending: bool = True,
        now: datetime | None = None,
    ) -> uuid.UUID | None:
        """Mapped portal agent first, then matching routing rules, then the tenant's selection policy."""
        current_time = now or utcnow()
        settings = self.tenants.get_settings(session, company_id)
        lead = self._load_lead(session, company_id, lead_id)
        if lead.assigned_agent_id is not None:
            return lead.assigned_agent_id

        method = settings.default_assignment_method
        mapped_agent_id = self.routing.mapped_agent(session, lead)
        if method == "manual" and mapped_agent_id is None:
            if notify_pending:
                self._notify_pending(session, lead, "Lead awaiting manual assignment")
            return None

        if settings.after_hours_action == "hold" and not is_within_working_hours(settings, current_time):
            if notify_pending:
                self._notify_pending(session, lead, "Lead held until working hours")
            return None

        preferred: list[tuple[uuid.UUID, str]] = []
        if mapped_agent_id is not None:
            preferred.append((mapped_agent_id, "portal_mapping"))
        if method == "rules":
            for _, agent_id in self.routing.candidate_rule_agents(session, lead):
                preferred.append((agent_id, "rule_match"))
        policy: SelectionPolicy = "load_aware" if method == "load_aware" else "round_robin"

        def operation() -> tuple[uuid.UUID, str | None]:
            locked = self._load_lead(session, company_id, lead_id, lock=True)
            if locked.assigned_agent_id is not None:
                return locked.assigned_agent_id, None
            agent_id, reason = self._preferred_agent(session, company_id, settings, preferred, current_time)
            if agent_id is None:
                if method == "manual":
                    raise NoAgentsAvailable("mapped agent unavailable", details={"company_id": str(company_id)})
                agent_id = self.auto_select(session, company_id, policy, now=current_time)
                reason = "round_robin" if policy == "round_robin" else "load_balanced"
            self.ensure_agent_load(session, company_id, agent_id, commit=False)
            self._apply_assignment(session, locked, agent_id, reason, SYSTEM_ACTOR, now=current_time)
            session.commit()
            return agent_id, reason

        try:
            agent_id, reason = self._with_conflict_retry(session, operation)
        except NoAgentsAvailable as exc:
            session.rollback()
            observe_assignment_failure(exc.code)
            logger.warning("lead_pending_assignment", extra={"company_id": str(company_id), "lead_id": str(lead_id)})
            if notify_pending:
                self._notify_pending(session, lead, "No available agent; lead is pending assignment")
            return None

        if reason is not None:
            observe_assignment(reason)
            logger.info(
                "lead_auto_assigned",
                extra={"company_id": str(company_id), "lead_id": str(lead_id), "agent_id": str(agent_id), "reason": reason},
            )
        return agent_id

    def _preferred_agent(
        self,
        session: Session,
        company_id: uuid.UUID,
        settings: TenantLeadSettings,
        preferred: list[tuple[uuid.UUID, str]],
        now: datetime,
    ) -> tuple[uuid.UUID | None, str | None]:
        if not preferred:
            return None, None
        eligible = {load.agent_id for load in self._eligible_loads(session, company_id, settings, set(), now)}
        for agent_id, reason in preferred:
            if agent_id in eligible:
                return agent_id, reason
        return None, None

    def drain_pending_queue(self, session: Session, company_id: uuid.UUID, limit: int = 100) -> int:
        settings = self.tenants.get_settings(session, company_id)
        if settings.default_assignment_method == "manual":
            return 0
        pending_ids = session.scalars(
            select(Lead.id)
            .where(Lead.company_id == company_id, Lead.assigned_agent_id.is_(None))
            .order_by(Lead.received_at.asc())
            .limit(limit)
        ).all()
        routed = 0
        for lead_id in pending_ids:
            if self.route_new_lead(session, company_id, lead_id, notify_pending=False) is None:
                break
            routed += 1
        return routed

    def undo_assignment(self, session: Session, actor: ActorUser, lead_id: uuid.UUID) -> bool:
        lead = self._load_lead(session, actor.company_id, lead_id, lock=True)
        latest = self._latest_history(session, lead.id)
        if latest is None or not latest.can_undo or latest.undone_at is not None:
            return False
        if latest.change_reason == "undo":
            return False
        if lead.assigned_agent_id != latest.new_agent_id:
            return False
        contacted_at = ensure_utc(lead.last_contacted_at)
        if contacted_at is not None and contacted_at >= ensure_utc(latest.changed_at):
            return False

        prior_agent_id = latest.old_agent_id
        if prior_agent_id is not None:
            try:
                self.directory.get_agent(session, actor.company_id, prior_agent_id)
            except (NotFoundError, ForbiddenError):
                return False
            self.ensure_agent_load(session, actor.company_id, prior_agent_id, commit=False)

        current_time = utcnow()
        try:
            self._apply_assignment(
                session, lead, prior_agent_id, "undo", actor.user_id, now=current_time, can_undo=False
            )
        except ConflictError:
            session.rollback()
            return False
        latest.undone_at = current_time
        latest.can_undo = False
        session.commit()

        audit.record(
            actor_user_id=actor.user_id,
            company_id=str(actor.company_id),
            entity_type="lead",
            entity_id=str(lead_id),
            action="undo_assignment",
            before={"agent_id": str(latest.new_agent_id) if latest.new_agent_id else None},
            after={"agent_id": str(prior_agent_id) if prior_agent_id else None},
        )
        return True

    def reassign_neglected_lead(
        self,
        session: Session,
        company_id: uuid.UUID,
        lead_id: uuid.UUID,
        expected_owner_id: uuid.UUID,
        policy: SelectionPolicy,
        still_qualifies: Callable[[Lead], bool],
        now: datetime | None = None,
    ) -> uuid.UUID | None:
        """Returns the new owner, or None when the lead changed hands or no longer qualifies."""
        current_time = now or utcnow()
        lead = self._load_lead(session, company_id, lead_id, lock=True)
        if lead.assigned_agent_id != expected_owner_id or not still_qualifies(lead):
            session.rollback()
            return None
        try:
            agent_id = self.auto_select(
                session, company_id, policy, exclude_agent_ids={expected_owner_id}, now=current_time
            )
            self.ensure_agent_load(session, company_id, agent_id, commit=False)
            self._apply_assignment(session, lead, agent_id, "auto_reassign", SYSTEM_ACTOR, now=current_time)
        except ConflictError:
            session.rollback()
            return None
        except LeadEngineError:
            session.rollback()
            raise
        session.commit()
        observe_assignment("auto_reassign")
        return agent_id

    # metadata updates

    def set_priority(self, session: Session, actor: ActorUser, lead_id: uuid.UUID, priority: LeadPriority) -> LeadRead:
        if priority not in LEAD_PRIORITIES:
            raise ValidationError(f"invalid priority: {priority}")
        lead = self._load_lead(session, actor.company_id, lead_id)
        before = lead.assignment_priority
        lead.assignment_priority = priority
        session.commit()
        session.refresh(lead)
        audit.record(
            actor_user_id=actor.user_id,
            company_id=str(actor.company_id),
            entity_type="lead",
            entity_id=str(lead_id),
            action="set_priority",
            before={"priority": before},
            after={"priority": priority},
        )
        return LeadRead.model_validate(lead)

    def record_contact(
        self,
        session: Session,
        actor: ActorUser,
        lead_id: uuid.UUID,
        contacted_at: datetime | None = None,
    ) -> LeadRead:
        now = utcnow()
        moment = ensure_utc(contacted_at) or now
        lead = self._load_lead(session, actor.company_id, lead_id)
        lead.last_contacted_at = min(moment, now)
        lead.is_new = False
        session.commit()
        session.refresh(lead)
        return LeadRead.model_validate(lead)

    def set_stage(self, session: Session, actor: ActorUser, lead_id: uuid.UUID, stage: str) -> LeadRead:
        lead = self._load_lead(session, actor.company_id, lead_id)
        before = lead.stage
        lead.stage = stage
        session.commit()
        session.refresh(lead)
        audit.record(
            actor_user_id=actor.user_id,
            company_id=str(actor.company_id),
            entity_type="lead",
            entity_id=str(lead_id),
            action="set_stage",
            before={"stage": before},
            after={"stage": stage},
        )
        return LeadRead.model_validate(lead)

    def update_agent_availability(
        self,
        session: Session,
        actor: ActorUser,
        agent_id: uuid.UUID,
        payload: AgentAvailabilityUpdate,
    ) -> AgentLoadRead:
        self.directory.get_agent(session, actor.company_id, agent_id)
        load = self.ensure_agent_load(session, actor.company_id, agent_id)
        changes = payload.model_dump(exclude_unset=True, exclude_none=True)
        before = AgentLoadRead.model_validate(load).model_dump(mode="json")
        for field_name, value in changes.items():
            setattr(load, field_name, value)
        session.commit()
        session.refresh(load)
        result = AgentLoadRead.model_validate(load)
        audit.record(
            actor_user_id=actor.user_id,
            company_id=str(actor.company_id),
            entity_type="agent_load",
            entity_id=str(agent_id),
            action="update_availability",
            before=before,
            after=result.model_dump(mode="json"),
        )
        return result

    def ensure_agent_load(
        self,
        session: Session,
        company_id: uuid.UUID,
        agent_id: uuid.UUID,
        commit: bool = True,
    ) -> AgentLoad:
        load = session.scalar(
            select(AgentLoad).where(AgentLoad.company_id == company_id, AgentLoad.agent_id == agent_id)
        )
        if load is not None:
            return load
        load = AgentLoad(company_id=company_id, agent_id=agent_id)
        session.add(load)
        if not commit:
            session.flush()
            return load
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            load = session.scalar(
                select(AgentLoad).where(AgentLoad.company_id == company_id, AgentLoad.agent_id == agent_id)
            )
            if load is None:
                raise
        return load

    # internals

    def _load_lead(self, session: Session, company_id: uuid.UUID, lead_id: uuid.UUID, lock: bool = False) -> Lead:
        stmt = select(Lead).where(Lead.id == lead_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        lead = session.scalar(stmt)
        if lead is None or lead.company_id != company_id:
            raise NotFoundError("lead not found", details={"lead_id": str(lead_id)})
        return lead

    @staticmethod
    def _latest_history(session: Session, lead_id: uuid.UUID) -> AssignmentHistory | None:
        return session.scalar(
            select(AssignmentHistory)
            .where(AssignmentHistory.lead_id == lead_id)
            .order_by(AssignmentHistory.sequence.desc())
            .limit(1)
        )

    def _eligible_loads(
        self,
        session: Session,
        company_id: uuid.UUID,
        settings: TenantLeadSettings,
        excluded: set[uuid.UUID],
        now: datetime,
    ) -> list[AgentLoad]:
        agents = self.directory.list_agents(session, company_id)
        agent_ids = [agent.id for agent in agents if agent.id not in excluded]
        if not agent_ids:
            return []
        loads = {
            load.agent_id: load
            for load in session.scalars(
                select(AgentLoad).where(AgentLoad.company_id == company_id, AgentLoad.agent_id.in_(agent_ids))
            )
        }
        eligible: list[AgentLoad] = []
        for agent_id in agent_ids:
            load = loads.get(agent_id)
            if load is None:
                load = self.ensure_agent_load(session, company_id, agent_id, commit=False)
            if not load.is_available:
                continue
            if load.current_leads_count >= load.max_leads_capacity:
                continue
            if effective_assignments_today(load, now) >= settings.max_leads_per_day:
                continue
            eligible.append(load)
        return eligible

    def _lock_cursor(self, session: Session, company_id: uuid.UUID) -> RoundRobinCursor:
        stmt = select(RoundRobinCursor).where(RoundRobinCursor.company_id == company_id).with_for_update()
        cursor = session.scalar(stmt)
        if cursor is not None:
            return cursor
        cursor = RoundRobinCursor(company_id=company_id, last_agent_id=None, position=0)
        session.add(cursor)
        try:
            session.flush()
        except IntegrityError as exc:
            raise ConflictError("round-robin cursor created concurrently") from exc
        return cursor

    def _lock_load(self, session: Session, company_id: uuid.UUID, agent_id: uuid.UUID) -> AgentLoad:
        load = session.scalar(
            select(AgentLoad)
            .where(AgentLoad.company_id == company_id, AgentLoad.agent_id == agent_id)
            .with_for_update()
        )
        if load is None:
            load = self.ensure_agent_load(session, company_id, agent_id, commit=False)
        return load

    def _apply_assignment(
        self,
        session: Session,
        lead: Lead,
        new_agent_id: uuid.UUID | None,
        reason: str,
        changed_by: str,
        *,
        now: datetime | None = None,
        can_undo: bool = True,
        notify: bool = True,
    ) -> AssignmentHistory:
        """Move ownership, counters and history together; the caller commits."""
        current_time = now or utcnow()
        old_agent_id = lead.assigned_agent_id
        expected_version = lead.row_version

        result = session.execute(
            update(Lead)
            .where(Lead.id == lead.id, Lead.row_version == expected_version)
            .values(
                assigned_agent_id=new_agent_id,
                assigned_at=current_time if new_agent_id is not None else None,
                escalation_level=0,
                last_auto_reassigned_at=current_time if reason == "auto_reassign" else lead.last_auto_reassigned_at,
                row_version=expected_version + 1,
                updated_at=current_time,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError("lead changed concurrently", details={"lead_id": str(lead.id)})

        if old_agent_id != new_agent_id:
            if new_agent_id is not None:
                target = self._lock_load(session, lead.company_id, new_agent_id)
                if not _same_day(target.last_assignment_at, current_time):
                    target.assignments_today = 0
                if not _same_week(target.last_assignment_at, current_time):
                    target.assignments_week = 0
                target.current_leads_count += 1
                target.assignments_today += 1
                target.assignments_week += 1
                target.last_assignment_at = current_time
            if old_agent_id is not None:
                source = self._lock_load(session, lead.company_id, old_agent_id)
                source.current_leads_count = max(0, source.current_leads_count - 1)

        next_sequence = (
            session.scalar(select(func.max(AssignmentHistory.sequence)).where(AssignmentHistory.lead_id == lead.id)) or 0
        ) + 1
        history = AssignmentHistory(
            company_id=lead.company_id,
            lead_id=lead.id,
            old_agent_id=old_agent_id,
            new_agent_id=new_agent_id,
            change_reason=reason,
            changed_by=changed_by,
            changed_at=current_time,
            sequence=next_sequence,
            can_undo=can_undo,
        )
        session.add(history)
        try:
            session.flush()
        except IntegrityError as exc:
            raise ConflictError("assignment history written concurrently", details={"lead_id": str(lead.id)}) from exc

        events.publish(
            {
                "event_type": "lead.assigned",
                "company_id": str(lead.company_id),
                "lead_id": str(lead.id),
                "old_agent_id": str(old_agent_id) if old_agent_id else None,
                "new_agent_id": str(new_agent_id) if new_agent_id else None,
                "reason": reason,
            }
        )

        if notify:
            self._notify_assignment(session, lead, old_agent_id, new_agent_id, reason)
        session.expire(lead)
        return history

    def _notify_assignment(
        self,
        session: Session,
        lead: Lead,
        old_agent_id: uuid.UUID | None,
        new_agent_id: uuid.UUID | None,
        reason: str,
    ) -> None:
        lead_name = lead.name or "Lead"
        if reason == "undo":
            notification_type, title = "assignment_undone", "Assignment undone"
        elif reason == "auto_reassign":
            notification_type, title = "auto_reassigned", "Lead reassigned for inactivity"
        elif old_agent_id is not None:
            notification_type, title = "lead_reassigned", "Lead reassigned to you"
        else:
            notification_type, title = "lead_assigned", "New lead assigned"
        self.fanout.notify(
            session,
            company_id=lead.company_id,
            notification_type=notification_type,
            title=title,
            message=f"{lead_name} ({lead.source})",
            lead_id=lead.id,
            recipient_agent_id=new_agent_id,
        )

    def _notify_pending(self, session: Session, lead: Lead, message: str) -> None:
        self.fanout.notify(
            session,
            company_id=lead.company_id,
            notification_type="pending_assignment",
            title="Lead pending assignment",
            message=message,
            lead_id=lead.id,
            recipient_role="manager",
        )
        session.commit()

    @staticmethod
    def _with_conflict_retry(session: Session, operation: Callable[[], T]) -> T:
        try:
            return operation()
        except ConflictError:
            session.rollback()
            logger.info("assignment_conflict_retry")
            return operation()


assignment_router = AssignmentRouter(
    directory=directory_service,
    fanout=notification_fanout,
    tenants=tenant_settings_service,
    routing=routing_service,
)
