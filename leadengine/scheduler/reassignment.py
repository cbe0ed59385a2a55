from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from leadengine.assignment.models import AutoReassignmentRule
from leadengine.assignment.service import AssignmentRouter, assignment_router
from leadengine.core.config import get_settings
from leadengine.core.timeutils import ensure_utc, utcnow
from leadengine.errors import NoAgentsAvailable
from leadengine.intake.models import Lead
from leadengine.metrics import observe_assignment_failure, observe_job
from leadengine.notifications.service import NotificationFanout, notification_fanout
from leadengine.otel import get_tracer, tenant_span
from leadengine.scheduler.lease import LeaseManager, lease_manager

logger = logging.getLogger("leadengine.scheduler")
tracer = get_tracer("leadengine.scheduler")

LEASE_NAME = "auto_reassignment"


@dataclass(slots=True)
class SweepResult:
    company_id: uuid.UUID
    lease_acquired: bool = True
    interrupted: bool = False
    rules_evaluated: int = 0
    scanned: int = 0
    reassigned: int = 0
    skipped: int = 0
    failed: int = 0
    reassigned_lead_ids: list[uuid.UUID] = field(default_factory=list)


def contact_baseline(lead: Lead) -> datetime:
    baseline = ensure_utc(lead.last_contacted_at) or ensure_utc(lead.received_at)
    reassigned_at = ensure_utc(lead.last_auto_reassigned_at)
    if reassigned_at is not None and reassigned_at > baseline:
        return reassigned_at
    return baseline


def is_overdue(lead: Lead, rule: AutoReassignmentRule, now: datetime) -> bool:
    if lead.stage not in set(rule.apply_to_stages or []):
        return False
    return now - contact_baseline(lead) >= timedelta(days=rule.days_without_contact)


def rule_problem(rule: AutoReassignmentRule) -> str | None:
    if rule.days_without_contact is None or rule.days_without_contact < 1:
        return "days_without_contact must be at least 1"
    if not rule.apply_to_stages:
        return "rule applies to no stages"
    return None


@dataclass(slots=True)
class AutoReassignmentScheduler:
    router: AssignmentRouter
    fanout: NotificationFanout
    leases: LeaseManager

    def run_pass(
        self,
        session: Session,
        company_id: uuid.UUID,
        *,
        now: datetime | None = None,
        holder: str | None = None,
        should_continue: Callable[[], bool] | None = None,
    ) -> SweepResult:
        current_time = now or utcnow()
        lease_holder = holder or f"sweep-{uuid.uuid4()}"
        result = SweepResult(company_id=company_id)
        settings = get_settings()

        if not self.leases.acquire(
            session, company_id, LEASE_NAME, lease_holder, settings.scheduler_lease_seconds, now=current_time
        ):
            result.lease_acquired = False
            return result

        started = time.perf_counter()
        status = "succeeded"
        try:
            with tenant_span(tracer, "scheduler.auto_reassignment", company_id) as span:
                self._sweep(session, company_id, current_time, result, should_continue)
                span.set_attribute("reassigned", result.reassigned)
        except Exception:
            status = "failed"
            session.rollback()
            raise
        finally:
            self.leases.release(session, company_id, LEASE_NAME, lease_holder)
            observe_job(LEASE_NAME, status, time.perf_counter() - started)

        logger.info(
            "auto_reassignment_pass_completed",
            extra={
                "company_id": str(company_id),
                "processed": result.scanned,
                "updated": result.reassigned,
                "skipped": result.skipped,
                "errors": result.failed,
            },
        )
        return result

    def _sweep(
        self,
        session: Session,
        company_id: uuid.UUID,
        now: datetime,
        result: SweepResult,
        should_continue: Callable[[], bool] | None,
    ) -> None:
        rules = session.scalars(
            select(AutoReassignmentRule)
            .where(AutoReassignmentRule.company_id == company_id, AutoReassignmentRule.is_active.is_(True))
            .order_by(AutoReassignmentRule.created_at.asc())
        ).all()
        handled: set[uuid.UUID] = set()

        for rule in rules:
            problem = rule_problem(rule)
            if problem is not None:
                self._notify_rule_problem(session, rule, problem)
                continue
            result.rules_evaluated += 1
            rule_id = rule.id
            policy = "round_robin" if rule.use_round_robin else "load_aware"
            threshold = now - timedelta(days=rule.days_without_contact)
            candidates = session.execute(
                select(Lead.id, Lead.assigned_agent_id)
                .where(
                    Lead.company_id == company_id,
                    Lead.stage.in_(list(rule.apply_to_stages)),
                    Lead.assigned_agent_id.is_not(None),
                    func.coalesce(Lead.last_contacted_at, Lead.received_at) <= threshold,
                    or_(Lead.last_auto_reassigned_at.is_(None), Lead.last_auto_reassigned_at <= threshold),
                )
                .order_by(Lead.received_at.asc(), Lead.id.asc())
            ).all()
            capacity_reported = False

            for lead_id, owner_id in candidates:
                if should_continue is not None and not should_continue():
                    result.interrupted = True
                    return
                if lead_id in handled:
                    continue
                handled.add(lead_id)
                result.scanned += 1
                try:
                    new_agent_id = self.router.reassign_neglected_lead(
                        session,
                        company_id,
                        lead_id,
                        owner_id,
                        policy,
                        lambda lead: is_overdue(lead, rule, now),
                        now=now,
                    )
                except NoAgentsAvailable as exc:
                    result.failed += 1
                    observe_assignment_failure(exc.code)
                    if not capacity_reported:
                        self._notify_no_agents(session, company_id, rule, lead_id)
                        capacity_reported = True
                    continue
                if new_agent_id is None:
                    result.skipped += 1
                    continue
                result.reassigned += 1
                result.reassigned_lead_ids.append(lead_id)
                logger.info(
                    "lead_auto_reassigned",
                    extra={
                        "company_id": str(company_id),
                        "lead_id": str(lead_id),
                        "agent_id": str(new_agent_id),
                        "rule_id": str(rule_id),
                    },
                )

    def _notify_rule_problem(self, session: Session, rule: AutoReassignmentRule, problem: str) -> None:
        logger.warning("auto_reassignment_rule_misconfigured", extra={"rule_id": str(rule.id), "reason": problem})
        self.fanout.notify(
            session,
            company_id=rule.company_id,
            notification_type="rule_misconfigured",
            title=f"Auto-reassignment rule '{rule.name}' skipped",
            message=problem,
            recipient_role="manager",
        )
        session.commit()

    def _notify_no_agents(
        self,
        session: Session,
        company_id: uuid.UUID,
        rule: AutoReassignmentRule,
        lead_id: uuid.UUID,
    ) -> None:
        self.fanout.notify(
            session,
            company_id=company_id,
            notification_type="auto_reassign_failed",
            title="No agent available for reassignment",
            message=f"Rule '{rule.name}' could not redistribute neglected leads",
            lead_id=lead_id,
            recipient_role="manager",
        )
        session.commit()


def companies_with_active_rules(session: Session) -> list[uuid.UUID]:
    return list(
        session.scalars(
            select(AutoReassignmentRule.company_id)
            .where(AutoReassignmentRule.is_active.is_(True))
            .distinct()
        )
    )


auto_reassignment_scheduler = AutoReassignmentScheduler(
    router=assignment_router,
    fanout=notification_fanout,
    leases=lease_manager,
)
