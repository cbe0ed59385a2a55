from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from leadengine import events
from leadengine.core.timeutils import ensure_utc, utcnow
from leadengine.errors import NotFoundError
from leadengine.intake.models import Lead
from leadengine.metrics import observe_notification
from leadengine.notifications.models import AssignmentNotification
from leadengine.notifications.schemas import MarkAllReadResponse, NotificationRead, SlaSweepResult
from leadengine.otel import get_tracer, tenant_span
from leadengine.tenants.models import TenantLeadSettings

logger = logging.getLogger("leadengine.notifications")
tracer = get_tracer("leadengine.notifications")

# level reached -> (notification_type, recipient_role, title)
ESCALATION_LEVELS: dict[int, tuple[str, str, str]] = {
    1: ("sla_warning", "agent", "Lead awaiting first contact"),
    2: ("escalation_team_lead", "team_lead", "Lead escalated to team lead"),
    3: ("escalation_manager", "manager", "Lead escalated to manager"),
}
MAX_ESCALATION_LEVEL = max(ESCALATION_LEVELS)


@dataclass(slots=True)
class NotificationFanout:
    def notify(
        self,
        session: Session,
        *,
        company_id: uuid.UUID,
        notification_type: str,
        title: str,
        message: str = "",
        lead_id: uuid.UUID | None = None,
        recipient_agent_id: uuid.UUID | None = None,
        recipient_role: str | None = None,
    ) -> AssignmentNotification:
        """Stage a notification in the caller's transaction and announce it to live subscribers."""
        notification = AssignmentNotification(
            company_id=company_id,
            lead_id=lead_id,
            recipient_agent_id=recipient_agent_id,
            recipient_role=recipient_role,
            notification_type=notification_type,
            title=title,
            message=message,
            is_read=False,
            created_at=utcnow(),
        )
        session.add(notification)
        session.flush()
        observe_notification(notification_type)
        events.publish(
            {
                "event_type": "assignment.notification.created",
                "company_id": str(company_id),
                "notification_id": str(notification.id),
                "notification_type": notification_type,
                "lead_id": str(lead_id) if lead_id else None,
                "recipient_agent_id": str(recipient_agent_id) if recipient_agent_id else None,
            }
        )
        return notification

    def list_notifications(
        self,
        session: Session,
        company_id: uuid.UUID,
        *,
        unread_only: bool = False,
        recipient_agent_id: uuid.UUID | None = None,
        limit: int = 100,
    ) -> list[NotificationRead]:
        stmt = select(AssignmentNotification).where(AssignmentNotification.company_id == company_id)
        if unread_only:
            stmt = stmt.where(AssignmentNotification.is_read.is_(False))
        if recipient_agent_id is not None:
            stmt = stmt.where(
                or_(
                    AssignmentNotification.recipient_agent_id == recipient_agent_id,
                    AssignmentNotification.recipient_agent_id.is_(None),
                )
            )
        rows = session.scalars(stmt.order_by(AssignmentNotification.created_at.desc()).limit(limit))
        return [NotificationRead.model_validate(row) for row in rows]

    def mark_as_read(self, session: Session, company_id: uuid.UUID, notification_id: uuid.UUID) -> NotificationRead:
        notification = session.get(AssignmentNotification, notification_id)
        if notification is None or notification.company_id != company_id:
            raise NotFoundError("notification not found", details={"notification_id": str(notification_id)})
        if not notification.is_read:
            notification.is_read = True
            notification.read_at = utcnow()
            session.commit()
            session.refresh(notification)
        return NotificationRead.model_validate(notification)

    def mark_all_as_read(
        self,
        session: Session,
        company_id: uuid.UUID,
        recipient_agent_id: uuid.UUID | None = None,
    ) -> MarkAllReadResponse:
        stmt = update(AssignmentNotification).where(
            AssignmentNotification.company_id == company_id,
            AssignmentNotification.is_read.is_(False),
        )
        if recipient_agent_id is not None:
            stmt = stmt.where(AssignmentNotification.recipient_agent_id == recipient_agent_id)
        result = session.execute(
            stmt.values(is_read=True, read_at=utcnow()).execution_options(synchronize_session=False)
        )
        session.commit()
        return MarkAllReadResponse(updated=result.rowcount or 0)


@dataclass(slots=True)
class SlaEscalationService:
    fanout: NotificationFanout

    def due_level(self, settings: TenantLeadSettings, elapsed: timedelta) -> int:
        sla = timedelta(minutes=settings.sla_notify_minutes)
        if elapsed < sla:
            return 0
        if not settings.escalation_enabled:
            return 1
        delay = timedelta(minutes=settings.escalation_delay_minutes)
        if elapsed < sla + delay:
            return 1
        if elapsed < sla + 2 * delay:
            return 2
        return MAX_ESCALATION_LEVEL

    def run_sweep(
        self,
        session: Session,
        company_id: uuid.UUID,
        settings: TenantLeadSettings,
        now: datetime | None = None,
    ) -> SlaSweepResult:
        result = SlaSweepResult()
        if not settings.sla_enabled:
            return result

        current_time = now or utcnow()
        with tenant_span(tracer, "sla.sweep", company_id):
            candidates = session.scalars(
                select(Lead).where(
                    Lead.company_id == company_id,
                    Lead.assigned_agent_id.is_not(None),
                    Lead.assigned_at.is_not(None),
                    Lead.escalation_level < MAX_ESCALATION_LEVEL,
                    or_(Lead.last_contacted_at.is_(None), Lead.last_contacted_at < Lead.assigned_at),
                )
                .execution_options(populate_existing=True)
            ).all()

            for lead in candidates:
                assigned_at = ensure_utc(lead.assigned_at)
                target = self.due_level(settings, current_time - assigned_at)
                level = lead.escalation_level
                agent_id = lead.assigned_agent_id
                while level < target:
                    next_level = level + 1
                    if not self._advance(session, lead.id, agent_id, level, next_level):
                        session.rollback()
                        break
                    self._emit(session, lead, agent_id, next_level)
                    session.commit()
                    if next_level == 1:
                        result.warnings += 1
                    elif next_level == 2:
                        result.team_lead_escalations += 1
                    else:
                        result.manager_escalations += 1
                    level = next_level
        logger.info(
            "sla_sweep_completed",
            extra={"company_id": str(company_id), "processed": len(candidates)},
        )
        return result

    @staticmethod
    def _advance(
        session: Session,
        lead_id: uuid.UUID,
        agent_id: uuid.UUID | None,
        expected_level: int,
        next_level: int,
    ) -> bool:
        outcome = session.execute(
            update(Lead)
            .where(
                Lead.id == lead_id,
                Lead.escalation_level == expected_level,
                Lead.assigned_agent_id == agent_id,
            )
            .values(escalation_level=next_level)
            .execution_options(synchronize_session=False)
        )
        return outcome.rowcount == 1

    def _emit(self, session: Session, lead: Lead, agent_id: uuid.UUID | None, level: int) -> None:
        notification_type, role, title = ESCALATION_LEVELS[level]
        self.fanout.notify(
            session,
            company_id=lead.company_id,
            notification_type=notification_type,
            title=title,
            message=f"{lead.name or 'Lead'} has not been contacted since assignment",
            lead_id=lead.id,
            recipient_agent_id=agent_id if level == 1 else None,
            recipient_role=role,
        )


notification_fanout = NotificationFanout()
sla_escalation_service = SlaEscalationService(fanout=notification_fanout)
