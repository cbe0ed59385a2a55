from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from leadengine.core.timeutils import utcnow
from leadengine.scheduler.models import SchedulerLease

logger = logging.getLogger("leadengine.scheduler.lease")


@dataclass(slots=True)
class LeaseManager:
    def acquire(
        self,
        session: Session,
        company_id: uuid.UUID,
        name: str,
        holder: str,
        ttl_seconds: int,
        now: datetime | None = None,
    ) -> bool:
        current_time = now or utcnow()
        expires_at = current_time + timedelta(seconds=ttl_seconds)
        session.add(
            SchedulerLease(
                company_id=company_id,
                name=name,
                holder=holder,
                acquired_at=current_time,
                expires_at=expires_at,
            )
        )
        try:
            session.commit()
            return True
        except IntegrityError:
            session.rollback()

        result = session.execute(
            update(SchedulerLease)
            .where(
                SchedulerLease.company_id == company_id,
                SchedulerLease.name == name,
                or_(SchedulerLease.expires_at < current_time, SchedulerLease.holder == holder),
            )
            .values(holder=holder, acquired_at=current_time, expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        acquired = result.rowcount == 1
        if not acquired:
            logger.info("scheduler_lease_busy", extra={"company_id": str(company_id), "task": name})
        return acquired

    def release(self, session: Session, company_id: uuid.UUID, name: str, holder: str) -> None:
        session.execute(
            delete(SchedulerLease)
            .where(
                SchedulerLease.company_id == company_id,
                SchedulerLease.name == name,
                SchedulerLease.holder == holder,
            )
            .execution_options(synchronize_session=False)
        )
        session.commit()


lease_manager = LeaseManager()
