from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from leadengine.directory.models import Agent, LeadStage
from leadengine.errors import DependencyError, ForbiddenError, NotFoundError

logger = logging.getLogger("leadengine.directory")

DEFAULT_STAGE_NAME = "New"


@dataclass(slots=True)
class DirectoryService:
    """Read access to the agent and stage directories owned by other subsystems."""

    def get_agent(self, session: Session, company_id: uuid.UUID, agent_id: uuid.UUID) -> Agent:
        try:
            agent = session.get(Agent, agent_id)
        except OperationalError as exc:
            logger.error("agent_directory_unavailable", extra={"company_id": str(company_id), "error": str(exc)})
            raise DependencyError("agent directory unavailable") from exc
        if agent is None or not agent.is_active:
            raise NotFoundError("agent not found", details={"agent_id": str(agent_id)})
        if agent.company_id != company_id:
            raise ForbiddenError("agent belongs to a different company", details={"agent_id": str(agent_id)})
        return agent

    def list_agents(self, session: Session, company_id: uuid.UUID, role: str | None = None) -> list[Agent]:
        stmt = select(Agent).where(Agent.company_id == company_id, Agent.is_active.is_(True))
        if role is not None:
            stmt = stmt.where(Agent.role == role)
        try:
            return list(session.scalars(stmt.order_by(Agent.id.asc())))
        except OperationalError as exc:
            logger.error("agent_directory_unavailable", extra={"company_id": str(company_id), "error": str(exc)})
            raise DependencyError("agent directory unavailable") from exc

    def default_stage(self, session: Session, company_id: uuid.UUID) -> str:
        try:
            stage = session.scalar(
                select(LeadStage)
                .where(LeadStage.company_id == company_id)
                .order_by(LeadStage.is_default.desc(), LeadStage.position.asc())
                .limit(1)
            )
        except OperationalError as exc:
            logger.error("stage_directory_unavailable", extra={"company_id": str(company_id), "error": str(exc)})
            raise DependencyError("stage directory unavailable") from exc
        return stage.name if stage is not None else DEFAULT_STAGE_NAME


directory_service = DirectoryService()
