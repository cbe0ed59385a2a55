from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadengine import events, tasks
from leadengine.assignment.models import AgentLoad, AutoReassignmentRule
from leadengine.core.config import get_settings
from leadengine.core.database import Base
from leadengine.directory.models import Agent
from leadengine.intake.models import Lead
from leadengine.notifications.models import AssignmentNotification
from leadengine.portal.models import PortalImportError


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session(engine: Engine, monkeypatch: pytest.MonkeyPatch) -> Generator[Session, None, None]:
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    monkeypatch.setattr(tasks, "SessionLocal", SessionLocal)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _agent(session: Session, company_id: uuid.UUID, name: str) -> uuid.UUID:
    agent = Agent(company_id=company_id, name=name)
    session.add(agent)
    session.commit()
    return agent.id


def _lead(session: Session, company_id: uuid.UUID, **fields: Any) -> uuid.UUID:
    lead = Lead(company_id=company_id, source="website", name="Task Lead", phone="0501234567", **fields)
    session.add(lead)
    session.commit()
    return lead.id


def test_sla_task_sweeps_every_company(db_session: Session) -> None:
    companies = [uuid.uuid4(), uuid.uuid4()]
    assigned_at = _now() - timedelta(minutes=20)
    for company_id in companies:
        _lead(db_session, company_id, assigned_agent_id=uuid.uuid4(), assigned_at=assigned_at, received_at=assigned_at)

    result = tasks.run_sla_escalation()

    assert result["failures"] == 0
    assert set(result["companies"]) == {str(company_id) for company_id in companies}
    assert all(summary["warnings"] == 1 for summary in result["companies"].values())
    warnings = db_session.scalars(
        select(AssignmentNotification).where(AssignmentNotification.notification_type == "sla_warning")
    ).all()
    assert len(warnings) == 2


def test_failing_company_does_not_stop_others(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    broken, healthy = uuid.uuid4(), uuid.uuid4()
    assigned_at = _now() - timedelta(minutes=20)
    for company_id in (broken, healthy):
        _lead(db_session, company_id, assigned_agent_id=uuid.uuid4(), assigned_at=assigned_at, received_at=assigned_at)
    original = tasks._escalate

    def flaky(session: Session, company_id: uuid.UUID) -> dict[str, Any]:
        if company_id == broken:
            raise RuntimeError("tenant settings unreadable")
        return original(session, company_id)

    monkeypatch.setattr(tasks, "_escalate", flaky)

    result = tasks.run_sla_escalation()

    assert result["failures"] == 1
    assert list(result["companies"]) == [str(healthy)]


def test_drain_task_assigns_pending_leads(db_session: Session) -> None:
    company_id = uuid.uuid4()
    agent_id = _agent(db_session, company_id, "Drainer")
    lead_id = _lead(db_session, company_id)

    result = tasks.drain_pending_assignments()

    assert result["companies"] == {str(company_id): {"assigned": 1}}
    db_session.expire_all()
    lead = db_session.get(Lead, lead_id)
    assert lead is not None
    assert lead.assigned_agent_id == agent_id


def test_portal_retry_task_resolves_processing_errors(db_session: Session) -> None:
    company_id = uuid.uuid4()
    row = PortalImportError(
        company_id=company_id,
        portal_name="bayut",
        lead_data={"enquiry_id": "bq-11", "customer_phone": "0501234567"},
        error_message="database unavailable",
        error_type="processing_error",
    )
    db_session.add(row)
    db_session.commit()

    result = tasks.retry_portal_imports()

    assert result["companies"] == {str(company_id): {"resolved": 1}}
    db_session.expire_all()
    refreshed = db_session.get(PortalImportError, row.id)
    assert refreshed is not None
    assert refreshed.resolved is True
    assert refreshed.lead_id is not None


def test_auto_reassignment_task_runs_for_companies_with_rules(db_session: Session) -> None:
    company_id = uuid.uuid4()
    owner = _agent(db_session, company_id, "Owner")
    backup = _agent(db_session, company_id, "Backup")
    db_session.add(AutoReassignmentRule(company_id=company_id, name="Stale", days_without_contact=3, apply_to_stages=["New"]))
    db_session.add(AgentLoad(company_id=company_id, agent_id=owner, current_leads_count=1))
    db_session.commit()
    stale_since = _now() - timedelta(days=5)
    lead_id = _lead(
        db_session, company_id, assigned_agent_id=owner, assigned_at=stale_since, received_at=stale_since
    )

    result = tasks.run_auto_reassignment()

    summary = result["companies"][str(company_id)]
    assert summary["lease_acquired"] is True
    assert summary["reassigned"] == 1
    db_session.expire_all()
    lead = db_session.get(Lead, lead_id)
    assert lead is not None
    assert lead.assigned_agent_id == backup
