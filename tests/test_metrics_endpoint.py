from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadengine.api.deps import get_current_user as lead_get_current_user
from leadengine.core.auth import ActorUser, AuthUser, get_current_user as auth_get_current_user
from leadengine.core.config import get_settings
from leadengine.core.database import Base, get_db
from leadengine.directory.models import Agent
from leadengine.intake.models import LeadSource
from leadengine.main import app
from leadengine.middleware.rate_limit import reset_rate_limiter


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def company_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def roles() -> list[str]:
    return ["system.metrics.read"]


@pytest.fixture()
def client(db_session: Session, company_id: uuid.UUID, roles: list[str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_lead_user() -> ActorUser:
        return ActorUser(
            user_id="metrics-user",
            company_id=company_id,
            permissions={"assignment.rules.write"},
            correlation_id="metrics-corr-1",
        )

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=roles)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[lead_get_current_user] = override_lead_user
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_ingestion_and_scheduler_metrics(
    client: TestClient, db_session: Session, company_id: uuid.UUID
) -> None:
    db_session.add_all(
        [
            LeadSource(company_id=company_id, source_name="meta", status="connected"),
            Agent(company_id=company_id, name="Metrics Agent"),
        ]
    )
    db_session.commit()

    health = client.get("/health")
    assert health.status_code == 200

    ingested = client.post(
        "/api/intake/meta/webhook",
        params={"company_id": str(company_id)},
        json={"data": [{"id": "m-1", "field_data": [{"name": "phone_number", "values": ["+971501234567"]}]}]},
    )
    assert ingested.status_code == 200
    assert ingested.json()["created"] == 1

    run = client.post("/api/assignment/auto-reassign/run")
    assert run.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "lead_ingestion_total" in body
    assert "lead_ingestion_batch_duration_seconds" in body
    assert "lead_assignments_total" in body
    assert "scheduler_jobs_total" in body
    assert "scheduler_job_duration_seconds" in body

    assert 'path="/health"' in body
    assert 'path="/api/intake/{source}/webhook"' in body
    assert 'source="meta",outcome="created"' in body
    assert 'reason="round_robin"' in body
    assert 'job_type="auto_reassignment"' in body


@pytest.mark.parametrize("roles", [["guest"]])
def test_metrics_require_permission(client: TestClient) -> None:
    response = client.get("/metrics")

    assert response.status_code == 403
    assert response.json()["detail"] == "Missing permission: system.metrics.read"


def test_metrics_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    assert client.get("/metrics").status_code == 404
