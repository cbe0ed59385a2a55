from __future__ import annotations

import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadengine.api.deps import get_current_user
from leadengine.core.auth import ActorUser
from leadengine.core.config import get_settings
from leadengine.core.database import Base, get_db
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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
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
def client(db_session: Session, company_id: uuid.UUID) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            company_id=company_id,
            permissions={"leads.read"},
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get(f"/api/leads/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [
        record for record in caplog.records if record.name == "leadengine.request" and record.getMessage() == "http.request"
    ]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/leads/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_ingestion_logs_carry_tenant_and_correlation_id(
    client: TestClient,
    db_session: Session,
    company_id: uuid.UUID,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    db_session.add(LeadSource(company_id=company_id, source_name="website", status="connected"))
    db_session.commit()

    response = client.post(
        "/api/intake/website/webhook",
        params={"company_id": str(company_id)},
        json={"submissions": [{"name": "Log Lead", "phone": "0501234567"}, {"name": "Bot", "_honeypot": "x"}]},
        headers={"X-Correlation-Id": "ingest-corr-1"},
    )
    assert response.status_code == 200

    records = [record for record in caplog.records if record.name == "leadengine.intake"]
    assert any(
        record.getMessage() == "ingestion_completed"
        and getattr(record, "company_id", None) == str(company_id)
        and getattr(record, "source", None) == "website"
        and getattr(record, "created_count", None) == 1
        and getattr(record, "correlation_id", None) == "ingest-corr-1"
        for record in records
    )
    path_records = [record for record in caplog.records if record.name == "leadengine.request"]
    assert any(getattr(record, "path", None) == "/api/intake/{source}/webhook" for record in path_records)
