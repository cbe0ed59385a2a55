from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from leadengine.api.deps import get_current_user
from leadengine.core.auth import ActorUser
from leadengine.core.config import get_settings
from leadengine.core.database import Base, get_db
from leadengine.intake.models import Lead, LeadSource
from leadengine.main import app
from leadengine.middleware.rate_limit import reset_rate_limiter
from leadengine.notifications.service import sla_escalation_service
from leadengine.otel import setup_inmemory_otel
from leadengine.tenants.service import tenant_settings_service


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
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


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


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.get("/api/leads", headers={"X-Correlation-Id": "otel-corr-1"})
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_ingest_span_carries_tenant_and_correlation(
    client: TestClient,
    db_session: Session,
    company_id: uuid.UUID,
    span_exporter: InMemorySpanExporter,
) -> None:
    db_session.add(LeadSource(company_id=company_id, source_name="tiktok", status="connected"))
    db_session.commit()

    response = client.post(
        "/api/intake/tiktok/webhook",
        params={"company_id": str(company_id)},
        json={"leads": [{"lead_id": "tt-1", "user_info": {"phone_number": "+971501234567"}}]},
        headers={"X-Correlation-Id": "otel-ingest-1"},
    )
    assert response.status_code == 200

    ingest_spans = [span for span in span_exporter.get_finished_spans() if span.name == "intake.ingest"]
    assert ingest_spans
    assert any(
        span.attributes.get("company_id") == str(company_id)
        and span.attributes.get("source") == "tiktok"
        and span.attributes.get("correlation_id") == "otel-ingest-1"
        and span.attributes.get("processed") == 1
        for span in ingest_spans
    )


def test_sla_sweep_emits_span(db_session: Session, company_id: uuid.UUID, span_exporter: InMemorySpanExporter) -> None:
    assigned_at = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)
    db_session.add(
        Lead(
            company_id=company_id,
            source="website",
            assigned_agent_id=uuid.uuid4(),
            assigned_at=assigned_at,
            received_at=assigned_at,
        )
    )
    db_session.commit()

    settings = tenant_settings_service.get_settings(db_session, company_id)
    sla_escalation_service.run_sweep(db_session, company_id, settings, now=assigned_at + timedelta(minutes=20))

    sweep_spans = [span for span in span_exporter.get_finished_spans() if span.name == "sla.sweep"]
    assert sweep_spans
    assert sweep_spans[-1].attributes.get("company_id") == str(company_id)
