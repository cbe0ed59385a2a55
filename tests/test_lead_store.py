from __future__ import annotations

import threading
import uuid
from collections.abc import Generator
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadengine import events
from leadengine.core.database import Base
from leadengine.core.timeutils import ensure_utc
from leadengine.directory.models import LeadStage
from leadengine.errors import DuplicateError, ValidationError
from leadengine.intake.dedup import Resolution
from leadengine.intake.models import IngestionLog, Lead, LeadSource
from leadengine.intake.normalizers import CanonicalLeadInput
from leadengine.intake.service import intake_service
from leadengine.intake.store import IngestionCounts, UpsertResult, clamp_received_at, lead_store
from leadengine.tenants.models import TenantLeadSettings
from leadengine.tenants.service import DEFAULT_TENANT_SETTINGS

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


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
def clear_stubs() -> Generator[None, None, None]:
    events.published_events.clear()
    yield
    events.published_events.clear()


@pytest.fixture()
def company_id() -> uuid.UUID:
    return uuid.uuid4()


def _settings(company_id: uuid.UUID, **overrides: object) -> TenantLeadSettings:
    return TenantLeadSettings(company_id=company_id, **{**DEFAULT_TENANT_SETTINGS, **overrides})


def _lead_input(**overrides: object) -> CanonicalLeadInput:
    fields: dict[str, object] = {
        "source": "meta",
        "family": "ad_lead_form",
        "external_id": "lg-1",
        "name": "Sara",
        "phone": "+971501234567",
    }
    fields.update(overrides)
    return CanonicalLeadInput(**fields)


def _count_leads(session: Session, company_id: uuid.UUID) -> int:
    return session.scalar(select(func.count()).select_from(Lead).where(Lead.company_id == company_id)) or 0


def test_create_uses_default_stage_and_publishes_event(db_session: Session, company_id: uuid.UUID) -> None:
    db_session.add(LeadStage(company_id=company_id, name="Fresh", position=0, is_default=True))
    db_session.commit()

    result = lead_store.upsert(
        db_session,
        company_id,
        _lead_input(),
        Resolution(action="create", normalized_phone="971501234567"),
        _settings(company_id),
        now=NOW,
    )

    assert result.outcome == "created"
    lead = db_session.get(Lead, result.lead_id)
    assert lead is not None
    assert lead.stage == "Fresh"
    assert lead.is_new is True
    assert lead.normalized_phone == "971501234567"
    created = [item for item in events.published_events if item["event_type"] == "lead.created"]
    assert created and created[-1]["lead_id"] == str(result.lead_id)


def test_stale_create_resolution_skips_against_existing_lead(db_session: Session, company_id: uuid.UUID) -> None:
    resolution = Resolution(action="create", normalized_phone="971501234567")

    first = lead_store.upsert(db_session, company_id, _lead_input(), resolution, _settings(company_id), now=NOW)
    second = lead_store.upsert(db_session, company_id, _lead_input(), resolution, _settings(company_id), now=NOW)

    assert first.outcome == "created"
    assert second.outcome == "skipped"
    assert second.lead_id == first.lead_id
    assert _count_leads(db_session, company_id) == 1


def test_stale_create_resolution_updates_existing_lead_when_configured(db_session: Session, company_id: uuid.UUID) -> None:
    resolution = Resolution(action="create", normalized_phone="971501234567")
    settings = _settings(company_id, duplicate_action="update")

    first = lead_store.upsert(db_session, company_id, _lead_input(), resolution, settings, now=NOW)
    second = lead_store.upsert(
        db_session, company_id, _lead_input(email="sara@example.com"), resolution, settings, now=NOW
    )

    assert second.outcome == "updated"
    lead = db_session.get(Lead, first.lead_id)
    assert lead is not None
    assert lead.email == "sara@example.com"
    assert lead.row_version == 2


def test_racing_inserts_from_two_sessions_yield_one_lead(tmp_path: Path, company_id: uuid.UUID) -> None:
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    resolution = Resolution(action="create", normalized_phone="971501234567")
    barrier = threading.Barrier(2)

    def insert() -> UpsertResult:
        with SessionLocal() as session:
            barrier.wait(timeout=10)
            return lead_store.upsert(session, company_id, _lead_input(), resolution, _settings(company_id), now=NOW)

    try:
        with ThreadPoolExecutor(max_workers=2) as pool:
            results = [future.result(timeout=60) for future in [pool.submit(insert), pool.submit(insert)]]

        assert sorted(result.outcome for result in results) == ["created", "skipped"]
        assert results[0].lead_id == results[1].lead_id
        with SessionLocal() as session:
            assert _count_leads(session, company_id) == 1
        assert len([item for item in events.published_events if item["event_type"] == "lead.created"]) == 1
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


def test_reject_policy_raises_duplicate(db_session: Session, company_id: uuid.UUID) -> None:
    resolution = Resolution(action="create", normalized_phone="971501234567")
    settings = _settings(company_id, duplicate_action="reject")
    lead_store.upsert(db_session, company_id, _lead_input(), resolution, settings, now=NOW)

    with pytest.raises(DuplicateError):
        lead_store.upsert(db_session, company_id, _lead_input(), resolution, settings, now=NOW)


def test_invalid_resolution_raises_validation_error(db_session: Session, company_id: uuid.UUID) -> None:
    with pytest.raises(ValidationError) as exc_info:
        lead_store.upsert(
            db_session,
            company_id,
            _lead_input(phone=""),
            Resolution(action="reject_invalid", normalized_phone="", reason="phone number is required", error_type="missing_phone"),
            _settings(company_id),
            now=NOW,
        )
    assert exc_info.value.error_type == "missing_phone"
    assert _count_leads(db_session, company_id) == 0


def test_future_provider_timestamp_is_clamped(db_session: Session, company_id: uuid.UUID) -> None:
    assert clamp_received_at(NOW + timedelta(hours=3), NOW) == NOW
    assert clamp_received_at(NOW - timedelta(hours=3), NOW) == NOW - timedelta(hours=3)
    assert clamp_received_at(None, NOW) == NOW

    result = lead_store.upsert(
        db_session,
        company_id,
        _lead_input(provider_created_at=NOW + timedelta(days=2)),
        Resolution(action="create", normalized_phone="971501234567"),
        _settings(company_id),
        now=NOW,
    )
    lead = db_session.get(Lead, result.lead_id)
    assert lead is not None
    assert ensure_utc(lead.received_at) == NOW


def test_ingestion_log_status_reflects_counts(db_session: Session, company_id: uuid.UUID) -> None:
    clean = IngestionCounts()
    clean.add("created")
    partial = IngestionCounts()
    partial.add("created")
    partial.add("error")

    ok_row = lead_store.record_ingestion(db_session, company_id, "meta", clean, duration_ms=4)
    partial_row = lead_store.record_ingestion(db_session, company_id, "meta", partial)
    failed_row = lead_store.record_ingestion(db_session, company_id, "meta", IngestionCounts(), error_message="db down")

    assert (ok_row.status, ok_row.processed, ok_row.created) == ("success", 1, 1)
    assert (partial_row.status, partial_row.errors) == ("partial", 1)
    assert failed_row.status == "failed"


def test_redelivered_batch_is_idempotent(db_session: Session, company_id: uuid.UUID) -> None:
    db_session.add(LeadSource(company_id=company_id, source_name="meta", status="connected"))
    db_session.commit()
    payload = {
        "data": [
            {"id": "lg-1", "field_data": [{"name": "phone_number", "values": ["+971501234567"]}]},
            {"id": "lg-2", "field_data": [{"name": "phone_number", "values": ["+971507654321"]}]},
            {"id": "lg-3", "field_data": [{"name": "phone_number", "values": ["123"]}]},
        ]
    }

    first = intake_service.ingest(db_session, company_id, "meta", payload)
    second = intake_service.ingest(db_session, company_id, "facebook", payload)

    assert (first.processed, first.created, first.skipped, first.errors) == (3, 2, 0, 1)
    assert (second.processed, second.created, second.skipped, second.errors) == (3, 0, 2, 1)
    assert _count_leads(db_session, company_id) == 2

    logs = db_session.scalars(select(IngestionLog).where(IngestionLog.company_id == company_id)).all()
    assert len(logs) == 2
    assert {log.status for log in logs} == {"partial"}

    source = db_session.scalar(select(LeadSource).where(LeadSource.company_id == company_id))
    assert source is not None
    assert source.total_leads_fetched == 2
    assert source.last_received_at is not None


class _LockedRouter:
    def route_new_lead(self, *args: object, **kwargs: object) -> None:
        raise OperationalError("UPDATE agent_loads", {}, Exception("database is locked"))


def test_routing_database_failure_keeps_created_outcome(
    db_session: Session, company_id: uuid.UUID, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(intake_service, "router", _LockedRouter())
    payload = {"data": [{"id": "lg-9", "field_data": [{"name": "phone_number", "values": ["+971501234567"]}]}]}

    response = intake_service.ingest(db_session, company_id, "meta", payload)

    assert (response.processed, response.created, response.errors) == (1, 1, 0)
    lead = db_session.scalar(select(Lead).where(Lead.company_id == company_id))
    assert lead is not None
    assert lead.external_id == "lg-9"
    assert lead.assigned_agent_id is None
