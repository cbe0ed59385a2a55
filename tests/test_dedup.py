from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadengine.core.database import Base
from leadengine.intake.dedup import dedup_resolver, is_valid_phone, normalize_phone
from leadengine.intake.models import Lead
from leadengine.intake.normalizers import CanonicalLeadInput
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


@pytest.fixture()
def company_id() -> uuid.UUID:
    return uuid.uuid4()


def _settings(company_id: uuid.UUID, **overrides: object) -> TenantLeadSettings:
    return TenantLeadSettings(company_id=company_id, **{**DEFAULT_TENANT_SETTINGS, **overrides})


def _existing_lead(
    session: Session,
    company_id: uuid.UUID,
    *,
    source: str = "meta",
    external_id: str | None = "ext-1",
    normalized_phone: str | None = "971501234567",
    campaign_name: str | None = None,
    received_at: datetime = NOW - timedelta(days=1),
) -> Lead:
    lead = Lead(
        company_id=company_id,
        source=source,
        external_id=external_id,
        normalized_phone=normalized_phone,
        phone=normalized_phone or "",
        campaign_name=campaign_name,
        received_at=received_at,
    )
    session.add(lead)
    session.commit()
    return lead


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("+971 50 123 4567", "971501234567"),
        ("00971-50-123-4567", "971501234567"),
        ("(050) 123 4567", "0501234567"),
        ("", ""),
        (None, ""),
    ],
)
def test_normalize_phone_keeps_digits_only(raw: str | None, expected: str) -> None:
    assert normalize_phone(raw) == expected


def test_phone_length_bounds() -> None:
    assert not is_valid_phone("123456789")
    assert is_valid_phone("0501234567")
    assert is_valid_phone("1" * 15)
    assert not is_valid_phone("1" * 16)


def test_new_lead_is_created(db_session: Session, company_id: uuid.UUID) -> None:
    lead = CanonicalLeadInput(source="meta", family="ad_lead_form", external_id="new-1", phone="+971501234567")

    resolution = dedup_resolver.resolve(db_session, company_id, lead, _settings(company_id), now=NOW)

    assert resolution.action == "create"
    assert resolution.normalized_phone == "971501234567"


def test_same_external_id_is_skipped_or_updated(db_session: Session, company_id: uuid.UUID) -> None:
    existing = _existing_lead(db_session, company_id)
    lead = CanonicalLeadInput(source="meta", external_id="ext-1", phone="0509999999")

    skip = dedup_resolver.resolve(db_session, company_id, lead, _settings(company_id), now=NOW)
    update = dedup_resolver.resolve(
        db_session, company_id, lead, _settings(company_id, duplicate_action="update"), now=NOW
    )

    assert skip.action == "skip_duplicate"
    assert skip.existing_lead_id == existing.id
    assert skip.reason == "external_id"
    assert update.action == "update"
    assert update.existing_lead_id == existing.id


def test_external_id_is_scoped_by_tenant(db_session: Session, company_id: uuid.UUID) -> None:
    _existing_lead(db_session, uuid.uuid4(), normalized_phone=None)
    lead = CanonicalLeadInput(source="meta", external_id="ext-1", phone="0501234567")

    resolution = dedup_resolver.resolve(db_session, company_id, lead, _settings(company_id), now=NOW)

    assert resolution.action == "create"


def test_invalid_and_missing_phone_are_rejected(db_session: Session, company_id: uuid.UUID) -> None:
    settings = _settings(company_id)

    short = dedup_resolver.resolve(
        db_session, company_id, CanonicalLeadInput(source="meta", phone="12345"), settings, now=NOW
    )
    portal = dedup_resolver.resolve(
        db_session,
        company_id,
        CanonicalLeadInput(source="bayut", family="listing_portal", requires_phone=True, email="a@example.com"),
        settings,
        now=NOW,
    )
    no_contact = dedup_resolver.resolve(db_session, company_id, CanonicalLeadInput(source="meta"), settings, now=NOW)
    email_only = dedup_resolver.resolve(
        db_session, company_id, CanonicalLeadInput(source="website", email="a@example.com"), settings, now=NOW
    )

    assert (short.action, short.error_type) == ("reject_invalid", "invalid_phone")
    assert (portal.action, portal.error_type) == ("reject_invalid", "missing_phone")
    assert (no_contact.action, no_contact.error_type) == ("reject_invalid", "missing_phone")
    assert email_only.action == "create"


def test_strict_policy_matches_phone_across_sources(db_session: Session, company_id: uuid.UUID) -> None:
    existing = _existing_lead(db_session, company_id, source="website", external_id=None)
    lead = CanonicalLeadInput(source="meta", external_id="other", phone="+971 50 123 4567")

    resolution = dedup_resolver.resolve(db_session, company_id, lead, _settings(company_id), now=NOW)

    assert resolution.action == "skip_duplicate"
    assert resolution.existing_lead_id == existing.id
    assert resolution.reason == "phone"


def test_loose_policy_ignores_phone_when_external_id_present(db_session: Session, company_id: uuid.UUID) -> None:
    _existing_lead(db_session, company_id, source="website", external_id=None)
    settings = _settings(company_id, phone_dedup_policy="loose")

    with_id = dedup_resolver.resolve(
        db_session, company_id, CanonicalLeadInput(source="meta", external_id="x-2", phone="971501234567"), settings, now=NOW
    )
    without_id = dedup_resolver.resolve(
        db_session, company_id, CanonicalLeadInput(source="meta", phone="971501234567"), settings, now=NOW
    )

    assert with_id.action == "create"
    assert without_id.action == "skip_duplicate"


def test_phone_scope_source_and_campaign(db_session: Session, company_id: uuid.UUID) -> None:
    _existing_lead(db_session, company_id, source="website", external_id=None, campaign_name="Spring")
    lead = CanonicalLeadInput(source="meta", phone="971501234567", campaign_name="Autumn")

    by_source = dedup_resolver.resolve(
        db_session, company_id, lead, _settings(company_id, phone_dedup_scope="source"), now=NOW
    )
    by_campaign = dedup_resolver.resolve(
        db_session, company_id, lead, _settings(company_id, phone_dedup_scope="campaign"), now=NOW
    )
    same_campaign = dedup_resolver.resolve(
        db_session,
        company_id,
        lead.model_copy(update={"campaign_name": "Spring"}),
        _settings(company_id, phone_dedup_scope="campaign"),
        now=NOW,
    )

    assert by_source.action == "create"
    assert by_campaign.action == "create"
    assert same_campaign.action == "skip_duplicate"


def test_phone_match_outside_window_is_ignored(db_session: Session, company_id: uuid.UUID) -> None:
    _existing_lead(db_session, company_id, external_id=None, received_at=NOW - timedelta(days=45))
    lead = CanonicalLeadInput(source="meta", phone="971501234567")

    resolution = dedup_resolver.resolve(db_session, company_id, lead, _settings(company_id), now=NOW)

    assert resolution.action == "create"
