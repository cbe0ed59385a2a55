from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadengine import audit, events
from leadengine.api.deps import get_current_user
from leadengine.core.auth import ActorUser
from leadengine.core.config import get_settings
from leadengine.core.database import Base, get_db
from leadengine.directory.models import Agent
from leadengine.intake.models import Lead
from leadengine.main import app
from leadengine.middleware.rate_limit import reset_rate_limiter

ALL_PERMISSIONS = {
    "leads.read",
    "leads.write",
    "leads.assign",
    "agents.manage",
    "assignment.rules.read",
    "assignment.rules.write",
    "notifications.read",
    "tenant.settings.read",
    "tenant.settings.write",
}


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
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def company_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def granted() -> set[str]:
    return set(ALL_PERMISSIONS)


@pytest.fixture()
def client(db_session: Session, company_id: uuid.UUID, granted: set[str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            company_id=company_id,
            permissions=set(granted),
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def agents(db_session: Session, company_id: uuid.UUID) -> list[str]:
    rows = [Agent(company_id=company_id, name="Aisha"), Agent(company_id=company_id, name="Bilal")]
    db_session.add_all(rows)
    db_session.commit()
    return [str(row.id) for row in rows]


def _lead(session: Session, company_id: uuid.UUID, name: str = "Pending Lead") -> str:
    lead = Lead(company_id=company_id, source="website", name=name, phone="0501234567")
    session.add(lead)
    session.commit()
    return str(lead.id)


def test_assign_history_and_undo(client: TestClient, db_session: Session, company_id: uuid.UUID, agents: list[str]) -> None:
    lead_id = _lead(db_session, company_id)

    assigned = client.post(f"/api/leads/{lead_id}/assign", json={"agent_id": agents[0]})
    assert assigned.status_code == 200
    assert assigned.json()["new_agent_id"] == agents[0]
    assert assigned.json()["change_reason"] == "manual"

    lead = client.get(f"/api/leads/{lead_id}")
    assert lead.json()["assigned_agent_id"] == agents[0]

    undone = client.post(f"/api/leads/{lead_id}/undo-assignment")
    assert undone.status_code == 200
    assert undone.json() == {"undone": True}

    history = client.get(f"/api/leads/{lead_id}/assignment-history")
    assert [row["change_reason"] for row in history.json()] == ["manual", "undo"]
    assert history.json()[0]["undone_at"] is not None
    assert client.get(f"/api/leads/{lead_id}").json()["assigned_agent_id"] is None

    again = client.post(f"/api/leads/{lead_id}/undo-assignment")
    assert again.json() == {"undone": False}
    assert [entry["action"] for entry in audit.trail_for("lead", lead_id)] == ["assign", "undo_assignment"]


def test_list_filters_and_missing_lead(
    client: TestClient, db_session: Session, company_id: uuid.UUID, agents: list[str]
) -> None:
    pending_id = _lead(db_session, company_id, "Waiting")
    owned_id = _lead(db_session, company_id, "Owned")
    _lead(db_session, uuid.uuid4(), "Other tenant")
    client.post(f"/api/leads/{owned_id}/assign", json={"agent_id": agents[1]})

    everything = client.get("/api/leads")
    pending = client.get("/api/leads", params={"pending": "true"})
    by_agent = client.get("/api/leads", params={"agent_id": agents[1]})
    missing = client.get(f"/api/leads/{uuid.uuid4()}")

    assert {row["id"] for row in everything.json()} == {pending_id, owned_id}
    assert [row["id"] for row in pending.json()] == [pending_id]
    assert [row["id"] for row in by_agent.json()] == [owned_id]
    assert missing.status_code == 404
    assert missing.json()["code"] == "not_found"
    assert missing.json()["correlation_id"] == missing.headers["x-correlation-id"]


def test_priority_contact_and_stage_updates(client: TestClient, db_session: Session, company_id: uuid.UUID) -> None:
    lead_id = _lead(db_session, company_id)

    priority = client.patch(f"/api/leads/{lead_id}/priority", json={"priority": "urgent"})
    invalid = client.patch(f"/api/leads/{lead_id}/priority", json={"priority": "whenever"})
    contact = client.post(f"/api/leads/{lead_id}/contact", json={})
    stage = client.patch(f"/api/leads/{lead_id}/stage", json={"stage": "Contacted"})

    assert priority.status_code == 200
    assert priority.json()["assignment_priority"] == "urgent"
    assert invalid.status_code == 422
    assert contact.json()["last_contacted_at"] is not None
    assert contact.json()["is_new"] is False
    assert stage.json()["stage"] == "Contacted"


def test_bulk_assign_is_all_or_nothing(
    client: TestClient, db_session: Session, company_id: uuid.UUID, agents: list[str]
) -> None:
    first = _lead(db_session, company_id, "One")
    second = _lead(db_session, company_id, "Two")
    missing = str(uuid.uuid4())

    rejected = client.post("/api/leads/bulk-assign", json={"lead_ids": [first, missing], "agent_id": agents[0]})
    assert rejected.status_code == 404
    assert rejected.json()["details"] == {"failed_lead_ids": [missing]}
    assert len(client.get("/api/leads", params={"pending": "true"}).json()) == 2

    accepted = client.post("/api/leads/bulk-assign", json={"lead_ids": [first, second], "agent_id": agents[0]})
    assert accepted.status_code == 200
    assert accepted.json() == {"assigned": 2}

    loads = {row["agent_id"]: row for row in client.get("/api/agents/load").json()}
    assert loads[agents[0]]["current_leads_count"] == 2
    assert loads[agents[1]]["current_leads_count"] == 0


def test_agent_availability_update(client: TestClient, agents: list[str]) -> None:
    response = client.patch(
        f"/api/agents/{agents[1]}/availability",
        json={"is_available": False, "max_leads_capacity": 5},
    )
    unknown = client.patch(f"/api/agents/{uuid.uuid4()}/availability", json={"is_available": True})

    assert response.status_code == 200
    assert response.json()["is_available"] is False
    assert response.json()["max_leads_capacity"] == 5
    assert unknown.status_code == 404
    assert audit.audit_entries[-1]["action"] == "update_availability"


def test_rule_lifecycle_and_manual_run(client: TestClient) -> None:
    created = client.post(
        "/api/assignment/rules",
        json={"name": "Two day rule", "days_without_contact": 2, "apply_to_stages": ["New", " New ", "Contacted"]},
    )
    assert created.status_code == 201
    rule_id = created.json()["id"]
    assert created.json()["apply_to_stages"] == ["New", "Contacted"]

    updated = client.patch(f"/api/assignment/rules/{rule_id}", json={"days_without_contact": 5})
    assert updated.json()["days_without_contact"] == 5

    toggled = client.post(f"/api/assignment/rules/{rule_id}/toggle")
    assert toggled.json()["is_active"] is False
    assert client.get("/api/assignment/rules", params={"active": "true"}).json() == []
    assert len(client.get("/api/assignment/rules").json()) == 1

    run = client.post("/api/assignment/auto-reassign/run")
    assert run.status_code == 200
    assert run.json()["lease_acquired"] is True
    assert run.json()["rules_evaluated"] == 0

    deleted = client.delete(f"/api/assignment/rules/{rule_id}")
    assert deleted.json() == {"status": "deleted"}
    assert client.patch(f"/api/assignment/rules/{rule_id}", json={"name": "Gone"}).status_code == 404

    blank = client.post("/api/assignment/rules", json={"apply_to_stages": [" "]})
    assert blank.status_code == 422


def test_routing_rule_lifecycle(client: TestClient, agents: list[str]) -> None:
    created = client.post(
        "/api/assignment/routing-rules",
        json={
            "name": "Marina villas",
            "priority": 10,
            "conditions": {"location": "Marina", "budget_min": 1000000},
            "assign_to_agent_id": agents[1],
        },
    )
    assert created.status_code == 201
    rule_id = created.json()["id"]
    assert created.json()["conditions"]["location"] == "Marina"
    assert created.json()["enabled"] is True

    client.post("/api/assignment/routing-rules", json={"name": "Catch all", "assign_to_agent_id": agents[0]})
    listed = client.get("/api/assignment/routing-rules").json()
    assert [rule["name"] for rule in listed] == ["Marina villas", "Catch all"]

    updated = client.patch(f"/api/assignment/routing-rules/{rule_id}", json={"enabled": False, "priority": 1})
    assert updated.json()["enabled"] is False
    assert updated.json()["priority"] == 1
    assert updated.json()["conditions"]["location"] == "Marina"

    deleted = client.delete(f"/api/assignment/routing-rules/{rule_id}")
    assert deleted.json() == {"status": "deleted"}
    assert client.delete(f"/api/assignment/routing-rules/{rule_id}").status_code == 404
    assert [entry["action"] for entry in audit.trail_for("lead_routing_rule", rule_id)] == ["create", "update", "delete"]

    inverted = client.post(
        "/api/assignment/routing-rules",
        json={"name": "Bad range", "conditions": {"budget_min": 10, "budget_max": 5}},
    )
    assert inverted.status_code == 422
    unknown_agent = client.post(
        "/api/assignment/routing-rules",
        json={"name": "Nobody", "assign_to_agent_id": str(uuid.uuid4())},
    )
    assert unknown_agent.status_code == 404


def test_portal_mapping_lifecycle(client: TestClient, agents: list[str]) -> None:
    created = client.post(
        "/api/assignment/portal-mappings",
        json={"portal_name": "PropertyFinder", "portal_agent_id": " pf-42 ", "agent_id": agents[0]},
    )
    assert created.status_code == 201
    assert created.json()["portal_name"] == "property_finder"
    assert created.json()["portal_agent_id"] == "pf-42"

    duplicate = client.post(
        "/api/assignment/portal-mappings",
        json={"portal_name": "property_finder", "portal_agent_id": "pf-42", "agent_id": agents[1]},
    )
    assert duplicate.status_code == 409

    not_a_portal = client.post(
        "/api/assignment/portal-mappings",
        json={"portal_name": "tiktok", "portal_agent_id": "t-1", "agent_id": agents[1]},
    )
    assert not_a_portal.status_code == 422

    assert len(client.get("/api/assignment/portal-mappings", params={"portal": "property_finder"}).json()) == 1
    assert client.get("/api/assignment/portal-mappings", params={"portal": "bayut"}).json() == []

    mapping_id = created.json()["id"]
    assert client.delete(f"/api/assignment/portal-mappings/{mapping_id}").json() == {"status": "deleted"}
    assert client.delete(f"/api/assignment/portal-mappings/{mapping_id}").status_code == 404


def test_tenant_settings_round_trip(client: TestClient, company_id: uuid.UUID) -> None:
    defaults = client.get("/api/tenant-settings")
    assert defaults.status_code == 200
    assert defaults.json()["duplicate_action"] == "skip"
    assert defaults.json()["sla_notify_minutes"] == 15

    updated = client.put(
        "/api/tenant-settings",
        json={"duplicate_action": "update", "default_assignment_method": "load_aware", "working_hours_start": "08:30"},
    )
    assert updated.status_code == 200
    assert updated.json()["company_id"] == str(company_id)
    assert updated.json()["default_assignment_method"] == "load_aware"
    assert client.get("/api/tenant-settings").json()["working_hours_start"] == "08:30"

    rules = client.put("/api/tenant-settings", json={"default_assignment_method": "rules"})
    assert rules.json()["default_assignment_method"] == "rules"

    invalid = client.put("/api/tenant-settings", json={"working_hours_end": "25:00"})
    assert invalid.status_code == 422


def test_assignment_notifications_can_be_read(
    client: TestClient, db_session: Session, company_id: uuid.UUID, agents: list[str]
) -> None:
    lead_id = _lead(db_session, company_id)
    client.post(f"/api/leads/{lead_id}/assign", json={"agent_id": agents[0]})
    client.post(f"/api/leads/{lead_id}/assign", json={"agent_id": agents[1]})

    unread = client.get("/api/notifications", params={"unread": "true"})
    assert unread.status_code == 200
    assert {row["notification_type"] for row in unread.json()} == {"lead_assigned", "lead_reassigned"}

    first_id = unread.json()[0]["id"]
    read = client.post(f"/api/notifications/{first_id}/read")
    assert read.json()["is_read"] is True

    remaining = client.post("/api/notifications/read-all")
    assert remaining.json() == {"updated": 1}
    assert client.get("/api/notifications", params={"unread": "true"}).json() == []


def test_missing_permission_is_forbidden(
    client: TestClient, db_session: Session, company_id: uuid.UUID, agents: list[str], granted: set[str]
) -> None:
    lead_id = _lead(db_session, company_id)
    granted.clear()
    granted.add("leads.read")

    response = client.post(f"/api/leads/{lead_id}/assign", json={"agent_id": agents[0]})

    assert response.status_code == 403
    assert response.json()["message"] == "Missing permission: leads.assign"
    assert client.get(f"/api/leads/{lead_id}").status_code == 200
    assert client.get("/api/tenant-settings").status_code == 403
