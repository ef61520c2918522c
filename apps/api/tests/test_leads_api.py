from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.auth import AuthUser, get_current_user as auth_get_current_user
from app.core.config import get_settings
from app.core.database import Base, SessionFactory, get_db, get_session_factory
from app.crm.enums import ContactType
from app.crm.models import CRMContact, CRMInteraction
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


TENANT_ID = "tenant-api"

ALL_PERMISSIONS = [
    "crm.leads.read",
    "crm.leads.score",
    "crm.leads.allocate",
    "crm.nurture.read",
    "crm.nurture.manage",
    "crm.sales_reps.read",
    "crm.sales_reps.manage",
]


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
    monkeypatch.setenv("SCORING_BATCH_CONCURRENCY", "1")
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def auth_user() -> AuthUser:
    return AuthUser(sub="user-1", roles=list(ALL_PERMISSIONS), tenant_id=TENANT_ID, licensed_modules=["crm"])


@pytest.fixture()
def client(db_session: Session, auth_user: AuthUser) -> Generator[TestClient, None, None]:
    session_factory: SessionFactory = sessionmaker(bind=db_session.get_bind(), autocommit=False, autoflush=False)

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_session_factory() -> SessionFactory:
        return session_factory

    def override_auth_user() -> AuthUser:
        return auth_user

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = override_session_factory
    app.dependency_overrides[auth_get_current_user] = override_auth_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _lead(db_session: Session, *, name: str = "Noor Haddad", contact_type: ContactType = ContactType.LEAD) -> CRMContact:
    contact = CRMContact(
        tenant_id=TENANT_ID,
        type=contact_type,
        name=name,
        email=f"{name.split(' ')[0].lower()}@example.com",
        company="Haddad Logistics",
        industry="Logistics",
        source="Referral",
    )
    db_session.add(contact)
    db_session.commit()
    return contact


def _template(client: TestClient, name: str = "Welcome") -> dict:
    response = client.post(
        "/api/crm/nurture/templates",
        json={
            "name": name,
            "description": "Welcome series",
            "steps": [
                {"order": 1, "day_offset": 0, "channel": "EMAIL", "subject": "Hi {{first_name}}", "body": "Welcome"},
                {"order": 2, "day_offset": 3, "channel": "EMAIL", "subject": "Tips", "body": "Some tips"},
                {"order": 3, "day_offset": 7, "channel": "SMS", "subject": "Call?", "body": "Want a call?"},
            ],
        },
    )
    assert response.status_code == 201
    return response.json()


def test_unlicensed_tenant_is_rejected(client: TestClient, db_session: Session, auth_user: AuthUser) -> None:
    lead = _lead(db_session)
    auth_user.licensed_modules = []

    response = client.post(f"/api/crm/leads/{lead.id}/score", headers={"X-Correlation-Id": "lic-1"})

    assert response.status_code == 403
    body = response.json()
    assert body["code"] == "crm_not_licensed"
    assert body["correlation_id"] == "lic-1"


def test_identity_without_tenant_is_unauthorized(client: TestClient, auth_user: AuthUser) -> None:
    auth_user.tenant_id = None

    response = client.get("/api/crm/sales-reps")

    assert response.status_code == 401
    assert response.json()["code"] == "tenant_required"


def test_missing_permission_is_forbidden(client: TestClient, db_session: Session, auth_user: AuthUser) -> None:
    lead = _lead(db_session)
    auth_user.roles = ["crm.leads.read"]

    response = client.post(f"/api/crm/leads/{lead.id}/score")

    assert response.status_code == 403
    body = response.json()
    assert body["code"] == "missing_permission"
    assert body["message"] == "Missing permission: crm.leads.score"


def test_unknown_lead_returns_not_found_envelope(client: TestClient) -> None:
    response = client.post(f"/api/crm/leads/{uuid.uuid4()}/score", headers={"X-Correlation-Id": "nf-1"})

    assert response.status_code == 404
    body = response.json()
    assert body["code"] == "not_found"
    assert body["message"] == "contact not found"
    assert body["details"]["resource"] == "contact"
    assert body["correlation_id"] == "nf-1"


def test_score_preview_and_batch(client: TestClient, db_session: Session) -> None:
    lead = _lead(db_session)
    db_session.add(CRMInteraction(tenant_id=TENANT_ID, contact_id=lead.id, channel="meeting"))
    db_session.commit()
    _lead(db_session, name="Sam Ortiz")
    _lead(db_session, name="Vendor Co", contact_type=ContactType.VENDOR)

    preview = client.get(f"/api/crm/leads/{lead.id}/score")
    assert preview.status_code == 200
    assert preview.json()["current_score"] is None

    scored = client.post(f"/api/crm/leads/{lead.id}/score")
    assert scored.status_code == 200
    payload = scored.json()
    assert payload["score"] == preview.json()["score"]
    assert payload["components"]["engagement"] == 10.0
    assert set(payload["components"]) == {"recency", "engagement", "source", "firmographic", "open_deal"}

    batch = client.post("/api/crm/leads/score/batch")
    assert batch.status_code == 200
    report = batch.json()
    assert report["count"] == 2
    assert report["succeeded"] == 2
    assert report["failed"] == 0


def test_allocation_flow(client: TestClient, db_session: Session) -> None:
    lead = _lead(db_session)

    no_reps = client.get(f"/api/crm/leads/{lead.id}/allocation-suggestions")
    assert no_reps.status_code == 422
    assert no_reps.json()["code"] == "no_eligible_rep"

    reps = [
        client.post(
            "/api/crm/sales-reps",
            json={"user_id": f"u-{rate}", "name": f"Rep {rate}", "specialization": "logistics", "conversion_rate": rate},
        )
        for rate in (40, 80, 60)
    ]
    assert all(response.status_code == 201 for response in reps)

    duplicate = client.post("/api/crm/sales-reps", json={"user_id": "u-40", "name": "Again"})
    assert duplicate.status_code == 409

    suggestions = client.get(f"/api/crm/leads/{lead.id}/allocation-suggestions")
    assert suggestions.status_code == 200
    assert [item["rep"]["conversion_rate"] for item in suggestions.json()] == [80.0, 60.0, 40.0]

    top_rep_id = suggestions.json()[0]["rep"]["id"]
    leave = client.put(f"/api/crm/sales-reps/{top_rep_id}/leave", json={"is_on_leave": True})
    assert leave.status_code == 200
    assert leave.json()["is_on_leave"] is True

    allocated = client.post(f"/api/crm/leads/{lead.id}/allocate", json={"auto_assign": True})
    assert allocated.status_code == 200
    body = allocated.json()
    assert body["assigned"] is True
    assert body["rep"]["conversion_rate"] == 60.0

    manual = client.post(f"/api/crm/leads/{lead.id}/allocate", json={"rep_id": top_rep_id})
    assert manual.status_code == 200
    assert manual.json()["rep"]["id"] == top_rep_id
    assert manual.json()["changed"] is True

    roster = client.get("/api/crm/sales-reps")
    assert roster.status_code == 200
    assert len(roster.json()) == 3


def test_nurture_flow(client: TestClient, db_session: Session) -> None:
    lead = _lead(db_session)
    template = _template(client)

    invalid = client.post(
        "/api/crm/nurture/templates",
        json={
            "name": "Broken",
            "steps": [
                {"order": 1, "day_offset": 5, "subject": "a", "body": "a"},
                {"order": 2, "day_offset": 1, "subject": "b", "body": "b"},
            ],
        },
    )
    assert invalid.status_code == 422
    assert invalid.json()["code"] == "invalid_template"

    listed = client.get("/api/crm/nurture/templates")
    assert [item["name"] for item in listed.json()] == ["Welcome"]

    enrolled = client.post(
        f"/api/crm/leads/{lead.id}/enroll-sequence",
        json={"template_id": template["id"]},
        headers={"X-Correlation-Id": "enroll-1"},
    )
    assert enrolled.status_code == 201
    enrollment = enrolled.json()
    assert enrollment["status"] == "ACTIVE"
    assert enrollment["total_steps"] == 3
    assert [step["status"] for step in enrollment["steps"]] == ["PENDING", "PENDING", "PENDING"]
    assert [step["channel"] for step in enrollment["steps"]] == ["EMAIL", "EMAIL", "SMS"]

    enroll_audits = audit.entries_for("crm.nurture_enrollment", enrollment["id"])
    assert enroll_audits[0]["correlation_id"] == "enroll-1"

    duplicate = client.post(f"/api/crm/leads/{lead.id}/enroll-sequence", json={"template_id": template["id"]})
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "conflict"

    paused = client.post(f"/api/crm/sequences/{enrollment['id']}/pause")
    assert paused.json()["status"] == "PAUSED"
    resumed = client.post(f"/api/crm/sequences/{enrollment['id']}/resume")
    assert resumed.json()["status"] == "ACTIVE"

    cancelled = client.delete(f"/api/crm/sequences/{enrollment['id']}")
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "CANCELLED"
    assert [step["status"] for step in cancelled.json()["steps"]] == ["CANCELLED"] * 3

    again = client.post(f"/api/crm/leads/{lead.id}/enroll-sequence", json={"template_id": template["id"]})
    assert again.status_code == 201

    history = client.get(f"/api/crm/leads/{lead.id}/sequences")
    assert history.status_code == 200
    assert sorted(item["status"] for item in history.json()) == ["ACTIVE", "CANCELLED"]


def test_enrolling_a_customer_is_not_found(client: TestClient, db_session: Session) -> None:
    customer = _lead(db_session, contact_type=ContactType.CUSTOMER)
    template = _template(client)

    response = client.post(f"/api/crm/leads/{customer.id}/enroll-sequence", json={"template_id": template["id"]})

    assert response.status_code == 404
    assert response.json()["details"]["resource"] == "lead"


def test_lead_created_event_triggers_rescore(client: TestClient, db_session: Session) -> None:
    lead = _lead(db_session)

    events.publish({"event_type": "crm.lead.created", "tenant_id": TENANT_ID, "contact_id": str(lead.id)})

    db_session.expire_all()
    stored = db_session.get(CRMContact, lead.id)
    assert stored is not None
    assert stored.score is not None
    assert any(item["event_type"] == "crm.lead.scored" for item in events.published_events)
