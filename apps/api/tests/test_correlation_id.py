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
from app.core.database import Base, get_db
from app.crm.models import CRMContact
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


TENANT_ID = "tenant-corr"

ALL_PERMISSIONS = [
    "crm.leads.read",
    "crm.leads.score",
    "crm.leads.allocate",
    "crm.nurture.manage",
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
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="user-1", roles=list(ALL_PERMISSIONS), tenant_id=TENANT_ID, licensed_modules=["crm"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[auth_get_current_user] = override_auth_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _lead(db_session: Session) -> CRMContact:
    contact = CRMContact(tenant_id=TENANT_ID, name="Corr Lead", email="corr@example.com", source="website")
    db_session.add(contact)
    db_session.commit()
    return contact


def _rep(client: TestClient, correlation_id: str) -> dict:
    response = client.post(
        "/api/crm/sales-reps",
        json={"user_id": "rep-1", "name": "Corr Rep", "specialization": "software"},
        headers={"X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 201
    return response.json()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/crm/leads/{uuid.uuid4()}/score")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/crm/leads/{uuid.uuid4()}/score", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_oversized_correlation_id_is_truncated(client: TestClient) -> None:
    inbound = "c" * 300

    response = client.get(f"/api/crm/leads/{uuid.uuid4()}/score", headers={"X-Correlation-Id": inbound})

    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "c" * 128
    assert response.json()["correlation_id"] == "c" * 128


def test_blank_correlation_id_is_replaced(client: TestClient) -> None:
    response = client.get(f"/api/crm/leads/{uuid.uuid4()}/score", headers={"X-Correlation-Id": "   "})

    header_value = response.headers.get("x-correlation-id")
    assert header_value
    assert header_value.strip() == header_value
    assert uuid.UUID(header_value)

def test_audit_uses_request_correlation_id(client: TestClient, db_session: Session) -> None:
    lead = _lead(db_session)
    rep = _rep(client, "corr-audit-0")

    response = client.post(
        f"/api/crm/leads/{lead.id}/allocate",
        json={"rep_id": rep["id"]},
        headers={"X-Correlation-Id": "corr-audit-1"},
    )
    assert response.status_code == 200

    contact_audits = [entry for entry in audit.audit_entries if entry.get("entity_type") == "crm.contact"]
    assert contact_audits
    assert contact_audits[-1]["correlation_id"] == "corr-audit-1"


def test_event_envelope_includes_correlation_id(client: TestClient, db_session: Session) -> None:
    lead = _lead(db_session)

    response = client.post(f"/api/crm/leads/{lead.id}/score", headers={"X-Correlation-Id": "corr-event-1"})
    assert response.status_code == 200

    scored_events = [item for item in events.published_events if item.get("event_type") == "crm.lead.scored"]
    assert scored_events
    assert scored_events[-1].get("correlation_id") == "corr-event-1"


def test_rate_limited_response_includes_correlation_id(
    client: TestClient,
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    lead = _lead(db_session)
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_CRM_MUTATIONS_PER_MINUTE", "1")
    get_settings.cache_clear()
    reset_rate_limiter()

    first = client.post(f"/api/crm/leads/{lead.id}/score", headers={"X-Correlation-Id": "corr-rate-1"})
    assert first.status_code == 200

    second = client.post(f"/api/crm/leads/{lead.id}/score", headers={"X-Correlation-Id": "corr-rate-1"})
    assert second.status_code == 429
    payload = second.json()
    assert payload["correlation_id"] == "corr-rate-1"
    assert second.headers.get("x-correlation-id") == "corr-rate-1"
