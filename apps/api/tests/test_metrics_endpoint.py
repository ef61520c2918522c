from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import AuthUser, get_current_user as auth_get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.models import CRMContact
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


TENANT_ID = "tenant-metrics"


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
def auth_user() -> AuthUser:
    return AuthUser(
        sub="metrics-admin",
        roles=["system.metrics.read", "crm.leads.read", "crm.leads.score", "crm.sales_reps.manage", "crm.leads.allocate"],
        tenant_id=TENANT_ID,
        licensed_modules=["crm"],
    )


@pytest.fixture()
def client(db_session: Session, auth_user: AuthUser) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_user() -> AuthUser:
        return auth_user

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_lead_metrics(client: TestClient, db_session: Session) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    lead = CRMContact(tenant_id=TENANT_ID, name="Metrics Lead", industry="Fintech", source="referral")
    db_session.add(lead)
    db_session.commit()

    scored = client.post(f"/api/crm/leads/{lead.id}/score")
    assert scored.status_code == 200

    rep = client.post("/api/crm/sales-reps", json={"user_id": "m-1", "name": "Metrics Rep", "specialization": "fintech"})
    assert rep.status_code == 201
    allocated = client.post(f"/api/crm/leads/{lead.id}/allocate", json={"auto_assign": True})
    assert allocated.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "lead_scores_computed_total" in body
    assert "lead_allocations_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/crm/leads/{id}/score"' in body
    assert 'mode="single",outcome="succeeded"' in body
    assert 'mode="auto"' in body


def test_metrics_require_permission(client: TestClient, auth_user: AuthUser) -> None:
    auth_user.roles = ["crm.leads.read"]

    response = client.get("/metrics")

    assert response.status_code == 403


def test_metrics_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")

    assert response.status_code == 404
