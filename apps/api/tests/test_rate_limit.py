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


TENANT_ID = "tenant-rate"


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
def configure_rate_limiter_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_CRM_MUTATIONS_PER_MINUTE", "3")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_user() -> AuthUser:
        return AuthUser(
            sub="user-1",
            roles=["crm.leads.read", "crm.leads.score", "crm.leads.allocate"],
            tenant_id=TENANT_ID,
            licensed_modules=["crm"],
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[auth_get_current_user] = override_auth_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def lead(db_session: Session) -> CRMContact:
    contact = CRMContact(tenant_id=TENANT_ID, name="Rate Lead", source="event")
    db_session.add(contact)
    db_session.commit()
    return contact


def test_mutating_crm_endpoints_are_rate_limited(client: TestClient, lead: CRMContact) -> None:
    responses = [client.post(f"/api/crm/leads/{lead.id}/score") for _ in range(5)]

    limited = [response for response in responses if response.status_code == 429]
    assert limited
    assert [response.status_code for response in responses[:3]] == [200, 200, 200]

    first_limited = limited[0]
    body = first_limited.json()
    assert body["code"] == "RATE_LIMITED"
    assert body["message"] == "Too many requests"
    assert body["correlation_id"] is not None
    assert first_limited.headers.get("Retry-After") is not None


def test_lead_actions_have_separate_buckets(client: TestClient, lead: CRMContact) -> None:
    for _ in range(3):
        assert client.post(f"/api/crm/leads/{lead.id}/score").status_code == 200
    assert client.post(f"/api/crm/leads/{lead.id}/score").status_code == 429

    allocate = client.post(f"/api/crm/leads/{lead.id}/allocate")
    assert allocate.status_code != 429


def test_get_endpoints_are_not_rate_limited(client: TestClient, lead: CRMContact) -> None:
    responses = [client.get(f"/api/crm/leads/{lead.id}/score") for _ in range(10)]
    assert all(response.status_code == 200 for response in responses)
