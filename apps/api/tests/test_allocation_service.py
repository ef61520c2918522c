from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.database import Base
from app.crm.allocation import AllocationService, AllocationWeights
from app.crm.enums import DealStatus
from app.crm.errors import NoEligibleRepError, NotFoundError
from app.crm.models import CRMContact, CRMDeal, CRMSalesRep
from app.crm.schemas import SalesRepCreate, SalesRepLeaveUpdate
from app.platform.security.context import AuthContext


TENANT_ID = "tenant-alloc"


class RecordingNotifier:
    def __init__(self) -> None:
        self.calls: list[tuple[uuid.UUID, uuid.UUID]] = []

    def notify_lead_assigned(self, rep: CRMSalesRep, contact: CRMContact) -> None:
        self.calls.append((rep.id, contact.id))


class BrokenNotifier:
    def notify_lead_assigned(self, rep: CRMSalesRep, contact: CRMContact) -> None:
        raise RuntimeError("mail relay down")


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
    yield
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def ctx() -> AuthContext:
    return AuthContext(user_id="manager-1", tenant_id=TENANT_ID, correlation_id="corr-alloc", licensed_modules=["crm"])


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def service(notifier: RecordingNotifier) -> AllocationService:
    return AllocationService(notifier=notifier, weights=AllocationWeights())


def _rep(
    db_session: Session,
    name: str,
    *,
    conversion_rate: float = 50.0,
    specialization: str | None = "retail",
    is_on_leave: bool = False,
    tenant_id: str = TENANT_ID,
) -> CRMSalesRep:
    rep = CRMSalesRep(
        tenant_id=tenant_id,
        user_id=f"user-{name.lower()}",
        name=name,
        email=f"{name.lower()}@example.com",
        specialization=specialization,
        conversion_rate=conversion_rate,
        is_on_leave=is_on_leave,
    )
    db_session.add(rep)
    db_session.commit()
    return rep


def _lead(db_session: Session, *, industry: str | None = "Retail", assigned_rep_id: uuid.UUID | None = None) -> CRMContact:
    contact = CRMContact(
        tenant_id=TENANT_ID,
        name="Jordan Reyes",
        company="Reyes Grocers",
        industry=industry,
        source="website",
        assigned_rep_id=assigned_rep_id,
    )
    db_session.add(contact)
    db_session.commit()
    return contact


def test_suggestions_follow_conversion_rate_when_match_and_workload_are_equal(
    db_session: Session,
    ctx: AuthContext,
    service: AllocationService,
) -> None:
    low = _rep(db_session, "Low", conversion_rate=40)
    high = _rep(db_session, "High", conversion_rate=80)
    mid = _rep(db_session, "Mid", conversion_rate=60)
    lead = _lead(db_session)

    suggestions = service.suggest(db_session, ctx, lead.id)

    assert [item.rep.id for item in suggestions] == [high.id, mid.id, low.id]
    assert [item.score for item in suggestions] == [92.0, 84.0, 76.0]
    assert suggestions[0].reasons[0] == "Specialization 'retail' matches lead industry"


def test_reps_on_leave_are_excluded(db_session: Session, ctx: AuthContext, service: AllocationService) -> None:
    _rep(db_session, "Away", conversion_rate=95, is_on_leave=True)
    present = _rep(db_session, "Present", conversion_rate=10)
    lead = _lead(db_session)

    suggestions = service.suggest(db_session, ctx, lead.id)

    assert [item.rep.id for item in suggestions] == [present.id]


def test_empty_roster_raises_no_eligible_rep(db_session: Session, ctx: AuthContext, service: AllocationService) -> None:
    _rep(db_session, "Away", is_on_leave=True)
    _rep(db_session, "Elsewhere", tenant_id="tenant-other")
    lead = _lead(db_session)

    with pytest.raises(NoEligibleRepError):
        service.suggest(db_session, ctx, lead.id)


def test_workload_breaks_ties_on_equal_conversion(db_session: Session, ctx: AuthContext, service: AllocationService) -> None:
    busy = _rep(db_session, "Busy", conversion_rate=70)
    free = _rep(db_session, "Free", conversion_rate=70)
    _lead(db_session, assigned_rep_id=busy.id)
    _lead(db_session, assigned_rep_id=busy.id)
    lead = _lead(db_session)

    suggestions = service.suggest(db_session, ctx, lead.id)

    assert [item.rep.id for item in suggestions] == [free.id, busy.id]
    assert suggestions[1].rep.assigned_lead_count == 2
    assert "2 assigned leads" in suggestions[1].reasons


def test_identical_reps_are_ordered_by_id(db_session: Session, ctx: AuthContext, service: AllocationService) -> None:
    first = _rep(db_session, "Twin A", conversion_rate=55)
    second = _rep(db_session, "Twin B", conversion_rate=55)
    lead = _lead(db_session)

    suggestions = service.suggest(db_session, ctx, lead.id)

    assert [item.rep.id for item in suggestions] == sorted([first.id, second.id], key=str)


def test_assign_is_idempotent_and_notifies_once(
    db_session: Session,
    ctx: AuthContext,
    service: AllocationService,
    notifier: RecordingNotifier,
) -> None:
    rep = _rep(db_session, "Owner")
    lead = _lead(db_session)

    first = service.assign(db_session, ctx, lead.id, rep.id)
    second = service.assign(db_session, ctx, lead.id, rep.id)

    assert first.changed is True
    assert second.changed is False
    assert second.assigned is True
    assert notifier.calls == [(rep.id, lead.id)]
    assigned_events = [item for item in events.published_events if item["event_type"] == "crm.lead.assigned"]
    assert len(assigned_events) == 1
    assert assigned_events[0]["correlation_id"] == "corr-alloc"
    assert len(audit.entries_for("crm.contact", str(lead.id))) == 1


def test_manual_assignment_overrides_previous_rep(db_session: Session, ctx: AuthContext, service: AllocationService) -> None:
    original = _rep(db_session, "Original")
    replacement = _rep(db_session, "Replacement", is_on_leave=True)
    lead = _lead(db_session, assigned_rep_id=original.id)

    result = service.assign(db_session, ctx, lead.id, replacement.id)

    assert result.changed is True
    db_session.expire_all()
    assert db_session.get(CRMContact, lead.id).assigned_rep_id == replacement.id  # type: ignore[union-attr]


def test_notification_failure_keeps_assignment(db_session: Session, ctx: AuthContext) -> None:
    service = AllocationService(notifier=BrokenNotifier(), weights=AllocationWeights())
    rep = _rep(db_session, "Owner")
    lead = _lead(db_session)

    result = service.assign(db_session, ctx, lead.id, rep.id)

    assert result.changed is True
    db_session.expire_all()
    assert db_session.get(CRMContact, lead.id).assigned_rep_id == rep.id  # type: ignore[union-attr]


def test_assign_rejects_foreign_or_missing_rep(db_session: Session, ctx: AuthContext, service: AllocationService) -> None:
    foreign = _rep(db_session, "Foreign", tenant_id="tenant-other")
    lead = _lead(db_session)

    with pytest.raises(NotFoundError):
        service.assign(db_session, ctx, lead.id, foreign.id)
    with pytest.raises(NotFoundError):
        service.assign(db_session, ctx, lead.id, uuid.uuid4())
    with pytest.raises(NotFoundError):
        service.assign(db_session, ctx, uuid.uuid4(), foreign.id)


def test_allocate_suggests_without_assigning_unless_asked(
    db_session: Session,
    ctx: AuthContext,
    service: AllocationService,
    notifier: RecordingNotifier,
) -> None:
    best = _rep(db_session, "Best", conversion_rate=90)
    _rep(db_session, "Other", conversion_rate=20, specialization="manufacturing")
    lead = _lead(db_session)

    preview = service.allocate(db_session, ctx, lead.id)
    assert preview.assigned is False
    assert preview.rep is not None and preview.rep.id == best.id
    assert len(preview.suggestions) == 2
    assert notifier.calls == []

    assigned = service.allocate(db_session, ctx, lead.id, auto_assign=True)
    assert assigned.assigned is True
    assert assigned.changed is True
    assert assigned.rep is not None and assigned.rep.id == best.id
    assert assigned.rep.assigned_lead_count == 1
    assert assigned.suggestions


def test_rep_management(db_session: Session, ctx: AuthContext, service: AllocationService) -> None:
    created = service.create_rep(
        db_session,
        ctx,
        SalesRepCreate(user_id="u-77", name="Priya", email="priya@example.com", specialization="saas", conversion_rate=0),
    )
    lead = _lead(db_session)
    db_session.add_all(
        [
            CRMDeal(tenant_id=TENANT_ID, contact_id=lead.id, rep_id=created.id, name="A", status=DealStatus.WON),
            CRMDeal(tenant_id=TENANT_ID, contact_id=lead.id, rep_id=created.id, name="B", status=DealStatus.WON),
            CRMDeal(tenant_id=TENANT_ID, contact_id=lead.id, rep_id=created.id, name="C", status=DealStatus.WON),
            CRMDeal(tenant_id=TENANT_ID, contact_id=lead.id, rep_id=created.id, name="D", status=DealStatus.LOST),
            CRMDeal(tenant_id=TENANT_ID, contact_id=lead.id, rep_id=created.id, name="E", status=DealStatus.OPEN),
        ]
    )
    db_session.commit()

    refreshed = service.recompute_conversion_rate(db_session, ctx, created.id)
    assert refreshed.conversion_rate == 75.0

    on_leave = service.set_leave(db_session, ctx, created.id, SalesRepLeaveUpdate(is_on_leave=True, leave_end_date=date(2024, 6, 1)))
    assert on_leave.is_on_leave is True
    assert on_leave.leave_end_date == date(2024, 6, 1)

    back = service.set_leave(db_session, ctx, created.id, SalesRepLeaveUpdate(is_on_leave=False, leave_end_date=date(2024, 6, 1)))
    assert back.is_on_leave is False
    assert back.leave_end_date is None

    assert [item.name for item in service.list_reps(db_session, ctx)] == ["Priya"]
