from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit, events
from app.core.config import get_settings
from app.crm.errors import ConflictError, NoEligibleRepError
from app.crm.models import CRMContact, CRMSalesRep, as_utc
from app.crm.notifications import LeadAlertNotifier, TransportLeadAlertNotifier
from app.crm.repositories import ContactRepository, SalesRepRepository
from app.crm.schemas import (
    AllocationRead,
    AllocationSuggestionRead,
    SalesRepCreate,
    SalesRepLeaveUpdate,
    SalesRepRead,
    SalesRepSummary,
)
from app.crm.transport import build_transport
from app.metrics import observe_allocation, observe_lead_alert_failure
from app.platform.security.context import AuthContext


logger = logging.getLogger("app.crm.allocation")

_TOKEN_RE = re.compile(r"[a-z0-9]+")


@dataclass(frozen=True, slots=True)
class AllocationWeights:
    specialization: float = 0.4
    conversion: float = 0.4
    workload: float = 0.2

    @classmethod
    def from_settings(cls) -> AllocationWeights:
        settings = get_settings()
        return cls(
            specialization=settings.allocation_weight_specialization,
            conversion=settings.allocation_weight_conversion,
            workload=settings.allocation_weight_workload,
        )

    @property
    def total(self) -> float:
        return self.specialization + self.conversion + self.workload


@dataclass(frozen=True, slots=True)
class RankedRep:
    rep: CRMSalesRep
    assigned_lead_count: int
    score: float
    reasons: list[str]


def _tokens(value: str | None) -> set[str]:
    return set(_TOKEN_RE.findall((value or "").lower()))


def _specialization_match(rep: CRMSalesRep, contact: CRMContact) -> str | None:
    rep_tokens = _tokens(rep.specialization)
    if not rep_tokens:
        return None
    for label, value in (("industry", contact.industry), ("source", contact.source)):
        if rep_tokens & _tokens(value):
            return label
    return None


def rank_reps(
    contact: CRMContact,
    roster: Iterable[CRMSalesRep],
    workloads: dict[uuid.UUID, int],
    weights: AllocationWeights,
) -> list[RankedRep]:
    """Order eligible reps for a lead, best first.

    Ties on score go to the higher conversion rate, then the lighter
    workload, then the smaller rep id, so the order is total.
    """
    ranked: list[RankedRep] = []
    total_weight = weights.total or 1.0
    for rep in roster:
        if rep.is_on_leave:
            continue
        assigned = workloads.get(rep.id, 0)
        conversion = max(0.0, min(100.0, float(rep.conversion_rate or 0.0)))
        matched_on = _specialization_match(rep, contact)

        raw = (
            weights.specialization * (1.0 if matched_on else 0.0)
            + weights.conversion * conversion / 100.0
            + weights.workload / (1.0 + assigned)
        )

        reasons: list[str] = []
        if matched_on:
            reasons.append(f"Specialization '{rep.specialization}' matches lead {matched_on}")
        reasons.append(f"Conversion rate {conversion:.1f}%")
        reasons.append("No assigned leads" if assigned == 0 else f"{assigned} assigned lead{'s' if assigned != 1 else ''}")

        ranked.append(
            RankedRep(
                rep=rep,
                assigned_lead_count=assigned,
                score=round(raw / total_weight * 100.0, 2),
                reasons=reasons,
            )
        )

    ranked.sort(key=lambda item: (-item.score, -float(item.rep.conversion_rate or 0.0), item.assigned_lead_count, str(item.rep.id)))
    return ranked


def _default_notifier() -> LeadAlertNotifier:
    return TransportLeadAlertNotifier(build_transport())


@dataclass(slots=True)
class AllocationService:
    contact_repository: ContactRepository = ContactRepository()
    rep_repository: SalesRepRepository = SalesRepRepository()
    notifier: LeadAlertNotifier = field(default_factory=_default_notifier)
    weights: AllocationWeights | None = None

    def suggest(
        self,
        session: Session,
        ctx: AuthContext,
        contact_id: uuid.UUID,
        *,
        limit: int | None = None,
    ) -> list[AllocationSuggestionRead]:
        contact = self.contact_repository.get_or_raise(session, ctx, contact_id)
        ranked = rank_reps(
            contact,
            self.rep_repository.eligible_roster(session, ctx),
            self.rep_repository.assigned_lead_counts(session, ctx),
            self.weights or AllocationWeights.from_settings(),
        )
        if not ranked:
            raise NoEligibleRepError(ctx.tenant_id)
        if limit is not None:
            ranked = ranked[: max(0, limit)]
        return [
            AllocationSuggestionRead(
                rep=self._to_summary(item.rep, item.assigned_lead_count),
                score=item.score,
                reasons=item.reasons,
            )
            for item in ranked
        ]

    def assign(
        self,
        session: Session,
        ctx: AuthContext,
        contact_id: uuid.UUID,
        rep_id: uuid.UUID,
        *,
        mode: str = "manual",
    ) -> AllocationRead:
        contact = self.contact_repository.get_or_raise(session, ctx, contact_id)
        rep = self.rep_repository.get_or_raise(session, ctx, rep_id)

        if contact.assigned_rep_id == rep.id:
            return AllocationRead(
                contact_id=contact.id,
                assigned=True,
                changed=False,
                rep=self._summary_for(session, ctx, rep),
            )

        previous_rep_id = contact.assigned_rep_id
        contact.assigned_rep_id = rep.id
        contact.row_version = contact.row_version + 1
        session.add(contact)
        session.commit()

        audit.record(
            actor_user_id=ctx.user_id,
            tenant_id=ctx.tenant_id,
            entity_type="crm.contact",
            entity_id=str(contact.id),
            action="assign_rep",
            before={"assigned_rep_id": str(previous_rep_id) if previous_rep_id else None},
            after={"assigned_rep_id": str(rep.id), "mode": mode},
            correlation_id=ctx.correlation_id,
        )
        events.publish(
            {
                "event_type": "crm.lead.assigned",
                "tenant_id": ctx.tenant_id,
                "contact_id": str(contact.id),
                "rep_id": str(rep.id),
                "previous_rep_id": str(previous_rep_id) if previous_rep_id else None,
                "mode": mode,
                "correlation_id": ctx.correlation_id,
            }
        )
        observe_allocation(mode)
        logger.info(
            "lead.assigned",
            extra={"tenant_id": ctx.tenant_id, "contact_id": str(contact.id), "rep_id": str(rep.id), "status": mode},
        )
        self._notify(ctx, rep, contact)

        return AllocationRead(
            contact_id=contact.id,
            assigned=True,
            changed=True,
            rep=self._summary_for(session, ctx, rep),
        )

    def allocate(
        self,
        session: Session,
        ctx: AuthContext,
        contact_id: uuid.UUID,
        *,
        rep_id: uuid.UUID | None = None,
        auto_assign: bool = False,
    ) -> AllocationRead:
        if rep_id is not None:
            return self.assign(session, ctx, contact_id, rep_id, mode="manual")

        suggestions = self.suggest(session, ctx, contact_id, limit=get_settings().allocation_default_suggestions)
        top = suggestions[0]
        if not auto_assign:
            return AllocationRead(
                contact_id=contact_id,
                assigned=False,
                changed=False,
                rep=top.rep,
                suggestions=suggestions,
            )

        result = self.assign(session, ctx, contact_id, top.rep.id, mode="auto")
        return result.model_copy(update={"suggestions": suggestions})

    def create_rep(self, session: Session, ctx: AuthContext, payload: SalesRepCreate) -> SalesRepRead:
        rep = CRMSalesRep(**payload.model_dump(mode="python"))
        self.rep_repository.add(session, ctx, rep)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise ConflictError("sales rep already exists for this user", details={"user_id": payload.user_id})
        session.refresh(rep)
        return self._to_rep_read(rep, 0)

    def list_reps(self, session: Session, ctx: AuthContext) -> list[SalesRepRead]:
        workloads = self.rep_repository.assigned_lead_counts(session, ctx)
        reps = self.rep_repository.find(session, ctx, order_by=(CRMSalesRep.name, CRMSalesRep.id))
        return [self._to_rep_read(rep, workloads.get(rep.id, 0)) for rep in reps]

    def set_leave(
        self,
        session: Session,
        ctx: AuthContext,
        rep_id: uuid.UUID,
        payload: SalesRepLeaveUpdate,
    ) -> SalesRepRead:
        rep = self.rep_repository.get_or_raise(session, ctx, rep_id)
        before = {"is_on_leave": rep.is_on_leave, "leave_end_date": rep.leave_end_date.isoformat() if rep.leave_end_date else None}
        rep.is_on_leave = payload.is_on_leave
        rep.leave_end_date = payload.leave_end_date
        session.add(rep)
        session.commit()
        session.refresh(rep)
        audit.record(
            actor_user_id=ctx.user_id,
            tenant_id=ctx.tenant_id,
            entity_type="crm.sales_rep",
            entity_id=str(rep.id),
            action="set_leave",
            before=before,
            after={"is_on_leave": rep.is_on_leave, "leave_end_date": rep.leave_end_date.isoformat() if rep.leave_end_date else None},
            correlation_id=ctx.correlation_id,
        )
        logger.info("sales_rep.leave_updated", extra={"tenant_id": ctx.tenant_id, "rep_id": str(rep.id), "status": str(rep.is_on_leave)})
        return self._to_rep_read(rep, self.rep_repository.assigned_lead_counts(session, ctx).get(rep.id, 0))

    def recompute_conversion_rate(self, session: Session, ctx: AuthContext, rep_id: uuid.UUID) -> SalesRepRead:
        rep = self.rep_repository.get_or_raise(session, ctx, rep_id)
        won, lost = self.rep_repository.closed_deal_counts(session, ctx, rep.id)
        closed = won + lost
        rep.conversion_rate = round(won / closed * 100.0, 2) if closed else 0.0
        session.add(rep)
        session.commit()
        session.refresh(rep)
        logger.info(
            "sales_rep.conversion_rate_updated",
            extra={"tenant_id": ctx.tenant_id, "rep_id": str(rep.id), "score": rep.conversion_rate, "count": closed},
        )
        return self._to_rep_read(rep, self.rep_repository.assigned_lead_counts(session, ctx).get(rep.id, 0))

    def _notify(self, ctx: AuthContext, rep: CRMSalesRep, contact: CRMContact) -> None:
        try:
            self.notifier.notify_lead_assigned(rep, contact)
        except Exception as exc:
            observe_lead_alert_failure()
            logger.warning(
                "lead_alert.failed",
                extra={
                    "tenant_id": ctx.tenant_id,
                    "contact_id": str(contact.id),
                    "rep_id": str(rep.id),
                    "error": str(exc)[:500],
                },
            )

    def _summary_for(self, session: Session, ctx: AuthContext, rep: CRMSalesRep) -> SalesRepSummary:
        return self._to_summary(rep, self.rep_repository.assigned_lead_counts(session, ctx).get(rep.id, 0))

    @staticmethod
    def _to_summary(rep: CRMSalesRep, assigned_lead_count: int) -> SalesRepSummary:
        return SalesRepSummary(
            id=rep.id,
            name=rep.name,
            email=rep.email,
            specialization=rep.specialization,
            conversion_rate=float(rep.conversion_rate or 0.0),
            assigned_lead_count=assigned_lead_count,
        )

    @staticmethod
    def _to_rep_read(rep: CRMSalesRep, assigned_lead_count: int) -> SalesRepRead:
        return SalesRepRead(
            id=rep.id,
            user_id=rep.user_id,
            name=rep.name,
            email=rep.email,
            specialization=rep.specialization,
            conversion_rate=float(rep.conversion_rate or 0.0),
            is_on_leave=rep.is_on_leave,
            leave_end_date=rep.leave_end_date,
            assigned_lead_count=assigned_lead_count,
            created_at=as_utc(rep.created_at),
            updated_at=as_utc(rep.updated_at),
        )


allocation_service = AllocationService()
