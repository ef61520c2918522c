from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session, selectinload

from app.crm.enums import OPEN_ENROLLMENT_STATUSES, ContactType, DealStatus, EnrollmentStatus, ScheduledStepStatus
from app.crm.errors import NotFoundError
from app.crm.models import (
    CRMContact,
    CRMDeal,
    CRMInteraction,
    CRMNurtureEnrollment,
    CRMNurtureTemplate,
    CRMSalesRep,
    CRMScheduledStep,
)
from app.platform.security.context import AuthContext
from app.platform.security.repository import BaseRepository, ModelT


class TenantRepository(BaseRepository[ModelT]):
    def get_or_raise(self, session: Session, ctx: AuthContext, entity_id: uuid.UUID) -> ModelT:
        entity = self.get(session, ctx, entity_id)
        if entity is None:
            raise NotFoundError(self.resource, entity_id)
        return entity


class ContactRepository(TenantRepository[CRMContact]):
    model = CRMContact
    resource = "contact"

    def lead_ids(self, session: Session, ctx: AuthContext) -> list[uuid.UUID]:
        query = select(CRMContact.id).where(
            CRMContact.tenant_id == ctx.tenant_id,
            CRMContact.type == ContactType.LEAD,
        )
        return list(session.scalars(query.order_by(CRMContact.created_at, CRMContact.id)).all())


class SalesRepRepository(TenantRepository[CRMSalesRep]):
    model = CRMSalesRep
    resource = "sales rep"

    def eligible_roster(self, session: Session, ctx: AuthContext) -> list[CRMSalesRep]:
        return self.find(session, ctx, CRMSalesRep.is_on_leave.is_(False), order_by=(CRMSalesRep.id,))

    def assigned_lead_counts(self, session: Session, ctx: AuthContext) -> dict[uuid.UUID, int]:
        rows = session.execute(
            select(CRMContact.assigned_rep_id, func.count(CRMContact.id))
            .where(
                CRMContact.tenant_id == ctx.tenant_id,
                CRMContact.type == ContactType.LEAD,
                CRMContact.assigned_rep_id.is_not(None),
            )
            .group_by(CRMContact.assigned_rep_id)
        ).all()
        return {rep_id: int(count) for rep_id, count in rows}

    def closed_deal_counts(self, session: Session, ctx: AuthContext, rep_id: uuid.UUID) -> tuple[int, int]:
        rows = session.execute(
            select(CRMDeal.status, func.count(CRMDeal.id))
            .where(
                CRMDeal.tenant_id == ctx.tenant_id,
                CRMDeal.rep_id == rep_id,
                CRMDeal.status.in_([DealStatus.WON, DealStatus.LOST]),
            )
            .group_by(CRMDeal.status)
        ).all()
        counts = {str(status_value): int(count) for status_value, count in rows}
        return counts.get(DealStatus.WON, 0), counts.get(DealStatus.LOST, 0)


class InteractionRepository(TenantRepository[CRMInteraction]):
    model = CRMInteraction
    resource = "interaction"

    def count_for_contact(self, session: Session, ctx: AuthContext, contact_id: uuid.UUID) -> int:
        return int(
            session.scalar(
                select(func.count(CRMInteraction.id)).where(
                    CRMInteraction.tenant_id == ctx.tenant_id,
                    CRMInteraction.contact_id == contact_id,
                )
            )
            or 0
        )


class DealRepository(TenantRepository[CRMDeal]):
    model = CRMDeal
    resource = "deal"

    def has_open_deal(self, session: Session, ctx: AuthContext, contact_id: uuid.UUID) -> bool:
        count = session.scalar(
            select(func.count(CRMDeal.id)).where(
                CRMDeal.tenant_id == ctx.tenant_id,
                CRMDeal.contact_id == contact_id,
                CRMDeal.status == DealStatus.OPEN,
            )
        )
        return bool(count)


class NurtureTemplateRepository(TenantRepository[CRMNurtureTemplate]):
    model = CRMNurtureTemplate
    resource = "template"

    def query(self, ctx: AuthContext) -> Select[Any]:
        return super().query(ctx).options(selectinload(CRMNurtureTemplate.steps))


class NurtureEnrollmentRepository(TenantRepository[CRMNurtureEnrollment]):
    model = CRMNurtureEnrollment
    resource = "enrollment"

    def query(self, ctx: AuthContext) -> Select[Any]:
        return super().query(ctx).options(
            selectinload(CRMNurtureEnrollment.template),
            selectinload(CRMNurtureEnrollment.scheduled_steps),
        )

    def find_open(
        self,
        session: Session,
        ctx: AuthContext,
        contact_id: uuid.UUID,
        template_id: uuid.UUID,
    ) -> CRMNurtureEnrollment | None:
        return session.scalar(
            super().query(ctx).where(
                CRMNurtureEnrollment.contact_id == contact_id,
                CRMNurtureEnrollment.template_id == template_id,
                CRMNurtureEnrollment.status.in_(sorted(OPEN_ENROLLMENT_STATUSES)),
            )
        )

    def for_contact(self, session: Session, ctx: AuthContext, contact_id: uuid.UUID) -> list[CRMNurtureEnrollment]:
        return self.find(
            session,
            ctx,
            CRMNurtureEnrollment.contact_id == contact_id,
            order_by=(CRMNurtureEnrollment.enrolled_at.desc(), CRMNurtureEnrollment.id),
        )


class ScheduledStepRepository(TenantRepository[CRMScheduledStep]):
    """Scheduler-facing access; polling spans tenants so it does not take a context."""

    model = CRMScheduledStep
    resource = "scheduled step"

    @staticmethod
    def due_step_ids(session: Session, now: datetime, limit: int) -> list[uuid.UUID]:
        query = (
            select(CRMScheduledStep.id)
            .join(CRMNurtureEnrollment, CRMNurtureEnrollment.id == CRMScheduledStep.enrollment_id)
            .where(
                CRMScheduledStep.status == ScheduledStepStatus.PENDING,
                CRMScheduledStep.scheduled_at <= now,
                CRMNurtureEnrollment.status == EnrollmentStatus.ACTIVE,
            )
            .order_by(CRMScheduledStep.scheduled_at, CRMScheduledStep.id)
            .limit(limit)
        )
        return list(session.scalars(query).all())

    @staticmethod
    def load(session: Session, step_id: uuid.UUID) -> CRMScheduledStep | None:
        return session.scalar(
            select(CRMScheduledStep)
            .where(CRMScheduledStep.id == step_id)
            .options(selectinload(CRMScheduledStep.step), selectinload(CRMScheduledStep.enrollment))
        )
