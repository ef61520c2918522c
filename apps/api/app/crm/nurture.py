from __future__ import annotations

import logging
import re
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit, events
from app.crm.enums import (
    VALID_ENROLLMENT_TRANSITIONS,
    EnrollmentStatus,
    ScheduledStepStatus,
    StepChannel,
    is_nurture_eligible,
)
from app.crm.errors import ConflictError, InvalidTemplateError, NotFoundError
from app.crm.models import (
    CRMContact,
    CRMNurtureEnrollment,
    CRMNurtureStep,
    CRMNurtureTemplate,
    CRMScheduledStep,
    as_utc,
    utcnow,
)
from app.crm.repositories import (
    ContactRepository,
    NurtureEnrollmentRepository,
    NurtureTemplateRepository,
    ScheduledStepRepository,
)
from app.crm.schemas import (
    EnrollmentRead,
    NurtureStepRead,
    NurtureTemplateCreate,
    NurtureTemplateRead,
    NurtureTemplateSummary,
    ScheduledStepRead,
)
from app.crm.transport import DeliveryResult, Transport, build_transport
from app.metrics import observe_dispatch, observe_enrollment
from app.platform.security.context import AuthContext


logger = logging.getLogger("app.crm.nurture")
tracer = trace.get_tracer("app.crm.nurture")

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([a-zA-Z_]+)\s*\}\}")

_RECIPIENT_FIELDS: dict[StepChannel, str] = {
    StepChannel.EMAIL: "email",
    StepChannel.SMS: "phone",
}


def render_message(text: str, contact: CRMContact) -> str:
    """Fill ``{{name}}``-style placeholders from the contact; unknown placeholders are left in place."""
    name = (contact.name or "").strip()
    values = {
        "name": name,
        "first_name": name.split(" ")[0] if name else "",
        "email": contact.email or "",
        "phone": contact.phone or "",
        "company": contact.company or "",
    }

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1).lower()
        return values[key] if key in values else match.group(0)

    return _PLACEHOLDER_RE.sub(_replace, text)


@dataclass(frozen=True, slots=True)
class DispatchOutcome:
    scheduled_step_id: uuid.UUID
    status: ScheduledStepStatus
    enrollment_completed: bool = False
    error: str | None = None
    superseded: bool = False


@dataclass(slots=True)
class NurtureService:
    contact_repository: ContactRepository = ContactRepository()
    template_repository: NurtureTemplateRepository = NurtureTemplateRepository()
    enrollment_repository: NurtureEnrollmentRepository = NurtureEnrollmentRepository()
    step_repository: ScheduledStepRepository = ScheduledStepRepository()
    transport: Transport = field(default_factory=build_transport)
    clock: Callable[[], datetime] = utcnow

    def create_template(self, session: Session, ctx: AuthContext, payload: NurtureTemplateCreate) -> NurtureTemplateRead:
        steps = sorted(payload.steps, key=lambda item: item.order)
        orders = [item.order for item in steps]
        if len(set(orders)) != len(orders):
            raise InvalidTemplateError("step orders must be unique", details={"orders": orders})
        offsets = [item.day_offset for item in steps]
        if any(later <= earlier for earlier, later in zip(offsets, offsets[1:])):
            raise InvalidTemplateError(
                "step day offsets must strictly increase with step order",
                details={"day_offsets": offsets},
            )

        template = CRMNurtureTemplate(name=payload.name, description=payload.description)
        template.steps = [
            CRMNurtureStep(
                step_order=item.order,
                day_offset=item.day_offset,
                channel=item.channel,
                subject=item.subject,
                body=item.body,
            )
            for item in steps
        ]
        self.template_repository.add(session, ctx, template)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise ConflictError("nurture template already exists", details={"name": payload.name})
        session.refresh(template)
        logger.info(
            "nurture.template_created",
            extra={"tenant_id": ctx.tenant_id, "template_id": str(template.id), "count": len(steps)},
        )
        return self._to_template_read(template)

    def list_templates(self, session: Session, ctx: AuthContext) -> list[NurtureTemplateRead]:
        templates = self.template_repository.find(
            session,
            ctx,
            order_by=(CRMNurtureTemplate.created_at.desc(), CRMNurtureTemplate.id),
        )
        return [self._to_template_read(template) for template in templates]

    def enroll(self, session: Session, ctx: AuthContext, contact_id: uuid.UUID, template_id: uuid.UUID) -> EnrollmentRead:
        with tracer.start_as_current_span("crm.nurture.enroll") as span:
            span.set_attribute("tenant_id", ctx.tenant_id)
            span.set_attribute("contact_id", str(contact_id))
            span.set_attribute("template_id", str(template_id))

            contact = self.contact_repository.get_or_raise(session, ctx, contact_id)
            if not is_nurture_eligible(contact.type):
                raise NotFoundError("lead", contact_id)
            template = self.template_repository.get_or_raise(session, ctx, template_id)
            steps = sorted(template.steps, key=lambda item: item.step_order)
            if not steps:
                raise ConflictError("nurture template has no steps", details={"template_id": str(template_id)})

            existing = self.enrollment_repository.find_open(session, ctx, contact_id, template_id)
            if existing is not None:
                raise ConflictError(
                    "lead already has an open enrollment in this sequence",
                    details={"enrollment_id": str(existing.id), "status": existing.status},
                )

            enrolled_at = as_utc(self.clock())
            enrollment = CRMNurtureEnrollment(
                contact_id=contact.id,
                template_id=template.id,
                status=EnrollmentStatus.ACTIVE,
                enrolled_by_user_id=ctx.user_id,
                enrolled_at=enrolled_at,
                total_steps=len(steps),
                completed_steps=0,
                failed_steps=0,
            )
            enrollment.scheduled_steps = [
                CRMScheduledStep(
                    tenant_id=ctx.tenant_id,
                    step_id=step.id,
                    step_order=step.step_order,
                    scheduled_at=enrolled_at + timedelta(days=step.day_offset),
                    status=ScheduledStepStatus.PENDING,
                    attempts=0,
                )
                for step in steps
            ]
            self.enrollment_repository.add(session, ctx, enrollment)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise ConflictError(
                    "lead already has an open enrollment in this sequence",
                    details={"contact_id": str(contact_id), "template_id": str(template_id)},
                )
            span.set_attribute("enrollment_id", str(enrollment.id))

        audit.record(
            actor_user_id=ctx.user_id,
            tenant_id=ctx.tenant_id,
            entity_type="crm.nurture_enrollment",
            entity_id=str(enrollment.id),
            action="enroll",
            before=None,
            after={"contact_id": str(contact_id), "template_id": str(template_id), "total_steps": len(steps)},
            correlation_id=ctx.correlation_id,
        )
        events.publish(
            {
                "event_type": "crm.nurture.enrolled",
                "tenant_id": ctx.tenant_id,
                "enrollment_id": str(enrollment.id),
                "contact_id": str(contact_id),
                "template_id": str(template_id),
                "correlation_id": ctx.correlation_id,
            }
        )
        observe_enrollment("enrolled")
        logger.info(
            "nurture.enrolled",
            extra={
                "tenant_id": ctx.tenant_id,
                "contact_id": str(contact_id),
                "template_id": str(template_id),
                "enrollment_id": str(enrollment.id),
                "count": len(steps),
            },
        )
        return self._to_enrollment_read(enrollment)

    def cancel(self, session: Session, ctx: AuthContext, enrollment_id: uuid.UUID) -> EnrollmentRead:
        """Cancel an enrollment and every step that has not been claimed yet.

        SENT and FAILED history stays as it is; a step already PROCESSING is
        left to finish.
        """
        enrollment = self.enrollment_repository.get_or_raise(session, ctx, enrollment_id)
        if enrollment.status == EnrollmentStatus.CANCELLED:
            return self._to_enrollment_read(enrollment)
        self._assert_transition(enrollment.status, EnrollmentStatus.CANCELLED)

        now = self.clock()
        previous_status = enrollment.status
        enrollment.status = EnrollmentStatus.CANCELLED
        enrollment.cancelled_at = now
        session.add(enrollment)
        cancelled_steps = session.execute(
            update(CRMScheduledStep)
            .where(
                CRMScheduledStep.enrollment_id == enrollment.id,
                CRMScheduledStep.status == ScheduledStepStatus.PENDING,
            )
            .values(status=ScheduledStepStatus.CANCELLED, updated_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        session.commit()
        session.refresh(enrollment)

        audit.record(
            actor_user_id=ctx.user_id,
            tenant_id=ctx.tenant_id,
            entity_type="crm.nurture_enrollment",
            entity_id=str(enrollment.id),
            action="cancel",
            before={"status": previous_status},
            after={"status": EnrollmentStatus.CANCELLED, "cancelled_steps": cancelled_steps},
            correlation_id=ctx.correlation_id,
        )
        events.publish(
            {
                "event_type": "crm.nurture.cancelled",
                "tenant_id": ctx.tenant_id,
                "enrollment_id": str(enrollment.id),
                "contact_id": str(enrollment.contact_id),
                "correlation_id": ctx.correlation_id,
            }
        )
        observe_enrollment("cancelled")
        logger.info(
            "nurture.cancelled",
            extra={"tenant_id": ctx.tenant_id, "enrollment_id": str(enrollment.id), "count": cancelled_steps},
        )
        return self._to_enrollment_read(enrollment)

    def pause(self, session: Session, ctx: AuthContext, enrollment_id: uuid.UUID) -> EnrollmentRead:
        return self._set_status(session, ctx, enrollment_id, EnrollmentStatus.PAUSED)

    def resume(self, session: Session, ctx: AuthContext, enrollment_id: uuid.UUID) -> EnrollmentRead:
        return self._set_status(session, ctx, enrollment_id, EnrollmentStatus.ACTIVE)

    def list_enrollments(self, session: Session, ctx: AuthContext, contact_id: uuid.UUID) -> list[EnrollmentRead]:
        self.contact_repository.get_or_raise(session, ctx, contact_id)
        return [self._to_enrollment_read(item) for item in self.enrollment_repository.for_contact(session, ctx, contact_id)]

    def dispatch(self, session: Session, scheduled_step_id: uuid.UUID) -> DispatchOutcome:
        """Send one claimed step and record the outcome.

        Delivery failures end as a FAILED step and are never raised; only a
        step that is missing or not in PROCESSING is an error. The outcome is
        written only while this caller still holds the claim it loaded; a step
        requeued and reclaimed in the meantime comes back as superseded.
        """
        started = time.perf_counter()
        scheduled = self.step_repository.load(session, scheduled_step_id)
        if scheduled is None:
            raise NotFoundError(self.step_repository.resource, scheduled_step_id)
        if scheduled.status != ScheduledStepStatus.PROCESSING:
            raise ConflictError(
                "scheduled step is not claimed for dispatch",
                details={"scheduled_step_id": str(scheduled_step_id), "status": scheduled.status},
            )

        enrollment = scheduled.enrollment
        contact = session.get(CRMContact, enrollment.contact_id)
        channel = StepChannel(scheduled.step.channel)
        claim_attempt = scheduled.attempts

        with tracer.start_as_current_span("crm.nurture.dispatch") as span:
            span.set_attribute("tenant_id", scheduled.tenant_id)
            span.set_attribute("scheduled_step_id", str(scheduled.id))
            span.set_attribute("enrollment_id", str(enrollment.id))
            span.set_attribute("step_order", scheduled.step_order)
            span.set_attribute("channel", channel.value)

            result = self._deliver(scheduled, contact, channel)
            now = self.clock()
            if result.success:
                outcome = self._record_sent(session, scheduled, claim_attempt, contact, now)
            else:
                span.set_status(Status(StatusCode.ERROR, result.error or "delivery failed"))
                outcome = self._record_failed(
                    session, scheduled, claim_attempt, result.error or "delivery failed", now
                )
            span.set_attribute("status", outcome.status.value)
            span.set_attribute("superseded", outcome.superseded)

        if outcome.superseded:
            return outcome
        observe_dispatch(channel.value, outcome.status.value, time.perf_counter() - started)
        self._emit_dispatch_events(scheduled, enrollment, outcome)
        return outcome

    def _deliver(self, scheduled: CRMScheduledStep, contact: CRMContact | None, channel: StepChannel) -> DeliveryResult:
        if contact is None:
            return DeliveryResult.failed("contact no longer exists")
        recipient = getattr(contact, _RECIPIENT_FIELDS[channel])
        if not recipient:
            return DeliveryResult.failed(f"contact has no {_RECIPIENT_FIELDS[channel]} for {channel.value}")
        try:
            return self.transport.send(
                recipient,
                render_message(scheduled.step.subject, contact),
                render_message(scheduled.step.body, contact),
            )
        except Exception as exc:
            logger.exception(
                "nurture.transport_error",
                extra={"tenant_id": scheduled.tenant_id, "scheduled_step_id": str(scheduled.id), "error": str(exc)[:500]},
            )
            return DeliveryResult.failed(str(exc)[:500] or exc.__class__.__name__)

    def _record_sent(
        self,
        session: Session,
        scheduled: CRMScheduledStep,
        claim_attempt: int,
        contact: CRMContact | None,
        now: datetime,
    ) -> DispatchOutcome:
        if not self._finish_claim(
            session,
            scheduled,
            claim_attempt,
            status=ScheduledStepStatus.SENT,
            sent_at=now,
            last_error=None,
            updated_at=now,
        ):
            return self._superseded(session, scheduled, claim_attempt, ScheduledStepStatus.SENT)
        if contact is not None:
            contact.last_contacted_at = now
            session.add(contact)

        session.execute(
            update(CRMNurtureEnrollment)
            .where(CRMNurtureEnrollment.id == scheduled.enrollment_id)
            .values(completed_steps=CRMNurtureEnrollment.completed_steps + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        completed = session.execute(
            update(CRMNurtureEnrollment)
            .where(
                CRMNurtureEnrollment.id == scheduled.enrollment_id,
                CRMNurtureEnrollment.status == EnrollmentStatus.ACTIVE,
                CRMNurtureEnrollment.completed_steps >= CRMNurtureEnrollment.total_steps,
            )
            .values(status=EnrollmentStatus.COMPLETED, completed_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        session.commit()
        return DispatchOutcome(
            scheduled_step_id=scheduled.id,
            status=ScheduledStepStatus.SENT,
            enrollment_completed=completed == 1,
        )

    def _record_failed(
        self,
        session: Session,
        scheduled: CRMScheduledStep,
        claim_attempt: int,
        error: str,
        now: datetime,
    ) -> DispatchOutcome:
        if not self._finish_claim(
            session,
            scheduled,
            claim_attempt,
            status=ScheduledStepStatus.FAILED,
            last_error=error[:500],
            updated_at=now,
        ):
            return self._superseded(session, scheduled, claim_attempt, ScheduledStepStatus.FAILED)
        session.execute(
            update(CRMNurtureEnrollment)
            .where(CRMNurtureEnrollment.id == scheduled.enrollment_id)
            .values(failed_steps=CRMNurtureEnrollment.failed_steps + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        return DispatchOutcome(scheduled_step_id=scheduled.id, status=ScheduledStepStatus.FAILED, error=error[:500])

    def _finish_claim(self, session: Session, scheduled: CRMScheduledStep, claim_attempt: int, **values: object) -> bool:
        changed = session.execute(
            update(CRMScheduledStep)
            .where(
                CRMScheduledStep.id == scheduled.id,
                CRMScheduledStep.status == ScheduledStepStatus.PROCESSING,
                CRMScheduledStep.attempts == claim_attempt,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        ).rowcount
        return changed == 1

    def _superseded(
        self,
        session: Session,
        scheduled: CRMScheduledStep,
        claim_attempt: int,
        status: ScheduledStepStatus,
    ) -> DispatchOutcome:
        scheduled_id = scheduled.id
        tenant_id = scheduled.tenant_id
        session.rollback()
        logger.warning(
            "nurture.dispatch_superseded",
            extra={
                "tenant_id": tenant_id,
                "scheduled_step_id": str(scheduled_id),
                "attempts": claim_attempt,
                "status": status.value,
            },
        )
        return DispatchOutcome(scheduled_step_id=scheduled_id, status=status, superseded=True)

    def _emit_dispatch_events(
        self,
        scheduled: CRMScheduledStep,
        enrollment: CRMNurtureEnrollment,
        outcome: DispatchOutcome,
    ) -> None:
        base = {
            "tenant_id": scheduled.tenant_id,
            "enrollment_id": str(enrollment.id),
            "contact_id": str(enrollment.contact_id),
            "scheduled_step_id": str(scheduled.id),
            "step_order": scheduled.step_order,
        }
        log_extra = {key: value for key, value in base.items() if key != "contact_id"} | {"status": outcome.status.value}
        audit.record(
            actor_user_id="system",
            tenant_id=scheduled.tenant_id,
            entity_type="crm.scheduled_step",
            entity_id=str(scheduled.id),
            action="dispatch",
            before={"status": ScheduledStepStatus.PROCESSING.value},
            after={"status": outcome.status.value, "error": outcome.error},
        )
        if outcome.status == ScheduledStepStatus.SENT:
            events.publish({"event_type": "crm.nurture.step_sent", **base})
            logger.info("nurture.step_sent", extra=log_extra)
        else:
            events.publish({"event_type": "crm.nurture.step_failed", **base, "error": outcome.error})
            logger.warning("nurture.step_failed", extra=log_extra | {"error": outcome.error})
        if outcome.enrollment_completed:
            events.publish({"event_type": "crm.nurture.completed", **base})
            observe_enrollment("completed")
            logger.info("nurture.completed", extra={"tenant_id": scheduled.tenant_id, "enrollment_id": str(enrollment.id)})

    def _set_status(
        self,
        session: Session,
        ctx: AuthContext,
        enrollment_id: uuid.UUID,
        target: EnrollmentStatus,
    ) -> EnrollmentRead:
        enrollment = self.enrollment_repository.get_or_raise(session, ctx, enrollment_id)
        if enrollment.status == target:
            return self._to_enrollment_read(enrollment)
        self._assert_transition(enrollment.status, target)

        previous_status = enrollment.status
        enrollment.status = target
        if target == EnrollmentStatus.ACTIVE and enrollment.completed_steps >= enrollment.total_steps:
            enrollment.status = EnrollmentStatus.COMPLETED
            enrollment.completed_at = self.clock()
        session.add(enrollment)
        session.commit()
        session.refresh(enrollment)

        action = "paused" if target == EnrollmentStatus.PAUSED else "resumed"
        audit.record(
            actor_user_id=ctx.user_id,
            tenant_id=ctx.tenant_id,
            entity_type="crm.nurture_enrollment",
            entity_id=str(enrollment.id),
            action=action,
            before={"status": previous_status},
            after={"status": enrollment.status},
            correlation_id=ctx.correlation_id,
        )
        observe_enrollment(action)
        logger.info(
            f"nurture.{action}",
            extra={"tenant_id": ctx.tenant_id, "enrollment_id": str(enrollment.id), "status": enrollment.status},
        )
        return self._to_enrollment_read(enrollment)

    @staticmethod
    def _assert_transition(current: str, target: EnrollmentStatus) -> None:
        allowed = VALID_ENROLLMENT_TRANSITIONS[EnrollmentStatus(current)]
        if target not in allowed:
            raise ConflictError(
                f"invalid enrollment transition {current} -> {target}",
                details={"current": current, "target": target.value},
            )

    @staticmethod
    def _to_template_read(template: CRMNurtureTemplate) -> NurtureTemplateRead:
        return NurtureTemplateRead(
            id=template.id,
            name=template.name,
            description=template.description,
            steps=[
                NurtureStepRead(
                    id=step.id,
                    order=step.step_order,
                    day_offset=step.day_offset,
                    channel=step.channel,
                    subject=step.subject,
                    body=step.body,
                )
                for step in sorted(template.steps, key=lambda item: item.step_order)
            ],
            created_at=as_utc(template.created_at),
        )

    @staticmethod
    def _to_enrollment_read(enrollment: CRMNurtureEnrollment) -> EnrollmentRead:
        total = enrollment.total_steps
        return EnrollmentRead(
            id=enrollment.id,
            contact_id=enrollment.contact_id,
            template=NurtureTemplateSummary(
                id=enrollment.template.id,
                name=enrollment.template.name,
                description=enrollment.template.description,
            ),
            status=enrollment.status,
            total_steps=total,
            completed_steps=enrollment.completed_steps,
            failed_steps=enrollment.failed_steps,
            progress=round(enrollment.completed_steps / total * 100, 2) if total else 0.0,
            enrolled_at=as_utc(enrollment.enrolled_at),
            completed_at=as_utc(enrollment.completed_at),
            cancelled_at=as_utc(enrollment.cancelled_at),
            steps=[
                ScheduledStepRead(
                    id=item.id,
                    step_order=item.step_order,
                    channel=item.step.channel,
                    subject=item.step.subject,
                    scheduled_at=as_utc(item.scheduled_at),
                    status=item.status,
                    attempts=item.attempts,
                    sent_at=as_utc(item.sent_at),
                    last_error=item.last_error,
                )
                for item in sorted(enrollment.scheduled_steps, key=lambda step: step.step_order)
            ],
        )


nurture_service = NurtureService()
