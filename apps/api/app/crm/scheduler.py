from __future__ import annotations

import contextvars
import logging
import time
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from opentelemetry import trace
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.database import SessionFactory
from app.crm.enums import EnrollmentStatus, ScheduledStepStatus
from app.crm.errors import LeadEngineError
from app.crm.models import CRMNurtureEnrollment, CRMScheduledStep, utcnow
from app.crm.nurture import DispatchOutcome, NurtureService, nurture_service
from app.crm.repositories import ScheduledStepRepository
from app.metrics import observe_claim, observe_reclaimed, observe_scheduler_tick


logger = logging.getLogger("app.crm.scheduler")
tracer = trace.get_tracer("app.crm.scheduler")


@dataclass(frozen=True, slots=True)
class TickResult:
    polled: int = 0
    claimed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    superseded: int = 0


@dataclass(slots=True)
class NurtureScheduler:
    """Claim-then-process driver for due nurture steps.

    A step is dispatched only by the caller whose compare-and-set moved it
    from PENDING to PROCESSING, so concurrent ticks never double-send.
    """

    session_factory: SessionFactory
    nurture: NurtureService = field(default_factory=lambda: nurture_service)
    step_repository: ScheduledStepRepository = ScheduledStepRepository()
    clock: Callable[[], datetime] = utcnow
    batch_size: int | None = None
    concurrency: int | None = None
    claim_timeout: timedelta | None = None

    def poll_due(self, session: Session, limit: int | None = None) -> list[uuid.UUID]:
        size = limit if limit is not None else (self.batch_size or get_settings().scheduler_poll_batch_size)
        return self.step_repository.due_step_ids(session, self.clock(), size)

    def claim(self, session: Session, scheduled_step_id: uuid.UUID) -> bool:
        now = self.clock()
        active_enrollments = select(CRMNurtureEnrollment.id).where(
            CRMNurtureEnrollment.status == EnrollmentStatus.ACTIVE
        )
        changed = session.execute(
            update(CRMScheduledStep)
            .where(
                CRMScheduledStep.id == scheduled_step_id,
                CRMScheduledStep.status == ScheduledStepStatus.PENDING,
                CRMScheduledStep.enrollment_id.in_(active_enrollments),
            )
            .values(
                status=ScheduledStepStatus.PROCESSING,
                claimed_at=now,
                attempts=CRMScheduledStep.attempts + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        session.commit()
        won = changed == 1
        observe_claim(won)
        return won

    def run_once(self) -> TickResult:
        started = time.perf_counter()
        workers = max(1, self.concurrency or get_settings().scheduler_worker_concurrency)

        with tracer.start_as_current_span("crm.scheduler.tick") as span:
            with self.session_factory() as session:
                due = self.poll_due(session)
                claimed = [step_id for step_id in due if self.claim(session, step_id)]

            if workers == 1 or len(claimed) <= 1:
                outcomes = [self._dispatch_in_own_session(step_id) for step_id in claimed]
            else:
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="nurture-dispatch") as executor:
                    futures = [
                        executor.submit(contextvars.copy_context().run, self._dispatch_in_own_session, step_id)
                        for step_id in claimed
                    ]
                    outcomes = [future.result() for future in futures]

            delivered = [item for item in outcomes if item is not None and not item.superseded]
            result = TickResult(
                polled=len(due),
                claimed=len(claimed),
                sent=sum(1 for item in delivered if item.status == ScheduledStepStatus.SENT),
                failed=sum(1 for item in delivered if item.status == ScheduledStepStatus.FAILED),
                skipped=len(due) - len(claimed),
                superseded=sum(1 for item in outcomes if item is not None and item.superseded),
            )
            span.set_attribute("polled", result.polled)
            span.set_attribute("claimed", result.claimed)
            span.set_attribute("sent", result.sent)
            span.set_attribute("failed", result.failed)

        duration = time.perf_counter() - started
        observe_scheduler_tick(duration)
        if result.polled:
            logger.info(
                "scheduler.tick",
                extra={
                    "polled": result.polled,
                    "claimed": result.claimed,
                    "succeeded": result.sent,
                    "failed": result.failed,
                    "duration_ms": round(duration * 1000, 2),
                },
            )
        return result

    def recover_stale(self) -> int:
        """Return steps stuck in PROCESSING past the claim timeout to the queue."""
        timeout = self.claim_timeout or timedelta(seconds=get_settings().scheduler_claim_timeout_seconds)
        now = self.clock()
        cutoff = now - timeout
        stale = (
            CRMScheduledStep.status == ScheduledStepStatus.PROCESSING,
            CRMScheduledStep.claimed_at < cutoff,
        )
        cancelled_enrollments = select(CRMNurtureEnrollment.id).where(
            CRMNurtureEnrollment.status == EnrollmentStatus.CANCELLED
        )

        with self.session_factory() as session:
            cancelled = session.execute(
                update(CRMScheduledStep)
                .where(*stale, CRMScheduledStep.enrollment_id.in_(cancelled_enrollments))
                .values(status=ScheduledStepStatus.CANCELLED, updated_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            requeued = session.execute(
                update(CRMScheduledStep)
                .where(*stale)
                .values(status=ScheduledStepStatus.PENDING, claimed_at=None, updated_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            session.commit()

        observe_reclaimed(ScheduledStepStatus.CANCELLED.value, cancelled)
        observe_reclaimed(ScheduledStepStatus.PENDING.value, requeued)
        if cancelled or requeued:
            logger.warning(
                "scheduler.reclaimed",
                extra={"reclaimed": requeued + cancelled, "count": cancelled, "status": ScheduledStepStatus.PENDING.value},
            )
        return requeued + cancelled

    def _dispatch_in_own_session(self, scheduled_step_id: uuid.UUID) -> DispatchOutcome | None:
        with self.session_factory() as session:
            try:
                return self.nurture.dispatch(session, scheduled_step_id)
            except LeadEngineError as exc:
                session.rollback()
                logger.warning(
                    "scheduler.dispatch_skipped",
                    extra={"scheduled_step_id": str(scheduled_step_id), "error": exc.message},
                )
            except Exception as exc:
                session.rollback()
                logger.exception(
                    "scheduler.dispatch_error",
                    extra={"scheduled_step_id": str(scheduled_step_id), "error": str(exc)[:500]},
                )
        return None
