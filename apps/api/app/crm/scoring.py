from __future__ import annotations

import contextvars
import logging
import math
import time
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import events
from app.core.config import get_settings
from app.core.database import SessionFactory
from app.crm.errors import ComputationError, LeadEngineError
from app.crm.models import CRMContact, as_utc, utcnow
from app.crm.repositories import ContactRepository, DealRepository, InteractionRepository
from app.crm.schemas import LeadScoreBatchItem, LeadScoreBatchRead, LeadScorePreviewRead, LeadScoreRead
from app.metrics import observe_score, observe_score_batch
from app.platform.security.context import AuthContext


logger = logging.getLogger("app.crm.scoring")
tracer = trace.get_tracer("app.crm.scoring")

SCORE_WEIGHTS: dict[str, float] = {
    "recency": 0.25,
    "engagement": 0.25,
    "source": 0.15,
    "firmographic": 0.15,
    "open_deal": 0.20,
}

SOURCE_SCORES: dict[str, float] = {
    "referral": 100.0,
    "partner": 90.0,
    "event": 80.0,
    "website": 70.0,
    "inbound": 70.0,
    "webinar": 65.0,
    "social": 50.0,
    "advertising": 45.0,
    "email": 40.0,
    "cold_call": 30.0,
    "import": 25.0,
}
UNKNOWN_SOURCE_SCORE = 40.0
MISSING_SOURCE_SCORE = 20.0

RECENCY_DECAY_DAYS = 30.0
POINTS_PER_INTERACTION = 10.0
FIRMOGRAPHIC_FIELDS = ("company", "industry", "email", "phone")


@dataclass(frozen=True, slots=True)
class LeadSignals:
    interaction_count: int
    has_open_deal: bool
    now: datetime


@dataclass(frozen=True, slots=True)
class ScoreResult:
    score: int
    components: dict[str, float]


def _bounded(value: float) -> float:
    return max(0.0, min(100.0, value))


def _recency_score(last_contacted_at: datetime | None, now: datetime) -> float:
    last_contacted = as_utc(last_contacted_at)
    if last_contacted is None:
        return 0.0
    days = max(0.0, (as_utc(now) - last_contacted).total_seconds() / 86400)
    return _bounded(100.0 * math.exp(-days / RECENCY_DECAY_DAYS))


def _source_score(source: str | None) -> float:
    if not source or not source.strip():
        return MISSING_SOURCE_SCORE
    key = source.strip().lower().replace(" ", "_").replace("-", "_")
    return SOURCE_SCORES.get(key, UNKNOWN_SOURCE_SCORE)


def _firmographic_score(contact: CRMContact) -> float:
    present = sum(1 for field_name in FIRMOGRAPHIC_FIELDS if (getattr(contact, field_name) or "").strip())
    return _bounded(100.0 * present / len(FIRMOGRAPHIC_FIELDS))


def score_contact(contact: CRMContact, signals: LeadSignals) -> ScoreResult:
    """Deterministic 0-100 score from the contact profile and its collected signals."""
    components = {
        "recency": _recency_score(contact.last_contacted_at, signals.now),
        "engagement": _bounded(max(0, signals.interaction_count) * POINTS_PER_INTERACTION),
        "source": _source_score(contact.source),
        "firmographic": _firmographic_score(contact),
        "open_deal": 100.0 if signals.has_open_deal else 0.0,
    }
    weighted = sum(SCORE_WEIGHTS[name] * value for name, value in components.items())
    return ScoreResult(
        score=int(round(_bounded(weighted))),
        components={name: round(value, 2) for name, value in components.items()},
    )


class SignalProvider(Protocol):
    def collect(self, session: Session, ctx: AuthContext, contact: CRMContact, now: datetime) -> LeadSignals: ...


class DatabaseSignalProvider:
    def __init__(
        self,
        interaction_repository: InteractionRepository | None = None,
        deal_repository: DealRepository | None = None,
    ) -> None:
        self.interaction_repository = interaction_repository or InteractionRepository()
        self.deal_repository = deal_repository or DealRepository()

    def collect(self, session: Session, ctx: AuthContext, contact: CRMContact, now: datetime) -> LeadSignals:
        try:
            return LeadSignals(
                interaction_count=self.interaction_repository.count_for_contact(session, ctx, contact.id),
                has_open_deal=self.deal_repository.has_open_deal(session, ctx, contact.id),
                now=now,
            )
        except SQLAlchemyError as exc:
            raise ComputationError(
                "scoring signals unavailable",
                details={"contact_id": str(contact.id), "error": str(exc)[:500]},
            ) from exc


@dataclass(slots=True)
class ScoringService:
    contact_repository: ContactRepository = ContactRepository()
    signal_provider: SignalProvider = DatabaseSignalProvider()
    clock: Callable[[], datetime] = utcnow

    def preview(self, session: Session, ctx: AuthContext, contact_id: uuid.UUID) -> LeadScorePreviewRead:
        contact = self.contact_repository.get_or_raise(session, ctx, contact_id)
        result = self._compute(session, ctx, contact, self.clock())
        observe_score("preview", "succeeded")
        return LeadScorePreviewRead(
            contact_id=contact.id,
            contact_name=contact.name,
            current_score=contact.score,
            score=result.score,
            components=result.components,
        )

    def recompute_one(self, session: Session, ctx: AuthContext, contact_id: uuid.UUID) -> LeadScoreRead:
        with tracer.start_as_current_span("crm.lead.score") as span:
            span.set_attribute("tenant_id", ctx.tenant_id)
            span.set_attribute("contact_id", str(contact_id))
            span.set_attribute("correlation_id", ctx.correlation_id)

            contact = self.contact_repository.get_or_raise(session, ctx, contact_id)
            now = self.clock()
            try:
                result = self._compute(session, ctx, contact, now)
            except ComputationError as exc:
                session.rollback()
                span.set_status(Status(StatusCode.ERROR, exc.message))
                observe_score("single", "failed")
                logger.warning(
                    "lead.score_failed",
                    extra={"tenant_id": ctx.tenant_id, "contact_id": str(contact_id), "error": exc.message},
                )
                raise

            previous_score = contact.score
            contact.score = result.score
            contact.score_components = result.components
            contact.score_updated_at = now
            contact.row_version = contact.row_version + 1
            session.add(contact)
            session.commit()
            span.set_attribute("score", result.score)

        events.publish(
            {
                "event_type": "crm.lead.scored",
                "tenant_id": ctx.tenant_id,
                "contact_id": str(contact_id),
                "score": result.score,
                "previous_score": previous_score,
                "correlation_id": ctx.correlation_id,
            }
        )
        observe_score("single", "succeeded")
        logger.info(
            "lead.scored",
            extra={"tenant_id": ctx.tenant_id, "contact_id": str(contact_id), "score": result.score},
        )
        return LeadScoreRead(
            contact_id=contact_id,
            contact_name=contact.name,
            score=result.score,
            components=result.components,
            score_updated_at=as_utc(now),
        )

    def recompute_batch(
        self,
        session_factory: SessionFactory,
        ctx: AuthContext,
        *,
        concurrency: int | None = None,
    ) -> LeadScoreBatchRead:
        """Rescore every lead of the tenant, one short session per contact.

        A failing contact is logged and reported in the results; it never
        aborts the rest of the batch.
        """
        workers = max(1, concurrency if concurrency is not None else get_settings().scoring_batch_concurrency)
        started = time.perf_counter()

        with tracer.start_as_current_span("crm.lead.score_batch") as span:
            span.set_attribute("tenant_id", ctx.tenant_id)
            span.set_attribute("correlation_id", ctx.correlation_id)

            with session_factory() as session:
                contact_ids = self.contact_repository.lead_ids(session, ctx)

            logger.info("lead.score_batch_started", extra={"tenant_id": ctx.tenant_id, "count": len(contact_ids)})

            if workers == 1 or len(contact_ids) <= 1:
                results = [self._score_in_own_session(session_factory, ctx, contact_id) for contact_id in contact_ids]
            else:
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="lead-score") as executor:
                    futures = [
                        executor.submit(
                            contextvars.copy_context().run,
                            self._score_in_own_session,
                            session_factory,
                            ctx,
                            contact_id,
                        )
                        for contact_id in contact_ids
                    ]
                    results = [future.result() for future in futures]

            succeeded = sum(1 for item in results if item.status == "succeeded")
            failed = len(results) - succeeded
            span.set_attribute("succeeded", succeeded)
            span.set_attribute("failed", failed)

        duration = time.perf_counter() - started
        observe_score_batch(duration)
        logger.info(
            "lead.score_batch_finished",
            extra={
                "tenant_id": ctx.tenant_id,
                "count": len(results),
                "succeeded": succeeded,
                "failed": failed,
                "duration_ms": round(duration * 1000, 2),
            },
        )
        return LeadScoreBatchRead(count=len(results), succeeded=succeeded, failed=failed, results=results)

    def _score_in_own_session(
        self,
        session_factory: SessionFactory,
        ctx: AuthContext,
        contact_id: uuid.UUID,
    ) -> LeadScoreBatchItem:
        with session_factory() as session:
            try:
                scored = self.recompute_one(session, ctx, contact_id)
            except LeadEngineError as exc:
                session.rollback()
                return LeadScoreBatchItem(contact_id=contact_id, status="failed", error=exc.message)
            except Exception as exc:
                session.rollback()
                observe_score("single", "failed")
                logger.exception(
                    "lead.score_failed",
                    extra={"tenant_id": ctx.tenant_id, "contact_id": str(contact_id), "error": str(exc)[:500]},
                )
                return LeadScoreBatchItem(contact_id=contact_id, status="failed", error=str(exc)[:500])
        return LeadScoreBatchItem(contact_id=contact_id, status="succeeded", score=scored.score)

    def _compute(self, session: Session, ctx: AuthContext, contact: CRMContact, now: datetime) -> ScoreResult:
        signals = self.signal_provider.collect(session, ctx, contact, now)
        return score_contact(contact, signals)


scoring_service = ScoringService()
