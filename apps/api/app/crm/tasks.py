from __future__ import annotations

import logging
import uuid
from dataclasses import asdict
from typing import Any

from app.context import reset_correlation_id, set_correlation_id
from app.core.celery_app import celery_app
from app.core.database import SessionLocal
from app.crm.scheduler import NurtureScheduler
from app.crm.scoring import scoring_service
from app.logging import configure_logging
from app.platform.security.context import system_context


configure_logging()
logger = logging.getLogger("app.crm.tasks")


@celery_app.task(name="app.crm.tasks.run_nurture_scheduler")
def run_nurture_scheduler() -> dict[str, int]:
    token = set_correlation_id(f"scheduler-{uuid.uuid4()}")
    try:
        return asdict(NurtureScheduler(session_factory=SessionLocal).run_once())
    finally:
        reset_correlation_id(token)


@celery_app.task(name="app.crm.tasks.recover_stale_steps")
def recover_stale_steps() -> int:
    token = set_correlation_id(f"scheduler-recovery-{uuid.uuid4()}")
    try:
        return NurtureScheduler(session_factory=SessionLocal).recover_stale()
    finally:
        reset_correlation_id(token)


@celery_app.task(name="app.crm.tasks.rescore_tenant_leads")
def rescore_tenant_leads(tenant_id: str, correlation_id: str | None = None) -> dict[str, Any]:
    token = set_correlation_id(correlation_id)
    try:
        result = scoring_service.recompute_batch(SessionLocal, system_context(tenant_id, correlation_id))
        logger.info("lead.score_batch_task_finished", extra={"tenant_id": tenant_id, "count": result.count})
        return result.model_dump(mode="json")
    finally:
        reset_correlation_id(token)
