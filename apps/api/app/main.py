from contextlib import asynccontextmanager
import logging
from typing import Any
import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.context import get_correlation_id
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.core.database import get_session_factory
from app.core.events import InternalEvent, event_bus
from app.crm.errors import LeadEngineError
from app.crm.scoring import scoring_service
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.rate_limit import CrmMutationRateLimitMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel
from app.platform.security.context import system_context
from app.platform.security.errors import AuthorizationError


configure_logging()
logger = logging.getLogger("app.lifecycle")

_rescore_event_types = [
    "crm.lead.created",
    "crm.lead.updated",
    "crm.nurture.step_sent",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _resolve_session_factory():  # type: ignore[no-untyped-def]
    provider = app.dependency_overrides.get(get_session_factory, get_session_factory)
    return provider()


def _on_lead_signal_changed(event: InternalEvent) -> None:
    if not get_settings().auto_score_on_events or not isinstance(event.payload, dict):
        return
    envelope: dict[str, Any] = event.payload
    tenant_id = envelope.get("tenant_id")
    contact_id_raw = envelope.get("contact_id")
    if not isinstance(tenant_id, str) or not isinstance(contact_id_raw, str):
        return
    try:
        contact_id = uuid.UUID(contact_id_raw)
    except ValueError:
        return

    correlation_id = envelope.get("correlation_id") if isinstance(envelope.get("correlation_id"), str) else None
    try:
        with _resolve_session_factory()() as session:
            scoring_service.recompute_one(session, system_context(tenant_id, correlation_id), contact_id)
    except LeadEngineError as exc:
        logger.warning(
            "lead_auto_rescore_failed",
            extra={"event_name": event.name, "tenant_id": tenant_id, "contact_id": contact_id_raw, "error": exc.message},
        )
    except Exception as exc:
        logger.exception(
            "lead_auto_rescore_failed",
            extra={"event_name": event.name, "tenant_id": tenant_id, "contact_id": contact_id_raw, "error": str(exc)[:500]},
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe("system.started", _on_system_started)
    for event_name in _rescore_event_types:
        event_bus.subscribe(event_name, _on_lead_signal_changed)
    event_bus.publish("system.started", {"service": "api"})
    try:
        yield
    finally:
        event_bus.unsubscribe("system.started", _on_system_started)
        for event_name in _rescore_event_types:
            event_bus.unsubscribe(event_name, _on_lead_signal_changed)


app = FastAPI(title="Leadflow API", version="0.1.0", lifespan=lifespan)
app.add_middleware(CrmMutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(AuthorizationError)
async def authorization_error_handler(request: Request, exc: AuthorizationError) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    return JSONResponse(
        status_code=exc.status_code,
        content={"code": exc.code, "message": str(exc), "details": None, "correlation_id": correlation_id},
    )


settings = get_settings()
if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
