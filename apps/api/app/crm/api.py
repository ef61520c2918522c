from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.config import get_settings
from app.core.database import SessionFactory, get_db, get_session_factory
from app.crm.allocation import allocation_service
from app.crm.errors import (
    ComputationError,
    ConflictError,
    InvalidTemplateError,
    LeadEngineError,
    NoEligibleRepError,
    NotFoundError,
)
from app.crm.nurture import nurture_service
from app.crm.schemas import (
    AllocateRequest,
    AllocationRead,
    AllocationSuggestionRead,
    EnrollmentRead,
    EnrollRequest,
    LeadScoreBatchRead,
    LeadScorePreviewRead,
    LeadScoreRead,
    NurtureTemplateCreate,
    NurtureTemplateRead,
    SalesRepCreate,
    SalesRepLeaveUpdate,
    SalesRepRead,
)
from app.crm.scoring import scoring_service
from app.platform.security.context import AuthContext
from app.platform.security.errors import TenantRequiredError
from app.platform.security.guards import require_module, require_permission

leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
nurture_router = APIRouter(prefix="/api/crm", tags=["crm.nurture"])
sales_reps_router = APIRouter(prefix="/api/crm", tags=["crm.sales_reps"])

_ERROR_STATUS: list[tuple[type[LeadEngineError], int]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (InvalidTemplateError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NoEligibleRepError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ComputationError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def engine_error_response(request: Request, exc: LeadEngineError) -> JSONResponse:
    status_code = next(
        (code for error_type, code in _ERROR_STATUS if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    return error_response(request, status_code=status_code, code=exc.code, message=exc.message, details=exc.details)


def get_crm_context(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> AuthContext:
    """Resolve the caller's tenant and reject tenants without the CRM licence."""
    if not auth_user.tenant_id:
        raise TenantRequiredError()

    request_context = getattr(request.state, "context", None)
    if request_context is not None:
        request_context.user_id = auth_user.sub
        request_context.tenant_id = auth_user.tenant_id

    correlation_id = get_correlation_id() or getattr(request_context, "request_id", None)
    roles = [str(role) for role in auth_user.roles]
    normalized_roles = {role.lower() for role in roles}
    ctx = AuthContext(
        user_id=auth_user.sub,
        tenant_id=auth_user.tenant_id,
        correlation_id=correlation_id,
        is_super_admin="admin" in normalized_roles or "system.admin" in normalized_roles,
        roles=roles,
        permissions=roles,
        licensed_modules=list(auth_user.licensed_modules),
    )
    require_module(ctx, get_settings().crm_module_key)
    return ctx


@leads_router.post("/leads/score/batch", response_model=LeadScoreBatchRead)
def score_all_leads(
    session_factory: SessionFactory = Depends(get_session_factory),
    ctx: AuthContext = Depends(get_crm_context),
) -> LeadScoreBatchRead:
    require_permission(ctx, "crm.leads.score")
    return scoring_service.recompute_batch(session_factory, ctx)


@leads_router.get("/leads/{contact_id}/score", response_model=LeadScorePreviewRead)
def preview_lead_score(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_context),
) -> LeadScorePreviewRead | JSONResponse:
    try:
        require_permission(ctx, "crm.leads.read")
        return scoring_service.preview(db, ctx, contact_id)
    except LeadEngineError as exc:
        return engine_error_response(request, exc)


@leads_router.post("/leads/{contact_id}/score", response_model=LeadScoreRead)
def score_lead(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_context),
) -> LeadScoreRead | JSONResponse:
    try:
        require_permission(ctx, "crm.leads.score")
        return scoring_service.recompute_one(db, ctx, contact_id)
    except LeadEngineError as exc:
        return engine_error_response(request, exc)


@leads_router.get("/leads/{contact_id}/allocation-suggestions", response_model=list[AllocationSuggestionRead])
def get_allocation_suggestions(
    request: Request,
    contact_id: uuid.UUID,
    limit: int = Query(default=3, ge=1, le=50),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_context),
) -> list[AllocationSuggestionRead] | JSONResponse:
    try:
        require_permission(ctx, "crm.leads.read")
        return allocation_service.suggest(db, ctx, contact_id, limit=limit)
    except LeadEngineError as exc:
        return engine_error_response(request, exc)


@leads_router.post("/leads/{contact_id}/allocate", response_model=AllocationRead)
def allocate_lead(
    request: Request,
    contact_id: uuid.UUID,
    dto: AllocateRequest | None = None,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_context),
) -> AllocationRead | JSONResponse:
    payload = dto or AllocateRequest()
    try:
        require_permission(ctx, "crm.leads.allocate")
        return allocation_service.allocate(
            db,
            ctx,
            contact_id,
            rep_id=payload.rep_id,
            auto_assign=payload.auto_assign,
        )
    except LeadEngineError as exc:
        return engine_error_response(request, exc)


@leads_router.post(
    "/leads/{contact_id}/enroll-sequence",
    response_model=EnrollmentRead,
    status_code=status.HTTP_201_CREATED,
)
def enroll_lead(
    request: Request,
    contact_id: uuid.UUID,
    dto: EnrollRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_context),
) -> EnrollmentRead | JSONResponse:
    try:
        require_permission(ctx, "crm.nurture.manage")
        return nurture_service.enroll(db, ctx, contact_id, dto.template_id)
    except LeadEngineError as exc:
        return engine_error_response(request, exc)


@leads_router.get("/leads/{contact_id}/sequences", response_model=list[EnrollmentRead])
def list_lead_sequences(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_context),
) -> list[EnrollmentRead] | JSONResponse:
    try:
        require_permission(ctx, "crm.nurture.read")
        return nurture_service.list_enrollments(db, ctx, contact_id)
    except LeadEngineError as exc:
        return engine_error_response(request, exc)


@nurture_router.delete("/sequences/{enrollment_id}", response_model=EnrollmentRead)
def cancel_sequence(
    request: Request,
    enrollment_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_context),
) -> EnrollmentRead | JSONResponse:
    try:
        require_permission(ctx, "crm.nurture.manage")
        return nurture_service.cancel(db, ctx, enrollment_id)
    except LeadEngineError as exc:
        return engine_error_response(request, exc)


@nurture_router.post("/sequences/{enrollment_id}/pause", response_model=EnrollmentRead)
def pause_sequence(
    request: Request,
    enrollment_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_context),
) -> EnrollmentRead | JSONResponse:
    try:
        require_permission(ctx, "crm.nurture.manage")
        return nurture_service.pause(db, ctx, enrollment_id)
    except LeadEngineError as exc:
        return engine_error_response(request, exc)


@nurture_router.post("/sequences/{enrollment_id}/resume", response_model=EnrollmentRead)
def resume_sequence(
    request: Request,
    enrollment_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_context),
) -> EnrollmentRead | JSONResponse:
    try:
        require_permission(ctx, "crm.nurture.manage")
        return nurture_service.resume(db, ctx, enrollment_id)
    except LeadEngineError as exc:
        return engine_error_response(request, exc)


@nurture_router.get("/nurture/templates", response_model=list[NurtureTemplateRead])
def list_nurture_templates(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_context),
) -> list[NurtureTemplateRead]:
    require_permission(ctx, "crm.nurture.read")
    return nurture_service.list_templates(db, ctx)


@nurture_router.post("/nurture/templates", response_model=NurtureTemplateRead, status_code=status.HTTP_201_CREATED)
def create_nurture_template(
    request: Request,
    dto: NurtureTemplateCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_context),
) -> NurtureTemplateRead | JSONResponse:
    try:
        require_permission(ctx, "crm.nurture.manage")
        return nurture_service.create_template(db, ctx, dto)
    except LeadEngineError as exc:
        return engine_error_response(request, exc)


@sales_reps_router.get("/sales-reps", response_model=list[SalesRepRead])
def list_sales_reps(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_context),
) -> list[SalesRepRead]:
    require_permission(ctx, "crm.sales_reps.read")
    return allocation_service.list_reps(db, ctx)


@sales_reps_router.post("/sales-reps", response_model=SalesRepRead, status_code=status.HTTP_201_CREATED)
def create_sales_rep(
    request: Request,
    dto: SalesRepCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_context),
) -> SalesRepRead | JSONResponse:
    try:
        require_permission(ctx, "crm.sales_reps.manage")
        return allocation_service.create_rep(db, ctx, dto)
    except LeadEngineError as exc:
        return engine_error_response(request, exc)


@sales_reps_router.put("/sales-reps/{rep_id}/leave", response_model=SalesRepRead)
def set_sales_rep_leave(
    request: Request,
    rep_id: uuid.UUID,
    dto: SalesRepLeaveUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_context),
) -> SalesRepRead | JSONResponse:
    try:
        require_permission(ctx, "crm.sales_reps.manage")
        return allocation_service.set_leave(db, ctx, rep_id, dto)
    except LeadEngineError as exc:
        return engine_error_response(request, exc)


@sales_reps_router.post("/sales-reps/{rep_id}/conversion-rate", response_model=SalesRepRead)
def refresh_sales_rep_conversion_rate(
    request: Request,
    rep_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_context),
) -> SalesRepRead | JSONResponse:
    try:
        require_permission(ctx, "crm.sales_reps.manage")
        return allocation_service.recompute_conversion_rate(db, ctx, rep_id)
    except LeadEngineError as exc:
        return engine_error_response(request, exc)
