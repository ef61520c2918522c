from __future__ import annotations

from datetime import date, datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

from app.crm.enums import EnrollmentStatus, ScheduledStepStatus, StepChannel


class LeadScoreRead(BaseModel):
    contact_id: UUID
    contact_name: str
    score: int = Field(ge=0, le=100)
    components: dict[str, float]
    score_updated_at: datetime


class LeadScorePreviewRead(BaseModel):
    contact_id: UUID
    contact_name: str
    current_score: int | None
    score: int = Field(ge=0, le=100)
    components: dict[str, float]


class LeadScoreBatchItem(BaseModel):
    contact_id: UUID
    status: Literal["succeeded", "failed"]
    score: int | None = None
    error: str | None = None


class LeadScoreBatchRead(BaseModel):
    count: int
    succeeded: int
    failed: int
    results: list[LeadScoreBatchItem]


class SalesRepCreate(BaseModel):
    user_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    email: EmailStr | None = None
    specialization: str | None = None
    conversion_rate: float = Field(default=0.0, ge=0, le=100)


class SalesRepLeaveUpdate(BaseModel):
    is_on_leave: bool
    leave_end_date: date | None = None

    @model_validator(mode="after")
    def _clear_end_date_when_back(self) -> SalesRepLeaveUpdate:
        if not self.is_on_leave:
            self.leave_end_date = None
        return self


class SalesRepRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    name: str
    email: str | None
    specialization: str | None
    conversion_rate: float
    is_on_leave: bool
    leave_end_date: date | None
    assigned_lead_count: int = 0
    created_at: datetime
    updated_at: datetime


class SalesRepSummary(BaseModel):
    id: UUID
    name: str
    email: str | None
    specialization: str | None
    conversion_rate: float
    assigned_lead_count: int


class AllocationSuggestionRead(BaseModel):
    rep: SalesRepSummary
    score: float
    reasons: list[str]


class AllocateRequest(BaseModel):
    rep_id: UUID | None = None
    auto_assign: bool = False


class AllocationRead(BaseModel):
    contact_id: UUID
    assigned: bool
    changed: bool
    rep: SalesRepSummary | None
    suggestions: list[AllocationSuggestionRead] = Field(default_factory=list)


class NurtureStepCreate(BaseModel):
    order: int = Field(ge=1)
    day_offset: int = Field(ge=0)
    channel: StepChannel = StepChannel.EMAIL
    subject: str = Field(min_length=1)
    body: str = Field(min_length=1)


class NurtureTemplateCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    steps: list[NurtureStepCreate] = Field(min_length=1)


class NurtureStepRead(BaseModel):
    id: UUID
    order: int
    day_offset: int
    channel: StepChannel
    subject: str
    body: str


class NurtureTemplateRead(BaseModel):
    id: UUID
    name: str
    description: str | None
    steps: list[NurtureStepRead]
    created_at: datetime


class NurtureTemplateSummary(BaseModel):
    id: UUID
    name: str
    description: str | None


class EnrollRequest(BaseModel):
    template_id: UUID


class ScheduledStepRead(BaseModel):
    id: UUID
    step_order: int
    channel: StepChannel
    subject: str
    scheduled_at: datetime
    status: ScheduledStepStatus
    attempts: int
    sent_at: datetime | None
    last_error: str | None


class EnrollmentRead(BaseModel):
    id: UUID
    contact_id: UUID
    template: NurtureTemplateSummary
    status: EnrollmentStatus
    total_steps: int
    completed_steps: int
    failed_steps: int
    progress: float
    enrolled_at: datetime
    completed_at: datetime | None
    cancelled_at: datetime | None
    steps: list[ScheduledStepRead]
