from __future__ import annotations

from enum import StrEnum


class ContactType(StrEnum):
    LEAD = "lead"
    CUSTOMER = "customer"
    VENDOR = "vendor"
    EMPLOYEE = "employee"


class DealStatus(StrEnum):
    OPEN = "OPEN"
    WON = "WON"
    LOST = "LOST"


class StepChannel(StrEnum):
    EMAIL = "EMAIL"
    SMS = "SMS"


class EnrollmentStatus(StrEnum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ScheduledStepStatus(StrEnum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SENT = "SENT"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


NURTURE_ELIGIBLE_TYPES: dict[ContactType, bool] = {
    ContactType.LEAD: True,
    ContactType.CUSTOMER: False,
    ContactType.VENDOR: False,
    ContactType.EMPLOYEE: False,
}

VALID_ENROLLMENT_TRANSITIONS: dict[EnrollmentStatus, set[EnrollmentStatus]] = {
    EnrollmentStatus.ACTIVE: {EnrollmentStatus.PAUSED, EnrollmentStatus.COMPLETED, EnrollmentStatus.CANCELLED},
    EnrollmentStatus.PAUSED: {EnrollmentStatus.ACTIVE, EnrollmentStatus.CANCELLED},
    EnrollmentStatus.COMPLETED: set(),
    EnrollmentStatus.CANCELLED: set(),
}

OPEN_ENROLLMENT_STATUSES: frozenset[EnrollmentStatus] = frozenset({EnrollmentStatus.ACTIVE, EnrollmentStatus.PAUSED})


def is_nurture_eligible(contact_type: str) -> bool:
    try:
        return NURTURE_ELIGIBLE_TYPES[ContactType(contact_type)]
    except ValueError:
        return False
