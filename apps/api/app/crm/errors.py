from __future__ import annotations

from typing import Any


class LeadEngineError(Exception):
    """Base error for scoring, allocation and nurture operations.

    ``code`` is stable and is what API clients match on.
    """

    code = "lead_engine_error"

    def __init__(self, message: str, *, details: Any = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class NotFoundError(LeadEngineError):
    code = "not_found"

    def __init__(self, resource: str, entity_id: object) -> None:
        self.resource = resource
        self.entity_id = entity_id
        super().__init__(f"{resource} not found", details={"resource": resource, "id": str(entity_id)})


class ConflictError(LeadEngineError):
    code = "conflict"


class ComputationError(LeadEngineError):
    """A scoring signal source was unavailable; the stored score is left as it was."""

    code = "computation_failed"


class NoEligibleRepError(LeadEngineError):
    code = "no_eligible_rep"

    def __init__(self, tenant_id: str) -> None:
        super().__init__("no eligible sales rep available", details={"tenant_id": tenant_id})


class InvalidTemplateError(LeadEngineError):
    code = "invalid_template"
