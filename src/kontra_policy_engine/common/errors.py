"""Error hierarchy for the policy engine.

Every error carries a machine-readable ``code``, a human message, optional
structured ``details`` and the HTTP status the API layer renders it with.
Callers can tell "not found" from "validation error" from "storage error"
by type alone; the exception handlers registered in main.py turn them into
``{"code", "message", "details"}`` JSON bodies.
"""

from typing import Any

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response body."""

    code: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error message")
    details: dict[str, Any] = Field(default_factory=dict, description="Structured error context")


class PolicyEngineError(Exception):
    """Base exception for the policy engine."""

    code = "POLICY_ENGINE_ERROR"
    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to an API error response."""
        return ErrorResponse(code=self.code, message=self.message, details=self.details)


class NotFoundError(PolicyEngineError):
    """A requested resource does not exist for the tenant."""

    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, resource_id: str) -> None:
        super().__init__(
            f"{resource} {resource_id} not found",
            details={"resource": resource, "resource_id": resource_id},
        )
        self.resource = resource
        self.resource_id = resource_id


class ValidationError(PolicyEngineError):
    """A request or authored rule body is malformed."""

    code = "VALIDATION_ERROR"
    status_code = 422

    def __init__(self, message: str, field: str | None = None, details: dict[str, Any] | None = None) -> None:
        merged = dict(details or {})
        if field is not None:
            merged["field"] = field
        super().__init__(message, details=merged)
        self.field = field


class InvalidConditionError(ValidationError):
    """A condition tree failed to parse."""

    code = "INVALID_CONDITION"

    def __init__(self, message: str, path: str = "$") -> None:
        super().__init__(message, field="conditions", details={"path": path})
        self.path = path


class ConflictError(PolicyEngineError):
    """A state transition is not allowed from the resource's current state."""

    code = "CONFLICT"
    status_code = 409


class DuplicateFindingError(ConflictError):
    """An open finding already exists for the (entity, rule version) pair."""

    code = "DUPLICATE_FINDING"

    def __init__(self, entity_type: str, entity_id: str, rule_version_id: str) -> None:
        super().__init__(
            "An open finding already exists for this entity and rule version",
            details={
                "entity_type": entity_type,
                "entity_id": entity_id,
                "rule_version_id": rule_version_id,
            },
        )


class StorageError(PolicyEngineError):
    """The persistence layer failed."""

    code = "STORAGE_ERROR"
    status_code = 503
