"""Failures raised by the workflow core.

Every error that leaves the core is a ``WorkflowError``; the API layer maps
``code`` to an HTTP status.
"""

from typing import Any, Optional


class WorkflowError(Exception):
    code = "WORKFLOW_ERROR"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(WorkflowError):
    code = "VALIDATION_ERROR"


class MissingReviewerError(ValidationError):
    code = "MISSING_REVIEWER"


class PermissionDeniedError(WorkflowError):
    code = "PERMISSION_DENIED"


class NotFoundError(WorkflowError):
    code = "NOT_FOUND"

    def __init__(self, resource: str, resource_id: str):
        super().__init__(f"{resource} '{resource_id}' not found.", {"resource": resource, "id": resource_id})
        self.resource = resource
        self.resource_id = resource_id


class InvalidTransitionError(WorkflowError):
    code = "INVALID_TRANSITION"

    def __init__(self, current_status, requested_status, reason: str = ""):
        message = f'Invalid status transition from "{current_status.value}" to "{requested_status.value}".'
        if reason:
            message = f"{message} {reason}"
        super().__init__(
            message,
            {"current_status": current_status.value, "requested_status": requested_status.value},
        )
        self.current_status = current_status
        self.requested_status = requested_status


class ConflictError(WorkflowError):
    """The task changed between read and conditional write."""

    code = "CONFLICT"


class StoreUnavailable(WorkflowError):
    code = "STORE_UNAVAILABLE"
