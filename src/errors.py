"""Typed errors raised by the workflow engine and record store.

Every failure a caller can observe is a ``WorkflowError`` subclass with a
stable ``code``.  A raised error always means the record was left exactly
as it was before the call.
"""

from __future__ import annotations


class WorkflowError(Exception):
    """Base class for all workflow failures."""

    code = "workflow_error"

    def __init__(self, message: str, *, record_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.record_id = record_id

    def to_dict(self) -> dict[str, object]:
        return {"code": self.code, "message": self.message, "record_id": self.record_id}


class PermissionDenied(WorkflowError):
    """The actor's role may not perform this transition, though another role could."""

    code = "permission_denied"


class InvalidTransition(WorkflowError):
    """No role may perform this transition from the record's current state."""

    code = "invalid_transition"


class ValidationError(WorkflowError):
    """The payload is missing required fields or carries invalid values."""

    code = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        fields: list[str] | None = None,
        record_id: str | None = None,
    ) -> None:
        super().__init__(message, record_id=record_id)
        self.fields = list(fields or [])

    def to_dict(self) -> dict[str, object]:
        data = super().to_dict()
        data["fields"] = list(self.fields)
        return data


class EditInProgress(WorkflowError):
    """A change-set is already staged on the record."""

    code = "edit_in_progress"


class NotFound(WorkflowError):
    """No record exists with the requested id."""

    code = "not_found"


class ConcurrentModification(WorkflowError):
    """The store detected a conflicting write; the call is safe to retry."""

    code = "concurrent_modification"
