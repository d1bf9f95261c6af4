"""Audit domain models: immutable entries, one per state change."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from heritage.records.models import RecordStatus, Role


class AuditAction(StrEnum):
    """What an audit entry records."""

    CREATE = "create"
    SUBMIT = "submit"
    APPROVE = "approve"
    FORWARD = "forward"
    VALIDATE = "validate"
    REQUEST_REVISION = "request_revision"
    UNPUBLISH = "unpublish"
    STAGE_EDIT = "stage_edit"
    MERGE_CHANGE = "merge_change"
    REJECT_CHANGE = "reject_change"


ACTION_LABELS: dict[AuditAction, str] = {
    AuditAction.CREATE: "Created record",
    AuditAction.SUBMIT: "Submitted for review",
    AuditAction.APPROVE: "Approved and published",
    AuditAction.FORWARD: "Forwarded to specialist review",
    AuditAction.VALIDATE: "Validated heritage information",
    AuditAction.REQUEST_REVISION: "Requested revision",
    AuditAction.UNPUBLISH: "Unpublished",
    AuditAction.STAGE_EDIT: "Staged an edit",
    AuditAction.MERGE_CHANGE: "Merged staged edit",
    AuditAction.REJECT_CHANGE: "Rejected staged edit",
}


class AuditEntry(BaseModel):
    """Immutable record of one state change on one record."""

    model_config = {"frozen": True}

    record_id: str
    sequence: int
    actor_id: str
    actor_role: Role
    action: AuditAction
    from_status: RecordStatus | None
    to_status: RecordStatus
    timestamp: datetime
    notes: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def label(self) -> str:
        return ACTION_LABELS[self.action]
