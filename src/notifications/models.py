"""Notification intents: what the workflow engine wants someone to hear.

The engine never delivers anything itself; it returns intents and, when a
notifier is configured, hands them over after the transition committed.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from heritage.records.models import Role


class EventKind(StrEnum):
    """Kinds of workflow events that produce notifications."""

    RECORD_SUBMITTED = "record_submitted"
    SPECIALIST_REVIEW_ASSIGNED = "specialist_review_assigned"
    RECORD_VALIDATED = "record_validated"
    RECORD_PUBLISHED = "record_published"
    REVISION_REQUESTED = "revision_requested"
    RECORD_UNPUBLISHED = "record_unpublished"
    CHANGE_SUBMITTED = "change_submitted"
    CHANGE_FORWARDED = "change_forwarded"
    CHANGE_APPROVED = "change_approved"
    CHANGE_REJECTED = "change_rejected"


class Priority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class NotificationTemplate(BaseModel):
    title: str
    message: str
    priority: Priority = Priority.MEDIUM


TEMPLATES: dict[EventKind, NotificationTemplate] = {
    EventKind.RECORD_SUBMITTED: NotificationTemplate(
        title="New record submitted",
        message="{name} was submitted and is waiting for review.",
    ),
    EventKind.SPECIALIST_REVIEW_ASSIGNED: NotificationTemplate(
        title="Heritage review assigned",
        message="{name} was forwarded for heritage validation.",
        priority=Priority.HIGH,
    ),
    EventKind.RECORD_VALIDATED: NotificationTemplate(
        title="Heritage validation complete",
        message="{name} was validated by a specialist and is now published.",
    ),
    EventKind.RECORD_PUBLISHED: NotificationTemplate(
        title="Record published",
        message="{name} is now live in the public directory.",
    ),
    EventKind.REVISION_REQUESTED: NotificationTemplate(
        title="Revision requested",
        message="{name} needs changes before it can be published: {reason}",
        priority=Priority.HIGH,
    ),
    EventKind.RECORD_UNPUBLISHED: NotificationTemplate(
        title="Record unpublished",
        message="{name} was removed from public view: {reason}",
        priority=Priority.URGENT,
    ),
    EventKind.CHANGE_SUBMITTED: NotificationTemplate(
        title="Changes awaiting review",
        message="Changes to {name} are waiting for review ({fields}).",
        priority=Priority.LOW,
    ),
    EventKind.CHANGE_FORWARDED: NotificationTemplate(
        title="Heritage changes awaiting review",
        message="Changes to heritage fields of {name} need specialist review ({fields}).",
        priority=Priority.HIGH,
    ),
    EventKind.CHANGE_APPROVED: NotificationTemplate(
        title="Changes approved",
        message="Your changes to {name} are now live.",
    ),
    EventKind.CHANGE_REJECTED: NotificationTemplate(
        title="Changes rejected",
        message="Your changes to {name} were not accepted: {reason}",
        priority=Priority.HIGH,
    ),
}


class NotificationIntent(BaseModel):
    """One message that should reach a role, or a specific actor."""

    record_id: str
    event_kind: EventKind
    recipient_role: Role
    recipient_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def priority(self) -> Priority:
        return TEMPLATES[self.event_kind].priority

    def render(self) -> tuple[str, str]:
        """Return ``(title, message)`` filled from the payload."""
        template = TEMPLATES[self.event_kind]
        values: dict[str, Any] = {
            "name": self.payload.get("name") or self.record_id,
            "reason": self.payload.get("reason", ""),
            "fields": ", ".join(self.payload.get("changed_fields", [])),
        }
        return template.title, template.message.format(**values)
