"""Record domain models: pure Pydantic v2 data types.

A ContentRecord is one heritage-site profile.  Its public snapshot lives
in ``visible_data``; edits to an already-published record wait in a single
``pending_change`` slot until the right reviewer merges or rejects them.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class RecordStatus(StrEnum):
    """Lifecycle status of a record."""

    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    SPECIALIST_REVIEW = "specialist_review"
    PUBLISHED = "published"
    RETRACTED = "retracted"


class Classification(StrEnum):
    """Heritage classification of a site."""

    ICP = "ICP"  # Important Cultural Property
    NCT = "NCT"  # National Cultural Treasure
    NON_HERITAGE = "non_heritage"
    PARISH_CHURCH = "parish_church"
    PILGRIMAGE_SITE = "pilgrimage_site"
    HISTORICAL_SHRINE = "historical_shrine"


DEFAULT_SPECIALIST_CLASSIFICATIONS: frozenset[Classification] = frozenset(
    {Classification.ICP, Classification.NCT}
)


class Role(StrEnum):
    """Role an actor plays in the review pipeline."""

    OWNER = "owner"
    PRIMARY_REVIEWER = "primary_reviewer"
    SPECIALIST_REVIEWER = "specialist_reviewer"


class Actor(BaseModel):
    """Authenticated caller, supplied by the identity layer."""

    model_config = {"frozen": True}

    actor_id: str
    role: Role
    name: str = ""


class HeritageDeclaration(BaseModel):
    """Declaration metadata attached when a specialist validates a record."""

    type: Classification
    reference_no: str = ""
    issued_by: str = ""
    date_issued: str = ""
    notes: str = ""


class ChangeSet(BaseModel):
    """A staged, not-yet-applied edit to a published record."""

    proposed_data: dict[str, Any]
    changed_fields: list[str]
    submitted_by: str
    submitted_at: datetime
    forwarded_to_specialist: bool = False
    forwarded_at: datetime | None = None
    forwarded_by: str | None = None


class UnpublishInfo(BaseModel):
    """Why, when and by whom a record was taken down."""

    reason: str
    actor_id: str
    at: datetime


class ContentRecord(BaseModel):
    """Canonical heritage-site record under lifecycle management."""

    id: str
    owner_id: str
    classification: Classification | None = None
    status: RecordStatus = RecordStatus.DRAFT
    visible_data: dict[str, Any] = Field(default_factory=dict)
    pending_change: ChangeSet | None = None
    review_notes: str = ""
    unpublish: UnpublishInfo | None = None
    version: int = 0
    created_at: datetime
    updated_at: datetime
    submitted_at: datetime | None = None
    published_at: datetime | None = None
    last_reviewed_by: str | None = None

    @property
    def has_pending_change(self) -> bool:
        return self.pending_change is not None


class RecordView(BaseModel):
    """Read-only projection returned to callers after every operation."""

    id: str
    owner_id: str
    status: RecordStatus
    classification: Classification | None
    visible_data: dict[str, Any]
    pending_change: ChangeSet | None
    review_notes: str
    unpublish: UnpublishInfo | None
    version: int

    @classmethod
    def from_record(cls, record: ContentRecord) -> RecordView:
        snapshot = record.model_copy(deep=True)
        return cls(
            id=snapshot.id,
            owner_id=snapshot.owner_id,
            status=snapshot.status,
            classification=snapshot.classification,
            visible_data=snapshot.visible_data,
            pending_change=snapshot.pending_change,
            review_notes=snapshot.review_notes,
            unpublish=snapshot.unpublish,
            version=snapshot.version,
        )
