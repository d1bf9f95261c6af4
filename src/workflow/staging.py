"""Change staging: the single pending-edit slot on a published record.

A staged change-set is routed once, when it is created: if it touches any
specialist field it is forwarded to the specialist reviewer and stays
forwarded until it is merged or rejected.  A misrouted change-set is
rejected and staged again; it is never re-routed in place.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from heritage.errors import EditInProgress, ValidationError
from heritage.records.fields import (
    REQUIRED_FIELDS,
    SPECIALIST_FIELDS,
    diff_fields,
    engine_field_changes,
    missing_required,
    touches_specialist_fields,
)
from heritage.records.models import (
    ChangeSet,
    Classification,
    ContentRecord,
    Role,
)

logger = logging.getLogger(__name__)


def require_slot_free(record: ContentRecord) -> None:
    """Raise EditInProgress if a change-set is already staged."""
    if record.pending_change is not None:
        change = record.pending_change
        raise EditInProgress(
            f"Record {record.id!r} already has changes staged by {change.submitted_by} "
            f"at {change.submitted_at.isoformat()}",
            record_id=record.id,
        )


def require_engine_fields_untouched(record: ContentRecord, data: Mapping[str, Any]) -> None:
    """Raise ValidationError if ``data`` would rewrite an engine-managed field."""
    locked = engine_field_changes(record.visible_data, data)
    if locked:
        raise ValidationError(
            f"Fields managed by the workflow cannot be edited: {', '.join(locked)}",
            fields=locked,
            record_id=record.id,
        )


def build_change_set(
    record: ContentRecord,
    patch: Mapping[str, Any],
    *,
    submitted_by: str,
    now: datetime,
    specialist_fields: Iterable[str] = SPECIALIST_FIELDS,
    required_fields: Iterable[str] = REQUIRED_FIELDS,
) -> ChangeSet:
    """Diff ``patch`` against the public snapshot and build a change-set.

    Only fields whose value actually changes are kept.  Raises
    ValidationError when nothing would change.  Patches that clear a
    required field or rewrite an engine-managed one are refused the same way.
    """
    require_engine_fields_untouched(record, patch)
    changed = diff_fields(record.visible_data, patch)
    if not changed:
        raise ValidationError(
            "Patch does not change any field",
            fields=sorted(patch),
            record_id=record.id,
        )
    blanked = [
        name
        for name in missing_required({**record.visible_data, **patch}, required_fields)
        if name in changed
    ]
    if blanked:
        raise ValidationError(
            f"Required fields cannot be cleared: {', '.join(blanked)}",
            fields=blanked,
            record_id=record.id,
        )
    if "classification" in changed:
        _check_classification(record.id, patch["classification"])

    forwarded = touches_specialist_fields(changed, specialist_fields)
    return ChangeSet(
        proposed_data={key: patch[key] for key in changed},
        changed_fields=changed,
        submitted_by=submitted_by,
        submitted_at=now,
        forwarded_to_specialist=forwarded,
        forwarded_at=now if forwarded else None,
        forwarded_by=submitted_by if forwarded else None,
    )


def reviewer_role_for(change: ChangeSet) -> Role:
    """Role that must decide on this change-set."""
    if change.forwarded_to_specialist:
        return Role.SPECIALIST_REVIEWER
    return Role.PRIMARY_REVIEWER


def merge_change(record: ContentRecord) -> ChangeSet:
    """Apply the staged patch to ``visible_data`` and clear the slot.

    Returns the change-set that was merged.
    """
    change = _require_change(record)
    merged = dict(record.visible_data)
    merged.update(change.proposed_data)
    record.visible_data = merged
    if "classification" in change.proposed_data:
        record.classification = Classification(change.proposed_data["classification"])
    record.pending_change = None
    return change


def discard_change(record: ContentRecord) -> ChangeSet | None:
    """Clear the slot without touching ``visible_data``."""
    change = record.pending_change
    record.pending_change = None
    return change


def _require_change(record: ContentRecord) -> ChangeSet:
    if record.pending_change is None:
        raise ValueError(f"Record {record.id!r} has no staged change")
    return record.pending_change


def _check_classification(record_id: str, value: Any) -> None:
    try:
        Classification(value)
    except ValueError:
        raise ValidationError(
            f"Unknown classification {value!r}",
            fields=["classification"],
            record_id=record_id,
        ) from None
