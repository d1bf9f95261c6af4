"""Tests for the workflow engine."""

from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
from heritage.audit.models import AuditAction
from heritage.config import WorkflowConfig
from heritage.errors import (
    ConcurrentModification,
    EditInProgress,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    ValidationError,
    WorkflowError,
)
from heritage.notifications.models import EventKind, NotificationIntent
from heritage.notifications.notifier import MemoryNotifier, Notifier
from heritage.records.models import (
    Actor,
    Classification,
    ContentRecord,
    HeritageDeclaration,
    RecordStatus,
    Role,
)
from heritage.records.store import RecordStore
from heritage.workflow.engine import WorkflowEngine

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)

OWNER = Actor(actor_id="owner-1", role=Role.OWNER)
OTHER_OWNER = Actor(actor_id="owner-2", role=Role.OWNER)
PRIMARY = Actor(actor_id="chancery-1", role=Role.PRIMARY_REVIEWER)
SPECIALIST = Actor(actor_id="museum-1", role=Role.SPECIALIST_REVIEWER)

PARISH_DATA: dict[str, Any] = {
    "name": "Santo Nino Parish",
    "location": "Tagbilaran",
    "classification": "parish_church",
    "feast_day": "Jan 19",
}
ICP_DATA: dict[str, Any] = {
    "name": "Loboc Church",
    "location": "Loboc, Bohol",
    "classification": "ICP",
    "historical_background": "Founded by Jesuits",
}
DECLARATION = HeritageDeclaration(
    type=Classification.ICP, reference_no="NM-2010-01", issued_by="National Museum"
)


class _Clock:
    """Advances one minute on every call."""

    def __init__(self) -> None:
        self.now = T0

    def __call__(self) -> datetime:
        self.now += timedelta(minutes=1)
        return self.now


class _FailingNotifier(Notifier):
    def __init__(self, exc: Exception) -> None:
        self.exc = exc
        self.calls = 0

    def send(self, intent: NotificationIntent) -> None:
        self.calls += 1
        raise self.exc


@pytest.fixture
def store(tmp_path: Path) -> RecordStore:
    return RecordStore(tmp_path)


@pytest.fixture
def notifier() -> MemoryNotifier:
    return MemoryNotifier()


@pytest.fixture
def engine(store: RecordStore, notifier: MemoryNotifier) -> WorkflowEngine:
    return WorkflowEngine(store, notifier=notifier, clock=_Clock())


def _draft(engine: WorkflowEngine, record_id: str, data: dict[str, Any]) -> None:
    engine.create_record(record_id, OWNER, data)


def _pending(engine: WorkflowEngine, record_id: str, data: dict[str, Any]) -> None:
    _draft(engine, record_id, data)
    engine.submit(record_id, OWNER, data)


def _published(engine: WorkflowEngine, record_id: str, data: dict[str, Any]) -> None:
    _pending(engine, record_id, data)
    if data["classification"] in ("ICP", "NCT"):
        engine.forward(record_id, PRIMARY)
        engine.validate(record_id, SPECIALIST, DECLARATION)
    else:
        engine.approve(record_id, PRIMARY)


def _snapshot(store: RecordStore, record_id: str) -> tuple[dict[str, Any], int]:
    return store.require(record_id).model_dump(), len(store.audit_trail(record_id))


class TestCreate:
    def test_creates_draft(self, engine: WorkflowEngine, store: RecordStore):
        result = engine.create_record("rec-1", OWNER, {"name": "New Chapel"})
        assert result.status == RecordStatus.DRAFT
        assert result.view.owner_id == "owner-1"
        assert result.view.version == 1
        trail = store.audit_trail("rec-1")
        assert [e.action for e in trail] == [AuditAction.CREATE]
        assert trail[0].from_status is None

    def test_sets_classification_when_known(self, engine: WorkflowEngine):
        result = engine.create_record("rec-1", OWNER, {"classification": "NCT"})
        assert result.view.classification == Classification.NCT

    def test_duplicate_rejected(self, engine: WorkflowEngine):
        engine.create_record("rec-1", OWNER)
        with pytest.raises(ValidationError) as excinfo:
            engine.create_record("rec-1", OWNER)
        assert excinfo.value.fields == ["id"]

    def test_reviewer_cannot_create(self, engine: WorkflowEngine, store: RecordStore):
        with pytest.raises(PermissionDenied):
            engine.create_record("rec-1", PRIMARY)
        assert not store.exists("rec-1")

    def test_blank_id_rejected(self, engine: WorkflowEngine):
        with pytest.raises(ValidationError):
            engine.create_record("  ", OWNER)

    def test_unknown_classification_rejected(self, engine: WorkflowEngine):
        with pytest.raises(ValidationError) as excinfo:
            engine.create_record("rec-1", OWNER, {"classification": "castle"})
        assert excinfo.value.fields == ["classification"]

    def test_validation_stamp_rejected(self, engine: WorkflowEngine, store: RecordStore):
        with pytest.raises(ValidationError) as excinfo:
            engine.create_record("rec-1", OWNER, {"heritage_validation": {"validated": True}})
        assert excinfo.value.fields == ["heritage_validation"]
        assert not store.exists("rec-1")


class TestSubmit:
    def test_moves_to_pending_review(self, engine: WorkflowEngine, notifier: MemoryNotifier):
        _draft(engine, "rec-1", {})
        result = engine.submit("rec-1", OWNER, PARISH_DATA)
        assert result.status == RecordStatus.PENDING_REVIEW
        assert result.view.visible_data == PARISH_DATA
        assert result.view.classification == Classification.PARISH_CHURCH
        assert result.audit_entry.action == AuditAction.SUBMIT
        kinds = [(i.event_kind, i.recipient_role) for i in result.notifications]
        assert kinds == [(EventKind.RECORD_SUBMITTED, Role.PRIMARY_REVIEWER)]
        assert notifier.sent == result.notifications

    def test_missing_fields_rejected_without_change(
        self, engine: WorkflowEngine, store: RecordStore
    ):
        _draft(engine, "rec-1", {"name": "Chapel"})
        before = _snapshot(store, "rec-1")
        with pytest.raises(ValidationError) as excinfo:
            engine.submit("rec-1", OWNER, {"name": "Chapel", "location": " "})
        assert excinfo.value.fields == ["location", "classification"]
        assert _snapshot(store, "rec-1") == before

    def test_invalid_classification(self, engine: WorkflowEngine):
        _draft(engine, "rec-1", {})
        with pytest.raises(ValidationError) as excinfo:
            engine.submit("rec-1", OWNER, {**PARISH_DATA, "classification": "castle"})
        assert excinfo.value.fields == ["classification"]

    def test_other_owner_denied(self, engine: WorkflowEngine, store: RecordStore):
        _draft(engine, "rec-1", {})
        before = _snapshot(store, "rec-1")
        with pytest.raises(PermissionDenied):
            engine.submit("rec-1", OTHER_OWNER, PARISH_DATA)
        assert _snapshot(store, "rec-1") == before

    def test_reviewer_denied(self, engine: WorkflowEngine):
        _draft(engine, "rec-1", {})
        with pytest.raises(PermissionDenied):
            engine.submit("rec-1", PRIMARY, PARISH_DATA)

    def test_submit_twice_is_invalid(self, engine: WorkflowEngine):
        _pending(engine, "rec-1", PARISH_DATA)
        with pytest.raises(InvalidTransition):
            engine.submit("rec-1", OWNER, PARISH_DATA)

    def test_unknown_record(self, engine: WorkflowEngine):
        with pytest.raises(NotFound):
            engine.submit("ghost", OWNER, PARISH_DATA)

    def test_custom_required_fields(self, store: RecordStore):
        engine = WorkflowEngine(
            store,
            workflow=WorkflowConfig(required_fields=["name", "classification", "feast_day"]),
            clock=_Clock(),
        )
        engine.create_record("rec-1", OWNER)
        with pytest.raises(ValidationError) as excinfo:
            engine.submit("rec-1", OWNER, {"name": "A", "classification": "parish_church"})
        assert excinfo.value.fields == ["feast_day"]

    def test_forged_validation_stamp_rejected(self, engine: WorkflowEngine, store: RecordStore):
        _draft(engine, "rec-1", PARISH_DATA)
        before = _snapshot(store, "rec-1")
        forged = {**PARISH_DATA, "heritage_validation": {"validated": True}}
        with pytest.raises(ValidationError) as excinfo:
            engine.submit("rec-1", OWNER, forged)
        assert excinfo.value.fields == ["heritage_validation"]
        assert _snapshot(store, "rec-1") == before


class TestSpecialistRouting:
    def test_icp_record_goes_through_specialist(self, engine: WorkflowEngine, store: RecordStore):
        with store.transaction("loboc") as tx:
            tx.create(
                ContentRecord(id="loboc", owner_id=OWNER.actor_id, created_at=T0, updated_at=T0)
            )
        engine.submit("loboc", OWNER, ICP_DATA)

        with pytest.raises(InvalidTransition):
            engine.approve("loboc", PRIMARY)

        forwarded = engine.forward("loboc", PRIMARY)
        assert forwarded.status == RecordStatus.SPECIALIST_REVIEW

        validated = engine.validate("loboc", SPECIALIST, DECLARATION)
        assert validated.status == RecordStatus.PUBLISHED
        assert len(engine.list_audit_trail("loboc")) == 3

    def test_forward_notifies_specialist(self, engine: WorkflowEngine):
        _pending(engine, "loboc", ICP_DATA)
        result = engine.forward("loboc", PRIMARY, notes="Please verify the 1602 date")
        assert result.view.review_notes == "Please verify the 1602 date"
        assert result.notifications[0].event_kind == EventKind.SPECIALIST_REVIEW_ASSIGNED
        assert result.notifications[0].recipient_role == Role.SPECIALIST_REVIEWER
        assert result.audit_entry.notes == "Please verify the 1602 date"

    def test_forward_non_specialist_is_invalid(self, engine: WorkflowEngine):
        _pending(engine, "rec-1", PARISH_DATA)
        with pytest.raises(InvalidTransition):
            engine.forward("rec-1", PRIMARY)

    def test_specialist_cannot_forward(self, engine: WorkflowEngine):
        _pending(engine, "loboc", ICP_DATA)
        with pytest.raises(PermissionDenied):
            engine.forward("loboc", SPECIALIST)

    def test_primary_cannot_validate(self, engine: WorkflowEngine):
        _pending(engine, "loboc", ICP_DATA)
        engine.forward("loboc", PRIMARY)
        with pytest.raises(PermissionDenied):
            engine.validate("loboc", PRIMARY, DECLARATION)

    def test_configured_specialist_classifications(self, store: RecordStore):
        engine = WorkflowEngine(
            store,
            workflow=WorkflowConfig(specialist_classifications=[Classification.PARISH_CHURCH]),
            clock=_Clock(),
        )
        _pending(engine, "rec-1", PARISH_DATA)
        with pytest.raises(InvalidTransition):
            engine.approve("rec-1", PRIMARY)
        assert engine.forward("rec-1", PRIMARY).status == RecordStatus.SPECIALIST_REVIEW


class TestApprove:
    def test_publishes_non_specialist(self, engine: WorkflowEngine):
        _pending(engine, "rec-1", PARISH_DATA)
        result = engine.approve("rec-1", PRIMARY)
        assert result.status == RecordStatus.PUBLISHED
        intent = result.notifications[0]
        assert intent.event_kind == EventKind.RECORD_PUBLISHED
        assert intent.recipient_id == "owner-1"

    def test_owner_cannot_approve(self, engine: WorkflowEngine):
        _pending(engine, "rec-1", PARISH_DATA)
        with pytest.raises(PermissionDenied):
            engine.approve("rec-1", OWNER)


class TestValidate:
    def test_attaches_declaration(self, engine: WorkflowEngine):
        _pending(engine, "loboc", ICP_DATA)
        engine.forward("loboc", PRIMARY)
        result = engine.validate("loboc", SPECIALIST, DECLARATION, notes="Checked archives")
        declaration = result.view.visible_data["heritage_declaration"]
        assert declaration["type"] == "ICP"
        assert declaration["reference_no"] == "NM-2010-01"
        validation = result.view.visible_data["heritage_validation"]
        assert validation["validated_by"] == "museum-1"
        assert validation["notes"] == "Checked archives"
        assert result.audit_entry.metadata == {"declaration_type": "ICP"}
        kinds = {i.event_kind for i in result.notifications}
        assert kinds == {EventKind.RECORD_VALIDATED, EventKind.RECORD_PUBLISHED}

    def test_accepts_mapping(self, engine: WorkflowEngine):
        _pending(engine, "loboc", ICP_DATA)
        engine.forward("loboc", PRIMARY)
        result = engine.validate("loboc", SPECIALIST, {"type": "NCT", "issued_by": "NM"})
        assert result.view.visible_data["heritage_declaration"]["type"] == "NCT"

    def test_invalid_declaration(self, engine: WorkflowEngine, store: RecordStore):
        _pending(engine, "loboc", ICP_DATA)
        engine.forward("loboc", PRIMARY)
        before = _snapshot(store, "loboc")
        with pytest.raises(ValidationError) as excinfo:
            engine.validate("loboc", SPECIALIST, {"type": "castle"})
        assert excinfo.value.fields == ["type"]
        assert _snapshot(store, "loboc") == before


class TestRequestRevision:
    def test_primary_returns_to_draft(self, engine: WorkflowEngine):
        _pending(engine, "rec-1", PARISH_DATA)
        result = engine.request_revision("rec-1", PRIMARY, "Add the founding year")
        assert result.status == RecordStatus.DRAFT
        assert result.view.review_notes == "Add the founding year"
        assert result.audit_entry.notes == "Add the founding year"
        intent = result.notifications[0]
        assert intent.event_kind == EventKind.REVISION_REQUESTED
        assert intent.payload["reason"] == "Add the founding year"

    def test_specialist_returns_to_draft(self, engine: WorkflowEngine):
        _pending(engine, "loboc", ICP_DATA)
        engine.forward("loboc", PRIMARY)
        result = engine.request_revision("loboc", SPECIALIST, "Declaration number missing")
        assert result.status == RecordStatus.DRAFT

    def test_blank_reason_rejected(self, engine: WorkflowEngine):
        _pending(engine, "rec-1", PARISH_DATA)
        with pytest.raises(ValidationError) as excinfo:
            engine.request_revision("rec-1", PRIMARY, "   ")
        assert excinfo.value.fields == ["reason"]

    def test_resubmit_clears_notes(self, engine: WorkflowEngine):
        _pending(engine, "rec-1", PARISH_DATA)
        engine.request_revision("rec-1", PRIMARY, "Fix the name")
        result = engine.submit("rec-1", OWNER, {**PARISH_DATA, "name": "Sto. Nino Parish"})
        assert result.status == RecordStatus.PENDING_REVIEW
        assert result.view.review_notes == ""

    def test_not_allowed_on_published(self, engine: WorkflowEngine):
        _published(engine, "rec-1", PARISH_DATA)
        with pytest.raises(InvalidTransition):
            engine.request_revision("rec-1", PRIMARY, "too late")


class TestUnpublish:
    def test_retracts_and_resubmits(self, engine: WorkflowEngine):
        _published(engine, "rec-1", PARISH_DATA)
        result = engine.unpublish("rec-1", PRIMARY, reason="renovation")
        assert result.status == RecordStatus.RETRACTED
        assert result.audit_entry.notes == "renovation"
        assert result.view.unpublish is not None
        assert result.view.unpublish.reason == "renovation"

        resubmitted = engine.submit("rec-1", OWNER, {**PARISH_DATA, "feast_day": "Jan 20"})
        assert resubmitted.status == RecordStatus.PENDING_REVIEW
        assert resubmitted.audit_entry.metadata == {"resubmission": True}

    def test_blank_reason_uses_placeholder(self, engine: WorkflowEngine):
        _published(engine, "rec-1", PARISH_DATA)
        result = engine.unpublish("rec-1", PRIMARY, reason="")
        assert result.status == RecordStatus.RETRACTED
        assert result.audit_entry.notes == "No reason provided"

    def test_configured_placeholder(self, store: RecordStore):
        engine = WorkflowEngine(
            store,
            workflow=WorkflowConfig(unpublish_placeholder="Taken down"),
            clock=_Clock(),
        )
        _published(engine, "rec-1", PARISH_DATA)
        assert engine.unpublish("rec-1", PRIMARY).audit_entry.notes == "Taken down"

    def test_discards_pending_change(self, engine: WorkflowEngine):
        _published(engine, "rec-1", PARISH_DATA)
        engine.stage_edit("rec-1", OWNER, {"feast_day": "Jan 21"})
        result = engine.unpublish("rec-1", PRIMARY, reason="closed")
        assert result.view.pending_change is None
        assert result.view.visible_data["feast_day"] == "Jan 19"
        assert result.audit_entry.metadata["discarded_change"] == ["feast_day"]

    def test_notify_owner_flag(self, engine: WorkflowEngine):
        _published(engine, "rec-1", PARISH_DATA)
        result = engine.unpublish("rec-1", PRIMARY, reason="x", notify_owner=False)
        assert result.notifications == []
        assert result.audit_entry.metadata["notify_owner"] is False

    def test_owner_cannot_unpublish(self, engine: WorkflowEngine):
        _published(engine, "rec-1", PARISH_DATA)
        with pytest.raises(PermissionDenied):
            engine.unpublish("rec-1", OWNER, reason="mine")

    def test_draft_cannot_be_unpublished(self, engine: WorkflowEngine):
        _draft(engine, "rec-1", PARISH_DATA)
        with pytest.raises(InvalidTransition):
            engine.unpublish("rec-1", PRIMARY, reason="x")

    def test_resubmission_keeps_validation_stamp(self, engine: WorkflowEngine):
        _published(engine, "loboc", ICP_DATA)
        stamp = engine.get("loboc").visible_data["heritage_validation"]
        engine.unpublish("loboc", PRIMARY, reason="renovation")

        result = engine.submit("loboc", OWNER, ICP_DATA)
        assert result.view.visible_data["heritage_validation"] == stamp

    def test_resubmission_with_current_data_accepted(self, engine: WorkflowEngine):
        _published(engine, "loboc", ICP_DATA)
        engine.unpublish("loboc", PRIMARY, reason="renovation")
        current = engine.get("loboc").visible_data
        result = engine.submit("loboc", OWNER, current)
        assert result.status == RecordStatus.PENDING_REVIEW


class TestStageEdit:
    def test_operational_change_reviewed_by_primary(self, engine: WorkflowEngine):
        _published(engine, "rec-1", PARISH_DATA)
        staged = engine.stage_edit("rec-1", OWNER, {"feast_day": "Jan 21"})
        assert staged.status == RecordStatus.PUBLISHED
        assert staged.view.pending_change is not None
        assert staged.view.pending_change.forwarded_to_specialist is False
        assert staged.view.visible_data["feast_day"] == "Jan 19"
        assert staged.notifications[0].event_kind == EventKind.CHANGE_SUBMITTED

        merged = engine.approve_change("rec-1", PRIMARY)
        assert merged.status == RecordStatus.PUBLISHED
        assert merged.view.visible_data["feast_day"] == "Jan 21"
        assert merged.view.pending_change is None
        assert merged.audit_entry.action == AuditAction.MERGE_CHANGE

    def test_heritage_change_forwarded(self, engine: WorkflowEngine):
        _published(engine, "loboc", ICP_DATA)
        staged = engine.stage_edit(
            "loboc", OWNER, {"historical_background": "Founded 1602 by Jesuits"}
        )
        change = staged.view.pending_change
        assert change is not None
        assert change.forwarded_to_specialist
        assert change.forwarded_by == "owner-1"
        kinds = [(i.event_kind, i.recipient_role) for i in staged.notifications]
        assert kinds == [
            (EventKind.CHANGE_SUBMITTED, Role.PRIMARY_REVIEWER),
            (EventKind.CHANGE_FORWARDED, Role.SPECIALIST_REVIEWER),
        ]

        with pytest.raises(PermissionDenied):
            engine.approve_change("loboc", PRIMARY)
        merged = engine.approve_change("loboc", SPECIALIST)
        assert merged.view.visible_data["historical_background"] == "Founded 1602 by Jesuits"

    def test_second_edit_rejected_for_any_caller(self, engine: WorkflowEngine, store: RecordStore):
        _published(engine, "rec-1", PARISH_DATA)
        engine.stage_edit("rec-1", OWNER, {"feast_day": "Jan 21"})
        before = _snapshot(store, "rec-1")
        for actor in (OWNER, OTHER_OWNER, PRIMARY, SPECIALIST):
            with pytest.raises(EditInProgress):
                engine.stage_edit("rec-1", actor, {"feast_day": "Jan 22"})
        assert _snapshot(store, "rec-1") == before

    def test_other_owner_denied(self, engine: WorkflowEngine):
        _published(engine, "rec-1", PARISH_DATA)
        with pytest.raises(PermissionDenied):
            engine.stage_edit("rec-1", OTHER_OWNER, {"feast_day": "Jan 21"})

    def test_reviewer_denied(self, engine: WorkflowEngine):
        _published(engine, "rec-1", PARISH_DATA)
        with pytest.raises(PermissionDenied):
            engine.stage_edit("rec-1", PRIMARY, {"feast_day": "Jan 21"})

    def test_unpublished_record_invalid(self, engine: WorkflowEngine):
        _pending(engine, "rec-1", PARISH_DATA)
        with pytest.raises(InvalidTransition):
            engine.stage_edit("rec-1", OWNER, {"feast_day": "Jan 21"})

    def test_no_op_patch_rejected(self, engine: WorkflowEngine):
        _published(engine, "rec-1", PARISH_DATA)
        with pytest.raises(ValidationError):
            engine.stage_edit("rec-1", OWNER, {"feast_day": "Jan 19"})

    def test_clearing_required_field_rejected(self, engine: WorkflowEngine, store: RecordStore):
        _published(engine, "rec-1", PARISH_DATA)
        before = _snapshot(store, "rec-1")
        with pytest.raises(ValidationError) as excinfo:
            engine.stage_edit("rec-1", OWNER, {"location": "", "feast_day": "Jan 21"})
        assert excinfo.value.fields == ["location"]
        assert _snapshot(store, "rec-1") == before

    def test_required_fields_follow_config(self, store: RecordStore):
        engine = WorkflowEngine(
            store,
            workflow=WorkflowConfig(
                required_fields=["name", "location", "classification", "feast_day"]
            ),
            clock=_Clock(),
        )
        _published(engine, "rec-1", PARISH_DATA)
        with pytest.raises(ValidationError) as excinfo:
            engine.stage_edit("rec-1", OWNER, {"feast_day": None})
        assert excinfo.value.fields == ["feast_day"]

    def test_validation_stamp_cannot_be_staged(self, engine: WorkflowEngine, store: RecordStore):
        _published(engine, "rec-1", PARISH_DATA)
        before = _snapshot(store, "rec-1")
        forged = {"validated": True, "validated_by": "owner-1"}
        with pytest.raises(ValidationError) as excinfo:
            engine.stage_edit("rec-1", OWNER, {"heritage_validation": forged})
        assert excinfo.value.fields == ["heritage_validation"]
        assert _snapshot(store, "rec-1") == before
        with pytest.raises(InvalidTransition):
            engine.approve_change("rec-1", PRIMARY)

    def test_specialist_stamp_cannot_be_rewritten(self, engine: WorkflowEngine):
        _published(engine, "loboc", ICP_DATA)
        with pytest.raises(ValidationError):
            engine.stage_edit(
                "loboc",
                OWNER,
                {"heritage_validation": {"validated": True, "validated_by": "owner-1"}},
            )
        stamp = engine.get("loboc").visible_data["heritage_validation"]
        assert stamp["validated_by"] == "museum-1"


class TestChangeReview:
    def test_reject_keeps_public_data(self, engine: WorkflowEngine):
        _published(engine, "rec-1", PARISH_DATA)
        engine.stage_edit("rec-1", OWNER, {"feast_day": "Jan 21"})
        result = engine.reject_change("rec-1", PRIMARY, "Date is wrong")
        assert result.status == RecordStatus.PUBLISHED
        assert result.view.pending_change is None
        assert result.view.visible_data == PARISH_DATA
        assert result.audit_entry.metadata == {"changed_fields": ["feast_day"]}
        assert result.notifications[0].event_kind == EventKind.CHANGE_REJECTED

    def test_reject_requires_reason(self, engine: WorkflowEngine):
        _published(engine, "rec-1", PARISH_DATA)
        engine.stage_edit("rec-1", OWNER, {"feast_day": "Jan 21"})
        with pytest.raises(ValidationError):
            engine.reject_change("rec-1", PRIMARY, "")

    def test_slot_free_after_reject(self, engine: WorkflowEngine):
        _published(engine, "rec-1", PARISH_DATA)
        engine.stage_edit("rec-1", OWNER, {"feast_day": "Jan 21"})
        engine.reject_change("rec-1", PRIMARY, "no")
        assert engine.stage_edit("rec-1", OWNER, {"feast_day": "Jan 22"}).view.pending_change

    def test_approve_without_change_invalid(self, engine: WorkflowEngine):
        _published(engine, "rec-1", PARISH_DATA)
        with pytest.raises(InvalidTransition):
            engine.approve_change("rec-1", PRIMARY)

    def test_classification_change_merged(self, engine: WorkflowEngine):
        _published(engine, "rec-1", PARISH_DATA)
        staged = engine.stage_edit("rec-1", OWNER, {"classification": "pilgrimage_site"})
        assert staged.view.pending_change.forwarded_to_specialist  # type: ignore[union-attr]
        merged = engine.approve_change("rec-1", SPECIALIST)
        assert merged.view.classification == Classification.PILGRIMAGE_SITE


class TestAuditProperties:
    def test_one_entry_per_successful_operation(self, engine: WorkflowEngine):
        _draft(engine, "rec-1", {})
        succeeded = 1
        calls = [
            lambda: engine.submit("rec-1", OWNER, PARISH_DATA),
            lambda: engine.approve("rec-1", OWNER),
            lambda: engine.approve("rec-1", PRIMARY),
            lambda: engine.stage_edit("rec-1", OWNER, {"feast_day": "Jan 21"}),
            lambda: engine.stage_edit("rec-1", OWNER, {"feast_day": "Jan 22"}),
            lambda: engine.reject_change("rec-1", PRIMARY, "no"),
            lambda: engine.unpublish("rec-1", PRIMARY),
            lambda: engine.unpublish("rec-1", PRIMARY),
            lambda: engine.submit("rec-1", OWNER, PARISH_DATA),
        ]
        for call in calls:
            try:
                call()
            except WorkflowError:
                continue
            succeeded += 1

        trail = engine.list_audit_trail("rec-1")
        assert len(trail) == succeeded == 7
        assert [e.sequence for e in trail] == list(range(1, 8))
        timestamps = [e.timestamp for e in trail]
        assert timestamps == sorted(timestamps)
        assert trail[-1].to_status == RecordStatus.PENDING_REVIEW

    def test_specialist_record_needs_validate_to_publish(self, engine: WorkflowEngine):
        _pending(engine, "loboc", ICP_DATA)
        for actor in (OWNER, PRIMARY, SPECIALIST):
            with pytest.raises(WorkflowError):
                engine.approve("loboc", actor)
        engine.forward("loboc", PRIMARY)
        for actor in (OWNER, PRIMARY, SPECIALIST):
            with pytest.raises(WorkflowError):
                engine.approve("loboc", actor)
        assert engine.get("loboc").status == RecordStatus.SPECIALIST_REVIEW

        engine.validate("loboc", SPECIALIST, DECLARATION)
        published = [
            e for e in engine.list_audit_trail("loboc") if e.to_status == RecordStatus.PUBLISHED
        ]
        assert [(e.action, e.actor_role) for e in published] == [
            (AuditAction.VALIDATE, Role.SPECIALIST_REVIEWER)
        ]


class TestNotifications:
    def test_failure_does_not_fail_operation(self, store: RecordStore):
        failing = _FailingNotifier(RuntimeError("smtp down"))
        engine = WorkflowEngine(store, notifier=failing, clock=_Clock())
        _draft(engine, "rec-1", {})
        result = engine.submit("rec-1", OWNER, PARISH_DATA)
        assert result.status == RecordStatus.PENDING_REVIEW
        assert failing.calls == 1
        assert store.require("rec-1").status == RecordStatus.PENDING_REVIEW

    def test_unexpected_failure_absorbed(self, store: RecordStore):
        engine = WorkflowEngine(store, notifier=_FailingNotifier(KeyError("x")), clock=_Clock())
        _pending(engine, "rec-1", PARISH_DATA)
        assert engine.get("rec-1").status == RecordStatus.PENDING_REVIEW

    def test_intents_returned_without_notifier(self, store: RecordStore):
        engine = WorkflowEngine(store, clock=_Clock())
        _draft(engine, "rec-1", {})
        result = engine.submit("rec-1", OWNER, PARISH_DATA)
        assert len(result.notifications) == 1

    def test_nothing_sent_on_failure(self, engine: WorkflowEngine, notifier: MemoryNotifier):
        _draft(engine, "rec-1", {})
        with pytest.raises(ValidationError):
            engine.submit("rec-1", OWNER, {})
        assert notifier.sent == []


class TestReads:
    def test_get_unknown(self, engine: WorkflowEngine):
        with pytest.raises(NotFound):
            engine.get("ghost")

    def test_audit_trail_unknown(self, engine: WorkflowEngine):
        with pytest.raises(NotFound):
            engine.list_audit_trail("ghost")

    def test_list_records_queue(self, engine: WorkflowEngine):
        _pending(engine, "a", PARISH_DATA)
        _published(engine, "b", PARISH_DATA)
        _published(engine, "c", PARISH_DATA)
        engine.stage_edit("c", OWNER, {"feast_day": "Jan 21"})

        pending = engine.list_records(status=RecordStatus.PENDING_REVIEW)
        assert [v.id for v in pending] == ["a"]
        with_changes = engine.list_records(has_pending_change=True)
        assert [v.id for v in with_changes] == ["c"]
        parish = engine.list_records(classification=Classification.PARISH_CHURCH)
        assert len(parish) == 3

    def test_available_actions(self, engine: WorkflowEngine):
        _pending(engine, "loboc", ICP_DATA)
        primary = [r.transition.value for r in engine.available_actions("loboc", PRIMARY)]
        assert sorted(primary) == ["forward", "request_revision"]
        assert engine.available_actions("loboc", OWNER) == []

    def test_available_actions_for_other_owner(self, engine: WorkflowEngine):
        _draft(engine, "rec-1", {})
        assert engine.available_actions("rec-1", OWNER)
        assert engine.available_actions("rec-1", OTHER_OWNER) == []


class TestConcurrency:
    def test_concurrent_stage_edits_one_wins(self, engine: WorkflowEngine, store: RecordStore):
        _published(engine, "rec-1", PARISH_DATA)

        def stage(value: str) -> str:
            try:
                engine.stage_edit("rec-1", OWNER, {"feast_day": value})
            except EditInProgress:
                return "rejected"
            return "staged"

        with ThreadPoolExecutor(max_workers=2) as pool:
            outcomes = sorted(pool.map(stage, ["Jan 21", "Jan 22"]))

        assert outcomes == ["rejected", "staged"]
        actions = [e.action for e in store.audit_trail("rec-1")]
        assert actions.count(AuditAction.STAGE_EDIT) == 1

    def test_two_engines_same_directory(self, tmp_path: Path):
        first = WorkflowEngine(RecordStore(tmp_path), clock=_Clock())
        second = WorkflowEngine(RecordStore(tmp_path), clock=_Clock())
        _published(first, "rec-1", PARISH_DATA)
        second.stage_edit("rec-1", OWNER, {"feast_day": "Jan 21"})
        with pytest.raises(EditInProgress):
            first.stage_edit("rec-1", OWNER, {"feast_day": "Jan 22"})

    def test_write_from_other_engine_mid_operation_conflicts(self, tmp_path: Path):
        first = WorkflowEngine(RecordStore(tmp_path), clock=_Clock())
        second = WorkflowEngine(RecordStore(tmp_path), clock=_Clock())
        _published(first, "rec-1", PARISH_DATA)
        trail_before = len(first.list_audit_trail("rec-1"))
        authorize = first._authorize

        def unpublish_then_authorize(actor, transition, record):
            second.unpublish("rec-1", PRIMARY, reason="renovation")
            return authorize(actor, transition, record)

        with patch.object(first, "_authorize", side_effect=unpublish_then_authorize):
            with pytest.raises(ConcurrentModification):
                first.stage_edit("rec-1", OWNER, {"feast_day": "Jan 21"})

        fresh = RecordStore(tmp_path)
        record = fresh.require("rec-1")
        assert record.status == RecordStatus.RETRACTED
        assert record.pending_change is None
        trail = fresh.audit_trail("rec-1")
        assert len(trail) == trail_before + 1
        assert trail[-1].action == AuditAction.UNPUBLISH

    def test_parallel_engines_keep_every_record(self, tmp_path: Path):
        engines = [WorkflowEngine(RecordStore(tmp_path), clock=_Clock()) for _ in range(3)]

        def publish_batch(index: int) -> None:
            for n in range(3):
                _published(engines[index], f"rec-{index}-{n}", PARISH_DATA)

        with ThreadPoolExecutor(max_workers=len(engines)) as pool:
            list(pool.map(publish_batch, range(len(engines))))

        fresh = RecordStore(tmp_path)
        records = fresh.list()
        assert len(records) == 9
        assert all(r.status == RecordStatus.PUBLISHED for r in records)
        for record in records:
            actions = [e.action for e in fresh.audit_trail(record.id)]
            assert actions == [AuditAction.CREATE, AuditAction.SUBMIT, AuditAction.APPROVE]
