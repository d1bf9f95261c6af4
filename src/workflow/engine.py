"""Workflow engine: applies review transitions to heritage records.

Every operation runs as one store transaction: read the record, check the
permission policy, mutate status and data, append exactly one audit
entry, commit.  Any error raised along the way leaves the record as it
was.  Notification intents are returned to the caller and, when a
notifier is configured, delivered after the commit on a best-effort
basis.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from heritage.audit.models import AuditAction, AuditEntry
from heritage.config import HeritageConfig, WorkflowConfig
from heritage.errors import NotFound, PermissionDenied, ValidationError, WorkflowError
from heritage.notifications.models import EventKind, NotificationIntent
from heritage.notifications.notifier import Notifier, build_notifier, dispatch
from heritage.records.fields import ENGINE_FIELDS, engine_field_changes, missing_required
from heritage.records.models import (
    Actor,
    Classification,
    ContentRecord,
    HeritageDeclaration,
    RecordStatus,
    RecordView,
    Role,
    UnpublishInfo,
)
from heritage.records.store import RecordStore
from heritage.workflow import policy, staging
from heritage.workflow.policy import Transition, TransitionRule

logger = logging.getLogger(__name__)


class TransitionResult(BaseModel):
    """Outcome of a successful operation."""

    view: RecordView
    notifications: list[NotificationIntent] = Field(default_factory=list)
    audit_entry: AuditEntry

    @property
    def status(self) -> RecordStatus:
        return self.view.status


@dataclass
class _Outcome:
    action: AuditAction
    notes: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    intents: list[NotificationIntent] = field(default_factory=list)


Apply = Callable[[ContentRecord, TransitionRule, datetime], _Outcome]


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class WorkflowEngine:
    """Orchestrates the review lifecycle of heritage records.

    Args:
        store: Record store providing per-record transactions.
        workflow: Routing and validation rules.
        notifier: Optional channel for post-commit notification delivery.
        clock: Returns the current time; defaults to ``datetime.now(UTC)``.
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        workflow: WorkflowConfig | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._workflow = workflow or WorkflowConfig()
        self._notifier = notifier
        self._clock = clock or _utcnow
        self._specialist_classifications = frozenset(self._workflow.specialist_classifications)
        self._specialist_fields = frozenset(self._workflow.specialist_fields)

    @classmethod
    def from_config(cls, config: HeritageConfig) -> WorkflowEngine:
        """Build an engine with the store and notifier described by config."""
        store = RecordStore(config.store_path, lock_timeout=config.store.lock_timeout)
        return cls(
            store,
            workflow=config.workflow,
            notifier=build_notifier(config.notifications),
        )

    @property
    def store(self) -> RecordStore:
        return self._store

    # ── Internals ────────────────────────────────────────────────

    def _authorize(
        self, actor: Actor, transition: Transition, record: ContentRecord
    ) -> TransitionRule:
        change_forwarded = (
            record.pending_change.forwarded_to_specialist
            if record.pending_change is not None
            else None
        )
        return policy.authorize(
            actor.role,
            transition,
            record.status,
            record.classification,
            change_forwarded=change_forwarded,
            specialist_classifications=self._specialist_classifications,
            record_id=record.id,
        )

    def _transition(
        self,
        record_id: str,
        actor: Actor,
        transition: Transition,
        apply: Apply,
        *,
        precheck: Callable[[ContentRecord], None] | None = None,
    ) -> TransitionResult:
        now = self._clock()
        try:
            with self._store.transaction(record_id) as tx:
                record = tx.record
                if precheck is not None:
                    precheck(record)
                rule = self._authorize(actor, transition, record)
                from_status = record.status
                outcome = apply(record, rule, now)
                record.status = rule.to_status
                record.updated_at = now
                entry = tx.audit.record(
                    record.id,
                    actor=actor,
                    action=outcome.action,
                    from_status=from_status,
                    to_status=record.status,
                    timestamp=now,
                    notes=outcome.notes,
                    metadata=outcome.metadata,
                )
        except WorkflowError as exc:
            logger.debug(
                "%s on %s by %s (%s) rejected: %s",
                transition.value,
                record_id,
                actor.actor_id,
                actor.role.value,
                exc,
            )
            raise

        logger.info(
            "Record %s: %s by %s (%s) %s -> %s",
            record_id,
            outcome.action.value,
            actor.actor_id,
            actor.role.value,
            from_status.value,
            record.status.value,
        )
        dispatch(outcome.intents, self._notifier)
        return TransitionResult(
            view=RecordView.from_record(record),
            notifications=outcome.intents,
            audit_entry=entry,
        )

    @staticmethod
    def _require_owner(actor: Actor, record: ContentRecord) -> None:
        if actor.actor_id != record.owner_id:
            raise PermissionDenied(
                f"{actor.actor_id} is not the owner of record {record.id!r}",
                record_id=record.id,
            )

    @staticmethod
    def _require_reason(reason: str | None, record_id: str) -> str:
        text = (reason or "").strip()
        if not text:
            raise ValidationError("A reason is required", fields=["reason"], record_id=record_id)
        return text

    def _validate_submission(self, record_id: str, data: Mapping[str, Any]) -> Classification:
        missing = missing_required(data, self._workflow.required_fields)
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}",
                fields=missing,
                record_id=record_id,
            )
        raw = data.get("classification")
        try:
            return Classification(raw)
        except ValueError:
            raise ValidationError(
                f"Unknown classification {raw!r}",
                fields=["classification"],
                record_id=record_id,
            ) from None

    @staticmethod
    def _intent(
        record: ContentRecord,
        kind: EventKind,
        role: Role,
        *,
        to_owner: bool = False,
        **payload: Any,
    ) -> NotificationIntent:
        payload.setdefault("name", record.visible_data.get("name") or record.id)
        return NotificationIntent(
            record_id=record.id,
            event_kind=kind,
            recipient_role=role,
            recipient_id=record.owner_id if to_owner else None,
            payload=payload,
        )

    # ── Lifecycle operations ─────────────────────────────────────

    def create_record(
        self,
        record_id: str,
        owner: Actor,
        data: Mapping[str, Any] | None = None,
    ) -> TransitionResult:
        """Create a new draft record owned by ``owner``."""
        if not record_id.strip():
            raise ValidationError("Record id must not be blank", fields=["id"])
        if owner.role != Role.OWNER:
            raise PermissionDenied(
                f"Role {owner.role.value!r} may not create records", record_id=record_id
            )
        now = self._clock()
        visible = dict(data or {})
        locked = engine_field_changes({}, visible)
        if locked:
            raise ValidationError(
                f"Fields managed by the workflow cannot be edited: {', '.join(locked)}",
                fields=locked,
                record_id=record_id,
            )
        classification: Classification | None = None
        if visible.get("classification"):
            try:
                classification = Classification(visible["classification"])
            except ValueError:
                raise ValidationError(
                    f"Unknown classification {visible['classification']!r}",
                    fields=["classification"],
                    record_id=record_id,
                ) from None

        with self._store.transaction(record_id) as tx:
            if tx.exists:
                raise ValidationError(
                    f"Record {record_id!r} already exists", fields=["id"], record_id=record_id
                )
            record = tx.create(
                ContentRecord(
                    id=record_id,
                    owner_id=owner.actor_id,
                    classification=classification,
                    visible_data=visible,
                    created_at=now,
                    updated_at=now,
                )
            )
            entry = tx.audit.record(
                record_id,
                actor=owner,
                action=AuditAction.CREATE,
                from_status=None,
                to_status=record.status,
                timestamp=now,
            )
        logger.info("Record %s: created by %s", record_id, owner.actor_id)
        return TransitionResult(view=RecordView.from_record(record), audit_entry=entry)

    def submit(self, record_id: str, owner: Actor, data: Mapping[str, Any]) -> TransitionResult:
        """Submit (or resubmit after retraction) a record for review."""
        current = self._store.get(record_id)
        transition = (
            Transition.RESUBMIT
            if current is not None and current.status == RecordStatus.RETRACTED
            else Transition.SUBMIT
        )

        def apply(record: ContentRecord, rule: TransitionRule, now: datetime) -> _Outcome:
            self._require_owner(owner, record)
            classification = self._validate_submission(record.id, data)
            staging.require_engine_fields_untouched(record, data)
            resubmission = record.status == RecordStatus.RETRACTED
            visible = dict(data)
            for key in ENGINE_FIELDS & record.visible_data.keys():
                visible[key] = record.visible_data[key]
            record.visible_data = visible
            record.classification = classification
            record.review_notes = ""
            record.submitted_at = now
            return _Outcome(
                action=AuditAction.SUBMIT,
                metadata={"resubmission": True} if resubmission else {},
                intents=[
                    self._intent(
                        record,
                        EventKind.RECORD_SUBMITTED,
                        Role.PRIMARY_REVIEWER,
                        name=data.get("name"),
                    )
                ],
            )

        return self._transition(record_id, owner, transition, apply)

    def approve(self, record_id: str, reviewer: Actor) -> TransitionResult:
        """Publish a non-specialist record straight from primary review."""

        def apply(record: ContentRecord, rule: TransitionRule, now: datetime) -> _Outcome:
            record.published_at = now
            record.last_reviewed_by = reviewer.actor_id
            record.review_notes = ""
            return _Outcome(
                action=AuditAction.APPROVE,
                intents=[
                    self._intent(
                        record, EventKind.RECORD_PUBLISHED, Role.OWNER, to_owner=True
                    )
                ],
            )

        return self._transition(record_id, reviewer, Transition.APPROVE, apply)

    def forward(
        self, record_id: str, reviewer: Actor, notes: str | None = None
    ) -> TransitionResult:
        """Send a specialist-required record on to the specialist reviewer."""

        def apply(record: ContentRecord, rule: TransitionRule, now: datetime) -> _Outcome:
            record.last_reviewed_by = reviewer.actor_id
            record.review_notes = (notes or "").strip()
            return _Outcome(
                action=AuditAction.FORWARD,
                notes=notes or None,
                intents=[
                    self._intent(
                        record,
                        EventKind.SPECIALIST_REVIEW_ASSIGNED,
                        Role.SPECIALIST_REVIEWER,
                        notes=notes or "",
                    )
                ],
            )

        return self._transition(record_id, reviewer, Transition.FORWARD, apply)

    def validate(
        self,
        record_id: str,
        specialist: Actor,
        declaration: HeritageDeclaration | Mapping[str, Any],
        notes: str | None = None,
    ) -> TransitionResult:
        """Confirm heritage information, attach the declaration and publish."""

        def apply(record: ContentRecord, rule: TransitionRule, now: datetime) -> _Outcome:
            try:
                meta = (
                    declaration
                    if isinstance(declaration, HeritageDeclaration)
                    else HeritageDeclaration.model_validate(dict(declaration))
                )
            except PydanticValidationError as exc:
                fields = sorted({str(err["loc"][0]) for err in exc.errors() if err["loc"]})
                raise ValidationError(
                    "Invalid heritage declaration", fields=fields, record_id=record.id
                ) from exc
            visible = dict(record.visible_data)
            visible["heritage_declaration"] = meta.model_dump(mode="json")
            visible["heritage_validation"] = {
                "validated": True,
                "validated_by": specialist.actor_id,
                "validated_at": now.isoformat(),
                "notes": notes or "",
            }
            record.visible_data = visible
            record.published_at = now
            record.last_reviewed_by = specialist.actor_id
            record.review_notes = ""
            return _Outcome(
                action=AuditAction.VALIDATE,
                notes=notes or None,
                metadata={"declaration_type": meta.type.value},
                intents=[
                    self._intent(record, EventKind.RECORD_VALIDATED, Role.PRIMARY_REVIEWER),
                    self._intent(
                        record, EventKind.RECORD_PUBLISHED, Role.OWNER, to_owner=True
                    ),
                ],
            )

        return self._transition(record_id, specialist, Transition.VALIDATE, apply)

    def request_revision(self, record_id: str, reviewer: Actor, reason: str) -> TransitionResult:
        """Send a record under review back to its owner as a draft."""

        def apply(record: ContentRecord, rule: TransitionRule, now: datetime) -> _Outcome:
            text = self._require_reason(reason, record.id)
            record.review_notes = text
            record.last_reviewed_by = reviewer.actor_id
            return _Outcome(
                action=AuditAction.REQUEST_REVISION,
                notes=text,
                intents=[
                    self._intent(
                        record,
                        EventKind.REVISION_REQUESTED,
                        Role.OWNER,
                        to_owner=True,
                        reason=text,
                    )
                ],
            )

        return self._transition(record_id, reviewer, Transition.REQUEST_REVISION, apply)

    def unpublish(
        self,
        record_id: str,
        actor: Actor,
        reason: str = "",
        notify_owner: bool = True,
    ) -> TransitionResult:
        """Retract a published record.

        A blank reason is replaced by the configured placeholder; a
        retraction is never refused for lack of one.  Any staged
        change-set is discarded.
        """

        def apply(record: ContentRecord, rule: TransitionRule, now: datetime) -> _Outcome:
            text = (reason or "").strip() or self._workflow.unpublish_placeholder
            record.unpublish = UnpublishInfo(reason=text, actor_id=actor.actor_id, at=now)
            record.last_reviewed_by = actor.actor_id
            metadata: dict[str, Any] = {"notify_owner": notify_owner}
            discarded = staging.discard_change(record)
            if discarded is not None:
                metadata["discarded_change"] = list(discarded.changed_fields)
            intents = []
            if notify_owner:
                intents.append(
                    self._intent(
                        record,
                        EventKind.RECORD_UNPUBLISHED,
                        Role.OWNER,
                        to_owner=True,
                        reason=text,
                    )
                )
            return _Outcome(
                action=AuditAction.UNPUBLISH, notes=text, metadata=metadata, intents=intents
            )

        return self._transition(record_id, actor, Transition.UNPUBLISH, apply)

    # ── Staged edits ─────────────────────────────────────────────

    def stage_edit(
        self, record_id: str, submitter: Actor, patch: Mapping[str, Any]
    ) -> TransitionResult:
        """Stage an edit to a published record without touching the public copy."""

        def precheck(record: ContentRecord) -> None:
            if record.status == RecordStatus.PUBLISHED:
                staging.require_slot_free(record)

        def apply(record: ContentRecord, rule: TransitionRule, now: datetime) -> _Outcome:
            self._require_owner(submitter, record)
            change = staging.build_change_set(
                record,
                patch,
                submitted_by=submitter.actor_id,
                now=now,
                specialist_fields=self._specialist_fields,
                required_fields=self._workflow.required_fields,
            )
            record.pending_change = change
            intents = [
                self._intent(
                    record,
                    EventKind.CHANGE_SUBMITTED,
                    Role.PRIMARY_REVIEWER,
                    changed_fields=change.changed_fields,
                )
            ]
            if change.forwarded_to_specialist:
                intents.append(
                    self._intent(
                        record,
                        EventKind.CHANGE_FORWARDED,
                        Role.SPECIALIST_REVIEWER,
                        changed_fields=change.changed_fields,
                    )
                )
            return _Outcome(
                action=AuditAction.STAGE_EDIT,
                metadata={
                    "changed_fields": list(change.changed_fields),
                    "forwarded_to_specialist": change.forwarded_to_specialist,
                },
                intents=intents,
            )

        return self._transition(
            record_id, submitter, Transition.STAGE_EDIT, apply, precheck=precheck
        )

    def approve_change(self, record_id: str, reviewer: Actor) -> TransitionResult:
        """Merge the staged change-set into the public snapshot."""

        def apply(record: ContentRecord, rule: TransitionRule, now: datetime) -> _Outcome:
            change = staging.merge_change(record)
            record.last_reviewed_by = reviewer.actor_id
            return _Outcome(
                action=AuditAction.MERGE_CHANGE,
                metadata={
                    "changed_fields": list(change.changed_fields),
                    "submitted_by": change.submitted_by,
                    "forwarded_to_specialist": change.forwarded_to_specialist,
                },
                intents=[
                    self._intent(
                        record,
                        EventKind.CHANGE_APPROVED,
                        Role.OWNER,
                        to_owner=True,
                        changed_fields=change.changed_fields,
                    )
                ],
            )

        return self._transition(record_id, reviewer, Transition.APPROVE_CHANGE, apply)

    def reject_change(self, record_id: str, reviewer: Actor, reason: str) -> TransitionResult:
        """Discard the staged change-set; the public snapshot stays as is."""

        def apply(record: ContentRecord, rule: TransitionRule, now: datetime) -> _Outcome:
            text = self._require_reason(reason, record.id)
            change = staging.discard_change(record)
            record.review_notes = text
            record.last_reviewed_by = reviewer.actor_id
            changed = list(change.changed_fields) if change is not None else []
            return _Outcome(
                action=AuditAction.REJECT_CHANGE,
                notes=text,
                metadata={"changed_fields": changed},
                intents=[
                    self._intent(
                        record,
                        EventKind.CHANGE_REJECTED,
                        Role.OWNER,
                        to_owner=True,
                        reason=text,
                        changed_fields=changed,
                    )
                ],
            )

        return self._transition(record_id, reviewer, Transition.REJECT_CHANGE, apply)

    # ── Read operations ──────────────────────────────────────────

    def get(self, record_id: str) -> RecordView:
        """Return the current view of a record; raises NotFound."""
        return RecordView.from_record(self._store.require(record_id))

    def list_records(
        self,
        status: RecordStatus | None = None,
        classification: Classification | None = None,
        has_pending_change: bool | None = None,
    ) -> list[RecordView]:
        """Return record views, e.g. a reviewer's queue."""
        return [
            RecordView.from_record(record)
            for record in self._store.list(
                status=status,
                classification=classification,
                has_pending_change=has_pending_change,
            )
        ]

    def list_audit_trail(self, record_id: str) -> list[AuditEntry]:
        """Return the record's audit entries, oldest first; raises NotFound."""
        if not self._store.exists(record_id):
            raise NotFound(f"Record {record_id!r} not found", record_id=record_id)
        return self._store.audit_trail(record_id)

    def available_actions(self, record_id: str, actor: Actor) -> list[TransitionRule]:
        """Transitions the actor could apply to the record right now."""
        record = self._store.require(record_id)
        change_forwarded = (
            record.pending_change.forwarded_to_specialist
            if record.pending_change is not None
            else None
        )
        rules = policy.next_actions(
            actor.role,
            record.status,
            record.classification,
            change_forwarded=change_forwarded,
            specialist_classifications=self._specialist_classifications,
        )
        if actor.role == Role.OWNER and actor.actor_id != record.owner_id:
            return []
        return rules
