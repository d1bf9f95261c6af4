"""Permission policy: which role may apply which transition, and when.

Everything here is pure: no I/O, no clock, no store.  The workflow engine
calls ``authorize`` before touching any state; nothing else decides
whether a transition is allowed.

Transition table::

    draft              --submit----------(owner)--------------> pending_review
    retracted          --resubmit--------(owner)--------------> pending_review
    pending_review     --approve---------(primary, non-specialist)--> published
    pending_review     --forward---------(primary, specialist)--> specialist_review
    pending_review     --request_revision(primary)------------> draft
    specialist_review  --validate--------(specialist)---------> published
    specialist_review  --request_revision(specialist)---------> draft
    published          --unpublish-------(primary)------------> retracted
    published          --stage_edit------(owner)--------------> published
    published          --approve/reject_change (primary if not forwarded,
                                               specialist if forwarded)
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum

from heritage.errors import InvalidTransition, PermissionDenied
from heritage.records.models import (
    DEFAULT_SPECIALIST_CLASSIFICATIONS,
    Classification,
    RecordStatus,
    Role,
)


class Transition(StrEnum):
    """Every operation that changes a record."""

    SUBMIT = "submit"
    RESUBMIT = "resubmit"
    APPROVE = "approve"
    FORWARD = "forward"
    VALIDATE = "validate"
    REQUEST_REVISION = "request_revision"
    UNPUBLISH = "unpublish"
    STAGE_EDIT = "stage_edit"
    APPROVE_CHANGE = "approve_change"
    REJECT_CHANGE = "reject_change"


class Routing(StrEnum):
    """Extra condition a rule places on the record's classification or change."""

    ANY = "any"
    NON_SPECIALIST = "non_specialist"
    SPECIALIST = "specialist"
    CHANGE_NOT_FORWARDED = "change_not_forwarded"
    CHANGE_FORWARDED = "change_forwarded"


@dataclass(frozen=True)
class TransitionRule:
    transition: Transition
    role: Role
    from_status: RecordStatus
    to_status: RecordStatus
    label: str
    description: str
    routing: Routing = Routing.ANY
    requires_note: bool = False


TRANSITION_RULES: tuple[TransitionRule, ...] = (
    TransitionRule(
        Transition.SUBMIT,
        Role.OWNER,
        RecordStatus.DRAFT,
        RecordStatus.PENDING_REVIEW,
        "Submit for Review",
        "Submit the record to the primary reviewer",
    ),
    TransitionRule(
        Transition.RESUBMIT,
        Role.OWNER,
        RecordStatus.RETRACTED,
        RecordStatus.PENDING_REVIEW,
        "Resubmit for Review",
        "Send a retracted record back through review",
    ),
    TransitionRule(
        Transition.STAGE_EDIT,
        Role.OWNER,
        RecordStatus.PUBLISHED,
        RecordStatus.PUBLISHED,
        "Propose Changes",
        "Stage an edit to the published record for review",
    ),
    TransitionRule(
        Transition.APPROVE,
        Role.PRIMARY_REVIEWER,
        RecordStatus.PENDING_REVIEW,
        RecordStatus.PUBLISHED,
        "Approve & Publish",
        "Approve directly (non-heritage records)",
        routing=Routing.NON_SPECIALIST,
    ),
    TransitionRule(
        Transition.FORWARD,
        Role.PRIMARY_REVIEWER,
        RecordStatus.PENDING_REVIEW,
        RecordStatus.SPECIALIST_REVIEW,
        "Send to Specialist",
        "Forward to the specialist reviewer for heritage validation",
        routing=Routing.SPECIALIST,
    ),
    TransitionRule(
        Transition.REQUEST_REVISION,
        Role.PRIMARY_REVIEWER,
        RecordStatus.PENDING_REVIEW,
        RecordStatus.DRAFT,
        "Request Revision",
        "Return the record to its owner with a reason",
        requires_note=True,
    ),
    TransitionRule(
        Transition.UNPUBLISH,
        Role.PRIMARY_REVIEWER,
        RecordStatus.PUBLISHED,
        RecordStatus.RETRACTED,
        "Unpublish",
        "Take the record down from public view",
    ),
    TransitionRule(
        Transition.APPROVE_CHANGE,
        Role.PRIMARY_REVIEWER,
        RecordStatus.PUBLISHED,
        RecordStatus.PUBLISHED,
        "Approve Changes",
        "Merge the staged edit into the public record",
        routing=Routing.CHANGE_NOT_FORWARDED,
    ),
    TransitionRule(
        Transition.REJECT_CHANGE,
        Role.PRIMARY_REVIEWER,
        RecordStatus.PUBLISHED,
        RecordStatus.PUBLISHED,
        "Reject Changes",
        "Discard the staged edit",
        routing=Routing.CHANGE_NOT_FORWARDED,
        requires_note=True,
    ),
    TransitionRule(
        Transition.VALIDATE,
        Role.SPECIALIST_REVIEWER,
        RecordStatus.SPECIALIST_REVIEW,
        RecordStatus.PUBLISHED,
        "Validate & Publish",
        "Confirm heritage information and publish",
    ),
    TransitionRule(
        Transition.REQUEST_REVISION,
        Role.SPECIALIST_REVIEWER,
        RecordStatus.SPECIALIST_REVIEW,
        RecordStatus.DRAFT,
        "Request Revision",
        "Return the record to its owner with a reason",
        requires_note=True,
    ),
    TransitionRule(
        Transition.APPROVE_CHANGE,
        Role.SPECIALIST_REVIEWER,
        RecordStatus.PUBLISHED,
        RecordStatus.PUBLISHED,
        "Approve Heritage Changes",
        "Merge the forwarded edit into the public record",
        routing=Routing.CHANGE_FORWARDED,
    ),
    TransitionRule(
        Transition.REJECT_CHANGE,
        Role.SPECIALIST_REVIEWER,
        RecordStatus.PUBLISHED,
        RecordStatus.PUBLISHED,
        "Reject Heritage Changes",
        "Discard the forwarded edit",
        routing=Routing.CHANGE_FORWARDED,
        requires_note=True,
    ),
)


def is_specialist_required(
    classification: Classification | None,
    specialist_classifications: Iterable[Classification] = DEFAULT_SPECIALIST_CLASSIFICATIONS,
) -> bool:
    """Whether records with this classification need specialist sign-off."""
    return classification is not None and classification in set(specialist_classifications)


def _routing_holds(
    routing: Routing,
    specialist_required: bool,
    change_forwarded: bool | None,
) -> bool:
    match routing:
        case Routing.ANY:
            return True
        case Routing.NON_SPECIALIST:
            return not specialist_required
        case Routing.SPECIALIST:
            return specialist_required
        case Routing.CHANGE_NOT_FORWARDED:
            return change_forwarded is False
        case Routing.CHANGE_FORWARDED:
            return change_forwarded is True


def matching_rules(
    role: Role,
    status: RecordStatus,
    classification: Classification | None,
    *,
    change_forwarded: bool | None = None,
    specialist_classifications: Iterable[Classification] = DEFAULT_SPECIALIST_CLASSIFICATIONS,
) -> list[TransitionRule]:
    """Rules that ``role`` may apply to a record in this state.

    Args:
        role: Acting role.
        status: Current record status.
        classification: Current record classification.
        change_forwarded: ``None`` when no change-set is staged, otherwise
            whether the staged change-set was forwarded to the specialist.
        specialist_classifications: Classifications that require
            specialist review.
    """
    specialist_required = is_specialist_required(classification, specialist_classifications)
    return [
        rule
        for rule in TRANSITION_RULES
        if rule.role == role
        and rule.from_status == status
        and _routing_holds(rule.routing, specialist_required, change_forwarded)
    ]


def allowed_transitions(
    role: Role,
    status: RecordStatus,
    classification: Classification | None,
    *,
    change_forwarded: bool | None = None,
    specialist_classifications: Iterable[Classification] = DEFAULT_SPECIALIST_CLASSIFICATIONS,
) -> frozenset[Transition]:
    """Set of transitions ``role`` may apply to a record in this state."""
    return frozenset(
        rule.transition
        for rule in matching_rules(
            role,
            status,
            classification,
            change_forwarded=change_forwarded,
            specialist_classifications=specialist_classifications,
        )
    )


def authorize(
    role: Role,
    transition: Transition,
    status: RecordStatus,
    classification: Classification | None,
    *,
    change_forwarded: bool | None = None,
    specialist_classifications: Iterable[Classification] = DEFAULT_SPECIALIST_CLASSIFICATIONS,
    record_id: str | None = None,
) -> TransitionRule:
    """Return the rule that permits this transition, or raise.

    Raises:
        PermissionDenied: Another role could apply the transition here.
        InvalidTransition: No role can apply the transition here.
    """
    specialist_classifications = frozenset(specialist_classifications)

    def _rules_for(candidate: Role) -> list[TransitionRule]:
        return [
            rule
            for rule in matching_rules(
                candidate,
                status,
                classification,
                change_forwarded=change_forwarded,
                specialist_classifications=specialist_classifications,
            )
            if rule.transition == transition
        ]

    own = _rules_for(role)
    if own:
        return own[0]
    if any(_rules_for(other) for other in Role if other != role):
        raise PermissionDenied(
            f"Role {role.value!r} may not {transition.value} a {status.value} record",
            record_id=record_id,
        )
    raise InvalidTransition(
        f"Cannot {transition.value} a record in status {status.value!r}",
        record_id=record_id,
    )


def next_actions(
    role: Role,
    status: RecordStatus,
    classification: Classification | None,
    *,
    change_forwarded: bool | None = None,
    specialist_classifications: Iterable[Classification] = DEFAULT_SPECIALIST_CLASSIFICATIONS,
) -> list[TransitionRule]:
    """Rules the role can act on right now, for menus and listings.

    Staging is left out while a change-set already occupies the slot.
    """
    rules = matching_rules(
        role,
        status,
        classification,
        change_forwarded=change_forwarded,
        specialist_classifications=specialist_classifications,
    )
    if change_forwarded is not None:
        rules = [r for r in rules if r.transition != Transition.STAGE_EDIT]
    return rules
