"""Review workflow: permission policy, change staging and the engine."""

from heritage.workflow.engine import TransitionResult, WorkflowEngine
from heritage.workflow.policy import (
    TRANSITION_RULES,
    Routing,
    Transition,
    TransitionRule,
    allowed_transitions,
    authorize,
    is_specialist_required,
    next_actions,
)

__all__ = [
    "TRANSITION_RULES",
    "Routing",
    "Transition",
    "TransitionResult",
    "TransitionRule",
    "WorkflowEngine",
    "allowed_transitions",
    "authorize",
    "is_specialist_required",
    "next_actions",
]
