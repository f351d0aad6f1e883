"""Transitions — plan lifecycle, dual-control approval, outgoing detection, apply."""

from succession.transitions.apply import ApplyEngine, ApplyResult
from succession.transitions.approval import ApprovalGate, ApprovalOutcome
from succession.transitions.detector import AssignmentDetector
from succession.transitions.state_machine import (
    TransitionOutcome,
    TransitionPlanStateMachine,
    can_transition,
)

__all__ = [
    "ApplyEngine",
    "ApplyResult",
    "ApprovalGate",
    "ApprovalOutcome",
    "AssignmentDetector",
    "TransitionOutcome",
    "TransitionPlanStateMachine",
    "can_transition",
]
