"""
Workflow states, inspector decisions and the legal-transition table.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class WorkflowState(str, Enum):
    SCANNED = "SCANNED"
    IN_PROGRESS = "IN_PROGRESS"
    PASSED = "PASSED"
    FAILED = "FAILED"
    REWORK_NEEDED = "REWORK_NEEDED"
    COMPLETED = "COMPLETED"
    QUARANTINE = "QUARANTINE"


class Decision(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    REWORK = "REWORK"
    QUARANTINE = "QUARANTINE"

    @classmethod
    def parse(cls, value: Any) -> "Decision":
        """Accept a Decision or a case-insensitive name. Raises ValueError."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            return cls(value.strip().upper())
        raise ValueError(f"not a decision: {value!r}")


INITIAL_STATE = WorkflowState.SCANNED
TERMINAL_STATES = frozenset({WorkflowState.COMPLETED})

VALID_TRANSITIONS: dict[WorkflowState, tuple[WorkflowState, ...]] = {
    WorkflowState.SCANNED: (WorkflowState.IN_PROGRESS, WorkflowState.FAILED),
    WorkflowState.IN_PROGRESS: (
        WorkflowState.PASSED,
        WorkflowState.FAILED,
        WorkflowState.REWORK_NEEDED,
    ),
    WorkflowState.PASSED: (WorkflowState.COMPLETED, WorkflowState.IN_PROGRESS),
    WorkflowState.FAILED: (WorkflowState.REWORK_NEEDED, WorkflowState.QUARANTINE),
    WorkflowState.REWORK_NEEDED: (WorkflowState.IN_PROGRESS, WorkflowState.FAILED),
    WorkflowState.QUARANTINE: (WorkflowState.REWORK_NEEDED, WorkflowState.FAILED),
    WorkflowState.COMPLETED: (),
}

# States in which a panel is waiting to be started at its current station
WAITING_STATES = frozenset({
    WorkflowState.SCANNED,
    WorkflowState.PASSED,
    WorkflowState.REWORK_NEEDED,
})

DECISION_TARGETS: dict[Decision, WorkflowState] = {
    Decision.PASS: WorkflowState.PASSED,
    Decision.FAIL: WorkflowState.FAILED,
    Decision.REWORK: WorkflowState.REWORK_NEEDED,
    Decision.QUARANTINE: WorkflowState.QUARANTINE,
}


def allowed_transitions(state: WorkflowState) -> tuple[WorkflowState, ...]:
    return VALID_TRANSITIONS.get(state, ())


def is_valid_transition(current: WorkflowState, target: WorkflowState) -> bool:
    return target in allowed_transitions(current)


def is_terminal(state: WorkflowState) -> bool:
    return state in TERMINAL_STATES
