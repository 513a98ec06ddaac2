# src/orchestrator/orchestrator_state.py
"""
Defines shared state models and enums for the Orchestrator to
prevent circular import issues.
"""

from enum import Enum


class RunState(str, Enum):
    """Valid states of one analysis run"""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    COMPLETED_WITH_FAILURES = "COMPLETED_WITH_FAILURES"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


VALID_TRANSITIONS = {
    RunState.PENDING: [RunState.RUNNING, RunState.SKIPPED, RunState.CANCELLED],
    RunState.RUNNING: [RunState.COMPLETED, RunState.COMPLETED_WITH_FAILURES, RunState.FAILED, RunState.CANCELLED],
    RunState.COMPLETED: [],
    RunState.COMPLETED_WITH_FAILURES: [],
    RunState.SKIPPED: [],
    RunState.FAILED: [],
    RunState.CANCELLED: [],
}


def is_valid_transition(from_state: RunState, to_state: RunState) -> bool:
    return to_state in VALID_TRANSITIONS.get(from_state, [])
