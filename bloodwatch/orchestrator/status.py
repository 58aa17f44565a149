"""Run and attempt status definitions: the run state machine and its transitions."""

from __future__ import annotations

from enum import Enum


class RunStatus(str, Enum):
    """A run starts RUNNING and ends in exactly one terminal status."""

    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class AttemptStatus(str, Enum):
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class TriggerType(str, Enum):
    MANUAL = "MANUAL"
    SCHEDULED = "SCHEDULED"


VALID_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.RUNNING: {RunStatus.COMPLETED, RunStatus.PARTIAL, RunStatus.FAILED},
    RunStatus.COMPLETED: set(),  # terminal
    RunStatus.PARTIAL: set(),  # terminal
    RunStatus.FAILED: set(),  # terminal
}

TERMINAL_STATUSES = {RunStatus.COMPLETED, RunStatus.PARTIAL, RunStatus.FAILED}

# Statuses that count against health: some or all sources failed.
UNHEALTHY_STATUSES = {RunStatus.FAILED, RunStatus.PARTIAL}

SUCCESSFUL_ATTEMPT_STATUSES = {AttemptStatus.SUCCESS, AttemptStatus.PARTIAL}


def resolve_run_status(successful: int, failed: int, *, cancelled: bool = False) -> RunStatus:
    """Terminal status of a run, computed once from its final counters."""
    if cancelled or successful == 0:
        return RunStatus.FAILED
    if failed == 0:
        return RunStatus.COMPLETED
    return RunStatus.PARTIAL
