"""Run and Attempt records produced by the orchestrator."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from bloodwatch.exceptions import RunStateError
from bloodwatch.orchestrator.status import (
    SUCCESSFUL_ATTEMPT_STATUSES,
    VALID_TRANSITIONS,
    AttemptStatus,
    RunStatus,
    TriggerType,
    resolve_run_status,
)
from bloodwatch.telemetry.errors import ErrorCode

MAX_ERROR_SUMMARY_ITEMS = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_run_id() -> str:
    return f"run_{uuid.uuid4().hex[:12]}"


class Trigger(BaseModel):
    """Who or what started a run."""

    model_config = {"frozen": True}

    trigger_type: TriggerType
    triggered_by: str

    @classmethod
    def manual(cls, triggered_by: str) -> Trigger:
        return cls(trigger_type=TriggerType.MANUAL, triggered_by=triggered_by)

    @classmethod
    def scheduled(cls, triggered_by: str = "scheduler") -> Trigger:
        return cls(trigger_type=TriggerType.SCHEDULED, triggered_by=triggered_by)


class Attempt(BaseModel):
    """The record of one extraction try against one source within one run.

    Attempts are created once and never modified.
    """

    model_config = {"frozen": True}

    attempt_id: str = Field(default_factory=lambda: f"att_{uuid.uuid4().hex[:12]}")
    run_id: str
    source_id: str
    url: str | None = None
    status: AttemptStatus
    error_code: ErrorCode | None = None
    error_message: str | None = None
    error_selector: str | None = None
    error_snippet: str | None = None
    parser_version: str | None = None
    response_time_ms: int | None = None
    http_status: int | None = None
    records_parsed: int = 0
    records_failed: int = 0
    warnings: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def succeeded(self) -> bool:
        return self.status in SUCCESSFUL_ATTEMPT_STATUSES


class Run(BaseModel):
    """A batch of attempts triggered together.

    Only the orchestrator executing the run mutates it, and only through
    ``record_attempt`` and ``finish``. Once ``completed_at`` is set the run
    is read-only.
    """

    run_id: str = Field(default_factory=new_run_id)
    trigger: Trigger
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None
    total_sources: int = 0
    successful_count: int = 0
    failed_count: int = 0
    duration_s: float | None = None
    status: RunStatus = RunStatus.RUNNING
    error_summary: str | None = None

    @property
    def is_finished(self) -> bool:
        return self.completed_at is not None

    def _ensure_open(self) -> None:
        if self.is_finished:
            raise RunStateError(f"Run {self.run_id} is already {self.status.value}")

    def record_attempt(self, attempt: Attempt) -> None:
        self._ensure_open()
        if attempt.run_id != self.run_id:
            raise RunStateError(
                f"Attempt {attempt.attempt_id} belongs to run {attempt.run_id}, not {self.run_id}"
            )
        if attempt.succeeded:
            self.successful_count += 1
        else:
            self.failed_count += 1

    def finish(
        self,
        attempts: list[Attempt],
        *,
        cancel_reason: str | None = None,
        completed_at: datetime | None = None,
    ) -> RunStatus:
        """Close the run: derive its status from the final counters and summarize errors."""
        self._ensure_open()
        status = resolve_run_status(
            self.successful_count, self.failed_count, cancelled=cancel_reason is not None
        )
        if status not in VALID_TRANSITIONS[self.status]:
            raise RunStateError(f"Invalid transition: {self.status.value} -> {status.value}")

        completed_at = completed_at or _utcnow()
        self.duration_s = round((completed_at - self.started_at).total_seconds(), 3)
        self.error_summary = _summarize_errors(attempts, cancel_reason, self.total_sources)
        self.status = status
        self.completed_at = completed_at
        return status


def _summarize_errors(
    attempts: list[Attempt], cancel_reason: str | None, total_sources: int
) -> str | None:
    parts: list[str] = []
    if cancel_reason is not None:
        parts.append(f"Run cancelled: {cancel_reason}")
    if total_sources == 0:
        parts.append("No sources to process")

    seen: set[str] = set()
    for attempt in attempts:
        if attempt.succeeded or not attempt.error_message:
            continue
        if attempt.error_code == ErrorCode.RUN_CANCELLED:
            continue
        line = f"{attempt.source_id}: {attempt.error_message}"
        if line in seen:
            continue
        seen.add(line)
        parts.append(line)
        if len(seen) >= MAX_ERROR_SUMMARY_ITEMS:
            break
    return "; ".join(parts) if parts else None
