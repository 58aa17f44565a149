"""Run repository: lifecycle tracking and retention for runs and their attempts."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Any

from bloodwatch.config.settings import RetentionConfig
from bloodwatch.orchestrator.models import Attempt, Run
from bloodwatch.orchestrator.status import RunStatus
from bloodwatch.pipeline.sink import load_attempts

logger = logging.getLogger(__name__)

SUMMARY_FILENAME = "run_summary.json"


def _sort_key(run: Run) -> datetime:
    return run.started_at


class RunRepository:
    """Repository for active and completed runs with disk-backed summaries.

    When ``data_dir`` is given, each completed run is written to
    ``<data_dir>/<run_id>/run_summary.json`` and read back on construction.
    Without it the repository is memory-only.
    """

    def __init__(
        self,
        data_dir: Path | None = None,
        max_completed_runs: int | None = None,
        ttl_seconds: int | None = None,
    ) -> None:
        self._data_dir = data_dir
        if self._data_dir is not None:
            self._data_dir.mkdir(parents=True, exist_ok=True)

        self._max_completed_runs = max_completed_runs
        self._ttl_seconds = ttl_seconds

        self._runs: dict[str, Run] = {}
        self._attempts: dict[str, list[Attempt]] = {}
        self._run_tasks: dict[str, asyncio.Task[Any]] = {}

        self.hydrate_from_disk()

    @classmethod
    def from_config(
        cls, data_dir: Path | None, retention: RetentionConfig | None = None
    ) -> RunRepository:
        retention = retention or RetentionConfig()
        return cls(
            data_dir=data_dir,
            max_completed_runs=retention.max_completed_runs,
            ttl_seconds=retention.ttl_seconds,
        )

    # --- writes ---

    def register_active(self, run: Run) -> str:
        self._runs[run.run_id] = run
        self._attempts.setdefault(run.run_id, [])
        return run.run_id

    def append_attempt(self, attempt: Attempt) -> None:
        self._attempts.setdefault(attempt.run_id, []).append(attempt)

    def save(self, run: Run, attempts: list[Attempt]) -> None:
        """Store a finished run with its complete attempt list."""
        self._runs[run.run_id] = run
        self._attempts[run.run_id] = list(attempts)
        self._run_tasks.pop(run.run_id, None)
        if run.is_finished:
            self._persist_summary(run)
            self._evict_completed()

    def set_task(self, run_id: str, task: asyncio.Task[Any]) -> None:
        self._run_tasks[run_id] = task

    def get_task(self, run_id: str) -> asyncio.Task[Any] | None:
        return self._run_tasks.get(run_id)

    # --- reads ---

    def get(self, run_id: str) -> Run | None:
        return self._runs.get(run_id)

    def attempts_for(self, run_id: str) -> list[Attempt]:
        return list(self._attempts.get(run_id, []))

    def has_active(self, run_id: str) -> bool:
        run = self._runs.get(run_id)
        return run is not None and not run.is_finished

    def recent(self, limit: int | None = None) -> list[Run]:
        """Runs ordered most-recent first by start time."""
        runs = sorted(self._runs.values(), key=_sort_key, reverse=True)
        return runs if limit is None else runs[:limit]

    def list_runs(self, limit: int | None = None, status: RunStatus | None = None) -> list[Run]:
        runs = self.recent()
        if status is not None:
            runs = [run for run in runs if run.status == status]
        return runs if limit is None else runs[:limit]

    def list_attempts(
        self, run_id: str | None = None, source_id: str | None = None
    ) -> list[Attempt]:
        if run_id is not None:
            attempts = self.attempts_for(run_id)
        else:
            attempts = [a for run in self.recent() for a in self._attempts.get(run.run_id, [])]
        if source_id is not None:
            attempts = [a for a in attempts if a.source_id == source_id]
        return attempts

    # --- disk ---

    def hydrate_from_disk(self) -> None:
        if self._data_dir is None or not self._data_dir.exists():
            return

        for run_dir in self._data_dir.iterdir():
            if not run_dir.is_dir():
                continue
            run = self._load_summary(run_dir)
            if run is None or run.run_id in self._runs:
                continue
            self._runs[run.run_id] = run
            self._attempts[run.run_id] = load_attempts(run_dir / "attempts.jsonl")

        self._evict_completed()

    def _load_summary(self, run_dir: Path) -> Run | None:
        summary_path = run_dir / SUMMARY_FILENAME
        if not summary_path.exists():
            summary_path = run_dir / "run.json"
            if not summary_path.exists():
                return None
        run = Run.model_validate_json(summary_path.read_text(encoding="utf-8"))
        if not run.is_finished:
            # The process stopped while this run was executing; nothing will finish it now.
            logger.warning("Ignoring unfinished run %s found on disk", run.run_id)
            return None
        return run

    def _persist_summary(self, run: Run) -> None:
        if self._data_dir is None:
            return
        run_dir = self._data_dir / run.run_id
        run_dir.mkdir(parents=True, exist_ok=True)
        (run_dir / SUMMARY_FILENAME).write_text(run.model_dump_json(indent=2), encoding="utf-8")

    def _evict_completed(self) -> None:
        completed = {run_id: run for run_id, run in self._runs.items() if run.is_finished}
        if not completed:
            return

        now = time.time()
        if self._ttl_seconds is not None and self._ttl_seconds >= 0:
            expired = [
                run_id
                for run_id, run in completed.items()
                if now - run.completed_at.timestamp() > self._ttl_seconds
            ]
            for run_id in expired:
                self._delete_run(run_id)
                completed.pop(run_id)

        if self._max_completed_runs is not None and self._max_completed_runs >= 0:
            sorted_runs = sorted(
                completed.items(), key=lambda item: item[1].completed_at, reverse=True
            )
            for run_id, _ in sorted_runs[self._max_completed_runs :]:
                self._delete_run(run_id)

    def _delete_run(self, run_id: str) -> None:
        self._runs.pop(run_id, None)
        self._attempts.pop(run_id, None)
        if self._data_dir is None:
            return
        summary_path = self._data_dir / run_id / SUMMARY_FILENAME
        if summary_path.exists():
            summary_path.unlink()
