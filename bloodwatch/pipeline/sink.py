"""JSONL persistence sink for inventory snapshots and run records.

Layout under ``data_dir``::

    snapshots/<YYYY-MM-DD>/<source_id>.jsonl   one line per blood group
    runs/<run_id>/run.json                     final Run record
    runs/<run_id>/attempts.jsonl               one line per Attempt
    runs/<run_id>/raw/<source_id>.html         debug mode only

Contract: every write is atomic. A file is either fully replaced or left as
it was; partial data is never visible.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import date
from pathlib import Path

from pydantic import BaseModel

from bloodwatch.orchestrator.models import Attempt, Run
from bloodwatch.pipeline.extraction import ExtractedRecord, InventorySnapshot

logger = logging.getLogger(__name__)


def _atomic_write_lines(path: Path, lines: Iterable[str]) -> None:
    """Write to a temp file next to ``path`` then rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        with open(temp_path, "w", encoding="utf-8") as f:
            for line in lines:
                f.write(line + "\n")
        temp_path.replace(path)
    except Exception:
        if temp_path.exists():
            temp_path.unlink()
        raise


def _dump_models(models: Iterable[BaseModel]) -> list[str]:
    return [model.model_dump_json() for model in models]


class JsonlSink:
    """Writes extracted records and finished runs to JSONL files.

    Storing the snapshots of a source for a date replaces whatever was stored
    for that source and date before, so a re-run on the same day does not
    duplicate rows.
    """

    def __init__(self, data_dir: Path, debug_mode: bool = False) -> None:
        self._data_dir = data_dir
        self._debug_mode = debug_mode
        self._snapshots_dir = data_dir / "snapshots"
        self._runs_dir = data_dir / "runs"
        self._snapshots_dir.mkdir(parents=True, exist_ok=True)
        self._runs_dir.mkdir(parents=True, exist_ok=True)

    @property
    def runs_dir(self) -> Path:
        return self._runs_dir

    def snapshot_path(self, source_id: str, snapshot_date: date) -> Path:
        return self._snapshots_dir / snapshot_date.isoformat() / f"{source_id}.jsonl"

    def run_dir(self, run_id: str) -> Path:
        return self._runs_dir / run_id

    def store_snapshots(
        self,
        source_id: str,
        snapshot_date: date,
        records: Sequence[ExtractedRecord],
        source_url: str | None,
        parser_version: str,
    ) -> int:
        """Persist one source's records for a date. Returns the number stored."""
        if not records:
            return 0
        snapshots = [
            InventorySnapshot.from_record(
                record,
                source_id=source_id,
                snapshot_date=snapshot_date,
                source_url=source_url,
                parser_version=parser_version,
            )
            for record in records
        ]
        _atomic_write_lines(self.snapshot_path(source_id, snapshot_date), _dump_models(snapshots))
        logger.info(
            "Stored %d snapshots for source %s on %s", len(snapshots), source_id, snapshot_date
        )
        return len(snapshots)

    def store_run(self, run: Run, attempts: Sequence[Attempt]) -> None:
        run_dir = self.run_dir(run.run_id)
        _atomic_write_lines(run_dir / "attempts.jsonl", _dump_models(attempts))
        _atomic_write_lines(run_dir / "run.json", [run.model_dump_json(indent=2)])

    def capture_raw(self, run_id: str, source_id: str, html: str) -> Path | None:
        """Keep the fetched page for selector debugging. No-op outside debug mode."""
        if not self._debug_mode:
            return None
        raw_path = self.run_dir(run_id) / "raw" / f"{source_id}.html"
        raw_path.parent.mkdir(parents=True, exist_ok=True)
        raw_path.write_text(html, encoding="utf-8")
        return raw_path

    def load_snapshots(self, source_id: str, snapshot_date: date) -> list[InventorySnapshot]:
        return _load_jsonl(self.snapshot_path(source_id, snapshot_date), InventorySnapshot)

    def load_run(self, run_id: str) -> Run | None:
        run_path = self.run_dir(run_id) / "run.json"
        if not run_path.exists():
            return None
        return Run.model_validate_json(run_path.read_text(encoding="utf-8"))

    def load_attempts(self, run_id: str) -> list[Attempt]:
        return load_attempts(self.run_dir(run_id) / "attempts.jsonl")


def _load_jsonl(path: Path, model: type[BaseModel]) -> list:
    items = []
    if path.exists():
        with open(path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    items.append(model.model_validate_json(line))
    return items


def load_attempts(path: Path) -> list[Attempt]:
    """Load persisted attempts from a JSONL file."""
    return _load_jsonl(path, Attempt)
