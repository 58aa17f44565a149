"""Tests for run repository retention and hydration behavior."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from bloodwatch.config.settings import RetentionConfig
from bloodwatch.orchestrator.models import Attempt, Run, Trigger
from bloodwatch.orchestrator.status import AttemptStatus, RunStatus
from bloodwatch.pipeline.sink import JsonlSink
from bloodwatch.runs.repository import RunRepository


def _finished_run(
    status_counts=(1, 0), started_at: datetime | None = None
) -> tuple[Run, list[Attempt]]:
    successful, failed = status_counts
    run = Run(
        trigger=Trigger.scheduled(),
        total_sources=successful + failed,
        started_at=started_at or datetime.now(timezone.utc),
    )
    attempts = [
        Attempt(run_id=run.run_id, source_id=f"ok{i}", status=AttemptStatus.SUCCESS)
        for i in range(successful)
    ] + [
        Attempt(
            run_id=run.run_id,
            source_id=f"bad{i}",
            status=AttemptStatus.FAILED,
            error_message="HTTP 500",
        )
        for i in range(failed)
    ]
    for attempt in attempts:
        run.record_attempt(attempt)
    run.finish(attempts, completed_at=run.started_at + timedelta(seconds=1))
    return run, attempts


def test_active_run_is_visible_before_completion():
    repository = RunRepository()
    run = Run(trigger=Trigger.manual("admin"), total_sources=1)
    repository.register_active(run)

    assert repository.has_active(run.run_id)
    assert repository.get(run.run_id).status == RunStatus.RUNNING

    attempt = Attempt(run_id=run.run_id, source_id="a", status=AttemptStatus.SUCCESS)
    repository.append_attempt(attempt)
    assert repository.attempts_for(run.run_id) == [attempt]


def test_save_persists_summary(tmp_path):
    repository = RunRepository(data_dir=tmp_path)
    run, attempts = _finished_run()

    repository.save(run, attempts)

    assert not repository.has_active(run.run_id)
    assert (tmp_path / run.run_id / "run_summary.json").exists()


def test_hydrates_completed_runs_from_disk(tmp_path):
    sink = JsonlSink(tmp_path)
    run, attempts = _finished_run((2, 1))
    RunRepository(data_dir=sink.runs_dir).save(run, attempts)
    sink.store_run(run, attempts)

    repository = RunRepository(data_dir=sink.runs_dir)

    restored = repository.get(run.run_id)
    assert restored is not None
    assert restored.status == RunStatus.PARTIAL
    assert len(repository.attempts_for(run.run_id)) == 3


def test_hydration_ignores_unfinished_runs(tmp_path):
    run = Run(trigger=Trigger.scheduled())
    run_dir = tmp_path / run.run_id
    run_dir.mkdir()
    (run_dir / "run_summary.json").write_text(run.model_dump_json())

    assert RunRepository(data_dir=tmp_path).get(run.run_id) is None


def test_recent_is_most_recent_first():
    repository = RunRepository()
    base = datetime.now(timezone.utc)
    runs = []
    for offset in (2, 0, 1):
        run, attempts = _finished_run(started_at=base + timedelta(minutes=offset))
        repository.save(run, attempts)
        runs.append(run)

    recent = repository.recent(2)
    assert [r.run_id for r in recent] == [runs[0].run_id, runs[2].run_id]


def test_list_runs_filters_by_status():
    repository = RunRepository()
    ok_run, ok_attempts = _finished_run((1, 0))
    bad_run, bad_attempts = _finished_run((0, 1))
    repository.save(ok_run, ok_attempts)
    repository.save(bad_run, bad_attempts)

    assert [r.run_id for r in repository.list_runs(status=RunStatus.FAILED)] == [bad_run.run_id]


def test_list_attempts_by_source():
    repository = RunRepository()
    run, attempts = _finished_run((1, 1))
    repository.save(run, attempts)

    assert [a.source_id for a in repository.list_attempts(source_id="bad0")] == ["bad0"]
    assert len(repository.list_attempts(run_id=run.run_id)) == 2


def test_ttl_eviction_removes_expired_runs(tmp_path):
    repository = RunRepository(data_dir=tmp_path, ttl_seconds=60)
    old_run, attempts = _finished_run(
        started_at=datetime.now(timezone.utc) - timedelta(hours=1)
    )

    repository.save(old_run, attempts)

    assert repository.get(old_run.run_id) is None
    assert not (tmp_path / old_run.run_id / "run_summary.json").exists()


def test_count_eviction_keeps_most_recent_runs(tmp_path):
    repository = RunRepository(data_dir=tmp_path, max_completed_runs=2)
    base = datetime.now(timezone.utc)
    runs = []
    for i in range(3):
        run, attempts = _finished_run(started_at=base + timedelta(seconds=i))
        repository.save(run, attempts)
        runs.append(run)

    assert repository.get(runs[0].run_id) is None
    assert repository.get(runs[1].run_id) is not None
    assert repository.get(runs[2].run_id) is not None


def test_eviction_never_touches_running_runs():
    repository = RunRepository(max_completed_runs=0)
    active = Run(trigger=Trigger.manual("admin"))
    repository.register_active(active)
    run, attempts = _finished_run()
    repository.save(run, attempts)

    assert repository.get(active.run_id) is active
    assert repository.get(run.run_id) is None


def test_from_config_reads_retention_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("BLOODWATCH_MAX_COMPLETED_RUNS", "1")
    monkeypatch.setenv("BLOODWATCH_RUN_TTL_SECONDS", "")
    repository = RunRepository.from_config(tmp_path)
    assert repository._max_completed_runs == 1
    assert repository._ttl_seconds is None


def test_from_config_uses_given_retention(tmp_path):
    retention = RetentionConfig(max_completed_runs=3, ttl_seconds=60)
    repository = RunRepository.from_config(tmp_path, retention)
    assert repository._max_completed_runs == 3
    assert repository._ttl_seconds == 60
