"""Service layer for triggering, tracking and aborting runs, and dry-running rule sets."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from pathlib import Path

from pydantic import BaseModel, Field

from bloodwatch.config.rule_set import ExtractionRuleSet
from bloodwatch.config.settings import BloodwatchConfig
from bloodwatch.config.sources import Source, SourceCatalog
from bloodwatch.config.url_policy import validate_target_url
from bloodwatch.exceptions import (
    ConfigError,
    FetchError,
    ParsingError,
    RunNotFoundError,
    RunStateError,
    SourceInactiveError,
)
from bloodwatch.health.aggregator import HealthSnapshot, compute_health
from bloodwatch.orchestrator.concurrency import CancellationToken
from bloodwatch.orchestrator.engine import HtmlFetcher, RuleSetProvider, RunOrchestrator
from bloodwatch.orchestrator.models import Attempt, Run, Trigger
from bloodwatch.orchestrator.status import AttemptStatus, RunStatus
from bloodwatch.pipeline.extractor import extract
from bloodwatch.pipeline.normalizer import BLOOD_GROUPS, LevelStatus
from bloodwatch.pipeline.sink import JsonlSink
from bloodwatch.runs.repository import RunRepository
from bloodwatch.telemetry.errors import ErrorCode, emit_structured_error
from bloodwatch.telemetry.logging_setup import setup_logging

logger = logging.getLogger(__name__)


class RunDetails(BaseModel):
    run: Run
    attempts: list[Attempt]


class ParsedEntry(BaseModel):
    blood_group: str
    level_percentage: str
    level_status: LevelStatus
    selector: str
    raw_text: str


class RuleSetTestSummary(BaseModel):
    total_groups_expected: int = len(BLOOD_GROUPS)
    total_groups_found: int = 0
    successful_parses: int = 0
    failed_parses: int = 0
    saved: bool = False


class RuleSetTestReport(BaseModel):
    """Outcome of a dry run of a rule set. Nothing in it has been persisted."""

    test_id: str = Field(default_factory=lambda: f"test_{uuid.uuid4().hex[:12]}")
    source_id: str
    test_url: str | None = None
    parser_variant: str
    status: AttemptStatus
    execution_time_ms: int
    http_status_code: int | None = None
    parsed_data: list[ParsedEntry] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    summary: RuleSetTestSummary = Field(default_factory=RuleSetTestSummary)


class RunService:
    def __init__(
        self,
        catalog: SourceCatalog,
        orchestrator: RunOrchestrator,
        repository: RunRepository,
        fetcher: HtmlFetcher,
        config: BloodwatchConfig | None = None,
    ) -> None:
        self._catalog = catalog
        self._orchestrator = orchestrator
        self._repository = repository
        self._fetcher = fetcher
        self._config = config or BloodwatchConfig()
        self._tokens: dict[str, CancellationToken] = {}

    @classmethod
    def from_config(
        cls,
        config: BloodwatchConfig,
        catalog: SourceCatalog,
        rule_sets: RuleSetProvider,
        fetcher: HtmlFetcher,
    ) -> RunService:
        """Wire a service that writes everything under ``config.pipeline.data_dir``."""
        setup_logging(config.log_level)
        data_dir: Path = config.pipeline.data_dir
        sink = JsonlSink(data_dir, debug_mode=config.pipeline.debug_mode)
        repository = RunRepository.from_config(sink.runs_dir, config.retention)
        orchestrator = RunOrchestrator(
            rule_sets, fetcher, sink, repository, config, ledger_dir=sink.runs_dir
        )
        return cls(catalog, orchestrator, repository, fetcher, config)

    @property
    def repository(self) -> RunRepository:
        return self._repository

    # --- Triggering ---

    def _resolve_sources(self, source_id: str | None, url: str | None) -> list[Source]:
        if source_id is None:
            if url is not None:
                raise ConfigError("A URL override requires a single source_id")
            return self._catalog.active_sources()

        source = self._catalog.get(source_id)
        if not source.active:
            raise SourceInactiveError(f"Source {source_id} is not active")
        if url is not None:
            verdict = validate_target_url(url, self._config.url_policy)
            if not verdict.allowed:
                raise ConfigError(f"Invalid URL override: {verdict.reason}")
        return [source]

    async def trigger_manual(
        self, triggered_by: str, source_id: str | None = None, url: str | None = None
    ) -> str:
        """Start a run in the background and return its id for polling."""
        sources = self._resolve_sources(source_id, url)
        run = self._orchestrator.create_run(Trigger.manual(triggered_by), len(sources))
        token = CancellationToken()
        self._tokens[run.run_id] = token

        task = asyncio.create_task(self._orchestrator.execute(run, sources, token, url))
        self._repository.set_task(run.run_id, task)
        task.add_done_callback(lambda t: self._on_task_done(run.run_id, t))
        logger.info(
            "Manual run %s triggered by %s for %s",
            run.run_id,
            triggered_by,
            source_id or f"{len(sources)} active sources",
        )
        return run.run_id

    async def run_scheduled(self, triggered_by: str = "scheduler") -> Run:
        sources = self._catalog.active_sources()
        run = self._orchestrator.create_run(Trigger.scheduled(triggered_by), len(sources))
        token = CancellationToken()
        self._tokens[run.run_id] = token
        try:
            return await self._orchestrator.execute(run, sources, token)
        finally:
            self._tokens.pop(run.run_id, None)

    async def wait_for(self, run_id: str) -> Run:
        """Wait until a background run finishes and return it."""
        task = self._repository.get_task(run_id)
        if task is not None:
            await asyncio.shield(task)
        return self.get_status(run_id)

    def _on_task_done(self, run_id: str, task: asyncio.Task) -> None:
        self._tokens.pop(run_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            emit_structured_error(
                logger,
                code=ErrorCode.UNEXPECTED_ERROR,
                message=f"Run task crashed: {exc}",
                suppressed=False,
                run_id=run_id,
                details={"error_type": type(exc).__name__},
            )

    def abort_run(self, run_id: str, reason: str = "aborted by operator") -> None:
        run = self.get_status(run_id)
        if run.is_finished:
            raise RunStateError(f"Run {run_id} is already {run.status.value}")
        token = self._tokens.get(run_id)
        if token is None:
            raise RunStateError(f"Run {run_id} is not owned by this service")
        token.cancel(reason)
        logger.info("Abort requested for run %s: %s", run_id, reason)

    # --- Queries ---

    def get_status(self, run_id: str) -> Run:
        run = self._repository.get(run_id)
        if run is None:
            raise RunNotFoundError(f"Scraper run not found with ID: {run_id}")
        return run

    def get_run_details(self, run_id: str) -> RunDetails:
        run = self.get_status(run_id)
        return RunDetails(run=run, attempts=self._repository.attempts_for(run_id))

    def list_runs(self, limit: int = 20, status: RunStatus | None = None) -> list[Run]:
        return self._repository.list_runs(limit=limit, status=status)

    def list_attempts(
        self, run_id: str | None = None, source_id: str | None = None
    ) -> list[Attempt]:
        if run_id is not None:
            self.get_status(run_id)
        return self._repository.list_attempts(run_id=run_id, source_id=source_id)

    def global_health(self) -> HealthSnapshot:
        health = self._config.health
        snapshot = compute_health(self._repository.recent(health.window_size), config=health)
        if snapshot.requires_alert:
            emit_structured_error(
                logger,
                code=ErrorCode.HEALTH_ALERT,
                message=snapshot.message,
                suppressed=False,
                details={
                    "global_status": snapshot.global_status.value,
                    "consecutive_failures": snapshot.consecutive_failures,
                },
            )
        return snapshot

    # --- Rule set dry run ---

    async def test_rule_set(
        self,
        rule_set: ExtractionRuleSet,
        html: str | None = None,
        test_url: str | None = None,
    ) -> RuleSetTestReport:
        """Fetch (unless ``html`` is given) and extract with ``rule_set`` without storing anything."""
        started = time.monotonic()
        url = test_url or rule_set.target_url
        report = RuleSetTestReport(
            source_id=rule_set.source_id,
            test_url=url,
            parser_variant=rule_set.parser_variant.value,
            status=AttemptStatus.FAILED,
            execution_time_ms=0,
        )

        try:
            if html is None:
                if test_url is not None:
                    verdict = validate_target_url(test_url, self._config.url_policy)
                    if not verdict.allowed:
                        raise ConfigError(f"Invalid test URL: {verdict.reason}")
                page = await asyncio.wait_for(
                    self._fetcher.fetch(url, rule_set.timeout_s), timeout=rule_set.timeout_s
                )
                report.http_status_code = page.status_code
                html = page.html
            result = await asyncio.to_thread(extract, html, rule_set)
        except asyncio.TimeoutError:
            report.errors.append(f"Fetch timed out after {rule_set.timeout_s}s")
        except FetchError as exc:
            report.http_status_code = exc.http_status
            report.errors.append(str(exc))
        except ParsingError as exc:
            report.errors.append(str(exc))
            report.warnings.extend(exc.warnings)
            report.summary.failed_parses = exc.failed_rows
        except ConfigError as exc:
            report.errors.append(str(exc))
        else:
            report.status = AttemptStatus.SUCCESS if result.is_complete else AttemptStatus.PARTIAL
            report.warnings.extend(result.warnings)
            report.parsed_data = [
                ParsedEntry(
                    blood_group=record.blood_group,
                    level_percentage=str(record.level_percentage),
                    level_status=record.level_status,
                    selector=record.source.selector,
                    raw_text=record.source.raw_text,
                )
                for record in result.records
            ]
            report.summary.total_groups_found = len(result.groups_found)
            report.summary.successful_parses = len(result.records)
            report.summary.failed_parses = result.failed_rows

        report.execution_time_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Rule set test for source %s finished %s in %dms",
            rule_set.source_id,
            report.status.value,
            report.execution_time_ms,
        )
        return report
