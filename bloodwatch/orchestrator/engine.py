"""Run orchestrator: executes a run over a set of sources.

For each source the orchestrator resolves the active rule set, fetches the
page, extracts records in a worker thread, hands them to the persistence
sink and records an Attempt. A failure in one source never stops the others;
every source ends up with exactly one Attempt and the run always reaches a
terminal status.

MUST NOT:
- Interpret page content (that is the extractor's job)
- Let an exception from a single source escape the run
- Mutate a run after it has finished
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Protocol

from bloodwatch.config.rule_set import ExtractionRuleSet
from bloodwatch.config.settings import BloodwatchConfig
from bloodwatch.config.sources import Source
from bloodwatch.exceptions import ConfigError, FetchError, ParsingError, PersistError
from bloodwatch.fetch.browser import FetchResult
from bloodwatch.orchestrator.concurrency import CancellationToken, SourceLockRegistry
from bloodwatch.orchestrator.models import Attempt, Run, Trigger
from bloodwatch.orchestrator.status import AttemptStatus, RunStatus
from bloodwatch.pipeline.extraction import ExtractedRecord
from bloodwatch.pipeline.extractor import DEFAULT_REGISTRY, ParserRegistry, extract, resolve_profile
from bloodwatch.runs.repository import RunRepository
from bloodwatch.signals.emitter import SignalEmitter
from bloodwatch.signals.types import Signal
from bloodwatch.telemetry.errors import ErrorCode, emit_structured_error

logger = logging.getLogger(__name__)


class RuleSetProvider(Protocol):
    def get_active(self, source_id: str) -> ExtractionRuleSet | None: ...


class HtmlFetcher(Protocol):
    async def fetch(self, url: str, timeout_s: int) -> FetchResult: ...


class PersistenceSink(Protocol):
    def store_snapshots(
        self,
        source_id: str,
        snapshot_date: date,
        records: Sequence[ExtractedRecord],
        source_url: str | None,
        parser_version: str,
    ) -> int: ...

    def store_run(self, run: Run, attempts: Sequence[Attempt]) -> None: ...


@dataclass
class _AttemptTrace:
    """What is known about an attempt so far, kept for failure reporting."""

    url: str | None = None
    parser_version: str | None = None
    http_status: int | None = None
    response_time_ms: int | None = None


class RunOrchestrator:
    """Executes runs. Each Run is owned by the single ``execute`` call driving it."""

    def __init__(
        self,
        rule_sets: RuleSetProvider,
        fetcher: HtmlFetcher,
        sink: PersistenceSink,
        repository: RunRepository,
        config: BloodwatchConfig | None = None,
        *,
        locks: SourceLockRegistry | None = None,
        registry: ParserRegistry = DEFAULT_REGISTRY,
        ledger_dir: Path | None = None,
    ) -> None:
        self._rule_sets = rule_sets
        self._fetcher = fetcher
        self._sink = sink
        self._repository = repository
        self._config = config or BloodwatchConfig()
        self._locks = locks or SourceLockRegistry()
        self._registry = registry
        self._ledger_dir = ledger_dir
        self._subscribers: list[Callable[[Signal], Any]] = []
        self._emitters: dict[str, SignalEmitter] = {}

    @property
    def locks(self) -> SourceLockRegistry:
        return self._locks

    def subscribe(self, callback: Callable[[Signal], Any]) -> None:
        """Receive the signals of every run started after this call."""
        self._subscribers.append(callback)

    def signals_for(self, run_id: str) -> list[Signal]:
        """Signals of a running run from memory, of a finished one from its ledger."""
        emitter = self._emitters.get(run_id)
        if emitter is not None:
            return emitter.signals
        if self._ledger_dir is None:
            return []
        return SignalEmitter.load_ledger(self._ledger_dir / run_id / "signals.jsonl")

    def _emitter_for(self, run: Run) -> SignalEmitter:
        ledger_path = None
        if self._ledger_dir is not None:
            ledger_path = self._ledger_dir / run.run_id / "signals.jsonl"
        emitter = SignalEmitter(run_id=run.run_id, ledger_path=ledger_path)
        for callback in self._subscribers:
            emitter.subscribe(callback)
        self._emitters[run.run_id] = emitter
        return emitter

    # --- Run lifecycle ---

    def create_run(self, trigger: Trigger, total_sources: int) -> Run:
        """Create a RUNNING run and register it so it can be polled before it executes."""
        run = Run(trigger=trigger, total_sources=total_sources)
        self._repository.register_active(run)
        return run

    async def start_run(
        self,
        trigger: Trigger,
        sources: Sequence[Source],
        cancel_token: CancellationToken | None = None,
        url_override: str | None = None,
    ) -> Run:
        run = self.create_run(trigger, len(sources))
        return await self.execute(run, sources, cancel_token, url_override)

    async def execute(
        self,
        run: Run,
        sources: Sequence[Source],
        cancel_token: CancellationToken | None = None,
        url_override: str | None = None,
    ) -> Run:
        """Process every source and finish the run.

        Sources run concurrently up to ``max_concurrent_attempts``. Attempts
        are returned in source order regardless of completion order.
        """
        token = cancel_token or CancellationToken()
        emitter = self._emitter_for(run)
        semaphore = asyncio.Semaphore(self._config.orchestrator.max_concurrent_attempts)
        results: list[Attempt | None] = [None] * len(sources)

        logger.info(
            "Run %s started (%s by %s) over %d sources",
            run.run_id,
            run.trigger.trigger_type.value,
            run.trigger.triggered_by,
            len(sources),
        )
        await emitter.emit_run_started(
            run.trigger.trigger_type.value, run.trigger.triggered_by, len(sources)
        )

        async def process(index: int, source: Source) -> None:
            async with semaphore:
                if token.cancelled:
                    attempt = self._cancelled_attempt(run, source, token.reason, url_override)
                else:
                    attempt = await self._attempt_source(run, source, token, url_override)
            results[index] = attempt
            run.record_attempt(attempt)
            self._repository.append_attempt(attempt)
            await emitter.emit_attempt_recorded(
                source.source_id,
                attempt.status.value,
                attempt.records_parsed,
                attempt.error_code.value if attempt.error_code else None,
            )

        try:
            outcomes = await asyncio.gather(
                *(process(i, s) for i, s in enumerate(sources)), return_exceptions=True
            )
        except asyncio.CancelledError:
            token.cancel("run task was cancelled")
            await self._complete(run, sources, results, token, url_override, emitter)
            raise

        for source, outcome in zip(sources, outcomes):
            if isinstance(outcome, BaseException):
                emit_structured_error(
                    logger,
                    code=ErrorCode.UNEXPECTED_ERROR,
                    message=f"Failed to record attempt: {outcome}",
                    suppressed=True,
                    run_id=run.run_id,
                    source_id=source.source_id,
                    details={"error_type": type(outcome).__name__},
                )
        return await self._complete(run, sources, results, token, url_override, emitter)

    async def _complete(
        self,
        run: Run,
        sources: Sequence[Source],
        results: list[Attempt | None],
        token: CancellationToken,
        url_override: str | None,
        emitter: SignalEmitter,
    ) -> Run:
        attempts: list[Attempt] = []
        for index, source in enumerate(sources):
            attempt = results[index]
            if attempt is None:
                attempt = self._cancelled_attempt(run, source, token.reason, url_override)
                run.record_attempt(attempt)
            attempts.append(attempt)

        cancel_reason = token.reason if token.cancelled else None
        status = run.finish(attempts, cancel_reason=cancel_reason)
        self._repository.save(run, attempts)
        try:
            self._sink.store_run(run, attempts)
        except Exception as exc:
            emit_structured_error(
                logger,
                code=ErrorCode.PERSIST_FAILED,
                message=f"Failed to store run record: {exc}",
                suppressed=True,
                run_id=run.run_id,
            )

        logger.info(
            "Run %s finished %s: %d successful, %d failed in %.2fs",
            run.run_id,
            status.value,
            run.successful_count,
            run.failed_count,
            run.duration_s,
        )
        if cancel_reason is not None:
            await emitter.emit_run_cancelled(cancel_reason, len(attempts))
        elif status == RunStatus.FAILED:
            await emitter.emit_run_failed(run.error_summary, len(attempts))
        else:
            await emitter.emit_run_complete(
                status.value, run.successful_count, run.failed_count, run.duration_s
            )
        self._emitters.pop(run.run_id, None)
        return run

    # --- Per-source attempt ---

    async def _attempt_source(
        self,
        run: Run,
        source: Source,
        token: CancellationToken,
        url_override: str | None,
    ) -> Attempt:
        async with self._locks.lock_for(source.source_id):
            if token.cancelled:
                return self._cancelled_attempt(run, source, token.reason, url_override)

            trace = _AttemptTrace(url=url_override or source.page_url)
            started = time.monotonic()
            try:
                rule_set = self._rule_sets.get_active(source.source_id)
                trace.url = url_override or (rule_set.target_url if rule_set else source.page_url)
                if not trace.url:
                    raise ConfigError(
                        f"Source {source.source_id} has no active rule set and no page URL"
                    )
                trace.parser_version = self._registry.version_for(resolve_profile(rule_set))
                timeout_s = (
                    rule_set.timeout_s
                    if rule_set
                    else self._config.timeouts.default_fetch_timeout_s
                )
            except ConfigError as exc:
                return self._config_failure(run, source, trace, exc)
            except Exception as exc:
                return self._unexpected_failure(run, source, trace, started, exc)

            try:
                return await asyncio.wait_for(
                    self._collect(run, source, rule_set, trace, started, timeout_s),
                    timeout=timeout_s,
                )
            except asyncio.TimeoutError:
                return self._failed_attempt(
                    run,
                    source,
                    trace,
                    started,
                    code=ErrorCode.FETCH_TIMEOUT,
                    message=f"Attempt timed out after {timeout_s}s",
                )
            except FetchError as exc:
                if exc.http_status is not None:
                    trace.http_status = exc.http_status
                if exc.elapsed_ms is not None:
                    trace.response_time_ms = exc.elapsed_ms
                return self._failed_attempt(
                    run,
                    source,
                    trace,
                    started,
                    code=ErrorCode.FETCH_TIMEOUT if exc.timed_out else ErrorCode.FETCH_FAILED,
                    message=str(exc),
                )
            except ParsingError as exc:
                return self._failed_attempt(
                    run,
                    source,
                    trace,
                    started,
                    code=ErrorCode.PARSING_FAILED,
                    message=str(exc),
                    records_failed=exc.failed_rows,
                    warnings=exc.warnings,
                    selector=exc.selector,
                    snippet=exc.snippet,
                )
            except ConfigError as exc:
                return self._config_failure(run, source, trace, exc)
            except PersistError as exc:
                emit_structured_error(
                    logger,
                    code=ErrorCode.PERSIST_FAILED,
                    message=str(exc),
                    suppressed=True,
                    run_id=run.run_id,
                    source_id=source.source_id,
                )
                return self._failed_attempt(
                    run, source, trace, started, code=ErrorCode.PERSIST_FAILED, message=str(exc)
                )
            except Exception as exc:
                return self._unexpected_failure(run, source, trace, started, exc)

    async def _collect(
        self,
        run: Run,
        source: Source,
        rule_set: ExtractionRuleSet | None,
        trace: _AttemptTrace,
        started: float,
        timeout_s: int,
    ) -> Attempt:
        """Fetch, extract and store one source. Raises on any source-level failure."""
        page = await self._fetcher.fetch(trace.url, timeout_s)
        trace.http_status = page.status_code
        trace.response_time_ms = page.elapsed_ms

        capture_raw = getattr(self._sink, "capture_raw", None)
        if capture_raw is not None:
            capture_raw(run.run_id, source.source_id, page.html)

        result = await asyncio.to_thread(extract, page.html, rule_set, registry=self._registry)
        trace.parser_version = result.parser_version

        try:
            self._sink.store_snapshots(
                source.source_id,
                run.started_at.date(),
                result.records,
                trace.url,
                result.parser_version,
            )
        except Exception as exc:
            raise PersistError(f"Failed to store snapshots: {exc}") from exc

        status = AttemptStatus.SUCCESS if result.is_complete else AttemptStatus.PARTIAL
        if status == AttemptStatus.PARTIAL:
            logger.warning(
                "Source %s returned %d of 8 blood groups", source.source_id, len(result.groups_found)
            )
        return Attempt(
            run_id=run.run_id,
            source_id=source.source_id,
            url=trace.url,
            status=status,
            parser_version=result.parser_version,
            response_time_ms=trace.response_time_ms or _elapsed_ms(started),
            http_status=trace.http_status,
            records_parsed=len(result.records),
            records_failed=result.failed_rows,
            warnings=result.warnings,
        )

    def _config_failure(
        self, run: Run, source: Source, trace: _AttemptTrace, exc: ConfigError
    ) -> Attempt:
        emit_structured_error(
            logger,
            code=ErrorCode.CONFIG_INVALID,
            message=str(exc),
            suppressed=False,
            run_id=run.run_id,
            source_id=source.source_id,
        )
        return Attempt(
            run_id=run.run_id,
            source_id=source.source_id,
            url=trace.url,
            status=AttemptStatus.FAILED,
            error_code=ErrorCode.CONFIG_INVALID,
            error_message=str(exc),
            parser_version=trace.parser_version,
        )

    def _unexpected_failure(
        self, run: Run, source: Source, trace: _AttemptTrace, started: float, exc: Exception
    ) -> Attempt:
        emit_structured_error(
            logger,
            code=ErrorCode.UNEXPECTED_ERROR,
            message=f"Unexpected error processing source: {exc}",
            suppressed=True,
            run_id=run.run_id,
            source_id=source.source_id,
            details={"error_type": type(exc).__name__},
        )
        return self._failed_attempt(
            run,
            source,
            trace,
            started,
            code=ErrorCode.UNEXPECTED_ERROR,
            message=f"{type(exc).__name__}: {exc}",
        )

    def _failed_attempt(
        self,
        run: Run,
        source: Source,
        trace: _AttemptTrace,
        started: float,
        *,
        code: ErrorCode,
        message: str,
        records_failed: int = 0,
        warnings: list[str] | None = None,
        selector: str | None = None,
        snippet: str | None = None,
    ) -> Attempt:
        logger.warning("Source %s failed in run %s: %s", source.source_id, run.run_id, message)
        return Attempt(
            run_id=run.run_id,
            source_id=source.source_id,
            url=trace.url,
            status=AttemptStatus.FAILED,
            error_code=code,
            error_message=message,
            error_selector=selector,
            error_snippet=snippet,
            parser_version=trace.parser_version,
            response_time_ms=trace.response_time_ms or _elapsed_ms(started),
            http_status=trace.http_status,
            records_failed=records_failed,
            warnings=list(warnings or []),
        )

    @staticmethod
    def _cancelled_attempt(
        run: Run, source: Source, reason: str | None, url_override: str | None
    ) -> Attempt:
        return Attempt(
            run_id=run.run_id,
            source_id=source.source_id,
            url=url_override or source.page_url,
            status=AttemptStatus.FAILED,
            error_code=ErrorCode.RUN_CANCELLED,
            error_message=f"Run cancelled before source was processed: {reason}",
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
