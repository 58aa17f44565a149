"""Signal emitter for a single run.

Handles emission, persistence and fan-out of Signals.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from bloodwatch.signals.types import Signal, SignalType
from bloodwatch.telemetry.errors import ErrorCode, emit_structured_error

logger = logging.getLogger(__name__)


class SignalEmitter:
    """Emits, persists, and broadcasts signals for a single run.

    Signals are:
    - Immutable once emitted
    - Assigned monotonic sequence numbers
    - Persisted to a JSONL ledger in append-only mode
    - Delivered to subscribers as they happen
    """

    def __init__(self, run_id: str, ledger_path: Path | None = None) -> None:
        self._run_id = run_id
        self._sequence = 0
        self._ledger_path = ledger_path
        self._subscribers: list[Callable[[Signal], Any]] = []
        self._signals: list[Signal] = []
        self._lock = asyncio.Lock()

        if self._ledger_path:
            self._ledger_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def signals(self) -> list[Signal]:
        """Return all emitted signals (read-only copy)."""
        return list(self._signals)

    def subscribe(self, callback: Callable[[Signal], Any]) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[Signal], Any]) -> None:
        self._subscribers = [s for s in self._subscribers if s is not callback]

    async def emit(self, signal_type: SignalType, payload: dict[str, Any] | None = None) -> Signal:
        """Emit a signal. This is the only way to create signals."""
        async with self._lock:
            self._sequence += 1
            signal = Signal(
                sequence=self._sequence,
                signal_type=signal_type,
                timestamp=datetime.now(timezone.utc),
                run_id=self._run_id,
                payload=payload or {},
            )
            self._signals.append(signal)
            if self._ledger_path:
                self._persist(signal)

        await self._broadcast(signal)
        return signal

    def _persist(self, signal: Signal) -> None:
        with open(self._ledger_path, "a", encoding="utf-8") as f:
            f.write(signal.model_dump_json() + "\n")

    async def _broadcast(self, signal: Signal) -> None:
        for subscriber in self._subscribers:
            try:
                result = subscriber(signal)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                emit_structured_error(
                    logger,
                    code=ErrorCode.SIGNAL_SUBSCRIBER_FAILURE,
                    message="Signal subscriber failed",
                    suppressed=True,
                    run_id=self._run_id,
                    details={
                        "signal_type": signal.signal_type.value,
                        "sequence": signal.sequence,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )

    async def emit_run_started(self, trigger_type: str, triggered_by: str, total_sources: int) -> Signal:
        return await self.emit(
            SignalType.RUN_STARTED,
            {
                "trigger_type": trigger_type,
                "triggered_by": triggered_by,
                "total_sources": total_sources,
            },
        )

    async def emit_attempt_recorded(
        self,
        source_id: str,
        status: str,
        records_parsed: int,
        error_code: str | None = None,
    ) -> Signal:
        return await self.emit(
            SignalType.ATTEMPT_RECORDED,
            {
                "source_id": source_id,
                "status": status,
                "records_parsed": records_parsed,
                "error_code": error_code,
            },
        )

    async def emit_run_complete(
        self, status: str, successful_count: int, failed_count: int, duration_s: float
    ) -> Signal:
        return await self.emit(
            SignalType.RUN_COMPLETE,
            {
                "status": status,
                "successful_count": successful_count,
                "failed_count": failed_count,
                "duration_s": duration_s,
            },
        )

    async def emit_run_failed(self, failure_reason: str | None, attempts_made: int) -> Signal:
        return await self.emit(
            SignalType.RUN_FAILED,
            {"failure_reason": failure_reason, "attempts_made": attempts_made},
        )

    async def emit_run_cancelled(self, reason: str, attempts_made: int) -> Signal:
        return await self.emit(
            SignalType.RUN_CANCELLED,
            {"reason": reason, "attempts_made": attempts_made},
        )

    @staticmethod
    def load_ledger(ledger_path: Path) -> list[Signal]:
        """Load all signals from a JSONL ledger file."""
        signals = []
        if ledger_path.exists():
            with open(ledger_path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if line:
                        signals.append(Signal.model_validate_json(line))
        return signals
