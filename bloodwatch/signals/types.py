"""Signal type definitions for run observability."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class SignalType(str, Enum):
    """All signal types emitted while a run executes."""

    RUN_STARTED = "RUN_STARTED"
    ATTEMPT_RECORDED = "ATTEMPT_RECORDED"
    RUN_COMPLETE = "RUN_COMPLETE"
    RUN_FAILED = "RUN_FAILED"
    RUN_CANCELLED = "RUN_CANCELLED"


class Signal(BaseModel):
    """An immutable signal emitted during a run.

    Signals are append-only and cannot be modified after emission.
    """

    sequence: int = Field(description="Monotonic sequence number within the run")
    signal_type: SignalType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    run_id: str
    payload: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}
