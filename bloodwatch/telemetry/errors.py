"""Structured error telemetry helpers."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Canonical error codes for operational telemetry and attempt outcomes."""

    FETCH_FAILED = "FETCH_FAILED"
    FETCH_TIMEOUT = "FETCH_TIMEOUT"
    PARSING_FAILED = "PARSING_FAILED"
    CONFIG_INVALID = "CONFIG_INVALID"
    PERSIST_FAILED = "PERSIST_FAILED"
    RUN_CANCELLED = "RUN_CANCELLED"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"
    SIGNAL_SUBSCRIBER_FAILURE = "SIGNAL_SUBSCRIBER_FAILURE"
    BROWSER_CLEANUP_FAILED = "BROWSER_CLEANUP_FAILED"
    HEALTH_ALERT = "HEALTH_ALERT"


def emit_structured_error(
    logger: logging.Logger,
    *,
    code: ErrorCode,
    message: str,
    suppressed: bool,
    run_id: str | None = None,
    source_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    """Emit a structured telemetry event via logging.

    ``suppressed`` marks errors that were absorbed into a recorded outcome;
    unsuppressed events need an operator to look at them.
    """
    logger.error(
        "bloodwatch_error",
        extra={
            "error_code": code,
            "error_message": message,
            "suppressed": suppressed,
            "run_id": run_id,
            "source_id": source_id,
            "details": details or {},
        },
    )
