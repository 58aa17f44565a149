"""Tests for structured error events and logging setup."""

import logging

from bloodwatch.telemetry.errors import ErrorCode, emit_structured_error
from bloodwatch.telemetry.logging_setup import LOGGER_NAME, setup_logging


def test_structured_error_fields(caplog):
    logger = logging.getLogger("bloodwatch.test")
    with caplog.at_level(logging.WARNING):
        emit_structured_error(
            logger,
            code=ErrorCode.FETCH_TIMEOUT,
            message="Timed out",
            suppressed=True,
            run_id="run_abc",
            source_id="rzeszow",
            details={"timeout_s": 30},
        )

    record = caplog.records[-1]
    assert record.error_code == ErrorCode.FETCH_TIMEOUT
    assert record.suppressed is True
    assert record.run_id == "run_abc"
    assert record.source_id == "rzeszow"
    assert record.details == {"timeout_s": 30}


def test_setup_logging_is_idempotent():
    logger = setup_logging("debug")
    setup_logging("info")

    assert logger.name == LOGGER_NAME
    assert logger.level == logging.INFO
    stream_handlers = [h for h in logger.handlers if isinstance(h, logging.StreamHandler)]
    assert len(stream_handlers) == 1
