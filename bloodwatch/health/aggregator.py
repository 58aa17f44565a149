"""Global scraping health, derived from the most recent runs.

Rules are applied in a fixed order and the first match wins:

1. ``failed_after`` or more leading failed/partial runs  -> FAILED, alert
2. ``degraded_after`` or more leading failed/partial runs -> DEGRADED
3. exactly one leading failure and more than one failed/partial run in the
   window -> DEGRADED (intermittent)
4. otherwise -> OK
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

from bloodwatch.config.settings import HealthConfig
from bloodwatch.orchestrator.models import Run
from bloodwatch.orchestrator.status import UNHEALTHY_STATUSES, RunStatus

logger = logging.getLogger(__name__)


class GlobalStatus(str, Enum):
    OK = "OK"
    DEGRADED = "DEGRADED"
    FAILED = "FAILED"


class HealthSnapshot(BaseModel):
    model_config = {"frozen": True}

    global_status: GlobalStatus
    last_successful_at: datetime | None = None
    consecutive_failures: int
    total_recent_runs: int
    successful_recent_runs: int
    failed_recent_runs: int
    message: str
    requires_alert: bool
    computed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def compute_health(
    recent_runs: Sequence[Run],
    window_size: int | None = None,
    config: HealthConfig | None = None,
) -> HealthSnapshot:
    """Classify scraping health from runs ordered most-recent first.

    Only the first ``window_size`` runs are considered, and RUNNING runs among
    them are ignored. The input is never modified.
    """
    config = config or HealthConfig()
    window_size = window_size if window_size is not None else config.window_size
    if window_size < 1:
        raise ValueError("window_size must be >= 1")

    finished = [run for run in list(recent_runs)[:window_size] if run.status != RunStatus.RUNNING]

    consecutive_failures = 0
    for run in finished:
        if run.status not in UNHEALTHY_STATUSES:
            break
        consecutive_failures += 1

    successful = sum(1 for run in finished if run.status == RunStatus.COMPLETED)
    failed = sum(1 for run in finished if run.status in UNHEALTHY_STATUSES)
    last_successful_at = next(
        (run.completed_at for run in finished if run.status == RunStatus.COMPLETED), None
    )

    requires_alert = False
    if consecutive_failures >= config.failed_after:
        status = GlobalStatus.FAILED
        message = (
            f"Critical: Scraping system has experienced {consecutive_failures} consecutive "
            "failures. Manual intervention required. Consider manual data import."
        )
        requires_alert = True
        logger.warning("Scraper status: FAILED - %d consecutive failures", consecutive_failures)
    elif consecutive_failures >= config.degraded_after:
        status = GlobalStatus.DEGRADED
        message = (
            f"Warning: Scraping system has experienced {consecutive_failures} consecutive "
            "failures. Monitoring closely for potential prolonged failure."
        )
        logger.info("Scraper status: DEGRADED - %d consecutive failures", consecutive_failures)
    elif consecutive_failures == 1 and failed > 1:
        status = GlobalStatus.DEGRADED
        message = (
            "Scraping system experiencing intermittent failures. "
            f"{failed} out of {len(finished)} recent runs failed."
        )
        logger.info("Scraper status: DEGRADED - intermittent failures")
    else:
        status = GlobalStatus.OK
        message = "Scraping system is operating normally."
        logger.debug("Scraper status: OK")

    return HealthSnapshot(
        global_status=status,
        last_successful_at=last_successful_at,
        consecutive_failures=consecutive_failures,
        total_recent_runs=len(finished),
        successful_recent_runs=successful,
        failed_recent_runs=failed,
        message=message,
        requires_alert=requires_alert,
    )
