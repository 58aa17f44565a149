"""Exception taxonomy for the scraping core.

Row-level problems are never raised. Source-level problems are raised inside
the extractor/fetcher and converted into Attempt outcomes by the orchestrator.
"""

from __future__ import annotations


class BloodwatchError(Exception):
    """Base class for all bloodwatch errors."""


class ConfigError(BloodwatchError):
    """A rule set or source configuration is invalid and must not be used."""


class FetchError(BloodwatchError):
    """Retrieving a source page failed (network, timeout or non-2xx status)."""

    def __init__(
        self,
        message: str,
        *,
        http_status: int | None = None,
        timed_out: bool = False,
        elapsed_ms: int | None = None,
    ) -> None:
        super().__init__(message)
        self.http_status = http_status
        self.timed_out = timed_out
        self.elapsed_ms = elapsed_ms


class ParsingError(BloodwatchError):
    """No inventory records could be extracted from a page."""

    def __init__(
        self,
        message: str,
        *,
        selector: str | None = None,
        snippet: str | None = None,
        failed_rows: int = 0,
        warnings: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.selector = selector
        self.snippet = snippet
        self.failed_rows = failed_rows
        self.warnings = list(warnings or [])


class RunStateError(BloodwatchError):
    """A run was mutated after it reached a terminal status."""


class RunNotFoundError(BloodwatchError):
    pass


class SourceNotFoundError(BloodwatchError):
    pass


class SourceInactiveError(BloodwatchError):
    pass


class PersistError(BloodwatchError):
    """The persistence sink refused or failed to store extracted records."""
