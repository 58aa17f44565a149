"""Extraction rule sets: per-source selector configuration maintained by operators.

A rule set tells the extractor where the inventory table lives on a source's
page. The selector bundle is exchanged as a small keyed document:

    {"bloodGroupRow": "...", "bloodGroupName": "...", "levelPercentage": "...",
     "container": "..."}   # container is optional

A bundle missing any required key is rejected before it can be used.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any

import soupsieve as sv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from bloodwatch.config.settings import MAX_TIMEOUT_S, MIN_TIMEOUT_S
from bloodwatch.exceptions import ConfigError

logger = logging.getLogger(__name__)

REQUIRED_SELECTOR_KEYS = ("bloodGroupRow", "bloodGroupName", "levelPercentage")
DEFAULT_SCHEDULE = "0 2 * * *"
MAX_URL_LENGTH = 2000
MAX_NOTES_LENGTH = 500

_CRON_FIELD = r"(?:\*(?:/\d+)?|\d+(?:[-/]\d+)?(?:,\d+(?:[-/]\d+)?)*)"
_CRON_PATTERN = re.compile(
    r"@(?:annually|yearly|monthly|weekly|daily|hourly|reboot)"
    r"|@every (?:\d+(?:ns|us|µs|ms|s|m|h))+"
    rf"|{_CRON_FIELD}(?: {_CRON_FIELD}){{4}}"
)


class ParserVariant(str, Enum):
    """How a source page is retrieved and which parser generation handles it."""

    STATIC = "STATIC"
    BROWSER = "BROWSER"
    CUSTOM = "CUSTOM"


class SelectorBundle(BaseModel):
    """The three required selectors plus an optional container scope."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    blood_group_row: str = Field(alias="bloodGroupRow", min_length=1)
    blood_group_name: str = Field(alias="bloodGroupName", min_length=1)
    level_percentage: str = Field(alias="levelPercentage", min_length=1)
    container: str | None = None

    @field_validator("container")
    @classmethod
    def _blank_container_is_none(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value

    @field_validator("blood_group_row", "blood_group_name", "level_percentage", "container")
    @classmethod
    def _validate_css(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return value
        try:
            sv.compile(value)
        except sv.SelectorSyntaxError as exc:
            raise ValueError(f"Invalid CSS selector {value!r}: {exc}") from exc
        return value

    @classmethod
    def from_document(cls, document: Mapping[str, Any] | str | None) -> SelectorBundle:
        """Build a bundle from its keyed document form (a mapping or JSON text)."""
        if isinstance(document, str):
            try:
                document = json.loads(document)
            except json.JSONDecodeError as exc:
                raise ConfigError(f"Invalid JSON format for selectors: {exc}") from exc
        if not isinstance(document, Mapping):
            raise ConfigError("Selector bundle must be a keyed document")

        missing = [
            key
            for key in REQUIRED_SELECTOR_KEYS
            if not isinstance(document.get(key), str) or not document[key].strip()
        ]
        if missing:
            raise ConfigError(f"Selector bundle missing required key(s): {', '.join(missing)}")

        try:
            return cls.model_validate(dict(document))
        except ValidationError as exc:
            raise ConfigError(f"Invalid selector bundle: {exc}") from exc

    def to_document(self) -> dict[str, str]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ExtractionRuleSet(BaseModel):
    """Declarative extraction configuration for one source."""

    model_config = ConfigDict(frozen=True)

    source_id: str = Field(min_length=1)
    target_url: str
    parser_variant: ParserVariant = ParserVariant.STATIC
    selectors: SelectorBundle
    timeout_s: int = 30
    active: bool = True
    schedule_cron: str = DEFAULT_SCHEDULE
    notes: str | None = None

    @field_validator("target_url")
    @classmethod
    def _validate_target_url(cls, value: str) -> str:
        if not value.startswith("https://"):
            raise ValueError("target_url must start with https://")
        if len(value) > MAX_URL_LENGTH:
            raise ValueError(f"target_url must not exceed {MAX_URL_LENGTH} characters")
        return value

    @field_validator("timeout_s")
    @classmethod
    def _validate_timeout(cls, value: int) -> int:
        if not MIN_TIMEOUT_S <= value <= MAX_TIMEOUT_S:
            raise ValueError(f"timeout_s must be between {MIN_TIMEOUT_S} and {MAX_TIMEOUT_S}")
        return value

    @field_validator("schedule_cron")
    @classmethod
    def _validate_schedule(cls, value: str) -> str:
        if not _CRON_PATTERN.fullmatch(value.strip()):
            raise ValueError(f"Invalid cron expression: {value!r}")
        return value.strip()

    @field_validator("notes")
    @classmethod
    def _validate_notes(cls, value: str | None) -> str | None:
        if value is not None and len(value) > MAX_NOTES_LENGTH:
            raise ValueError(f"notes must not exceed {MAX_NOTES_LENGTH} characters")
        return value

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> ExtractionRuleSet:
        """Validate an operator-supplied document, raising ConfigError on any problem."""
        data = dict(document)
        raw_selectors = data.pop("selectors", data.pop("cssSelectors", None))
        selectors = SelectorBundle.from_document(raw_selectors)
        try:
            return cls(selectors=selectors, **data)
        except ValidationError as exc:
            source = data.get("source_id", "<unknown>")
            raise ConfigError(f"Invalid rule set for source {source}: {exc}") from exc


class InMemoryRuleSetProvider:
    """Holds rule sets keyed by source, with at most one active set per source.

    Documents loaded with ``strict=False`` that fail validation are remembered,
    and ``get_active`` raises ConfigError for their source so the failure shows
    up in that source's attempt instead of disappearing.
    """

    def __init__(self) -> None:
        self._active: dict[str, ExtractionRuleSet] = {}
        self._inactive: dict[str, list[ExtractionRuleSet]] = {}
        self._invalid: dict[str, str] = {}

    def register(self, rule_set: ExtractionRuleSet) -> ExtractionRuleSet:
        if rule_set.active:
            if rule_set.source_id in self._active:
                raise ConfigError(
                    f"Source {rule_set.source_id} already has an active rule set"
                )
            self._active[rule_set.source_id] = rule_set
            self._invalid.pop(rule_set.source_id, None)
        else:
            self._inactive.setdefault(rule_set.source_id, []).append(rule_set)
        logger.info(
            "Registered rule set for source %s (variant=%s, active=%s)",
            rule_set.source_id,
            rule_set.parser_variant.value,
            rule_set.active,
        )
        return rule_set

    def update(self, source_id: str, **changes: Any) -> ExtractionRuleSet:
        """Replace fields of the active rule set for a source, revalidating the result."""
        current = self._active.get(source_id)
        if current is None:
            raise ConfigError(f"Source {source_id} has no active rule set")

        if "selectors" in changes and not isinstance(changes["selectors"], SelectorBundle):
            changes["selectors"] = SelectorBundle.from_document(changes["selectors"])
        data = {**current.model_dump(), **changes, "source_id": source_id}
        try:
            updated = ExtractionRuleSet.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(f"Invalid rule set update for source {source_id}: {exc}") from exc

        if updated.active:
            self._active[source_id] = updated
        else:
            self._active.pop(source_id)
            self._inactive.setdefault(source_id, []).append(updated)
        logger.info("Updated rule set for source %s: %s", source_id, sorted(changes))
        return updated

    def deactivate(self, source_id: str) -> bool:
        current = self._active.pop(source_id, None)
        if current is None:
            return False
        self._inactive.setdefault(source_id, []).append(current.model_copy(update={"active": False}))
        logger.info("Deactivated rule set for source %s", source_id)
        return True

    def get_active(self, source_id: str) -> ExtractionRuleSet | None:
        if source_id in self._invalid:
            raise ConfigError(self._invalid[source_id])
        return self._active.get(source_id)

    def active_rule_sets(self) -> list[ExtractionRuleSet]:
        return list(self._active.values())

    def load_documents(
        self, documents: Iterable[Mapping[str, Any]], *, strict: bool = True
    ) -> list[ExtractionRuleSet]:
        loaded: list[ExtractionRuleSet] = []
        for document in documents:
            try:
                rule_set = ExtractionRuleSet.from_document(document)
            except ConfigError as exc:
                source_id = document.get("source_id")
                if strict or not source_id:
                    raise
                logger.warning("Rejected rule set for source %s: %s", source_id, exc)
                self._invalid[str(source_id)] = str(exc)
                continue
            loaded.append(self.register(rule_set))
        return loaded

    @classmethod
    def from_documents(
        cls, documents: Iterable[Mapping[str, Any]], *, strict: bool = True
    ) -> InMemoryRuleSetProvider:
        provider = cls()
        provider.load_documents(documents, strict=strict)
        return provider
