"""Page extractor: CSS selectors over raw HTML for deterministic extraction.

Two selector profiles exist:

- ``HeuristicProfile``: fixed selectors with fallbacks, used for sources that
  have no rule set. Tolerant of missing structure, less precise.
- ``CustomProfile``: driven entirely by a rule set's selector bundle, no
  fallbacks. A row or container selector that matches nothing fails the page.

Rows that cannot be read are skipped and counted; the page only fails when
nothing at all could be extracted.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Literal

import soupsieve as sv
from bs4 import BeautifulSoup, Tag

from bloodwatch.config.rule_set import ExtractionRuleSet, ParserVariant, SelectorBundle
from bloodwatch.exceptions import ConfigError, ParsingError
from bloodwatch.pipeline.extraction import ExtractedRecord, ExtractionResult, RecordSource
from bloodwatch.pipeline.normalizer import extract_percentage, normalize_blood_group

logger = logging.getLogger(__name__)

HEURISTIC_ROW_SELECTOR = "tr.blood-row, tr[data-blood-group], tbody tr, table > tr"
HEURISTIC_GROUP_SELECTORS = ("td:nth-child(1), td.blood-group, .group-name", "td:first-child")
HEURISTIC_LEVEL_SELECTORS = (
    "td:nth-child(2) .percentage, td.level, .level-value",
    "td:nth-child(2)",
)

SNIPPET_LENGTH = 200

DEFAULT_PARSER_VERSIONS: dict[str, str] = {
    "heuristic": "heuristic_v1",
    ParserVariant.STATIC.value: "static_v1",
    ParserVariant.BROWSER.value: "browser_v1",
    ParserVariant.CUSTOM.value: "custom_v1",
}


@dataclass(frozen=True)
class HeuristicProfile:
    kind: Literal["heuristic"] = field(default="heuristic", init=False)
    row_selector: str = HEURISTIC_ROW_SELECTOR
    group_selectors: tuple[str, ...] = HEURISTIC_GROUP_SELECTORS
    level_selectors: tuple[str, ...] = HEURISTIC_LEVEL_SELECTORS
    container: str | None = None


@dataclass(frozen=True)
class CustomProfile:
    selectors: SelectorBundle
    parser_variant: ParserVariant = ParserVariant.CUSTOM
    kind: Literal["custom"] = field(default="custom", init=False)

    @property
    def row_selector(self) -> str:
        return self.selectors.blood_group_row

    @property
    def group_selectors(self) -> tuple[str, ...]:
        return (self.selectors.blood_group_name,)

    @property
    def level_selectors(self) -> tuple[str, ...]:
        return (self.selectors.level_percentage,)

    @property
    def container(self) -> str | None:
        return self.selectors.container


Profile = HeuristicProfile | CustomProfile


def resolve_profile(rule_set: ExtractionRuleSet | None) -> Profile:
    """Pick the selector profile for a source: custom when a rule set exists."""
    if rule_set is None:
        return HeuristicProfile()
    return CustomProfile(selectors=rule_set.selectors, parser_variant=rule_set.parser_variant)


class ParserRegistry:
    """Maps a profile (and the rule set's parser variant) to a parser version string."""

    def __init__(self, versions: Mapping[str, str] | None = None) -> None:
        self._versions = dict(DEFAULT_PARSER_VERSIONS)
        if versions:
            self._versions.update(versions)

    def register(self, key: str, version: str) -> None:
        self._versions[key] = version
        logger.info("Registered parser %s - version: %s", key, version)

    def version_for(self, profile: Profile) -> str:
        key = "heuristic" if profile.kind == "heuristic" else profile.parser_variant.value
        try:
            return self._versions[key]
        except KeyError:
            raise ConfigError(f"Parser not found for type: {key}") from None


DEFAULT_REGISTRY = ParserRegistry()


def _compile(selector: str) -> sv.SoupSieve:
    try:
        return sv.compile(selector)
    except sv.SelectorSyntaxError as exc:
        raise ConfigError(f"Invalid CSS selector {selector!r}: {exc}") from exc


def _text(element: Tag) -> str:
    return " ".join(element.get_text(" ").split())


def _first_match(row: Tag, selectors: tuple[sv.SoupSieve, ...]) -> Tag | None:
    for selector in selectors:
        element = selector.select_one(row)
        if element is not None:
            return element
    return None


def extract(
    html: str | bytes | None,
    rule_set: ExtractionRuleSet | None = None,
    *,
    registry: ParserRegistry = DEFAULT_REGISTRY,
) -> ExtractionResult:
    """Extract blood group levels from a page.

    Args:
        html: Raw page content as fetched.
        rule_set: The source's active rule set, or None for the heuristic profile.
        registry: Parser version lookup.

    Returns:
        ExtractionResult with records in document order plus row warnings.

    Raises:
        ParsingError: The HTML is blank or no record could be extracted.
        ConfigError: A configured selector is not valid CSS.
    """
    if not html or not html.strip():
        raise ParsingError("HTML content is empty")

    profile = resolve_profile(rule_set)
    parser_version = registry.version_for(profile)

    row_selector = _compile(profile.row_selector)
    group_selectors = tuple(_compile(s) for s in profile.group_selectors)
    level_selectors = tuple(_compile(s) for s in profile.level_selectors)

    document = BeautifulSoup(html, "html.parser")
    snippet = " ".join(document.get_text(" ").split())[:SNIPPET_LENGTH]

    scope: Tag = document
    if profile.container:
        container = _compile(profile.container).select_one(document)
        if container is None:
            raise ParsingError(
                f"Container not found with selector: {profile.container}",
                selector=profile.container,
                snippet=snippet,
            )
        scope = container

    rows = row_selector.select(scope)
    logger.info(
        "Found %d potential blood group rows with %s profile", len(rows), profile.kind
    )
    if not rows and profile.kind == "custom":
        raise ParsingError(
            f"No rows matched selector: {profile.row_selector}",
            selector=profile.row_selector,
            snippet=snippet,
        )

    records: list[ExtractedRecord] = []
    warnings: list[str] = []
    seen_groups: set[str] = set()
    failed_rows = 0
    group_matches = 0
    valid_groups = 0
    level_matches = 0

    for index, row in enumerate(rows, start=1):
        group_element = _first_match(row, group_selectors)
        if group_element is None:
            failed_rows += 1
            warnings.append(f"Row {index}: no blood group element")
            continue
        group_matches += 1

        group_text = _text(group_element)
        blood_group = normalize_blood_group(group_text)
        if blood_group is None:
            failed_rows += 1
            warnings.append(f"Row {index}: unrecognised blood group {group_text!r}")
            logger.debug("Skipping row with invalid blood group: %s", group_text)
            continue
        valid_groups += 1

        level_element = _first_match(row, level_selectors)
        if level_element is None:
            failed_rows += 1
            warnings.append(f"Row {index}: no level element for blood group {blood_group}")
            continue
        level_matches += 1

        level_text = _text(level_element)
        level = extract_percentage(level_text)
        if level is None:
            failed_rows += 1
            warnings.append(
                f"Row {index}: could not parse percentage from {level_text!r} for {blood_group}"
            )
            continue

        if blood_group in seen_groups:
            warnings.append(f"Row {index}: duplicate blood group {blood_group}")
        seen_groups.add(blood_group)

        records.append(
            ExtractedRecord(
                blood_group=blood_group,
                level_percentage=level,
                source=RecordSource(
                    selector=profile.row_selector,
                    raw_text=f"{group_text} | {level_text}",
                ),
            )
        )

    if not records:
        selector = profile.row_selector
        message = "No valid blood levels found in HTML content"
        if profile.kind == "custom" and group_matches == 0:
            selector = profile.selectors.blood_group_name
            message = f"Blood group selector matched nothing in {len(rows)} rows: {selector}"
        elif profile.kind == "custom" and valid_groups > 0 and level_matches == 0:
            selector = profile.selectors.level_percentage
            message = f"Level selector matched nothing in {len(rows)} rows: {selector}"
        raise ParsingError(
            message,
            selector=selector,
            snippet=snippet,
            failed_rows=failed_rows,
            warnings=warnings,
        )

    logger.info(
        "Successfully parsed %d blood levels (%d rows skipped)", len(records), failed_rows
    )
    return ExtractionResult(
        records=records,
        warnings=warnings,
        failed_rows=failed_rows,
        profile=profile.kind,
        parser_version=parser_version,
    )
