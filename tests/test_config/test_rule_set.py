"""Tests for rule set validation and the in-memory rule set provider."""

from __future__ import annotations

import pytest

from bloodwatch.config.rule_set import (
    DEFAULT_SCHEDULE,
    ExtractionRuleSet,
    InMemoryRuleSetProvider,
    ParserVariant,
    SelectorBundle,
)
from bloodwatch.exceptions import ConfigError

SELECTORS = {
    "bloodGroupRow": "table.levels tr",
    "bloodGroupName": "td.group",
    "levelPercentage": "td.level",
}


def _document(**overrides):
    document = {
        "source_id": "rzeszow",
        "target_url": "https://rckik.rzeszow.pl/stany",
        "parser_variant": "CUSTOM",
        "selectors": dict(SELECTORS),
    }
    document.update(overrides)
    return document


class TestSelectorBundle:
    def test_from_document_maps_keys(self):
        bundle = SelectorBundle.from_document({**SELECTORS, "container": "#stock"})
        assert bundle.blood_group_row == "table.levels tr"
        assert bundle.blood_group_name == "td.group"
        assert bundle.level_percentage == "td.level"
        assert bundle.container == "#stock"

    def test_from_json_text(self):
        bundle = SelectorBundle.from_document(
            '{"bloodGroupRow": "tr", "bloodGroupName": "td", "levelPercentage": "span"}'
        )
        assert bundle.container is None

    def test_missing_required_key_names_it(self):
        with pytest.raises(ConfigError, match="levelPercentage"):
            SelectorBundle.from_document({"bloodGroupRow": "tr", "bloodGroupName": "td"})

    def test_blank_required_key_is_missing(self):
        with pytest.raises(ConfigError, match="bloodGroupName"):
            SelectorBundle.from_document({**SELECTORS, "bloodGroupName": "  "})

    def test_invalid_json_rejected(self):
        with pytest.raises(ConfigError, match="Invalid JSON"):
            SelectorBundle.from_document("{not json")

    @pytest.mark.parametrize("key", ["bloodGroupRow", "levelPercentage", "container"])
    def test_invalid_css_rejected_before_use(self, key):
        with pytest.raises(ConfigError, match="Invalid CSS selector"):
            SelectorBundle.from_document({**SELECTORS, key: "li[row"})

    def test_blank_container_becomes_none(self):
        bundle = SelectorBundle.from_document({**SELECTORS, "container": ""})
        assert bundle.container is None

    def test_to_document_uses_external_keys(self):
        bundle = SelectorBundle.from_document(SELECTORS)
        assert bundle.to_document() == SELECTORS


class TestExtractionRuleSet:
    def test_defaults(self):
        rule_set = ExtractionRuleSet.from_document(_document())
        assert rule_set.parser_variant == ParserVariant.CUSTOM
        assert rule_set.timeout_s == 30
        assert rule_set.active is True
        assert rule_set.schedule_cron == DEFAULT_SCHEDULE

    def test_accepts_css_selectors_key(self):
        document = _document()
        document["cssSelectors"] = document.pop("selectors")
        rule_set = ExtractionRuleSet.from_document(document)
        assert rule_set.selectors.blood_group_row == "table.levels tr"

    def test_missing_selectors_rejected(self):
        document = _document()
        del document["selectors"]
        with pytest.raises(ConfigError):
            ExtractionRuleSet.from_document(document)

    def test_http_url_rejected(self):
        with pytest.raises(ConfigError, match="https"):
            ExtractionRuleSet.from_document(_document(target_url="http://rckik.rzeszow.pl"))

    def test_url_length_limit(self):
        long_url = "https://rckik.pl/" + "a" * 2000
        with pytest.raises(ConfigError):
            ExtractionRuleSet.from_document(_document(target_url=long_url))

    @pytest.mark.parametrize("timeout", [9, 121])
    def test_timeout_bounds(self, timeout):
        with pytest.raises(ConfigError):
            ExtractionRuleSet.from_document(_document(timeout_s=timeout))

    @pytest.mark.parametrize("timeout", [10, 120])
    def test_timeout_bounds_inclusive(self, timeout):
        assert ExtractionRuleSet.from_document(_document(timeout_s=timeout)).timeout_s == timeout

    @pytest.mark.parametrize("cron", ["*/15 * * * *", "0 2 * * 1-5", "@daily", "@every 6h"])
    def test_valid_schedules(self, cron):
        assert ExtractionRuleSet.from_document(_document(schedule_cron=cron)).schedule_cron == cron

    @pytest.mark.parametrize("cron", ["every day", "0 2 * *", "@sometimes"])
    def test_invalid_schedules(self, cron):
        with pytest.raises(ConfigError):
            ExtractionRuleSet.from_document(_document(schedule_cron=cron))

    def test_notes_length_limit(self):
        with pytest.raises(ConfigError):
            ExtractionRuleSet.from_document(_document(notes="x" * 501))

    def test_rule_set_is_frozen(self):
        rule_set = ExtractionRuleSet.from_document(_document())
        with pytest.raises(Exception):
            rule_set.timeout_s = 60


class TestInMemoryRuleSetProvider:
    def test_get_active(self):
        provider = InMemoryRuleSetProvider.from_documents([_document()])
        assert provider.get_active("rzeszow").source_id == "rzeszow"
        assert provider.get_active("krakow") is None

    def test_second_active_rule_set_rejected(self):
        provider = InMemoryRuleSetProvider.from_documents([_document()])
        with pytest.raises(ConfigError, match="already has an active rule set"):
            provider.register(ExtractionRuleSet.from_document(_document()))

    def test_inactive_rule_set_does_not_conflict(self):
        provider = InMemoryRuleSetProvider.from_documents([_document()])
        provider.register(ExtractionRuleSet.from_document(_document(active=False)))
        assert provider.get_active("rzeszow").active

    def test_deactivate_is_soft_delete(self):
        provider = InMemoryRuleSetProvider.from_documents([_document()])
        assert provider.deactivate("rzeszow") is True
        assert provider.get_active("rzeszow") is None
        assert provider.deactivate("rzeszow") is False
        provider.register(ExtractionRuleSet.from_document(_document()))
        assert provider.get_active("rzeszow") is not None

    def test_update_revalidates(self):
        provider = InMemoryRuleSetProvider.from_documents([_document()])
        updated = provider.update("rzeszow", timeout_s=60)
        assert updated.timeout_s == 60
        assert provider.get_active("rzeszow").timeout_s == 60
        with pytest.raises(ConfigError):
            provider.update("rzeszow", timeout_s=500)
        assert provider.get_active("rzeszow").timeout_s == 60

    def test_update_selectors_from_document(self):
        provider = InMemoryRuleSetProvider.from_documents([_document()])
        updated = provider.update("rzeszow", selectors={**SELECTORS, "container": "#stock"})
        assert updated.selectors.container == "#stock"

    def test_update_unknown_source(self):
        with pytest.raises(ConfigError):
            InMemoryRuleSetProvider().update("nowhere", timeout_s=20)

    def test_strict_loading_raises(self):
        bad = _document(selectors={"bloodGroupRow": "tr"})
        with pytest.raises(ConfigError):
            InMemoryRuleSetProvider.from_documents([bad])

    def test_lenient_loading_surfaces_error_per_source(self):
        bad = _document(source_id="krakow", selectors={"bloodGroupRow": "tr"})
        provider = InMemoryRuleSetProvider.from_documents([_document(), bad], strict=False)

        assert provider.get_active("rzeszow") is not None
        with pytest.raises(ConfigError, match="bloodGroupName"):
            provider.get_active("krakow")
        assert [r.source_id for r in provider.active_rule_sets()] == ["rzeszow"]
