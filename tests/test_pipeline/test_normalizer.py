"""Tests for blood group and percentage normalization."""

from decimal import Decimal

import pytest

from bloodwatch.pipeline.normalizer import (
    LevelStatus,
    classify_level,
    extract_percentage,
    normalize_blood_group,
)


class TestNormalizeBloodGroup:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("A+", "A+"),
            ("ab-", "AB-"),
            (" O + ", "0+"),
            ("0 Rh-", None),
            ("o-", "0-"),
            ("B\n+", "B+"),
            ("AB+", "AB+"),
        ],
    )
    def test_known_forms(self, raw, expected):
        assert normalize_blood_group(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "   ", "C+", "A", "A++", "ABO+", "krew A+"])
    def test_unrecognised_returns_none(self, raw):
        assert normalize_blood_group(raw) is None


class TestExtractPercentage:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("45.5%", Decimal("45.5")),
            ("45,5 %", Decimal("45.5")),
            ("Poziom: 80%", Decimal("80")),
            ("0%", Decimal("0")),
            ("100", Decimal("100")),
            ("12 dni, 30%", Decimal("12")),
            (",45%", Decimal("45")),
            ("ok.45%", Decimal("45")),
        ],
    )
    def test_first_number_in_range(self, raw, expected):
        assert extract_percentage(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "brak danych", "150%", "100.01", "-5%", "-0.5"])
    def test_out_of_range_or_missing(self, raw):
        assert extract_percentage(raw) is None

    def test_returns_decimal(self):
        assert isinstance(extract_percentage("33.3%"), Decimal)


class TestClassifyLevel:
    @pytest.mark.parametrize(
        "value, expected",
        [
            (Decimal("0"), LevelStatus.CRITICAL),
            (Decimal("19.99"), LevelStatus.CRITICAL),
            (Decimal("20"), LevelStatus.IMPORTANT),
            (Decimal("49.99"), LevelStatus.IMPORTANT),
            (Decimal("50"), LevelStatus.OK),
            (Decimal("100"), LevelStatus.OK),
        ],
    )
    def test_thresholds(self, value, expected):
        assert classify_level(value) == expected
