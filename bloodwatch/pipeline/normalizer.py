"""Text normalization for scraped inventory values.

Both functions return None for anything they do not recognise. A row that
does not normalize is skipped by the extractor, never treated as an error.
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from enum import Enum

BLOOD_GROUPS: tuple[str, ...] = ("0+", "0-", "A+", "A-", "B+", "B-", "AB+", "AB-")

_BLOOD_GROUP_PATTERN = re.compile(r"(0|A|B|AB)[+-]")
_WHITESPACE = re.compile(r"\s+")
# A minus sign glued to the number means a negative value, which is out of range.
_PERCENTAGE_PATTERN = re.compile(r"(?<!\d)(-?)(\d+(?:[.,]\d+)?)\s*%?")

CRITICAL_BELOW = Decimal("20")
IMPORTANT_BELOW = Decimal("50")


class LevelStatus(str, Enum):
    CRITICAL = "CRITICAL"
    IMPORTANT = "IMPORTANT"
    OK = "OK"


def normalize_blood_group(raw: str | None) -> str | None:
    """Return the canonical group code (e.g. ``"0+"``, ``"AB-"``) or None."""
    if not raw:
        return None
    text = _WHITESPACE.sub("", raw).upper().replace("O", "0")
    if _BLOOD_GROUP_PATTERN.fullmatch(text):
        return text
    return None


def extract_percentage(raw: str | None) -> Decimal | None:
    """Return the first number in ``raw`` if it lies within [0, 100], else None."""
    if not raw:
        return None
    match = _PERCENTAGE_PATTERN.search(raw)
    if match is None:
        return None
    sign, digits = match.groups()
    if sign:
        return None
    try:
        value = Decimal(digits.replace(",", "."))
    except InvalidOperation:
        return None
    if Decimal(0) <= value <= Decimal(100):
        return value
    return None


def classify_level(value: Decimal) -> LevelStatus:
    if value < CRITICAL_BELOW:
        return LevelStatus.CRITICAL
    if value < IMPORTANT_BELOW:
        return LevelStatus.IMPORTANT
    return LevelStatus.OK
