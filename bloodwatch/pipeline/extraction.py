"""Extraction data models: normalized inventory records with provenance."""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from bloodwatch.pipeline.normalizer import BLOOD_GROUPS, LevelStatus, classify_level

_TWO_PLACES = Decimal("0.01")


class RecordSource(BaseModel):
    """Where a record came from, kept to help operators debug selectors."""

    model_config = ConfigDict(frozen=True)

    selector: str
    raw_text: str


class ExtractedRecord(BaseModel):
    """One blood group level read from a source page."""

    model_config = ConfigDict(frozen=True)

    blood_group: str
    level_percentage: Decimal = Field(ge=0, le=100)
    source: RecordSource

    @field_validator("blood_group")
    @classmethod
    def _validate_group(cls, value: str) -> str:
        if value not in BLOOD_GROUPS:
            raise ValueError(f"Unknown blood group: {value!r}")
        return value

    @field_validator("level_percentage")
    @classmethod
    def _round_percentage(cls, value: Decimal) -> Decimal:
        return value.quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)

    @property
    def level_status(self) -> LevelStatus:
        return classify_level(self.level_percentage)


class ExtractionResult(BaseModel):
    """Output of one extractor call.

    ``failed_rows`` counts rows that matched the row selector but were skipped
    because their group or level could not be read.
    """

    records: list[ExtractedRecord]
    warnings: list[str] = Field(default_factory=list)
    failed_rows: int = 0
    profile: Literal["heuristic", "custom"]
    parser_version: str

    @property
    def groups_found(self) -> set[str]:
        return {record.blood_group for record in self.records}

    @property
    def is_complete(self) -> bool:
        """True when every canonical blood group was extracted."""
        return self.groups_found == set(BLOOD_GROUPS)

    def as_tuple(self) -> tuple[list[ExtractedRecord], list[str]]:
        return list(self.records), list(self.warnings)


class InventorySnapshot(BaseModel):
    """A record as handed to storage: tagged with its source and date."""

    source_id: str
    snapshot_date: date
    blood_group: str
    level_percentage: Decimal
    source_url: str | None = None
    parser_version: str
    scraped_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    is_manual: bool = False

    @classmethod
    def from_record(
        cls,
        record: ExtractedRecord,
        *,
        source_id: str,
        snapshot_date: date,
        source_url: str | None,
        parser_version: str,
    ) -> InventorySnapshot:
        return cls(
            source_id=source_id,
            snapshot_date=snapshot_date,
            blood_group=record.blood_group,
            level_percentage=record.level_percentage,
            source_url=source_url,
            parser_version=parser_version,
        )
