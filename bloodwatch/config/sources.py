"""Donation centers whose inventory pages are scraped."""

from __future__ import annotations

from collections.abc import Iterable

from pydantic import BaseModel, ConfigDict, Field

from bloodwatch.exceptions import SourceNotFoundError


class Source(BaseModel):
    """One blood donation center page.

    ``page_url`` is used with the heuristic profile when no rule set exists.
    """

    model_config = ConfigDict(frozen=True)

    source_id: str = Field(min_length=1)
    name: str
    code: str = ""
    page_url: str | None = None
    active: bool = True


class SourceCatalog:
    def __init__(self, sources: Iterable[Source] = ()) -> None:
        self._sources: dict[str, Source] = {}
        for source in sources:
            self.add(source)

    def add(self, source: Source) -> None:
        self._sources[source.source_id] = source

    def get(self, source_id: str) -> Source:
        try:
            return self._sources[source_id]
        except KeyError:
            raise SourceNotFoundError(f"Source not found with id: {source_id}") from None

    def all(self) -> list[Source]:
        return list(self._sources.values())

    def active_sources(self) -> list[Source]:
        return [source for source in self._sources.values() if source.active]
