from __future__ import annotations

from collections import Counter
from typing import Iterable

from loguru import logger

from research_engine.models.sources import ProvenanceType, Source, SourceIdentifier, source_identifier


class SourceDeduplicator:
    """Session-scoped filter over a single identifier namespace shared by all provenance types.

    Identity is DOI > provider ID > normalized URL. Sources with no extractable
    identifier are passed through as unique every time they are seen, so
    identifier-less web results can repeat across rounds.
    """

    def __init__(self) -> None:
        self._seen: set[SourceIdentifier] = set()
        self.duplicates_by_provenance: Counter[str] = Counter()
        self.unidentified_count = 0
        self.total_processed = 0

    @property
    def seen_count(self) -> int:
        return len(self._seen)

    @property
    def total_duplicates(self) -> int:
        return sum(self.duplicates_by_provenance.values())

    def has_seen(self, source: Source) -> bool:
        identifier = source_identifier(source)
        return identifier is not None and identifier in self._seen

    def filter(self, sources: Iterable[Source]) -> tuple[list[Source], int]:
        """Return (unique sources in input order, duplicate count) and remember the new identifiers."""
        unique: list[Source] = []
        duplicates = 0
        for source in sources:
            self.total_processed += 1
            identifier = source_identifier(source)
            if identifier is None:
                self.unidentified_count += 1
                logger.debug(f"Source without identifier kept as unique: {source.title[:60]!r}")
                unique.append(source)
                continue
            if identifier in self._seen:
                duplicates += 1
                self.duplicates_by_provenance[source.provenance.value] += 1
                continue
            self._seen.add(identifier)
            unique.append(source)
        return unique, duplicates

    def filter_by_provenance(
        self, sources: dict[ProvenanceType, list[Source]]
    ) -> tuple[dict[ProvenanceType, list[Source]], int]:
        """Filter a provider-grouped batch, keeping the grouping and the provider order."""
        unique_by_provenance: dict[ProvenanceType, list[Source]] = {}
        total_duplicates = 0
        for provenance, batch in sources.items():
            unique, duplicates = self.filter(batch)
            unique_by_provenance[provenance] = unique
            total_duplicates += duplicates
        return unique_by_provenance, total_duplicates

    def stats(self) -> dict[str, int | dict[str, int]]:
        return {
            "processed": self.total_processed,
            "unique_identifiers": self.seen_count,
            "duplicates": self.total_duplicates,
            "duplicates_by_provenance": dict(self.duplicates_by_provenance),
            "unidentified": self.unidentified_count,
        }

    def log_summary(self) -> None:
        logger.info(f"Deduplication summary: {self.stats()}")

    def reset(self) -> None:
        self._seen.clear()
        self.duplicates_by_provenance.clear()
        self.unidentified_count = 0
        self.total_processed = 0
