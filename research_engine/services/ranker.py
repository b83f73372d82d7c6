"""Deterministic keyword relevance ranking across all provenance types.

Score = keyword (0-70) + credibility (5-15) + recency (0-15), capped at 100.
No embeddings or model calls; identical input always yields identical output.
"""
from __future__ import annotations

import re
import time
from datetime import date
from typing import Sequence

from loguru import logger

from research_engine.models.research import RankedSource, RankingResult, ScoreBreakdown
from research_engine.models.sources import NormalizedSource, ProvenanceType, Source, normalize_source

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "is", "are", "was", "were",
        "in", "on", "at", "to", "for", "of", "with",
        # Turkish
        "ve", "nedir", "ne", "nasıl", "için",
    }
)

NEUTRAL_KEYWORD_SCORE = 35
MAX_KEYWORD_SCORE = 70

CREDIBILITY_BOOST = {
    ProvenanceType.PUBMED: 15,
    ProvenanceType.CLINICAL_TRIALS: 15,
    ProvenanceType.MEDRXIV: 8,
    ProvenanceType.WEB: 5,
}

_PUNCTUATION_RE = re.compile(r"[^\w\s]")
_YEAR_RE = re.compile(r"\b(1[89]\d{2}|2\d{3})\b")


def extract_keywords(query: str) -> list[str]:
    cleaned = _PUNCTUATION_RE.sub(" ", (query or "").lower())
    return [word for word in cleaned.split() if len(word) > 2 and word not in STOP_WORDS]


def keyword_score(content: str, keywords: Sequence[str]) -> int:
    if not keywords:
        return NEUTRAL_KEYWORD_SCORE
    matches = sum(1 for keyword in keywords if keyword in content)
    return round(matches / len(keywords) * MAX_KEYWORD_SCORE)


def credibility_boost(provenance: ProvenanceType) -> int:
    return CREDIBILITY_BOOST.get(provenance, 0)


def publication_year(published: str | None) -> int | None:
    if not published:
        return None
    match = _YEAR_RE.search(str(published))
    return int(match.group(1)) if match else None


def recency_boost(published: str | None, today: date | None = None) -> int:
    year = publication_year(published)
    if year is None:
        return 0
    years_diff = (today or date.today()).year - year
    if years_diff <= 1:
        return 15
    if years_diff <= 3:
        return 10
    if years_diff <= 5:
        return 5
    return 0


def score_source(
    normalized: NormalizedSource,
    keywords: Sequence[str],
    today: date | None = None,
) -> ScoreBreakdown:
    content = f"{normalized.title} {normalized.abstract}".lower()
    return ScoreBreakdown(
        keyword=keyword_score(content, keywords),
        credibility=credibility_boost(normalized.provenance),
        recency=recency_boost(normalized.published, today),
    )


def rank_sources(
    query: str,
    sources: Sequence[Source],
    top_n: int = 30,
    today: date | None = None,
) -> RankingResult:
    """Score and order sources by relevance to the query.

    Args:
        query: The research question the sources were fetched for.
        sources: All unique sources in fetch order.
        top_n: How many of the best sources to expose as ``top_sources``.
        today: Reference date for the recency boost (defaults to the current date).

    Returns:
        RankingResult with every source ranked (descending score, fetch order on ties).
    """
    start = time.perf_counter()
    keywords = extract_keywords(query)

    ranked: list[RankedSource] = []
    for index, source in enumerate(sources):
        normalized = normalize_source(source)
        breakdown = score_source(normalized, keywords, today)
        score = min(100, breakdown.keyword + breakdown.credibility + breakdown.recency)
        ranked.append(
            RankedSource(
                source=source,
                normalized=normalized,
                relevance_score=score,
                breakdown=breakdown,
                provenance=normalized.provenance,
                fetch_index=index,
            )
        )

    # sorted() is stable, so ties keep fetch order
    ranked = sorted(ranked, key=lambda item: item.relevance_score, reverse=True)
    top_sources = ranked[: max(top_n, 0)]
    average = sum(item.relevance_score for item in ranked) / len(ranked) if ranked else 0.0
    duration_ms = int((time.perf_counter() - start) * 1000)

    logger.info(
        f"Ranked {len(ranked)} sources in {duration_ms}ms: "
        f"top scores {[item.relevance_score for item in top_sources[:5]]}, average {average:.1f}"
    )
    return RankingResult(
        ranked_sources=ranked,
        top_sources=top_sources,
        total_sources=len(ranked),
        average_relevance=average,
        duration_ms=duration_ms,
    )
