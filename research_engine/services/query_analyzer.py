"""Keyword-based query categorisation and per-provider round budget allocation."""
from __future__ import annotations

import re
from dataclasses import dataclass

from loguru import logger

from research_engine.models.sources import ProvenanceType


@dataclass(frozen=True, slots=True)
class QueryAnalysis:
    category: str
    pubmed_ratio: float
    medrxiv_ratio: float
    clinical_trials_ratio: float
    confidence: float


# Checked in order; first match wins.
_CATEGORY_PATTERNS: list[tuple[re.Pattern[str], QueryAnalysis]] = [
    (
        re.compile(r"yan etki|etkileş|güvenli mi|side effect|interaction|contraindic|doz", re.IGNORECASE),
        QueryAnalysis("drug_safety", 0.7, 0.1, 0.2, 0.6),
    ),
    (
        re.compile(r"latest|yeni|güncel|202[4-6]|breakthrough|recent|clinical trial", re.IGNORECASE),
        QueryAnalysis("new_research", 0.5, 0.3, 0.2, 0.6),
    ),
    (
        re.compile(r"beslenme|nutrition|diet|food|yemek|tarif|recipe|carb|protein", re.IGNORECASE),
        QueryAnalysis("nutrition", 0.8, 0.15, 0.05, 0.6),
    ),
    (
        re.compile(r"tedavi|treatment|therapy|guideline|protocol|hedef|target", re.IGNORECASE),
        QueryAnalysis("treatment", 0.65, 0.1, 0.25, 0.6),
    ),
]

GENERAL_ANALYSIS = QueryAnalysis("general", 0.55, 0.2, 0.25, 0.5)


def analyze_query(query: str) -> QueryAnalysis:
    """Categorise a query and return the literature provider distribution for it."""
    for pattern, analysis in _CATEGORY_PATTERNS:
        if pattern.search(query or ""):
            logger.debug(f"Query categorised as {analysis.category}: {query[:60]!r}")
            return analysis
    logger.debug(f"Query categorised as general: {(query or '')[:60]!r}")
    return GENERAL_ANALYSIS


def calculate_source_counts(
    analysis: QueryAnalysis,
    target: int,
    web_share: float = 0.4,
) -> dict[ProvenanceType, int]:
    """Split a round target across providers so the counts sum exactly to target.

    The web share is taken first; the rest is split by the analysis ratios and the
    rounding difference is absorbed by clinical trials.
    """
    target = max(int(target), 0)
    web_share = min(max(web_share, 0.0), 1.0)
    web_count = round(target * web_share)
    literature = target - web_count

    pubmed_count = round(analysis.pubmed_ratio * literature)
    medrxiv_count = round(analysis.medrxiv_ratio * literature)
    trials_count = round(analysis.clinical_trials_ratio * literature)
    trials_count += literature - (pubmed_count + medrxiv_count + trials_count)

    # Ratios that overshoot can push trials negative; take the excess back from the largest.
    if trials_count < 0:
        if pubmed_count >= medrxiv_count:
            pubmed_count += trials_count
        else:
            medrxiv_count += trials_count
        trials_count = 0

    counts = {
        ProvenanceType.PUBMED: max(0, pubmed_count),
        ProvenanceType.MEDRXIV: max(0, medrxiv_count),
        ProvenanceType.CLINICAL_TRIALS: max(0, trials_count),
        ProvenanceType.WEB: web_count,
    }
    logger.debug(
        "Source distribution: "
        + ", ".join(f"{provenance.value}={count}" for provenance, count in counts.items())
    )
    return counts
