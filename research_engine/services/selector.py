"""Budgeted selection of ranked sources for the downstream synthesizer.

Pipeline: relevance floor -> base/extended limit -> near-duplicate collapse ->
greedy token budget. The result is always a valid SelectionResult; an empty pool
yields strategy "none" rather than an error.
"""
from __future__ import annotations

import math
import time
from typing import Sequence

from loguru import logger

from research_engine.models.research import (
    QualityMetrics,
    RankedSource,
    SelectedSource,
    SelectionOptions,
    SelectionResult,
    SessionResult,
)
from research_engine.models.sources import (
    ClinicalTrial,
    PeerReviewedArticle,
    Preprint,
    ProvenanceType,
    WebDocument,
)
from research_engine.services.ranker import publication_year

STRATEGY_NONE = "none"
STRATEGY_BASE = "base"
STRATEGY_EXTENDED = "extended-high-quality"
STRATEGY_TOKEN_CONSTRAINED = "token-constrained"

HIGH_QUALITY_METRIC_SCORE = 80
SUMMARY_PREVIEW_CHARS = 500

CREDIBILITY_BADGES = {
    ProvenanceType.PUBMED: "highly_credible",
    ProvenanceType.CLINICAL_TRIALS: "highly_credible",
    ProvenanceType.MEDRXIV: "credible",
    ProvenanceType.WEB: "credible",
}

# Synthesis block order and headings
SECTION_HEADINGS = [
    (ProvenanceType.PUBMED, "Peer-Reviewed Articles (PubMed)"),
    (ProvenanceType.CLINICAL_TRIALS, "Clinical Trials (ClinicalTrials.gov)"),
    (ProvenanceType.MEDRXIV, "Recent Medical Research (medRxiv preprints)"),
    (ProvenanceType.WEB, "Web Sources"),
]


def _year(published: str | None) -> str:
    year = publication_year(published)
    return str(year) if year else ""


def build_citation(ranked: RankedSource) -> str:
    source = ranked.source
    if isinstance(source, PeerReviewedArticle):
        author = source.authors[0] if source.authors else "Unknown"
        journal = source.journal or "PubMed"
        return f"{author} et al. ({_year(source.publish_date)}). {source.title}. {journal}."
    if isinstance(source, Preprint):
        authors = source.authors or "Unknown"
        return f"{authors} et al. ({_year(source.publish_date)}). {source.title}. {source.server} preprint."
    if isinstance(source, ClinicalTrial):
        return (
            f"{source.title}. ClinicalTrials.gov ID: {source.nct_id or 'N/A'}. "
            f"Started: {_year(source.start_date)}."
        )
    if isinstance(source, WebDocument):
        domain = source.domain or "Web"
        year = _year(source.published_date)
        published = f" Published: {year}." if year else ""
        return f"{source.title}. {domain}.{published}"
    raise TypeError(f"Unsupported source type: {type(source).__name__}")


def estimate_tokens(citation: str, summary: str) -> int:
    """Rough estimate at ~4 characters per token."""
    return math.ceil((len(citation) + len(summary)) / 4)


def to_selected_source(ranked: RankedSource) -> SelectedSource:
    citation = build_citation(ranked)
    summary = ranked.normalized.abstract
    return SelectedSource(
        ranked=ranked,
        citation=citation,
        summary=summary,
        credibility_badge=CREDIBILITY_BADGES.get(ranked.provenance, "credible"),
        estimated_tokens=estimate_tokens(citation, summary),
    )


def _comparison_words(ranked: RankedSource) -> set[str]:
    text = f"{ranked.normalized.title} {ranked.normalized.abstract}".lower()
    return {word for word in text.split() if len(word) > 3}


def jaccard_similarity(a: set[str], b: set[str]) -> float:
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def collapse_near_duplicates(
    candidates: Sequence[RankedSource],
    threshold: float,
) -> tuple[list[RankedSource], int]:
    """Drop any candidate whose word-set similarity to an already kept one is >= threshold.

    Candidates arrive in descending score order, so the kept one is always the higher scored.
    """
    kept: list[tuple[RankedSource, set[str]]] = []
    duplicates = 0
    for candidate in candidates:
        words = _comparison_words(candidate)
        similar = next(
            (
                existing
                for existing, existing_words in kept
                if jaccard_similarity(words, existing_words) >= threshold
            ),
            None,
        )
        if similar is not None:
            duplicates += 1
            logger.debug(
                f"Near-duplicate dropped: {candidate.normalized.title[:60]!r} "
                f"(kept {similar.normalized.title[:60]!r})"
            )
            continue
        kept.append((candidate, words))
    return [candidate for candidate, _ in kept], duplicates


def _quality_metrics(selected: Sequence[SelectedSource]) -> QualityMetrics:
    if not selected:
        return QualityMetrics()
    scores = [item.relevance_score for item in selected]
    return QualityMetrics(
        average_relevance=sum(scores) / len(scores),
        min_relevance=min(scores),
        max_relevance=max(scores),
        high_quality_count=sum(1 for score in scores if score > HIGH_QUALITY_METRIC_SCORE),
    )


def select_sources(
    ranked_sources: Sequence[RankedSource],
    options: SelectionOptions | None = None,
) -> SelectionResult:
    """Select the final source subset for synthesis.

    ``ranked_sources`` must already be in descending score order (as returned by
    ``rank_sources``).
    """
    options = options or SelectionOptions()
    start = time.perf_counter()
    total = len(ranked_sources)

    qualified = [item for item in ranked_sources if item.relevance_score >= options.min_relevance_score]
    if len(qualified) < total:
        logger.info(
            f"Filtered out {total - len(qualified)} sources below relevance floor "
            f"({options.min_relevance_score})"
        )
    if not qualified:
        logger.warning(f"No sources above relevance floor out of {total}")
        return SelectionResult(
            selected_sources=[],
            selected_count=0,
            deduplicated_count=0,
            total_token_estimate=0,
            selection_strategy=STRATEGY_NONE,
            total_sources=total,
        )

    limit = options.base_limit
    high_quality = sum(1 for item in qualified if item.relevance_score >= options.high_quality_threshold)
    extended = False
    if high_quality > options.base_limit:
        limit = max(options.base_limit, min(options.extended_limit, high_quality))
        extended = limit > options.base_limit
        logger.info(f"Extended selection limit to {limit} ({high_quality} high-quality sources)")

    candidates = list(qualified[:limit])

    deduplicated = 0
    if options.enable_semantic_dedup and len(candidates) > 1:
        candidates, deduplicated = collapse_near_duplicates(candidates, options.semantic_similarity_threshold)
        if deduplicated:
            logger.info(f"Removed {deduplicated} near-duplicate sources, {len(candidates)} remain")

    selected: list[SelectedSource] = []
    total_tokens = 0
    budget_cut = False
    for candidate in candidates:
        item = to_selected_source(candidate)
        if total_tokens + item.estimated_tokens > options.token_budget:
            logger.warning(
                f"Token budget reached: {total_tokens} + {item.estimated_tokens} > "
                f"{options.token_budget}, stopping at {len(selected)} sources"
            )
            budget_cut = True
            break
        selected.append(item)
        total_tokens += item.estimated_tokens

    if not selected:
        strategy = STRATEGY_NONE
    elif budget_cut:
        strategy = STRATEGY_TOKEN_CONSTRAINED
    elif extended:
        strategy = STRATEGY_EXTENDED
    else:
        strategy = STRATEGY_BASE

    metrics = _quality_metrics(selected)
    duration_ms = int((time.perf_counter() - start) * 1000)
    logger.info(
        f"Selected {len(selected)}/{total} sources in {duration_ms}ms "
        f"({total_tokens}/{options.token_budget} tokens, strategy={strategy}, "
        f"avg relevance={metrics.average_relevance:.1f})"
    )
    for index, item in enumerate(selected[:5], start=1):
        logger.debug(
            f"  {index}. [{item.relevance_score}] {item.provenance.value}: "
            f"{item.citation[:60]} ({item.estimated_tokens} tokens)"
        )

    return SelectionResult(
        selected_sources=selected,
        selected_count=len(selected),
        deduplicated_count=deduplicated,
        total_token_estimate=total_tokens,
        selection_strategy=strategy,
        total_sources=total,
        quality_metrics=metrics,
    )


def format_selected_sources_for_synthesis(selected_sources: Sequence[SelectedSource]) -> str:
    """Render the selection as a numbered context block grouped by provenance."""
    lines = [f"# SELECTED RESEARCH SOURCES ({len(selected_sources)} sources)", ""]
    number = 0
    for provenance, heading in SECTION_HEADINGS:
        group = [item for item in selected_sources if item.provenance == provenance]
        if not group:
            continue
        lines.append(f"## {heading} - {len(group)} sources")
        lines.append("")
        for item in group:
            number += 1
            summary = item.summary[:SUMMARY_PREVIEW_CHARS]
            if len(item.summary) > SUMMARY_PREVIEW_CHARS:
                summary += "..."
            lines.append(f"### [{number}] {item.citation}")
            lines.append(f"**Relevance:** {item.relevance_score}/100 | **Credibility:** {item.credibility_badge}")
            lines.append("")
            if summary:
                lines.append(summary)
                lines.append("")
    return "\n".join(lines).rstrip() + "\n"


def format_session_for_synthesis(result: SessionResult) -> str:
    """Context block for a finished session: research summary followed by the selected sources."""
    summary = result.summary()
    header = [
        "# RESEARCH SUMMARY",
        "",
        f"Question: {result.query}",
        f"Rounds completed: {summary['rounds']} (planned {summary['estimated_rounds']})",
        f"Unique sources: {summary['total_unique_sources']} "
        f"(duplicates filtered: {summary['duplicates_filtered']})",
        f"Completeness: {summary['completeness_score']:.2f}",
    ]
    if result.plan.focus_areas:
        header.append(f"Focus areas: {', '.join(result.plan.focus_areas)}")
    if result.stop_reasons:
        header.append(f"Stopped because: {'; '.join(result.stop_reasons)}")
    return "\n".join(header) + "\n\n" + format_selected_sources_for_synthesis(result.selection.selected_sources)
