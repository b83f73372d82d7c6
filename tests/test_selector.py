from __future__ import annotations

import pytest

from research_engine.models.research import (
    RankedSource,
    ScoreBreakdown,
    SelectionOptions,
)
from research_engine.models.sources import (
    ClinicalTrial,
    PeerReviewedArticle,
    Preprint,
    WebDocument,
    normalize_source,
)
from research_engine.services import selector


def _ranked(source, score: int, index: int = 0) -> RankedSource:
    normalized = normalize_source(source)
    return RankedSource(
        source=source,
        normalized=normalized,
        relevance_score=score,
        breakdown=ScoreBreakdown(keyword=score, credibility=0, recency=0),
        provenance=normalized.provenance,
        fetch_index=index,
    )


def _distinct_articles(scores: list[int]) -> list[RankedSource]:
    return [
        _ranked(
            PeerReviewedArticle(
                title=f"Study{i} alpha{i} bravo{i} charlie{i}",
                abstract=f"delta{i} echo{i} foxtrot{i}",
                pmid=str(i),
            ),
            score,
            i,
        )
        for i, score in enumerate(scores)
    ]


class TestCitations:
    def test_article(self):
        article = PeerReviewedArticle(
            title="Metformin outcomes",
            authors=["Smith J", "Doe A"],
            journal="Diabetes Care",
            publish_date="2023-04-01",
        )
        assert selector.build_citation(_ranked(article, 80)) == (
            "Smith J et al. (2023). Metformin outcomes. Diabetes Care."
        )

    def test_preprint(self):
        preprint = Preprint(title="New sensor", authors="Kaya, B.", publish_date="2024-01-02")
        assert selector.build_citation(_ranked(preprint, 80)) == (
            "Kaya, B. et al. (2024). New sensor. medrxiv preprint."
        )

    def test_trial(self):
        trial = ClinicalTrial(title="Closed loop trial", nct_id="NCT01234567", start_date="2021-09")
        assert selector.build_citation(_ranked(trial, 80)) == (
            "Closed loop trial. ClinicalTrials.gov ID: NCT01234567. Started: 2021."
        )

    def test_web_with_and_without_date(self):
        dated = WebDocument(title="Guide", url="https://www.diabetes.org/guide", published_date="2024-05-05")
        undated = WebDocument(title="Guide", url="https://www.diabetes.org/guide")
        assert selector.build_citation(_ranked(dated, 80)) == "Guide. diabetes.org. Published: 2024."
        assert selector.build_citation(_ranked(undated, 80)) == "Guide. diabetes.org."


class TestSelectSources:
    def test_empty_pool_returns_none_strategy(self):
        result = selector.select_sources([])
        assert result.selection_strategy == "none"
        assert result.selected_sources == []
        assert result.total_token_estimate == 0

    def test_everything_below_floor(self):
        result = selector.select_sources(_distinct_articles([39, 20, 10]))
        assert result.selection_strategy == "none"
        assert result.selected_count == 0
        assert result.total_sources == 3

    def test_floor_filters_weak_sources(self):
        result = selector.select_sources(_distinct_articles([90, 60, 40, 39]))
        assert result.selection_strategy == "base"
        assert [item.relevance_score for item in result.selected_sources] == [90, 60, 40]

    def test_base_limit_applies_without_enough_high_quality(self):
        ranked = _distinct_articles([65] * 40)
        result = selector.select_sources(ranked)
        assert result.selected_count == 25
        assert result.selection_strategy == "base"

    def test_extends_when_many_high_quality_sources(self):
        ranked = _distinct_articles([90] * 28 + [50] * 5)
        result = selector.select_sources(ranked)
        assert result.selected_count == 28
        assert result.selection_strategy == "extended-high-quality"

    def test_extension_is_capped(self):
        ranked = _distinct_articles([90] * 40)
        result = selector.select_sources(ranked)
        assert result.selected_count == 30

    def test_token_budget_is_never_exceeded(self):
        ranked = [
            _ranked(
                PeerReviewedArticle(title=f"Long study {i}", abstract=f"word{i} " * 800, pmid=str(i)),
                90 - i,
                i,
            )
            for i in range(6)
        ]
        options = SelectionOptions(token_budget=5000, enable_semantic_dedup=False)
        result = selector.select_sources(ranked, options)

        assert result.selection_strategy == "token-constrained"
        assert 0 < result.selected_count < 6
        assert result.total_token_estimate <= 5000
        assert result.total_token_estimate == sum(s.estimated_tokens for s in result.selected_sources)

    def test_first_source_over_budget_selects_nothing(self):
        ranked = _distinct_articles([90])
        result = selector.select_sources(ranked, SelectionOptions(token_budget=1))
        assert result.selection_strategy == "none"
        assert result.selected_count == 0

    def test_near_duplicates_keep_the_higher_scored(self):
        same_text = "Continuous glucose monitoring improves glycemic control in adults"
        ranked = [
            _ranked(PeerReviewedArticle(title=same_text, pmid="1"), 90, 0),
            _ranked(WebDocument(title=same_text, url="https://example.com/cgm"), 80, 1),
            _ranked(ClinicalTrial(title="Unrelated insulin pump registry", nct_id="NCT1"), 70, 2),
        ]
        result = selector.select_sources(ranked)

        assert result.deduplicated_count == 1
        assert [item.relevance_score for item in result.selected_sources] == [90, 70]

    def test_dedup_can_be_disabled(self):
        same_text = "Continuous glucose monitoring improves glycemic control"
        ranked = [
            _ranked(PeerReviewedArticle(title=same_text, pmid="1"), 90, 0),
            _ranked(PeerReviewedArticle(title=same_text, pmid="2"), 80, 1),
        ]
        result = selector.select_sources(ranked, SelectionOptions(enable_semantic_dedup=False))
        assert result.selected_count == 2
        assert result.deduplicated_count == 0

    def test_quality_metrics(self):
        result = selector.select_sources(_distinct_articles([95, 81, 80, 50]))
        metrics = result.quality_metrics
        assert metrics.max_relevance == 95
        assert metrics.min_relevance == 50
        assert metrics.high_quality_count == 2
        assert metrics.average_relevance == pytest.approx(76.5)


def test_jaccard_similarity():
    assert selector.jaccard_similarity(set(), set()) == 0.0
    assert selector.jaccard_similarity({"a", "b"}, {"a", "b"}) == 1.0
    assert selector.jaccard_similarity({"a", "b"}, {"b", "c"}) == pytest.approx(1 / 3)


def test_format_groups_by_provenance_with_running_numbers():
    ranked = [
        _ranked(WebDocument(title="Web guide", text="w" * 600, url="https://example.com/a"), 90, 0),
        _ranked(PeerReviewedArticle(title="Journal article", abstract="Short abstract", pmid="1"), 85, 1),
        _ranked(ClinicalTrial(title="Registry entry", nct_id="NCT9"), 80, 2),
    ]
    selected = [selector.to_selected_source(item) for item in ranked]

    text = selector.format_selected_sources_for_synthesis(selected)

    assert text.startswith("# SELECTED RESEARCH SOURCES (3 sources)")
    pubmed_at = text.index("## Peer-Reviewed Articles (PubMed) - 1 sources")
    trials_at = text.index("## Clinical Trials (ClinicalTrials.gov) - 1 sources")
    web_at = text.index("## Web Sources - 1 sources")
    assert pubmed_at < trials_at < web_at
    assert "### [1] Unknown et al. (). Journal article. PubMed." in text
    assert "### [3] Web guide. example.com." in text
    assert "**Relevance:** 85/100 | **Credibility:** highly_credible" in text
    assert "w" * 500 + "..." in text
    assert "w" * 501 not in text
