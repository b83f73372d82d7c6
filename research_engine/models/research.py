from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from research_engine.config import settings
from research_engine.models.sources import NormalizedSource, ProvenanceType, Source

MIN_ROUNDS = 1
MAX_ROUNDS = 4
MAX_FOCUS_AREAS = 5


class EvidenceQuality(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SessionPhase(StrEnum):
    PLANNING = "planning"
    ROUND_FETCH = "round_fetch"
    ROUND_DEDUP = "round_dedup"
    REFLECT = "reflect"
    DECISION = "decision"
    REFINE = "refine"
    RANKING = "ranking"
    SELECTION = "selection"
    TERMINAL = "terminal"


class ResearchPlan(BaseModel):
    """Strategy produced once per session."""
    estimated_rounds: int = 2
    strategy: str = ""
    focus_areas: list[str] = []

    @field_validator("estimated_rounds", mode="before")
    @classmethod
    def _clamp_rounds(cls, value: Any) -> int:
        try:
            rounds = int(value)
        except (TypeError, ValueError):
            return 2
        return max(MIN_ROUNDS, min(rounds, MAX_ROUNDS))

    @field_validator("focus_areas", mode="before")
    @classmethod
    def _limit_focus_areas(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        areas = [" ".join(str(item).split()) for item in value if str(item).strip()]
        return areas[:MAX_FOCUS_AREAS]


class Reflection(BaseModel):
    """Strategist judgment on evidence quality after a round."""
    evidence_quality: EvidenceQuality = EvidenceQuality.MEDIUM
    gaps: list[str] = []
    should_continue: bool = True
    reasoning: str = ""

    @field_validator("evidence_quality", mode="before")
    @classmethod
    def _coerce_quality(cls, value: Any) -> EvidenceQuality:
        try:
            return EvidenceQuality(str(value).strip().lower())
        except ValueError:
            return EvidenceQuality.MEDIUM

    @field_validator("gaps", mode="before")
    @classmethod
    def _coerce_gaps(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [str(item).strip() for item in value if isinstance(item, str) and item.strip()]


@dataclass(frozen=True, slots=True)
class StoppingThresholds:
    comprehensive_source_threshold: int = 30
    diminishing_returns_threshold: int = 3


@dataclass(frozen=True, slots=True)
class StoppingDecision:
    should_stop: bool
    reasons: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class SelectionOptions:
    base_limit: int = 25
    extended_limit: int = 30
    high_quality_threshold: int = 70
    token_budget: int = 16800
    min_relevance_score: int = 40
    semantic_similarity_threshold: float = 0.85
    enable_semantic_dedup: bool = True


class SessionConfig(BaseModel):
    """Per-session knobs; defaults come from settings."""
    max_rounds_ceiling: int = Field(default_factory=lambda: settings.max_rounds_ceiling)
    first_round_source_target: int = Field(default_factory=lambda: settings.first_round_source_target)
    follow_up_round_source_target: int = Field(
        default_factory=lambda: settings.follow_up_round_source_target
    )
    web_source_share: float = Field(default_factory=lambda: settings.web_source_share)
    comprehensive_coverage_floor: int = Field(
        default_factory=lambda: settings.comprehensive_coverage_floor
    )
    absolute_source_floor: int = Field(default_factory=lambda: settings.absolute_source_floor)
    comprehensive_source_threshold: int = Field(
        default_factory=lambda: settings.comprehensive_source_threshold
    )
    diminishing_returns_threshold: int = Field(
        default_factory=lambda: settings.diminishing_returns_threshold
    )
    ranking_top_n: int = Field(default_factory=lambda: settings.ranking_top_n)
    base_limit: int = Field(default_factory=lambda: settings.selection_base_limit)
    extended_limit: int = Field(default_factory=lambda: settings.selection_extended_limit)
    high_quality_threshold: int = Field(
        default_factory=lambda: settings.selection_high_quality_threshold
    )
    token_budget: int = Field(default_factory=lambda: settings.selection_token_budget)
    min_relevance_score: int = Field(default_factory=lambda: settings.selection_min_relevance_score)
    semantic_similarity_threshold: float = Field(
        default_factory=lambda: settings.selection_similarity_threshold
    )
    enable_semantic_dedup: bool = Field(default_factory=lambda: settings.selection_semantic_dedup)

    @field_validator("max_rounds_ceiling")
    @classmethod
    def _cap_ceiling(cls, value: int) -> int:
        return max(MIN_ROUNDS, min(value, MAX_ROUNDS))

    def stopping_thresholds(self) -> StoppingThresholds:
        return StoppingThresholds(
            comprehensive_source_threshold=self.comprehensive_source_threshold,
            diminishing_returns_threshold=self.diminishing_returns_threshold,
        )

    def selection_options(self) -> SelectionOptions:
        return SelectionOptions(
            base_limit=self.base_limit,
            extended_limit=self.extended_limit,
            high_quality_threshold=self.high_quality_threshold,
            token_budget=self.token_budget,
            min_relevance_score=self.min_relevance_score,
            semantic_similarity_threshold=self.semantic_similarity_threshold,
            enable_semantic_dedup=self.enable_semantic_dedup,
        )


@dataclass(frozen=True, slots=True)
class RoundResult:
    round_number: int
    query: str
    sources_by_provenance: dict[ProvenanceType, list[Source]]
    unique_source_count: int
    duplicates_filtered: int = 0
    duration_ms: int = 0
    provider_errors: dict[str, str] = field(default_factory=dict)
    provider_timings: dict[str, int] = field(default_factory=dict)
    reflection: Reflection | None = None

    def all_sources(self) -> list[Source]:
        return [source for sources in self.sources_by_provenance.values() for source in sources]

    def counts_by_provenance(self) -> dict[str, int]:
        return {p.value: len(s) for p, s in self.sources_by_provenance.items()}


@dataclass(frozen=True, slots=True)
class ScoreBreakdown:
    keyword: int
    credibility: int
    recency: int

    def describe(self) -> str:
        return f"Keywords: {self.keyword}, Credibility: {self.credibility}, Recency: {self.recency}"


@dataclass(frozen=True, slots=True)
class RankedSource:
    source: Source
    normalized: NormalizedSource
    relevance_score: int
    breakdown: ScoreBreakdown
    provenance: ProvenanceType
    fetch_index: int = 0


@dataclass(slots=True)
class RankingResult:
    ranked_sources: list[RankedSource]
    top_sources: list[RankedSource]
    total_sources: int
    average_relevance: float
    duration_ms: int = 0


@dataclass(frozen=True, slots=True)
class SelectedSource:
    ranked: RankedSource
    citation: str
    summary: str
    credibility_badge: str
    estimated_tokens: int

    @property
    def relevance_score(self) -> int:
        return self.ranked.relevance_score

    @property
    def provenance(self) -> ProvenanceType:
        return self.ranked.provenance


@dataclass(frozen=True, slots=True)
class QualityMetrics:
    average_relevance: float = 0.0
    min_relevance: int = 0
    max_relevance: int = 0
    high_quality_count: int = 0


@dataclass(slots=True)
class SelectionResult:
    selected_sources: list[SelectedSource]
    selected_count: int
    deduplicated_count: int
    total_token_estimate: int
    selection_strategy: str
    total_sources: int = 0
    quality_metrics: QualityMetrics = field(default_factory=QualityMetrics)


@dataclass(slots=True)
class SessionResult:
    session_id: str
    query: str
    plan: ResearchPlan
    rounds: list[RoundResult]
    total_unique_sources: int
    total_duplicates_filtered: int
    total_duration_ms: int
    ranking: RankingResult
    selection: SelectionResult
    stop_reasons: list[str] = field(default_factory=list)
    completeness_score: float = 0.0

    @property
    def ranked_sources(self) -> list[RankedSource]:
        return self.ranking.ranked_sources

    def summary(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "rounds": len(self.rounds),
            "estimated_rounds": self.plan.estimated_rounds,
            "total_unique_sources": self.total_unique_sources,
            "duplicates_filtered": self.total_duplicates_filtered,
            "selected": self.selection.selected_count,
            "selection_strategy": self.selection.selection_strategy,
            "total_tokens": self.selection.total_token_estimate,
            "average_relevance": round(self.ranking.average_relevance, 1),
            "completeness_score": round(self.completeness_score, 2),
            "stop_reasons": list(self.stop_reasons),
            "duration_ms": self.total_duration_ms,
        }
