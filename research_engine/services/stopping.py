from __future__ import annotations

from typing import Sequence

from research_engine.models.research import (
    EvidenceQuality,
    Reflection,
    RoundResult,
    StoppingDecision,
    StoppingThresholds,
)

QUALITY_WEIGHTS = {
    EvidenceQuality.LOW: 0.3,
    EvidenceQuality.MEDIUM: 0.6,
    EvidenceQuality.HIGH: 1.0,
}


def cumulative_sources(rounds: Sequence[RoundResult]) -> int:
    return sum(r.unique_source_count for r in rounds)


def evaluate_stopping_conditions(
    round_number: int,
    max_rounds: int,
    current_round: RoundResult,
    all_rounds: Sequence[RoundResult],
    reflection: Reflection,
    thresholds: StoppingThresholds | None = None,
) -> StoppingDecision:
    """Decide whether research should stop after this round.

    ``all_rounds`` includes ``current_round``. Every triggered condition is
    reported, in a fixed order, so the decision can be audited.
    """
    thresholds = thresholds or StoppingThresholds()
    reasons: list[str] = []
    total = cumulative_sources(all_rounds)
    high_quality = reflection.evidence_quality == EvidenceQuality.HIGH

    if round_number >= max_rounds:
        reasons.append(f"Maximum rounds reached ({round_number}/{max_rounds})")
    if high_quality and not reflection.gaps:
        reasons.append("High evidence quality with comprehensive coverage")
    if current_round.unique_source_count == 0:
        reasons.append("No new sources found in this round")
    if not reflection.should_continue:
        reasons.append("Reflection indicates research is sufficient")
    if total >= thresholds.comprehensive_source_threshold:
        reasons.append(f"Comprehensive source count reached ({total} sources)")
    if high_quality and len(reflection.gaps) <= 1:
        reasons.append("High evidence quality with minimal gaps")
    if len(all_rounds) >= 2:
        recent = all_rounds[-1].unique_source_count + all_rounds[-2].unique_source_count
        if recent < thresholds.diminishing_returns_threshold:
            reasons.append(f"Diminishing returns ({recent} new sources in last 2 rounds)")

    return StoppingDecision(should_stop=bool(reasons), reasons=reasons)


def should_do_reflection(round_number: int, max_rounds: int) -> bool:
    """The final round is never reflected on."""
    return round_number < max_rounds


def calculate_completeness_score(
    rounds: Sequence[RoundResult],
    reflection: Reflection | None,
    comprehensive_threshold: int = 30,
) -> float:
    """Blend of source coverage (50%), evidence quality (35%) and open gaps (15%), in [0, 1]."""
    total = cumulative_sources(rounds)
    coverage = min(total / max(comprehensive_threshold, 1), 1.0)
    if reflection is None:
        quality = QUALITY_WEIGHTS[EvidenceQuality.MEDIUM]
        gaps = 1.0
    else:
        quality = QUALITY_WEIGHTS[reflection.evidence_quality]
        gaps = 1 - min(len(reflection.gaps), 5) / 5
    return coverage * 0.5 + quality * 0.35 + gaps * 0.15
