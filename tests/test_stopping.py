from __future__ import annotations

import pytest

from research_engine.models.research import (
    EvidenceQuality,
    Reflection,
    RoundResult,
    StoppingThresholds,
)
from research_engine.services.stopping import (
    calculate_completeness_score,
    evaluate_stopping_conditions,
    should_do_reflection,
)


def _round(number: int, unique: int) -> RoundResult:
    return RoundResult(
        round_number=number,
        query="q",
        sources_by_provenance={},
        unique_source_count=unique,
    )


def _reflection(quality: str = "medium", gaps: list[str] | None = None, should_continue: bool = True) -> Reflection:
    return Reflection(
        evidence_quality=quality,
        gaps=gaps if gaps is not None else ["dosing", "long-term outcomes"],
        should_continue=should_continue,
    )


def test_high_quality_without_gaps_stops_early():
    rounds = [_round(1, 10), _round(2, 8)]

    decision = evaluate_stopping_conditions(2, 4, rounds[-1], rounds, _reflection("high", gaps=[]))

    assert decision.should_stop
    assert "High evidence quality with comprehensive coverage" in decision.reasons
    assert decision.reasons[0] == "High evidence quality with comprehensive coverage"


def test_nothing_triggers_while_research_is_productive():
    rounds = [_round(1, 10), _round(2, 8)]
    decision = evaluate_stopping_conditions(2, 4, rounds[-1], rounds, _reflection())
    assert not decision.should_stop
    assert decision.reasons == []


@pytest.mark.parametrize("round_number", [4, 5])
def test_max_rounds_always_stops(round_number):
    rounds = [_round(i, 10) for i in range(1, round_number + 1)]
    decision = evaluate_stopping_conditions(round_number, 4, rounds[-1], rounds, _reflection())
    assert decision.should_stop
    assert decision.reasons[0] == f"Maximum rounds reached ({round_number}/4)"


def test_empty_round_stops():
    rounds = [_round(1, 0)]
    decision = evaluate_stopping_conditions(1, 4, rounds[-1], rounds, _reflection())
    assert decision.reasons == ["No new sources found in this round"]


def test_reflection_can_end_research():
    rounds = [_round(1, 12)]
    decision = evaluate_stopping_conditions(1, 4, rounds[-1], rounds, _reflection(should_continue=False))
    assert decision.reasons == ["Reflection indicates research is sufficient"]


def test_comprehensive_count_uses_all_rounds():
    rounds = [_round(1, 20), _round(2, 10)]
    decision = evaluate_stopping_conditions(2, 4, rounds[-1], rounds, _reflection())
    assert decision.reasons == ["Comprehensive source count reached (30 sources)"]


def test_high_quality_with_one_gap():
    rounds = [_round(1, 12)]
    decision = evaluate_stopping_conditions(1, 4, rounds[-1], rounds, _reflection("high", gaps=["cost"]))
    assert decision.reasons == ["High evidence quality with minimal gaps"]


def test_diminishing_returns_over_last_two_rounds():
    rounds = [_round(1, 12), _round(2, 1), _round(3, 1)]
    decision = evaluate_stopping_conditions(3, 4, rounds[-1], rounds, _reflection())
    assert decision.reasons == ["Diminishing returns (2 new sources in last 2 rounds)"]


def test_custom_thresholds():
    rounds = [_round(1, 10)]
    thresholds = StoppingThresholds(comprehensive_source_threshold=10)
    decision = evaluate_stopping_conditions(1, 4, rounds[-1], rounds, _reflection(), thresholds)
    assert decision.reasons == ["Comprehensive source count reached (10 sources)"]


def test_should_do_reflection():
    assert should_do_reflection(1, 3)
    assert not should_do_reflection(3, 3)


class TestCompletenessScore:
    def test_full_marks(self):
        rounds = [_round(1, 20), _round(2, 15)]
        score = calculate_completeness_score(rounds, _reflection("high", gaps=[]))
        assert score == pytest.approx(1.0)

    def test_partial(self):
        rounds = [_round(1, 15)]
        score = calculate_completeness_score(rounds, _reflection("low", gaps=["a", "b", "c", "d", "e", "f"]))
        assert score == pytest.approx(0.25 + 0.3 * 0.35)

    def test_without_reflection(self):
        score = calculate_completeness_score([_round(1, 0)], None)
        assert score == pytest.approx(0.6 * 0.35 + 0.15)

    def test_quality_string_is_coerced(self):
        reflection = Reflection(evidence_quality="HIGH ", gaps=[], should_continue=False)
        assert reflection.evidence_quality == EvidenceQuality.HIGH
