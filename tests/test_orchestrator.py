from __future__ import annotations

import pytest

from research_engine.agents.orchestrator import (
    ResearchOrchestrator,
    apply_safety_overrides,
    run_research_session,
)
from research_engine.models.errors import StrategistParseError
from research_engine.models.events import EventType
from research_engine.models.research import (
    EvidenceQuality,
    ResearchPlan,
    Reflection,
    SessionConfig,
    SessionPhase,
    StoppingDecision,
)
from research_engine.models.sources import PeerReviewedArticle, ProvenanceType, WebDocument
from research_engine.services.progress import ProgressChannel
from research_engine.tools.pubmed_search import PubMedClient

QUERY = "metformin kidney outcomes"


def _articles(start: int, count: int, doi_offset: int | None = None) -> list[PeerReviewedArticle]:
    first_doi = start if doi_offset is None else doi_offset
    return [
        PeerReviewedArticle(
            title=f"Metformin kidney study {start + i}",
            abstract="Cohort outcomes",
            publish_date="2024",
            pmid=str(start + i),
            doi=f"10.1000/art.{first_doi + i}",
        )
        for i in range(count)
    ]


class BatchProvider:
    """Returns the next prepared batch on every call; empty once exhausted."""

    def __init__(self, batches, provenance: ProvenanceType = ProvenanceType.PUBMED):
        self.name = provenance.value
        self.provenance = provenance
        self.timeout_s = 1.0
        self.batches = list(batches)
        self.queries: list[str] = []

    async def search(self, query: str, count: int, timeout: float):
        self.queries.append(query)
        if not self.batches:
            return []
        return self.batches.pop(0)


class FakeStrategist:
    def __init__(self, plan=None, reflections=(), refined="refined query", error=None):
        self._plan = plan or ResearchPlan(estimated_rounds=2, strategy="test", focus_areas=["outcomes"])
        self.reflections = list(reflections)
        self.refined = refined
        self.error = error
        self.reflect_calls: list[int] = []
        self.refine_calls: list[tuple[str, list[str], int]] = []

    async def plan(self, query):
        if self.error:
            raise self.error
        return self._plan

    async def reflect(self, question, current_round, prior_rounds, max_rounds):
        self.reflect_calls.append(current_round.round_number)
        if self.error:
            raise self.error
        return self.reflections.pop(0)

    async def refine_query(self, original, gaps, next_round):
        self.refine_calls.append((original, list(gaps), next_round))
        if self.error:
            raise self.error
        return self.refined


def _stop_reflection() -> Reflection:
    return Reflection(evidence_quality=EvidenceQuality.HIGH, gaps=[], should_continue=False)


@pytest.mark.asyncio
async def test_round_one_below_coverage_floor_is_forced_to_continue():
    provider = BatchProvider([_articles(0, 5), _articles(100, 5), []])
    strategist = FakeStrategist(
        plan=ResearchPlan(estimated_rounds=4),
        reflections=[_stop_reflection(), _stop_reflection(), _stop_reflection()],
    )
    channel = ProgressChannel()
    subscription = channel.subscribe()
    orchestrator = ResearchOrchestrator(strategist=strategist, providers=[provider], progress=channel)

    result = await orchestrator.run_research_session(QUERY)

    decisions = [e.data for e in subscription.drain() if e.event == EventType.DECISION_MADE]
    assert [d["should_stop"] for d in decisions] == [False, False, True]
    assert decisions[0]["overrides"][0].startswith("Forced continue: round 1 with 5 sources")
    assert decisions[1]["overrides"][0].startswith("Forced continue: 10 sources below floor 15")
    assert decisions[2]["overrides"] == ["Hard stop: no new sources this round"]
    assert len(result.rounds) == 3
    assert "No new sources found in this round" in result.stop_reasons
    assert orchestrator.phase == SessionPhase.TERMINAL


@pytest.mark.asyncio
async def test_two_rounds_with_shared_dois_end_to_end():
    round_two = _articles(200, 5, doi_offset=0) + _articles(300, 10)
    provider = BatchProvider([_articles(0, 20), round_two])
    strategist = FakeStrategist(
        reflections=[
            Reflection(evidence_quality="medium", gaps=["long-term data"], should_continue=True),
        ],
        refined="metformin kidney long-term outcomes",
    )
    config = SessionConfig(first_round_source_target=40, follow_up_round_source_target=30)

    result = await run_research_session(
        QUERY, config, strategist=strategist, providers=[provider]
    )

    assert result.total_unique_sources == 30
    assert result.total_duplicates_filtered == 5
    assert [r.unique_source_count for r in result.rounds] == [20, 10]
    assert result.rounds[1].duplicates_filtered == 5
    assert strategist.reflect_calls == [1]
    assert strategist.refine_calls == [(QUERY, ["long-term data"], 2)]
    assert provider.queries == [QUERY, "metformin kidney long-term outcomes"]
    assert result.rounds[1].reflection is None
    assert result.stop_reasons == ["Maximum rounds reached (2/2)"]
    assert result.selection.selected_count > 0
    assert result.summary()["total_unique_sources"] == 30


@pytest.mark.asyncio
async def test_strategist_failures_fall_back_to_defaults():
    provider = BatchProvider([_articles(0, 5), _articles(10, 5)])
    strategist = FakeStrategist(error=StrategistParseError("reflect", "not json"))
    orchestrator = ResearchOrchestrator(strategist=strategist, providers=[provider])

    result = await orchestrator.run_research_session(QUERY)

    assert result.plan.estimated_rounds == 2
    assert len(result.rounds) == 2
    reflection = result.rounds[0].reflection
    assert reflection.evidence_quality == EvidenceQuality.MEDIUM
    assert reflection.should_continue is True
    assert strategist.refine_calls == []


@pytest.mark.asyncio
async def test_unexpected_strategist_errors_do_not_abort_the_session():
    provider = BatchProvider([_articles(0, 5), _articles(10, 5)])
    strategist = FakeStrategist(error=RuntimeError("connection reset"))

    result = await run_research_session(QUERY, strategist=strategist, providers=[provider])

    assert len(result.rounds) == 2
    assert result.total_unique_sources == 10


@pytest.mark.asyncio
async def test_empty_first_round_stops_immediately():
    provider = BatchProvider([])
    strategist = FakeStrategist(
        plan=ResearchPlan(estimated_rounds=3),
        reflections=[Reflection(evidence_quality="low", gaps=["everything"], should_continue=True)],
    )

    result = await run_research_session(QUERY, strategist=strategist, providers=[provider])

    assert len(result.rounds) == 1
    assert result.stop_reasons == ["No new sources found in this round"]
    assert result.selection.selection_strategy == "none"
    assert strategist.refine_calls == []


@pytest.mark.asyncio
async def test_round_ceiling_caps_the_plan_and_skips_reflection():
    provider = BatchProvider([_articles(0, 8)])
    strategist = FakeStrategist(plan=ResearchPlan(estimated_rounds=4))

    result = await run_research_session(
        QUERY, SessionConfig(max_rounds_ceiling=1), strategist=strategist, providers=[provider]
    )

    assert len(result.rounds) == 1
    assert strategist.reflect_calls == []
    assert result.stop_reasons == ["Maximum rounds reached (1/1)"]
    assert result.summary()["estimated_rounds"] == 4


@pytest.mark.asyncio
async def test_progress_event_order():
    provider = BatchProvider([_articles(0, 20), _articles(50, 5)])
    strategist = FakeStrategist(reflections=[Reflection(evidence_quality="medium", gaps=[])])
    channel = ProgressChannel()
    subscription = channel.subscribe()

    await run_research_session(QUERY, strategist=strategist, providers=[provider], progress=channel)

    events = [e.event for e in subscription.drain()]
    assert events[0] == EventType.PLANNING_STARTED
    assert events[1] == EventType.PLANNING_COMPLETE
    assert events[-3:] == [
        EventType.SOURCE_SELECTION_STARTED,
        EventType.SELECTION_COMPLETE,
        EventType.SESSION_COMPLETE,
    ]
    assert events.count(EventType.ROUND_STARTED) == 2
    assert events.count(EventType.REFLECTION_COMPLETE) == 1
    assert events.count(EventType.SOURCE_FOUND) == 6
    assert events.index(EventType.API_STARTED) > events.index(EventType.ROUND_STARTED)


def test_web_share_only_applies_with_a_web_provider():
    strategist = FakeStrategist()
    pubmed_only = ResearchOrchestrator(strategist=strategist, providers=[BatchProvider([])])
    with_web = ResearchOrchestrator(
        strategist=strategist,
        providers=[BatchProvider([]), BatchProvider([], ProvenanceType.WEB)],
    )
    config = SessionConfig(first_round_source_target=25, web_source_share=0.4)

    assert pubmed_only._round_counts(QUERY, 1, config)[ProvenanceType.WEB] == 0
    assert with_web._round_counts(QUERY, 1, config)[ProvenanceType.WEB] == 10


@pytest.mark.asyncio
async def test_web_results_with_malformed_ports_do_not_abort_the_session():
    pubmed = BatchProvider([_articles(0, 5)])
    web = BatchProvider(
        [[
            WebDocument(title="Bad port", url="https://example.com:abc/p"),
            WebDocument(title="Huge port", url="http://example.com:99999999/a"),
        ]],
        ProvenanceType.WEB,
    )

    result = await run_research_session(
        QUERY,
        SessionConfig(max_rounds_ceiling=1, first_round_source_target=40),
        strategist=FakeStrategist(),
        providers=[pubmed, web],
    )

    assert result.rounds[0].counts_by_provenance()["web"] == 2
    assert result.total_unique_sources == 7
    assert result.total_duplicates_filtered == 0


def test_default_fetcher_uses_each_provider_timeout():
    pubmed = PubMedClient(api_key="", timeout_s=8.0)
    orchestrator = ResearchOrchestrator(strategist=FakeStrategist(), providers=[pubmed])

    assert orchestrator.fetcher.timeout_for(pubmed) == 8.0


class TestSafetyOverrides:
    stop = StoppingDecision(should_stop=True, reasons=["Reflection indicates research is sufficient"])
    go = StoppingDecision(should_stop=False, reasons=[])

    def test_max_round_is_a_hard_stop(self):
        decision = apply_safety_overrides(3, 3, 10, 5, self.go)
        assert decision.should_stop
        assert decision.overrides == ["Hard stop: round 3/3"]

    def test_empty_round_is_a_hard_stop(self):
        decision = apply_safety_overrides(1, 3, 0, 0, self.go)
        assert decision.should_stop

    def test_round_one_coverage_floor(self):
        decision = apply_safety_overrides(1, 3, 19, 19, self.stop)
        assert not decision.should_stop
        assert decision.reasons == self.stop.reasons

    def test_absolute_floor_after_round_one(self):
        assert not apply_safety_overrides(2, 3, 2, 14, self.stop).should_stop
        assert apply_safety_overrides(2, 3, 2, 15, self.stop).should_stop

    def test_base_decision_passes_through(self):
        assert apply_safety_overrides(1, 3, 25, 25, self.stop).should_stop
        decision = apply_safety_overrides(2, 3, 10, 30, self.go)
        assert not decision.should_stop
        assert decision.overrides == []
