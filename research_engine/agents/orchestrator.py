from __future__ import annotations

import time
from dataclasses import dataclass, replace
from typing import Sequence
from uuid import uuid4

from loguru import logger

from research_engine.agents.strategist import (
    LLMStrategist,
    Strategist,
    default_plan,
    fallback_reflection,
)
from research_engine.models.errors import StrategistParseError
from research_engine.models.events import ProgressEvent
from research_engine.models.research import (
    MAX_ROUNDS,
    ResearchPlan,
    Reflection,
    RoundResult,
    SessionConfig,
    SessionPhase,
    SessionResult,
    StoppingDecision,
)
from research_engine.models.sources import ProvenanceType, Source
from research_engine.services import streaming
from research_engine.services.deduplicator import SourceDeduplicator
from research_engine.services.logger import log_event, log_research_step
from research_engine.services.parallel_fetcher import ParallelFetcher
from research_engine.services.progress import ProgressChannel, publish
from research_engine.services.query_analyzer import analyze_query, calculate_source_counts
from research_engine.services.ranker import rank_sources
from research_engine.services.selector import select_sources
from research_engine.services.stopping import (
    calculate_completeness_score,
    cumulative_sources,
    evaluate_stopping_conditions,
    should_do_reflection,
)
from research_engine.tools.search_provider import ProviderClient, build_default_providers

SOURCE_FOUND_LIMIT = 3


@dataclass(frozen=True, slots=True)
class RoundDecision:
    should_stop: bool
    reasons: list[str]
    overrides: list[str]


def apply_safety_overrides(
    round_number: int,
    max_rounds: int,
    round_unique: int,
    cumulative: int,
    base: StoppingDecision,
    coverage_floor: int = 20,
    absolute_floor: int = 15,
) -> RoundDecision:
    """Apply the ordered safety rules on top of the evaluator verdict; first matching rule wins.

    Only the two hard stops can end a round early, and both are also evaluator
    triggers, so an override never introduces a stop the evaluator did not request.
    """
    rounds_remain = round_number < max_rounds
    if round_number >= max_rounds:
        return RoundDecision(True, base.reasons, [f"Hard stop: round {round_number}/{max_rounds}"])
    if round_unique == 0:
        return RoundDecision(True, base.reasons, ["Hard stop: no new sources this round"])
    if round_number == 1 and cumulative < coverage_floor and rounds_remain:
        overrides = [f"Forced continue: round 1 with {cumulative} sources (floor {coverage_floor})"]
        if base.should_stop:
            log_event("safety_override", overrides[0], round=round_number, reasons=base.reasons)
        return RoundDecision(False, base.reasons, overrides)
    if cumulative < absolute_floor and round_unique > 0 and rounds_remain:
        overrides = [f"Forced continue: {cumulative} sources below floor {absolute_floor}"]
        if base.should_stop:
            log_event("safety_override", overrides[0], round=round_number, reasons=base.reasons)
        return RoundDecision(False, base.reasons, overrides)
    return RoundDecision(base.should_stop, base.reasons, [])


class ResearchOrchestrator:
    """Runs one multi-round research session.

    Flow:
      1. Plan once via the strategist (round estimate clamped to the hard ceiling)
      2. Per round: fetch from all providers in parallel, deduplicate across rounds
      3. Reflect (except on the final round), evaluate stopping conditions, apply safety overrides
      4. Refine the query when gaps were identified and research continues
      5. Rank every unique source, then select a token-budgeted subset

    Progress events go to the optional channel; nothing depends on a subscriber.
    """

    def __init__(
        self,
        strategist: Strategist | None = None,
        providers: Sequence[ProviderClient] | None = None,
        progress: ProgressChannel | None = None,
        config: SessionConfig | None = None,
        fetcher: ParallelFetcher | None = None,
    ):
        self.strategist = strategist or LLMStrategist()
        self.progress = progress
        self.config = config or SessionConfig()
        if fetcher is None:
            fetcher = ParallelFetcher(
                providers if providers is not None else build_default_providers(),
                progress=progress,
            )
        self.fetcher = fetcher
        self.phase = SessionPhase.PLANNING
        self.session_id: str | None = None

    def _emit(self, event: ProgressEvent) -> None:
        publish(self.progress, event)

    def _step(self, step_type: str, status: str, data: dict | None = None) -> None:
        log_research_step(self.session_id or "", step_type, status, data)

    async def _plan(self, query: str) -> ResearchPlan:
        try:
            return await self.strategist.plan(query)
        except StrategistParseError as e:
            logger.warning(f"Plan unparseable, using default plan: {e}")
        except Exception as e:
            logger.exception(f"Planning failed, using default plan: {e}")
        return default_plan(query)

    async def _reflect(
        self,
        question: str,
        current_round: RoundResult,
        prior_rounds: Sequence[RoundResult],
        max_rounds: int,
    ) -> Reflection:
        try:
            return await self.strategist.reflect(question, current_round, prior_rounds, max_rounds)
        except StrategistParseError as e:
            logger.warning(f"Reflection unparseable, using fallback: {e}")
        except Exception as e:
            logger.exception(f"Reflection failed, using fallback: {e}")
        cumulative = cumulative_sources([*prior_rounds, current_round])
        return fallback_reflection(current_round.round_number, max_rounds, cumulative)

    async def _refine(self, original: str, gaps: Sequence[str], next_round: int) -> str:
        try:
            refined = await self.strategist.refine_query(original, list(gaps), next_round)
        except StrategistParseError as e:
            logger.warning(f"Refinement unparseable, keeping query: {e}")
            return original
        except Exception as e:
            logger.exception(f"Refinement failed, keeping query: {e}")
            return original
        refined = (refined or "").strip()
        return refined or original

    def _round_counts(self, query: str, round_number: int, config: SessionConfig) -> dict[ProvenanceType, int]:
        target = (
            config.first_round_source_target
            if round_number == 1
            else config.follow_up_round_source_target
        )
        web_share = config.web_source_share if ProvenanceType.WEB in self.fetcher.provenances else 0.0
        return calculate_source_counts(analyze_query(query), target, web_share)

    async def _run_round(
        self,
        round_number: int,
        query: str,
        deduplicator: SourceDeduplicator,
        config: SessionConfig,
    ) -> RoundResult:
        start = time.perf_counter()
        counts = self._round_counts(query, round_number, config)
        self._emit(streaming.round_started(round_number, query, sum(counts.values())))
        logger.info(f"Round {round_number}: fetching {sum(counts.values())} sources for {query[:80]!r}")

        self.phase = SessionPhase.ROUND_FETCH
        fetched = await self.fetcher.fetch_round(query, counts)

        self.phase = SessionPhase.ROUND_DEDUP
        unique_by_provenance, duplicates = deduplicator.filter_by_provenance(fetched.results_by_provider)
        for article in unique_by_provenance.get(ProvenanceType.PUBMED, [])[:SOURCE_FOUND_LIMIT]:
            self._emit(streaming.source_found(article.title, ProvenanceType.PUBMED.value))

        round_result = RoundResult(
            round_number=round_number,
            query=query,
            sources_by_provenance=unique_by_provenance,
            unique_source_count=sum(len(s) for s in unique_by_provenance.values()),
            duplicates_filtered=duplicates,
            duration_ms=int((time.perf_counter() - start) * 1000),
            provider_errors=dict(fetched.errors_by_provider),
            provider_timings=dict(fetched.timings_by_provider),
        )
        self._emit(streaming.round_complete(round_result))
        self._step(
            "round",
            "complete",
            {
                "round": round_number,
                "unique": round_result.unique_source_count,
                "duplicates": duplicates,
                "errors": list(round_result.provider_errors),
            },
        )
        logger.info(
            f"Round {round_number} complete: {round_result.unique_source_count} unique sources "
            f"({duplicates} duplicates) in {round_result.duration_ms}ms"
        )
        return round_result

    async def run_research_session(
        self,
        query: str,
        session_config: SessionConfig | None = None,
    ) -> SessionResult:
        """Run the full plan -> rounds -> rank -> select pipeline for one question."""
        config = session_config or self.config
        self.session_id = str(uuid4())
        start = time.perf_counter()
        logger.info(f"Starting research session {self.session_id}: {query[:100]!r}")

        self.phase = SessionPhase.PLANNING
        self._emit(streaming.planning_started(query))
        plan = await self._plan(query)
        max_rounds = min(plan.estimated_rounds, config.max_rounds_ceiling, MAX_ROUNDS)
        self._emit(streaming.planning_complete(plan, max_rounds))
        self._step("plan", "complete", {"rounds": max_rounds, "focus_areas": plan.focus_areas})

        deduplicator = SourceDeduplicator()
        rounds: list[RoundResult] = []
        current_query = query
        stop_reasons: list[str] = []
        last_reflection: Reflection | None = None

        for round_number in range(1, max_rounds + 1):
            round_result = await self._run_round(round_number, current_query, deduplicator, config)

            if not should_do_reflection(round_number, max_rounds):
                rounds.append(round_result)
                self.phase = SessionPhase.DECISION
                stop_reasons = [f"Maximum rounds reached ({round_number}/{max_rounds})"]
                self._emit(streaming.decision_made(round_number, True, stop_reasons, []))
                logger.info(f"Final round {round_number} - skipping reflection")
                break

            self.phase = SessionPhase.REFLECT
            self._emit(streaming.reflection_started(round_number))
            reflection = await self._reflect(query, round_result, rounds, max_rounds)
            round_result = replace(round_result, reflection=reflection)
            rounds.append(round_result)
            last_reflection = reflection
            self._emit(streaming.reflection_complete(round_number, reflection))

            self.phase = SessionPhase.DECISION
            base = evaluate_stopping_conditions(
                round_number,
                max_rounds,
                round_result,
                rounds,
                reflection,
                config.stopping_thresholds(),
            )
            decision = apply_safety_overrides(
                round_number,
                max_rounds,
                round_result.unique_source_count,
                cumulative_sources(rounds),
                base,
                coverage_floor=config.comprehensive_coverage_floor,
                absolute_floor=config.absolute_source_floor,
            )
            self._emit(
                streaming.decision_made(round_number, decision.should_stop, decision.reasons, decision.overrides)
            )
            if decision.should_stop:
                stop_reasons = decision.reasons
                logger.info(f"Stopping after round {round_number}: {stop_reasons}")
                break

            if reflection.gaps:
                self.phase = SessionPhase.REFINE
                current_query = await self._refine(query, reflection.gaps, round_number + 1)
                logger.info(f"Query for round {round_number + 1}: {current_query[:80]!r}")

        deduplicator.log_summary()

        self.phase = SessionPhase.RANKING
        all_sources: list[Source] = [source for r in rounds for source in r.all_sources()]
        self._emit(streaming.source_selection_started(len(all_sources)))
        ranking = rank_sources(query, all_sources, top_n=config.ranking_top_n)

        self.phase = SessionPhase.SELECTION
        selection = select_sources(ranking.ranked_sources, config.selection_options())
        self._emit(streaming.selection_complete(selection))

        self.phase = SessionPhase.TERMINAL
        result = SessionResult(
            session_id=self.session_id,
            query=query,
            plan=plan,
            rounds=rounds,
            total_unique_sources=len(all_sources),
            total_duplicates_filtered=sum(r.duplicates_filtered for r in rounds),
            total_duration_ms=int((time.perf_counter() - start) * 1000),
            ranking=ranking,
            selection=selection,
            stop_reasons=stop_reasons,
            completeness_score=calculate_completeness_score(
                rounds, last_reflection, config.comprehensive_source_threshold
            ),
        )
        summary = result.summary()
        self._emit(streaming.session_complete(summary))
        self._step("session", "complete", summary)
        logger.info(
            f"Session {self.session_id} complete: {len(rounds)} rounds, "
            f"{result.total_unique_sources} sources, {selection.selected_count} selected"
        )
        return result


async def run_research_session(
    query: str,
    session_config: SessionConfig | None = None,
    *,
    strategist: Strategist | None = None,
    providers: Sequence[ProviderClient] | None = None,
    progress: ProgressChannel | None = None,
) -> SessionResult:
    """Convenience wrapper: build an orchestrator with defaults and run one session."""
    orchestrator = ResearchOrchestrator(
        strategist=strategist,
        providers=providers,
        progress=progress,
        config=session_config,
    )
    return await orchestrator.run_research_session(query, session_config)
