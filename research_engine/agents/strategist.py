from __future__ import annotations

import json
import time
from typing import Any, Protocol, Sequence

from loguru import logger
from openai import AsyncOpenAI
from pydantic import ValidationError

from research_engine.config import settings
from research_engine.llm_client import client as llm_client, get_model
from research_engine.models.errors import StrategistParseError
from research_engine.models.research import EvidenceQuality, ResearchPlan, Reflection, RoundResult
from research_engine.services import logger as log_service
from research_engine.services.stopping import cumulative_sources

MAX_REFINED_QUERY_CHARS = 200
SOURCE_SAMPLE_SIZE = 15

PLAN_SYSTEM_PROMPT = """You plan multi-round evidence research for medical questions.
Decide how many search rounds (1-4) the question needs and which aspects to focus on.
Simple factual questions need 1-2 rounds; contested or multi-part questions need 3-4.

Return ONLY valid JSON (no markdown):
{
  "estimated_rounds": <1-4>,
  "strategy": "<one sentence research strategy>",
  "focus_areas": ["<area 1>", "<area 2>", ...]
}"""

REFLECT_SYSTEM_PROMPT = """You evaluate the evidence gathered so far in a multi-round medical research session.

EVIDENCE QUALITY LEVELS:
- "high": multiple peer-reviewed studies or clinical trials with comprehensive coverage.
- "medium": some peer-reviewed evidence, but gaps exist.
- "low": mostly general web sources or outdated information.

Identify specific missing information as gaps (e.g. "No recent studies (past 2 years)",
"No clinical trial data", "Missing long-term safety data").
Recommend continuing while evidence is not high quality, gaps remain, or fewer than
15 sources have been collected.

Return ONLY valid JSON (no markdown):
{
  "evidence_quality": "<low|medium|high>",
  "gaps": ["<gap 1>", ...],
  "should_continue": <true|false>,
  "reasoning": "<brief explanation>"
}"""

REFINE_SYSTEM_PROMPT = """You refine medical literature search queries to target knowledge gaps.

Strategies: add temporal constraints ("2024 2025 latest research"), add study types
("randomized controlled trial", "meta-analysis"), or add gap-specific terms
("safety", "adverse events", "mechanism"). Keep the original intent and keep the
query short enough for literature database search.

Return ONLY valid JSON (no markdown):
{
  "refined": "<refined query>",
  "focus_area": "<brief focus>",
  "reasoning": "<why>"
}"""


class Strategist(Protocol):
    """Judgment calls the orchestrator delegates: plan once, reflect per round, refine queries."""

    async def plan(self, query: str) -> ResearchPlan: ...

    async def reflect(
        self,
        question: str,
        current_round: RoundResult,
        prior_rounds: Sequence[RoundResult],
        max_rounds: int,
    ) -> Reflection: ...

    async def refine_query(self, original: str, gaps: Sequence[str], next_round: int) -> str: ...


def default_plan(query: str) -> ResearchPlan:
    return ResearchPlan(
        estimated_rounds=2,
        strategy=f"Default two-round evidence sweep for: {query[:120]}",
        focus_areas=[],
    )


def fallback_reflection(round_number: int, max_rounds: int, cumulative: int) -> Reflection:
    should_continue = round_number < max_rounds and cumulative < 15
    return Reflection(
        evidence_quality=EvidenceQuality.MEDIUM,
        gaps=[],
        should_continue=should_continue,
        reasoning=(
            "Reflection unavailable; continuing only while rounds remain and fewer than "
            f"15 sources are collected (continue={should_continue})"
        ),
    )


def truncate_query(query: str, limit: int = MAX_REFINED_QUERY_CHARS) -> str:
    query = " ".join(query.split())
    if len(query) <= limit:
        return query
    return query[: limit - 3] + "..."


def extract_json_object(raw_text: str) -> dict[str, Any]:
    text = raw_text.strip()
    if text.startswith("```"):
        parts = text.split("```")
        if len(parts) >= 2:
            text = parts[1]
        if text.startswith("json"):
            text = text[4:]
        text = text.strip()
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise json.JSONDecodeError("object not found", text, 0)
    parsed = json.loads(text[start : end + 1])
    if not isinstance(parsed, dict):
        raise json.JSONDecodeError("not an object", text, 0)
    return parsed


def summarize_rounds(rounds: Sequence[RoundResult]) -> str:
    lines = []
    for r in rounds:
        counts = ", ".join(f"{name}: {count}" for name, count in r.counts_by_provenance().items())
        lines.append(f"Round {r.round_number}: {r.unique_source_count} sources ({counts})")
    return "\n".join(lines)


def sample_sources(rounds: Sequence[RoundResult], limit: int = SOURCE_SAMPLE_SIZE) -> str:
    lines: list[str] = []
    for r in rounds:
        for source in r.all_sources():
            lines.append(f'{source.provenance.value}: "{source.title}"')
            if len(lines) >= limit:
                return "\n".join(lines)
    return "\n".join(lines)


class LLMStrategist:
    """Strategist backed by an OpenRouter chat model.

    Every method raises StrategistParseError when the model reply is not the
    expected JSON object; callers decide how to degrade.
    """

    def __init__(
        self,
        openai_client: AsyncOpenAI | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
    ):
        self._client = openai_client
        self.model = model or get_model()
        self.max_tokens = max_tokens or settings.strategist_max_tokens

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = llm_client()
        return self._client

    async def _complete(self, caller: str, system: str, prompt: str, temperature: float) -> str:
        t0 = time.monotonic()
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=temperature,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
            )
        except Exception as e:
            log_service.log_llm_call(
                model=self.model,
                caller=caller,
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=str(e),
            )
            raise

        usage = getattr(response, "usage", None)
        log_service.log_llm_call(
            model=self.model,
            caller=caller,
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
        choices = getattr(response, "choices", None) or []
        if not choices:
            return ""
        message = getattr(choices[0], "message", None)
        return (getattr(message, "content", None) or "").strip()

    def _parse(self, operation: str, text: str) -> dict[str, Any]:
        try:
            return extract_json_object(text)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse {operation} response: {text[:200]!r}")
            raise StrategistParseError(operation, text) from e

    async def plan(self, query: str) -> ResearchPlan:
        text = await self._complete(
            "strategist.plan",
            PLAN_SYSTEM_PROMPT,
            f'Plan research for this question:\n"{query}"',
            temperature=0.2,
        )
        data = self._parse("plan", text)
        try:
            plan = ResearchPlan.model_validate(data)
        except ValidationError as e:
            raise StrategistParseError("plan", text) from e
        logger.info(
            f"Plan: {plan.estimated_rounds} rounds, strategy={plan.strategy!r}, "
            f"focus={plan.focus_areas}"
        )
        return plan

    async def reflect(
        self,
        question: str,
        current_round: RoundResult,
        prior_rounds: Sequence[RoundResult],
        max_rounds: int,
    ) -> Reflection:
        all_rounds = [*prior_rounds, current_round]
        total = cumulative_sources(all_rounds)
        prompt = (
            f"Evaluate research quality for round {current_round.round_number}/{max_rounds}.\n\n"
            f'Question: "{question}"\n\n'
            f"{summarize_rounds(all_rounds)}\n\n"
            f"Sample sources (first {SOURCE_SAMPLE_SIZE}):\n{sample_sources(all_rounds)}\n\n"
            f"Total sources collected: {total}\n"
            "Return JSON with: evidence_quality, gaps, should_continue, reasoning"
        )
        text = await self._complete("strategist.reflect", REFLECT_SYSTEM_PROMPT, prompt, temperature=0.2)
        data = self._parse("reflect", text)
        # accept the camelCase keys some models echo back
        if "gaps" not in data and "gapsIdentified" in data:
            data["gaps"] = data["gapsIdentified"]
        if "evidence_quality" not in data and "evidenceQuality" in data:
            data["evidence_quality"] = data["evidenceQuality"]
        if "should_continue" not in data and "shouldContinue" in data:
            data["should_continue"] = data["shouldContinue"]
        if not isinstance(data.get("should_continue", True), bool):
            raise StrategistParseError("reflect", text)
        try:
            reflection = Reflection.model_validate(data)
        except ValidationError as e:
            raise StrategistParseError("reflect", text) from e
        logger.info(
            f"Reflection for round {current_round.round_number}: quality={reflection.evidence_quality}, "
            f"continue={reflection.should_continue}, gaps={reflection.gaps[:3]}"
        )
        return reflection

    async def refine_query(self, original: str, gaps: Sequence[str], next_round: int) -> str:
        if not gaps:
            return original
        gap_lines = "\n".join(f"{index}. {gap}" for index, gap in enumerate(gaps, start=1))
        prompt = (
            f'Original query: "{original}"\n\n'
            f"Knowledge gaps identified:\n{gap_lines}\n\n"
            f'Primary gap to address: "{gaps[0]}"\n'
            f"This refined query will be used for search round {next_round}.\n"
            "Return JSON with: refined, focus_area, reasoning"
        )
        text = await self._complete("strategist.refine", REFINE_SYSTEM_PROMPT, prompt, temperature=0.7)
        data = self._parse("refine", text)
        refined = data.get("refined")
        if not isinstance(refined, str) or not refined.strip():
            return original
        refined = truncate_query(refined)
        logger.info(f"Refined query for round {next_round}: {refined[:80]!r}")
        return refined
