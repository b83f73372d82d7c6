from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from loguru import logger

from research_engine.models.sources import ProvenanceType, Source
from research_engine.services import streaming
from research_engine.services.logger import log_provider_call
from research_engine.services.progress import ProgressChannel, publish
from research_engine.tools.search_provider import ProviderClient


@dataclass(slots=True)
class FetchRoundResult:
    results_by_provider: dict[ProvenanceType, list[Source]] = field(default_factory=dict)
    errors_by_provider: dict[str, str] = field(default_factory=dict)
    timings_by_provider: dict[str, int] = field(default_factory=dict)
    total_ms: int = 0

    @property
    def total_count(self) -> int:
        return sum(len(sources) for sources in self.results_by_provider.values())


@dataclass(slots=True)
class _ProviderOutcome:
    provider: ProviderClient
    sources: list[Source]
    duration_ms: int
    error: str | None = None


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


class ParallelFetcher:
    """Queries every configured provider concurrently, each under its own timeout.

    A provider that times out or raises contributes an empty list and an error
    string; it never cancels or delays its siblings beyond the shared barrier.
    """

    def __init__(
        self,
        providers: Sequence[ProviderClient],
        progress: ProgressChannel | None = None,
        timeouts: Mapping[str, float] | None = None,
    ):
        self.providers = list(providers)
        self.progress = progress
        self._timeouts = dict(timeouts or {})

    @property
    def provenances(self) -> set[ProvenanceType]:
        return {provider.provenance for provider in self.providers}

    def timeout_for(self, provider: ProviderClient) -> float:
        return self._timeouts.get(provider.name, provider.timeout_s)

    async def _fetch_one(self, provider: ProviderClient, query: str, count: int) -> _ProviderOutcome:
        timeout = self.timeout_for(provider)
        publish(self.progress, streaming.api_started(provider.name, count))
        start = time.perf_counter()
        try:
            sources = await asyncio.wait_for(provider.search(query, count, timeout), timeout=timeout)
        except asyncio.TimeoutError:
            duration_ms = _elapsed_ms(start)
            error = f"{provider.name} timeout after {int(timeout * 1000)}ms"
            return self._failed(provider, count, duration_ms, error)
        except Exception as e:
            duration_ms = _elapsed_ms(start)
            error = f"{provider.name} failed: {e}"
            return self._failed(provider, count, duration_ms, error)

        duration_ms = _elapsed_ms(start)
        sources = list(sources or [])[: max(count, 0)]
        log_provider_call(provider.name, count, len(sources), duration_ms)
        publish(
            self.progress,
            streaming.api_completed(provider.name, len(sources), duration_ms, success=True),
        )
        return _ProviderOutcome(provider=provider, sources=sources, duration_ms=duration_ms)

    def _failed(self, provider: ProviderClient, count: int, duration_ms: int, error: str) -> _ProviderOutcome:
        log_provider_call(provider.name, count, 0, duration_ms, error=error)
        publish(
            self.progress,
            streaming.api_completed(provider.name, 0, duration_ms, success=False, error=error),
        )
        return _ProviderOutcome(provider=provider, sources=[], duration_ms=duration_ms, error=error)

    async def fetch_round(
        self,
        query: str,
        per_provider_counts: Mapping[ProvenanceType, int],
    ) -> FetchRoundResult:
        """Fetch one round from all providers and wait for every one of them to settle."""
        start = time.perf_counter()
        result = FetchRoundResult()

        active: list[tuple[ProviderClient, int]] = []
        for provider in self.providers:
            count = int(per_provider_counts.get(provider.provenance, 0) or 0)
            result.results_by_provider.setdefault(provider.provenance, [])
            if count <= 0:
                result.timings_by_provider[provider.name] = 0
                continue
            active.append((provider, count))

        requested = sum(count for _, count in active)
        logger.info(
            f"Fetching {requested} sources in parallel for {query[:80]!r}: "
            + ", ".join(f"{p.name}={c}" for p, c in active)
        )

        outcomes = await asyncio.gather(
            *(self._fetch_one(provider, query, count) for provider, count in active),
            return_exceptions=True,
        )

        for (provider, _count), outcome in zip(active, outcomes):
            if isinstance(outcome, BaseException):
                result.errors_by_provider[provider.name] = f"{provider.name} failed: {outcome}"
                result.timings_by_provider[provider.name] = 0
                continue
            result.results_by_provider[provider.provenance].extend(outcome.sources)
            result.timings_by_provider[provider.name] = outcome.duration_ms
            if outcome.error:
                result.errors_by_provider[provider.name] = outcome.error

        result.total_ms = _elapsed_ms(start)

        if result.errors_by_provider:
            logger.warning(
                f"Partial provider failure ({len(result.errors_by_provider)}/{len(active)}): "
                f"{result.errors_by_provider}"
            )
        fetched = result.total_count
        if requested and fetched < requested * 0.5:
            logger.warning(f"Low source yield: {fetched}/{requested} sources fetched")
        logger.info(f"Fetched {fetched}/{requested} sources in {result.total_ms}ms")
        return result
