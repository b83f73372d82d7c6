from __future__ import annotations

from typing import Protocol, runtime_checkable

from research_engine.config import settings
from research_engine.models.sources import ProvenanceType, Source
from research_engine.tools.clinical_trials import ClinicalTrialsClient
from research_engine.tools.medrxiv_search import MedRxivClient
from research_engine.tools.pubmed_search import PubMedClient
from research_engine.tools.tavily_search import TavilyWebClient


@runtime_checkable
class ProviderClient(Protocol):
    """A single external source provider queried once per round."""

    name: str
    provenance: ProvenanceType
    timeout_s: float

    async def search(self, query: str, count: int, timeout: float) -> list[Source]: ...


def build_default_providers() -> list[ProviderClient]:
    """Providers in fetch order; the web provider is only added when a Tavily key is configured."""
    providers: list[ProviderClient] = [
        PubMedClient(),
        MedRxivClient(),
        ClinicalTrialsClient(),
    ]
    if settings.tavily_api_key:
        providers.append(TavilyWebClient())
    return providers
