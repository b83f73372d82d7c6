from __future__ import annotations

from typing import Any

import httpx
from loguru import logger
from tavily import AsyncTavilyClient
from tavily.errors import (
    BadRequestError,
    ForbiddenError,
    InvalidAPIKeyError,
    UsageLimitExceededError,
)
from tavily.errors import TimeoutError as TavilyTimeoutError

from research_engine.config import settings
from research_engine.models.errors import ProviderError
from research_engine.models.sources import ProvenanceType, WebDocument
from research_engine.tools.web_utils import clean_content


def to_web_document(result: dict[str, Any]) -> WebDocument:
    return WebDocument(
        title=result.get("title", "") or "",
        text=clean_content(result.get("content", "") or ""),
        url=result.get("url", "") or "",
        published_date=result.get("published_date") or None,
        score=float(result.get("score", 0.0) or 0.0),
    )


class TavilyWebClient:
    """General web search through Tavily."""

    name = "web"
    provenance = ProvenanceType.WEB

    def __init__(
        self,
        api_key: str | None = None,
        search_depth: str = "advanced",
        include_domains: list[str] | None = None,
        exclude_domains: list[str] | None = None,
        timeout_s: float | None = None,
        client: AsyncTavilyClient | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.tavily_api_key
        self.search_depth = search_depth
        self.include_domains = include_domains
        self.exclude_domains = exclude_domains
        self.timeout_s = timeout_s if timeout_s is not None else settings.web_timeout_s
        self._client = client

    def _get_client(self) -> AsyncTavilyClient:
        if self._client is None:
            if not self.api_key:
                raise ProviderError(self.name, "TAVILY_API_KEY is not configured")
            self._client = AsyncTavilyClient(api_key=self.api_key)
        return self._client

    async def search(self, query: str, count: int, timeout: float) -> list[WebDocument]:
        """Execute a Tavily web search and return structured results."""
        if count <= 0:
            return []
        kwargs: dict[str, Any] = {
            "query": query,
            "search_depth": self.search_depth,
            "max_results": count,
            "topic": "general",
            "include_raw_content": False,
        }
        if self.include_domains:
            kwargs["include_domains"] = self.include_domains
        if self.exclude_domains:
            kwargs["exclude_domains"] = self.exclude_domains

        try:
            response = await self._get_client().search(**kwargs)
        except (
            httpx.HTTPError,
            BadRequestError,
            ForbiddenError,
            InvalidAPIKeyError,
            UsageLimitExceededError,
            TavilyTimeoutError,
        ) as e:
            logger.warning(f"Tavily search failed: {e}")
            return []
        documents = [to_web_document(r) for r in response.get("results", [])]
        logger.info(f"Tavily: retrieved {len(documents)} web results")
        return documents[:count]
