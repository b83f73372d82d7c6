from __future__ import annotations

import asyncio
from datetime import date, timedelta
from typing import Any

import httpx
from loguru import logger

from research_engine.config import settings
from research_engine.models.sources import Preprint, ProvenanceType
from research_engine.services.ranker import extract_keywords

DETAILS_URL = "https://api.biorxiv.org/details/{server}/{start}/{end}/{cursor}"
CONTENT_URL = "https://www.{server}.org/content/{doi}v{version}"
PAGE_SIZE = 100


def to_preprint(item: dict[str, Any], server: str = "medrxiv") -> Preprint:
    doi = (item.get("doi") or "").strip() or None
    version = item.get("version") or "1"
    return Preprint(
        title=" ".join((item.get("title") or "").split()),
        abstract=" ".join((item.get("abstract") or "").split()),
        url=CONTENT_URL.format(server=server, doi=doi, version=version) if doi else "",
        publish_date=item.get("date") or None,
        authors=(item.get("authors") or "").strip(),
        doi=doi,
        server=item.get("server") or server,
    )


def filter_by_keywords(items: list[dict[str, Any]], query: str, count: int) -> list[dict[str, Any]]:
    """Keep items mentioning at least one query keyword, best matches first."""
    keywords = extract_keywords(query)
    if not keywords:
        return items[:count]
    scored: list[tuple[int, dict[str, Any]]] = []
    for item in items:
        content = f"{item.get('title', '')} {item.get('abstract', '')}".lower()
        matches = sum(1 for keyword in keywords if keyword in content)
        if matches:
            scored.append((matches, item))
    scored.sort(key=lambda pair: pair[0], reverse=True)
    return [item for _, item in scored[:count]]


class MedRxivClient:
    """medRxiv preprints via the bioRxiv/medRxiv details API.

    The API has no full-text search, so the newest pages of the date window are
    pulled and filtered locally by query keywords.
    """

    name = "medrxiv"
    provenance = ProvenanceType.MEDRXIV

    def __init__(
        self,
        server: str = "medrxiv",
        days_back: int | None = None,
        max_pages: int = 2,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        today: date | None = None,
    ):
        self.server = server
        self.days_back = days_back if days_back is not None else settings.medrxiv_days_back
        self.max_pages = max(max_pages, 1)
        self.timeout_s = timeout_s if timeout_s is not None else settings.medrxiv_timeout_s
        self._transport = transport
        self._today = today

    def _url(self, cursor: int) -> str:
        end = self._today or date.today()
        start = end - timedelta(days=self.days_back)
        return DETAILS_URL.format(
            server=self.server,
            start=start.isoformat(),
            end=end.isoformat(),
            cursor=cursor,
        )

    async def _get_page(self, client: httpx.AsyncClient, cursor: int) -> list[dict[str, Any]]:
        response = await client.get(self._url(cursor))
        response.raise_for_status()
        return list(response.json().get("collection", []) or [])

    async def search(self, query: str, count: int, timeout: float) -> list[Preprint]:
        if count <= 0:
            return []
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.get(self._url(0))
                response.raise_for_status()
                payload = response.json()
                items: list[dict[str, Any]] = list(payload.get("collection", []) or [])

                messages = payload.get("messages") or [{}]
                total = int(messages[0].get("total", len(items)) or 0)
                # newest results sit on the last pages
                cursors = list(range(total - PAGE_SIZE, 0, -PAGE_SIZE))[: self.max_pages]
                if cursors:
                    pages = await asyncio.gather(*(self._get_page(client, c) for c in cursors))
                    items = [item for page in pages for item in page]
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"medRxiv search failed: {e}")
            return []

        matched = filter_by_keywords(items, query, count)
        preprints = [to_preprint(item, self.server) for item in matched]
        logger.info(f"medRxiv: {len(preprints)} preprints matched out of {len(items)} scanned")
        return preprints
