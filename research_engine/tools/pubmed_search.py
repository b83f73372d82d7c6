from __future__ import annotations

from typing import Any
from xml.etree import ElementTree

import httpx
from loguru import logger

from research_engine.config import settings
from research_engine.models.sources import PeerReviewedArticle, ProvenanceType

ESEARCH_URL = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils/esearch.fcgi"
EFETCH_URL = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils/efetch.fcgi"
ARTICLE_URL = "https://pubmed.ncbi.nlm.nih.gov/{pmid}/"


def _text(element: ElementTree.Element | None) -> str:
    if element is None:
        return ""
    return " ".join("".join(element.itertext()).split())


def _publish_date(article: ElementTree.Element) -> str | None:
    pub_date = article.find("./Journal/JournalIssue/PubDate")
    if pub_date is None:
        return None
    year = _text(pub_date.find("Year"))
    if not year:
        # e.g. "2021 Jan-Feb"
        return _text(pub_date.find("MedlineDate")) or None
    month = _text(pub_date.find("Month"))
    day = _text(pub_date.find("Day"))
    return "-".join(part for part in (year, month, day) if part)


def _authors(article: ElementTree.Element) -> list[str]:
    authors: list[str] = []
    for author in article.findall("./AuthorList/Author"):
        last = _text(author.find("LastName"))
        initials = _text(author.find("Initials")) or _text(author.find("ForeName"))
        collective = _text(author.find("CollectiveName"))
        name = f"{last} {initials}".strip() or collective
        if name:
            authors.append(name)
    return authors


def _abstract(article: ElementTree.Element) -> str:
    parts: list[str] = []
    for section in article.findall("./Abstract/AbstractText"):
        text = _text(section)
        if not text:
            continue
        label = section.get("Label")
        parts.append(f"{label}: {text}" if label else text)
    return " ".join(parts)


def parse_efetch_xml(xml_text: str) -> list[PeerReviewedArticle]:
    """Parse an efetch PubmedArticleSet document into articles, in document order."""
    root = ElementTree.fromstring(xml_text)
    articles: list[PeerReviewedArticle] = []
    for node in root.findall("./PubmedArticle"):
        citation = node.find("MedlineCitation")
        if citation is None:
            continue
        article = citation.find("Article")
        if article is None:
            continue
        pmid = _text(citation.find("PMID"))
        doi = None
        for article_id in node.findall("./PubmedData/ArticleIdList/ArticleId"):
            if article_id.get("IdType") == "doi":
                doi = _text(article_id) or None
                break
        if doi is None:
            for location in article.findall("ELocationID"):
                if location.get("EIdType") == "doi":
                    doi = _text(location) or None
                    break
        articles.append(
            PeerReviewedArticle(
                title=_text(article.find("ArticleTitle")) or "Untitled",
                abstract=_abstract(article),
                url=ARTICLE_URL.format(pmid=pmid) if pmid else "",
                publish_date=_publish_date(article),
                authors=_authors(article),
                journal=_text(article.find("./Journal/Title")),
                pmid=pmid or None,
                doi=doi,
            )
        )
    return articles


class PubMedClient:
    """PubMed search via NCBI E-utilities (esearch for IDs, efetch for abstracts)."""

    name = "pubmed"
    provenance = ProvenanceType.PUBMED

    def __init__(
        self,
        api_key: str | None = None,
        years_back: int | None = None,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.pubmed_api_key
        self.years_back = years_back if years_back is not None else settings.pubmed_years_back
        self.timeout_s = timeout_s if timeout_s is not None else settings.pubmed_timeout_s
        self._transport = transport

    def _base_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {"db": "pubmed"}
        if self.api_key:
            params["api_key"] = self.api_key
        if settings.ncbi_email:
            params["email"] = settings.ncbi_email
        return params

    async def search(self, query: str, count: int, timeout: float) -> list[PeerReviewedArticle]:
        if count <= 0:
            return []
        search_params = {
            **self._base_params(),
            "term": query,
            "retmax": count,
            "retmode": "json",
            "sort": "relevance",
        }
        if self.years_back and self.years_back > 0:
            search_params["reldate"] = self.years_back * 365
            search_params["datetype"] = "pdat"

        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.get(ESEARCH_URL, params=search_params)
                response.raise_for_status()
                ids = response.json().get("esearchresult", {}).get("idlist", []) or []
                if not ids:
                    logger.info(f"PubMed: no articles for {query[:80]!r}")
                    return []

                fetch_params = {
                    **self._base_params(),
                    "id": ",".join(ids),
                    "retmode": "xml",
                    "rettype": "abstract",
                }
                response = await client.get(EFETCH_URL, params=fetch_params)
                response.raise_for_status()
                articles = parse_efetch_xml(response.text)
        except (httpx.HTTPError, ValueError, ElementTree.ParseError) as e:
            logger.warning(f"PubMed search failed: {e}")
            return []

        logger.info(f"PubMed: retrieved {len(articles)} articles")
        return articles[:count]
