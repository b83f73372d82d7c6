from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Union

from research_engine.tools import web_utils


class ProvenanceType(StrEnum):
    PUBMED = "pubmed"
    MEDRXIV = "medrxiv"
    CLINICAL_TRIALS = "clinicaltrials"
    WEB = "web"


class IdentifierKind(StrEnum):
    DOI = "doi"
    PROVIDER_ID = "provider_id"
    URL = "url"


@dataclass(frozen=True, slots=True)
class SourceIdentifier:
    kind: IdentifierKind
    value: str

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.value}"


@dataclass(slots=True)
class PeerReviewedArticle:
    """Peer-reviewed article (PubMed)."""

    title: str
    abstract: str = ""
    url: str = ""
    publish_date: str | None = None
    authors: list[str] = field(default_factory=list)
    journal: str = ""
    pmid: str | None = None
    doi: str | None = None
    provenance: ProvenanceType = field(default=ProvenanceType.PUBMED, init=False)


@dataclass(slots=True)
class Preprint:
    """Preprint (medRxiv)."""

    title: str
    abstract: str = ""
    url: str = ""
    publish_date: str | None = None
    authors: str = ""
    doi: str | None = None
    server: str = "medrxiv"
    provenance: ProvenanceType = field(default=ProvenanceType.MEDRXIV, init=False)


@dataclass(slots=True)
class ClinicalTrial:
    """Clinical trial registration (ClinicalTrials.gov)."""

    title: str
    description: str = ""
    url: str = ""
    start_date: str | None = None
    sponsor: str | None = None
    nct_id: str | None = None
    status: str = ""
    phase: str = ""
    provenance: ProvenanceType = field(default=ProvenanceType.CLINICAL_TRIALS, init=False)


@dataclass(slots=True)
class WebDocument:
    """General web document (Tavily)."""

    title: str
    text: str = ""
    url: str = ""
    published_date: str | None = None
    author: str | None = None
    domain: str = ""
    doi: str | None = None
    score: float = 0.0
    provenance: ProvenanceType = field(default=ProvenanceType.WEB, init=False)

    def __post_init__(self) -> None:
        if not self.domain and self.url:
            self.domain = web_utils.strip_www(web_utils.extract_domain(self.url))
        if not self.doi:
            self.doi = web_utils.extract_doi_from_url(self.url)


Source = Union[PeerReviewedArticle, Preprint, ClinicalTrial, WebDocument]


@dataclass(frozen=True, slots=True)
class NormalizedSource:
    """Uniform view of any source used by ranking, selection and formatting."""

    title: str
    abstract: str
    identifier: SourceIdentifier | None
    published: str | None
    author: str | None
    url: str
    provenance: ProvenanceType


def source_identifier(source: Source) -> SourceIdentifier | None:
    """Identity by priority: DOI > provider ID (PMID, NCT) > normalized URL."""
    doi = web_utils.normalize_doi(getattr(source, "doi", None))
    if doi:
        return SourceIdentifier(IdentifierKind.DOI, doi)

    if isinstance(source, PeerReviewedArticle) and source.pmid and str(source.pmid).strip():
        return SourceIdentifier(IdentifierKind.PROVIDER_ID, f"pubmed:{str(source.pmid).strip()}")
    if isinstance(source, ClinicalTrial) and source.nct_id and source.nct_id.strip():
        return SourceIdentifier(IdentifierKind.PROVIDER_ID, f"nct:{source.nct_id.strip().upper()}")

    url = web_utils.normalize_url(getattr(source, "url", None))
    if url:
        return SourceIdentifier(IdentifierKind.URL, url)
    return None


def normalize_source(source: Source) -> NormalizedSource:
    if isinstance(source, PeerReviewedArticle):
        abstract = source.abstract
        published = source.publish_date
        author = source.authors[0] if source.authors else None
    elif isinstance(source, Preprint):
        abstract = source.abstract
        published = source.publish_date
        author = source.authors.split(",")[0].strip() if source.authors else None
    elif isinstance(source, ClinicalTrial):
        abstract = source.description
        published = source.start_date
        author = source.sponsor
    elif isinstance(source, WebDocument):
        abstract = source.text
        published = source.published_date
        author = source.author
    else:
        raise TypeError(f"Unsupported source type: {type(source).__name__}")

    return NormalizedSource(
        title=(source.title or "").strip(),
        abstract=(abstract or "").strip(),
        identifier=source_identifier(source),
        published=published or None,
        author=author or None,
        url=source.url or "",
        provenance=source.provenance,
    )
