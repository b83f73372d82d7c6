from __future__ import annotations

import re
from urllib.parse import unquote, urlparse

DOI_PATTERN = re.compile(r"\b(10\.\d{4,9}/[^\s\"'<>?#]+)", re.IGNORECASE)
DOI_PREFIXES = ("https://doi.org/", "http://doi.org/", "https://dx.doi.org/", "http://dx.doi.org/", "doi:")


def extract_domain(url: str) -> str:
    """Extract domain from URL for display."""
    try:
        return urlparse(url).netloc
    except ValueError:
        return url


def strip_www(host: str) -> str:
    host = host.lower().strip()
    if host.startswith("www."):
        host = host[4:]
    return host


def normalize_url(url: str | None) -> str | None:
    """Reduce a URL to scheme://host/path without www, query, fragment or trailing slash."""
    if not url or not isinstance(url, str):
        return None
    try:
        parsed = urlparse(url.strip())
        # non-numeric or out-of-range ports raise here, not in urlparse
        port = parsed.port
    except ValueError:
        return None
    if not parsed.scheme or not parsed.netloc:
        return None
    host = strip_www(parsed.hostname or "")
    if not host:
        return None
    if port:
        host = f"{host}:{port}"
    path = parsed.path.rstrip("/")
    return f"{parsed.scheme.lower()}://{host}{path}"


def normalize_doi(value: str | None) -> str | None:
    """Lower-case a DOI and strip resolver prefixes; None when the value is not DOI-like."""
    if not value or not isinstance(value, str):
        return None
    doi = value.strip()
    lowered = doi.lower()
    for prefix in DOI_PREFIXES:
        if lowered.startswith(prefix):
            doi = doi[len(prefix):]
            break
    doi = doi.strip().rstrip(".").lower()
    if not doi.startswith("10.") or "/" not in doi:
        return None
    return doi


def extract_doi_from_url(url: str | None) -> str | None:
    """Find a DOI embedded in a URL path (doi.org links, publisher /doi/ paths)."""
    if not url or not isinstance(url, str):
        return None
    match = DOI_PATTERN.search(unquote(url))
    if not match:
        return None
    return normalize_doi(match.group(1))


def clean_content(text: str, max_length: int = 8000) -> str:
    """Collapse whitespace and trim to max length."""
    text = re.sub(r"\s+", " ", text or "").strip()
    if len(text) > max_length:
        text = text[:max_length] + "..."
    return text
