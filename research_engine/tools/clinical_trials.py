from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from research_engine.config import settings
from research_engine.models.sources import ClinicalTrial, ProvenanceType

STUDIES_URL = "https://clinicaltrials.gov/api/v2/studies"
STUDY_URL = "https://clinicaltrials.gov/study/{nct_id}"
MAX_PAGE_SIZE = 1000


def to_clinical_trial(study: dict[str, Any]) -> ClinicalTrial | None:
    protocol = study.get("protocolSection") or {}
    identification = protocol.get("identificationModule") or {}
    nct_id = (identification.get("nctId") or "").strip()
    title = identification.get("briefTitle") or identification.get("officialTitle") or ""
    if not nct_id and not title:
        return None

    status = protocol.get("statusModule") or {}
    description = protocol.get("descriptionModule") or {}
    sponsor = (protocol.get("sponsorCollaboratorsModule") or {}).get("leadSponsor") or {}
    phases = (protocol.get("designModule") or {}).get("phases") or []

    return ClinicalTrial(
        title=" ".join(title.split()),
        description=" ".join((description.get("briefSummary") or "").split()),
        url=STUDY_URL.format(nct_id=nct_id) if nct_id else "",
        start_date=(status.get("startDateStruct") or {}).get("date"),
        sponsor=sponsor.get("name"),
        nct_id=nct_id or None,
        status=status.get("overallStatus") or "",
        phase=", ".join(phases),
    )


class ClinicalTrialsClient:
    """ClinicalTrials.gov registry search (API v2)."""

    name = "clinicaltrials"
    provenance = ProvenanceType.CLINICAL_TRIALS

    def __init__(
        self,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout_s = timeout_s if timeout_s is not None else settings.clinical_trials_timeout_s
        self._transport = transport

    async def search(self, query: str, count: int, timeout: float) -> list[ClinicalTrial]:
        if count <= 0:
            return []
        params = {
            "query.term": query,
            "pageSize": min(count, MAX_PAGE_SIZE),
            "format": "json",
        }
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.get(STUDIES_URL, params=params)
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"ClinicalTrials.gov search failed: {e}")
            return []

        trials = [trial for study in payload.get("studies", []) or [] if (trial := to_clinical_trial(study))]
        logger.info(f"ClinicalTrials.gov: retrieved {len(trials)} studies")
        return trials[:count]
