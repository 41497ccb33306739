"""Source discovery and ranking service client."""

from __future__ import annotations

import logging
import os
from typing import Any, Iterable, Mapping

from pipelines.common import fetch_json
from pipelines.model import SourceCandidate

SOURCE_DISCOVERY_URL_ENV = "SOURCE_DISCOVERY_URL"
DEFAULT_SOURCE_DISCOVERY_URL = "http://localhost:3000/api/metric-discovery"
DISCOVERY_TIMEOUT_SECONDS = 60.0

logger = logging.getLogger(__name__)


def _coerce_confidence(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    return min(1.0, max(0.0, float(value)))


def _to_candidate(raw: Any, *, is_primary: bool) -> SourceCandidate | None:
    if not isinstance(raw, Mapping):
        return None
    url = raw.get("url")
    if not isinstance(url, str) or not url.strip().lower().startswith(("http://", "https://")):
        return None
    return SourceCandidate(
        url=url.strip(),
        authority=str(raw.get("authority") or ""),
        confidence=_coerce_confidence(raw.get("confidence")),
        is_primary=is_primary,
    )


def parse_sources(payload: Any, *, exclude: Iterable[str] = ()) -> list[SourceCandidate]:
    """Flatten ``{sources: {primary_source, secondary_sources}}`` into a ranked list.

    The primary source stays first; secondaries keep the service's order. Excluded
    and duplicate URLs are dropped.
    """

    if not isinstance(payload, Mapping):
        return []
    sources = payload.get("sources")
    if not isinstance(sources, Mapping):
        return []

    excluded = {url.strip() for url in exclude}
    ranked: list[SourceCandidate] = []
    primary = _to_candidate(sources.get("primary_source"), is_primary=True)
    if primary:
        ranked.append(primary)
    secondaries = sources.get("secondary_sources")
    if isinstance(secondaries, list):
        for raw in secondaries:
            candidate = _to_candidate(raw, is_primary=False)
            if candidate:
                ranked.append(candidate)

    seen: set[str] = set()
    result: list[SourceCandidate] = []
    for candidate in ranked:
        if candidate.url in excluded or candidate.url in seen:
            continue
        seen.add(candidate.url)
        result.append(candidate)
    return result


class SourceDiscoveryClient:
    """HTTP client for the source discovery service (``mode: full``)."""

    def __init__(self, base_url: str | None = None, *, timeout: float = DISCOVERY_TIMEOUT_SECONDS) -> None:
        self.url = base_url or os.getenv(SOURCE_DISCOVERY_URL_ENV, DEFAULT_SOURCE_DISCOVERY_URL)
        self.timeout = timeout

    async def discover(
        self,
        description: str,
        *,
        search_variation: int = 0,
        exclude_urls: Iterable[str] = (),
    ) -> list[SourceCandidate]:
        excluded = list(exclude_urls)
        payload = await fetch_json(
            self.url,
            method="POST",
            json={
                "description": description,
                "mode": "full",
                "searchVariation": search_variation,
                "excludeUrls": excluded,
            },
            timeout=self.timeout,
        )
        candidates = parse_sources(payload, exclude=excluded)
        logger.info(
            "Source discovery returned %s candidates (variation=%s, excluded=%s).",
            len(candidates),
            search_variation,
            len(excluded),
        )
        return candidates


__all__ = ["SourceDiscoveryClient", "parse_sources", "SOURCE_DISCOVERY_URL_ENV"]
