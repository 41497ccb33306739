"""Value validation worker client.

The worker extracts the current numeric value of a metric from a source URL
(screenshot + vision analysis), so requests are submitted as jobs and polled
until they reach a terminal state.
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
import re
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Sequence

from pipelines.common import fetch_json
from pipelines.errors import SourceValidationFailed
from pipelines.model import EvidenceSource, ValidationResult

VALUE_VALIDATION_URL_ENV = "VALUE_VALIDATION_URL"
DEFAULT_VALUE_VALIDATION_URL = "http://localhost:8787/api/metric-ai"
DEFAULT_POLL_INTERVAL_SECONDS = 2.0
DEFAULT_VALIDATION_TIMEOUT_SECONDS = 60.0

_TERMINAL_OK = {"completed", "done", "succeeded"}
_TERMINAL_FAILED = {"failed", "error", "cancelled"}
_NUMERIC_NOISE = re.compile(r"[,\s$€£¥%]")

logger = logging.getLogger(__name__)


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
            return None
        return Decimal(str(value))
    if not isinstance(value, str):
        return None
    cleaned = _NUMERIC_NOISE.sub("", value)
    if not cleaned:
        return None
    try:
        numeric = Decimal(cleaned)
    except InvalidOperation:
        return None
    return numeric if numeric.is_finite() else None


def _parse_as_of(raw: Any) -> datetime:
    if isinstance(raw, str) and raw.strip():
        try:
            return datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
        except ValueError:
            pass
    return datetime.now(UTC)


def _parse_evidence(raw: Any) -> list[EvidenceSource]:
    if not isinstance(raw, list):
        return []
    evidence: list[EvidenceSource] = []
    for item in raw:
        if not isinstance(item, Mapping) or not item.get("url"):
            continue
        score = item.get("match_score")
        evidence.append(
            EvidenceSource(
                url=str(item["url"]),
                quote=str(item.get("quote") or ""),
                match_score=float(score) if isinstance(score, (int, float)) else 0.5,
                screenshot_url=str(item.get("screenshot_url") or ""),
            )
        )
    return evidence


def parse_validation_result(payload: Any, *, url: str) -> ValidationResult:
    """Convert a worker result into ``ValidationResult`` or raise ``SourceValidationFailed``."""

    if not isinstance(payload, Mapping):
        raise SourceValidationFailed(url, "worker returned no result")
    value = _to_decimal(payload.get("value"))
    if value is None:
        raise SourceValidationFailed(url, f"non-numeric value {payload.get('value')!r}")

    confidence = payload.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        confidence = 0.5
    suggestion = _to_decimal(payload.get("asset_price_suggestion"))

    return ValidationResult(
        value=float(value),
        unit=str(payload.get("unit") or ""),
        as_of=_parse_as_of(payload.get("as_of")),
        confidence=min(1.0, max(0.0, float(confidence))),
        asset_price_suggestion=suggestion if suggestion is not None else value,
        sources=_parse_evidence(payload.get("sources")),
    )


class ValueValidationClient:
    """Submits validation jobs to the worker and polls them to completion."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        timeout: float = DEFAULT_VALIDATION_TIMEOUT_SECONDS,
    ) -> None:
        self.base_url = (base_url or os.getenv(VALUE_VALIDATION_URL_ENV, DEFAULT_VALUE_VALIDATION_URL)).rstrip("/")
        self.poll_interval = poll_interval
        self.timeout = timeout

    async def validate(
        self,
        metric: str,
        urls: Sequence[str],
        *,
        context: str = "create",
        description: str | None = None,
    ) -> ValidationResult:
        url = urls[0] if urls else ""
        body: dict[str, Any] = {"metric": metric, "urls": list(urls), "context": context}
        if description:
            body["description"] = description

        try:
            async with asyncio.timeout(self.timeout):
                result = await self._run_job(body, url)
        except TimeoutError as exc:
            raise SourceValidationFailed(url, f"no result within {self.timeout:.0f}s") from exc
        return parse_validation_result(result, url=url)

    async def _run_job(self, body: Mapping[str, Any], url: str) -> Any:
        submitted = await fetch_json(f"{self.base_url}/jobs", method="POST", json=body)
        if not isinstance(submitted, Mapping):
            raise SourceValidationFailed(url, "worker rejected the job")
        # Some deployments answer synchronously with the finished result.
        if str(submitted.get("status", "")).lower() in _TERMINAL_OK:
            return submitted.get("result")
        job_id = submitted.get("jobId")
        if not job_id:
            raise SourceValidationFailed(url, "worker did not return a job id")

        while True:
            await asyncio.sleep(self.poll_interval)
            status_payload = await fetch_json(f"{self.base_url}/jobs/{job_id}")
            if not isinstance(status_payload, Mapping):
                continue
            status = str(status_payload.get("status", "")).lower()
            if status in _TERMINAL_OK:
                return status_payload.get("result")
            if status in _TERMINAL_FAILED:
                raise SourceValidationFailed(url, str(status_payload.get("error") or status))
            logger.debug("Validation job %s still %s.", job_id, status or "pending")


__all__ = [
    "ValueValidationClient",
    "parse_validation_result",
    "VALUE_VALIDATION_URL_ENV",
    "DEFAULT_POLL_INTERVAL_SECONDS",
    "DEFAULT_VALIDATION_TIMEOUT_SECONDS",
]
