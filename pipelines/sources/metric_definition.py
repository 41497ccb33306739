"""Metric definition service client.

Sends a free-text description in ``define_only`` mode and turns the response
into a ``MetricDefinition``.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Mapping

from pipelines.common import fetch_json
from pipelines.model import MetricDefinition

METRIC_DEFINITION_URL_ENV = "METRIC_DEFINITION_URL"
DEFAULT_METRIC_DEFINITION_URL = "http://localhost:3000/api/metric-discovery"
DEFINITION_TIMEOUT_SECONDS = 60.0

logger = logging.getLogger(__name__)


def _as_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def parse_metric_definition(payload: Any) -> MetricDefinition:
    """Normalize a ``{measurable, metric_definition, rejection_reason}`` payload."""

    if not isinstance(payload, Mapping):
        return MetricDefinition(
            measurable=False, rejection_reason="Metric definition service returned no data."
        )

    raw = payload.get("metric_definition")
    definition: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}
    name = _as_text(definition.get("metric_name") or definition.get("name"))
    measurable = bool(payload.get("measurable")) and bool(name)

    rejection = payload.get("rejection_reason")
    if not measurable and not rejection:
        rejection = "No measurable metric definition was returned."

    assumptions = payload.get("assumptions")
    return MetricDefinition(
        measurable=measurable,
        name=name,
        unit=_as_text(definition.get("unit")),
        scope=_as_text(definition.get("scope")),
        time_basis=_as_text(definition.get("time_basis")),
        measurement_method=_as_text(definition.get("measurement_method")),
        rejection_reason=rejection if not measurable else None,
        assumptions=[str(a) for a in assumptions] if isinstance(assumptions, list) else [],
    )


class MetricDefinitionClient:
    """HTTP client for the metric definition service."""

    def __init__(self, base_url: str | None = None, *, timeout: float = DEFINITION_TIMEOUT_SECONDS) -> None:
        self.url = base_url or os.getenv(METRIC_DEFINITION_URL_ENV, DEFAULT_METRIC_DEFINITION_URL)
        self.timeout = timeout

    async def define(self, description: str) -> MetricDefinition:
        payload = await fetch_json(
            self.url,
            method="POST",
            json={"description": description, "mode": "define_only"},
            timeout=self.timeout,
        )
        definition = parse_metric_definition(payload)
        if not definition.measurable:
            logger.info("Metric rejected: %s", definition.rejection_reason)
        return definition


__all__ = ["MetricDefinitionClient", "parse_metric_definition", "METRIC_DEFINITION_URL_ENV"]
