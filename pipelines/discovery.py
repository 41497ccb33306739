"""Metric discovery state machine.

Walks a single market draft through ``clarify_metric -> name -> description ->
select_source -> icon -> complete``. The current step is never stored: it is
derived from the draft's confirmation flags by ``derive_step``, so editing an
earlier field (which clears everything downstream of it) moves the flow back
without any transition bookkeeping.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Protocol, Sequence
from urllib.parse import urlsplit, urlunsplit

import httpx

from pipelines.errors import DiscoveryStateError, SourceValidationFailed
from pipelines.model import MarketDraft, MetricDefinition, SourceCandidate, ValidationResult

NAME_MAX_LENGTH = 56
DESCRIPTION_MAX_LENGTH = 160

logger = logging.getLogger(__name__)


class CreationStep(str, Enum):
    CLARIFY_METRIC = "clarify_metric"
    NAME = "name"
    DESCRIPTION = "description"
    SELECT_SOURCE = "select_source"
    ICON = "icon"
    COMPLETE = "complete"


STEP_ORDER: tuple[CreationStep, ...] = tuple(CreationStep)


class DefinitionService(Protocol):
    async def define(self, description: str) -> MetricDefinition: ...


class DiscoveryService(Protocol):
    async def discover(
        self, description: str, *, search_variation: int = 0, exclude_urls: Sequence[str] = ()
    ) -> list[SourceCandidate]: ...


class ValidationService(Protocol):
    async def validate(
        self, metric: str, urls: Sequence[str], *, context: str = "create", description: str | None = None
    ) -> ValidationResult: ...


def derive_step(draft: MarketDraft) -> CreationStep:
    """Return the furthest step reachable from the draft's current flags."""

    if draft.metric_definition is None:
        return CreationStep.CLARIFY_METRIC
    if not draft.metric_definition.measurable:
        return CreationStep.CLARIFY_METRIC
    if not draft.name_confirmed:
        return CreationStep.NAME
    if not draft.description_confirmed:
        return CreationStep.DESCRIPTION
    if draft.selected_source is None or draft.validation is None:
        return CreationStep.SELECT_SOURCE
    if not draft.icon_confirmed:
        return CreationStep.ICON
    return CreationStep.COMPLETE


def clamp_text(text: str, max_length: int) -> str:
    trimmed = text.strip()
    if len(trimmed) <= max_length:
        return trimmed
    return f"{trimmed[: max(0, max_length - 1)].rstrip()}…"


def suggest_market_name(metric_name: str | None, source_label: str | None = None) -> str:
    base = (metric_name or "").strip() or "New Market"
    with_source = f"{base} • {source_label}" if source_label else base
    return clamp_text(with_source, NAME_MAX_LENGTH)


def suggest_market_description(
    metric_name: str | None,
    measurement_method: str | None = None,
    source_label: str | None = None,
) -> str:
    name = (metric_name or "").strip() or "this metric"
    source = f" using {source_label}" if source_label else ""
    method = (measurement_method or "").strip().rstrip(".")
    if method:
        body = f"A market tracking {name}{source}. Measurement: {method}."
    else:
        body = f"A market tracking {name}{source}."
    return clamp_text(body, DESCRIPTION_MAX_LENGTH)


def normalize_url(url: str) -> str:
    """Canonical form used for cache keys and denial checks."""

    parts = urlsplit(url.strip())
    path = parts.path.rstrip("/")
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, parts.query, ""))


class ValidationCache:
    """Read-through cache of successful validations keyed by (metric, normalized url)."""

    def __init__(self) -> None:
        self._entries: dict[tuple[str, str], ValidationResult] = {}

    @staticmethod
    def key(metric: str, url: str) -> tuple[str, str]:
        return metric.strip().casefold(), normalize_url(url)

    def get(self, metric: str, url: str) -> ValidationResult | None:
        return self._entries.get(self.key(metric, url))

    def put(self, metric: str, url: str, result: ValidationResult) -> None:
        self._entries[self.key(metric, url)] = result

    def __len__(self) -> int:
        return len(self._entries)


class DiscoverySession:
    """One in-flight market creation session; owns the draft exclusively."""

    def __init__(
        self,
        definitions: DefinitionService,
        discovery: DiscoveryService,
        validator: ValidationService,
        *,
        cache: ValidationCache | None = None,
    ) -> None:
        self.definitions = definitions
        self.discovery = discovery
        self.validator = validator
        self.cache = cache if cache is not None else ValidationCache()
        self.draft = MarketDraft()
        self.transcript: list[str] = []
        self.denied_urls: list[str] = []
        self.search_variation = 0
        self.candidates: list[SourceCandidate] = []
        self._discovery_key: tuple[str, str] | None = None

    # -- derived state -------------------------------------------------------

    @property
    def step(self) -> CreationStep:
        return derive_step(self.draft)

    @property
    def rejection_reason(self) -> str | None:
        definition = self.draft.metric_definition
        if definition is None or definition.measurable:
            return None
        return definition.rejection_reason

    def _require(self, *steps: CreationStep) -> None:
        current = self.step
        if current not in steps:
            allowed = ", ".join(step.value for step in steps)
            raise DiscoveryStateError(f"Operation requires step {allowed}; session is at {current.value}.")

    # -- clarify_metric ------------------------------------------------------

    async def start(self, description: str) -> CreationStep:
        prompt = description.strip()
        if not prompt:
            raise ValueError("Metric description must not be empty.")
        self.reset()
        self.draft.prompt = prompt
        await self._define(prompt)
        return self.step

    async def clarify(self, reply: str) -> CreationStep:
        self._require(CreationStep.CLARIFY_METRIC)
        text = reply.strip()
        if not self.draft.prompt:
            raise DiscoveryStateError("Call start() before clarifying.")
        if not text:
            raise ValueError("Clarification must not be empty.")
        self.transcript.append(text)
        combined = self.draft.prompt + "".join(f"\n\nClarification: {item}" for item in self.transcript)
        await self._define(combined)
        return self.step

    async def _define(self, text: str) -> MetricDefinition:
        definition = await self.definitions.define(text)
        self.draft.metric_definition = definition
        if definition.measurable:
            logger.info("Metric accepted: %s", definition.name)
            self._apply_suggestions()
        else:
            logger.info("Metric needs clarification: %s", definition.rejection_reason)
        return definition

    def _apply_suggestions(self, source_label: str | None = None) -> None:
        definition = self.draft.metric_definition
        if definition is None:
            return
        if not self.draft.name_touched:
            self.draft.name = suggest_market_name(definition.name, source_label)
        if not self.draft.description_touched:
            self.draft.description = suggest_market_description(
                definition.name, definition.measurement_method, source_label
            )

    # -- name / description --------------------------------------------------

    def set_name(self, name: str) -> None:
        self._require(CreationStep.NAME)
        self.draft.name = name.strip()
        self.draft.name_touched = True

    def confirm_name(self, name: str | None = None) -> CreationStep:
        self._require(CreationStep.NAME)
        if name is not None:
            self.set_name(name)
        if not self.draft.name:
            raise DiscoveryStateError("Market name must not be empty.")
        self.draft.name_confirmed = True
        return self.step

    def set_description(self, description: str) -> None:
        self._require(CreationStep.DESCRIPTION)
        self.draft.description = description.strip()
        self.draft.description_touched = True

    def confirm_description(self, description: str | None = None) -> CreationStep:
        self._require(CreationStep.DESCRIPTION)
        if description is not None:
            self.set_description(description)
        if not self.draft.description:
            raise DiscoveryStateError("Market description must not be empty.")
        self.draft.description_confirmed = True
        return self.step

    # -- select_source -------------------------------------------------------

    async def load_sources(self) -> list[SourceCandidate]:
        """Ranked candidates for the current (name, description), minus denied URLs."""

        self._require(CreationStep.SELECT_SOURCE, CreationStep.ICON, CreationStep.COMPLETE)
        key = (self.draft.name, self.draft.description)
        if self._discovery_key == key:
            return list(self.candidates)

        query = f"{self.draft.name}\n\n{self.draft.description}".strip() or self.draft.prompt
        found = await self.discovery.discover(
            query,
            search_variation=self.search_variation,
            exclude_urls=list(self.denied_urls),
        )
        denied = {normalize_url(url) for url in self.denied_urls}
        self.candidates = [c for c in found if normalize_url(c.url) not in denied]
        self._discovery_key = key
        return list(self.candidates)

    async def select_source(self, candidate: SourceCandidate) -> ValidationResult:
        """Validate a source and bind it; the selection stays empty unless validation succeeds."""

        self._require(CreationStep.SELECT_SOURCE, CreationStep.ICON, CreationStep.COMPLETE)
        if self.is_denied(candidate.url):
            raise DiscoveryStateError(f"{candidate.url} was denied for this session.")
        definition = self.draft.metric_definition
        if definition is None:
            raise DiscoveryStateError("No metric definition to validate against.")

        self._clear_selection()
        self._apply_suggestions()

        result = self.cache.get(definition.name, candidate.url)
        if result is None:
            try:
                result = await self.validator.validate(
                    definition.name,
                    [candidate.url],
                    context="create",
                    description=self.draft.description or None,
                )
            except (httpx.HTTPError, TimeoutError, ValueError) as exc:
                # ValueError covers undecodable worker responses.
                raise SourceValidationFailed(candidate.url, str(exc) or type(exc).__name__) from exc
            self.cache.put(definition.name, candidate.url, result)
        else:
            logger.debug("Validation cache hit for %s.", candidate.url)

        self.draft.selected_source = candidate
        self.draft.validation = result
        self.draft.start_price = result.start_price
        self._apply_suggestions(candidate.label)
        return result

    async def select_custom_url(self, url: str) -> ValidationResult:
        cleaned = url.strip()
        parts = urlsplit(cleaned)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError(f"Custom source must be an http(s) URL, got {url!r}.")
        candidate = SourceCandidate(
            url=cleaned,
            authority=(parts.hostname or "").removeprefix("www."),
            confidence=0.0,
            user_provided=True,
        )
        return await self.select_source(candidate)

    async def deny_source(self) -> list[SourceCandidate]:
        """Reject the validated selection and search again without it."""

        selected = self.draft.selected_source
        if selected is None or self.draft.validation is None:
            raise DiscoveryStateError("Only a validated source can be denied.")
        self.denied_urls.append(selected.url)
        self.search_variation += 1
        self._clear_selection()
        self._apply_suggestions()
        self._discovery_key = None
        self.candidates = []
        logger.info(
            "Denied %s; searching again (variation=%s).", selected.url, self.search_variation
        )
        return await self.load_sources()

    def is_denied(self, url: str) -> bool:
        normalized = normalize_url(url)
        return any(normalize_url(denied) == normalized for denied in self.denied_urls)

    def _clear_selection(self) -> None:
        self.draft.selected_source = None
        self.draft.validation = None
        self.draft.start_price = None
        self.draft.icon_confirmed = False

    # -- icon ------------------------------------------------------------------

    def set_icon(self, icon_url: str) -> None:
        self._require(CreationStep.ICON)
        self.draft.icon_url = icon_url.strip() or None

    def confirm_icon(self, icon_url: str | None = None) -> CreationStep:
        self._require(CreationStep.ICON)
        if icon_url is not None:
            self.set_icon(icon_url)
        if not self.draft.icon_url:
            raise DiscoveryStateError("Select an icon before confirming.")
        self.draft.icon_confirmed = True
        return self.step

    # -- edits ---------------------------------------------------------------

    def edit(self, step: CreationStep) -> CreationStep:
        """Reopen ``step``; every confirmation after it is cleared."""

        position = STEP_ORDER.index(step)
        if step is CreationStep.COMPLETE:
            return self.step
        if position <= STEP_ORDER.index(CreationStep.CLARIFY_METRIC):
            self.draft.metric_definition = None
        if position <= STEP_ORDER.index(CreationStep.NAME):
            self.draft.name_confirmed = False
        if position <= STEP_ORDER.index(CreationStep.DESCRIPTION):
            self.draft.description_confirmed = False
        if position <= STEP_ORDER.index(CreationStep.SELECT_SOURCE):
            self._clear_selection()
            self._apply_suggestions()
        if position <= STEP_ORDER.index(CreationStep.ICON):
            self.draft.icon_confirmed = False
        return self.step

    def reset(self) -> None:
        self.draft = MarketDraft()
        self.transcript = []
        self.denied_urls = []
        self.search_variation = 0
        self.candidates = []
        self._discovery_key = None

    def finalize(self) -> MarketDraft:
        self._require(CreationStep.COMPLETE)
        return self.draft.snapshot()


__all__ = [
    "CreationStep",
    "STEP_ORDER",
    "DiscoverySession",
    "ValidationCache",
    "derive_step",
    "normalize_url",
    "suggest_market_name",
    "suggest_market_description",
    "clamp_text",
]
