"""Canonical data model for market drafts, metric evidence and deployed markets."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Literal, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field


class MetricDefinition(BaseModel):
    """Structured, measurable definition returned by the metric definition service."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    measurable: bool = Field(
        ..., description="Whether the metric can be objectively measured from public data."
    )
    name: str = Field(default="", description="Concise, neutral metric name.")
    unit: str = Field(default="", description="Measurement unit (USD, count, %, index...).")
    scope: str = Field(default="", description="Geographic or entity scope of the metric.")
    time_basis: str = Field(default="", description="Snapshot, daily, monthly, annual...")
    measurement_method: str = Field(
        default="", description="High-level, neutral description of how the value is measured."
    )
    rejection_reason: Optional[str] = Field(
        default=None, description="Why the description was judged not measurable."
    )
    assumptions: list[str] = Field(default_factory=list)


class SourceCandidate(BaseModel):
    """A ranked data source able to report the metric."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    url: str
    authority: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    is_primary: bool = False
    user_provided: bool = False

    @property
    def host(self) -> str:
        return urlsplit(self.url).hostname or ""

    @property
    def label(self) -> str:
        return self.authority or self.host.removeprefix("www.") or self.url


class EvidenceSource(BaseModel):
    """Supporting evidence for an extracted value."""

    model_config = ConfigDict(frozen=True)

    url: str
    quote: str = ""
    match_score: float = 0.5
    screenshot_url: str = ""


class ValidationResult(BaseModel):
    """Evidence that a source yields a usable numeric value for the metric."""

    model_config = ConfigDict(frozen=True)

    value: float
    unit: str = ""
    as_of: datetime
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    asset_price_suggestion: Optional[Decimal] = None
    sources: list[EvidenceSource] = Field(default_factory=list)

    @property
    def start_price(self) -> Decimal:
        if self.asset_price_suggestion is not None:
            return self.asset_price_suggestion
        return Decimal(str(self.value))


class MarketDraft(BaseModel):
    """The single mutable object driving one market creation session."""

    model_config = ConfigDict(validate_assignment=True)

    prompt: str = ""
    metric_definition: Optional[MetricDefinition] = None
    name: str = ""
    description: str = ""
    icon_url: Optional[str] = None
    selected_source: Optional[SourceCandidate] = None
    validation: Optional[ValidationResult] = None
    start_price: Optional[Decimal] = None

    name_confirmed: bool = False
    description_confirmed: bool = False
    icon_confirmed: bool = False
    name_touched: bool = False
    description_touched: bool = False
    tags: list[str] = Field(default_factory=list)

    def snapshot(self) -> "MarketDraft":
        """Deep copy handed to the deployment pipeline."""
        return self.model_copy(deep=True)


ProgressStatus = Literal["sent", "mined", "success", "error"]


class ProgressEvent(BaseModel):
    """Step-level status broadcast on the progress channel."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    pipeline_id: str = Field(..., alias="pipelineId")
    step: str
    status: ProgressStatus
    index: Optional[int] = None
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class DeployedMarket(BaseModel):
    """Terminal record of a successful deployment, keyed by transaction hash."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    market_address: str
    market_id_bytes32: str
    chain_id: int
    transaction_hash: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    deployed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


__all__ = [
    "MetricDefinition",
    "SourceCandidate",
    "EvidenceSource",
    "ValidationResult",
    "MarketDraft",
    "ProgressStatus",
    "ProgressEvent",
    "DeployedMarket",
]
