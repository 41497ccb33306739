"""Immutable per-step state threaded through the deployment pipeline."""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from pipelines.model import DeployedMarket, MarketDraft

REQUIRED_PLACEMENT_SELECTORS: tuple[str, ...] = (
    "placeLimitOrder(uint256,uint256,bool)",
    "placeMarginLimitOrder(uint256,uint256,bool)",
    "placeMarketOrder(uint256,bool)",
    "placeMarginMarketOrder(uint256,bool)",
    "placeMarketOrderWithSlippage(uint256,bool,uint256)",
    "placeMarginMarketOrderWithSlippage(uint256,bool,uint256)",
    "cancelOrder(uint256)",
)
DEFAULT_GRANT_ROLES: tuple[str, ...] = ("ORDERBOOK_ROLE", "SETTLEMENT_ROLE")
DEFAULT_CONFIRMATION_TIMEOUT_SECONDS = 180.0

DeploymentModeName = Literal["sponsored", "direct"]


class PipelineStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ORPHANED = "orphaned"

    @property
    def is_terminal(self) -> bool:
        return self not in (PipelineStatus.PENDING, PipelineStatus.RUNNING)


class DeploymentOptions(BaseModel):
    """Deployment parameters frozen into the pipeline at launch."""

    model_config = ConfigDict(frozen=True)

    required_selectors: tuple[str, ...] = REQUIRED_PLACEMENT_SELECTORS
    grant_roles: tuple[str, ...] = DEFAULT_GRANT_ROLES
    session_registry: Optional[str] = None
    placement_facet: Optional[str] = None
    diamond_owner: Optional[str] = None
    confirmation_timeout: float = Field(default=DEFAULT_CONFIRMATION_TIMEOUT_SECONDS, gt=0)


class FacetCutEntry(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    facet_address: str = Field(..., alias="facetAddress")
    action: int = 0
    selectors: tuple[str, ...] = Field(default=(), alias="functionSelectors")
    signatures: tuple[str, ...] = ()


class FacetConfig(BaseModel):
    """Facet cut and initializer facet used to assemble a new market diamond."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    cut: tuple[FacetCutEntry, ...] = ()
    init_facet: str = Field(default="", alias="initFacet")
    chain_id: Optional[int] = Field(default=None, alias="chainId")


class CreateMarketRequest(BaseModel):
    """Arguments of the factory's create call, start price already in 6-decimal units."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    metric_url: str
    settlement_date: int
    start_price: int
    data_source: str
    tags: tuple[str, ...] = ()
    diamond_owner: str
    cut: tuple[FacetCutEntry, ...]
    init_facet: str
    creator: str

    def to_wire(self) -> dict[str, Any]:
        return {
            "marketSymbol": self.symbol,
            "metricUrl": self.metric_url,
            "settlementDate": str(self.settlement_date),
            "startPrice": str(self.start_price),
            "dataSource": self.data_source,
            "tags": list(self.tags),
            "diamondOwner": self.diamond_owner,
            "cut": [entry.model_dump(by_alias=True) for entry in self.cut],
            "initFacet": self.init_facet,
            "creator": self.creator,
        }


class MetaCreateContext(BaseModel):
    """On-chain values needed to build the meta-create typed data."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    domain: dict[str, Any]
    nonce: int
    tags_hash: str = Field(..., alias="tagsHash")
    cut_hash: str = Field(..., alias="cutHash")


class ChainEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class Receipt(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    transaction_hash: str = Field(..., alias="transactionHash")
    success: bool = True
    block_number: Optional[int] = Field(default=None, alias="blockNumber")
    gas_used: Optional[int] = Field(default=None, alias="gasUsed")
    events: tuple[ChainEvent, ...] = ()

    def find_event(self, name: str) -> ChainEvent | None:
        return next((event for event in self.events if event.name == name), None)


class SignedPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    signature: str
    address: str


class PipelineState(BaseModel):
    """Snapshot handed to each step; steps return an updated copy, never mutate."""

    model_config = ConfigDict(frozen=True)

    pipeline_id: str
    mode: DeploymentModeName
    step_index: int = 0
    draft: MarketDraft
    creator: str
    options: DeploymentOptions = Field(default_factory=DeploymentOptions)
    bond: Optional[dict[str, str]] = None

    chain_id: Optional[int] = None
    facet_config: Optional[FacetConfig] = None
    request: Optional[CreateMarketRequest] = None
    meta_context: Optional[MetaCreateContext] = None
    typed_data: Optional[dict[str, Any]] = None
    signature: Optional[str] = None
    transaction_hash: Optional[str] = None
    receipt: Optional[Receipt] = None
    market_address: Optional[str] = None
    market_id_bytes32: Optional[str] = None
    missing_selectors: tuple[str, ...] = ()
    session_registry_attached: bool = False
    granted_roles: tuple[str, ...] = ()
    deployed_market: Optional[DeployedMarket] = None


__all__ = [
    "PipelineStatus",
    "PipelineState",
    "DeploymentOptions",
    "FacetCutEntry",
    "FacetConfig",
    "CreateMarketRequest",
    "MetaCreateContext",
    "ChainEvent",
    "Receipt",
    "SignedPayload",
    "REQUIRED_PLACEMENT_SELECTORS",
    "DEFAULT_GRANT_ROLES",
]
