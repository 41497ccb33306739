"""Capability interfaces the deployment steps depend on.

Sponsored and direct deployments share step implementations; what differs is
which ``Broadcaster`` is plugged in and whether a ``Signer`` is present.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Sequence

from pipelines.deploy.state import (
    CreateMarketRequest,
    FacetConfig,
    MetaCreateContext,
    Receipt,
    SignedPayload,
)
from pipelines.model import DeployedMarket


class FacetConfigSource(Protocol):
    async def fetch_facet_config(self) -> FacetConfig: ...


class Signer(Protocol):
    async def sign_typed_data(self, typed_data: Mapping[str, Any]) -> SignedPayload: ...


class Broadcaster(Protocol):
    async def submit(
        self,
        request: CreateMarketRequest,
        *,
        typed_data: Mapping[str, Any] | None = None,
        signature: str | None = None,
    ) -> str:
        """Broadcast the create call and return the transaction hash."""


class ChainReader(Protocol):
    async def meta_create_context(self, request: CreateMarketRequest) -> MetaCreateContext: ...

    async def static_call(self, request: CreateMarketRequest) -> str | None:
        """Simulate the create call; return the revert reason, or None when it would succeed."""

    async def wait_for_receipt(self, transaction_hash: str) -> Receipt: ...

    async def missing_selectors(self, market_address: str, signatures: Sequence[str]) -> list[str]: ...

    async def session_registry(self, market_address: str) -> str | None: ...


class MarketAdmin(Protocol):
    async def add_selectors(self, market_address: str, facet_address: str, signatures: Sequence[str]) -> str: ...

    async def set_session_registry(self, market_address: str, registry: str) -> str: ...

    async def grant_role(self, role: str, account: str) -> str: ...


class MetadataStore(Protocol):
    async def save(self, market: DeployedMarket) -> None: ...


@dataclass(frozen=True)
class DeploymentClients:
    facets: FacetConfigSource
    broadcaster: Broadcaster
    chain: ChainReader
    admin: MarketAdmin
    store: MetadataStore
    signer: Signer | None = None


__all__ = [
    "FacetConfigSource",
    "Signer",
    "Broadcaster",
    "ChainReader",
    "MarketAdmin",
    "MetadataStore",
    "DeploymentClients",
]
