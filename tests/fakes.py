"""In-memory stand-ins for the external services used by the tests."""

from __future__ import annotations

from collections import defaultdict
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Mapping, Sequence

from pipelines.deploy.state import (
    ChainEvent,
    CreateMarketRequest,
    FacetConfig,
    FacetCutEntry,
    MetaCreateContext,
    Receipt,
    REQUIRED_PLACEMENT_SELECTORS,
    SignedPayload,
)
from pipelines.economics import BondTerms
from pipelines.model import (
    DeployedMarket,
    MetricDefinition,
    SourceCandidate,
    ValidationResult,
)

CREATOR = "0x00000000000000000000000000000000000000c0"
MARKET = "0x00000000000000000000000000000000000000aa"
MARKET_ID = "0x" + "ab" * 32
CREATE_TX = "0xcreate"


# -- discovery fakes -----------------------------------------------------------


def measurable(name: str = "Median Home Price", method: str = "Monthly median sale price") -> MetricDefinition:
    return MetricDefinition(measurable=True, name=name, unit="USD", measurement_method=method)


def rejected(reason: str = "Too vague") -> MetricDefinition:
    return MetricDefinition(measurable=False, rejection_reason=reason)


def validation(value: float = 412_000.0, suggestion: str | None = None) -> ValidationResult:
    return ValidationResult(
        value=value,
        unit="USD",
        as_of=datetime(2025, 1, 1, tzinfo=UTC),
        confidence=0.9,
        asset_price_suggestion=Decimal(suggestion) if suggestion else None,
    )


class FakeDefinitions:
    def __init__(self, *responses: MetricDefinition) -> None:
        self.responses = list(responses)
        self.calls: list[str] = []

    async def define(self, description: str) -> MetricDefinition:
        self.calls.append(description)
        return self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]


class FakeDiscovery:
    def __init__(self, *batches: Sequence[SourceCandidate]) -> None:
        self.batches = [list(batch) for batch in batches]
        self.calls: list[dict[str, Any]] = []

    async def discover(
        self, description: str, *, search_variation: int = 0, exclude_urls: Sequence[str] = ()
    ) -> list[SourceCandidate]:
        self.calls.append(
            {"description": description, "variation": search_variation, "exclude": list(exclude_urls)}
        )
        index = min(len(self.calls) - 1, len(self.batches) - 1)
        return list(self.batches[index])


class FakeValidator:
    def __init__(self, results: Mapping[str, ValidationResult | Exception]) -> None:
        self.results = dict(results)
        self.calls: list[str] = []

    async def validate(
        self, metric: str, urls: Sequence[str], *, context: str = "create", description: str | None = None
    ) -> ValidationResult:
        url = urls[0]
        self.calls.append(url)
        outcome = self.results[url]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def candidate(url: str, authority: str = "", confidence: float = 0.8, primary: bool = False) -> SourceCandidate:
    return SourceCandidate(url=url, authority=authority, confidence=confidence, is_primary=primary)


# -- deployment fakes ----------------------------------------------------------


class FakeGateway:
    """In-memory FacetConfigSource + ChainReader + MarketAdmin."""

    def __init__(self, *, missing: Sequence[str] = (), patch_sticks: bool = True, registry: str | None = None):
        self.facet_config = FacetConfig(
            cut=(
                FacetCutEntry(
                    facet_address="0xplacement",
                    selectors=("0x01",),
                    signatures=REQUIRED_PLACEMENT_SELECTORS,
                ),
                FacetCutEntry(facet_address="0xvault", selectors=("0x02",), signatures=("deposit(uint256)",)),
            ),
            init_facet="0xinit",
            chain_id=31337,
        )
        self.missing = list(missing)
        self.patch_sticks = patch_sticks
        self.registry = registry
        self.revert_reason: str | None = None
        self.create_receipt_success = True
        self.errors: dict[str, list[BaseException]] = defaultdict(list)
        self.calls: list[str] = []
        self.patches: list[tuple[str, tuple[str, ...]]] = []
        self.grants: list[tuple[str, str]] = []
        self.registry_updates: list[str] = []
        self._tx_counter = 0
        self.bond_terms = BondTerms(default_bond_amount=1_000_000, creation_penalty_bps=250)

    def fail(self, method: str, *errors: BaseException) -> None:
        self.errors[method].extend(errors)

    def _enter(self, method: str) -> None:
        self.calls.append(method)
        if self.errors[method]:
            raise self.errors[method].pop(0)

    def _next_tx(self, prefix: str) -> str:
        self._tx_counter += 1
        return f"0x{prefix}{self._tx_counter}"

    async def fetch_facet_config(self) -> FacetConfig:
        self._enter("fetch_facet_config")
        return self.facet_config

    async def fetch_bond_terms(self) -> BondTerms:
        self._enter("fetch_bond_terms")
        return self.bond_terms

    async def meta_create_context(self, request: CreateMarketRequest) -> MetaCreateContext:
        self._enter("meta_create_context")
        return MetaCreateContext(
            domain={"name": "FuturesMarketFactory", "version": "1", "chainId": 31337},
            nonce=7,
            tags_hash="0x" + "11" * 32,
            cut_hash="0x" + "22" * 32,
        )

    async def static_call(self, request: CreateMarketRequest) -> str | None:
        self._enter("static_call")
        return self.revert_reason

    async def wait_for_receipt(self, transaction_hash: str) -> Receipt:
        self._enter("wait_for_receipt")
        if transaction_hash == CREATE_TX:
            return Receipt(
                transaction_hash=transaction_hash,
                success=self.create_receipt_success,
                block_number=100,
                events=(ChainEvent(name="FuturesMarketCreated", args={"orderBook": MARKET, "marketId": MARKET_ID}),),
            )
        return Receipt(transaction_hash=transaction_hash, block_number=101)

    async def missing_selectors(self, market_address: str, signatures: Sequence[str]) -> list[str]:
        self._enter("missing_selectors")
        return [sig for sig in signatures if sig in self.missing]

    async def session_registry(self, market_address: str) -> str | None:
        self._enter("session_registry")
        return self.registry

    async def add_selectors(self, market_address: str, facet_address: str, signatures: Sequence[str]) -> str:
        self._enter("add_selectors")
        self.patches.append((facet_address, tuple(signatures)))
        if self.patch_sticks:
            self.missing = [sig for sig in self.missing if sig not in signatures]
        return self._next_tx("patch")

    async def set_session_registry(self, market_address: str, registry: str) -> str:
        self._enter("set_session_registry")
        self.registry_updates.append(registry)
        self.registry = registry
        return self._next_tx("registry")

    async def grant_role(self, role: str, account: str) -> str:
        self._enter("grant_role")
        self.grants.append((role, account))
        return self._next_tx("grant")


class FakeBroadcaster:
    def __init__(self) -> None:
        self.errors: list[BaseException] = []
        self.submissions: list[dict[str, Any]] = []
        self.on_submit = None

    async def submit(
        self,
        request: CreateMarketRequest,
        *,
        typed_data: Mapping[str, Any] | None = None,
        signature: str | None = None,
    ) -> str:
        self.submissions.append({"request": request, "typed_data": typed_data, "signature": signature})
        if self.errors:
            raise self.errors.pop(0)
        if self.on_submit is not None:
            self.on_submit()
        return CREATE_TX


class FakeSigner:
    def __init__(self, address: str = CREATOR) -> None:
        self.address = address
        self.signed: list[Mapping[str, Any]] = []

    async def sign_typed_data(self, typed_data: Mapping[str, Any]) -> SignedPayload:
        self.signed.append(typed_data)
        return SignedPayload(signature="0xsig", address=self.address)


class MemoryStore:
    def __init__(self) -> None:
        self.saved: list[DeployedMarket] = []
        self.errors: list[BaseException] = []

    async def save(self, market: DeployedMarket) -> None:
        if self.errors:
            raise self.errors.pop(0)
        self.saved.append(market)
