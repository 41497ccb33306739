"""Step implementations for the deployment pipeline.

Every step takes the current ``PipelineState`` snapshot plus the capability
clients and returns a ``StepResult``. Exceptions that escape a step are
classified by the orchestrator; steps only catch what they need to classify
differently (submission, confirmation timeouts).
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import UTC, datetime, timedelta
from typing import Any, Mapping

import httpx

from pipelines.deploy.clients import DeploymentClients
from pipelines.deploy.state import (
    CreateMarketRequest,
    MetaCreateContext,
    PipelineState,
    Receipt,
)
from pipelines.deploy.steps import StepFn, StepName, StepNotice, StepOutcome, StepResult
from pipelines.economics import PRICE_DECIMALS, to_base_units
from pipelines.model import DeployedMarket

SETTLEMENT_PERIOD = timedelta(days=365)
META_REQUEST_TTL = timedelta(minutes=15)
CREATION_EVENT = "FuturesMarketCreated"
USER_PROVIDED_SOURCE = "User Provided"
DEFAULT_CATEGORY = "CUSTOM"

META_CREATE_TYPES: tuple[tuple[str, str], ...] = (
    ("marketSymbol", "string"),
    ("metricUrl", "string"),
    ("settlementDate", "uint256"),
    ("startPrice", "uint256"),
    ("dataSource", "string"),
    ("tagsHash", "bytes32"),
    ("diamondOwner", "address"),
    ("cutHash", "bytes32"),
    ("initFacet", "address"),
    ("creator", "address"),
    ("nonce", "uint256"),
    ("deadline", "uint256"),
)

_WHITESPACE = re.compile(r"\s+")

logger = logging.getLogger(__name__)


def _ok(state: PipelineState, *notices: StepNotice) -> StepResult:
    return StepResult(state, StepOutcome.success(), notices)


def _fatal(state: PipelineState, reason: str, cause: BaseException | None = None) -> StepResult:
    return StepResult(state, StepOutcome.fatal(reason, cause))


def _retry(state: PipelineState, reason: str, cause: BaseException | None = None) -> StepResult:
    return StepResult(state, StepOutcome.retryable(reason, cause))


def market_symbol(name: str) -> str:
    return _WHITESPACE.sub("-", name.strip()).upper()


def build_meta_create_typed_data(
    request: CreateMarketRequest, context: MetaCreateContext, deadline: int
) -> dict[str, Any]:
    message = {
        "marketSymbol": request.symbol,
        "metricUrl": request.metric_url,
        "settlementDate": str(request.settlement_date),
        "startPrice": str(request.start_price),
        "dataSource": request.data_source,
        "tagsHash": context.tags_hash,
        "diamondOwner": request.diamond_owner,
        "cutHash": context.cut_hash,
        "initFacet": request.init_facet,
        "creator": request.creator,
        "nonce": str(context.nonce),
        "deadline": str(deadline),
    }
    return {
        "domain": dict(context.domain),
        "types": {"MetaCreate": [{"name": name, "type": kind} for name, kind in META_CREATE_TYPES]},
        "primaryType": "MetaCreate",
        "message": message,
    }


async def _receipt_within_timeout(
    state: PipelineState, clients: DeploymentClients, transaction_hash: str
) -> Receipt:
    async with asyncio.timeout(state.options.confirmation_timeout):
        return await clients.chain.wait_for_receipt(transaction_hash)


# -- shared steps ------------------------------------------------------------


async def fetch_facet_config(state: PipelineState, clients: DeploymentClients) -> StepResult:
    config = await clients.facets.fetch_facet_config()
    if not config.cut:
        return _fatal(state, "facet cut configuration is empty")
    if not config.init_facet:
        return _fatal(state, "facet cut configuration has no init facet")
    logger.info(
        "Pipeline %s: %s facets, init facet %s.", state.pipeline_id, len(config.cut), config.init_facet
    )
    return _ok(
        state.model_copy(update={"facet_config": config, "chain_id": config.chain_id or state.chain_id})
    )


async def build_initializer(state: PipelineState, clients: DeploymentClients) -> StepResult:
    draft = state.draft
    config = state.facet_config
    if config is None:
        return _fatal(state, "facet configuration missing")
    symbol = market_symbol(draft.name)
    if not symbol:
        return _fatal(state, "market name is empty")
    source = draft.selected_source
    if source is None:
        return _fatal(state, "no data source selected")
    if draft.start_price is None:
        return _fatal(state, "start price is missing")
    start_price = to_base_units(draft.start_price, PRICE_DECIMALS)
    if start_price <= 0:
        return _fatal(state, f"start price must be positive, got {draft.start_price}")

    settlement = datetime.now(UTC) + SETTLEMENT_PERIOD
    request = CreateMarketRequest(
        symbol=symbol,
        metric_url=source.url,
        settlement_date=int(settlement.timestamp()),
        start_price=start_price,
        data_source=source.authority or USER_PROVIDED_SOURCE,
        tags=tuple(draft.tags),
        diamond_owner=state.options.diamond_owner or state.creator,
        cut=config.cut,
        init_facet=config.init_facet,
        creator=state.creator,
    )
    return _ok(state.model_copy(update={"request": request}))


async def submit_create(state: PipelineState, clients: DeploymentClients) -> StepResult:
    """Broadcast the create call through whichever broadcaster the mode plugs in.

    Only a failure to connect proves nothing was sent; any other error leaves
    the broadcast state unknown and is fatal.
    """

    if state.request is None:
        return _fatal(state, "create request was not built")
    try:
        transaction_hash = await clients.broadcaster.submit(
            state.request, typed_data=state.typed_data, signature=state.signature
        )
    except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
        return _retry(state, f"broadcaster unreachable: {exc}", exc)
    except (httpx.HTTPError, TimeoutError) as exc:
        return _fatal(state, f"submission outcome unknown: {exc!r}", exc)
    if not transaction_hash:
        return _fatal(state, "broadcaster returned no transaction hash")
    logger.info("Pipeline %s: create transaction sent %s.", state.pipeline_id, transaction_hash)
    return _ok(
        state.model_copy(update={"transaction_hash": transaction_hash}),
        StepNotice("sent", {"hash": transaction_hash}),
    )


async def await_confirmation(state: PipelineState, clients: DeploymentClients) -> StepResult:
    transaction_hash = state.transaction_hash
    if not transaction_hash:
        return _fatal(state, "no transaction hash to confirm")
    try:
        receipt = await _receipt_within_timeout(state, clients, transaction_hash)
    except TimeoutError as exc:
        return _retry(state, f"no receipt for {transaction_hash} within {state.options.confirmation_timeout:.0f}s", exc)
    if not receipt.success:
        return _fatal(state, f"transaction {transaction_hash} reverted")
    return _ok(
        state.model_copy(update={"receipt": receipt}),
        StepNotice("mined", {"hash": transaction_hash, "blockNumber": receipt.block_number}),
    )


async def parse_creation_event(state: PipelineState, clients: DeploymentClients) -> StepResult:
    receipt = state.receipt
    event = receipt.find_event(CREATION_EVENT) if receipt else None
    if event is None:
        return _fatal(state, f"{CREATION_EVENT} event not found in receipt")
    order_book = event.args.get("orderBook")
    market_id = event.args.get("marketId")
    if not order_book or not market_id:
        return _fatal(state, f"{CREATION_EVENT} event is missing orderBook or marketId")
    logger.info("Pipeline %s: market created at %s.", state.pipeline_id, order_book)
    return _ok(state.model_copy(update={"market_address": order_book, "market_id_bytes32": market_id}))


async def verify_selectors(state: PipelineState, clients: DeploymentClients) -> StepResult:
    if not state.market_address:
        return _fatal(state, "market address unknown")
    missing = await clients.chain.missing_selectors(state.market_address, state.options.required_selectors)
    if missing:
        logger.warning("Pipeline %s: missing selectors %s.", state.pipeline_id, ", ".join(missing))
    return _ok(state.model_copy(update={"missing_selectors": tuple(missing)}))


def _facet_for(state: PipelineState, signatures: tuple[str, ...]) -> str | None:
    if state.facet_config is not None:
        for entry in state.facet_config.cut:
            if set(signatures) <= set(entry.signatures):
                return entry.facet_address
    return state.options.placement_facet


async def patch_selectors(state: PipelineState, clients: DeploymentClients) -> StepResult:
    """Add only the selectors still missing on chain; a no-op once they are present."""

    if not state.missing_selectors:
        return _ok(state)
    market = state.market_address
    if not market:
        return _fatal(state, "market address unknown")

    # Re-read first so a resumed or retried patch never re-adds an existing selector.
    missing = tuple(await clients.chain.missing_selectors(market, state.missing_selectors))
    if not missing:
        return _ok(state.model_copy(update={"missing_selectors": ()}))
    facet = _facet_for(state, missing)
    if not facet:
        return _fatal(state, f"no facet provides {', '.join(missing)}")

    transaction_hash = await clients.admin.add_selectors(market, facet, missing)
    try:
        receipt = await _receipt_within_timeout(state, clients, transaction_hash)
    except TimeoutError as exc:
        return _retry(state, f"selector patch {transaction_hash} not confirmed", exc)
    if not receipt.success:
        return _fatal(state, f"selector patch {transaction_hash} reverted")

    still_missing = tuple(await clients.chain.missing_selectors(market, missing))
    if still_missing:
        return _retry(state, f"selectors still missing after patch: {', '.join(still_missing)}")
    return _ok(state.model_copy(update={"missing_selectors": ()}))


async def grant_roles(state: PipelineState, clients: DeploymentClients) -> StepResult:
    market = state.market_address
    if not market:
        return _fatal(state, "market address unknown")
    granted: list[str] = []
    for role in state.options.grant_roles:
        transaction_hash = await clients.admin.grant_role(role, market)
        try:
            receipt = await _receipt_within_timeout(state, clients, transaction_hash)
        except TimeoutError as exc:
            return _retry(state, f"grant of {role} not confirmed", exc)
        if not receipt.success:
            return _fatal(state, f"grant of {role} reverted")
        granted.append(role)
    return _ok(state.model_copy(update={"granted_roles": tuple(granted)}))


def build_deployed_market(state: PipelineState) -> DeployedMarket:
    draft = state.draft
    request = state.request
    receipt = state.receipt
    if request is None or not state.transaction_hash or not state.market_address:
        raise ValueError(f"Pipeline {state.pipeline_id} has no confirmed market to describe.")
    prefix = request.symbol.split("-")[0] or request.symbol
    definition = draft.metric_definition
    metadata: dict[str, Any] = {
        "name": f"{prefix.upper()} Futures",
        "title": draft.name,
        "description": draft.description,
        "icon_image_url": draft.icon_url,
        "category": request.tags[0] if request.tags else DEFAULT_CATEGORY,
        "decimals": PRICE_DECIMALS,
        "metric_url": request.metric_url,
        "data_source": request.data_source,
        "tags": list(request.tags),
        "metric_definition": definition.model_dump(mode="json") if definition else None,
        "start_price": str(draft.start_price),
        "settlement_date": datetime.fromtimestamp(request.settlement_date, UTC).isoformat(),
        "creator_wallet_address": state.creator,
        "deployment_mode": state.mode,
        "deployment_block_number": receipt.block_number if receipt else None,
        "deployment_gas_used": receipt.gas_used if receipt else None,
        "granted_roles": list(state.granted_roles),
        "session_registry": state.options.session_registry if state.session_registry_attached else None,
    }
    if state.bond is not None:
        metadata["bond"] = dict(state.bond)
    return DeployedMarket(
        symbol=request.symbol,
        market_address=state.market_address,
        market_id_bytes32=state.market_id_bytes32 or "",
        chain_id=state.chain_id or 0,
        transaction_hash=state.transaction_hash,
        metadata=metadata,
    )


async def persist_metadata(state: PipelineState, clients: DeploymentClients) -> StepResult:
    if state.request is None or not state.transaction_hash or not state.market_address:
        return _fatal(state, "deployment incomplete; nothing to persist")
    market = build_deployed_market(state)
    await clients.store.save(market)
    logger.info("Pipeline %s: metadata saved for %s.", state.pipeline_id, market.symbol)
    return _ok(state.model_copy(update={"deployed_market": market}))


async def finalize(state: PipelineState, clients: DeploymentClients) -> StepResult:
    logger.info("Pipeline %s: deployment finalized (%s).", state.pipeline_id, state.market_address)
    return _ok(state)


# -- sponsored only ----------------------------------------------------------


async def prepare_meta_request(state: PipelineState, clients: DeploymentClients) -> StepResult:
    if state.request is None:
        return _fatal(state, "create request was not built")
    context = await clients.chain.meta_create_context(state.request)
    deadline = int((datetime.now(UTC) + META_REQUEST_TTL).timestamp())
    typed_data = build_meta_create_typed_data(state.request, context, deadline)
    chain_id = context.domain.get("chainId")
    update: dict[str, Any] = {"meta_context": context, "typed_data": typed_data}
    if isinstance(chain_id, int) and not state.chain_id:
        update["chain_id"] = chain_id
    return _ok(state.model_copy(update=update))


async def sign_meta_request(state: PipelineState, clients: DeploymentClients) -> StepResult:
    if clients.signer is None:
        return _fatal(state, "sponsored deployment requires a signer")
    if state.typed_data is None:
        return _fatal(state, "meta request was not prepared")
    signed = await clients.signer.sign_typed_data(state.typed_data)
    if signed.address.lower() != state.creator.lower():
        return _fatal(state, f"signer {signed.address} does not match creator {state.creator}")
    return _ok(state.model_copy(update={"signature": signed.signature}))


async def attach_session_registry(state: PipelineState, clients: DeploymentClients) -> StepResult:
    registry = state.options.session_registry
    market = state.market_address
    if not registry:
        logger.info("Pipeline %s: no session registry configured; skipping.", state.pipeline_id)
        return _ok(state)
    if not market:
        return _fatal(state, "market address unknown")
    current = await clients.chain.session_registry(market)
    if current and current.lower() == registry.lower():
        return _ok(state.model_copy(update={"session_registry_attached": True}))

    transaction_hash = await clients.admin.set_session_registry(market, registry)
    try:
        receipt = await _receipt_within_timeout(state, clients, transaction_hash)
    except TimeoutError as exc:
        return _retry(state, f"session registry update {transaction_hash} not confirmed", exc)
    if not receipt.success:
        return _fatal(state, f"session registry update {transaction_hash} reverted")
    return _ok(state.model_copy(update={"session_registry_attached": True}))


# -- direct only -------------------------------------------------------------


async def preflight_static_call(state: PipelineState, clients: DeploymentClients) -> StepResult:
    """Simulate the create call; a revert is reported but does not stop the deployment."""

    if state.request is None:
        return _fatal(state, "create request was not built")
    revert_reason = await clients.chain.static_call(state.request)
    if revert_reason:
        logger.warning("Pipeline %s: static call reverted: %s", state.pipeline_id, revert_reason)
        return _ok(state, StepNotice("error", {"reason": revert_reason, "advisory": True}))
    return _ok(state)


STEP_IMPLEMENTATIONS: Mapping[StepName, StepFn] = {
    StepName.FETCH_FACET_CONFIG: fetch_facet_config,
    StepName.BUILD_INITIALIZER: build_initializer,
    StepName.PREPARE_META_REQUEST: prepare_meta_request,
    StepName.SIGN_META_REQUEST: sign_meta_request,
    StepName.SUBMIT_TO_RELAYER: submit_create,
    StepName.PREFLIGHT_STATIC_CALL: preflight_static_call,
    StepName.SUBMIT_TRANSACTION: submit_create,
    StepName.AWAIT_CONFIRMATION: await_confirmation,
    StepName.PARSE_CREATION_EVENT: parse_creation_event,
    StepName.VERIFY_SELECTORS: verify_selectors,
    StepName.PATCH_SELECTORS: patch_selectors,
    StepName.ATTACH_SESSION_REGISTRY: attach_session_registry,
    StepName.GRANT_ROLES: grant_roles,
    StepName.PERSIST_METADATA: persist_metadata,
    StepName.FINALIZE: finalize,
}


__all__ = [
    "STEP_IMPLEMENTATIONS",
    "build_meta_create_typed_data",
    "build_deployed_market",
    "market_symbol",
]
