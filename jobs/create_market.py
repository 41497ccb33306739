"""End-to-end job: discover a metric, validate a source and deploy the market."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Sequence

from dotenv import load_dotenv
from tenacity import wait_exponential

from jobs.config import DeploymentSettings, load_settings
from pipelines.deploy.clients import DeploymentClients
from pipelines.deploy.orchestrator import DeploymentOrchestrator, Pipeline
from pipelines.deploy.steps import DeploymentMode
from pipelines.discovery import CreationStep, DiscoverySession
from pipelines.errors import DefinitionRejected, MarketCreationError, SourceValidationFailed
from pipelines.model import MarketDraft
from pipelines.progress import ProgressChannel
from pipelines.sources.deployment_gateway import (
    HttpDeploymentGateway,
    RelayerBroadcaster,
    RemoteSigner,
    WalletBroadcaster,
)
from pipelines.sources.metric_definition import MetricDefinitionClient
from pipelines.sources.source_discovery import SourceDiscoveryClient
from pipelines.sources.value_validation import ValueValidationClient
from storage.db import DuckDbMetadataStore

load_dotenv()

logger = logging.getLogger(__name__)


def build_discovery_session(settings: DeploymentSettings) -> DiscoverySession:
    return DiscoverySession(
        MetricDefinitionClient(),
        SourceDiscoveryClient(),
        ValueValidationClient(
            poll_interval=settings.validation_poll_interval_seconds,
            timeout=settings.validation_timeout_seconds,
        ),
    )


def build_deployment_clients(
    settings: DeploymentSettings, gateway: HttpDeploymentGateway | None = None
) -> DeploymentClients:
    gateway = gateway or HttpDeploymentGateway()
    if settings.mode is DeploymentMode.SPONSORED:
        return DeploymentClients(
            facets=gateway,
            broadcaster=RelayerBroadcaster(),
            chain=gateway,
            admin=gateway,
            store=DuckDbMetadataStore(),
            signer=RemoteSigner(),
        )
    return DeploymentClients(
        facets=gateway,
        broadcaster=WalletBroadcaster(gateway),
        chain=gateway,
        admin=gateway,
        store=DuckDbMetadataStore(),
    )


def build_orchestrator(
    settings: DeploymentSettings,
    *,
    clients: DeploymentClients | None = None,
    channel: ProgressChannel | None = None,
) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(
        clients or build_deployment_clients(settings),
        mode=settings.mode,
        channel=channel,
        options=settings.deployment_options(),
        max_attempts=settings.max_attempts,
        wait=wait_exponential(multiplier=settings.backoff_base_seconds, max=settings.backoff_max_seconds),
    )


def _default_icon(draft: MarketDraft) -> str | None:
    source = draft.selected_source
    if source is None or not source.host:
        return None
    return f"https://{source.host}/favicon.ico"


async def run_discovery(
    session: DiscoverySession,
    description: str,
    *,
    clarifications: Sequence[str] = (),
    name: str | None = None,
    market_description: str | None = None,
    source_url: str | None = None,
    icon_url: str | None = None,
) -> MarketDraft:
    """Drive the discovery flow without prompts, accepting suggestions where no override is given."""

    await session.start(description)
    for reply in clarifications:
        if session.step is not CreationStep.CLARIFY_METRIC:
            break
        await session.clarify(reply)
    if session.step is CreationStep.CLARIFY_METRIC:
        raise DefinitionRejected(session.rejection_reason)

    session.confirm_name(name)
    session.confirm_description(market_description)

    if source_url:
        await session.select_custom_url(source_url)
    else:
        candidates = await session.load_sources()
        for candidate in candidates:
            try:
                await session.select_source(candidate)
                break
            except SourceValidationFailed as exc:
                logger.warning("Source %s rejected: %s", candidate.url, exc.reason)
        if session.draft.selected_source is None:
            raise SourceValidationFailed(
                "(discovered sources)", f"none of {len(candidates)} candidates yielded a numeric value"
            )

    session.confirm_icon(icon_url or _default_icon(session.draft))
    return session.finalize()


async def create_market_async(
    description: str,
    *,
    settings: DeploymentSettings | None = None,
    session: DiscoverySession | None = None,
    orchestrator: DeploymentOrchestrator | None = None,
    gateway: HttpDeploymentGateway | None = None,
    **discovery_overrides,
) -> Pipeline:
    settings = settings or load_settings()
    if not settings.creator_address:
        raise ValueError("CREATOR_ADDRESS must be set to create markets.")
    gateway = gateway or HttpDeploymentGateway()
    session = session or build_discovery_session(settings)
    orchestrator = orchestrator or build_orchestrator(
        settings, clients=build_deployment_clients(settings, gateway)
    )

    draft = await run_discovery(session, description, **discovery_overrides)
    logger.info("Draft ready: %s (start price %s).", draft.name, draft.start_price)

    terms = await gateway.fetch_bond_terms()
    bond = terms.split()
    logger.info(
        "Creation bond %s (fee %s, refundable %s).", bond.bond_amount, bond.fee, bond.refundable
    )

    pipeline = orchestrator.create_pipeline(draft, creator=settings.creator_address, bond=bond.as_dict())
    await orchestrator.run(pipeline)
    pipeline.raise_for_status()
    return pipeline


def main(description: str, **kwargs) -> int:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    try:
        pipeline = asyncio.run(create_market_async(description, **kwargs))
    except MarketCreationError as exc:
        logger.error("Market creation failed: %s", exc)
        return 1
    market = pipeline.deployed_market
    logger.info(
        "Create-market job finished (pipeline=%s, market=%s).",
        pipeline.pipeline_id,
        market.market_address if market else None,
    )
    return 0


__all__ = [
    "build_discovery_session",
    "build_deployment_clients",
    "build_orchestrator",
    "run_discovery",
    "create_market_async",
    "main",
]
