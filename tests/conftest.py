from __future__ import annotations

from decimal import Decimal

import pytest
from tenacity import wait_none

from fakes import (
    FakeBroadcaster,
    FakeGateway,
    FakeSigner,
    MemoryStore,
    candidate,
    measurable,
    validation,
)
from pipelines.deploy.clients import DeploymentClients
from pipelines.deploy.orchestrator import DeploymentOrchestrator
from pipelines.deploy.state import DeploymentOptions
from pipelines.model import MarketDraft
from pipelines.progress import ProgressChannel


@pytest.fixture()
def completed_draft() -> MarketDraft:
    return MarketDraft(
        prompt="median home price in austin",
        metric_definition=measurable(),
        name="Austin Median Home Price",
        description="A market tracking Median Home Price.",
        icon_url="https://example.com/icon.png",
        selected_source=candidate("https://data.example.com/austin", authority="Example Data"),
        validation=validation(suggestion="412.5"),
        start_price=Decimal("412.5"),
        name_confirmed=True,
        description_confirmed=True,
        icon_confirmed=True,
        tags=["REAL_ESTATE"],
    )


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def broadcaster() -> FakeBroadcaster:
    return FakeBroadcaster()


@pytest.fixture()
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture()
def channel() -> ProgressChannel:
    return ProgressChannel()


@pytest.fixture()
def make_orchestrator(gateway, broadcaster, store, channel):
    def _make(mode: str = "sponsored", *, signer: FakeSigner | None = None, **options) -> DeploymentOrchestrator:
        clients = DeploymentClients(
            facets=gateway,
            broadcaster=broadcaster,
            chain=gateway,
            admin=gateway,
            store=store,
            signer=signer if signer is not None else (FakeSigner() if mode == "sponsored" else None),
        )
        return DeploymentOrchestrator(
            clients,
            mode=mode,
            channel=channel,
            options=DeploymentOptions(**options),
            wait=wait_none(),
        )

    return _make
