import asyncio
from decimal import Decimal

import httpx
import pytest
from tenacity import wait_none

from fakes import CREATE_TX, CREATOR, MARKET, FakeGateway, FakeSigner
from pipelines.deploy.actions import STEP_IMPLEMENTATIONS, build_deployed_market
from pipelines.deploy.clients import DeploymentClients
from pipelines.deploy.orchestrator import DeploymentOrchestrator
from pipelines.deploy.state import REQUIRED_PLACEMENT_SELECTORS, DeploymentOptions, PipelineState, PipelineStatus
from pipelines.deploy.steps import STEP_PLANS, DeploymentMode, StepName, build_plan, percent_complete
from pipelines.errors import OrphanedPipeline, PipelineNotResumable, StepFatal, StepRetryable, UnknownStepError
from pipelines.progress import ProgressChannel

MISSING = REQUIRED_PLACEMENT_SELECTORS[2]


def _status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "http://gateway.test/receipts/0x1")
    return httpx.HTTPStatusError("server error", request=request, response=httpx.Response(code, request=request))


def _run(orchestrator, draft, **kwargs):
    async def _go():
        pipeline = orchestrator.create_pipeline(draft, creator=CREATOR, **kwargs)
        return await orchestrator.run(pipeline)

    return asyncio.run(_go())


def _success_steps(pipeline):
    return [event.step for event in pipeline.events if event.status == "success"]


class BlockingGateway(FakeGateway):
    """Never returns the create receipt."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.blocked = asyncio.Event()

    async def wait_for_receipt(self, transaction_hash):
        self.calls.append("wait_for_receipt")
        self.blocked.set()
        await asyncio.Event().wait()


def test_sponsored_pipeline_patches_missing_selector(make_orchestrator, gateway, broadcaster, store, completed_draft):
    gateway.missing = [MISSING]
    orchestrator = make_orchestrator("sponsored")

    pipeline = _run(orchestrator, completed_draft, bond={"bondAmount": "100", "fee": "2", "refundable": "98"})

    assert pipeline.status is PipelineStatus.SUCCEEDED
    assert _success_steps(pipeline) == [step.value for step in STEP_PLANS[DeploymentMode.SPONSORED]]
    assert _success_steps(pipeline).count("finalize") == 1
    assert gateway.patches == [("0xplacement", (MISSING,))]
    assert pipeline.state.missing_selectors == ()
    assert len(store.saved) == 1
    assert gateway.grants == [("ORDERBOOK_ROLE", MARKET), ("SETTLEMENT_ROLE", MARKET)]
    assert pipeline.active_index == len(pipeline.steps) - 1
    assert pipeline.percent_complete == 100

    submission = broadcaster.submissions[0]
    assert submission["signature"] == "0xsig"
    message = submission["typed_data"]["message"]
    assert message["marketSymbol"] == "AUSTIN-MEDIAN-HOME-PRICE"
    assert message["startPrice"] == "412500000"
    assert message["creator"] == CREATOR
    assert submission["typed_data"]["primaryType"] == "MetaCreate"

    statuses = [(event.step, event.status) for event in pipeline.events]
    assert ("submit_to_relayer", "sent") in statuses
    assert ("await_confirmation", "mined") in statuses


def test_persisted_market_carries_metadata(make_orchestrator, store, completed_draft):
    pipeline = _run(
        make_orchestrator("sponsored"),
        completed_draft,
        bond={"bondAmount": "1000000", "fee": "25000", "refundable": "975000"},
    )

    saved = store.saved[0]
    assert saved == pipeline.deployed_market
    assert saved.transaction_hash == CREATE_TX
    assert saved.market_address == MARKET
    assert saved.chain_id == 31337
    assert saved.symbol == "AUSTIN-MEDIAN-HOME-PRICE"
    assert saved.metadata["name"] == "AUSTIN Futures"
    assert saved.metadata["category"] == "REAL_ESTATE"
    assert saved.metadata["decimals"] == 6
    assert saved.metadata["data_source"] == "Example Data"
    assert saved.metadata["bond"]["fee"] == "25000"


def test_transient_failures_then_success_records_three_attempts(make_orchestrator, gateway, completed_draft):
    gateway.fail("fetch_facet_config", httpx.ConnectError("down"), httpx.ConnectError("down"))

    pipeline = _run(make_orchestrator("sponsored"), completed_draft)

    assert pipeline.status is PipelineStatus.SUCCEEDED
    assert pipeline.attempts[StepName.FETCH_FACET_CONFIG] == 3
    assert pipeline.attempts[StepName.BUILD_INITIALIZER] == 1


def test_exhausted_retries_fail_the_pipeline(make_orchestrator, gateway, store, completed_draft):
    gateway.fail("fetch_facet_config", *(httpx.ConnectError("down") for _ in range(3)))

    pipeline = _run(make_orchestrator("sponsored"), completed_draft)

    assert pipeline.status is PipelineStatus.FAILED
    assert pipeline.failure.step is StepName.FETCH_FACET_CONFIG
    assert pipeline.attempts[StepName.FETCH_FACET_CONFIG] == 3
    assert pipeline.events[-1].status == "error"
    assert pipeline.events[-1].step == "fetch_facet_config"
    assert "meta_create_context" not in gateway.calls
    assert store.saved == []
    with pytest.raises(StepFatal) as excinfo:
        pipeline.raise_for_status()
    assert excinfo.value.step == "fetch_facet_config"


def test_step_raising_retryable_is_retried(make_orchestrator, gateway, completed_draft):
    gateway.fail("fetch_facet_config", StepRetryable("gateway warming up"))

    pipeline = _run(make_orchestrator("sponsored"), completed_draft)

    assert pipeline.status is PipelineStatus.SUCCEEDED
    assert pipeline.attempts[StepName.FETCH_FACET_CONFIG] == 2


def test_retryable_exhaustion_keeps_the_reason(make_orchestrator, gateway, completed_draft):
    gateway.fail("fetch_facet_config", *(StepRetryable("gateway warming up") for _ in range(3)))

    pipeline = _run(make_orchestrator("sponsored"), completed_draft)

    assert pipeline.status is PipelineStatus.FAILED
    assert pipeline.attempts[StepName.FETCH_FACET_CONFIG] == 3
    assert "gateway warming up" in pipeline.failure.reason


def test_non_transient_error_is_fatal_with_raw_cause(make_orchestrator, gateway, completed_draft):
    gateway.fail("fetch_facet_config", ValueError("malformed cut"))

    pipeline = _run(make_orchestrator("sponsored"), completed_draft)

    assert pipeline.status is PipelineStatus.FAILED
    assert pipeline.attempts[StepName.FETCH_FACET_CONFIG] == 1
    with pytest.raises(StepFatal) as excinfo:
        pipeline.raise_for_status()
    assert isinstance(excinfo.value.__cause__, ValueError)


def test_server_error_during_confirmation_is_retried(make_orchestrator, gateway, completed_draft):
    gateway.fail("wait_for_receipt", _status_error(503))

    pipeline = _run(make_orchestrator("direct"), completed_draft)

    assert pipeline.status is PipelineStatus.SUCCEEDED
    assert pipeline.attempts[StepName.AWAIT_CONFIRMATION] == 2


def test_submit_retries_only_when_nothing_was_sent(make_orchestrator, broadcaster, completed_draft):
    broadcaster.errors = [httpx.ConnectError("refused")]

    pipeline = _run(make_orchestrator("sponsored"), completed_draft)

    assert pipeline.status is PipelineStatus.SUCCEEDED
    assert pipeline.attempts[StepName.SUBMIT_TO_RELAYER] == 2


def test_submit_with_unknown_outcome_is_fatal(make_orchestrator, broadcaster, completed_draft):
    broadcaster.errors = [httpx.ReadTimeout("no response")]

    pipeline = _run(make_orchestrator("sponsored"), completed_draft)

    assert pipeline.status is PipelineStatus.FAILED
    assert pipeline.failure.step is StepName.SUBMIT_TO_RELAYER
    assert pipeline.attempts[StepName.SUBMIT_TO_RELAYER] == 1
    assert len(broadcaster.submissions) == 1


def test_persist_metadata_runs_once(make_orchestrator, store, completed_draft):
    store.errors = [httpx.ConnectError("db down")]

    pipeline = _run(make_orchestrator("sponsored"), completed_draft)

    assert pipeline.status is PipelineStatus.FAILED
    assert pipeline.failure.step is StepName.PERSIST_METADATA
    assert pipeline.attempts[StepName.PERSIST_METADATA] == 1
    assert pipeline.failure.transaction_hash == CREATE_TX


def test_unconfirmed_state_cannot_describe_a_market(completed_draft):
    state = PipelineState(pipeline_id="p1", mode="direct", draft=completed_draft, creator=CREATOR)

    with pytest.raises(ValueError, match="no confirmed market"):
        build_deployed_market(state)


def test_reverted_creation_reports_transaction(make_orchestrator, gateway, completed_draft):
    gateway.create_receipt_success = False

    pipeline = _run(make_orchestrator("direct"), completed_draft)

    assert pipeline.status is PipelineStatus.FAILED
    assert pipeline.failure.step is StepName.AWAIT_CONFIRMATION
    assert pipeline.failure.transaction_hash == CREATE_TX


def test_confirmation_timeout_is_retryable_then_fatal(broadcaster, store, channel, completed_draft):
    gateway = BlockingGateway()
    clients = DeploymentClients(facets=gateway, broadcaster=broadcaster, chain=gateway, admin=gateway, store=store)
    orchestrator = DeploymentOrchestrator(
        clients,
        mode="direct",
        channel=channel,
        options=DeploymentOptions(confirmation_timeout=0.01),
        wait=wait_none(),
    )

    pipeline = _run(orchestrator, completed_draft)

    assert pipeline.status is PipelineStatus.FAILED
    assert pipeline.failure.step is StepName.AWAIT_CONFIRMATION
    assert pipeline.attempts[StepName.AWAIT_CONFIRMATION] == 3
    assert "no receipt" in pipeline.failure.reason


def test_direct_mode_preflight_revert_is_advisory(make_orchestrator, gateway, broadcaster, completed_draft):
    gateway.revert_reason = "execution reverted: price too low"

    pipeline = _run(make_orchestrator("direct"), completed_draft)

    assert pipeline.status is PipelineStatus.SUCCEEDED
    assert len(pipeline.steps) == 11
    assert StepName.ATTACH_SESSION_REGISTRY not in pipeline.steps
    advisory = [e for e in pipeline.events if e.step == "preflight_static_call" and e.status == "error"]
    assert advisory and advisory[0].data["advisory"] is True
    assert broadcaster.submissions[0]["signature"] is None


def test_signer_must_match_creator(make_orchestrator, broadcaster, completed_draft):
    orchestrator = make_orchestrator("sponsored", signer=FakeSigner(address="0xsomeoneelse"))

    pipeline = _run(orchestrator, completed_draft)

    assert pipeline.status is PipelineStatus.FAILED
    assert pipeline.failure.step is StepName.SIGN_META_REQUEST
    assert broadcaster.submissions == []


def test_non_positive_start_price_is_fatal(make_orchestrator, completed_draft):
    draft = completed_draft.model_copy(update={"start_price": Decimal("0")})

    pipeline = _run(make_orchestrator("direct"), draft)

    assert pipeline.failure.step is StepName.BUILD_INITIALIZER


def test_session_registry_attached_when_configured(make_orchestrator, gateway, completed_draft):
    pipeline = _run(make_orchestrator("sponsored", session_registry="0xRegistry"), completed_draft)

    assert pipeline.status is PipelineStatus.SUCCEEDED
    assert gateway.registry_updates == ["0xRegistry"]
    assert pipeline.deployed_market.metadata["session_registry"] == "0xRegistry"


def test_session_registry_skipped_when_already_set(make_orchestrator, gateway, completed_draft):
    gateway.registry = "0xregistry"

    pipeline = _run(make_orchestrator("sponsored", session_registry="0xRegistry"), completed_draft)

    assert pipeline.status is PipelineStatus.SUCCEEDED
    assert gateway.registry_updates == []


def test_active_index_never_decreases(make_orchestrator, completed_draft):
    orchestrator = make_orchestrator("sponsored")
    seen: list[int] = []

    async def _go():
        pipeline = orchestrator.create_pipeline(completed_draft, creator=CREATOR)

        class RecordingChannel(ProgressChannel):
            def publish(self, event):
                seen.append(pipeline.active_index)
                super().publish(event)

        orchestrator.channel = RecordingChannel()
        return await orchestrator.run(pipeline)

    pipeline = asyncio.run(_go())

    assert seen == sorted(seen)
    assert max(seen) <= len(pipeline.steps) - 1


def test_cancel_before_start(make_orchestrator, gateway, completed_draft):
    orchestrator = make_orchestrator("sponsored")

    async def _go():
        pipeline = orchestrator.create_pipeline(completed_draft, creator=CREATOR)
        assert pipeline.cancel()
        return await orchestrator.run(pipeline)

    pipeline = asyncio.run(_go())

    assert pipeline.status is PipelineStatus.CANCELLED
    assert gateway.calls == []
    assert not pipeline.cancel()


def test_cancel_after_broadcast_orphans_pipeline(make_orchestrator, broadcaster, store, completed_draft):
    orchestrator = make_orchestrator("sponsored")

    async def _go():
        pipeline = orchestrator.create_pipeline(completed_draft, creator=CREATOR)
        broadcaster.on_submit = pipeline.cancel
        return await orchestrator.run(pipeline)

    pipeline = asyncio.run(_go())

    assert pipeline.status is PipelineStatus.ORPHANED
    assert pipeline.transaction_hash == CREATE_TX
    assert store.saved == []
    with pytest.raises(OrphanedPipeline) as excinfo:
        pipeline.raise_for_status()
    assert excinfo.value.transaction_hash == CREATE_TX


def test_cancel_interrupts_in_flight_confirmation(broadcaster, store, channel, completed_draft):
    gateway = BlockingGateway()
    clients = DeploymentClients(facets=gateway, broadcaster=broadcaster, chain=gateway, admin=gateway, store=store)
    orchestrator = DeploymentOrchestrator(clients, mode="direct", channel=channel)

    async def _go():
        pipeline = orchestrator.create_pipeline(completed_draft, creator=CREATOR)
        task = orchestrator.start(pipeline)
        await gateway.blocked.wait()
        assert pipeline.cancel()
        await task
        return pipeline

    pipeline = asyncio.run(_go())

    assert pipeline.status is PipelineStatus.ORPHANED
    assert pipeline.current_step is StepName.AWAIT_CONFIRMATION
    assert pipeline.events[-1].data["orphaned"] is True


def test_resume_after_selector_patch_failure(make_orchestrator, gateway, store, completed_draft):
    gateway.missing = [MISSING]
    gateway.patch_sticks = False
    orchestrator = make_orchestrator("sponsored")

    async def _go():
        pipeline = orchestrator.create_pipeline(completed_draft, creator=CREATOR)
        await orchestrator.run(pipeline)
        assert pipeline.status is PipelineStatus.FAILED
        assert pipeline.failure.step is StepName.PATCH_SELECTORS
        failed_index = pipeline.active_index

        gateway.patch_sticks = True
        await orchestrator.resume(pipeline)
        return pipeline, failed_index

    pipeline, failed_index = asyncio.run(_go())

    assert pipeline.status is PipelineStatus.SUCCEEDED
    assert failed_index == pipeline.plan.index_of(StepName.PATCH_SELECTORS)
    assert pipeline.attempts[StepName.PATCH_SELECTORS] == 4
    assert pipeline.attempts[StepName.FETCH_FACET_CONFIG] == 1
    assert len(store.saved) == 1


def test_resume_rejected_for_non_idempotent_failure(make_orchestrator, gateway, completed_draft):
    gateway.fail("fetch_facet_config", ValueError("bad"))
    orchestrator = make_orchestrator("sponsored")

    async def _go():
        pipeline = orchestrator.create_pipeline(completed_draft, creator=CREATOR)
        await orchestrator.run(pipeline)
        await orchestrator.resume(pipeline)

    with pytest.raises(PipelineNotResumable):
        asyncio.run(_go())


def test_resume_rejected_for_successful_pipeline(make_orchestrator, completed_draft):
    orchestrator = make_orchestrator("direct")

    async def _go():
        pipeline = orchestrator.create_pipeline(completed_draft, creator=CREATOR)
        await orchestrator.run(pipeline)
        await orchestrator.resume(pipeline)

    with pytest.raises(PipelineNotResumable):
        asyncio.run(_go())


def test_plans_fail_fast_on_unmapped_steps():
    partial = {step: fn for step, fn in STEP_IMPLEMENTATIONS.items() if step is not StepName.GRANT_ROLES}

    with pytest.raises(UnknownStepError):
        build_plan("direct", partial)


def test_plan_ordinals_are_fixed_per_mode():
    sponsored = build_plan(DeploymentMode.SPONSORED, STEP_IMPLEMENTATIONS)
    direct = build_plan("direct", STEP_IMPLEMENTATIONS)

    assert len(sponsored) == 13 and len(direct) == 11
    assert sponsored.index_of("finalize") == 12
    assert direct.index_of(StepName.SUBMIT_TRANSACTION) == 3
    assert direct.label(StepName.PATCH_SELECTORS) == "Patch missing selectors if needed"
    with pytest.raises(UnknownStepError):
        direct.index_of(StepName.SIGN_META_REQUEST)
    with pytest.raises(UnknownStepError):
        direct.index_of("not_a_step")


def test_percent_complete():
    assert percent_complete(0, 13) == 8
    assert percent_complete(12, 13) == 100
    assert percent_complete(0, 0) == 0
