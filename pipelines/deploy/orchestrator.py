"""Deployment orchestrator: runs a fixed step plan with retries, progress and cancellation."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import Counter
from dataclasses import dataclass
from typing import Any, Mapping

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from pipelines.common import is_transient_error
from pipelines.deploy.actions import STEP_IMPLEMENTATIONS
from pipelines.deploy.clients import DeploymentClients
from pipelines.deploy.state import DeploymentOptions, PipelineState, PipelineStatus
from pipelines.deploy.steps import (
    IDEMPOTENT_STEPS,
    DeploymentMode,
    OutcomeKind,
    StepFn,
    StepName,
    StepOutcome,
    StepPlan,
    StepResult,
    build_plan,
    percent_complete,
)
from pipelines.errors import OrphanedPipeline, PipelineNotResumable, StepFatal, StepRetryable
from pipelines.model import DeployedMarket, MarketDraft, ProgressEvent, ProgressStatus
from pipelines.progress import ProgressChannel

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE_SECONDS = 2.0
DEFAULT_BACKOFF_MAX_SECONDS = 30.0

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineFailure:
    step: StepName
    reason: str
    transaction_hash: str | None = None
    cause: BaseException | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"step": self.step.value, "reason": self.reason, "transactionHash": self.transaction_hash}


class Pipeline:
    """One deployment run. Owned by the orchestrator task that executes it."""

    def __init__(self, pipeline_id: str, plan: StepPlan, state: PipelineState) -> None:
        self.pipeline_id = pipeline_id
        self.plan = plan
        self.state = state
        self.status = PipelineStatus.PENDING
        self.attempts: Counter[StepName] = Counter()
        self.events: list[ProgressEvent] = []
        self.failure: PipelineFailure | None = None
        self._active_index = 0
        self._cancel_requested = False
        self._task: asyncio.Task | None = None

    @property
    def steps(self) -> tuple[StepName, ...]:
        return self.plan.steps

    @property
    def mode(self) -> DeploymentMode:
        return self.plan.mode

    @property
    def active_index(self) -> int:
        return self._active_index

    @property
    def current_step(self) -> StepName:
        return self.plan.steps[self._active_index]

    @property
    def transaction_hash(self) -> str | None:
        return self.state.transaction_hash

    @property
    def deployed_market(self) -> DeployedMarket | None:
        return self.state.deployed_market

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    @property
    def percent_complete(self) -> int:
        if self.status is PipelineStatus.SUCCEEDED:
            return 100
        return percent_complete(self._active_index, len(self.plan))

    def advance_to(self, index: int) -> None:
        if index < self._active_index:
            raise ValueError(f"active index cannot move backwards ({self._active_index} -> {index}).")
        if index > len(self.plan) - 1:
            raise ValueError(f"active index {index} beyond the last step.")
        self._active_index = index

    def cancel(self) -> bool:
        """Request cancellation; interrupts the in-flight step. Returns False if already terminal."""

        if self.is_terminal:
            return False
        self._cancel_requested = True
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        # A step cancelling its own pipeline stops at the next step boundary.
        if self._task is not None and self._task is not current and not self._task.done():
            self._task.cancel()
        return True

    async def wait(self) -> "Pipeline":
        if self._task is not None:
            await asyncio.shield(self._task)
        return self

    def raise_for_status(self) -> None:
        """Raise the error matching a failed or orphaned pipeline."""

        if self.status is PipelineStatus.ORPHANED and self.transaction_hash:
            raise OrphanedPipeline(self.pipeline_id, self.transaction_hash)
        if self.status is PipelineStatus.FAILED and self.failure is not None:
            raise StepFatal(
                self.failure.step.value,
                self.failure.reason,
                transaction_hash=self.failure.transaction_hash,
            ) from self.failure.cause

    def to_dict(self) -> dict[str, Any]:
        return {
            "pipelineId": self.pipeline_id,
            "mode": self.mode.value,
            "status": self.status.value,
            "activeIndex": self._active_index,
            "currentStep": self.current_step.value,
            "percentComplete": self.percent_complete,
            "steps": [
                {"name": step.value, "label": self.plan.label(step), "attempts": self.attempts[step]}
                for step in self.plan.steps
            ],
            "transactionHash": self.transaction_hash,
            "marketAddress": self.state.market_address,
            "failure": self.failure.as_dict() if self.failure else None,
        }


class DeploymentOrchestrator:
    """Executes the sponsored or direct plan, one step at a time."""

    def __init__(
        self,
        clients: DeploymentClients,
        *,
        mode: DeploymentMode | str = DeploymentMode.SPONSORED,
        channel: ProgressChannel | None = None,
        options: DeploymentOptions | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        wait: wait_base | None = None,
        implementations: Mapping[StepName, StepFn] | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.clients = clients
        self.plan = build_plan(mode, implementations or STEP_IMPLEMENTATIONS)
        self.channel = channel if channel is not None else ProgressChannel()
        self.options = options or DeploymentOptions()
        self.max_attempts = max_attempts
        self.wait = wait or wait_exponential(
            multiplier=DEFAULT_BACKOFF_BASE_SECONDS, max=DEFAULT_BACKOFF_MAX_SECONDS
        )

    @property
    def mode(self) -> DeploymentMode:
        return self.plan.mode

    def create_pipeline(
        self,
        draft: MarketDraft,
        *,
        creator: str,
        bond: Mapping[str, str] | None = None,
        pipeline_id: str | None = None,
    ) -> Pipeline:
        pipeline_id = pipeline_id or uuid.uuid4().hex
        state = PipelineState(
            pipeline_id=pipeline_id,
            mode=self.mode.value,
            draft=draft.snapshot(),
            creator=creator,
            options=self.options,
            bond=dict(bond) if bond is not None else None,
        )
        self.channel.open(pipeline_id)
        return Pipeline(pipeline_id, self.plan, state)

    def start(self, pipeline: Pipeline) -> asyncio.Task:
        """Schedule ``run`` as its own task; the pipeline can then be cancelled or awaited."""

        task = asyncio.create_task(self.run(pipeline), name=f"pipeline-{pipeline.pipeline_id}")
        pipeline._task = task
        return task

    async def deploy(self, draft: MarketDraft, *, creator: str, bond: Mapping[str, str] | None = None) -> Pipeline:
        pipeline = self.create_pipeline(draft, creator=creator, bond=bond)
        return await self.run(pipeline)

    async def resume(self, pipeline: Pipeline) -> Pipeline:
        """Re-run a pipeline that failed at an idempotent step, keeping its id."""

        failure = pipeline.failure
        if pipeline.status is not PipelineStatus.FAILED or failure is None:
            raise PipelineNotResumable(f"Pipeline {pipeline.pipeline_id} is {pipeline.status.value}, not failed.")
        if failure.step not in IDEMPOTENT_STEPS:
            raise PipelineNotResumable(
                f"Pipeline {pipeline.pipeline_id} failed at {failure.step.value}; restart it instead."
            )
        if pipeline.plan.mode is not self.mode:
            raise PipelineNotResumable(f"Pipeline {pipeline.pipeline_id} was launched in {pipeline.mode.value} mode.")

        logger.info("Resuming pipeline %s at %s.", pipeline.pipeline_id, failure.step.value)
        pipeline.failure = None
        pipeline.status = PipelineStatus.PENDING
        self.channel.open(pipeline.pipeline_id)
        return await self.run(pipeline)

    async def run(self, pipeline: Pipeline) -> Pipeline:
        if pipeline.is_terminal:
            return pipeline
        if pipeline._task is None:
            pipeline._task = asyncio.current_task()
        pipeline.status = PipelineStatus.RUNNING
        self.channel.open(pipeline.pipeline_id)
        logger.info(
            "Pipeline %s started (%s mode, %s steps).", pipeline.pipeline_id, self.mode.value, len(self.plan)
        )
        try:
            for index in range(pipeline.active_index, len(self.plan)):
                if pipeline.cancel_requested:
                    self._mark_cancelled(pipeline)
                    return pipeline
                pipeline.advance_to(index)
                step = self.plan.steps[index]
                state = pipeline.state.model_copy(update={"step_index": index})
                result = await self._run_step(pipeline, step, state)
                for notice in result.notices:
                    self._emit(pipeline, step, notice.status, dict(notice.data))
                if result.outcome.kind is not OutcomeKind.SUCCESS:
                    self._mark_failed(pipeline, step, result.outcome)
                    return pipeline
                pipeline.state = result.state
                self._emit(pipeline, step, "success")
            pipeline.status = PipelineStatus.SUCCEEDED
            logger.info("Pipeline %s succeeded.", pipeline.pipeline_id)
            return pipeline
        except asyncio.CancelledError:
            self._mark_cancelled(pipeline)
            if not pipeline.cancel_requested:
                raise
            task = asyncio.current_task()
            if task is not None:
                task.uncancel()
            return pipeline
        finally:
            self.channel.close(pipeline.pipeline_id)

    async def _run_step(self, pipeline: Pipeline, step: StepName, state: PipelineState) -> StepResult:
        implementation = self.plan.implementations[step]
        attempts = self.plan.max_attempts(step, self.max_attempts)
        result = StepResult(state, StepOutcome.fatal("step did not run"))

        def _before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                "Pipeline %s: %s attempt %s failed (%s); retrying in %.1fs.",
                pipeline.pipeline_id,
                step.value,
                retry_state.attempt_number,
                error,
                delay,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=self.wait,
            retry=retry_if_exception_type(StepRetryable),
            before_sleep=_before_sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    pipeline.attempts[step] += 1
                    logger.debug(
                        "Pipeline %s: %s attempt %s.", pipeline.pipeline_id, step.value, pipeline.attempts[step]
                    )
                    result = await self._attempt(implementation, state, self.clients)
                    if result.outcome.kind is OutcomeKind.RETRYABLE:
                        raise StepRetryable(result.outcome.reason or "retryable failure")
        except StepRetryable as exc:
            return StepResult(
                state,
                StepOutcome.fatal(
                    f"gave up after {pipeline.attempts[step]} attempt(s): {exc.reason}", result.outcome.cause
                ),
                result.notices,
            )
        return result

    @staticmethod
    async def _attempt(implementation: StepFn, state: PipelineState, clients: DeploymentClients) -> StepResult:
        try:
            return await implementation(state, clients)
        except StepRetryable as exc:
            return StepResult(state, StepOutcome.retryable(exc.reason, exc))
        except Exception as exc:
            if is_transient_error(exc):
                return StepResult(state, StepOutcome.retryable(f"{type(exc).__name__}: {exc}", exc))
            logger.exception("Pipeline %s: step %s raised.", state.pipeline_id, state.step_index)
            return StepResult(state, StepOutcome.fatal(f"{type(exc).__name__}: {exc}", exc))

    def _emit(
        self, pipeline: Pipeline, step: StepName, status: ProgressStatus, data: dict[str, Any] | None = None
    ) -> None:
        payload = {"label": self.plan.label(step)}
        payload.update(data or {})
        event = ProgressEvent(
            pipeline_id=pipeline.pipeline_id,
            step=step.value,
            status=status,
            index=self.plan.index_of(step),
            data=payload,
        )
        pipeline.events.append(event)
        self.channel.publish(event)

    def _mark_failed(self, pipeline: Pipeline, step: StepName, outcome: StepOutcome) -> None:
        reason = outcome.reason or "step failed"
        pipeline.failure = PipelineFailure(
            step=step,
            reason=reason,
            transaction_hash=pipeline.transaction_hash,
            cause=outcome.cause,
        )
        pipeline.status = PipelineStatus.FAILED
        self._emit(pipeline, step, "error", {"reason": reason, "hash": pipeline.transaction_hash})
        logger.error("Pipeline %s failed at %s: %s", pipeline.pipeline_id, step.value, reason)

    def _mark_cancelled(self, pipeline: Pipeline) -> None:
        step = pipeline.current_step
        transaction_hash = pipeline.transaction_hash
        if transaction_hash:
            pipeline.status = PipelineStatus.ORPHANED
            pipeline.failure = PipelineFailure(
                step=step, reason="cancelled after broadcast", transaction_hash=transaction_hash
            )
            self._emit(pipeline, step, "error", {"reason": "cancelled", "orphaned": True, "hash": transaction_hash})
            logger.warning(
                "Pipeline %s cancelled after broadcasting %s; marked orphaned.", pipeline.pipeline_id, transaction_hash
            )
        else:
            pipeline.status = PipelineStatus.CANCELLED
            self._emit(pipeline, step, "error", {"reason": "cancelled"})
            logger.info("Pipeline %s cancelled at %s.", pipeline.pipeline_id, step.value)


__all__ = ["DeploymentOrchestrator", "Pipeline", "PipelineFailure"]
