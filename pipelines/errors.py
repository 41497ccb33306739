"""Error taxonomy shared by the discovery flow and the deployment pipeline."""

from __future__ import annotations


class MarketCreationError(Exception):
    """Base class for every error raised by the market creation flow."""


# -- discovery ---------------------------------------------------------------


class DefinitionRejected(MarketCreationError):
    """The metric definition service judged the description not measurable."""

    def __init__(self, reason: str | None) -> None:
        super().__init__(reason or "Metric is not objectively measurable.")
        self.reason = reason


class SourceValidationFailed(MarketCreationError):
    """A selected source did not yield a usable numeric value."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Validation failed for {url}: {reason}")
        self.url = url
        self.reason = reason


class DiscoveryStateError(MarketCreationError):
    """An operation was attempted from a step that does not allow it."""


# -- deployment --------------------------------------------------------------


class StepRetryable(MarketCreationError):
    """Transient failure; the orchestrator retries the step with backoff."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class StepFatal(MarketCreationError):
    """Irrecoverable failure of a pipeline step."""

    def __init__(self, step: str, reason: str, *, transaction_hash: str | None = None) -> None:
        super().__init__(f"{step}: {reason}")
        self.step = step
        self.reason = reason
        self.transaction_hash = transaction_hash


class OrphanedPipeline(MarketCreationError):
    """The pipeline was cancelled after a transaction had been broadcast."""

    def __init__(self, pipeline_id: str, transaction_hash: str) -> None:
        super().__init__(
            f"Pipeline {pipeline_id} cancelled after broadcasting {transaction_hash}; "
            "reconcile against chain state."
        )
        self.pipeline_id = pipeline_id
        self.transaction_hash = transaction_hash


class PipelineNotResumable(MarketCreationError):
    """Resume was requested for a pipeline that must be restarted instead."""


class UnknownStepError(MarketCreationError):
    """A step name has no implementation or progress mapping."""


class InvalidBondTerms(MarketCreationError, ValueError):
    """Bond configuration outside the ranges the contracts accept."""


__all__ = [
    "MarketCreationError",
    "DefinitionRejected",
    "SourceValidationFailed",
    "DiscoveryStateError",
    "StepRetryable",
    "StepFatal",
    "OrphanedPipeline",
    "PipelineNotResumable",
    "UnknownStepError",
    "InvalidBondTerms",
]
