"""Step names, per-mode step plans and the step result contract."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping

from pipelines.errors import UnknownStepError
from pipelines.model import ProgressStatus

if TYPE_CHECKING:
    from pipelines.deploy.clients import DeploymentClients
    from pipelines.deploy.state import PipelineState


class StepName(str, Enum):
    FETCH_FACET_CONFIG = "fetch_facet_config"
    BUILD_INITIALIZER = "build_initializer"
    PREPARE_META_REQUEST = "prepare_meta_request"
    SIGN_META_REQUEST = "sign_meta_request"
    SUBMIT_TO_RELAYER = "submit_to_relayer"
    PREFLIGHT_STATIC_CALL = "preflight_static_call"
    SUBMIT_TRANSACTION = "submit_transaction"
    AWAIT_CONFIRMATION = "await_confirmation"
    PARSE_CREATION_EVENT = "parse_creation_event"
    VERIFY_SELECTORS = "verify_selectors"
    PATCH_SELECTORS = "patch_selectors"
    ATTACH_SESSION_REGISTRY = "attach_session_registry"
    GRANT_ROLES = "grant_roles"
    PERSIST_METADATA = "persist_metadata"
    FINALIZE = "finalize"


class DeploymentMode(str, Enum):
    SPONSORED = "sponsored"
    DIRECT = "direct"


STEP_PLANS: Mapping[DeploymentMode, tuple[StepName, ...]] = MappingProxyType(
    {
        DeploymentMode.SPONSORED: (
            StepName.FETCH_FACET_CONFIG,
            StepName.BUILD_INITIALIZER,
            StepName.PREPARE_META_REQUEST,
            StepName.SIGN_META_REQUEST,
            StepName.SUBMIT_TO_RELAYER,
            StepName.AWAIT_CONFIRMATION,
            StepName.PARSE_CREATION_EVENT,
            StepName.VERIFY_SELECTORS,
            StepName.PATCH_SELECTORS,
            StepName.ATTACH_SESSION_REGISTRY,
            StepName.GRANT_ROLES,
            StepName.PERSIST_METADATA,
            StepName.FINALIZE,
        ),
        DeploymentMode.DIRECT: (
            StepName.FETCH_FACET_CONFIG,
            StepName.BUILD_INITIALIZER,
            StepName.PREFLIGHT_STATIC_CALL,
            StepName.SUBMIT_TRANSACTION,
            StepName.AWAIT_CONFIRMATION,
            StepName.PARSE_CREATION_EVENT,
            StepName.VERIFY_SELECTORS,
            StepName.PATCH_SELECTORS,
            StepName.GRANT_ROLES,
            StepName.PERSIST_METADATA,
            StepName.FINALIZE,
        ),
    }
)

STEP_LABELS: Mapping[StepName, str] = MappingProxyType(
    {
        StepName.FETCH_FACET_CONFIG: "Fetch facet cut configuration",
        StepName.BUILD_INITIALIZER: "Build initializer and selectors",
        StepName.PREPARE_META_REQUEST: "Prepare meta-create",
        StepName.SIGN_META_REQUEST: "Sign meta request",
        StepName.SUBMIT_TO_RELAYER: "Submit to relayer",
        StepName.PREFLIGHT_STATIC_CALL: "Preflight validation (static call)",
        StepName.SUBMIT_TRANSACTION: "Submit create transaction",
        StepName.AWAIT_CONFIRMATION: "Wait for confirmation",
        StepName.PARSE_CREATION_EVENT: "Parse FuturesMarketCreated event",
        StepName.VERIFY_SELECTORS: "Verify required selectors",
        StepName.PATCH_SELECTORS: "Patch missing selectors if needed",
        StepName.ATTACH_SESSION_REGISTRY: "Attach session registry",
        StepName.GRANT_ROLES: "Grant admin roles on CoreVault",
        StepName.PERSIST_METADATA: "Saving market metadata",
        StepName.FINALIZE: "Finalize deployment",
    }
)

# Only failures at these steps may be resumed under the same pipeline id.
IDEMPOTENT_STEPS = frozenset({StepName.VERIFY_SELECTORS, StepName.PATCH_SELECTORS})
SUBMIT_STEPS = frozenset({StepName.SUBMIT_TO_RELAYER, StepName.SUBMIT_TRANSACTION})
MAX_ATTEMPTS_OVERRIDES: Mapping[StepName, int] = MappingProxyType({StepName.PERSIST_METADATA: 1})


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass(frozen=True)
class StepOutcome:
    kind: OutcomeKind
    reason: str | None = None
    cause: BaseException | None = None

    @classmethod
    def success(cls) -> "StepOutcome":
        return cls(OutcomeKind.SUCCESS)

    @classmethod
    def retryable(cls, reason: str, cause: BaseException | None = None) -> "StepOutcome":
        return cls(OutcomeKind.RETRYABLE, reason, cause)

    @classmethod
    def fatal(cls, reason: str, cause: BaseException | None = None) -> "StepOutcome":
        return cls(OutcomeKind.FATAL, reason, cause)


@dataclass(frozen=True)
class StepNotice:
    """Intermediate progress (``sent``, ``mined``, advisory ``error``) emitted by a step."""

    status: ProgressStatus
    data: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StepResult:
    state: "PipelineState"
    outcome: StepOutcome
    notices: tuple[StepNotice, ...] = ()


StepFn = Callable[["PipelineState", "DeploymentClients"], Awaitable[StepResult]]


@dataclass(frozen=True)
class StepPlan:
    """Ordered steps for one mode with their ordinal map and implementations."""

    mode: DeploymentMode
    steps: tuple[StepName, ...]
    index: Mapping[StepName, int]
    implementations: Mapping[StepName, StepFn]

    def __len__(self) -> int:
        return len(self.steps)

    def label(self, step: StepName) -> str:
        return STEP_LABELS[step]

    def index_of(self, step: StepName | str) -> int:
        try:
            return self.index[StepName(step)]
        except (KeyError, ValueError) as exc:
            raise UnknownStepError(f"Step {step!r} is not part of the {self.mode.value} plan.") from exc

    def max_attempts(self, step: StepName, default: int) -> int:
        return MAX_ATTEMPTS_OVERRIDES.get(step, default)


def build_plan(mode: DeploymentMode | str, implementations: Mapping[StepName, StepFn]) -> StepPlan:
    """Resolve the step list for ``mode`` and fail fast on any unmapped step."""

    resolved = DeploymentMode(mode)
    steps = STEP_PLANS[resolved]
    for step in steps:
        if step not in STEP_LABELS:
            raise UnknownStepError(f"Step {step.value!r} has no display label.")
        if step not in implementations:
            raise UnknownStepError(f"Step {step.value!r} has no implementation.")
    if len(set(steps)) != len(steps):
        raise UnknownStepError(f"Duplicate steps in the {resolved.value} plan.")
    index = MappingProxyType({step: position for position, step in enumerate(steps)})
    bound = MappingProxyType({step: implementations[step] for step in steps})
    return StepPlan(mode=resolved, steps=steps, index=index, implementations=bound)


def percent_complete(index: int, total: int) -> int:
    if total <= 0:
        return 0
    return round((index + 1) / total * 100)


__all__ = [
    "StepName",
    "DeploymentMode",
    "STEP_PLANS",
    "STEP_LABELS",
    "IDEMPOTENT_STEPS",
    "SUBMIT_STEPS",
    "OutcomeKind",
    "StepOutcome",
    "StepNotice",
    "StepResult",
    "StepFn",
    "StepPlan",
    "build_plan",
    "percent_complete",
]
