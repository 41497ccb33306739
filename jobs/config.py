"""Runtime configuration for market creation jobs and the API, read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping

from dotenv import load_dotenv

from pipelines.deploy.state import (
    DEFAULT_CONFIRMATION_TIMEOUT_SECONDS,
    DEFAULT_GRANT_ROLES,
    REQUIRED_PLACEMENT_SELECTORS,
    DeploymentOptions,
)
from pipelines.deploy.steps import DeploymentMode

_TRUTHY = {"1", "true", "yes", "on"}


def _flag(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY


def _number(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be numeric, got {raw!r}.") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}.")
    return value


def _list(env: Mapping[str, str], name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    # Selector signatures contain commas, so the list separator is ';'.
    return tuple(item.strip() for item in raw.split(";") if item.strip())


@dataclass(frozen=True)
class DeploymentSettings:
    """Configuration describing how markets are discovered and deployed."""

    gasless_enabled: bool = True
    creator_address: str | None = None
    diamond_owner: str | None = None
    session_registry: str | None = None
    placement_facet: str | None = None
    required_selectors: tuple[str, ...] = REQUIRED_PLACEMENT_SELECTORS
    grant_roles: tuple[str, ...] = DEFAULT_GRANT_ROLES
    max_attempts: int = 3
    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 30.0
    confirmation_timeout_seconds: float = DEFAULT_CONFIRMATION_TIMEOUT_SECONDS
    validation_poll_interval_seconds: float = 2.0
    validation_timeout_seconds: float = 60.0
    cors_origins: tuple[str, ...] = field(default=("*",))
    max_retained_pipelines: int = 200

    @property
    def mode(self) -> DeploymentMode:
        return DeploymentMode.SPONSORED if self.gasless_enabled else DeploymentMode.DIRECT

    def deployment_options(self) -> DeploymentOptions:
        return DeploymentOptions(
            required_selectors=self.required_selectors,
            grant_roles=self.grant_roles,
            session_registry=self.session_registry,
            placement_facet=self.placement_facet,
            diamond_owner=self.diamond_owner,
            confirmation_timeout=self.confirmation_timeout_seconds,
        )


def load_settings(env: Mapping[str, str] | None = None) -> DeploymentSettings:
    """Build settings from ``env`` (defaults to ``os.environ`` after loading ``.env``)."""

    if env is None:
        load_dotenv()
        env = os.environ
    origins = tuple(o.strip() for o in env.get("API_CORS_ORIGINS", "*").split(",") if o.strip())
    return DeploymentSettings(
        gasless_enabled=_flag(env, "GASLESS_CREATE_ENABLED", True),
        creator_address=env.get("CREATOR_ADDRESS") or None,
        diamond_owner=env.get("DIAMOND_OWNER") or None,
        session_registry=env.get("SESSION_REGISTRY_ADDRESS") or None,
        placement_facet=env.get("PLACEMENT_FACET_ADDRESS") or None,
        required_selectors=_list(env, "REQUIRED_SELECTORS", REQUIRED_PLACEMENT_SELECTORS),
        grant_roles=_list(env, "GRANT_ROLES", DEFAULT_GRANT_ROLES),
        max_attempts=int(_number(env, "STEP_MAX_ATTEMPTS", 3)),
        backoff_base_seconds=_number(env, "STEP_BACKOFF_BASE_SECONDS", 2.0),
        backoff_max_seconds=_number(env, "STEP_BACKOFF_MAX_SECONDS", 30.0),
        confirmation_timeout_seconds=_number(
            env, "CONFIRMATION_TIMEOUT_SECONDS", DEFAULT_CONFIRMATION_TIMEOUT_SECONDS
        ),
        validation_poll_interval_seconds=_number(env, "VALIDATION_POLL_INTERVAL_SECONDS", 2.0),
        validation_timeout_seconds=_number(env, "VALIDATION_TIMEOUT_SECONDS", 60.0),
        cors_origins=origins or ("*",),
        max_retained_pipelines=int(_number(env, "API_MAX_RETAINED_PIPELINES", 200)),
    )


__all__ = ["DeploymentSettings", "load_settings"]
