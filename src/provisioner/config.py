"""Configuration management with validation.

All timing used by the poll loops lives here as explicit values. Nothing
polls with a hardcoded interval: controllers ask the configuration for a
fresh PollSpec per wait.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from .models import ResourceKind
from .polling import DEFAULT_CALL_BUDGET_FRACTION, Predicate, PollSpec


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


class Environment(str, Enum):
    """Cloud API environments."""

    PROD = "prod"
    PRE_PROD = "pre-prod"
    DEV_QA = "dev-qa"


class PollPhase(str, Enum):
    """What a wait is observing."""

    CONVERGE = "converge"
    REMOVE = "remove"


# Configuration constants with documented bounds
DEFAULT_REGION = "br-se1"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 60
MIN_REQUEST_TIMEOUT_SECONDS = 5
MAX_REQUEST_TIMEOUT_SECONDS = 600

DEFAULT_MAX_HTTP_RETRIES = 3
MAX_HTTP_RETRIES = 10

DEFAULT_MAX_CONCURRENT_OPERATIONS = 4
MAX_CONCURRENT_OPERATIONS = 32

DEFAULT_STATE_FILE = "provisioner-state.json"

ENVIRONMENT_URLS: dict[Environment, dict[str, str]] = {
    Environment.PROD: {
        "br-ne1": "https://api.magalu.cloud/br-ne1",
        "br-se1": "https://api.magalu.cloud/br-se1",
        "br-mgl1": "https://api.magalu.cloud/br-se-1",
    },
    Environment.PRE_PROD: {
        "br-ne1": "https://api.pre-prod.jaxyendy.com/br-ne1",
        "br-se1": "https://api.pre-prod.jaxyendy.com/br-se1",
        "br-mgl1": "https://api.pre-prod.jaxyendy.com/br-mgl1",
    },
    Environment.DEV_QA: {
        "br-ne1": "https://api.dev-qa.jaxyendy.com/br-ne1",
        "br-se1": "https://api.dev-qa.jaxyendy.com/br-se1",
        "br-mgl1": "https://api.dev-qa.jaxyendy.com/br-mgl1",
        "br-mc1": "https://api.dev-qa.jaxyendy.com/br-mc1",
    },
}


@dataclass(frozen=True)
class PollTiming:
    """Per-kind polling cadence.

    Attributes:
        interval_seconds: Delay between observations while converging.
        timeout_seconds: Budget for a whole wait (converge or remove).
        remove_interval_seconds: Delay between observations while removing.
    """

    interval_seconds: float
    timeout_seconds: float
    remove_interval_seconds: float

    def interval_for(self, phase: PollPhase) -> float:
        if phase == PollPhase.REMOVE:
            return self.remove_interval_seconds
        return self.interval_seconds


MINUTE = 60.0

# Cadence observed for each backend; DBaaS and node pools settle within
# 90 minutes, Kubernetes clusters and routes can take up to 100.
DEFAULT_POLL_TIMINGS: dict[ResourceKind, PollTiming] = {
    ResourceKind.DATABASE_CLUSTER: PollTiming(15.0, 90 * MINUTE, 10.0),
    ResourceKind.DATABASE_REPLICA: PollTiming(10.0, 90 * MINUTE, 10.0),
    ResourceKind.KUBERNETES_CLUSTER: PollTiming(60.0, 100 * MINUTE, 60.0),
    ResourceKind.NODE_POOL: PollTiming(30.0, 90 * MINUTE, 30.0),
    ResourceKind.ROUTE: PollTiming(60.0, 100 * MINUTE, 60.0),
    ResourceKind.VPC: PollTiming(10.0, 5 * MINUTE, 10.0),
}


@dataclass(frozen=True)
class Config:
    """Provisioner configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-apply.
    """

    # Credentials and endpoint
    api_key: str | None = None
    region: str = DEFAULT_REGION
    environment: Environment = Environment.PROD
    api_url: str | None = None

    # HTTP transport
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS
    max_http_retries: int = DEFAULT_MAX_HTTP_RETRIES

    # Apply behavior
    state_file: Path = field(default_factory=lambda: Path(DEFAULT_STATE_FILE))
    max_concurrent_operations: int = DEFAULT_MAX_CONCURRENT_OPERATIONS

    # Polling overrides (None keeps the per-kind default)
    poll_interval_seconds: float | None = None
    poll_timeout_seconds: float | None = None
    call_budget_fraction: float = DEFAULT_CALL_BUDGET_FRACTION
    # Kinds this run polls; None means every kind
    poll_kinds: frozenset[ResourceKind] | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.api_url and self.region not in ENVIRONMENT_URLS[self.environment]:
            valid = sorted(ENVIRONMENT_URLS[self.environment])
            errors.append(
                f"MGC_REGION must be one of {valid} for {self.environment.value}: {self.region}"
            )

        if self.api_url and not self.api_url.startswith(("https://", "http://")):
            errors.append(f"MGC_API_URL must be an http(s) URL: {self.api_url}")

        if not (
            MIN_REQUEST_TIMEOUT_SECONDS
            <= self.request_timeout_seconds
            <= MAX_REQUEST_TIMEOUT_SECONDS
        ):
            errors.append(
                f"REQUEST_TIMEOUT must be between {MIN_REQUEST_TIMEOUT_SECONDS} "
                f"and {MAX_REQUEST_TIMEOUT_SECONDS} seconds"
            )

        if not 0 <= self.max_http_retries <= MAX_HTTP_RETRIES:
            errors.append(f"MAX_HTTP_RETRIES must be between 0 and {MAX_HTTP_RETRIES}")

        if not 1 <= self.max_concurrent_operations <= MAX_CONCURRENT_OPERATIONS:
            errors.append(
                f"MAX_CONCURRENT_OPERATIONS must be between 1 and {MAX_CONCURRENT_OPERATIONS}"
            )

        if self.poll_interval_seconds is not None and self.poll_interval_seconds <= 0:
            errors.append("POLL_INTERVAL must be positive")
        if self.poll_timeout_seconds is not None and self.poll_timeout_seconds <= 0:
            errors.append("POLL_TIMEOUT must be positive")

        if not 0 < self.call_budget_fraction <= 1:
            errors.append("CALL_BUDGET_FRACTION must be in (0, 1]")

        # A wait must get at least one observation in before its deadline
        if not errors:
            for kind in ResourceKind:
                if self.poll_kinds is not None and kind not in self.poll_kinds:
                    continue
                timing = self.poll_timing(kind)
                for phase in PollPhase:
                    if timing.timeout_seconds <= timing.interval_for(phase):
                        errors.append(
                            f"poll timeout ({timing.timeout_seconds}s) must exceed the "
                            f"{phase.value} interval ({timing.interval_for(phase)}s) "
                            f"for {kind.value}"
                        )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def base_url(self) -> str:
        """API base URL for the configured region and environment."""
        if self.api_url:
            return self.api_url.rstrip("/")
        return ENVIRONMENT_URLS[self.environment][self.region]

    def require_api_key(self) -> str:
        """Return the API key, failing if none is configured.

        Raises:
            ConfigurationError: If MGC_API_KEY is not set.
        """
        if not self.api_key:
            raise ConfigurationError("MGC_API_KEY is required to call the cloud API")
        return self.api_key

    def poll_timing(self, kind: ResourceKind) -> PollTiming:
        """Per-kind timing with environment overrides applied."""
        default = DEFAULT_POLL_TIMINGS[kind]
        interval = self.poll_interval_seconds
        return PollTiming(
            interval_seconds=interval or default.interval_seconds,
            timeout_seconds=self.poll_timeout_seconds or default.timeout_seconds,
            remove_interval_seconds=interval or default.remove_interval_seconds,
        )

    def poll_spec(self, kind: ResourceKind, phase: PollPhase, predicate: Predicate) -> PollSpec:
        """Build a fresh PollSpec for one wait."""
        timing = self.poll_timing(kind)
        return PollSpec(
            interval=timing.interval_for(phase),
            timeout=timing.timeout_seconds,
            predicate=predicate,
            call_budget_fraction=self.call_budget_fraction,
        )

    @classmethod
    def from_env(cls, **overrides: Any) -> Config:
        """Load configuration from environment variables.

        Keyword overrides (e.g. from command-line options) replace the
        matching environment values before validation runs.

        Environment Variables:
            MGC_API_KEY: API key sent as the x-api-key header
            MGC_REGION: br-ne1, br-se1 or br-mgl1 (default: br-se1)
            MGC_ENV: prod, pre-prod or dev-qa (default: prod)
            MGC_API_URL: Explicit API base URL, overrides region lookup
            REQUEST_TIMEOUT: Per-request HTTP timeout in seconds (default: 60)
            MAX_HTTP_RETRIES: Transport retries for failed requests (default: 3)
            STATE_FILE: Path of the JSON state file (default: provisioner-state.json)
            MAX_CONCURRENT_OPERATIONS: Resources applied in parallel (default: 4)
            POLL_INTERVAL: Override every kind's poll interval in seconds
            POLL_TIMEOUT: Override every kind's poll timeout in seconds
            CALL_BUDGET_FRACTION: Share of the remaining wait budget a single
                status request may use (default: 0.5)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float | None) -> float | None:
            value = os.environ.get(key)
            if value is None or value == "":
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_environment(value: str | None) -> Environment:
            if not value:
                return Environment.PROD
            try:
                return Environment(value)
            except ValueError as e:
                valid = [env.value for env in Environment]
                raise ConfigurationError(f"MGC_ENV must be one of {valid}: {value}") from e

        fraction = get_float("CALL_BUDGET_FRACTION", DEFAULT_CALL_BUDGET_FRACTION)

        values: dict[str, Any] = dict(
            api_key=os.environ.get("MGC_API_KEY") or None,
            region=os.environ.get("MGC_REGION", DEFAULT_REGION).lower(),
            environment=get_environment(os.environ.get("MGC_ENV")),
            api_url=os.environ.get("MGC_API_URL") or None,
            request_timeout_seconds=get_int("REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS),
            max_http_retries=get_int("MAX_HTTP_RETRIES", DEFAULT_MAX_HTTP_RETRIES),
            state_file=Path(os.environ.get("STATE_FILE", DEFAULT_STATE_FILE)),
            max_concurrent_operations=get_int(
                "MAX_CONCURRENT_OPERATIONS", DEFAULT_MAX_CONCURRENT_OPERATIONS
            ),
            poll_interval_seconds=get_float("POLL_INTERVAL", None),
            poll_timeout_seconds=get_float("POLL_TIMEOUT", None),
            call_budget_fraction=(
                fraction if fraction is not None else DEFAULT_CALL_BUDGET_FRACTION
            ),
        )
        values.update(overrides)
        return cls(**values)
