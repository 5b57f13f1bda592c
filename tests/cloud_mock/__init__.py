"""Cloud API mock for controller and runner tests.

Usage:
    from cloud_mock import GONE, MockResourceService, fast_config

    service = MockResourceService("creating", "creating", "ACTIVE")
    controller = VpcController(service, fast_config())
    state = await controller.create(VpcPlan(name="net"))

    assert service.get_count == 3
"""

from pathlib import Path

from provisioner.config import Config

from .backend import (
    EMPTY_BODY,
    GONE,
    MockResourceService,
    RecordedCall,
    http_error,
    not_found_error,
)

# Millisecond timing keeps poll-loop tests fast
FAST_INTERVAL = 0.01
FAST_TIMEOUT = 0.5


def fast_config(
    *,
    interval: float = FAST_INTERVAL,
    timeout: float = FAST_TIMEOUT,
    state_file: Path | None = None,
    **overrides: object,
) -> Config:
    """Config whose every poll uses millisecond intervals."""
    kwargs: dict[str, object] = {
        "poll_interval_seconds": interval,
        "poll_timeout_seconds": timeout,
        **overrides,
    }
    if state_file is not None:
        kwargs["state_file"] = state_file
    return Config(**kwargs)  # type: ignore[arg-type]


__all__ = [
    "EMPTY_BODY",
    "FAST_INTERVAL",
    "FAST_TIMEOUT",
    "GONE",
    "MockResourceService",
    "RecordedCall",
    "fast_config",
    "http_error",
    "not_found_error",
]
