"""Process setup and async entry points for the provisioner CLI.

Each entry point loads configuration, builds the API client and the
controllers, runs one operation to completion and returns an exit code:

- 0: everything converged
- 1: at least one resource failed, timed out or was cancelled
- 2: configuration or manifest error (nothing was attempted)

SIGINT/SIGTERM set a cancel event instead of killing the process: every
wait in progress returns promptly, identifiers already assigned are
written to the state file, then the process exits with 1.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from .client import MgcApiClient
from .config import Config, ConfigurationError, PollPhase
from .errors import ProvisionerError, ResourceValidationError
from .models import ResourceKind, ResourceRef
from .runner import ApplyResult, ApplyRunner, build_controllers, summarize
from .spec_loader import SpecLoadError, load_manifest
from .state import StateError, StateStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2

LOG_FORMATS = ("json", "text")
DEFAULT_LOG_FORMAT = "json"
DEFAULT_LOG_LEVEL = "INFO"
TEXT_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
HANDLER_NAME = "provisioner"

# LogRecord attributes that are not structured `extra` fields
_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Configure root logging.

    Args:
        level: Log level name; defaults to LOG_LEVEL or INFO.
        fmt: "json" or "text"; defaults to LOG_FORMAT or json.

    Raises:
        ConfigurationError: If the level or format is unknown.
    """
    level_name = (level or os.environ.get("LOG_LEVEL") or DEFAULT_LOG_LEVEL).upper()
    log_format = (fmt or os.environ.get("LOG_FORMAT") or DEFAULT_LOG_FORMAT).lower()

    if not isinstance(logging.getLevelName(level_name), int):
        raise ConfigurationError(f"LOG_LEVEL is not a valid log level: {level_name}")
    if log_format not in LOG_FORMATS:
        raise ConfigurationError(f"LOG_FORMAT must be one of {list(LOG_FORMATS)}: {log_format}")

    # stderr keeps stdout free for command output
    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(HANDLER_NAME)
    if log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_LOG_FORMAT))

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if existing.get_name() == HANDLER_NAME:
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level_name)

    # Reduce noise from the HTTP stack
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def install_signal_handlers(cancel: asyncio.Event) -> None:
    """Turn SIGINT/SIGTERM into a cancel request for every wait in progress."""
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal, cancelling waits", extra={"signal": sig.name})
        cancel.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform or outside the main thread
            logger.debug("Signal handler not installed", extra={"signal": sig.name})


def _log_results(operation: str, results: list[ApplyResult]) -> int:
    summary = summarize(results)
    failed = summary["failed"] + summary.get("skipped", 0)
    if failed:
        logger.error(f"{operation} finished with failures", extra={"summary": summary})
        return EXIT_FAILURE
    logger.info(f"{operation} finished", extra={"summary": summary})
    return EXIT_OK


async def run_apply(config: Config, manifest_path: Path) -> int:
    """Apply a manifest and return the exit code."""
    try:
        manifest = load_manifest(manifest_path)
    except SpecLoadError as e:
        logger.error("Manifest loading failed", extra={"error": str(e)})
        return EXIT_CONFIG_ERROR

    cancel = asyncio.Event()
    install_signal_handlers(cancel)
    store = StateStore(config.state_file)

    try:
        with MgcApiClient.from_config(config) as client:
            controllers = build_controllers(config, client, cancel=cancel)
            runner = ApplyRunner(config, controllers, store, cancel=cancel)
            results = await runner.apply(manifest)
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_CONFIG_ERROR
    except StateError as e:
        logger.error("State file error", extra={"error": str(e)})
        return EXIT_FAILURE

    return _log_results("Apply", results)


async def run_destroy(config: Config, manifest_path: Path) -> int:
    """Destroy every recorded manifest entry and return the exit code."""
    try:
        manifest = load_manifest(manifest_path)
    except SpecLoadError as e:
        logger.error("Manifest loading failed", extra={"error": str(e)})
        return EXIT_CONFIG_ERROR

    cancel = asyncio.Event()
    install_signal_handlers(cancel)
    store = StateStore(config.state_file)

    try:
        with MgcApiClient.from_config(config) as client:
            controllers = build_controllers(config, client, cancel=cancel)
            runner = ApplyRunner(config, controllers, store, cancel=cancel)
            results = await runner.destroy(manifest)
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_CONFIG_ERROR
    except StateError as e:
        logger.error("State file error", extra={"error": str(e)})
        return EXIT_FAILURE

    return _log_results("Destroy", results)


async def run_status(config: Config, ref: ResourceRef) -> tuple[int, dict | None]:
    """Read a resource once.

    Returns:
        Exit code and the observed state (None when the resource is gone).
    """
    try:
        with MgcApiClient.from_config(config) as client:
            controller = build_controllers(config, client)[ref.kind]
            state = await controller.read(ref)
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_CONFIG_ERROR, None
    except ProvisionerError as e:
        logger.error("Status request failed", extra={"error": e.message, **e.to_log_fields()})
        return EXIT_FAILURE, None

    if state is None:
        logger.warning("Resource not found", extra={"kind": ref.kind.value, "resource_id": ref.id})
        return EXIT_FAILURE, None
    return EXIT_OK, state.model_dump(mode="json", exclude={"plan"})


async def run_wait(config: Config, ref: ResourceRef, *, removed: bool = False) -> int:
    """Wait for an existing resource to become active (or be removed)."""
    cancel = asyncio.Event()
    install_signal_handlers(cancel)
    phase = PollPhase.REMOVE if removed else PollPhase.CONVERGE

    try:
        with MgcApiClient.from_config(config) as client:
            controller = build_controllers(config, client, cancel=cancel)[ref.kind]
            logger.info(
                "Waiting for resource",
                extra={"kind": ref.kind.value, "resource_id": ref.id, "phase": phase.value},
            )
            if removed:
                await controller.wait_for_removal(ref)
            else:
                await controller.wait_for_active(ref)
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_CONFIG_ERROR
    except ProvisionerError as e:
        logger.error("Wait failed", extra={"error": e.message, **e.to_log_fields()})
        return EXIT_FAILURE

    return EXIT_OK


def make_ref(kind: str, resource_id: str, parent_id: str | None) -> ResourceRef:
    """Build a ResourceRef from command-line arguments.

    Raises:
        ResourceValidationError: If a nested kind has no parent id.
    """
    try:
        return ResourceRef(kind=ResourceKind(kind), id=resource_id, parent_id=parent_id)
    except ValidationError as e:
        messages = "; ".join(str(error["msg"]) for error in e.errors())
        raise ResourceValidationError(messages, kind=kind) from e
