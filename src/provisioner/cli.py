"""Provisioner CLI (mgcp).

Usage:
    mgcp apply manifest.yaml               # Create/update declared resources
    mgcp destroy manifest.yaml             # Delete recorded resources
    mgcp status kubernetes_cluster ID      # Read a resource once
    mgcp wait node_pool ID --parent CID    # Block until a resource is active
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import click

from .config import Config, ConfigurationError
from .errors import ResourceValidationError
from .main import (
    EXIT_CONFIG_ERROR,
    LOG_FORMATS,
    make_ref,
    run_apply,
    run_destroy,
    run_status,
    run_wait,
    setup_logging,
)
from .models import ResourceKind, ResourceRef

KIND_CHOICE = click.Choice([kind.value for kind in ResourceKind])
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def _load_config(**overrides: object) -> Config:
    """Load configuration from the environment, exiting with 2 on error."""
    try:
        config = Config.from_env(**overrides)
    except ConfigurationError as e:
        click.echo(str(e), err=True)
        sys.exit(EXIT_CONFIG_ERROR)
    return config


def _ref(kind: str, resource_id: str, parent_id: str | None) -> ResourceRef:
    """Build the target ref, treating a missing parent id as a usage error."""
    try:
        return make_ref(kind, resource_id, parent_id)
    except ResourceValidationError as e:
        raise click.UsageError(f"{e.message} (use --parent)") from e


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="mgcp")
@click.option("--log-level", type=click.Choice(LOG_LEVELS, case_sensitive=False), default=None)
@click.option("--log-format", type=click.Choice(LOG_FORMATS), default=None)
def cli(log_level: str | None, log_format: str | None) -> None:
    """Provision cloud resources and wait until they converge.

    \b
    Configuration comes from the environment:
        MGC_API_KEY, MGC_REGION, MGC_ENV, MGC_API_URL, STATE_FILE,
        POLL_INTERVAL, POLL_TIMEOUT, CALL_BUDGET_FRACTION, LOG_LEVEL, LOG_FORMAT
    """
    try:
        setup_logging(log_level, log_format)
    except ConfigurationError as e:
        click.echo(str(e), err=True)
        sys.exit(EXIT_CONFIG_ERROR)


@cli.command()
@click.argument("manifest", type=click.Path(path_type=Path, dir_okay=False))
@click.option("--state-file", type=click.Path(path_type=Path, dir_okay=False), default=None)
def apply(manifest: Path, state_file: Path | None) -> None:
    """Create or update every resource declared in MANIFEST."""
    overrides = {"state_file": state_file} if state_file else {}
    config = _load_config(**overrides)
    sys.exit(asyncio.run(run_apply(config, manifest)))


@cli.command()
@click.argument("manifest", type=click.Path(path_type=Path, dir_okay=False))
@click.option("--state-file", type=click.Path(path_type=Path, dir_okay=False), default=None)
def destroy(manifest: Path, state_file: Path | None) -> None:
    """Delete every recorded resource from MANIFEST, last declared first."""
    overrides = {"state_file": state_file} if state_file else {}
    config = _load_config(**overrides)
    sys.exit(asyncio.run(run_destroy(config, manifest)))


@cli.command()
@click.argument("kind", type=KIND_CHOICE)
@click.argument("resource_id")
@click.option("--parent", "parent_id", default=None, help="Parent id for nested kinds.")
def status(kind: str, resource_id: str, parent_id: str | None) -> None:
    """Print the current status of a resource without waiting."""
    ref = _ref(kind, resource_id, parent_id)
    config = _load_config()
    code, state = asyncio.run(run_status(config, ref))
    if state is not None:
        click.echo(json.dumps(state, indent=2))
    sys.exit(code)


@cli.command()
@click.argument("kind", type=KIND_CHOICE)
@click.argument("resource_id")
@click.option("--parent", "parent_id", default=None, help="Parent id for nested kinds.")
@click.option(
    "--timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Wait budget in seconds (default: per-kind timeout).",
)
@click.option("--removed", is_flag=True, help="Wait until the resource is gone instead.")
def wait(
    kind: str,
    resource_id: str,
    parent_id: str | None,
    timeout: float | None,
    removed: bool,
) -> None:
    """Block until a resource is active (or removed)."""
    ref = _ref(kind, resource_id, parent_id)
    overrides: dict[str, object] = {"poll_kinds": frozenset({ref.kind})}
    if timeout:
        overrides["poll_timeout_seconds"] = timeout
    config = _load_config(**overrides)
    sys.exit(asyncio.run(run_wait(config, ref, removed=removed)))


if __name__ == "__main__":
    cli()
