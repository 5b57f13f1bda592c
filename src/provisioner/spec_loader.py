"""Manifest file loading with validation.

All file operations enforce a size limit before reading. Input validation
is performed at the boundary: anything that gets past load_manifest is a
fully validated Manifest whose plans parse for their kind.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .models import Manifest

logger = logging.getLogger(__name__)

MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024


class SpecLoadError(Exception):
    """Raised when manifest loading or validation fails."""

    pass


def load_manifest(path: Path) -> Manifest:
    """Load and validate a manifest from YAML.

    Accepts either a flat document (`resources: [...]`) or a wrapper with a
    `spec` section (`apiVersion`, `kind`, `spec: {resources: [...]}`).

    Args:
        path: Manifest file.

    Returns:
        Validated manifest.

    Raises:
        SpecLoadError: If the file cannot be read or fails validation.
    """
    if not path.exists():
        raise SpecLoadError(f"Manifest file not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read manifest file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Manifest must contain a YAML mapping: {path}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        data = raw_data.get("spec", {})
        if not isinstance(data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {path}")
    else:
        data = raw_data

    try:
        manifest = Manifest.model_validate(data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {path}:\n{error_list}") from e

    logger.info(
        "Loaded manifest",
        extra={"path": str(path), "resources": len(manifest.resources)},
    )
    return manifest
