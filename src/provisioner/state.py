"""Local record of the resources an apply has created.

The store maps manifest entry names to the last known ResourceState. A
record is written as soon as the backend assigns an identifier, before
the convergence wait, so a failed or interrupted apply still leaves behind
enough to read or delete the half-created resource later.

Writes go to a sibling temp file which then replaces the state file, so a
crash mid-write never leaves a truncated store.
"""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from .models import ResourceRef, ResourceState

logger = logging.getLogger(__name__)

STATE_FILE_VERSION = 1


class StateError(Exception):
    """Raised when the state file cannot be read or written."""

    pass


class StateFile(BaseModel):
    """On-disk layout of the state file."""

    version: int = STATE_FILE_VERSION
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    resources: dict[str, ResourceState] = Field(default_factory=dict)


class StateStore:
    """JSON-file backed map of manifest name -> ResourceState.

    Safe to call from concurrent apply tasks: every mutation rewrites the
    whole file under a lock.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.RLock()
        self._resources: dict[str, ResourceState] = {}
        self._loaded = False

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, ResourceState]:
        """Read the state file. A missing file is an empty store.

        Raises:
            StateError: If the file exists but is unreadable or malformed.
        """
        with self._lock:
            if not self._path.exists():
                logger.info("No state file, starting empty", extra={"path": str(self._path)})
                self._resources = {}
                self._loaded = True
                return {}

            try:
                content = self._path.read_text(encoding="utf-8")
            except OSError as e:
                raise StateError(f"Failed to read state file {self._path}: {e}") from e

            try:
                state = StateFile.model_validate_json(content)
            except ValidationError as e:
                raise StateError(f"Corrupted state file {self._path}: {e}") from e

            self._resources = dict(state.resources)
            self._loaded = True
            logger.info(
                "Loaded state",
                extra={"path": str(self._path), "resources": len(self._resources)},
            )
            return dict(self._resources)

    def get(self, name: str) -> ResourceState | None:
        with self._lock:
            self._ensure_loaded()
            return self._resources.get(name)

    def put(self, name: str, state: ResourceState) -> None:
        """Record the state of a resource and persist immediately."""
        with self._lock:
            self._ensure_loaded()
            self._resources[name] = state
            self._save()

    def record_ref(self, name: str, ref: ResourceRef, *, status: str | None = None) -> None:
        """Persist an identifier for a resource whose operation has not converged.

        Keeps the previously applied plan, if any, so the next apply can
        still diff against it.
        """
        with self._lock:
            self._ensure_loaded()
            previous = self._resources.get(name)
            plan = previous.plan if previous is not None else {}
            self._resources[name] = ResourceState(
                ref=ref,
                status=status,
                plan=plan,
                converged=False,
            )
            self._save()

    def remove(self, name: str) -> None:
        with self._lock:
            self._ensure_loaded()
            if self._resources.pop(name, None) is not None:
                self._save()

    def items(self) -> list[tuple[str, ResourceState]]:
        with self._lock:
            self._ensure_loaded()
            return list(self._resources.items())

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def _save(self) -> None:
        state = StateFile(resources=self._resources)
        temp_file = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            temp_file.write_text(state.model_dump_json(indent=2), encoding="utf-8")
            temp_file.replace(self._path)
        except OSError as e:
            raise StateError(f"Failed to write state file {self._path}: {e}") from e
