"""Apply and destroy a manifest against the cloud.

For every manifest entry the runner decides what to do from the recorded
state:

- no record: create, and record the identifier as soon as it is assigned
- record that never converged: wait for it again, then apply any changes
- record whose plan differs: update the changed fields
- otherwise nothing

Entries run concurrently, bounded by MAX_CONCURRENT_OPERATIONS, each with
its own poll loop. An entry waits for the entries it depends on and is
skipped if any of them failed. Destroy runs one entry at a time in reverse
manifest order and stops at the first failure.

Whenever an operation fails after an identifier is known, the identifier
is written to the state file before the failure is reported, so the next
run can resume or clean up the resource.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from .client import MgcApiClient
from .config import Config
from .controller import ResourceController
from .database import DatabaseClusterController, DatabaseReplicaController
from .errors import ProvisionerError, ResourceValidationError
from .kubernetes import KubernetesClusterController, NodePoolController
from .models import (
    Manifest,
    ManifestEntry,
    ResourceKind,
    ResourceRef,
    changed_fields,
)
from .network import RouteController, VpcController
from .services import ENGINES_PATH, INSTANCE_TYPES_PATH, ResourceService, build_services
from .state import StateStore

logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    """What the runner did with a manifest entry."""

    CREATE = "create"
    RESUME = "resume"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "noop"
    SKIPPED = "skipped"


@dataclass
class ApplyResult:
    """Result of applying (or destroying) a single manifest entry."""

    name: str
    kind: ResourceKind
    action: ChangeType = ChangeType.NOOP
    ref: ResourceRef | None = None
    error: ProvisionerError | None = None
    detail: str | None = None
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.error is None and self.action != ChangeType.SKIPPED


def build_controllers(
    config: Config,
    client: MgcApiClient,
    *,
    cancel: asyncio.Event | None = None,
) -> dict[ResourceKind, ResourceController]:
    """One controller per resource kind, all sharing one API client."""
    services = build_services(client)
    engines = ResourceService(client, ENGINES_PATH)
    instance_types = ResourceService(client, INSTANCE_TYPES_PATH)

    return {
        ResourceKind.DATABASE_CLUSTER: DatabaseClusterController(
            services[ResourceKind.DATABASE_CLUSTER],
            config,
            engines=engines,
            instance_types=instance_types,
            cancel=cancel,
        ),
        ResourceKind.DATABASE_REPLICA: DatabaseReplicaController(
            services[ResourceKind.DATABASE_REPLICA],
            config,
            instance_types=instance_types,
            cancel=cancel,
        ),
        ResourceKind.KUBERNETES_CLUSTER: KubernetesClusterController(
            services[ResourceKind.KUBERNETES_CLUSTER], config, cancel=cancel
        ),
        ResourceKind.NODE_POOL: NodePoolController(
            services[ResourceKind.NODE_POOL], config, cancel=cancel
        ),
        ResourceKind.VPC: VpcController(services[ResourceKind.VPC], config, cancel=cancel),
        ResourceKind.ROUTE: RouteController(services[ResourceKind.ROUTE], config, cancel=cancel),
    }


class ApplyRunner:
    """Drives manifest entries through their controllers."""

    def __init__(
        self,
        config: Config,
        controllers: dict[ResourceKind, ResourceController],
        store: StateStore,
        *,
        cancel: asyncio.Event | None = None,
    ) -> None:
        self._config = config
        self._controllers = controllers
        self._store = store
        self._cancel = cancel

    async def apply(self, manifest: Manifest) -> list[ApplyResult]:
        """Create or update every manifest entry.

        Returns:
            One result per entry, in manifest order.
        """
        semaphore = asyncio.Semaphore(self._config.max_concurrent_operations)
        finished = {entry.name: asyncio.Event() for entry in manifest.resources}
        outcomes: dict[str, bool] = {}

        self._warn_unmanaged(manifest)

        async def run(entry: ManifestEntry) -> ApplyResult:
            try:
                for dependency in entry.depends_on:
                    await finished[dependency].wait()
                failed = [d for d in entry.depends_on if not outcomes.get(d)]
                if failed:
                    return self._skip(entry, f"dependency not applied: {', '.join(failed)}")
                async with semaphore:
                    result = await self._apply_entry(entry)
                outcomes[entry.name] = result.success
                return result
            finally:
                finished[entry.name].set()

        results = await asyncio.gather(*(run(entry) for entry in manifest.resources))
        return list(results)

    async def destroy(self, manifest: Manifest) -> list[ApplyResult]:
        """Delete every recorded manifest entry in reverse order."""
        results: list[ApplyResult] = []
        halted: str | None = None

        for entry in reversed(manifest.resources):
            if halted is not None:
                results.append(self._skip(entry, f"destroy halted after {halted} failed"))
                continue

            result = await self._destroy_entry(entry)
            results.append(result)
            if result.error is not None:
                halted = entry.name

        return results

    # -------------------------------------------------------------------------
    # Entries
    # -------------------------------------------------------------------------

    async def _apply_entry(self, entry: ManifestEntry) -> ApplyResult:
        result = ApplyResult(name=entry.name, kind=entry.kind)
        if self._cancelled():
            result.action = ChangeType.SKIPPED
            result.detail = "cancelled before start"
            result.end_time = datetime.now(UTC)
            return result

        controller = self._controllers[entry.kind]
        prior = self._store.get(entry.name)

        try:
            plan = entry.resolve_plan(self._resolved_ids(entry))

            if prior is None:
                result.action = ChangeType.CREATE
                state = await controller.create(
                    plan, on_created=lambda ref: self._store.record_ref(entry.name, ref)
                )
            elif prior.ref.kind != entry.kind:
                raise ResourceValidationError(
                    f"{entry.name} was recorded as {prior.ref.kind.value}, "
                    f"manifest declares {entry.kind.value} (requires replacement)",
                    ref=prior.ref,
                )
            elif not prior.converged:
                result.action = ChangeType.RESUME
                snapshot = await controller.wait_for_active(prior.ref)
                if prior.plan:
                    previous = controller.plan_class.model_validate(prior.plan)
                    state = await controller.update(
                        prior.ref, previous, plan, attributes=snapshot.payload or prior.attributes
                    )
                else:
                    state = controller.converged_state(prior.ref, snapshot, plan)
            else:
                previous = controller.plan_class.model_validate(prior.plan)
                if not changed_fields(previous, plan):
                    result.ref = prior.ref
                    result.end_time = datetime.now(UTC)
                    return result
                result.action = ChangeType.UPDATE
                state = await controller.update(
                    prior.ref, previous, plan, attributes=prior.attributes
                )

        except ProvisionerError as e:
            self._record_failure(entry, result, e)
            return result

        self._store.put(entry.name, state)
        result.ref = state.ref
        result.end_time = datetime.now(UTC)
        logger.info(
            "Entry applied",
            extra={
                "entry": entry.name,
                "kind": entry.kind.value,
                "action": result.action.value,
                "resource_id": state.ref.id,
                "duration_seconds": result.duration_seconds,
            },
        )
        return result

    async def _destroy_entry(self, entry: ManifestEntry) -> ApplyResult:
        result = ApplyResult(name=entry.name, kind=entry.kind)
        state = self._store.get(entry.name)
        if state is None:
            result.end_time = datetime.now(UTC)
            return result

        if self._cancelled():
            return self._skip(entry, "cancelled before start")

        result.action = ChangeType.DELETE
        result.ref = state.ref
        try:
            await self._controllers[state.ref.kind].delete(state.ref)
        except ProvisionerError as e:
            self._record_failure(entry, result, e)
            return result

        self._store.remove(entry.name)
        result.end_time = datetime.now(UTC)
        logger.info(
            "Entry destroyed",
            extra={
                "entry": entry.name,
                "kind": entry.kind.value,
                "resource_id": state.ref.id,
                "duration_seconds": result.duration_seconds,
            },
        )
        return result

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _resolved_ids(self, entry: ManifestEntry) -> dict[str, str]:
        ids: dict[str, str] = {}
        for dependency in entry.depends_on:
            state = self._store.get(dependency)
            if state is not None:
                ids[dependency] = state.ref.id
        missing = entry.references() - set(ids)
        if missing:
            raise ResourceValidationError(
                f"{entry.name} references {sorted(missing)}, which have no recorded identifier",
                kind=entry.kind.value,
            )
        return ids

    def _record_failure(
        self,
        entry: ManifestEntry,
        result: ApplyResult,
        error: ProvisionerError,
    ) -> None:
        """Persist the identifier (when known) and attach the error to the result."""
        if error.ref is not None and not isinstance(error, ResourceValidationError):
            self._store.record_ref(entry.name, error.ref, status=error.last_status)
        result.ref = error.ref or result.ref
        result.error = error
        result.end_time = datetime.now(UTC)
        logger.error(
            "Entry failed",
            extra={
                "entry": entry.name,
                "action": result.action.value,
                "error": error.message,
                **error.to_log_fields(),
            },
        )

    def _skip(self, entry: ManifestEntry, reason: str) -> ApplyResult:
        logger.warning("Entry skipped", extra={"entry": entry.name, "reason": reason})
        return ApplyResult(
            name=entry.name,
            kind=entry.kind,
            action=ChangeType.SKIPPED,
            detail=reason,
            end_time=datetime.now(UTC),
        )

    def _cancelled(self) -> bool:
        return self._cancel is not None and self._cancel.is_set()

    def _warn_unmanaged(self, manifest: Manifest) -> None:
        declared = {entry.name for entry in manifest.resources}
        for name, state in self._store.items():
            if name not in declared:
                logger.warning(
                    "Recorded resource is no longer in the manifest",
                    extra={"entry": name, "kind": state.ref.kind.value, "resource_id": state.ref.id},
                )


def summarize(results: list[ApplyResult]) -> dict[str, int]:
    """Count results per action, plus failures."""
    summary: dict[str, int] = {"failed": 0}
    for result in results:
        summary[result.action.value] = summary.get(result.action.value, 0) + 1
        if result.error is not None:
            summary["failed"] += 1
    return summary

