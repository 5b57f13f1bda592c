"""Generic create/read/update/delete orchestration for async resources.

A ResourceController owns the lifecycle of one resource kind:

- Create: validate inputs -> create call -> wait until active
- Update: diff the plan -> one mutating call per change group, each
  followed by its own wait (a failed wait aborts later calls)
- Delete: check status -> delete call unless already deleting -> wait
  until removed (a resource already gone is a successful delete)
- Read: a single status request, no polling

Every error raised here carries the ResourceRef whenever the backend has
assigned one, so the caller can persist it and clean up later.

Subclasses declare their statuses as class attributes and override the
hooks (build_create_request, apply_changes, snapshot_from) they need.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, ClassVar, TypeVar

from azure.core.exceptions import AzureError

from .config import Config, PollPhase
from .errors import (
    BackendError,
    ReconcileCancelledError,
    ReconcileTimeoutError,
    ResourceGoneError,
    ResourceValidationError,
    is_not_found,
)
from .models import BasePlan, ResourceKind, ResourceRef, ResourceState, changed_fields
from .polling import (
    Accessor,
    Converged,
    Failed,
    NotFound,
    ReconcileOutcome,
    TimedOut,
    wait_until_converged,
    wait_until_removed,
)
from .services import ResourceService
from .status import StatusClass, StatusClassifier, StatusSnapshot

logger = logging.getLogger(__name__)

T = TypeVar("T")

REMOVED_TARGET = "removed"


class ResourceController:
    """Base controller, generic over resource kind."""

    kind: ClassVar[ResourceKind]
    plan_class: ClassVar[type[BasePlan]]

    # Statuses are matched case-insensitively
    active_statuses: ClassVar[tuple[str, ...]] = ()
    removed_statuses: ClassVar[tuple[str, ...]] = ()
    deleting_statuses: ClassVar[tuple[str, ...]] = ("deleting",)
    failure_statuses: ClassVar[tuple[str, ...]] = ()

    # Fields that cannot change in place
    immutable_fields: ClassVar[frozenset[str]] = frozenset()

    def __init__(
        self,
        service: ResourceService,
        config: Config,
        *,
        cancel: asyncio.Event | None = None,
    ) -> None:
        """Initialize the controller.

        Args:
            service: REST collection for this kind.
            config: Validated configuration (supplies poll timing).
            cancel: Optional event that aborts any wait in progress.
        """
        self._service = service
        self._config = config
        self._cancel = cancel
        self._active = StatusClassifier(self.active_statuses, self.failure_statuses)
        self._removed = StatusClassifier(self.removed_statuses, self.failure_statuses)

    # -------------------------------------------------------------------------
    # Hooks
    # -------------------------------------------------------------------------

    def parent_id_for(self, plan: BasePlan) -> str | None:
        """Parent resource id for nested kinds."""
        return None

    async def build_create_request(self, plan: BasePlan) -> dict[str, Any]:
        """Request body for the create call. Lookups happen here."""
        return plan.to_request()

    async def apply_changes(
        self,
        ref: ResourceRef,
        prior: BasePlan,
        plan: BasePlan,
        changed: set[str],
        attributes: dict[str, Any],
    ) -> StatusSnapshot | None:
        """Issue the mutating calls for `changed` and wait after each one.

        `attributes` is the last recorded response body for the resource
        (empty when unknown).

        Returns the last converged snapshot, or None if nothing was issued.
        """
        raise ResourceValidationError(
            f"update is not supported for {self.kind.value}", ref=ref
        )

    def snapshot_from(self, payload: dict[str, Any]) -> StatusSnapshot:
        """Extract status (and message) from a response body.

        Handles flat `{"status": "ACTIVE"}` and nested
        `{"status": {"state": "Running", "message": "..."}}` shapes.
        """
        status = payload.get("status")
        if isinstance(status, dict):
            return StatusSnapshot(
                status=status.get("state"),
                message=status.get("message"),
                payload=payload,
            )
        return StatusSnapshot(status=status, message=payload.get("message"), payload=payload)

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def create(
        self,
        plan: BasePlan,
        *,
        on_created: Callable[[ResourceRef], None] | None = None,
    ) -> ResourceState:
        """Create the resource and wait until it is active.

        Args:
            plan: Desired state.
            on_created: Called with the ResourceRef as soon as the backend
                assigns it, before waiting.

        Raises:
            ResourceValidationError: Input lookups failed; nothing was created.
            BackendError: The create call failed, or the resource entered an
                error status (the error carries the ref).
            ReconcileTimeoutError: The resource did not become active in time.
            ReconcileCancelledError: The wait was cancelled.
        """
        started = time.monotonic()
        body = await self.build_create_request(plan)
        parent_id = self.parent_id_for(plan)

        created = await self._invoke("create", self._service.create(body, parent_id=parent_id))
        if not created or not created.get("id"):
            raise BackendError(
                f"create {self.kind.value} returned no identifier", kind=self.kind.value
            )

        ref = ResourceRef(kind=self.kind, id=created["id"], parent_id=parent_id)
        logger.info(
            "Resource created, waiting until active",
            extra={"kind": self.kind.value, "resource_id": ref.id, "parent_id": parent_id},
        )
        if on_created is not None:
            on_created(ref)

        snapshot = await self.wait_for_active(ref)
        logger.info(
            "Resource active",
            extra={
                "kind": self.kind.value,
                "resource_id": ref.id,
                "duration_seconds": round(time.monotonic() - started, 2),
            },
        )
        return self.converged_state(ref, snapshot, plan)

    async def read(self, ref: ResourceRef) -> ResourceState | None:
        """Fetch the current state once. Returns None if the resource is gone."""
        try:
            payload = await self._service.get(ref.id, parent_id=ref.parent_id)
        except AzureError as e:
            if is_not_found(e):
                logger.info(
                    "Resource no longer exists",
                    extra={"kind": self.kind.value, "resource_id": ref.id},
                )
                return None
            raise BackendError.from_azure_error(e, "read", ref=ref) from e

        snapshot = self._observed(ref, payload)
        return ResourceState(
            ref=ref,
            status=snapshot.status,
            attributes=payload,
            converged=self._active(snapshot) is StatusClass.SUCCESS,
        )

    async def update(
        self,
        ref: ResourceRef,
        prior: BasePlan,
        plan: BasePlan,
        *,
        attributes: dict[str, Any] | None = None,
    ) -> ResourceState:
        """Apply the fields that differ between `prior` and `plan`.

        `attributes` is the recorded response body of the resource, used by
        kinds that need identifiers resolved when it was created.

        Raises:
            ResourceValidationError: An immutable field changed.
            BackendError, ReconcileTimeoutError, ReconcileCancelledError:
                as for create; the error carries the ref.
        """
        changed = changed_fields(prior, plan)
        immutable = sorted(changed & self.immutable_fields)
        if immutable:
            raise ResourceValidationError(
                f"{ref} cannot change {', '.join(immutable)} in place (requires replacement)",
                ref=ref,
            )

        if not changed:
            state = await self.read(ref)
            if state is None:
                raise ResourceGoneError(f"{ref} no longer exists", ref=ref)
            return state.model_copy(update={"plan": plan.model_dump()})

        logger.info(
            "Updating resource",
            extra={"kind": self.kind.value, "resource_id": ref.id, "fields": sorted(changed)},
        )
        snapshot = await self.apply_changes(ref, prior, plan, changed, attributes or {})
        if snapshot is None:
            snapshot = await self.wait_for_active(ref)
        return self.converged_state(ref, snapshot, plan)

    async def delete(self, ref: ResourceRef) -> None:
        """Delete the resource and wait until it is removed.

        A resource that is already gone counts as deleted. A resource that
        is already deleting is not sent a second delete call.
        """
        try:
            payload = await self._service.get(ref.id, parent_id=ref.parent_id)
        except AzureError as e:
            if is_not_found(e):
                logger.info(
                    "Resource already deleted",
                    extra={"kind": self.kind.value, "resource_id": ref.id},
                )
                return
            raise BackendError.from_azure_error(e, "read", ref=ref) from e

        snapshot = self._observed(ref, payload)
        current = (snapshot.status or "").strip().lower()
        if current in {s.lower() for s in self.deleting_statuses}:
            logger.info(
                "Delete already in progress, not reissuing",
                extra={"kind": self.kind.value, "resource_id": ref.id, "status": snapshot.status},
            )
        else:
            try:
                await self._service.delete(ref.id, parent_id=ref.parent_id)
            except AzureError as e:
                if is_not_found(e):
                    return
                raise BackendError.from_azure_error(e, "delete", ref=ref) from e

        await self.wait_for_removal(ref)
        logger.info("Resource deleted", extra={"kind": self.kind.value, "resource_id": ref.id})

    # -------------------------------------------------------------------------
    # Waits
    # -------------------------------------------------------------------------

    def accessor(self, ref: ResourceRef) -> Accessor:
        """Status accessor for the poll loop."""

        async def observe() -> StatusSnapshot:
            payload = await self._service.get(ref.id, parent_id=ref.parent_id)
            return self._observed(ref, payload)

        return observe

    async def wait_for_active(self, ref: ResourceRef) -> StatusSnapshot:
        """Block until the resource reaches an active status.

        Raises:
            BackendError, ReconcileTimeoutError, ReconcileCancelledError.
        """
        spec = self._config.poll_spec(self.kind, PollPhase.CONVERGE, self._active)
        outcome = await wait_until_converged(
            self.accessor(ref), spec, cancel=self._cancel, label=str(ref)
        )
        snapshot = self._settle(ref, outcome, self._active.describe_target())
        if snapshot is None:
            raise ResourceGoneError(f"{ref} disappeared while waiting to become active", ref=ref)
        return snapshot

    async def wait_for_removal(self, ref: ResourceRef) -> None:
        """Block until the resource is gone (or reports a removed status)."""
        spec = self._config.poll_spec(self.kind, PollPhase.REMOVE, self._removed)
        outcome = await wait_until_removed(
            self.accessor(ref), spec, cancel=self._cancel, label=str(ref)
        )
        self._settle(ref, outcome, REMOVED_TARGET)

    def _settle(
        self,
        ref: ResourceRef,
        outcome: ReconcileOutcome,
        target: str,
    ) -> StatusSnapshot | None:
        """Turn a wait outcome into a snapshot or a resource-qualified error."""
        if isinstance(outcome, Converged):
            return outcome.snapshot
        if isinstance(outcome, NotFound):
            return None
        if isinstance(outcome, TimedOut):
            last = outcome.last_snapshot.status if outcome.last_snapshot else None
            raise ReconcileTimeoutError(ref, target, last_status=last, detail=outcome.detail)
        if isinstance(outcome, Failed):
            last = outcome.snapshot.status if outcome.snapshot else None
            if outcome.cancelled:
                raise ReconcileCancelledError(ref, target, last_status=last)
            if outcome.error is not None and is_not_found(outcome.error):
                raise ResourceGoneError(
                    f"{ref} disappeared while waiting for {target}", ref=ref, last_status=last
                ) from outcome.error
            raise BackendError(
                f"{ref} failed while waiting for {target}: {outcome.reason}",
                ref=ref,
                last_status=last,
            ) from outcome.error
        raise TypeError(f"unexpected outcome: {outcome!r}")

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _invoke(
        self,
        action: str,
        call: Awaitable[T],
        ref: ResourceRef | None = None,
    ) -> T:
        """Await a mutating call, wrapping azure-core errors in BackendError."""
        try:
            return await call
        except AzureError as e:
            raise BackendError.from_azure_error(e, action, kind=self.kind.value, ref=ref) from e

    def _observed(self, ref: ResourceRef, payload: Any) -> StatusSnapshot:
        """Snapshot from a status response; the body must be a JSON object."""
        if not isinstance(payload, dict):
            raise BackendError(
                f"read {ref.kind.value} {ref.id} returned an unexpected body: "
                f"{type(payload).__name__}",
                ref=ref,
            )
        return self.snapshot_from(payload)

    def converged_state(
        self, ref: ResourceRef, snapshot: StatusSnapshot, plan: BasePlan
    ) -> ResourceState:
        """State record for a resource that reached its target with `plan`."""
        return ResourceState(
            ref=ref,
            status=snapshot.status,
            plan=plan.model_dump(),
            attributes=snapshot.payload or {},
            converged=True,
        )
