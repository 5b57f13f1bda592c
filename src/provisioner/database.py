"""DBaaS cluster and replica controllers.

Both kinds converge on ACTIVE and simply disappear once deleted (there is
no "deleted" status to wait for, only a 404). Instance types are resolved
from their label against the engine and the product family before any
mutating call is issued. Updates reuse the engine id recorded for the
cluster and only look the engine up when a resize needs it and none is
recorded.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, ClassVar, cast

from .config import Config
from .controller import ResourceController
from .lookups import (
    CLUSTER_PRODUCT_FAMILY,
    REPLICA_PRODUCT_FAMILY,
    Lister,
    resolve_engine_id,
    resolve_instance_type_id,
)
from .models import (
    BasePlan,
    DatabaseClusterPlan,
    DatabaseReplicaPlan,
    ResourceKind,
    ResourceRef,
)
from .services import ResourceService
from .status import StatusSnapshot

logger = logging.getLogger(__name__)

ACTIVE_STATUS = "ACTIVE"
DELETING_STATUS = "DELETING"

RESIZE_ACTION = "resize"

# Fields applied through the resize action, the rest through PATCH
RESIZE_FIELDS = frozenset({"instance_type", "volume_size"})
PARAMETER_FIELDS = frozenset({"parameter_group", "backup_retention_days", "backup_start_at"})


class _DatabaseController(ResourceController):
    """Shared instance-type resolution and resize for database kinds."""

    product_family: ClassVar[str]

    active_statuses = (ACTIVE_STATUS,)
    deleting_statuses = (DELETING_STATUS,)

    def __init__(
        self,
        service: ResourceService,
        config: Config,
        *,
        instance_types: Lister,
        cancel: asyncio.Event | None = None,
    ) -> None:
        super().__init__(service, config, cancel=cancel)
        self._instance_types = instance_types

    async def _instance_type_id(self, label: str, engine_id: str) -> str:
        return await resolve_instance_type_id(
            self._instance_types,
            label,
            engine_id,
            self.product_family,
            kind=self.kind.value,
        )

    async def _engine_id_for(self, plan: BasePlan, attributes: dict[str, Any]) -> str:
        """Engine id an instance type must be compatible with."""
        raise NotImplementedError

    async def _resize(
        self,
        ref: ResourceRef,
        plan: DatabaseClusterPlan | DatabaseReplicaPlan,
        changed: set[str],
        attributes: dict[str, Any],
    ) -> StatusSnapshot | None:
        """Issue one resize call for instance type and volume, then wait."""
        if not changed & RESIZE_FIELDS:
            return None

        body: dict[str, Any] = {}
        if "instance_type" in changed and plan.instance_type:
            engine_id = await self._engine_id_for(plan, attributes)
            body["instance_type_id"] = await self._instance_type_id(plan.instance_type, engine_id)
        if "volume_size" in changed and plan.volume_size:
            body["volume"] = {"size": plan.volume_size}
        if not body:
            return None

        logger.info(
            "Resizing resource",
            extra={"kind": self.kind.value, "resource_id": ref.id, "fields": sorted(body)},
        )
        await self._invoke(RESIZE_ACTION, self._service.action(ref.id, RESIZE_ACTION, body), ref)
        return await self.wait_for_active(ref)


class DatabaseClusterController(_DatabaseController):
    """Lifecycle of a DBaaS cluster."""

    kind = ResourceKind.DATABASE_CLUSTER
    plan_class = DatabaseClusterPlan
    product_family = CLUSTER_PRODUCT_FAMILY

    immutable_fields = frozenset(
        {"name", "engine_name", "engine_version", "user", "password", "volume_type"}
    )

    def __init__(
        self,
        service: ResourceService,
        config: Config,
        *,
        engines: Lister,
        instance_types: Lister,
        cancel: asyncio.Event | None = None,
    ) -> None:
        super().__init__(service, config, instance_types=instance_types, cancel=cancel)
        self._engines = engines

    async def _engine_id(self, plan: DatabaseClusterPlan) -> str:
        return await resolve_engine_id(
            self._engines, plan.engine_name, plan.engine_version, kind=self.kind.value
        )

    async def build_create_request(self, plan: BasePlan) -> dict[str, Any]:
        plan = cast(DatabaseClusterPlan, plan)
        engine_id = await self._engine_id(plan)
        body = plan.to_request()
        body["engine_id"] = engine_id
        body["instance_type_id"] = await self._instance_type_id(plan.instance_type, engine_id)
        return body

    async def _engine_id_for(self, plan: BasePlan, attributes: dict[str, Any]) -> str:
        """Engine id recorded for the cluster, resolved by name only when unknown."""
        recorded = attributes.get("engine_id")
        if recorded:
            return str(recorded)
        return await self._engine_id(cast(DatabaseClusterPlan, plan))

    async def apply_changes(
        self,
        ref: ResourceRef,
        prior: BasePlan,
        plan: BasePlan,
        changed: set[str],
        attributes: dict[str, Any],
    ) -> StatusSnapshot | None:
        plan = cast(DatabaseClusterPlan, plan)

        # A failed resize wait raises here, so parameters are never touched
        snapshot = await self._resize(ref, plan, changed, attributes)

        if changed & PARAMETER_FIELDS:
            body: dict[str, Any] = {}
            if "parameter_group" in changed:
                body["parameter_group_id"] = plan.parameter_group
            if "backup_retention_days" in changed:
                body["backup_retention_days"] = plan.backup_retention_days
            if "backup_start_at" in changed:
                body["backup_start_at"] = plan.backup_start_at
            await self._invoke("update", self._service.patch(ref.id, body), ref)
            snapshot = await self.wait_for_active(ref)

        return snapshot


class DatabaseReplicaController(_DatabaseController):
    """Lifecycle of a DBaaS read replica. Updates are resize-only."""

    kind = ResourceKind.DATABASE_REPLICA
    plan_class = DatabaseReplicaPlan
    product_family = REPLICA_PRODUCT_FAMILY

    immutable_fields = frozenset({"name", "source_id", "engine_id"})

    async def build_create_request(self, plan: BasePlan) -> dict[str, Any]:
        plan = cast(DatabaseReplicaPlan, plan)
        body = plan.to_request()
        body["instance_type_id"] = await self._instance_type_id(plan.instance_type, plan.engine_id)
        return body

    async def apply_changes(
        self,
        ref: ResourceRef,
        prior: BasePlan,
        plan: BasePlan,
        changed: set[str],
        attributes: dict[str, Any],
    ) -> StatusSnapshot | None:
        plan = cast(DatabaseReplicaPlan, plan)
        return await self._resize(ref, plan, changed, attributes)

    async def _engine_id_for(self, plan: BasePlan, attributes: dict[str, Any]) -> str:
        return cast(DatabaseReplicaPlan, plan).engine_id
