"""Kubernetes cluster and node pool controllers.

Kubernetes reports status nested as `{"status": {"state": ..., "message": ...}}`
and uses "failed" as a terminal failure without an "error" marker. Node
pools live under their cluster, so their ResourceRef carries the cluster id
as parent.
"""

from __future__ import annotations

from typing import Any, cast

from .controller import ResourceController
from .models import BasePlan, KubernetesClusterPlan, NodePoolPlan, ResourceKind, ResourceRef
from .status import StatusSnapshot

FAILED_STATUS = "failed"
DELETED_STATUS = "deleted"
DELETING_STATUS = "deleting"


class KubernetesClusterController(ResourceController):
    """Lifecycle of a managed Kubernetes cluster.

    Only the allowed CIDR list can change in place.
    """

    kind = ResourceKind.KUBERNETES_CLUSTER
    plan_class = KubernetesClusterPlan

    active_statuses = ("running", "provisioned")
    removed_statuses = (DELETED_STATUS,)
    deleting_statuses = (DELETING_STATUS,)
    failure_statuses = (FAILED_STATUS,)

    immutable_fields = frozenset({"name", "version", "description", "enabled_server_group"})

    async def apply_changes(
        self,
        ref: ResourceRef,
        prior: BasePlan,
        plan: BasePlan,
        changed: set[str],
        attributes: dict[str, Any],
    ) -> StatusSnapshot | None:
        plan = cast(KubernetesClusterPlan, plan)
        if "allowed_cidrs" not in changed:
            return None
        await self._invoke(
            "update", self._service.patch(ref.id, {"allowed_cidrs": plan.allowed_cidrs}), ref
        )
        return await self.wait_for_active(ref)


class NodePoolController(ResourceController):
    """Lifecycle of a node pool nested under a Kubernetes cluster."""

    kind = ResourceKind.NODE_POOL
    plan_class = NodePoolPlan

    active_statuses = ("running",)
    removed_statuses = (DELETED_STATUS,)
    deleting_statuses = (DELETING_STATUS,)
    failure_statuses = (FAILED_STATUS,)

    immutable_fields = frozenset({"cluster_id", "name", "flavor", "availability_zones", "tags"})

    def parent_id_for(self, plan: BasePlan) -> str | None:
        return cast(NodePoolPlan, plan).cluster_id

    async def apply_changes(
        self,
        ref: ResourceRef,
        prior: BasePlan,
        plan: BasePlan,
        changed: set[str],
        attributes: dict[str, Any],
    ) -> StatusSnapshot | None:
        plan = cast(NodePoolPlan, plan)
        body: dict[str, Any] = {}
        if "replicas" in changed:
            body["replicas"] = plan.replicas
        if changed & {"min_replicas", "max_replicas"}:
            body["auto_scale"] = plan.autoscale() or {}
        if not body:
            return None
        await self._invoke(
            "update", self._service.patch(ref.id, body, parent_id=ref.parent_id), ref
        )
        return await self.wait_for_active(ref)
