"""VPC and route controllers.

Neither kind supports in-place updates: any change to a declared field
needs the resource to be replaced. Routes are nested under their VPC.
"""

from __future__ import annotations

from typing import cast

from .controller import ResourceController
from .models import BasePlan, ResourceKind, RoutePlan, VpcPlan

CREATED_STATUS = "created"
DELETED_STATUS = "deleted"
DELETING_STATUS = "deleting"


class VpcController(ResourceController):
    kind = ResourceKind.VPC
    plan_class = VpcPlan

    active_statuses = (CREATED_STATUS,)
    removed_statuses = (DELETED_STATUS,)
    deleting_statuses = (DELETING_STATUS,)

    immutable_fields = frozenset({"name", "description"})


class RouteController(ResourceController):
    kind = ResourceKind.ROUTE
    plan_class = RoutePlan

    active_statuses = (CREATED_STATUS,)
    removed_statuses = (DELETED_STATUS,)
    deleting_statuses = (DELETING_STATUS,)

    immutable_fields = frozenset({"vpc_id", "port_id", "cidr_destination", "description"})

    def parent_id_for(self, plan: BasePlan) -> str | None:
        return cast(RoutePlan, plan).vpc_id
