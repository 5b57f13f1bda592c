"""Pydantic models for resource references, plans and manifests.

These models provide:
1. Type-safe parsing of manifest entries
2. Validation at the boundary (fail fast, fail loudly)
3. Request bodies for the backend services
4. Field-level diffs between a prior plan and a new one
"""

from __future__ import annotations

import ipaddress
import re
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

VALID_NAME_PATTERN = r"^[a-zA-Z0-9][a-zA-Z0-9_-]{0,62}$"
VALID_BACKUP_START_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d:[0-5]\d$"
REFERENCE_PATTERN = r"\$\{([a-zA-Z0-9][a-zA-Z0-9_-]{0,62})\.id\}"


class ResourceKind(str, Enum):
    """Resource kinds whose lifecycle is driven by a controller."""

    DATABASE_CLUSTER = "database_cluster"
    DATABASE_REPLICA = "database_replica"
    KUBERNETES_CLUSTER = "kubernetes_cluster"
    NODE_POOL = "node_pool"
    VPC = "vpc"
    ROUTE = "route"

    @property
    def nested(self) -> bool:
        """Whether resources of this kind live under a parent resource."""
        return self in NESTED_KINDS


NESTED_KINDS = frozenset({ResourceKind.NODE_POOL, ResourceKind.ROUTE})


class ResourceRef(BaseModel):
    """Identifier assigned by the backend's create call, plus its kind.

    Nested resources (node pools, routes) also carry the identifier of the
    resource they live under. Immutable once assigned.
    """

    model_config = ConfigDict(frozen=True)

    kind: ResourceKind
    id: Annotated[str, Field(min_length=1)]
    parent_id: str | None = None

    @model_validator(mode="after")
    def validate_parent(self) -> ResourceRef:
        if self.kind.nested and not self.parent_id:
            raise ValueError(f"{self.kind.value} requires a parent id")
        return self

    def __str__(self) -> str:
        if self.parent_id:
            return f"{self.kind.value} {self.parent_id}/{self.id}"
        return f"{self.kind.value} {self.id}"


class ResourceState(BaseModel):
    """Last known state of a managed resource.

    Attributes:
        ref: Backend identifier.
        status: Last observed raw status.
        plan: Plan the resource was last applied with (used for diffs).
        attributes: Response body of the last observation.
        converged: Whether the last operation reached its target.
        updated_at: When this record was produced.
    """

    ref: ResourceRef
    status: str | None = None
    plan: dict[str, Any] = Field(default_factory=dict)
    attributes: dict[str, Any] = Field(default_factory=dict)
    converged: bool = True
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


# =============================================================================
# Plans
# =============================================================================


class BasePlan(BaseModel):
    """Base for desired-state plans."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    def to_request(self) -> dict[str, Any]:
        """Convert the plan to a create request body."""
        raise NotImplementedError("Subclasses must implement to_request")


class DatabaseClusterPlan(BasePlan):
    """Desired state of a DBaaS cluster."""

    name: Annotated[str, Field(min_length=1, max_length=100)]
    engine_name: str = Field(alias="engineName")
    engine_version: str = Field(alias="engineVersion")
    instance_type: str = Field(alias="instanceType")
    user: str
    password: Annotated[str, Field(min_length=8)]
    volume_size: Annotated[int, Field(ge=10, le=50000, alias="volumeSize")]
    volume_type: str | None = Field(None, alias="volumeType")
    parameter_group: str | None = Field(None, alias="parameterGroup")
    backup_retention_days: int | None = Field(None, ge=0, le=35, alias="backupRetentionDays")
    backup_start_at: str | None = Field(None, alias="backupStartAt")

    @field_validator("backup_start_at")
    @classmethod
    def validate_backup_start_at(cls, v: str | None) -> str | None:
        if v is not None and not re.match(VALID_BACKUP_START_PATTERN, v):
            raise ValueError("backup_start_at must be formatted as HH:MM:SS")
        return v

    def to_request(self) -> dict[str, Any]:
        # Engine and instance type ids are resolved by the controller
        body: dict[str, Any] = {
            "name": self.name,
            "user": self.user,
            "password": self.password,
            "volume": {"size": self.volume_size},
        }
        if self.volume_type:
            body["volume"]["type"] = self.volume_type
        if self.parameter_group:
            body["parameter_group_id"] = self.parameter_group
        if self.backup_retention_days is not None:
            body["backup_retention_days"] = self.backup_retention_days
        if self.backup_start_at:
            body["backup_start_at"] = self.backup_start_at
        return body


class DatabaseReplicaPlan(BasePlan):
    """Desired state of a DBaaS read replica."""

    name: Annotated[str, Field(min_length=1, max_length=100)]
    source_id: str = Field(alias="sourceId")
    engine_id: str = Field(alias="engineId")
    instance_type: str = Field(alias="instanceType")
    volume_size: Annotated[int | None, Field(ge=10, le=50000, alias="volumeSize")] = None

    def to_request(self) -> dict[str, Any]:
        return {"name": self.name, "source_id": self.source_id}


class KubernetesClusterPlan(BasePlan):
    """Desired state of a Kubernetes cluster."""

    name: str
    version: str | None = None
    description: str | None = None
    enabled_server_group: bool = Field(True, alias="enabledServerGroup")
    allowed_cidrs: list[str] = Field(default_factory=list, alias="allowedCidrs")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not re.match(VALID_NAME_PATTERN, v):
            raise ValueError(f"name must match pattern {VALID_NAME_PATTERN}")
        return v

    @field_validator("allowed_cidrs")
    @classmethod
    def validate_cidrs(cls, v: list[str]) -> list[str]:
        for cidr in v:
            try:
                ipaddress.ip_network(cidr, strict=False)
            except ValueError as e:
                raise ValueError(f"invalid CIDR: {cidr}") from e
        return v

    def to_request(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "name": self.name,
            "enabled_server_group": self.enabled_server_group,
        }
        if self.version:
            body["version"] = self.version
        if self.description:
            body["description"] = self.description
        if self.allowed_cidrs:
            body["allowed_cidrs"] = self.allowed_cidrs
        return body


class NodePoolPlan(BasePlan):
    """Desired state of a Kubernetes node pool."""

    cluster_id: str = Field(alias="clusterId")
    name: str
    flavor: str
    replicas: Annotated[int, Field(ge=0, le=100)]
    min_replicas: Annotated[int | None, Field(ge=0, alias="minReplicas")] = None
    max_replicas: Annotated[int | None, Field(ge=1, alias="maxReplicas")] = None
    availability_zones: list[str] = Field(default_factory=list, alias="availabilityZones")
    tags: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_autoscale(self) -> NodePoolPlan:
        if (
            self.min_replicas is not None
            and self.max_replicas is not None
            and self.min_replicas > self.max_replicas
        ):
            raise ValueError("min_replicas cannot exceed max_replicas")
        return self

    def autoscale(self) -> dict[str, int] | None:
        if self.min_replicas is None and self.max_replicas is None:
            return None
        scale: dict[str, int] = {}
        if self.min_replicas is not None:
            scale["min_replicas"] = self.min_replicas
        if self.max_replicas is not None:
            scale["max_replicas"] = self.max_replicas
        return scale

    def to_request(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "name": self.name,
            "flavor": self.flavor,
            "replicas": self.replicas,
        }
        autoscale = self.autoscale()
        if autoscale:
            body["auto_scale"] = autoscale
        if self.availability_zones:
            body["availability_zones"] = self.availability_zones
        if self.tags:
            body["tags"] = self.tags
        return body


class VpcPlan(BasePlan):
    """Desired state of a VPC."""

    name: Annotated[str, Field(min_length=1, max_length=63)]
    description: str | None = None

    def to_request(self) -> dict[str, Any]:
        body: dict[str, Any] = {"name": self.name}
        if self.description:
            body["description"] = self.description
        return body


class RoutePlan(BasePlan):
    """Desired state of a VPC route."""

    vpc_id: str = Field(alias="vpcId")
    port_id: str = Field(alias="portId")
    cidr_destination: str = Field(alias="cidrDestination")
    description: str | None = None

    @field_validator("cidr_destination")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        try:
            ipaddress.ip_network(v, strict=False)
        except ValueError as e:
            raise ValueError(f"invalid CIDR: {v}") from e
        return v

    def to_request(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "port_id": self.port_id,
            "cidr_destination": self.cidr_destination,
        }
        if self.description:
            body["description"] = self.description
        return body


PLAN_REGISTRY: dict[ResourceKind, type[BasePlan]] = {
    ResourceKind.DATABASE_CLUSTER: DatabaseClusterPlan,
    ResourceKind.DATABASE_REPLICA: DatabaseReplicaPlan,
    ResourceKind.KUBERNETES_CLUSTER: KubernetesClusterPlan,
    ResourceKind.NODE_POOL: NodePoolPlan,
    ResourceKind.VPC: VpcPlan,
    ResourceKind.ROUTE: RoutePlan,
}


def get_plan_class(kind: ResourceKind | str) -> type[BasePlan]:
    """Get the plan class for a resource kind.

    Raises:
        ValueError: If the kind is unknown.
    """
    try:
        return PLAN_REGISTRY[ResourceKind(kind)]
    except ValueError as e:
        valid = [k.value for k in ResourceKind]
        raise ValueError(f"Unknown resource kind '{kind}'. Valid kinds: {valid}") from e


def changed_fields(prior: BasePlan | None, plan: BasePlan) -> set[str]:
    """Names of the fields whose value differs between two plans.

    A missing prior plan means every set field changed.
    """
    current = plan.model_dump()
    if prior is None:
        return {name for name, value in current.items() if value is not None}
    previous = prior.model_dump()
    return {name for name, value in current.items() if previous.get(name) != value}


# =============================================================================
# Manifest
# =============================================================================


class ManifestEntry(BaseModel):
    """A single named resource in a manifest.

    Plan values of the form `${other.id}` are replaced with the identifier of
    the entry named `other` once it has been applied. Such entries must list
    `other` in `depends_on`.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: Annotated[str, Field(min_length=1, max_length=100)]
    kind: ResourceKind
    plan: dict[str, Any]
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not re.match(VALID_NAME_PATTERN, v):
            raise ValueError(f"name must match pattern {VALID_NAME_PATTERN}")
        return v

    @model_validator(mode="after")
    def validate_plan(self) -> ManifestEntry:
        try:
            get_plan_class(self.kind).model_validate(self.plan)
        except ValidationError as e:
            raise ValueError(f"invalid plan for {self.kind.value} '{self.name}': {e}") from e
        return self

    def references(self) -> set[str]:
        """Names of the entries whose identifiers this plan refers to."""
        names: set[str] = set()
        for value in self.plan.values():
            if isinstance(value, str):
                match = re.fullmatch(REFERENCE_PATTERN, value)
                if match:
                    names.add(match.group(1))
        return names

    def resolve_plan(self, ids: dict[str, str]) -> BasePlan:
        """Substitute referenced identifiers and parse the plan for this kind.

        Raises:
            KeyError: If a referenced entry has no identifier in `ids`.
        """
        resolved: dict[str, Any] = {}
        for key, value in self.plan.items():
            match = re.fullmatch(REFERENCE_PATTERN, value) if isinstance(value, str) else None
            resolved[key] = ids[match.group(1)] if match else value
        return get_plan_class(self.kind).model_validate(resolved)


class Manifest(BaseModel):
    """Declared resources to apply, in dependency order."""

    model_config = ConfigDict(extra="ignore")

    version: Literal[1] = 1
    resources: list[ManifestEntry] = Field(default_factory=list)

    @field_validator("resources")
    @classmethod
    def validate_resources(cls, v: list[ManifestEntry]) -> list[ManifestEntry]:
        seen: set[str] = set()
        for entry in v:
            if entry.name in seen:
                raise ValueError(f"duplicate resource name: {entry.name}")
            # Dependencies must be declared earlier, which also rules out cycles
            for dependency in entry.depends_on:
                if dependency not in seen:
                    raise ValueError(
                        f"{entry.name} depends on {dependency}, which is not declared before it"
                    )
            missing = entry.references() - set(entry.depends_on)
            if missing:
                raise ValueError(
                    f"{entry.name} references {sorted(missing)} without listing them in depends_on"
                )
            seen.add(entry.name)
        return v
