"""Cross-reference lookups resolved before any mutating call.

Plans name things the way people do ("postgres" 16, "BV4-8-100"); the API
wants identifiers. A failed lookup is a ResourceValidationError and nothing
is created.
"""

from __future__ import annotations

import logging
from typing import Protocol

from azure.core.exceptions import AzureError

from .errors import BackendError, ResourceValidationError

logger = logging.getLogger(__name__)

ACTIVE_STATUS = "ACTIVE"

# Product families an instance type must be compatible with
CLUSTER_PRODUCT_FAMILY = "CLUSTER"
REPLICA_PRODUCT_FAMILY = "SINGLE_INSTANCE_REPLICA"


class Lister(Protocol):
    """A collection whose `list` returns every item, across all pages."""

    async def list(self, *, params: dict | None = None, parent_id: str | None = None) -> list[dict]:
        ...


async def resolve_engine_id(engines: Lister, name: str, version: str, *, kind: str) -> str:
    """Find the engine id for an engine name and version.

    Raises:
        ResourceValidationError: If no engine matches.
        BackendError: If the engine listing fails.
    """
    try:
        available = await engines.list()
    except AzureError as e:
        raise BackendError.from_azure_error(e, "list engines for", kind=kind) from e

    for engine in available:
        if engine.get("name") == name and str(engine.get("version")) == version:
            return engine["id"]

    raise ResourceValidationError(f"engine {name} {version} not found", kind=kind)


async def resolve_instance_type_id(
    instance_types: Lister,
    label: str,
    engine_id: str,
    product_family: str,
    *,
    kind: str,
) -> str:
    """Find an active instance type by label compatible with a product family.

    Raises:
        ResourceValidationError: If no active, compatible instance type matches.
        BackendError: If the instance type listing fails.
    """
    params = {"status": ACTIVE_STATUS, "engine_id": engine_id}
    try:
        available = await instance_types.list(params=params)
    except AzureError as e:
        raise BackendError.from_azure_error(e, "list instance types for", kind=kind) from e

    for instance_type in available:
        if (
            instance_type.get("label") == label
            and instance_type.get("compatible_product") == product_family
        ):
            return instance_type["id"]

    logger.debug(
        "Instance type lookup missed",
        extra={"label": label, "engine_id": engine_id, "product_family": product_family},
    )
    raise ResourceValidationError(
        f"instance type {label} not found, not active or not compatible with {product_family}",
        kind=kind,
    )
