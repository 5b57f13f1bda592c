"""Async REST collections for each resource kind.

Each ResourceService wraps one collection of the cloud API (e.g.
/database/v2/clusters) and exposes the accessor/mutator calls a controller
needs. The underlying client is blocking, so calls run in the default
executor: polls for different resources proceed concurrently while sharing
one client.
"""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Callable
from typing import Any, TypeVar

from .client import MgcApiClient
from .models import ResourceKind

T = TypeVar("T")

COLLECTION_PATHS: dict[ResourceKind, str] = {
    ResourceKind.DATABASE_CLUSTER: "/database/v2/clusters",
    ResourceKind.DATABASE_REPLICA: "/database/v2/replicas",
    ResourceKind.KUBERNETES_CLUSTER: "/kubernetes/v0/clusters",
    ResourceKind.NODE_POOL: "/kubernetes/v0/clusters/{parent_id}/node_pools",
    ResourceKind.VPC: "/network/v0/vpcs",
    ResourceKind.ROUTE: "/network/v0/vpcs/{parent_id}/routes",
}

ENGINES_PATH = "/database/v2/engines"
INSTANCE_TYPES_PATH = "/database/v2/instance-types"

# Offset pagination for list calls
DEFAULT_LIST_LIMIT = 50
LIMIT_PARAM = "_limit"
OFFSET_PARAM = "_offset"


class ResourceService:
    """One REST collection, optionally nested under a parent resource."""

    def __init__(self, client: MgcApiClient, collection: str) -> None:
        self._client = client
        self._collection = collection

    @property
    def nested(self) -> bool:
        return "{parent_id}" in self._collection

    def _path(self, parent_id: str | None, *segments: str) -> str:
        if self.nested:
            if not parent_id:
                raise ValueError(f"{self._collection} requires a parent id")
            base = self._collection.format(parent_id=parent_id)
        else:
            base = self._collection
        return "/".join([base, *segments])

    async def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    async def create(self, body: dict[str, Any], *, parent_id: str | None = None) -> dict[str, Any]:
        """POST a new resource. The response carries at least its `id`."""
        return await self._call(self._client.request, "POST", self._path(parent_id), json=body)

    async def get(self, resource_id: str, *, parent_id: str | None = None) -> dict[str, Any]:
        return await self._call(self._client.request, "GET", self._path(parent_id, resource_id))

    async def patch(
        self,
        resource_id: str,
        body: dict[str, Any],
        *,
        parent_id: str | None = None,
    ) -> dict[str, Any] | None:
        return await self._call(
            self._client.request, "PATCH", self._path(parent_id, resource_id), json=body
        )

    async def action(
        self,
        resource_id: str,
        action: str,
        body: dict[str, Any] | None = None,
        *,
        parent_id: str | None = None,
    ) -> dict[str, Any] | None:
        """POST to a sub-resource action, e.g. /clusters/{id}/resize."""
        return await self._call(
            self._client.request, "POST", self._path(parent_id, resource_id, action), json=body
        )

    async def delete(self, resource_id: str, *, parent_id: str | None = None) -> None:
        await self._call(self._client.request, "DELETE", self._path(parent_id, resource_id))

    async def list(
        self,
        *,
        params: dict[str, Any] | None = None,
        parent_id: str | None = None,
        page_size: int = DEFAULT_LIST_LIMIT,
    ) -> list[dict[str, Any]]:
        """List every item of the collection.

        Pages are requested with _limit/_offset until one comes back shorter
        than `page_size`. A backend that ignores the offset and repeats the
        same page ends the listing. Accepts bare lists and
        {"results": [...]} or {"items": [...]} page bodies.
        """
        items: list[dict[str, Any]] = []
        previous: list[dict[str, Any]] | None = None
        offset = 0
        while True:
            query = {**(params or {}), LIMIT_PARAM: page_size, OFFSET_PARAM: offset}
            body = await self._call(
                self._client.request, "GET", self._path(parent_id), params=query
            )
            page = _page_items(body)
            if page == previous:
                return items
            items.extend(page)
            if len(page) < page_size:
                return items
            previous = page
            offset += len(page)


def _page_items(body: Any) -> list[dict[str, Any]]:
    if body is None:
        return []
    if isinstance(body, list):
        return body
    return list(body.get("results", body.get("items", [])))


def build_services(client: MgcApiClient) -> dict[ResourceKind, ResourceService]:
    """One service per resource kind, all sharing the same client."""
    return {kind: ResourceService(client, path) for kind, path in COLLECTION_PATHS.items()}
