"""Descriptor store: where NodePool descriptors and their status live.

``InMemoryNodePoolStore`` mimics the platform's deletion semantics for
tests and local runs; ``KubeNodePoolStore`` persists to the
``nodepools.nodeward.io`` custom resource.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from kubernetes_asyncio import client
from kubernetes_asyncio.client.rest import ApiException
from loguru import logger

from nodeward.api import NodePool, NodePoolKey
from nodeward.core.exceptions import ClusterError

GROUP = "nodeward.io"
VERSION = "v1alpha1"
PLURAL = "nodepools"

log = logger.bind(component="store")


@runtime_checkable
class NodePoolStore(Protocol):
    async def get(self, key: NodePoolKey) -> NodePool | None:
        """The descriptor, or None when it no longer exists."""
        ...

    async def update(self, pool: NodePool) -> NodePool | None:
        """Persist the finalizers. Returns None if the platform removed the descriptor."""
        ...

    async def update_status(self, pool: NodePool) -> NodePool:
        """Persist the whole status object."""
        ...

    async def keys(self) -> list[NodePoolKey]: ...


class InMemoryNodePoolStore:
    """Process-local store with the surrounding platform's lifecycle rules.

    A deletion request on a descriptor holding finalizers only sets the
    tombstone; dropping the last finalizer of a tombstoned descriptor
    removes it.
    """

    def __init__(self, *pools: NodePool) -> None:
        self._pools: dict[NodePoolKey, NodePool] = {p.key: p for p in pools}
        self.status_writes = 0

    def put(self, pool: NodePool) -> None:
        self._pools[pool.key] = pool

    def request_delete(self, key: NodePoolKey) -> None:
        pool = self._pools.get(key)
        if pool is None:
            return
        if not pool.metadata.finalizers:
            del self._pools[key]
            return
        if not pool.is_deleting:
            meta = replace(pool.metadata, deletion_timestamp=datetime.now(UTC))
            self._pools[key] = replace(pool, metadata=meta)

    async def get(self, key: NodePoolKey) -> NodePool | None:
        return self._pools.get(key)

    async def update(self, pool: NodePool) -> NodePool | None:
        if pool.key not in self._pools:
            return None
        if pool.is_deleting and not pool.metadata.finalizers:
            del self._pools[pool.key]
            return None
        current = self._pools[pool.key]
        stored = replace(pool, status=current.status)
        self._pools[pool.key] = stored
        return stored

    async def update_status(self, pool: NodePool) -> NodePool:
        current = self._pools.get(pool.key)
        if current is None:
            return pool
        stored = current.with_status(pool.status)
        self._pools[pool.key] = stored
        self.status_writes += 1
        return stored

    async def keys(self) -> list[NodePoolKey]:
        return list(self._pools)


class KubeNodePoolStore:
    """NodePoolStore over the NodePool custom resource."""

    def __init__(self, api_client: client.ApiClient) -> None:
        self._api = client.CustomObjectsApi(api_client)

    async def get(self, key: NodePoolKey) -> NodePool | None:
        try:
            raw = await self._api.get_namespaced_custom_object(
                GROUP, VERSION, key.namespace, PLURAL, key.name,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise ClusterError(f"failed to get nodepool {key}: {e.status} {e.reason}", e.status) from e
        return NodePool.from_dict(raw)

    async def update(self, pool: NodePool) -> NodePool | None:
        # Merge patch of the fields nodeward owns; labels, annotations and
        # owner references set by others are left untouched.
        metadata: dict[str, Any] = {"finalizers": list(pool.metadata.finalizers)}
        if pool.metadata.resource_version:
            metadata["resourceVersion"] = pool.metadata.resource_version
        try:
            raw = await self._api.patch_namespaced_custom_object(
                GROUP, VERSION, pool.namespace, PLURAL, pool.name, {"metadata": metadata},
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise ClusterError(
                f"failed to update nodepool {pool.key}: {e.status} {e.reason}", e.status,
            ) from e
        return NodePool.from_dict(raw)

    async def update_status(self, pool: NodePool) -> NodePool:
        try:
            raw = await self._api.replace_namespaced_custom_object_status(
                GROUP, VERSION, pool.namespace, PLURAL, pool.name, pool.to_dict(),
            )
        except ApiException as e:
            raise ClusterError(
                f"failed to update nodepool status {pool.key}: {e.status} {e.reason}", e.status,
            ) from e
        return NodePool.from_dict(raw)

    async def keys(self) -> list[NodePoolKey]:
        try:
            listing = await self._api.list_cluster_custom_object(GROUP, VERSION, PLURAL)
        except ApiException as e:
            raise ClusterError(f"failed to list nodepools: {e.status} {e.reason}", e.status) from e
        return [
            NodePoolKey(item["metadata"].get("namespace", "default"), item["metadata"]["name"])
            for item in listing.get("items", [])
        ]
