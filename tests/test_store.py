from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from unittest.mock import MagicMock

import pytest
from conftest import make_pool
from kubernetes_asyncio.client.rest import ApiException

from nodeward.api import FINALIZER, NodePool, NodePoolKey, NodePoolStatus
from nodeward.core.exceptions import ClusterError
from nodeward.store import InMemoryNodePoolStore, KubeNodePoolStore

pytestmark = [pytest.mark.unit]

KEY = NodePoolKey("default", "workers")


@pytest.mark.asyncio
async def test_update_keeps_status_and_update_status_keeps_metadata():
    store = InMemoryNodePoolStore(make_pool(finalizer=False))

    await store.update_status((await store.get(KEY)).with_status(NodePoolStatus(phase="Ready")))
    updated = await store.update((await store.get(KEY)).with_finalizer().with_status(NodePoolStatus()))

    assert updated.has_finalizer
    assert updated.status.phase == "Ready"
    assert store.status_writes == 1


@pytest.mark.asyncio
async def test_delete_without_finalizer_removes_immediately():
    store = InMemoryNodePoolStore(make_pool(finalizer=False))
    store.request_delete(KEY)
    assert await store.get(KEY) is None


@pytest.mark.asyncio
async def test_delete_with_finalizer_tombstones_until_released():
    store = InMemoryNodePoolStore(make_pool())
    store.request_delete(KEY)

    pool = await store.get(KEY)
    assert pool.is_deleting
    assert await store.update(pool.without_finalizer()) is None
    assert await store.get(KEY) is None
    assert await store.keys() == []


@pytest.mark.asyncio
async def test_writes_to_missing_pool_are_ignored():
    store = InMemoryNodePoolStore()
    pool = make_pool()
    assert await store.update(pool) is None
    assert await store.update_status(pool) is pool
    assert store.status_writes == 0


# ─── Custom resource store ───────────────────────────────────────────


@dataclass
class FakeCustomObjects:
    """The CustomObjectsApi calls KubeNodePoolStore makes, answered from memory."""

    objects: dict[str, dict[str, Any]] = field(default_factory=dict)
    patches: list[dict[str, Any]] = field(default_factory=list)
    error: ApiException | None = None

    async def patch_namespaced_custom_object(self, group, version, namespace, plural, name, body):
        self.patches.append(body)
        if self.error is not None:
            raise self.error
        stored = self.objects[name]
        stored["metadata"].update(body["metadata"])
        return stored


@pytest.fixture
def custom() -> FakeCustomObjects:
    raw = make_pool(finalizer=False).to_dict()
    raw["metadata"].update({
        "labels": {"team": "infra"},
        "annotations": {"kubectl.kubernetes.io/last-applied-configuration": "{}"},
        "resourceVersion": "41",
    })
    return FakeCustomObjects(objects={"workers": raw})


@pytest.fixture
def kube_store(custom: FakeCustomObjects) -> KubeNodePoolStore:
    store = KubeNodePoolStore(MagicMock())
    store._api = custom
    return store


@pytest.mark.asyncio
async def test_finalizer_update_patches_only_finalizers(kube_store: KubeNodePoolStore, custom: FakeCustomObjects):
    pool = await kube_store.update(make_pool(finalizer=False).with_finalizer())

    assert custom.patches == [{"metadata": {"finalizers": [FINALIZER]}}]
    assert pool is not None and pool.has_finalizer
    assert custom.objects["workers"]["metadata"]["labels"] == {"team": "infra"}
    assert "kubectl.kubernetes.io/last-applied-configuration" in custom.objects["workers"]["metadata"]["annotations"]


@pytest.mark.asyncio
async def test_finalizer_patch_carries_resource_version(kube_store: KubeNodePoolStore, custom: FakeCustomObjects):
    pool = NodePool.from_dict(custom.objects["workers"])
    await kube_store.update(pool.with_finalizer())

    assert custom.patches[0]["metadata"]["resourceVersion"] == "41"


@pytest.mark.asyncio
async def test_patch_of_removed_pool_returns_none(kube_store: KubeNodePoolStore, custom: FakeCustomObjects):
    custom.error = ApiException(status=404, reason="Not Found")
    assert await kube_store.update(make_pool()) is None


@pytest.mark.asyncio
async def test_patch_conflict_is_cluster_error(kube_store: KubeNodePoolStore, custom: FakeCustomObjects):
    custom.error = ApiException(status=409, reason="Conflict")
    with pytest.raises(ClusterError) as exc_info:
        await kube_store.update(make_pool())
    assert exc_info.value.status == 409
