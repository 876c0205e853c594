from __future__ import annotations

import base64
from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import pytest
from kubernetes_asyncio.client.rest import ApiException

from nodeward.cluster import KubeCluster
from nodeward.core.exceptions import ClusterError, ConfigurationError

pytestmark = [pytest.mark.unit]


def pod(name: str, namespace: str = "default") -> SimpleNamespace:
    return SimpleNamespace(metadata=SimpleNamespace(name=name, namespace=namespace))


@dataclass
class FakeCore:
    """The CoreV1Api calls KubeCluster makes, answered from memory."""

    pods: dict[str, list[SimpleNamespace]] = field(default_factory=dict)
    secrets: dict[tuple[str, str], dict[str, str]] = field(default_factory=dict)
    errors: dict[str, ApiException] = field(default_factory=dict)
    calls: list[tuple[str, Any]] = field(default_factory=list)

    def _maybe_fail(self, op: str) -> None:
        if op in self.errors:
            raise self.errors[op]

    async def list_pod_for_all_namespaces(self, field_selector: str):
        self.calls.append(("list", field_selector))
        self._maybe_fail("list")
        return SimpleNamespace(items=self.pods.get(field_selector, []))

    async def patch_node(self, name: str, body: dict):
        self.calls.append(("patch", (name, body)))
        self._maybe_fail("patch")

    async def create_namespaced_pod_eviction(self, name: str, namespace: str, body):
        self.calls.append(("evict", f"{namespace}/{name}"))
        self._maybe_fail(f"evict:{name}")

    async def delete_node(self, name: str):
        self.calls.append(("delete", name))
        self._maybe_fail("delete")

    async def read_namespaced_secret(self, name: str, namespace: str):
        self._maybe_fail("secret")
        if (namespace, name) not in self.secrets:
            raise ApiException(status=404, reason="Not Found")
        return SimpleNamespace(data=self.secrets[(namespace, name)])


@pytest.fixture
def core() -> FakeCore:
    return FakeCore()


@pytest.fixture
def cluster(core: FakeCore) -> KubeCluster:
    kube = KubeCluster(MagicMock())
    kube._core = core
    return kube


# ─── Pods ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_count_pending_pods(cluster: KubeCluster, core: FakeCore):
    core.pods["status.phase=Pending"] = [pod("a"), pod("b", "jobs")]
    assert await cluster.count_pending_pods() == 2


@pytest.mark.asyncio
async def test_pending_lookup_error(cluster: KubeCluster, core: FakeCore):
    core.errors["list"] = ApiException(status=403, reason="Forbidden")
    with pytest.raises(ClusterError) as exc_info:
        await cluster.count_pending_pods()
    assert exc_info.value.status == 403


@pytest.mark.asyncio
async def test_evict_skips_pods_already_gone(cluster: KubeCluster, core: FakeCore):
    core.pods["spec.nodeName=workers-aaaa"] = [pod("web"), pod("gone"), pod("job", "jobs")]
    core.errors["evict:gone"] = ApiException(status=404, reason="Not Found")

    assert await cluster.evict_pods("workers-aaaa") == 2
    assert ("evict", "jobs/job") in core.calls


@pytest.mark.asyncio
async def test_evict_blocked_by_disruption_budget(cluster: KubeCluster, core: FakeCore):
    core.pods["spec.nodeName=workers-aaaa"] = [pod("web")]
    core.errors["evict:web"] = ApiException(status=429, reason="Too Many Requests")

    with pytest.raises(ClusterError, match="evict pod default/web"):
        await cluster.evict_pods("workers-aaaa")


# ─── Nodes ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_cordon_marks_unschedulable(cluster: KubeCluster, core: FakeCore):
    await cluster.cordon("workers-aaaa")
    assert core.calls == [("patch", ("workers-aaaa", {"spec": {"unschedulable": True}}))]


@pytest.mark.asyncio
@pytest.mark.parametrize("op,method", [("patch", "cordon"), ("delete", "delete_node")])
async def test_missing_node_is_not_an_error(cluster: KubeCluster, core: FakeCore, op: str, method: str):
    core.errors[op] = ApiException(status=404, reason="Not Found")
    await getattr(cluster, method)("workers-aaaa")


@pytest.mark.asyncio
async def test_delete_node_error(cluster: KubeCluster, core: FakeCore):
    core.errors["delete"] = ApiException(status=500, reason="Internal Server Error")
    with pytest.raises(ClusterError, match="500"):
        await cluster.delete_node("workers-aaaa")


# ─── Secrets ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_read_secret_decodes_key(cluster: KubeCluster, core: FakeCore):
    core.secrets[("kube-system", "join")] = {"token": base64.b64encode(b"abc.def").decode()}

    assert await cluster.read_secret("kube-system", "join", "token") == "abc.def"
    assert await cluster.read_secret("kube-system", "join", "ca-cert-hash") is None


@pytest.mark.asyncio
async def test_missing_secret_is_configuration_error(cluster: KubeCluster):
    with pytest.raises(ConfigurationError, match="kube-system/join"):
        await cluster.read_secret("kube-system", "join", "token")
