from __future__ import annotations

import itertools
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import pytest
from prometheus_client import CollectorRegistry

from nodeward.api import (
    FINALIZER,
    HetznerConfig,
    Instance,
    NodePool,
    NodePoolKey,
    NodePoolSpec,
    ObjectMeta,
    OVHcloudConfig,
)
from nodeward.core.exceptions import ConfigurationError, ProviderError
from nodeward.observability.metrics import MetricsCollector
from nodeward.providers.provider import FirewallRuleSpec, InstanceConfig
from nodeward.reconciler import NodePoolReconciler
from nodeward.store import InMemoryNodePoolStore

FIXED_NOW = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)


# ─── Builders ────────────────────────────────────────────────────────


def make_spec(**overrides: Any) -> NodePoolSpec:
    defaults: dict[str, Any] = {
        "provider": "hetzner",
        "min_nodes": 1,
        "max_nodes": 5,
        "hetzner": HetznerConfig(server_type="cx22", location="fsn1", image="ubuntu-22.04"),
    }
    return NodePoolSpec(**{**defaults, **overrides})


def make_pool(
    name: str = "workers",
    namespace: str = "default",
    *,
    finalizer: bool = True,
    deleting: bool = False,
    **spec: Any,
) -> NodePool:
    meta = ObjectMeta(
        name=name,
        namespace=namespace,
        finalizers=(FINALIZER,) if finalizer else (),
        deletion_timestamp=FIXED_NOW if deleting else None,
    )
    return NodePool(metadata=meta, spec=make_spec(**spec))


def ovh_spec(**overrides: Any) -> dict[str, Any]:
    return {
        "provider": "ovhcloud",
        "hetzner": None,
        "ovhcloud": OVHcloudConfig(region="GRA11", project_id="proj", flavor="b3-8", image="Ubuntu 22.04"),
        **overrides,
    }


# ─── Fake collaborators ──────────────────────────────────────────────


@dataclass
class FakeProvider:
    """In-memory CloudProvider. Instances are owned by their ``nodepool``/``namespace`` labels."""

    name: str = "hetzner"
    create_timeout: float | None = None
    status: str = "running"
    fail_list: Exception | None = None
    fail_create_at: int | None = None
    fail_delete: set[str] = field(default_factory=set)
    resolve_errors: Mapping[str, Exception] = field(default_factory=dict)
    firewall_id: str | None = "fw-1"
    instances: list[tuple[Mapping[str, str], Instance]] = field(default_factory=list)
    created: list[InstanceConfig] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    firewalls: list[tuple[str, tuple[FirewallRuleSpec, ...]]] = field(default_factory=list)
    resolved: list[tuple[str, str]] = field(default_factory=list)
    closed: bool = False
    _ids: itertools.count = field(default_factory=lambda: itertools.count(1))

    def seed(self, key: NodePoolKey, *names: str, status: str | None = None) -> list[Instance]:
        labels = {"nodepool": key.name, "namespace": key.namespace}
        added = [
            Instance(id=f"id-{n}", name=n, status=status or self.status) for n in names
        ]
        self.instances.extend((labels, i) for i in added)
        return added

    def owned(self, key: NodePoolKey) -> list[Instance]:
        return [
            i for labels, i in self.instances
            if labels.get("nodepool") == key.name and labels.get("namespace") == key.namespace
        ]

    async def list_instances(self, key: NodePoolKey) -> list[Instance]:
        if self.fail_list is not None:
            raise self.fail_list
        return self.owned(key)

    async def create_instance(self, config: InstanceConfig) -> Instance:
        if self.fail_create_at is not None and len(self.created) >= self.fail_create_at:
            raise ProviderError("HTTP 422: server limit reached")
        self.created.append(config)
        instance = Instance(id=f"srv-{next(self._ids)}", name=config.name, status="initializing")
        self.instances.append((dict(config.labels), instance))
        return instance

    async def delete_instance(self, instance_id: str) -> None:
        if instance_id in self.fail_delete:
            raise ProviderError(f"HTTP 423: {instance_id} is locked")
        self.deleted.append(instance_id)
        self.instances = [(l, i) for l, i in self.instances if i.id != instance_id]

    async def get_instance(self, instance_id: str) -> Instance:
        for _, i in self.instances:
            if i.id == instance_id:
                return i
        raise ProviderError(f"{instance_id} not found")

    async def _resolve(self, kind: str, name: str) -> str:
        self.resolved.append((kind, name))
        if kind in self.resolve_errors:
            raise self.resolve_errors[kind]
        return f"{kind}-{name}"

    async def resolve_flavor(self, name: str, *, region: str = "") -> str:
        return await self._resolve("flavor", name)

    async def resolve_image(self, name: str, *, region: str = "") -> str:
        return await self._resolve("image", name)

    async def resolve_network(self, name: str, *, region: str = "") -> str:
        return await self._resolve("network", name)

    async def resolve_ssh_key(self, name: str) -> str:
        return await self._resolve("sshkey", name)

    async def get_or_create_firewall(
        self, name: str, rules: Sequence[FirewallRuleSpec],
    ) -> str | None:
        self.firewalls.append((name, tuple(rules)))
        return self.firewall_id

    async def close(self) -> None:
        self.closed = True


@dataclass
class FakeCluster:
    pending: int = 0
    pending_error: Exception | None = None
    cordon_error: Exception | None = None
    evict_error: Exception | None = None
    delete_error: Exception | None = None
    evictions: int = 2
    secrets: dict[tuple[str, str, str], str] = field(default_factory=dict)
    cordoned: list[str] = field(default_factory=list)
    evicted: list[str] = field(default_factory=list)
    deleted_nodes: list[str] = field(default_factory=list)
    pending_calls: int = 0

    async def count_pending_pods(self) -> int:
        self.pending_calls += 1
        if self.pending_error is not None:
            raise self.pending_error
        return self.pending

    async def cordon(self, node_name: str) -> None:
        if self.cordon_error is not None:
            raise self.cordon_error
        self.cordoned.append(node_name)

    async def evict_pods(self, node_name: str) -> int:
        if self.evict_error is not None:
            raise self.evict_error
        self.evicted.append(node_name)
        return self.evictions

    async def delete_node(self, node_name: str) -> None:
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted_nodes.append(node_name)

    async def read_secret(self, namespace: str, name: str, key: str) -> str | None:
        if not any(ns == namespace and n == name for ns, n, _ in self.secrets):
            raise ConfigurationError(f"secret {namespace}/{name} not found")
        return self.secrets.get((namespace, name, key))


# ─── Fixtures ────────────────────────────────────────────────────────


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def ovh_provider() -> FakeProvider:
    return FakeProvider(name="ovhcloud", firewall_id=None)


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def store() -> InMemoryNodePoolStore:
    return InMemoryNodePoolStore()


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector(CollectorRegistry())


@pytest.fixture
def reconciler(
    store: InMemoryNodePoolStore,
    provider: FakeProvider,
    ovh_provider: FakeProvider,
    cluster: FakeCluster,
    metrics: MetricsCollector,
) -> NodePoolReconciler:
    return NodePoolReconciler(
        store,
        {"hetzner": provider, "ovhcloud": ovh_provider},
        cluster,
        metrics,
        interval=30.0,
        clock=lambda: FIXED_NOW,
    )

