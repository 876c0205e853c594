from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Literal

from nodeward.core.exceptions import ConfigurationError

FINALIZER = "nodeward.io/finalizer"

type ProviderName = Literal["hetzner", "ovhcloud"]
type ClusterType = Literal["kubeadm", "k3s", "talos", "rke2", "rancher"]

PROVIDERS: tuple[str, ...] = ("hetzner", "ovhcloud")
CLUSTER_TYPES: tuple[str, ...] = ("kubeadm", "k3s", "talos", "rke2", "rancher")


# ─── Timestamps ──────────────────────────────────────────────────────


def format_time(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _compact(data: dict[str, Any]) -> dict[str, Any]:
    """Drop empty optional fields, mirroring ``omitempty`` on the wire."""
    return {k: v for k, v in data.items() if v not in (None, "", [], {})}


# ─── Identity ────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class NodePoolKey:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True, slots=True)
class ObjectMeta:
    """Resource metadata the engine cares about.

    ``deletion_timestamp`` is the tombstone; the :data:`FINALIZER` entry in
    ``finalizers`` is the finalization marker.
    """

    name: str
    namespace: str = "default"
    finalizers: tuple[str, ...] = ()
    deletion_timestamp: datetime | None = None
    generation: int = 0
    resource_version: str = ""

    def to_dict(self) -> dict[str, Any]:
        return _compact({
            "name": self.name,
            "namespace": self.namespace,
            "finalizers": list(self.finalizers),
            "deletionTimestamp": format_time(self.deletion_timestamp),
            "generation": self.generation or None,
            "resourceVersion": self.resource_version,
        })

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ObjectMeta:
        return cls(
            name=data["name"],
            namespace=data.get("namespace", "default"),
            finalizers=tuple(data.get("finalizers") or ()),
            deletion_timestamp=parse_time(data.get("deletionTimestamp")),
            generation=int(data.get("generation") or 0),
            resource_version=data.get("resourceVersion", ""),
        )


# ─── Provider blocks ─────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class HetznerConfig:
    server_type: str
    location: str
    image: str
    network: str = ""

    def to_dict(self) -> dict[str, Any]:
        return _compact({
            "serverType": self.server_type,
            "location": self.location,
            "image": self.image,
            "network": self.network,
        })

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> HetznerConfig:
        return cls(
            server_type=data.get("serverType", ""),
            location=data.get("location", ""),
            image=data.get("image", ""),
            network=data.get("network", ""),
        )


@dataclass(frozen=True, slots=True)
class OVHcloudConfig:
    """OVHcloud Public Cloud placement. Each resource is given by name or ID."""

    region: str
    project_id: str
    flavor: str = ""
    flavor_id: str = ""
    image: str = ""
    image_id: str = ""
    network: str = ""
    network_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return _compact({
            "region": self.region,
            "projectID": self.project_id,
            "flavor": self.flavor,
            "flavorID": self.flavor_id,
            "image": self.image,
            "imageID": self.image_id,
            "network": self.network,
            "networkID": self.network_id,
        })

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> OVHcloudConfig:
        return cls(
            region=data.get("region", ""),
            project_id=data.get("projectID", ""),
            flavor=data.get("flavor", ""),
            flavor_id=data.get("flavorID", ""),
            image=data.get("image", ""),
            image_id=data.get("imageID", ""),
            network=data.get("network", ""),
            network_id=data.get("networkID", ""),
        )


@dataclass(frozen=True, slots=True)
class FirewallRule:
    port: str
    protocol: str = "tcp"
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return _compact({
            "port": self.port,
            "protocol": self.protocol,
            "description": self.description,
        })

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FirewallRule:
        return cls(
            port=str(data["port"]),
            protocol=data.get("protocol") or "tcp",
            description=data.get("description", ""),
        )


# ─── Bootstrap ───────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class SecretReference:
    """Key inside a secret in the pool's namespace."""

    name: str
    key: str = ""

    def key_or(self, default: str) -> str:
        return self.key or default

    def to_dict(self) -> dict[str, Any]:
        return _compact({"name": self.name, "key": self.key})

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> SecretReference | None:
        if not data:
            return None
        return cls(name=data["name"], key=data.get("key", ""))


@dataclass(frozen=True, slots=True)
class K3sConfig:
    server_url: str
    token_secret_ref: SecretReference | None = None


@dataclass(frozen=True, slots=True)
class TalosConfig:
    control_plane_endpoint: str
    config_secret_ref: SecretReference | None = None


@dataclass(frozen=True, slots=True)
class RKE2Config:
    server_url: str
    token_secret_ref: SecretReference | None = None


@dataclass(frozen=True, slots=True)
class BootstrapConfig:
    type: ClusterType = "kubeadm"
    api_server_endpoint: str = ""
    token_secret_ref: SecretReference | None = None
    kubernetes_version: str = "1.29"
    k3s: K3sConfig | None = None
    talos: TalosConfig | None = None
    rke2: RKE2Config | None = None

    def to_dict(self) -> dict[str, Any]:
        def ref(r: SecretReference | None) -> dict[str, Any] | None:
            return r.to_dict() if r else None

        return _compact({
            "type": self.type,
            "apiServerEndpoint": self.api_server_endpoint,
            "tokenSecretRef": ref(self.token_secret_ref),
            "kubernetesVersion": self.kubernetes_version,
            "k3sConfig": self.k3s and _compact({
                "serverURL": self.k3s.server_url,
                "tokenSecretRef": ref(self.k3s.token_secret_ref),
            }),
            "talosConfig": self.talos and _compact({
                "controlPlaneEndpoint": self.talos.control_plane_endpoint,
                "configSecretRef": ref(self.talos.config_secret_ref),
            }),
            "rke2Config": self.rke2 and _compact({
                "serverURL": self.rke2.server_url,
                "tokenSecretRef": ref(self.rke2.token_secret_ref),
            }),
        })

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> BootstrapConfig:
        k3s = data.get("k3sConfig")
        talos = data.get("talosConfig")
        rke2 = data.get("rke2Config")
        return cls(
            type=data.get("type") or "kubeadm",
            api_server_endpoint=data.get("apiServerEndpoint", ""),
            token_secret_ref=SecretReference.from_dict(data.get("tokenSecretRef")),
            kubernetes_version=data.get("kubernetesVersion") or "1.29",
            k3s=K3sConfig(
                server_url=k3s.get("serverURL", ""),
                token_secret_ref=SecretReference.from_dict(k3s.get("tokenSecretRef")),
            ) if k3s else None,
            talos=TalosConfig(
                control_plane_endpoint=talos.get("controlPlaneEndpoint", ""),
                config_secret_ref=SecretReference.from_dict(talos.get("configSecretRef")),
            ) if talos else None,
            rke2=RKE2Config(
                server_url=rke2.get("serverURL", ""),
                token_secret_ref=SecretReference.from_dict(rke2.get("tokenSecretRef")),
            ) if rke2 else None,
        )


# ─── Spec ────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class NodePoolSpec:
    """User-authored pool descriptor.

    ``target_nodes > 0`` overrides autoscaling. ``scale_down_threshold`` is
    carried on the wire but not used by any scaling decision.
    """

    provider: ProviderName
    min_nodes: int = 0
    max_nodes: int = 0
    target_nodes: int = 0
    hetzner: HetznerConfig | None = None
    ovhcloud: OVHcloudConfig | None = None
    auto_scaling_enabled: bool = False
    scale_up_threshold: int = 1
    scale_down_threshold: int = 0
    ssh_keys: tuple[str, ...] = ()
    labels: Mapping[str, str] = field(default_factory=dict)
    cloud_init: str = ""
    bootstrap: BootstrapConfig | None = None
    firewall_rules: tuple[FirewallRule, ...] = ()
    run_cmd: tuple[str, ...] = ()

    def validate(self) -> None:
        """Raise ConfigurationError unless ``0 <= min_nodes <= max_nodes``."""
        if self.provider not in PROVIDERS:
            raise ConfigurationError(f"unsupported provider: {self.provider}")
        if self.min_nodes < 0 or self.max_nodes < 0:
            raise ConfigurationError(
                f"minNodes and maxNodes must be non-negative "
                f"(got {self.min_nodes}, {self.max_nodes})"
            )
        if self.min_nodes > self.max_nodes:
            raise ConfigurationError(
                f"minNodes ({self.min_nodes}) must not exceed maxNodes ({self.max_nodes})"
            )

    def to_dict(self) -> dict[str, Any]:
        data = _compact({
            "provider": self.provider,
            "hetznerConfig": self.hetzner.to_dict() if self.hetzner else None,
            "ovhcloudConfig": self.ovhcloud.to_dict() if self.ovhcloud else None,
            "targetNodes": self.target_nodes or None,
            "cloudInit": self.cloud_init,
            "sshKeys": list(self.ssh_keys),
            "labels": dict(self.labels),
            "scaleUpThreshold": self.scale_up_threshold or None,
            "scaleDownThreshold": self.scale_down_threshold or None,
            "bootstrap": self.bootstrap.to_dict() if self.bootstrap else None,
            "firewallRules": [r.to_dict() for r in self.firewall_rules],
            "runCmd": list(self.run_cmd),
        })
        data["minNodes"] = self.min_nodes
        data["maxNodes"] = self.max_nodes
        data["autoScalingEnabled"] = self.auto_scaling_enabled
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> NodePoolSpec:
        hetzner = data.get("hetznerConfig")
        ovhcloud = data.get("ovhcloudConfig")
        bootstrap = data.get("bootstrap")
        return cls(
            provider=data.get("provider", ""),
            min_nodes=int(data.get("minNodes", 0)),
            max_nodes=int(data.get("maxNodes", 0)),
            target_nodes=int(data.get("targetNodes", 0)),
            hetzner=HetznerConfig.from_dict(hetzner) if hetzner else None,
            ovhcloud=OVHcloudConfig.from_dict(ovhcloud) if ovhcloud else None,
            auto_scaling_enabled=bool(data.get("autoScalingEnabled", False)),
            scale_up_threshold=int(data.get("scaleUpThreshold", 1)),
            scale_down_threshold=int(data.get("scaleDownThreshold", 0)),
            ssh_keys=tuple(data.get("sshKeys") or ()),
            labels=dict(data.get("labels") or {}),
            cloud_init=data.get("cloudInit", ""),
            bootstrap=BootstrapConfig.from_dict(bootstrap) if bootstrap else None,
            firewall_rules=tuple(FirewallRule.from_dict(r) for r in data.get("firewallRules") or ()),
            run_cmd=tuple(data.get("runCmd") or ()),
        )


# ─── Status ──────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Condition:
    type: str
    status: Literal["True", "False", "Unknown"]
    reason: str
    message: str = ""
    last_transition_time: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": format_time(self.last_transition_time),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Condition:
        return cls(
            type=data["type"],
            status=data.get("status", "Unknown"),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_transition_time=parse_time(data.get("lastTransitionTime")) or datetime.now(UTC),
        )


@dataclass(frozen=True, slots=True)
class NodePoolStatus:
    """Engine-owned observed state, written wholesale on every pass."""

    current_nodes: int = 0
    ready_nodes: int = 0
    nodes: tuple[str, ...] = ()
    last_scale_time: datetime | None = None
    conditions: tuple[Condition, ...] = ()
    phase: str = ""
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = _compact({
            "nodes": list(self.nodes),
            "lastScaleTime": format_time(self.last_scale_time),
            "conditions": [c.to_dict() for c in self.conditions],
            "phase": self.phase,
            "message": self.message,
        })
        data["currentNodes"] = self.current_nodes
        data["readyNodes"] = self.ready_nodes
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> NodePoolStatus:
        if not data:
            return cls()
        return cls(
            current_nodes=int(data.get("currentNodes", 0)),
            ready_nodes=int(data.get("readyNodes", 0)),
            nodes=tuple(data.get("nodes") or ()),
            last_scale_time=parse_time(data.get("lastScaleTime")),
            conditions=tuple(Condition.from_dict(c) for c in data.get("conditions") or ()),
            phase=data.get("phase", ""),
            message=data.get("message", ""),
        )


# ─── Resource ────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class NodePool:
    metadata: ObjectMeta
    spec: NodePoolSpec
    status: NodePoolStatus = field(default_factory=NodePoolStatus)

    @property
    def key(self) -> NodePoolKey:
        return NodePoolKey(self.metadata.namespace, self.metadata.name)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    @property
    def has_finalizer(self) -> bool:
        return FINALIZER in self.metadata.finalizers

    def with_finalizer(self) -> NodePool:
        if self.has_finalizer:
            return self
        meta = replace(self.metadata, finalizers=(*self.metadata.finalizers, FINALIZER))
        return replace(self, metadata=meta)

    def without_finalizer(self) -> NodePool:
        remaining = tuple(f for f in self.metadata.finalizers if f != FINALIZER)
        return replace(self, metadata=replace(self.metadata, finalizers=remaining))

    def with_status(self, status: NodePoolStatus) -> NodePool:
        return replace(self, status=status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "apiVersion": "nodeward.io/v1alpha1",
            "kind": "NodePool",
            "metadata": self.metadata.to_dict(),
            "spec": self.spec.to_dict(),
            "status": self.status.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> NodePool:
        return cls(
            metadata=ObjectMeta.from_dict(data["metadata"]),
            spec=NodePoolSpec.from_dict(data.get("spec") or {}),
            status=NodePoolStatus.from_dict(data.get("status")),
        )


# ─── Observed infrastructure ─────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Instance:
    """A provider-side machine. Never persisted by the engine."""

    id: str
    name: str
    status: str
    ipv4: str = ""
    ipv6: str = ""
    private_ip: str = ""
