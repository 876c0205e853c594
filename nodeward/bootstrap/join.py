"""Join scripts for the supported cluster types.

``render_join_script`` is a pure template step: one ``match`` on the
cluster type selects the join mechanism. ``resolve_join_script`` gathers
the parameters for a pool, reading join credentials from secrets in the
pool's namespace.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Protocol

from loguru import logger

from nodeward.api import FirewallRule, NodePool, SecretReference
from nodeward.core.exceptions import ConfigurationError

from .compose import bootstrap
from .ops import (
    checkpoint,
    containerd,
    k3s_agent,
    kernel_prerequisites,
    kubeadm_join,
    kubernetes_packages,
    rke2_agent,
    run_commands,
    ufw,
)

log = logger.bind(component="bootstrap")

DEFAULT_TOKEN_KEY = "token"
DEFAULT_CA_HASH_KEY = "ca-cert-hash"
DEFAULT_TALOS_CONFIG_KEY = "config"
DEFAULT_KUBERNETES_VERSION = "1.29"


class SecretReader(Protocol):
    async def read_secret(self, namespace: str, name: str, key: str) -> str | None:
        """Decoded value of ``key`` in the secret, or None when the key is absent."""
        ...


@dataclass(frozen=True, slots=True)
class JoinParameters:
    """Everything a join script needs.

    Attributes:
        endpoint: API server (kubeadm), server URL (k3s, rke2) or control
            plane endpoint (talos).
        token: Join token.
        ca_cert_hash: ``sha256:<hex>`` discovery hash. Kubeadm only.
        kubernetes_version: Package repository version. Kubeadm only.
        labels: Node labels registered by the kubelet.
        firewall_rules: Ports opened on the host firewall.
        run_cmd: Commands run after the node joined.
        machine_config: Talos machine config, passed through verbatim.
    """

    endpoint: str = ""
    token: str = ""
    ca_cert_hash: str = ""
    kubernetes_version: str = DEFAULT_KUBERNETES_VERSION
    labels: Mapping[str, str] = field(default_factory=dict)
    firewall_rules: tuple[FirewallRule, ...] = ()
    run_cmd: tuple[str, ...] = ()
    machine_config: str = ""


def render_join_script(cluster_type: str, params: JoinParameters) -> str:
    """Render the user-data script for ``cluster_type``.

    Talos nodes read a machine config rather than a script, so for
    ``talos`` the machine config is returned as-is.

    Raises:
        ConfigurationError: Unsupported cluster type or missing parameter.
    """
    match cluster_type:
        case "kubeadm":
            if not params.endpoint:
                raise ConfigurationError("kubeadm bootstrap requires apiServerEndpoint")
            if not params.token:
                raise ConfigurationError("kubeadm bootstrap requires a join token")
            return bootstrap(
                ufw(params.firewall_rules),
                kernel_prerequisites(),
                containerd(),
                kubernetes_packages(params.kubernetes_version),
                kubeadm_join(params.endpoint, params.token, params.ca_cert_hash, params.labels),
                run_commands(params.run_cmd),
                checkpoint(".joined"),
            )
        case "k3s":
            if not params.endpoint:
                raise ConfigurationError("k3s bootstrap requires k3sConfig.serverURL")
            return bootstrap(
                ufw(params.firewall_rules),
                k3s_agent(params.endpoint, params.token, params.labels),
                run_commands(params.run_cmd),
                checkpoint(".joined"),
            )
        case "rke2" | "rancher":
            if not params.endpoint:
                raise ConfigurationError("rke2 bootstrap requires rke2Config.serverURL")
            return bootstrap(
                ufw(params.firewall_rules),
                rke2_agent(params.endpoint, params.token, params.labels),
                run_commands(params.run_cmd),
                checkpoint(".joined"),
            )
        case "talos":
            if not params.machine_config:
                raise ConfigurationError("talos bootstrap requires a machine config")
            return params.machine_config
        case _:
            raise ConfigurationError(f"unsupported cluster type: {cluster_type}")


async def _read(
    secrets: SecretReader, namespace: str, ref: SecretReference | None, default_key: str,
) -> str:
    if ref is None:
        return ""
    key = ref.key_or(default_key)
    value = await secrets.read_secret(namespace, ref.name, key)
    if not value:
        raise ConfigurationError(f"key {key!r} not found in secret {namespace}/{ref.name}")
    return value


async def resolve_join_script(pool: NodePool, secrets: SecretReader) -> str:
    """User data for a new instance of ``pool``.

    An explicit ``cloudInit`` wins; without a bootstrap block the user data
    is empty.
    """
    spec = pool.spec
    if spec.cloud_init:
        return spec.cloud_init
    if spec.bootstrap is None:
        return ""

    cfg = spec.bootstrap
    ns = pool.namespace
    common = {
        "labels": dict(spec.labels),
        "firewall_rules": spec.firewall_rules,
        "run_cmd": spec.run_cmd,
    }

    match cfg.type:
        case "kubeadm":
            token = await _read(secrets, ns, cfg.token_secret_ref, DEFAULT_TOKEN_KEY)
            ca_hash = ""
            if cfg.token_secret_ref is not None:
                ca_hash = await secrets.read_secret(
                    ns, cfg.token_secret_ref.name, DEFAULT_CA_HASH_KEY,
                ) or ""
            params = JoinParameters(
                endpoint=cfg.api_server_endpoint,
                token=token,
                ca_cert_hash=ca_hash,
                kubernetes_version=cfg.kubernetes_version or DEFAULT_KUBERNETES_VERSION,
                **common,
            )
        case "k3s":
            if cfg.k3s is None:
                raise ConfigurationError("k3s config is required for k3s cluster type")
            token = await _read(secrets, ns, cfg.k3s.token_secret_ref, DEFAULT_TOKEN_KEY)
            params = JoinParameters(endpoint=cfg.k3s.server_url, token=token, **common)
        case "rke2" | "rancher":
            if cfg.rke2 is None:
                raise ConfigurationError("rke2 config is required for rke2/rancher cluster type")
            token = await _read(secrets, ns, cfg.rke2.token_secret_ref, DEFAULT_TOKEN_KEY)
            params = JoinParameters(endpoint=cfg.rke2.server_url, token=token, **common)
        case "talos":
            if cfg.talos is None:
                raise ConfigurationError("talos config is required for talos cluster type")
            machine_config = await _read(
                secrets, ns, cfg.talos.config_secret_ref, DEFAULT_TALOS_CONFIG_KEY,
            )
            params = JoinParameters(
                endpoint=cfg.talos.control_plane_endpoint, machine_config=machine_config,
            )
        case other:
            raise ConfigurationError(f"unsupported cluster type: {other}")

    script = render_join_script(cfg.type, params)
    log.debug(
        "Rendered {type} join script ({size} bytes) for {pool}",
        type=cfg.type, size=len(script), pool=str(pool.key),
    )
    return script
