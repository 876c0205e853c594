"""Core bootstrap operations.

Declarative operations for node setup: packages, files, host firewall,
and the join command of each supported cluster type. Each operation is
a function returning an Op.
"""

from __future__ import annotations

import re
import shlex
from collections.abc import Mapping, Sequence
from typing import Final

from nodeward.api import FirewallRule
from nodeward.core.exceptions import ConfigurationError

from .compose import NODEWARD_DIR, Op

K8S_PACKAGES_URL: Final = "https://pkgs.k8s.io/core:/stable:/v{minor}/deb/"
K3S_INSTALL_URL: Final = "https://get.k3s.io"
RKE2_INSTALL_URL: Final = "https://get.rke2.io"

_UFW_PROTOCOLS = frozenset({"tcp", "udp"})

# =============================================================================
# Package Operations
# =============================================================================


def apt(*packages: str, quiet: bool = True, update: bool = True) -> Op:
    """Install APT packages, waiting for the dpkg lock.

    Example:
        >>> apt("curl", "gpg")()
        'apt-get -o DPkg::Lock::Timeout=-1 update -qq\\napt-get ... install -y -qq curl gpg'
    """
    if not packages:
        return lambda: "# No APT packages to install"

    flags = "-qq" if quiet else ""
    install_flags = "-y -qq" if quiet else "-y"
    pkg_list = " ".join(packages)

    def generate() -> str:
        lock_wait = "-o DPkg::Lock::Timeout=-1"
        lines = []
        if update:
            lines.append(f"apt-get {lock_wait} update {flags}".strip())
        lines.append(f"apt-get {lock_wait} install {install_flags} {pkg_list}")
        return "\n".join(lines)

    return generate


def file(path: str, content: str, mode: str | None = None) -> Op:
    """Write content to a file using a quoted heredoc.

    Example:
        >>> file("/etc/test.conf", "key=value")()
        "cat > /etc/test.conf << 'EOF'\\nkey=value\\nEOF"
    """

    def generate() -> str:
        lines = [f"cat > {path} << 'EOF'", content, "EOF"]
        if mode:
            lines.append(f"chmod {mode} {path}")
        return "\n".join(lines)

    return generate


def checkpoint(name: str) -> Op:
    """Touch a marker file under the nodeward state directory."""
    return lambda: f"touch {NODEWARD_DIR}/{name}"


def run_commands(commands: Sequence[str]) -> Op | None:
    """Post-init commands, run verbatim in order."""
    if not commands:
        return None
    return lambda: "\n".join(["# Post-init commands", *commands])


# =============================================================================
# Host Firewall
# =============================================================================


def ufw(rules: Sequence[FirewallRule]) -> Op | None:
    """Allow the pool's ports through ufw and enable it.

    SSH stays open so enabling the firewall never locks the host out.
    Ranges use ufw's ``low:high`` syntax.
    """
    if not rules:
        return None

    def generate() -> str:
        lines = ["# Host firewall", "apt-get -o DPkg::Lock::Timeout=-1 install -y -qq ufw", "ufw allow 22/tcp"]
        for rule in rules:
            protocol = (rule.protocol or "tcp").lower()
            if protocol not in _UFW_PROTOCOLS:
                lines.append(f"# ufw: skipping {rule.port}/{protocol}, not a port protocol")
                continue
            port = rule.port.replace("-", ":")
            lines.append(f"ufw allow {port}/{protocol}")
        lines.append("ufw --force enable")
        return "\n".join(lines)

    return generate


# =============================================================================
# Kubeadm
# =============================================================================


def kubernetes_minor(version: str) -> str:
    """``"1.29"``, ``"v1.29.3"`` -> ``"1.29"``.

    Raises:
        ConfigurationError: ``version`` is not a Kubernetes version.
    """
    match = re.fullmatch(r"v?(\d+)\.(\d+)(?:\.\d+)?", version.strip())
    if match is None:
        raise ConfigurationError(f"invalid kubernetes version: {version!r}")
    return f"{match.group(1)}.{match.group(2)}"


def kernel_prerequisites() -> Op:
    """Swap off, overlay and br_netfilter modules, bridged traffic sysctls."""
    return [
        "swapoff -a",
        "sed -i '/ swap / s/^/#/' /etc/fstab",
        file("/etc/modules-load.d/k8s.conf", "overlay\nbr_netfilter"),
        "modprobe overlay",
        "modprobe br_netfilter",
        file(
            "/etc/sysctl.d/99-kubernetes.conf",
            "net.bridge.bridge-nf-call-iptables = 1\n"
            "net.bridge.bridge-nf-call-ip6tables = 1\n"
            "net.ipv4.ip_forward = 1",
        ),
        "sysctl --system",
    ]


def containerd() -> Op:
    """Install containerd with the systemd cgroup driver."""
    return [
        apt("containerd"),
        "mkdir -p /etc/containerd",
        "containerd config default > /etc/containerd/config.toml",
        "sed -i 's/SystemdCgroup = false/SystemdCgroup = true/' /etc/containerd/config.toml",
        "systemctl restart containerd",
        "systemctl enable containerd",
    ]


def kubernetes_packages(version: str) -> Op:
    """kubelet, kubeadm and kubectl from the upstream repo for ``version``'s minor."""
    repo = K8S_PACKAGES_URL.format(minor=kubernetes_minor(version))
    keyring = "/etc/apt/keyrings/kubernetes-apt-keyring.gpg"
    return [
        apt("apt-transport-https", "ca-certificates", "curl", "gpg"),
        "mkdir -p -m 755 /etc/apt/keyrings",
        f"curl -fsSL {repo}Release.key | gpg --dearmor --yes -o {keyring}",
        f"echo 'deb [signed-by={keyring}] {repo} /' > /etc/apt/sources.list.d/kubernetes.list",
        apt("kubelet", "kubeadm", "kubectl"),
        "apt-mark hold kubelet kubeadm kubectl",
    ]


def _label_list(labels: Mapping[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in labels.items())


def kubeadm_join(endpoint: str, token: str, ca_cert_hash: str, labels: Mapping[str, str]) -> Op:
    """Join a kubeadm cluster as a worker.

    Without a CA hash the discovery falls back to skipping CA pinning.
    """

    def generate() -> str:
        lines = []
        if labels:
            extra = shlex.quote(f"KUBELET_EXTRA_ARGS=--node-labels={_label_list(labels)}")
            lines.append(f"echo {extra} > /etc/default/kubelet")
        discovery = (
            f"--discovery-token-ca-cert-hash {shlex.quote(ca_cert_hash)}"
            if ca_cert_hash
            else "--discovery-token-unsafe-skip-ca-verification"
        )
        lines.append(
            f"kubeadm join {shlex.quote(endpoint)} --token {shlex.quote(token)} {discovery}"
        )
        return "\n".join(lines)

    return generate


# =============================================================================
# K3s / RKE2
# =============================================================================


def k3s_agent(server_url: str, token: str, labels: Mapping[str, str]) -> Op:
    """Install k3s in agent mode pointed at ``server_url``."""

    def generate() -> str:
        args = " ".join(f"--node-label {shlex.quote(f'{k}={v}')}" for k, v in labels.items())
        env = f"K3S_URL={shlex.quote(server_url)} K3S_TOKEN={shlex.quote(token)}"
        return f"curl -sfL {K3S_INSTALL_URL} | {env} sh -s - agent {args}".rstrip()

    return generate


def rke2_agent(server_url: str, token: str, labels: Mapping[str, str]) -> Op:
    """Install the RKE2 agent and point it at ``server_url``."""
    config = [f"server: {server_url}", f"token: {token}"]
    if labels:
        config.append("node-label:")
        config.extend(f'  - "{k}={v}"' for k, v in labels.items())
    return [
        f"curl -sfL {RKE2_INSTALL_URL} | INSTALL_RKE2_TYPE=agent sh -",
        "mkdir -p /etc/rancher/rke2",
        file("/etc/rancher/rke2/config.yaml", "\n".join(config), mode="0600"),
        "systemctl enable --now rke2-agent.service",
    ]
