import re
import secrets
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Literal, Protocol, runtime_checkable

from nodeward.api import FirewallRule, Instance, NodePoolKey
from nodeward.core.exceptions import ConfigurationError

OWNER_LABEL = "managed-by"
OWNER_VALUE = "nodeward"


def ownership_labels(key: NodePoolKey) -> dict[str, str]:
    """Labels that tie an instance to its pool. Listing filters on these."""
    return {"nodepool": key.name, "namespace": key.namespace, OWNER_LABEL: OWNER_VALUE}


def instance_name(key: NodePoolKey) -> str:
    """``<pool>-<4 hex>``, unique enough within one pool."""
    return f"{key.name}-{secrets.token_hex(2)}"


def is_pool_instance_name(key: NodePoolKey, name: str) -> bool:
    """True for names produced by :func:`instance_name` for this pool."""
    return re.fullmatch(rf"{re.escape(key.name)}-[0-9a-f]{{4}}", name) is not None


@dataclass(frozen=True, slots=True)
class FirewallRuleSpec:
    """Provider-agnostic firewall rule. ``port_from == port_to`` for one port."""

    port_from: int
    port_to: int
    protocol: str = "tcp"
    direction: Literal["in", "out"] = "in"
    source_cidrs: tuple[str, ...] = ("0.0.0.0/0", "::/0")

    @property
    def port(self) -> str:
        if self.port_from == self.port_to:
            return str(self.port_from)
        return f"{self.port_from}-{self.port_to}"


def firewall_specs(rules: Sequence[FirewallRule]) -> tuple[FirewallRuleSpec, ...]:
    """Translate pool firewall rules (``"22"``, ``"30000-32767"``) to ingress specs."""
    specs = []
    for rule in rules:
        low, _, high = rule.port.partition("-")
        try:
            port_from = int(low)
            port_to = int(high) if high else port_from
        except ValueError:
            raise ConfigurationError(f"invalid firewall port: {rule.port!r}") from None
        if not 0 < port_from <= port_to <= 65535:
            raise ConfigurationError(f"invalid firewall port range: {rule.port!r}")
        specs.append(FirewallRuleSpec(
            port_from=port_from, port_to=port_to, protocol=(rule.protocol or "tcp").lower(),
        ))
    return tuple(specs)


@dataclass(frozen=True, slots=True)
class InstanceConfig:
    """Everything a provider needs to create one instance, IDs already resolved."""

    name: str
    flavor: str
    image: str
    location: str
    user_data: str = ""
    ssh_keys: tuple[str, ...] = ()
    labels: Mapping[str, str] = field(default_factory=dict)
    network: str | None = None
    firewall: str | None = None


@runtime_checkable
class CloudProvider(Protocol):
    """Uniform instance-lifecycle capability set of one infrastructure vendor.

    One provider object wraps one API client and is shared by every pool
    that uses it. Implementations raise ``ProviderError`` (or a subclass)
    for API failures and ``ConfigurationError`` for failed name lookups.
    """

    name: str
    create_timeout: float | None

    async def list_instances(self, key: NodePoolKey) -> list[Instance]:
        """Instances owned by the pool, in provider listing order."""
        ...

    async def create_instance(self, config: InstanceConfig) -> Instance: ...

    async def delete_instance(self, instance_id: str) -> None:
        """Delete an instance. An instance that is already gone counts as deleted."""
        ...

    async def get_instance(self, instance_id: str) -> Instance:
        """Raises
        ------
        NotFoundError
            The instance does not exist.
        """
        ...

    async def resolve_flavor(self, name: str, *, region: str = "") -> str: ...

    async def resolve_image(self, name: str, *, region: str = "") -> str: ...

    async def resolve_network(self, name: str, *, region: str = "") -> str: ...

    async def resolve_ssh_key(self, name: str) -> str: ...

    async def get_or_create_firewall(
        self, name: str, rules: Sequence[FirewallRuleSpec],
    ) -> str | None:
        """Ensure a firewall named ``name`` carries exactly ``rules``.

        Returns
        -------
        str | None
            The firewall ID to attach at create time, or None when the
            provider has no firewall concept and rules are enforced on the
            host instead.
        """
        ...

    async def close(self) -> None: ...
