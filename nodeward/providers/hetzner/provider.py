"""Hetzner Cloud provider for nodeward node pools."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from loguru import logger

from nodeward.api import Instance, NodePoolKey
from nodeward.core.exceptions import ConfigurationError, NotFoundError
from nodeward.providers.provider import FirewallRuleSpec, InstanceConfig

from .client import HetznerClient, get_token, sanitize_token, validate_token
from .config import Hetzner
from .types import FirewallRuleParams, ServerResponse

log = logger.bind(provider="hetzner")

_PROTOCOLS = frozenset({"tcp", "udp", "icmp", "esp", "gre"})
_PORTLESS = frozenset({"icmp", "esp", "gre"})


def _on_network(server: ServerResponse, network_id: str) -> bool:
    return any(str(net["network"]) == network_id for net in server.get("private_net") or [])


def _to_instance(server: ServerResponse) -> Instance:
    public = server.get("public_net") or {}
    ipv4 = public.get("ipv4") or {}
    ipv6 = public.get("ipv6") or {}
    private = server.get("private_net") or []
    return Instance(
        id=str(server["id"]),
        name=server["name"],
        status=server["status"],
        ipv4=ipv4.get("ip", ""),
        ipv6=ipv6.get("ip", ""),
        private_ip=private[0]["ip"] if private else "",
    )


def _to_rule(rule: FirewallRuleSpec) -> FirewallRuleParams:
    protocol = rule.protocol if rule.protocol in _PROTOCOLS else "tcp"
    params: FirewallRuleParams = {
        "direction": rule.direction,
        "protocol": protocol,
        "source_ips": list(rule.source_cidrs),
    }
    if protocol not in _PORTLESS:
        params["port"] = rule.port
    return params


class HetznerProvider:
    """CloudProvider over the Hetzner Cloud REST API.

    Instances are found through their ownership labels, so listing only
    returns servers this pool created.
    """

    name = "hetzner"

    def __init__(self, config: Hetzner, client: HetznerClient) -> None:
        self._config = config
        self._client = client
        self.create_timeout = config.create_timeout

    @classmethod
    async def create(cls, config: Hetzner) -> HetznerProvider:
        token = get_token(config.token)
        validate_token(token)
        log.debug("Using Hetzner token {token}", token=sanitize_token(token))
        return cls(config, HetznerClient(token, config))

    async def list_instances(self, key: NodePoolKey) -> list[Instance]:
        selector = f"nodepool={key.name},namespace={key.namespace}"
        servers = await self._client.list_servers(selector)
        return [_to_instance(s) for s in servers]

    async def create_instance(self, config: InstanceConfig) -> Instance:
        payload: dict[str, Any] = {
            "name": config.name,
            "server_type": config.flavor,
            "image": config.image,
            "location": config.location,
            "ssh_keys": [int(k) if k.isdigit() else k for k in config.ssh_keys],
            "labels": dict(config.labels),
            "start_after_create": True,
        }
        if config.user_data:
            payload["user_data"] = config.user_data
        if config.firewall:
            payload["firewalls"] = [{"firewall": int(config.firewall)}]

        # Server names are unique per project; a retried create resumes the earlier attempt.
        server = await self._client.find_server(config.name)
        if server is None:
            result = await self._client.create_server(payload)
            server = result["server"]
            log.info("Server {name} created with id {sid}", name=server["name"], sid=server["id"])
        else:
            log.info("Server {name} already exists with id {sid}", name=server["name"], sid=server["id"])

        if config.network and not _on_network(server, config.network):
            action = await self._client.attach_to_network(str(server["id"]), config.network)
            await self._client.wait_for_action(action)
            server = await self._client.get_server(str(server["id"]))
            log.debug("Server {name} attached to network {net}", name=server["name"], net=config.network)

        return _to_instance(server)

    async def delete_instance(self, instance_id: str) -> None:
        try:
            await self._client.delete_server(instance_id)
        except NotFoundError:
            log.debug("Server {sid} already deleted", sid=instance_id)
            return
        log.info("Server {sid} deleted", sid=instance_id)

    async def get_instance(self, instance_id: str) -> Instance:
        return _to_instance(await self._client.get_server(instance_id))

    # ─── Name resolution ─────────────────────────────────────────────

    async def _resolve(self, resource: str, label: str, name: str, **params: Any) -> str:
        found = await self._client.find_by_name(resource, name, **params)
        if found is None:
            raise ConfigurationError(f"{label} {name!r} not found")
        return str(found["id"])

    async def resolve_flavor(self, name: str, *, region: str = "") -> str:
        return await self._resolve("server_types", "server type", name)

    async def resolve_image(self, name: str, *, region: str = "") -> str:
        return await self._resolve(
            "images", "image", name, architecture=self._config.architecture,
        )

    async def resolve_network(self, name: str, *, region: str = "") -> str:
        if name.isdigit():
            try:
                return str((await self._client.get_network(name))["id"])
            except NotFoundError:
                raise ConfigurationError(f"network {name!r} not found") from None
        return await self._resolve("networks", "network", name)

    async def resolve_ssh_key(self, name: str) -> str:
        return await self._resolve("ssh_keys", "SSH key", name)

    # ─── Firewalls ───────────────────────────────────────────────────

    async def get_or_create_firewall(
        self, name: str, rules: Sequence[FirewallRuleSpec],
    ) -> str | None:
        params = [_to_rule(r) for r in rules]
        existing = await self._client.get_firewall(name)
        if existing is not None:
            await self._client.set_firewall_rules(existing["id"], params)
            log.debug("Firewall {name} rules updated", name=name)
            return str(existing["id"])

        created = await self._client.create_firewall(name, params, {"managed-by": "nodeward"})
        log.info("Firewall {name} created with id {fid}", name=name, fid=created["id"])
        return str(created["id"])

    async def close(self) -> None:
        await self._client.close()
