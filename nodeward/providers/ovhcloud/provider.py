"""OVHcloud Public Cloud provider for nodeward node pools.

OVHcloud instances carry no labels, so pool ownership is derived from the
instance name (``<pool>-<4 hex>``). The Public Cloud API used here has no
security-group management; firewall rules are applied on the host by the
join script instead.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

from loguru import logger

from nodeward.api import Instance, NodePoolKey
from nodeward.core.exceptions import ConfigurationError, NotFoundError
from nodeward.providers.provider import FirewallRuleSpec, InstanceConfig, is_pool_instance_name

from .client import OVHcloudClient, OVHcloudError, resolve_credentials
from .config import OVHcloud
from .types import InstanceCreateParams, InstanceResponse, NetworkResponse

log = logger.bind(provider="ovhcloud")

ACTIVE = "ACTIVE"


def _to_instance(raw: InstanceResponse) -> Instance:
    ipv4 = ipv6 = private_ip = ""
    for address in raw.get("ipAddresses") or []:
        match address.get("version"):
            case 4:
                ipv4 = address["ip"]
                if address.get("type") == "private":
                    private_ip = address["ip"]
            case 6:
                ipv6 = address["ip"]
    return Instance(
        id=raw["id"], name=raw["name"], status=raw["status"],
        ipv4=ipv4, ipv6=ipv6, private_ip=private_ip,
    )


def _active_in(network: NetworkResponse, region: str) -> bool:
    return network.get("status") == ACTIVE and any(
        r.get("region") == region and r.get("status") == ACTIVE
        for r in network.get("regions") or []
    )


class OVHcloudProvider:
    """CloudProvider over the OVHcloud Public Cloud API, one project per provider."""

    name = "ovhcloud"

    def __init__(self, config: OVHcloud, client: OVHcloudClient) -> None:
        self._config = config
        self._client = client
        self.create_timeout = config.create_timeout

    @classmethod
    async def create(cls, config: OVHcloud) -> OVHcloudProvider:
        resolved = resolve_credentials(config)
        return cls(resolved, OVHcloudClient(resolved))

    async def list_instances(self, key: NodePoolKey) -> list[Instance]:
        raw = await self._client.list_instances()
        return [_to_instance(r) for r in raw if is_pool_instance_name(key, r.get("name", ""))]

    async def create_instance(self, config: InstanceConfig) -> Instance:
        params: InstanceCreateParams = {
            "name": config.name,
            "flavorId": config.flavor,
            "imageId": config.image,
            "region": config.location,
            "userData": config.user_data,
            "monthlyBilling": False,
        }
        # The instance API accepts a single key.
        if config.ssh_keys:
            params["sshKeyId"] = config.ssh_keys[0]
        if config.network:
            params["networks"] = await self._networks(config.location, config.network)

        created = await self._client.create_instance(params)
        log.info("Instance {name} created with id {iid}", name=created["name"], iid=created["id"])

        if self._config.settle_delay > 0:
            await asyncio.sleep(self._config.settle_delay)
        return _to_instance(await self._client.get_instance(created["id"]))

    async def _networks(self, region: str, private_id: str) -> list[dict[str, str]]:
        """Public network first so the instance keeps an internet route."""
        try:
            public_id = await self._public_network(region)
        except (ConfigurationError, OVHcloudError) as e:
            log.warning(
                "No public network in {region}, attaching private network only: {err}",
                region=region, err=e,
            )
            return [{"networkId": private_id}]
        return [{"networkId": public_id}, {"networkId": private_id}]

    async def _public_network(self, region: str) -> str:
        for network in await self._client.list_public_networks():
            if _active_in(network, region):
                return network["id"]
        raise ConfigurationError(f"public network not found in region {region!r}")

    async def delete_instance(self, instance_id: str) -> None:
        try:
            await self._client.delete_instance(instance_id)
        except NotFoundError:
            log.debug("Instance {iid} already deleted", iid=instance_id)
            return
        log.info("Instance {iid} deleted", iid=instance_id)

    async def get_instance(self, instance_id: str) -> Instance:
        return _to_instance(await self._client.get_instance(instance_id))

    # ─── Name resolution ─────────────────────────────────────────────

    async def resolve_flavor(self, name: str, *, region: str = "") -> str:
        for flavor in await self._client.list_flavors(region):
            if flavor["name"] == name and flavor.get("available", False):
                return flavor["id"]
        raise ConfigurationError(f"flavor {name!r} not found in region {region!r}")

    async def resolve_image(self, name: str, *, region: str = "") -> str:
        for image in await self._client.list_images(region):
            if image["name"] == name and image.get("status") == "active":
                return image["id"]
        raise ConfigurationError(f"image {name!r} not found in region {region!r}")

    async def resolve_network(self, name: str, *, region: str = "") -> str:
        for network in await self._client.list_private_networks():
            if network["name"] == name and _active_in(network, region):
                return network["id"]
        raise ConfigurationError(
            f"network {name!r} not found in region {region!r} or not active"
        )

    async def resolve_ssh_key(self, name: str) -> str:
        for key in await self._client.list_ssh_keys():
            if key["name"] == name:
                return key["id"]
        raise ConfigurationError(f"SSH key {name!r} not found")

    async def get_or_create_firewall(
        self, name: str, rules: Sequence[FirewallRuleSpec],
    ) -> str | None:
        log.debug(
            "Firewall {name}: {n} rules enforced on the host", name=name, n=len(rules),
        )
        return None

    async def close(self) -> None:
        await self._client.close()
