"""Async HTTP client for the Hetzner Cloud API."""

from __future__ import annotations

import os
import re
from typing import Any

from loguru import logger
from tenacity import RetryError, retry, retry_if_exception_type, stop_after_delay, wait_fixed

from nodeward.core.exceptions import ConfigurationError, NotFoundError, ProviderError
from nodeward.infra.http import BearerAuth, HttpClient, HttpError

from .config import Hetzner
from .types import (
    ActionResponse,
    CreateServerResponse,
    FirewallResponse,
    FirewallRuleParams,
    NamedResourceResponse,
    ServerResponse,
)

_TOKEN_FORMAT = re.compile(r"^[a-zA-Z0-9]{64}$")
_PAGE_SIZE = 50


class HetznerError(ProviderError):
    """Error from the Hetzner Cloud API. The message keeps the status code."""

    def __init__(self, message: str, status: int = 0) -> None:
        self.status = status
        super().__init__(message)


class HetznerNotFoundError(HetznerError, NotFoundError):
    """The requested Hetzner resource does not exist."""


class _ActionPendingError(Exception):
    """Action still running - retry."""


# =============================================================================
# Credentials
# =============================================================================


def get_token(token: str | None = None) -> str:
    """Resolve the API token from the argument or HCLOUD_TOKEN."""
    if token:
        return token.strip()
    if env_token := os.environ.get("HCLOUD_TOKEN"):
        return env_token.strip()
    raise ConfigurationError("Hetzner Cloud token not found. Set HCLOUD_TOKEN or providers.<name>.token")


def validate_token(token: str) -> None:
    """Hetzner API tokens are 64 alphanumeric characters."""
    if not token.strip():
        raise ConfigurationError("Hetzner Cloud token cannot be empty")
    if not _TOKEN_FORMAT.match(token.strip()):
        raise ConfigurationError(
            f"invalid Hetzner Cloud token format: must be 64 alphanumeric characters, "
            f"got {len(token.strip())} characters"
        )


def sanitize_token(token: str) -> str:
    """Loggable form of a token."""
    if len(token) < 16:
        return "***"
    return f"{token[:8]}...{token[-4:]}"


# =============================================================================
# Async Client
# =============================================================================


class HetznerClient:
    """Thin async wrapper over the Hetzner Cloud REST endpoints nodeward uses."""

    def __init__(self, token: str, config: Hetzner | None = None, *, http: HttpClient | None = None) -> None:
        self.config = config or Hetzner()
        self._http = http or HttpClient(
            self.config.api_url, BearerAuth(token), timeout=self.config.request_timeout,
        )
        self._log = logger.bind(provider="hetzner", component="client")

    async def close(self) -> None:
        await self._http.close()

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        try:
            return await self._http.request(method, path, json=json, params=params)
        except HttpError as e:
            self._log.debug(
                "API error {method} {path}: {status}", method=method, path=path, status=e.status,
            )
            message = f"Hetzner API error {e.status} on {method} {path}: {e.body[:300]}"
            if e.status == 404:
                raise HetznerNotFoundError(message, e.status) from e
            raise HetznerError(message, e.status) from e

    # =========================================================================
    # Servers
    # =========================================================================

    async def list_servers(self, label_selector: str) -> list[ServerResponse]:
        """All servers matching ``label_selector``, following pagination."""
        servers: list[ServerResponse] = []
        page: int | None = 1
        while page is not None:
            result = await self._request("GET", "/servers", params={
                "label_selector": label_selector, "page": page, "per_page": _PAGE_SIZE,
            })
            servers.extend(result.get("servers", []))
            page = result.get("meta", {}).get("pagination", {}).get("next_page")
        return servers

    async def find_server(self, name: str) -> ServerResponse | None:
        result = await self._request("GET", "/servers", params={"name": name})
        servers = result.get("servers", []) if result else []
        return servers[0] if servers else None

    async def get_server(self, server_id: str) -> ServerResponse:
        result = await self._request("GET", f"/servers/{server_id}")
        return result["server"]

    async def create_server(self, payload: dict[str, Any]) -> CreateServerResponse:
        return await self._request("POST", "/servers", json=payload)

    async def delete_server(self, server_id: str) -> None:
        await self._request("DELETE", f"/servers/{server_id}")

    async def attach_to_network(self, server_id: str, network_id: str) -> ActionResponse:
        result = await self._request(
            "POST", f"/servers/{server_id}/actions/attach_to_network",
            json={"network": int(network_id)},
        )
        return result["action"]

    async def wait_for_action(self, action: ActionResponse) -> ActionResponse:
        """Poll an action until it leaves ``running``."""
        timeout = self.config.action_timeout

        @retry(
            stop=stop_after_delay(timeout),
            wait=wait_fixed(self.config.action_poll_interval),
            retry=retry_if_exception_type(_ActionPendingError),
        )
        async def _poll() -> ActionResponse:
            current = (await self._request("GET", f"/actions/{action['id']}"))["action"]
            if current["status"] == "running":
                raise _ActionPendingError(current["command"])
            return current

        if action["status"] == "running":
            try:
                action = await _poll()
            except RetryError as e:
                raise HetznerError(
                    f"action {action['command']} still running after {timeout}s"
                ) from e
        if action["status"] == "error":
            error = action.get("error") or {}
            raise HetznerError(
                f"action {action['command']} failed: {error.get('message', 'unknown error')}"
            )
        return action

    # =========================================================================
    # Lookups
    # =========================================================================

    async def find_by_name(
        self, resource: str, name: str, **params: Any,
    ) -> NamedResourceResponse | None:
        """First ``resource`` entry named ``name`` (server_types, images, networks, ssh_keys)."""
        result = await self._request("GET", f"/{resource}", params={"name": name, **params})
        items = result.get(resource, []) if result else []
        return items[0] if items else None

    async def get_network(self, network_id: str) -> NamedResourceResponse:
        result = await self._request("GET", f"/networks/{network_id}")
        return result["network"]

    # =========================================================================
    # Firewalls
    # =========================================================================

    async def get_firewall(self, name: str) -> FirewallResponse | None:
        result = await self._request("GET", "/firewalls", params={"name": name})
        firewalls = result.get("firewalls", []) if result else []
        return firewalls[0] if firewalls else None

    async def create_firewall(
        self, name: str, rules: list[FirewallRuleParams], labels: dict[str, str],
    ) -> FirewallResponse:
        result = await self._request(
            "POST", "/firewalls", json={"name": name, "rules": rules, "labels": labels},
        )
        return result["firewall"]

    async def set_firewall_rules(self, firewall_id: int, rules: list[FirewallRuleParams]) -> None:
        await self._request(
            "POST", f"/firewalls/{firewall_id}/actions/set_rules", json={"rules": rules},
        )
