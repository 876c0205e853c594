"""Async client for the signed OVHcloud API."""

from __future__ import annotations

import os
from dataclasses import replace
from typing import Any

from loguru import logger

from nodeward.core.exceptions import ConfigurationError, NotFoundError, ProviderError
from nodeward.infra.http import HttpClient, HttpError, OvhAuth

from .config import OVHcloud
from .types import (
    FlavorResponse,
    ImageResponse,
    InstanceCreateParams,
    InstanceResponse,
    NetworkResponse,
    SSHKeyResponse,
)


class OVHcloudError(ProviderError):
    """Error from the OVHcloud API. The message keeps the status code."""

    def __init__(self, message: str, status: int = 0) -> None:
        self.status = status
        super().__init__(message)


class OVHcloudNotFoundError(OVHcloudError, NotFoundError):
    """The requested OVHcloud resource does not exist."""


def resolve_credentials(config: OVHcloud) -> OVHcloud:
    """Fill unset credentials from the OVH_* environment variables."""
    resolved = replace(
        config,
        endpoint=config.endpoint or os.environ.get("OVH_ENDPOINT") or "ovh-eu",
        application_key=config.application_key or os.environ.get("OVH_APPLICATION_KEY"),
        application_secret=config.application_secret or os.environ.get("OVH_APPLICATION_SECRET"),
        consumer_key=config.consumer_key or os.environ.get("OVH_CONSUMER_KEY"),
        project_id=config.project_id or os.environ.get("OVH_PROJECT_ID"),
    )
    missing = [
        name for name, value in (
            ("application_key", resolved.application_key),
            ("application_secret", resolved.application_secret),
            ("consumer_key", resolved.consumer_key),
            ("project_id", resolved.project_id),
        ) if not value
    ]
    if missing:
        raise ConfigurationError(f"OVHcloud credentials missing: {', '.join(missing)}")
    return resolved


class OVHcloudClient:
    """Public Cloud project endpoints, scoped to one project."""

    def __init__(self, config: OVHcloud, *, http: HttpClient | None = None) -> None:
        self.config = config
        self._project = config.project_id
        self._http = http or HttpClient(
            config.api_url,
            OvhAuth(
                config.api_url,
                config.application_key or "",
                config.application_secret or "",
                config.consumer_key or "",
            ),
            timeout=config.request_timeout,
        )
        self._log = logger.bind(provider="ovhcloud", component="client")

    async def close(self) -> None:
        await self._http.close()

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        full_path = f"/cloud/project/{self._project}{path}"
        try:
            return await self._http.request(method, full_path, json=json, params=params)
        except HttpError as e:
            self._log.debug(
                "API error {method} {path}: {status}", method=method, path=path, status=e.status,
            )
            message = f"OVHcloud API error {e.status} on {method} {path}: {e.body[:300]}"
            if e.status == 404:
                raise OVHcloudNotFoundError(message, e.status) from e
            raise OVHcloudError(message, e.status) from e

    # =========================================================================
    # Instances
    # =========================================================================

    async def list_instances(self) -> list[InstanceResponse]:
        return await self._request("GET", "/instance") or []

    async def get_instance(self, instance_id: str) -> InstanceResponse:
        return await self._request("GET", f"/instance/{instance_id}")

    async def create_instance(self, params: InstanceCreateParams) -> InstanceResponse:
        return await self._request("POST", "/instance", json=dict(params))

    async def delete_instance(self, instance_id: str) -> None:
        await self._request("DELETE", f"/instance/{instance_id}")

    # =========================================================================
    # Catalog
    # =========================================================================

    async def list_flavors(self, region: str) -> list[FlavorResponse]:
        return await self._request("GET", "/flavor", params={"region": region}) or []

    async def list_images(self, region: str) -> list[ImageResponse]:
        return await self._request(
            "GET", "/image", params={"osType": "linux", "region": region},
        ) or []

    async def list_ssh_keys(self) -> list[SSHKeyResponse]:
        return await self._request("GET", "/sshkey") or []

    async def list_private_networks(self) -> list[NetworkResponse]:
        return await self._request("GET", "/network/private") or []

    async def list_public_networks(self) -> list[NetworkResponse]:
        return await self._request("GET", "/network/public") or []
