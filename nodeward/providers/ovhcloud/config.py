"""OVHcloud Public Cloud provider configuration."""

from __future__ import annotations

from dataclasses import dataclass

ENDPOINTS: dict[str, str] = {
    "ovh-eu": "https://eu.api.ovh.com/1.0",
    "ovh-ca": "https://ca.api.ovh.com/1.0",
    "ovh-us": "https://api.us.ovhcloud.com/1.0",
}


@dataclass(frozen=True, slots=True)
class OVHcloud:
    """OVHcloud provider configuration.

    Credentials fall back to OVH_ENDPOINT, OVH_APPLICATION_KEY,
    OVH_APPLICATION_SECRET, OVH_CONSUMER_KEY and OVH_PROJECT_ID.

    Args:
        endpoint: ``ovh-eu``, ``ovh-ca``, ``ovh-us`` or a full API URL.
        project_id: Public Cloud project (service name).
        request_timeout: Per-request HTTP timeout in seconds.
        create_timeout: Deadline for a whole create call. Instance creation
            on OVHcloud routinely takes 30-60 s.
        settle_delay: Seconds to wait after create before reading the
            instance back for its addresses.
    """

    endpoint: str | None = None
    application_key: str | None = None
    application_secret: str | None = None
    consumer_key: str | None = None
    project_id: str | None = None
    request_timeout: float = 30
    create_timeout: float | None = 120.0
    settle_delay: float = 2.0

    @property
    def api_url(self) -> str:
        endpoint = self.endpoint or "ovh-eu"
        return ENDPOINTS.get(endpoint, endpoint)


__all__ = ["ENDPOINTS", "OVHcloud"]
