"""Hetzner Cloud provider configuration."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

HETZNER_API_BASE = "https://api.hetzner.cloud/v1"


@dataclass(frozen=True, slots=True)
class Hetzner:
    """Hetzner Cloud provider configuration.

    Example:
        >>> from nodeward.providers.hetzner import Hetzner
        >>> config = Hetzner(token="...", request_timeout=20)

    Args:
        token: API token. Falls back to the HCLOUD_TOKEN env var.
        api_url: API base URL.
        request_timeout: Per-request HTTP timeout in seconds.
        create_timeout: Deadline for a whole create call, including network
            attachment. None uses the controller's call timeout.
        architecture: Image architecture used for name lookups.
        action_poll_interval: Seconds between polls of an async action.
        action_timeout: Seconds to wait for an async action before giving up.
    """

    token: str | None = None
    api_url: str = HETZNER_API_BASE
    request_timeout: float = 30
    create_timeout: float | None = None
    architecture: Literal["x86", "arm"] = "x86"
    action_poll_interval: float = 1.0
    action_timeout: float = 300.0


__all__ = ["HETZNER_API_BASE", "Hetzner"]
