"""Hetzner Cloud provider.

Only the config class is imported at package level. For the client and
provider, import explicitly:

    from nodeward.providers.hetzner.provider import HetznerProvider

Environment Variables:
    HCLOUD_TOKEN: API token (required if not passed directly)
"""

from .config import HETZNER_API_BASE, Hetzner

__all__ = ["HETZNER_API_BASE", "Hetzner"]
