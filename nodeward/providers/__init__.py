"""Cloud providers for nodeward."""

from nodeward.providers.hetzner import Hetzner
from nodeward.providers.ovhcloud import OVHcloud

__all__ = [
    "Hetzner",
    "OVHcloud",
]
