"""OVHcloud Public Cloud provider.

Only the config class is imported at package level. For the client and
provider, import explicitly:

    from nodeward.providers.ovhcloud.provider import OVHcloudProvider

Environment Variables:
    OVH_ENDPOINT: ovh-eu (default), ovh-ca, ovh-us
    OVH_APPLICATION_KEY, OVH_APPLICATION_SECRET, OVH_CONSUMER_KEY: API credentials
    OVH_PROJECT_ID: Public Cloud project
"""

from .config import ENDPOINTS, OVHcloud

__all__ = ["ENDPOINTS", "OVHcloud"]
