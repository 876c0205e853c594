"""Provider registry.

Maps a provider configuration object to its CloudProvider with a single
``match``. Provider modules are imported lazily so only the configured
vendors are loaded.
"""

from __future__ import annotations

from loguru import logger

from nodeward.core.exceptions import ConfigurationError

from .hetzner.config import Hetzner
from .ovhcloud.config import OVHcloud
from .provider import CloudProvider

log = logger.bind(component="registry")

type ProviderConfig = Hetzner | OVHcloud


async def create_provider(config: ProviderConfig) -> CloudProvider:
    """Create the CloudProvider for a configuration object.

    Raises:
        ConfigurationError: Unknown config type or missing credentials.
    """
    config_type = type(config).__name__
    log.debug("Creating provider for config={config_type}", config_type=config_type)

    match config:
        case Hetzner():
            from .hetzner.provider import HetznerProvider
            return await HetznerProvider.create(config)
        case OVHcloud():
            from .ovhcloud.provider import OVHcloudProvider
            return await OVHcloudProvider.create(config)
        case _:
            raise ConfigurationError(
                f"No provider registered for {config_type}. "
                f"Available providers: Hetzner, OVHcloud"
            )
