from publisher.channel_adapters.base import (
    AdapterRegistry,
    ChannelConnection,
    ChannelPublisher,
    ChannelPublishError,
    PublishContent,
    PublishResult,
)
from publisher.channel_adapters.linkedin_publisher import LinkedInPublisher
from publisher.channel_adapters.x_publisher import XPublisher
from publisher.config import ChannelApiConfig


def default_registry(config: ChannelApiConfig) -> AdapterRegistry:
    """Registry with the bundled HTTP publishers."""
    registry = AdapterRegistry()
    registry.register(XPublisher(config.x_api_base_url))
    registry.register(LinkedInPublisher(config.linkedin_api_base_url))
    return registry


__all__ = [
    "AdapterRegistry",
    "ChannelConnection",
    "ChannelPublisher",
    "ChannelPublishError",
    "LinkedInPublisher",
    "PublishContent",
    "PublishResult",
    "XPublisher",
    "default_registry",
]
