from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol


class ChannelPublishError(Exception):
    def __init__(
        self,
        msg: str,
        code: Optional[str] = None,
        retryable: bool = False,
        raw_response: Optional[str] = None,
        platform: Optional[str] = None,
    ):
        super().__init__(msg)
        self.code = code or "PUBLISH_FAILED"
        self.retryable = retryable
        self.raw_response = raw_response
        self.platform = platform


@dataclass
class ChannelConnection:
    id: int
    platform_key: str                    # "x", "linkedin"
    credentials: Mapping[str, str]       # decrypted OAuth material, lives for one attempt
    account_ref: Optional[str] = None    # platform-side account id / author URN


@dataclass
class PublishContent:
    text: str
    media_urls: List[str] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PublishResult:
    external_post_id: str
    external_url: Optional[str] = None
    raw_response: Optional[str] = None


class ChannelPublisher(Protocol):
    platform_key: str  # e.g. "x" / "linkedin"

    def publish(
        self,
        connection: ChannelConnection,
        content: PublishContent,
        *,
        timeout: float,
    ) -> PublishResult:
        """Publish content to the platform or raise ChannelPublishError.

        ``timeout`` bounds the whole call, not just one socket read. The
        dispatcher gives up on calls that run past it and records a retryable
        ``PUBLISH_TIMEOUT``.
        """
        ...


class AdapterRegistry:
    """Channel publishers keyed by platform key."""

    def __init__(self, adapters: Optional[Mapping[str, ChannelPublisher]] = None):
        self.adapters: Dict[str, ChannelPublisher] = dict(adapters or {})

    def register(self, adapter: ChannelPublisher) -> None:
        self.adapters[adapter.platform_key] = adapter

    def get(self, platform_key: str) -> ChannelPublisher:
        adapter = self.adapters.get(platform_key.lower())
        if not adapter:
            raise ChannelPublishError(
                f"No publisher registered for platform '{platform_key}'",
                code="CHANNEL_ADAPTER_NOT_FOUND",
                retryable=False,
                platform=platform_key,
            )
        return adapter
