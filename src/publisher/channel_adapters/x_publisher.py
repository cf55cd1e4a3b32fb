from __future__ import annotations

from publisher.channel_adapters.base import ChannelConnection, ChannelPublishError, PublishContent, PublishResult
from publisher.channel_adapters.http import HttpChannelPublisher


class XPublisher(HttpChannelPublisher):
    """Publishes text posts through the X (Twitter) v2 API."""

    platform_key = "x"

    def publish(
        self,
        connection: ChannelConnection,
        content: PublishContent,
        *,
        timeout: float,
    ) -> PublishResult:
        token = self._require_token(connection.credentials)

        response = self._post_json(
            "/2/tweets",
            access_token=token,
            payload={"text": content.text},
            timeout=timeout,
        )

        data = (response.json() or {}).get("data") or {}
        tweet_id = data.get("id")
        if not tweet_id:
            raise ChannelPublishError(
                "X API response did not contain a post id",
                code="PUBLISH_BAD_RESPONSE",
                retryable=False,
                raw_response=response.text,
                platform=self.platform_key,
            )

        handle = connection.account_ref or "i"
        return PublishResult(
            external_post_id=str(tweet_id),
            external_url=f"https://x.com/{handle}/status/{tweet_id}",
            raw_response=response.text,
        )
