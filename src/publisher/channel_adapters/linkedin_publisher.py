from __future__ import annotations

from publisher.channel_adapters.base import ChannelConnection, ChannelPublishError, PublishContent, PublishResult
from publisher.channel_adapters.http import HttpChannelPublisher


class LinkedInPublisher(HttpChannelPublisher):
    """Publishes member shares through the LinkedIn UGC Posts API."""

    platform_key = "linkedin"

    def publish(
        self,
        connection: ChannelConnection,
        content: PublishContent,
        *,
        timeout: float,
    ) -> PublishResult:
        token = self._require_token(connection.credentials)

        author = connection.account_ref or connection.credentials.get("author_urn")
        if not author:
            raise ChannelPublishError(
                "LinkedIn connection has no author URN",
                code="CHANNEL_MISCONFIGURED",
                retryable=False,
                platform=self.platform_key,
            )

        payload = {
            "author": author,
            "lifecycleState": "PUBLISHED",
            "specificContent": {
                "com.linkedin.ugc.ShareContent": {
                    "shareCommentary": {"text": content.text},
                    "shareMediaCategory": "NONE",
                }
            },
            "visibility": {"com.linkedin.ugc.MemberNetworkVisibility": "PUBLIC"},
        }

        response = self._post_json(
            "/v2/ugcPosts",
            access_token=token,
            payload=payload,
            timeout=timeout,
            extra_headers={"X-Restli-Protocol-Version": "2.0.0"},
        )

        # The share URN comes back in a header; some API versions echo it in the body too
        post_urn = response.headers.get("X-RestLi-Id")
        if not post_urn and response.content:
            post_urn = (response.json() or {}).get("id")
        if not post_urn:
            raise ChannelPublishError(
                "LinkedIn API response did not contain a share id",
                code="PUBLISH_BAD_RESPONSE",
                retryable=False,
                raw_response=response.text,
                platform=self.platform_key,
            )

        return PublishResult(
            external_post_id=post_urn,
            external_url=f"https://www.linkedin.com/feed/update/{post_urn}/",
            raw_response=response.text or None,
        )
