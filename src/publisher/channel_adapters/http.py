"""Shared plumbing for channel publishers that talk JSON over HTTPS."""
from __future__ import annotations

from typing import Any, Dict, Optional

import requests
from loguru import logger

from publisher.channel_adapters.base import ChannelPublishError

LOG_BODY_MAX_CHARS = 500

# Status codes a later attempt can reasonably expect to succeed on
RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


def classify_http_status(status_code: int) -> tuple[str, bool]:
    """Map an HTTP status to ``(error_code, retryable)``."""
    if status_code == 429:
        return "PUBLISH_RATE_LIMITED", True
    if status_code in (401, 403):
        return "CHANNEL_TOKEN_INVALID", False
    if status_code in RETRYABLE_STATUS_CODES or status_code >= 500:
        return "PLATFORM_UNAVAILABLE", True
    if status_code == 422 or status_code == 400:
        return "CONTENT_REJECTED", False
    return "PUBLISH_REJECTED", False


def classify_exception(exc: BaseException, platform: Optional[str] = None) -> ChannelPublishError:
    """Turn anything an adapter raised into a ChannelPublishError."""
    if isinstance(exc, ChannelPublishError):
        return exc
    if isinstance(exc, requests.Timeout):
        return ChannelPublishError(f"Request timed out: {exc}", code="PUBLISH_TIMEOUT", retryable=True, platform=platform)
    if isinstance(exc, requests.ConnectionError):
        return ChannelPublishError(
            f"Connection failed: {exc}", code="PUBLISH_CONNECTION_ERROR", retryable=True, platform=platform
        )
    return ChannelPublishError(
        f"Unexpected publish error: {exc}", code="PUBLISH_UNEXPECTED_ERROR", retryable=True, platform=platform
    )


class HttpChannelPublisher:
    """Base for adapters that POST a JSON document with a bearer token."""

    platform_key = "http"

    def __init__(self, base_url: str, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.http = session or requests.Session()

    def _post_json(
        self,
        path: str,
        *,
        access_token: str,
        payload: Dict[str, Any],
        timeout: float,
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> requests.Response:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }
        if extra_headers:
            headers.update(extra_headers)

        url = f"{self.base_url}{path}"
        try:
            response = self.http.post(url, json=payload, headers=headers, timeout=timeout)
        except requests.RequestException as exc:
            raise classify_exception(exc, self.platform_key) from exc

        if response.status_code >= 400:
            code, retryable = classify_http_status(response.status_code)
            body = response.text or ""
            logger.warning(
                "[ADAPTER] {} publish rejected with HTTP {}: {}",
                self.platform_key, response.status_code, body[:LOG_BODY_MAX_CHARS],
            )
            raise ChannelPublishError(
                f"{self.platform_key} API returned HTTP {response.status_code}",
                code=code,
                retryable=retryable,
                raw_response=body,
                platform=self.platform_key,
            )
        return response

    def _require_token(self, credentials) -> str:
        token = credentials.get("access_token") if credentials else None
        if not token:
            raise ChannelPublishError(
                "No access token found in connection",
                code="CHANNEL_TOKEN_INVALID",
                retryable=False,
                platform=self.platform_key,
            )
        return token
