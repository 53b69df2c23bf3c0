import logging
from typing import Any, Protocol

import httpx

from fieldflow.core.config import settings

logger = logging.getLogger(__name__)


def location_channel(location_id: str) -> str:
    return f"location:{location_id}"


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


class RealtimePublisher(Protocol):
    def publish(self, channel: str, name: str, data: dict[str, Any]) -> bool:
        ...


class AblyRestPublisher:
    """Publishes through Ably's REST API. Delivery is best effort; errors are logged."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        key_name, _, key_secret = api_key.partition(":")
        self._client = httpx.Client(
            base_url=base_url or settings.ably_rest_url,
            timeout=settings.http_timeout_seconds,
            transport=transport,
            auth=(key_name, key_secret),
        )

    def close(self) -> None:
        self._client.close()

    def publish(self, channel: str, name: str, data: dict[str, Any]) -> bool:
        try:
            response = self._client.post(
                f"/channels/{channel}/messages",
                json={"name": name, "data": data},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Realtime publish to %s (%s) failed: %s", channel, name, exc)
            return False
        return True


class NullPublisher:
    def publish(self, channel: str, name: str, data: dict[str, Any]) -> bool:
        logger.debug("Realtime disabled, dropping %s on %s", name, channel)
        return False


def build_realtime_publisher() -> RealtimePublisher:
    if settings.ably_api_key:
        return AblyRestPublisher(settings.ably_api_key)
    return NullPublisher()
