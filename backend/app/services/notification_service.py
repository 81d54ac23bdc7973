"""
Real-time notification fan-out.

Mutations publish to a per-user channel, a per-role channel (``admin``) or the
broadcast channel. Publishing is best-effort: a failing publisher is logged
and never fails the business operation that triggered it.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
from bson import ObjectId
from fastapi.encoders import jsonable_encoder
from redis.exceptions import RedisError
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from app.core.config import settings

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"
BROADCAST_CHANNEL = "broadcast"


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


def role_channel(role: str) -> str:
    return f"role:{role}"


def encode_payload(payload: Any) -> Any:
    """Make Mongo documents JSON-safe (ObjectId, datetime, enums)."""
    return jsonable_encoder(payload, custom_encoder={ObjectId: str})


def redis_retry():
    return retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        retry=retry_if_exception_type(RedisError),
    )


class NotificationPublisher:
    """Transport that delivers an event to a channel."""

    async def publish(self, channel: str, event: str, payload: Any) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class NullPublisher(NotificationPublisher):
    """Drops every event; used when notifications are disabled."""

    async def publish(self, channel: str, event: str, payload: Any) -> None:
        logger.debug(f"[NOTIFICATION disabled] {channel} {event}")


class RecordingPublisher(NotificationPublisher):
    """Keeps published events in memory; handy for local runs and tests."""

    def __init__(self):
        self.events: List[Tuple[str, str, Any]] = []

    async def publish(self, channel: str, event: str, payload: Any) -> None:
        self.events.append((channel, event, payload))

    def events_for(self, channel: str) -> List[Tuple[str, Any]]:
        return [(event, payload) for ch, event, payload in self.events if ch == channel]

    def names_for(self, channel: str) -> List[str]:
        return [event for event, _ in self.events_for(channel)]


class RedisPublisher(NotificationPublisher):
    """
    Publishes events on Redis pub/sub.

    The socket gateway subscribes to ``<prefix>:user:*``, ``<prefix>:role:*`` and
    ``<prefix>:broadcast`` and forwards messages to connected clients.
    """

    def __init__(self, url: Optional[str] = None, prefix: Optional[str] = None):
        self.redis = aioredis.Redis.from_url(
            url or settings.REDIS_URL,
            decode_responses=True,
        )
        self.prefix = prefix or settings.NOTIFICATION_CHANNEL_PREFIX

    @redis_retry()
    async def publish(self, channel: str, event: str, payload: Any) -> None:
        message = json.dumps({"event": event, "data": encode_payload(payload)})
        await self.redis.publish(f"{self.prefix}:{channel}", message)

    async def close(self) -> None:
        await self.redis.aclose()


def build_publisher() -> NotificationPublisher:
    """Pick the publisher for the running configuration."""
    if not settings.NOTIFICATIONS_ENABLED:
        return NullPublisher()
    return RedisPublisher()


class NotificationService:
    """Best-effort event emission to user, role and broadcast channels."""

    def __init__(self, publisher: Optional[NotificationPublisher] = None):
        self.publisher = publisher or NullPublisher()

    async def publish(self, channel: str, event: str, payload: Any = None) -> bool:
        """
        Publish an event, swallowing transport failures.

        Returns:
            True if the publisher accepted the event
        """
        try:
            await self.publisher.publish(channel, event, encode_payload(payload or {}))
            return True
        except Exception as e:
            logger.warning(f"Failed to publish {event} to {channel}: {e}")
            return False

    async def notify_user(self, user_id: str, event: str, payload: Any = None) -> bool:
        return await self.publish(user_channel(str(user_id)), event, payload)

    async def notify_admins(self, event: str, payload: Any = None) -> bool:
        return await self.publish(role_channel(ADMIN_ROLE), event, payload)

    async def broadcast(self, event: str, payload: Any = None) -> bool:
        return await self.publish(BROADCAST_CHANNEL, event, payload)

    async def analytics_updated(self, change_type: str, data: Dict[str, Any]) -> bool:
        """Tell admin dashboards to refresh."""
        return await self.notify_admins("analytics:updated", {"type": change_type, "data": data})
