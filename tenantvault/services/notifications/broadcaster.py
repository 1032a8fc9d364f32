from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from redis.asyncio import Redis

from tenantvault.core.config import get_settings


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BroadcastEvent:
    type: str
    id: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "id": self.id, "data": dict(self.data)}


class EventBroadcaster(Protocol):
    async def broadcast_to_user(self, user_id: str, event: BroadcastEvent) -> None:
        ...


class LoggingBroadcaster:
    # Default sink when no realtime transport is deployed.
    async def broadcast_to_user(self, user_id: str, event: BroadcastEvent) -> None:
        logger.info("event_broadcast user_id=%s type=%s id=%s", user_id, event.type, event.id)


class RedisBroadcaster:
    # Publish per-user events for whichever realtime gateway subscribes to the channel.
    def __init__(self, redis: Redis, channel_prefix: str) -> None:
        self._redis = redis
        self._channel_prefix = channel_prefix

    def channel_for(self, user_id: str) -> str:
        return f"{self._channel_prefix}:user:{user_id}"

    async def broadcast_to_user(self, user_id: str, event: BroadcastEvent) -> None:
        try:
            await self._redis.publish(self.channel_for(user_id), json.dumps(event.to_dict()))
        except Exception as exc:  # noqa: BLE001 - notifications are best-effort
            logger.warning("event_broadcast_failed user_id=%s type=%s", user_id, event.type, exc_info=exc)


def build_broadcaster() -> EventBroadcaster:
    settings = get_settings()
    if settings.notify_broadcaster.lower() == "redis":
        redis = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        return RedisBroadcaster(redis, settings.notify_redis_channel_prefix)
    return LoggingBroadcaster()
