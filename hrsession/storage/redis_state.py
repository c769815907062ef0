from __future__ import annotations

import asyncio
import json
from typing import Any, List, Optional

import redis.asyncio as aioredis
from redis import Redis

from hrsession.logging import get_logger
from hrsession.storage.models import UserProfile

logger = get_logger(__name__)


class RedisStateStore:
    """Persisted local state kept in one Redis hash.

    Uses a synchronous client: the state accessors are plain calls made
    between suspension points, never awaited.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        hash_key: str = "hrsession:state",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[Any] = None,
    ) -> None:
        self.redis_url = redis_url
        self.hash_key = hash_key
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before relying on it."""
        self.client.ping()

    def get(self, key: str) -> Optional[str]:
        return self.client.hget(self.hash_key, key)

    def set(self, key: str, value: str) -> None:
        self.client.hset(self.hash_key, key, value)

    def remove(self, key: str) -> None:
        self.client.hdel(self.hash_key, key)

    def keys(self) -> List[str]:
        return list(self.client.hkeys(self.hash_key))

    def close(self) -> None:
        self.client.close()


class _RedisSubscription:
    def __init__(self, pubsub: Any, channel: str, task: asyncio.Task) -> None:
        self.pubsub = pubsub
        self.channel = channel
        self.task = task
        self.closed = False

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.task.cancel()
        try:
            await self.task
        except asyncio.CancelledError:
            pass
        try:
            await self.pubsub.unsubscribe(self.channel)
            await self.pubsub.aclose()
        except Exception as exc:
            # Connection may already be gone
            logger.warning("profile_feed_close_failed", channel=self.channel, error=str(exc))


class RedisProfileFeed:
    """Push delivery of profile-row updates over Redis pub/sub.

    Each identity has its own channel ``<prefix>:<identity_id>``; messages are
    the JSON-encoded profile row.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        channel_prefix: str = "hrsession:profile",
        client: Optional[Any] = None,
    ) -> None:
        self.redis_url = redis_url
        self.channel_prefix = channel_prefix
        self.client = client or aioredis.from_url(redis_url, decode_responses=True)

    def channel_for(self, identity_id: str) -> str:
        return f"{self.channel_prefix}:{identity_id}"

    async def publish(self, profile: UserProfile) -> int:
        return await self.client.publish(
            self.channel_for(profile.id), json.dumps(profile.to_dict())
        )

    async def subscribe(self, identity_id: str, callback: Any) -> _RedisSubscription:
        channel = self.channel_for(identity_id)
        pubsub = self.client.pubsub()
        await pubsub.subscribe(channel)
        task = asyncio.create_task(self._pump(pubsub, channel, callback))
        logger.info("profile_feed_subscribed", channel=channel)
        return _RedisSubscription(pubsub, channel, task)

    async def _pump(self, pubsub: Any, channel: str, callback: Any) -> None:
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                profile = UserProfile.from_dict(json.loads(message["data"]))
            except (json.JSONDecodeError, KeyError, TypeError) as exc:
                # Corrupted payload - skip, the poll path will catch up
                logger.warning("profile_feed_bad_payload", channel=channel, error=str(exc))
                continue
            try:
                await callback(profile)
            except Exception as exc:
                logger.error(
                    "profile_feed_callback_failed",
                    channel=channel,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

    async def close(self) -> None:
        await self.client.aclose()
