import redis.asyncio as redis
from redis.asyncio.client import PubSub
from typing import Optional

from friendsync.core.config import settings


class RedisClient:
    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.REDIS_URL
        self.redis: Optional[redis.Redis] = None

    async def connect(self):
        """Connect to Redis"""
        self.redis = redis.from_url(
            self.url,
            encoding="utf-8",
            decode_responses=True
        )

    async def disconnect(self):
        """Disconnect from Redis"""
        if self.redis:
            await self.redis.aclose()
            self.redis = None

    async def ping(self) -> bool:
        """Check the connection is alive"""
        if not self.redis:
            return False
        return await self.redis.ping()

    async def publish(self, channel: str, message: str) -> int:
        """Publish a message, returning the number of receivers"""
        if not self.redis:
            raise RuntimeError("Redis client is not connected")
        return await self.redis.publish(channel, message)

    def pubsub(self) -> PubSub:
        """Open a pub/sub connection"""
        if not self.redis:
            raise RuntimeError("Redis client is not connected")
        return self.redis.pubsub(ignore_subscribe_messages=True)


# Global Redis client instance
redis_client = RedisClient()
