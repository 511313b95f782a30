"""Change feed for the friendships table.

Every committed edge mutation is published to one channel per participant,
so a subscriber scoped to a user hears about edges where that user is
either the requester or the recipient. Events carry the edge id and new
status, but subscribers are only promised "something changed".
"""
import asyncio
import logging
from contextlib import suppress
from typing import Awaitable, Callable, Optional

from pydantic import ValidationError
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from friendsync.core.config import settings
from friendsync.core.redis import RedisClient, redis_client
from friendsync.schemas.friendship import FriendshipChange

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[Optional[FriendshipChange]], Awaitable[None]]


def channel_for(user_id: str, prefix: Optional[str] = None) -> str:
    return f"{prefix or settings.FRIENDS_CHANNEL_PREFIX}:user:{user_id}"


class ChangeSubscription:
    """Cancellable listener bound to one participant channel"""

    def __init__(self, pubsub: PubSub, channel: str, callback: ChangeCallback):
        self.channel = channel
        self._pubsub = pubsub
        self._callback = callback
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def listening(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        try:
            await self._pubsub.subscribe(self.channel)
        except RedisError:
            self._closed = True
            await self._release()
            raise
        self._task = asyncio.create_task(self._listen(), name=f"changefeed:{self.channel}")
        logger.info(f"Subscribed to {self.channel}")

    async def _listen(self):
        try:
            async for message in self._pubsub.listen():
                if message.get("type") != "message":
                    continue

                try:
                    change = FriendshipChange.model_validate_json(message["data"])
                except ValidationError as e:
                    logger.warning(f"Unreadable change on {self.channel}: {e}")
                    change = None

                try:
                    await self._callback(change)
                except Exception as e:
                    logger.error(f"Change handler failed on {self.channel}: {e}")
        except RedisError as e:
            logger.error(f"Lost change feed on {self.channel}, realtime updates stopped: {e}")

    async def close(self):
        """Stop listening; safe to call more than once"""
        if self._closed:
            return
        self._closed = True

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning(f"Listener on {self.channel} had failed: {e}")

        with suppress(RedisError):
            await self._pubsub.unsubscribe(self.channel)
        await self._release()
        logger.info(f"Unsubscribed from {self.channel}")

    async def _release(self):
        try:
            await self._pubsub.aclose()
        except RedisError as e:
            logger.warning(f"Error closing pubsub for {self.channel}: {e}")


class ChangeFeed:

    def __init__(self, client: Optional[RedisClient] = None, prefix: Optional[str] = None):
        self.client = client or redis_client
        self.prefix = prefix or settings.FRIENDS_CHANNEL_PREFIX

    def channel_for(self, user_id: str) -> str:
        return channel_for(user_id, self.prefix)

    async def publish(self, change: FriendshipChange) -> int:
        """Fan a change out to both participants' channels"""
        payload = change.model_dump_json()
        receivers = 0
        for user_id in change.participants():
            receivers += await self.client.publish(self.channel_for(user_id), payload)
        logger.debug(f"Published {change.type.value} of {change.friendship_id} to {receivers} receivers")
        return receivers

    async def subscribe(self, user_id: str, callback: ChangeCallback) -> ChangeSubscription:
        subscription = ChangeSubscription(self.client.pubsub(), self.channel_for(user_id), callback)
        await subscription.start()
        return subscription


change_feed = ChangeFeed()


async def get_change_feed() -> ChangeFeed:
    """Dependency to get the change feed"""
    return change_feed
