import asyncio
from datetime import datetime, timezone

import pytest
from redis.exceptions import ConnectionError

from friendsync.core.changefeed import ChangeFeed, channel_for
from friendsync.core.websocket import ConnectionManager
from friendsync.schemas.friendship import ChangeType, FriendshipChange, FriendshipStatus

from tests.conftest import FakeRedisClient


def make_change(change_type=ChangeType.INSERT) -> FriendshipChange:
    return FriendshipChange(
        type=change_type,
        friendship_id="f1",
        requester_id="u1",
        recipient_id="u2",
        status=FriendshipStatus.PENDING,
        timestamp=datetime.now(timezone.utc)
    )


async def wait_for(predicate):
    for _ in range(100):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def redis_client():
    return FakeRedisClient()


@pytest.fixture
def feed(redis_client):
    return ChangeFeed(redis_client, prefix="test")


def test_channel_naming():
    assert channel_for("u1", "friendships") == "friendships:user:u1"


async def test_publish_fans_out_to_both_participants(feed, redis_client):
    receivers = await feed.publish(make_change())

    assert receivers == 2
    assert [channel for channel, _ in redis_client.published] == ["test:user:u1", "test:user:u2"]
    assert FriendshipChange.model_validate_json(redis_client.published[0][1]).friendship_id == "f1"


async def test_subscription_delivers_changes(feed, redis_client):
    received = []

    async def callback(change):
        received.append(change)

    subscription = await feed.subscribe("u1", callback)
    pubsub = redis_client.pubsubs[0]
    assert pubsub.channels == {"test:user:u1"}

    await pubsub.messages.put({"type": "message", "data": make_change().model_dump_json()})
    await pubsub.messages.put({"type": "message", "data": "garbage"})
    await wait_for(lambda: len(received) == 2)

    assert received[0].type == ChangeType.INSERT
    assert received[1] is None

    await subscription.close()
    await subscription.close()
    assert subscription.closed is True
    assert pubsub.channels == set()
    assert pubsub.closed is True


async def test_failing_callback_keeps_listening(feed, redis_client):
    calls = []

    async def callback(change):
        calls.append(change)
        if len(calls) == 1:
            raise RuntimeError("boom")

    subscription = await feed.subscribe("u2", callback)
    pubsub = redis_client.pubsubs[0]
    for _ in range(2):
        await pubsub.messages.put({"type": "message", "data": make_change().model_dump_json()})

    await wait_for(lambda: len(calls) == 2)
    await subscription.close()


class FakeWebSocket:
    def __init__(self):
        self.accepted = False
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def send_text(self, text):
        self.sent.append(text)


async def test_connection_manager_shares_one_subscription(feed, redis_client):
    manager = ConnectionManager(feed)
    first, second = FakeWebSocket(), FakeWebSocket()

    await manager.connect(first, "u1")
    await manager.connect(second, "u1")
    assert len(redis_client.pubsubs) == 1

    await manager.notify_user("u1", make_change())
    assert len(first.sent) == 1 and len(second.sent) == 1
    assert '"type": "changed"' in first.sent[0]

    await manager.disconnect(first, "u1")
    assert "u1" in manager.subscriptions

    await manager.disconnect(second, "u1")
    assert manager.subscriptions == {}
    assert redis_client.pubsubs[0].closed is True


async def test_failed_subscribe_releases_pubsub():
    client = FakeRedisClient(subscribe_error=ConnectionError("redis down"))
    feed = ChangeFeed(client, prefix="test")

    async def callback(change):
        pass

    with pytest.raises(ConnectionError):
        await feed.subscribe("u1", callback)
    assert client.pubsubs[0].closed is True


async def test_dead_listener_is_closed_quietly(feed, redis_client):
    async def callback(change):
        pass

    subscription = await feed.subscribe("u1", callback)
    pubsub = redis_client.pubsubs[0]
    pubsub.unsubscribe_error = ConnectionError("connection lost")
    await pubsub.messages.put(ConnectionError("connection lost"))
    await wait_for(lambda: not subscription.listening)

    await subscription.close()
    await subscription.close()

    assert subscription.closed is True
    assert pubsub.closed is True


async def test_concurrent_connects_share_one_subscription(feed, redis_client):
    manager = ConnectionManager(feed)
    first, second = FakeWebSocket(), FakeWebSocket()

    await asyncio.gather(manager.connect(first, "u1"), manager.connect(second, "u1"))
    assert len(redis_client.pubsubs) == 1
    assert manager.active_connections["u1"] == {first, second}

    await manager.disconnect(first, "u1")
    await manager.disconnect(second, "u1")
    assert [p.closed for p in redis_client.pubsubs] == [True]


async def test_connect_registers_nothing_when_subscribe_fails():
    manager = ConnectionManager(ChangeFeed(FakeRedisClient(subscribe_error=ConnectionError("redis down"))))
    websocket = FakeWebSocket()

    with pytest.raises(ConnectionError):
        await manager.connect(websocket, "u1")

    assert manager.active_connections == {}
    assert manager.subscriptions == {}
