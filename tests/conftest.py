import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from friendsync.core.database import Base
from friendsync.models import User
from friendsync.repositories.user import UserRepository
from friendsync.schemas.friendship import (
    FriendRequestResult, FriendshipChange, FriendshipStatusResult, FriendView,
    PendingRequestView
)
from friendsync.services.friendship import FriendshipService
from friendsync.session.store import ServiceRelationshipStore


class FakePubSub:
    """Redis pubsub double; an exception put on `messages` kills listen()"""

    def __init__(self, subscribe_error: Optional[Exception] = None):
        self.messages: asyncio.Queue = asyncio.Queue()
        self.channels = set()
        self.closed = False
        self.subscribe_error = subscribe_error
        self.unsubscribe_error: Optional[Exception] = None

    async def subscribe(self, channel):
        await asyncio.sleep(0)
        if self.subscribe_error:
            raise self.subscribe_error
        self.channels.add(channel)

    async def unsubscribe(self, channel):
        if self.unsubscribe_error:
            raise self.unsubscribe_error
        self.channels.discard(channel)

    async def aclose(self):
        self.closed = True

    async def listen(self):
        while True:
            message = await self.messages.get()
            if isinstance(message, Exception):
                raise message
            yield message


class FakeRedisClient:
    def __init__(self, subscribe_error: Optional[Exception] = None):
        self.published = []
        self.pubsubs: List[FakePubSub] = []
        self.subscribe_error = subscribe_error

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 1

    def pubsub(self):
        pubsub = FakePubSub(self.subscribe_error)
        self.pubsubs.append(pubsub)
        return pubsub


class RecordingSubscription:
    def __init__(self, feed: "RecordingChangeFeed", user_id: str, callback):
        self.feed = feed
        self.user_id = user_id
        self.callback = callback
        self.closed = False

    async def close(self):
        if self.closed:
            return
        self.closed = True
        self.feed.subscribers[self.user_id].remove(self)


class RecordingChangeFeed:
    """In-process change feed; events are queued until flush()"""

    def __init__(self):
        self.published: List[FriendshipChange] = []
        self.queue: List[FriendshipChange] = []
        self.subscribers: Dict[str, List[RecordingSubscription]] = {}

    async def publish(self, change: FriendshipChange) -> int:
        self.published.append(change)
        self.queue.append(change)
        return len(self.subscriptions_for(*change.participants()))

    async def subscribe(self, user_id: str, callback) -> RecordingSubscription:
        subscription = RecordingSubscription(self, user_id, callback)
        self.subscribers.setdefault(user_id, []).append(subscription)
        return subscription

    def subscriptions_for(self, *user_ids: str) -> List[RecordingSubscription]:
        return [s for user_id in user_ids for s in self.subscribers.get(user_id, [])]

    async def notify(self, user_id: str, change: Optional[FriendshipChange] = None):
        for subscription in list(self.subscribers.get(user_id, [])):
            await subscription.callback(change)

    async def flush(self):
        while self.queue:
            change = self.queue.pop(0)
            for subscription in self.subscriptions_for(*change.participants()):
                await subscription.callback(change)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'friendsync.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def users(session_factory) -> Dict[str, User]:
    created = {}
    async with session_factory() as session:
        repo = UserRepository(session)
        for user_id, email, name in [
            ("u1", "u1@example.com", "Una"),
            ("u2", "u2@example.com", "Ugo"),
            ("u3", "u3@example.com", None),
        ]:
            created[user_id] = await repo.create(email, full_name=name, user_id=user_id)
    return created


@pytest.fixture
def change_feed() -> RecordingChangeFeed:
    return RecordingChangeFeed()


@pytest_asyncio.fixture
async def db(session_factory, users):
    async with session_factory() as session:
        yield session


@pytest.fixture
def service(db, change_feed) -> FriendshipService:
    return FriendshipService(db, change_feed)


@pytest.fixture
def store(session_factory, users, change_feed) -> ServiceRelationshipStore:
    return ServiceRelationshipStore(session_factory, change_feed)


def friend_view(user_id: str, friendship_id: str) -> FriendView:
    return FriendView(
        friend_user_id=user_id,
        friend_email=f"{user_id}@example.com",
        friendship_id=friendship_id,
        friendship_created_at=datetime.now(timezone.utc)
    )


class GatedStore:
    """Store double whose reads can be held open until a test releases them"""

    def __init__(self):
        self.feed = RecordingChangeFeed()
        self.friends: List[FriendView] = []
        self.pending: List[PendingRequestView] = []
        self.friend_gates: List[Tuple[asyncio.Event, List[FriendView]]] = []
        self.fail_reads: Optional[Exception] = None
        self.fail_writes: Optional[Exception] = None
        self.status_rows: List[FriendshipStatusResult] = []
        self.calls: List[str] = []

    def gate_friends(self, result: List[FriendView]) -> asyncio.Event:
        event = asyncio.Event()
        self.friend_gates.append((event, result))
        return event

    async def get_friends(self, user_id: str) -> List[FriendView]:
        self.calls.append("get_friends")
        if self.friend_gates:
            event, result = self.friend_gates.pop(0)
            await event.wait()
            return list(result)
        if self.fail_reads:
            raise self.fail_reads
        return list(self.friends)

    async def get_pending_requests(self, user_id: str) -> List[PendingRequestView]:
        self.calls.append("get_pending_requests")
        if self.fail_reads:
            raise self.fail_reads
        return list(self.pending)

    async def check_friendship_status(self, user_id: str, other_id: str) -> List[FriendshipStatusResult]:
        if self.fail_reads:
            raise self.fail_reads
        return list(self.status_rows)

    async def send_friend_request_by_email(self, user_id: str, email: str) -> FriendRequestResult:
        self.calls.append("send")
        if self.fail_writes:
            raise self.fail_writes
        return FriendRequestResult(message="sent")

    async def accept_friend_request(self, user_id: str, request_id: str) -> None:
        self.calls.append("accept")
        if self.fail_writes:
            raise self.fail_writes

    async def delete_friendship(self, user_id: str, friendship_id: str) -> None:
        self.calls.append("delete")
        if self.fail_writes:
            raise self.fail_writes

    async def block_user(self, user_id: str, other_id: str) -> None:
        self.calls.append("block")
        if self.fail_writes:
            raise self.fail_writes

    async def subscribe(self, user_id: str, callback) -> RecordingSubscription:
        return await self.feed.subscribe(user_id, callback)


@pytest.fixture
def gated_store() -> GatedStore:
    return GatedStore()
