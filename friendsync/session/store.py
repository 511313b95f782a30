from typing import Awaitable, Callable, List, Optional, Protocol

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from friendsync.core.changefeed import ChangeCallback, ChangeFeed
from friendsync.schemas.friendship import (
    FriendRequestResult, FriendshipStatusResult, FriendView, PendingRequestView
)
from friendsync.services.friendship import FriendshipService
from friendsync.utils.exceptions import FetchFailedError, MutationFailedError


class Subscription(Protocol):
    async def close(self) -> None: ...


class RelationshipStore(Protocol):
    """What the session manager needs from the backend.

    Reads raise FetchFailedError, writes raise MutationFailedError, and
    ownership rules surface as ForbiddenError.
    """

    async def get_friends(self, user_id: str) -> List[FriendView]: ...

    async def get_pending_requests(self, user_id: str) -> List[PendingRequestView]: ...

    async def check_friendship_status(self, user_id: str, other_id: str) -> List[FriendshipStatusResult]: ...

    async def send_friend_request_by_email(self, user_id: str, email: str) -> FriendRequestResult: ...

    async def accept_friend_request(self, user_id: str, request_id: str) -> None: ...

    async def delete_friendship(self, user_id: str, friendship_id: str) -> None: ...

    async def block_user(self, user_id: str, other_id: str) -> None: ...

    async def subscribe(self, user_id: str, callback: ChangeCallback) -> Subscription: ...


class ServiceRelationshipStore:
    """In-process store: one database session per call, changes over redis"""

    def __init__(self, session_factory: async_sessionmaker, change_feed: Optional[ChangeFeed] = None):
        self.session_factory = session_factory
        self.change_feed = change_feed

    async def _read(self, action: str, call: Callable[[FriendshipService], Awaitable]):
        async with self.session_factory() as session:
            try:
                return await call(self._service(session))
            except SQLAlchemyError as e:
                raise FetchFailedError(f"Failed to {action}") from e

    async def _write(self, action: str, call: Callable[[FriendshipService], Awaitable]):
        async with self.session_factory() as session:
            try:
                return await call(self._service(session))
            except SQLAlchemyError as e:
                await session.rollback()
                raise MutationFailedError(f"Failed to {action}") from e

    def _service(self, session: AsyncSession) -> FriendshipService:
        return FriendshipService(session, self.change_feed)

    async def get_friends(self, user_id: str) -> List[FriendView]:
        return await self._read("fetch friends", lambda s: s.get_friends(user_id))

    async def get_pending_requests(self, user_id: str) -> List[PendingRequestView]:
        return await self._read("fetch pending requests", lambda s: s.get_pending_requests(user_id))

    async def check_friendship_status(self, user_id: str, other_id: str) -> List[FriendshipStatusResult]:
        return await self._read(
            "check friendship status", lambda s: s.check_friendship_status(user_id, other_id)
        )

    async def send_friend_request_by_email(self, user_id: str, email: str) -> FriendRequestResult:
        return await self._write(
            "send friend request", lambda s: s.send_friend_request_by_email(user_id, email)
        )

    async def accept_friend_request(self, user_id: str, request_id: str) -> None:
        await self._write("accept friend request", lambda s: s.accept_friend_request(user_id, request_id))

    async def delete_friendship(self, user_id: str, friendship_id: str) -> None:
        await self._write("delete friendship", lambda s: s.delete_friendship(user_id, friendship_id))

    async def block_user(self, user_id: str, other_id: str) -> None:
        await self._write("block user", lambda s: s.block_user(user_id, other_id))

    async def subscribe(self, user_id: str, callback: ChangeCallback) -> Subscription:
        if self.change_feed is None:
            raise FetchFailedError("No change feed configured")
        try:
            return await self.change_feed.subscribe(user_id, callback)
        except (RedisError, RuntimeError) as e:
            raise FetchFailedError(f"Failed to subscribe to changes for user {user_id}") from e
