import logging
from datetime import datetime, timezone
from typing import List, Optional

import pydantic
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from friendsync.core.changefeed import ChangeFeed
from friendsync.models.friendship import Friendship
from friendsync.repositories.friendship import FriendshipRepository
from friendsync.repositories.user import UserRepository
from friendsync.schemas.friendship import (
    ChangeType, FriendRequestByEmail, FriendRequestResult, FriendshipChange,
    FriendshipStatus, FriendshipStatusResult, FriendView, PendingRequestView,
    RequestDirection
)
from friendsync.utils.exceptions import (
    ConflictError, ForbiddenError, NotFoundError, ValidationError
)

logger = logging.getLogger(__name__)

# Same payload whether or not the address belongs to an account
REQUEST_SENT_MESSAGE = "If an account with that email exists, they'll receive your friend request."


def to_friend_view(friendship: Friendship, viewer_id: str) -> FriendView:
    friend = friendship.recipient if friendship.requester_id == viewer_id else friendship.requester
    return FriendView(
        friend_user_id=friend.id,
        friend_email=friend.email,
        friend_name=friend.full_name,
        friendship_id=friendship.id,
        friendship_created_at=friendship.created_at
    )


def to_pending_view(friendship: Friendship, viewer_id: str) -> PendingRequestView:
    direction = RequestDirection.INCOMING if friendship.recipient_id == viewer_id else RequestDirection.OUTGOING
    return PendingRequestView(
        request_id=friendship.id,
        requester_id=friendship.requester_id,
        requester_email=friendship.requester.email,
        requester_name=friendship.requester.full_name,
        recipient_id=friendship.recipient_id,
        direction=direction,
        created_at=friendship.created_at
    )


class FriendshipService:
    """Relationship queries and edge mutations with their ownership rules.

    Callers pass the acting user's id explicitly; every successful write is
    announced on the change feed after commit.
    """

    def __init__(self, db: AsyncSession, change_feed: Optional[ChangeFeed] = None):
        self.db = db
        self.repo = FriendshipRepository(db)
        self.users = UserRepository(db)
        self.change_feed = change_feed

    async def get_friends(self, user_id: str) -> List[FriendView]:
        """Accepted edges, resolved to the other participant"""
        friendships = await self.repo.list_friends(user_id)
        return [to_friend_view(friendship, user_id) for friendship in friendships]

    async def get_pending_requests(self, user_id: str) -> List[PendingRequestView]:
        """Pending edges in both directions"""
        friendships = await self.repo.list_pending(user_id)
        return [to_pending_view(friendship, user_id) for friendship in friendships]

    async def check_friendship_status(self, user_id: str, other_id: str) -> List[FriendshipStatusResult]:
        """Zero or one status rows for the pair"""
        friendship = await self.repo.get_between(user_id, other_id)
        if not friendship:
            return []
        return [
            FriendshipStatusResult(
                status=FriendshipStatus(friendship.status),
                friendship_id=friendship.id,
                requester_id=friendship.requester_id
            )
        ]

    async def send_friend_request_by_email(self, requester_id: str, email: str) -> FriendRequestResult:
        """Send a friend request to whoever owns the email address.

        Only malformed input and self-addressed requests are reported. An
        unknown address, an existing edge of any status and a newly created
        request all produce the same result.
        """
        try:
            request = FriendRequestByEmail(email=email.strip())
        except pydantic.ValidationError:
            raise ValidationError("Please enter a valid email address")

        recipient = await self.users.get_by_email(str(request.email))
        if recipient is not None and recipient.id == requester_id:
            raise ValidationError("You cannot send a friend request to yourself")

        if recipient is not None:
            existing = await self.repo.get_between(requester_id, recipient.id)
            if existing is None:
                friendship = await self.repo.create(requester_id, recipient.id)
                if friendship is not None:
                    await self._publish(ChangeType.INSERT, friendship)
            else:
                logger.debug(f"Request from {requester_id} matched existing edge {existing.id}")

        return FriendRequestResult(message=REQUEST_SENT_MESSAGE)

    async def accept_friend_request(self, user_id: str, request_id: str) -> Friendship:
        """Accept a pending request (only the recipient can accept)"""
        friendship = await self.repo.get_by_id(request_id)
        if not friendship or friendship.status != FriendshipStatus.PENDING.value:
            raise NotFoundError("Friend request not found")
        if friendship.recipient_id != user_id:
            raise ForbiddenError("Only the recipient can accept a friend request")

        friendship = await self.repo.update_status(friendship, FriendshipStatus.ACCEPTED)
        await self._publish(ChangeType.UPDATE, friendship)
        return friendship

    async def delete_friendship(self, user_id: str, friendship_id: str) -> bool:
        """Remove a pending or accepted edge the user takes part in.

        Serves decline, cancel and unfriend alike. Unknown ids are a no-op
        so repeated deletes stay harmless.
        """
        friendship = await self.repo.get_by_id(friendship_id)
        if not friendship:
            return False
        if user_id not in friendship.participants():
            raise ForbiddenError("You are not part of this friendship")
        if friendship.status == FriendshipStatus.BLOCKED.value:
            raise ForbiddenError("Blocked relationships cannot be removed")

        change = self._change(ChangeType.DELETE, friendship)
        await self.repo.delete(friendship)
        await self._send(change)
        return True

    async def block_user(self, blocker_id: str, blocked_id: str) -> Friendship:
        """Block a user, promoting any existing edge instead of adding a second one"""
        if blocker_id == blocked_id:
            raise ValidationError("You cannot block yourself")

        blocked_user = await self.users.get_by_id(blocked_id)
        if not blocked_user:
            raise NotFoundError("User not found")

        existing = await self.repo.get_between(blocker_id, blocked_id)
        if existing:
            if existing.status == FriendshipStatus.BLOCKED.value:
                return existing
            friendship = await self.repo.update_status(existing, FriendshipStatus.BLOCKED)
            await self._publish(ChangeType.UPDATE, friendship)
            return friendship

        friendship = await self.repo.create(blocker_id, blocked_id, FriendshipStatus.BLOCKED)
        if friendship is None:
            raise ConflictError("A relationship with this user was created concurrently")
        await self._publish(ChangeType.INSERT, friendship)
        return friendship

    def _change(self, change_type: ChangeType, friendship: Friendship) -> FriendshipChange:
        status = None if change_type == ChangeType.DELETE else FriendshipStatus(friendship.status)
        return FriendshipChange(
            type=change_type,
            friendship_id=friendship.id,
            requester_id=friendship.requester_id,
            recipient_id=friendship.recipient_id,
            status=status,
            timestamp=datetime.now(timezone.utc)
        )

    async def _publish(self, change_type: ChangeType, friendship: Friendship):
        await self._send(self._change(change_type, friendship))

    async def _send(self, change: FriendshipChange):
        # The write is already committed; a lost notification only delays reconciliation
        if not self.change_feed:
            return
        try:
            await self.change_feed.publish(change)
        except (RedisError, RuntimeError) as e:
            logger.error(f"Failed to publish {change.type.value} of {change.friendship_id}: {e}")
