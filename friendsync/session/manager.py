"""Client-side view of one user's friends and pending friend requests.

The manager holds projections only: every list it exposes is replaced
wholesale by a refresh and can always be rebuilt by querying the store.
Commands go through the store and then refresh the affected projections.
A change-feed subscription scoped to the current user triggers a full
refresh on every notification, so changes made by the other participant
or by another session of the same user show up without manual refresh.
"""
import asyncio
import logging
from typing import Callable, Dict, List, Optional, Tuple

from friendsync.core.config import settings
from friendsync.schemas.friendship import (
    FriendRequestResult, FriendshipChange, FriendshipStatusResult, FriendView,
    PendingRequestView, RequestDirection
)
from friendsync.session.store import RelationshipStore, Subscription
from friendsync.utils.exceptions import (
    ErrorKind, FetchFailedError, FriendSyncException, UnauthenticatedError
)

logger = logging.getLogger(__name__)

Listener = Callable[["FriendSessionManager"], None]

FRIENDS = "friends"
PENDING = "pending"


class FriendSessionManager:

    def __init__(
        self,
        store: RelationshipStore,
        *,
        status_check_fail_open: Optional[bool] = None,
        discard_stale_refreshes: Optional[bool] = None,
    ):
        self.store = store
        self.status_check_fail_open = (
            settings.FRIENDS_STATUS_CHECK_FAIL_OPEN if status_check_fail_open is None else status_check_fail_open
        )
        self.discard_stale_refreshes = (
            settings.FRIENDS_DISCARD_STALE_REFRESHES if discard_stale_refreshes is None else discard_stale_refreshes
        )

        self._user_id: Optional[str] = None
        self._friends: Tuple[FriendView, ...] = ()
        self._pending: Tuple[PendingRequestView, ...] = ()
        self.loading = True
        self.friends_error: Optional[ErrorKind] = None
        self.pending_error: Optional[ErrorKind] = None

        self._subscription: Optional[Subscription] = None
        self._listeners: List[Listener] = []
        # Bumped on identity change; completions from an older generation are dropped
        self._generation = 0
        self._issued: Dict[str, int] = {FRIENDS: 0, PENDING: 0}
        self._applied: Dict[str, int] = {FRIENDS: 0, PENDING: 0}

    # State

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def is_active(self) -> bool:
        return self._subscription is not None

    @property
    def friends(self) -> List[FriendView]:
        return list(self._friends)

    @property
    def pending_requests(self) -> List[PendingRequestView]:
        return list(self._pending)

    @property
    def incoming_requests(self) -> List[PendingRequestView]:
        return [r for r in self._pending if r.direction == RequestDirection.INCOMING]

    @property
    def outgoing_requests(self) -> List[PendingRequestView]:
        return [r for r in self._pending if r.direction == RequestDirection.OUTGOING]

    @property
    def last_error(self) -> Optional[ErrorKind]:
        return self.friends_error or self.pending_error

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Call `listener` after every projection change; returns a remover"""
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self):
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.error(f"Friend state listener failed: {e}")

    # Lifecycle

    async def activate(self, user_id: str):
        """Start tracking `user_id`: subscribe to its changes, then fetch"""
        await self.set_user(user_id)

    async def set_user(self, user_id: Optional[str]):
        """Switch identity, tearing down the previous user's subscription"""
        if user_id == self._user_id and (user_id is None or self._subscription is not None):
            return

        await self._close_subscription()
        self._generation += 1
        self._user_id = user_id
        self._friends = ()
        self._pending = ()
        self.friends_error = None
        self.pending_error = None

        if not user_id:
            self.loading = False
            self._notify()
            return

        logger.info(f"Tracking friendships for user {user_id}")
        self.loading = True
        try:
            self._subscription = await self.store.subscribe(user_id, self._on_change)
        except FriendSyncException as e:
            logger.error(f"Realtime updates unavailable for user {user_id}: {e}")

        await self.refresh()

    async def close(self):
        """Tear down the subscription and ignore any refresh still in flight"""
        await self._close_subscription()
        self._generation += 1

    async def _close_subscription(self):
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.close()

    async def __aenter__(self) -> "FriendSessionManager":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _on_change(self, change: Optional[FriendshipChange]):
        if change is not None:
            logger.debug(f"Friendship {change.friendship_id} changed ({change.type.value}), reconciling")
        await self.refresh()

    # Refresh

    def _issue(self, channel: str) -> int:
        self._issued[channel] += 1
        return self._issued[channel]

    def _is_current(self, channel: str, token: int, generation: int) -> bool:
        if generation != self._generation:
            return False
        if self.discard_stale_refreshes and token < self._applied[channel]:
            logger.debug(f"Discarding out-of-order {channel} refresh {token}")
            return False
        self._applied[channel] = max(self._applied[channel], token)
        return True

    async def refresh_friends(self) -> bool:
        """Replace the friends list; keeps the old list if the fetch fails"""
        user_id = self._user_id
        if not user_id:
            self.loading = False
            return False

        generation = self._generation
        token = self._issue(FRIENDS)
        try:
            friends = await self.store.get_friends(user_id)
        except FriendSyncException as e:
            logger.error(f"Error fetching friends: {e}")
            if generation == self._generation:
                self.friends_error = ErrorKind.FETCH_FAILED
                self.loading = False
                self._notify()
            return False

        if not self._is_current(FRIENDS, token, generation):
            return False
        self._friends = tuple(friends)
        self.friends_error = None
        self.loading = False
        self._notify()
        return True

    async def refresh_pending_requests(self) -> bool:
        """Replace the pending-request list; keeps the old list if the fetch fails"""
        user_id = self._user_id
        if not user_id:
            self.loading = False
            return False

        generation = self._generation
        token = self._issue(PENDING)
        try:
            pending = await self.store.get_pending_requests(user_id)
        except FriendSyncException as e:
            logger.error(f"Error fetching pending requests: {e}")
            if generation == self._generation:
                self.pending_error = ErrorKind.FETCH_FAILED
                self._notify()
            return False

        if not self._is_current(PENDING, token, generation):
            return False
        self._pending = tuple(pending)
        self.pending_error = None
        self._notify()
        return True

    async def refresh(self) -> bool:
        """Refresh both projections; True only if both succeeded"""
        results = await asyncio.gather(self.refresh_friends(), self.refresh_pending_requests())
        return all(results)

    # Commands

    def _require_user(self, action: str) -> str:
        if not self._user_id:
            raise UnauthenticatedError(f"You must be logged in to {action}")
        return self._user_id

    async def send_friend_request(self, email: str) -> FriendRequestResult:
        user_id = self._require_user("send friend requests")
        try:
            result = await self.store.send_friend_request_by_email(user_id, email)
        except FriendSyncException as e:
            logger.error(f"Error sending friend request: {e}")
            raise

        await self.refresh_pending_requests()
        return result

    async def accept_friend_request(self, request_id: str):
        user_id = self._require_user("accept friend requests")
        try:
            await self.store.accept_friend_request(user_id, request_id)
        except FriendSyncException as e:
            logger.error(f"Error accepting friend request {request_id}: {e}")
            raise

        await self.refresh()

    async def decline_friend_request(self, request_id: str):
        """Recipient side of removing a pending request"""
        await self._delete_edge(request_id, "decline friend request")
        await self.refresh_pending_requests()

    async def cancel_friend_request(self, request_id: str):
        """Requester side of removing a pending request"""
        await self._delete_edge(request_id, "cancel friend request")
        await self.refresh_pending_requests()

    async def remove_friend(self, friendship_id: str):
        await self._delete_edge(friendship_id, "remove friend")
        await self.refresh_friends()

    async def _delete_edge(self, friendship_id: str, action: str):
        user_id = self._require_user(action)
        try:
            await self.store.delete_friendship(user_id, friendship_id)
        except FriendSyncException as e:
            logger.error(f"Failed to {action} {friendship_id}: {e}")
            raise

    async def block_user(self, other_id: str):
        user_id = self._require_user("block users")
        try:
            await self.store.block_user(user_id, other_id)
        except FriendSyncException as e:
            logger.error(f"Error blocking user {other_id}: {e}")
            raise

        await self.refresh()

    async def check_friendship_status(self, other_id: str) -> FriendshipStatusResult:
        """Relationship with another user, for UI hints.

        With fail-open enabled a failed lookup returns the no-relationship
        sentinel with `error` set; otherwise it raises FetchFailedError.
        """
        user_id = self._user_id
        if not user_id:
            return FriendshipStatusResult.none()

        try:
            rows = await self.store.check_friendship_status(user_id, other_id)
        except FriendSyncException as e:
            if not self.status_check_fail_open:
                raise FetchFailedError(f"Could not check friendship status: {e}") from e
            logger.warning(f"Error checking friendship status with {other_id}: {e}")
            return FriendshipStatusResult.none(error=ErrorKind.FETCH_FAILED)

        if not rows:
            return FriendshipStatusResult.none()
        return rows[0]
