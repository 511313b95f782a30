from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from friendsync.core.changefeed import ChangeFeed, get_change_feed
from friendsync.core.database import get_db
from friendsync.api.deps import get_current_user_id
from friendsync.schemas.friendship import (
    FriendRequestCreate, FriendRequestResult, FriendsList, FriendshipStatusResult,
    PendingRequests, RequestDirection
)
from friendsync.services.friendship import FriendshipService

router = APIRouter()


def get_friendship_service(
    db: AsyncSession = Depends(get_db),
    change_feed: ChangeFeed = Depends(get_change_feed)
) -> FriendshipService:
    return FriendshipService(db, change_feed)


@router.get("/", response_model=FriendsList)
async def get_friends(
    user_id: str = Depends(get_current_user_id),
    service: FriendshipService = Depends(get_friendship_service)
):
    """Get the current user's accepted friends"""
    friends = await service.get_friends(user_id)
    return FriendsList(friends=friends, total_count=len(friends))


@router.get("/requests", response_model=PendingRequests)
async def get_pending_requests(
    user_id: str = Depends(get_current_user_id),
    service: FriendshipService = Depends(get_friendship_service)
):
    """Get pending friend requests in both directions"""
    requests = await service.get_pending_requests(user_id)
    incoming = sum(1 for r in requests if r.direction == RequestDirection.INCOMING)
    return PendingRequests(
        requests=requests,
        total_incoming=incoming,
        total_outgoing=len(requests) - incoming
    )


@router.post("/requests", response_model=FriendRequestResult)
async def send_friend_request(
    request_data: FriendRequestCreate,
    user_id: str = Depends(get_current_user_id),
    service: FriendshipService = Depends(get_friendship_service)
):
    """Send a friend request by email"""
    return await service.send_friend_request_by_email(user_id, request_data.email)


@router.post("/requests/{request_id}/accept")
async def accept_friend_request(
    request_id: str,
    user_id: str = Depends(get_current_user_id),
    service: FriendshipService = Depends(get_friendship_service)
):
    """Accept an incoming friend request"""
    await service.accept_friend_request(user_id, request_id)
    return {"message": "Friend request accepted"}


@router.delete("/requests/{request_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_friend_request(
    request_id: str,
    user_id: str = Depends(get_current_user_id),
    service: FriendshipService = Depends(get_friendship_service)
):
    """Decline an incoming or cancel an outgoing friend request"""
    await service.delete_friendship(user_id, request_id)


@router.get("/status/{other_id}", response_model=FriendshipStatusResult)
async def check_friendship_status(
    other_id: str,
    user_id: str = Depends(get_current_user_id),
    service: FriendshipService = Depends(get_friendship_service)
):
    """Get the relationship between the current user and another user"""
    rows = await service.check_friendship_status(user_id, other_id)
    return rows[0] if rows else FriendshipStatusResult.none()


@router.post("/block/{other_id}")
async def block_user(
    other_id: str,
    user_id: str = Depends(get_current_user_id),
    service: FriendshipService = Depends(get_friendship_service)
):
    """Block a user (promotes any existing relationship)"""
    friendship = await service.block_user(user_id, other_id)
    return {"message": "User blocked", "friendship_id": friendship.id}


@router.delete("/{friendship_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_friend(
    friendship_id: str,
    user_id: str = Depends(get_current_user_id),
    service: FriendshipService = Depends(get_friendship_service)
):
    """Remove a friend"""
    await service.delete_friendship(user_id, friendship_id)
