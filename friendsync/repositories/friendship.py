from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import or_, and_, select
from sqlalchemy.exc import IntegrityError
from typing import List, Optional

from friendsync.models.friendship import Friendship
from friendsync.schemas.friendship import FriendshipStatus


class FriendshipRepository:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, friendship_id: str) -> Optional[Friendship]:
        """Get a specific edge by ID"""
        stmt = select(Friendship).where(Friendship.id == friendship_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_between(self, user1_id: str, user2_id: str) -> Optional[Friendship]:
        """Get the edge between two users, whichever of them sent it"""
        stmt = select(Friendship).where(
            or_(
                and_(Friendship.requester_id == user1_id, Friendship.recipient_id == user2_id),
                and_(Friendship.requester_id == user2_id, Friendship.recipient_id == user1_id)
            )
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def create(self, requester_id: str, recipient_id: str,
                     status: FriendshipStatus = FriendshipStatus.PENDING) -> Optional[Friendship]:
        """Insert a new edge; returns None if the pair already has one"""
        friendship = Friendship(
            requester_id=requester_id,
            recipient_id=recipient_id,
            status=status.value
        )
        try:
            self.db.add(friendship)
            await self.db.commit()
            await self.db.refresh(friendship)
            return friendship
        except IntegrityError:
            await self.db.rollback()
            return None

    async def update_status(self, friendship: Friendship, status: FriendshipStatus) -> Friendship:
        """Move an edge to a new status"""
        friendship.status = status.value
        await self.db.commit()
        await self.db.refresh(friendship)
        return friendship

    async def delete(self, friendship: Friendship) -> None:
        """Remove an edge outright"""
        await self.db.delete(friendship)
        await self.db.commit()

    async def list_friends(self, user_id: str) -> List[Friendship]:
        """Accepted edges where the user is either participant"""
        stmt = select(Friendship).where(
            and_(
                or_(Friendship.requester_id == user_id, Friendship.recipient_id == user_id),
                Friendship.status == FriendshipStatus.ACCEPTED.value
            )
        ).order_by(Friendship.created_at.desc(), Friendship.id)
        result = await self.db.execute(stmt)
        return list(result.scalars().unique().all())

    async def list_pending(self, user_id: str) -> List[Friendship]:
        """Pending edges sent or received by the user"""
        stmt = select(Friendship).where(
            and_(
                or_(Friendship.requester_id == user_id, Friendship.recipient_id == user_id),
                Friendship.status == FriendshipStatus.PENDING.value
            )
        ).order_by(Friendship.created_at.desc(), Friendship.id)
        result = await self.db.execute(stmt)
        return list(result.scalars().unique().all())
