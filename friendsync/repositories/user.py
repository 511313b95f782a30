from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError

from friendsync.models.user import User


class UserRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, email: str, full_name: Optional[str] = None, user_id: Optional[str] = None) -> Optional[User]:
        """Create a new user"""
        try:
            db_user = User(email=email.strip().lower(), full_name=full_name, is_active=True)
            if user_id:
                db_user.id = user_id
            self.db.add(db_user)
            await self.db.commit()
            await self.db.refresh(db_user)
            return db_user
        except IntegrityError:
            await self.db.rollback()
            return None

    async def get_by_id(self, user_id: str) -> Optional[User]:
        """Get user by ID"""
        query = select(User).filter(User.id == user_id)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> Optional[User]:
        """Get an active user by email, ignoring case and surrounding whitespace"""
        query = select(User).filter(
            func.lower(User.email) == email.strip().lower(),
            User.is_active == True  # noqa: E712
        )
        result = await self.db.execute(query)
        return result.scalar_one_or_none()
