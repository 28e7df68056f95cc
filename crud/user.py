"""
UserRepository for database operations on User model
"""

from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete
from database_models import User, utcnow


def normalize_email(email: str) -> str:
    return email.strip().lower()


class UserRepository:
    """
    Repository class for User database operations.
    Email is the natural key; every lookup and write lower-cases it first.
    """

    # Fields a write may never touch through update_user/upsert_user
    IMMUTABLE_FIELDS = {"id", "email", "created_at"}

    def __init__(self, db: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            db: AsyncSession instance for database operations
        """
        self.db = db

    async def get_user_by_email(self, email: str) -> Optional[User]:
        """
        Retrieve a user by email address.

        Args:
            email: User's email address (case-insensitive search)

        Returns:
            User object if found, None otherwise
        """
        result = await self.db.execute(
            select(User).where(User.email == normalize_email(email))
        )
        return result.scalar_one_or_none()

    async def get_user_by_customer_id(self, customer_id: str) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.stripe_customer_id == customer_id).limit(1)
        )
        return result.scalars().first()

    async def create_user(self, email: str, **fields) -> User:
        """
        Create a new user record with no subscription status.

        Args:
            email: Email address (stored lower-cased)
            fields: Optional initial column values

        Returns:
            Created User object
        """
        now = utcnow()
        user = User(email=normalize_email(email), created_at=now, updated_at=now)
        self._apply(user, fields)
        self.db.add(user)
        await self.db.flush()  # Flush to get the ID without committing
        await self.db.refresh(user)
        return user

    async def update_user(self, user: User, updates: dict) -> User:
        """
        Update user fields and stamp updated_at.

        Args:
            user: User object to update
            updates: Dictionary of column values (e.g., {"status": "active"})

        Returns:
            Updated User object
        """
        self._apply(user, updates)
        if "updated_at" not in updates:
            user.updated_at = utcnow()
        await self.db.flush()
        await self.db.refresh(user)
        return user

    async def upsert_user(self, email: str, fields: dict) -> User:
        """
        Update the record for ``email`` or create it when missing.

        Returns:
            The persisted User object
        """
        user = await self.get_user_by_email(email)
        if user is None:
            return await self.create_user(email, **fields)
        return await self.update_user(user, fields)

    async def get_or_create_user(self, email: str) -> tuple[User, bool]:
        user = await self.get_user_by_email(email)
        if user is not None:
            return user, False
        return await self.create_user(email), True

    async def delete_user(self, email: str) -> bool:
        result = await self.db.execute(
            delete(User).where(User.email == normalize_email(email))
        )
        return result.rowcount > 0

    def _apply(self, user: User, fields: dict) -> None:
        for key, value in fields.items():
            if key in self.IMMUTABLE_FIELDS:
                continue
            if key in User.__table__.columns:
                setattr(user, key, value)
