"""
User lookup and persistence as seen by the auth core.

The auth service only needs four operations on users; `UserDirectory` names
them and `SqlAlchemyUserDirectory` implements them over the `users` table.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import func

from blog_cms.core.exceptions import DuplicateEmailError
from blog_cms.models.user import User, UserRole, UserStatus

logger = logging.getLogger("blog_cms.user_directory")


@dataclass
class UserRecord:
    id: str
    name: str
    email: str
    password_hash: str
    role: str = UserRole.CUSTOMER.value
    status: str = UserStatus.ACTIVE.value
    avatar_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE.value

    @classmethod
    def from_model(cls, user: User) -> "UserRecord":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            password_hash=user.password_hash,
            role=user.role,
            status=user.status,
            avatar_url=user.avatar_url,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class UserDirectory(Protocol):
    async def find_by_email(self, email: str) -> Optional[UserRecord]:
        ...

    async def find_by_id(self, user_id: str) -> Optional[UserRecord]:
        ...

    async def create(self, **fields) -> UserRecord:
        ...

    async def update_password_hash(self, user_id: str, password_hash: str) -> None:
        ...


class SqlAlchemyUserDirectory:
    """User directory backed by the relational store. One DB session per call."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self._session_factory = session_factory

    async def find_by_email(self, email: str) -> Optional[UserRecord]:
        async with self._session_factory() as session:
            result = await session.execute(select(User).where(User.email == email))
            user = result.scalar_one_or_none()
            return UserRecord.from_model(user) if user else None

    async def find_by_id(self, user_id: str) -> Optional[UserRecord]:
        async with self._session_factory() as session:
            user = await session.get(User, user_id)
            return UserRecord.from_model(user) if user else None

    async def create(self, **fields) -> UserRecord:
        async with self._session_factory() as session:
            user = User(**fields)
            session.add(user)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                logger.info("User insert rejected by unique constraint")
                raise DuplicateEmailError() from e
            await session.refresh(user)
            return UserRecord.from_model(user)

    async def update_password_hash(self, user_id: str, password_hash: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(User)
                .where(User.id == user_id)
                .values(password_hash=password_hash, updated_at=func.now())
            )
            await session.commit()
