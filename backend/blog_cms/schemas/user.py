from pydantic import BaseModel
from typing import Optional
from datetime import datetime

from blog_cms.models.user import UserRole, UserStatus


class UserPublic(BaseModel):
    """User as returned to API clients. Never carries the password hash."""
    id: str
    name: str
    email: str
    role: UserRole
    status: UserStatus
    avatar_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True
