import enum
import uuid

from sqlalchemy import Column, String, DateTime
from sqlalchemy.sql import func
from blog_cms.db.base_class import Base


class UserRole(str, enum.Enum):
    ADMIN = "ADMIN"
    STAFF = "STAFF"
    CUSTOMER = "CUSTOMER"


class UserStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    DISABLED = "DISABLED"


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)  # stored lowercase
    password_hash = Column(String(255), nullable=False)
    role = Column(String(16), nullable=False, default=UserRole.CUSTOMER.value)
    status = Column(String(16), nullable=False, default=UserStatus.ACTIVE.value, index=True)
    avatar_url = Column(String(2048), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self) -> str:
        return f"<User {self.id} {self.role}>"
