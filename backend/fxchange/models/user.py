"""User model — identity plus the point/reputation view."""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, Float, DateTime
from sqlalchemy.orm import relationship

from fxchange.database import Base


class Role(str, enum.Enum):
    user = "user"
    moderator = "moderator"
    admin = "admin"


class UserStatus(str, enum.Enum):
    active = "active"
    blocked = "blocked"


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default=Role.user.value)  # user | moderator | admin
    full_name = Column(String(255), nullable=False)
    phone = Column(String(32), nullable=True)
    status = Column(String(20), nullable=False, default=UserStatus.active.value)  # active | blocked
    point = Column(Integer, nullable=False, default=0)
    reputation = Column(Integer, nullable=False, default=100)
    rating = Column(Float, nullable=True)
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))

    # Relationships
    stuff = relationship("Stuff", back_populates="owner")
    point_history = relationship("PointHistory", back_populates="user", order_by="PointHistory.time")

    @property
    def is_moderator(self) -> bool:
        return self.role in (Role.moderator.value, Role.admin.value)
