"""Point history model — append-only audit of every balance change."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Text
from sqlalchemy.orm import relationship

from fxchange.database import Base


class PointHistory(Base):
    __tablename__ = "point_history"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    change = Column(Integer, nullable=False)   # signed delta actually applied
    balance = Column(Integer, nullable=False)  # balance after the change
    content = Column(Text, nullable=False)
    time = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))

    user = relationship("User", back_populates="point_history")
