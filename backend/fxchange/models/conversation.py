"""Conversation model — only the item links this core maintains."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, ForeignKey

from fxchange.database import Base


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    channel_id = Column(String(100), unique=True, nullable=False)
    stuff_id = Column(String(36), ForeignKey("stuff.id"), nullable=True)
    exchange_stuff_id = Column(String(36), ForeignKey("stuff.id"), nullable=True)
    status = Column(String(20), nullable=False, default="DISCUSSING")
    updated_at = Column(
        DateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
