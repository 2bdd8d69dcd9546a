"""Notification and outbox models."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, Boolean, DateTime, ForeignKey, Text

from fxchange.database import Base


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    type_slug = Column(String(50), nullable=False)  # noti-stuff | noti-transaction | ...
    content = Column(Text, nullable=False)
    target_id = Column(String(36), nullable=True)
    target_url = Column(String(500), nullable=True)
    actor_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    receiver_ids = Column(Text, nullable=False, default="[]")  # JSON list
    for_mod = Column(Boolean, nullable=False, default=False)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))


class OutboxMessage(Base):
    """Side effect recorded inside a settlement, delivered after commit."""
    __tablename__ = "outbox_messages"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    kind = Column(String(20), nullable=False)  # notification | email
    payload = Column(Text, nullable=False)     # JSON
    status = Column(String(20), nullable=False, default="pending", index=True)  # pending | sent | failed
    attempts = Column(Integer, nullable=False, default=0)
    available_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
