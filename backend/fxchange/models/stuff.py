"""Stuff (item) model."""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Text, Enum as SQLEnum
from sqlalchemy.orm import relationship

from fxchange.database import Base


class StuffKind(str, enum.Enum):
    """How an item changes hands."""
    market = "market"
    exchange = "exchange"
    auction = "auction"
    archived = "archived"

    @property
    def is_priced(self) -> bool:
        """Market and auction items settle on a price; barter items do not."""
        if self in (StuffKind.market, StuffKind.auction):
            return True
        if self in (StuffKind.exchange, StuffKind.archived):
            return False
        raise AssertionError(f"Unhandled stuff kind: {self!r}")


class StuffStatus(enum.IntEnum):
    inactive = 0
    active = 1
    sold = 2


class Stuff(Base):
    __tablename__ = "stuff"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    author_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    kind = Column(SQLEnum(StuffKind, name="stuff_kind", native_enum=False, length=20), nullable=False)
    status = Column(Integer, nullable=False, default=StuffStatus.active.value)  # 0 inactive | 1 active | 2 sold
    price = Column(Integer, nullable=False, default=0)
    condition = Column(Integer, nullable=False, default=100)  # 0-100
    media = Column(Text, nullable=False, default="[]")  # JSON list of URLs
    tags = Column(Text, nullable=False, default="[]")   # JSON list of tag slugs
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    owner = relationship("User", back_populates="stuff")
    auction = relationship("Auction", back_populates="stuff", uselist=False)
