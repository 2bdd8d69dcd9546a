"""Auction and bidding history models."""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, Boolean, DateTime, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import relationship

from fxchange.database import Base


class AuctionStatus(str, enum.Enum):
    READY = "READY"
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"
    BLOCKED = "BLOCKED"


TERMINAL_AUCTION_STATUSES = (AuctionStatus.COMPLETED, AuctionStatus.CANCELED, AuctionStatus.BLOCKED)


class Auction(Base):
    __tablename__ = "auctions"

    # One auction per item: the item id is the key.
    stuff_id = Column(String(36), ForeignKey("stuff.id"), primary_key=True)
    # NULL until a moderator approves the auction.
    status = Column(SQLEnum(AuctionStatus, name="auction_status", native_enum=False, length=20), nullable=True)
    is_approved = Column(Boolean, nullable=False, default=False)
    approved_by_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    initial_price = Column(Integer, nullable=False)
    step_price = Column(Integer, nullable=False)
    duration = Column(Integer, nullable=False)  # minutes
    start_at = Column(DateTime, nullable=True)
    expire_at = Column(DateTime, nullable=True)
    final_price = Column(Integer, nullable=True)
    winner_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    # Compare-and-swap pointer guarding concurrent bids.
    last_bid_id = Column(String(36), nullable=True)
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    stuff = relationship("Stuff", back_populates="auction")
    winner = relationship("User", foreign_keys=[winner_id])
    approved_by = relationship("User", foreign_keys=[approved_by_id])
    bidding_history = relationship(
        "BiddingHistory",
        back_populates="auction",
        order_by=lambda: BiddingHistory.created_at.desc(),
    )


class BiddingHistory(Base):
    """Append-only bid log."""
    __tablename__ = "bidding_history"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    auction_id = Column(String(36), ForeignKey("auctions.stuff_id"), nullable=False, index=True)
    author_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    bid_price = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))

    # Relationships
    auction = relationship("Auction", back_populates="bidding_history")
    author = relationship("User")
