"""Transaction, evidence and issue models."""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, Boolean, DateTime, ForeignKey, Text, Enum as SQLEnum
from sqlalchemy.orm import relationship

from fxchange.database import Base


class TransactionStatus(str, enum.Enum):
    PENDING = "PENDING"
    ONGOING = "ONGOING"
    WAIT = "WAIT"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"


ACTIVE_TRANSACTION_STATUSES = (TransactionStatus.PENDING, TransactionStatus.ONGOING, TransactionStatus.WAIT)
TERMINAL_TRANSACTION_STATUSES = (TransactionStatus.COMPLETED, TransactionStatus.CANCELED)


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    stuff_id = Column(String(36), ForeignKey("stuff.id"), nullable=False, index=True)
    exchange_stuff_id = Column(String(36), ForeignKey("stuff.id"), nullable=True)
    customer_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    stuff_owner_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False, default=0)
    is_pickup = Column(Boolean, nullable=False, default=True)
    owner_paid = Column(Boolean, nullable=False, default=False)  # seller credited before pickup
    status = Column(
        SQLEnum(TransactionStatus, name="transaction_status", native_enum=False, length=20),
        nullable=False,
        default=TransactionStatus.PENDING,
    )
    expire_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    stuff = relationship("Stuff", foreign_keys=[stuff_id])
    exchange_stuff = relationship("Stuff", foreign_keys=[exchange_stuff_id])
    customer = relationship("User", foreign_keys=[customer_id])
    stuff_owner = relationship("User", foreign_keys=[stuff_owner_id])
    evidences = relationship("TransactionEvidence", back_populates="transaction", order_by="TransactionEvidence.created_at")
    issues = relationship("TransactionIssue", back_populates="transaction", order_by="TransactionIssue.created_at")


class TransactionEvidence(Base):
    __tablename__ = "transaction_evidences"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    transaction_id = Column(String(36), ForeignKey("transactions.id"), nullable=False, index=True)
    author_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    media = Column(Text, nullable=False, default="[]")  # JSON list of URLs
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))

    transaction = relationship("Transaction", back_populates="evidences")


class TransactionIssue(Base):
    __tablename__ = "transaction_issues"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    transaction_id = Column(String(36), ForeignKey("transactions.id"), nullable=False, index=True)
    mod_id = Column(String(36), ForeignKey("users.id"), nullable=True)  # NULL when raised by a party
    issue = Column(Text, nullable=False)
    issue_tag_user = Column(String(36), ForeignKey("users.id"), nullable=True)  # party at fault
    is_solved = Column(Boolean, nullable=False, default=False)
    issue_solved = Column(Text, nullable=True)  # resolution outcome
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    transaction = relationship("Transaction", back_populates="issues")
