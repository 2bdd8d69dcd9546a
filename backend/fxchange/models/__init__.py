"""SQLAlchemy ORM models."""

from fxchange.models.user import User, Role, UserStatus
from fxchange.models.stuff import Stuff, StuffKind, StuffStatus
from fxchange.models.auction import Auction, AuctionStatus, BiddingHistory
from fxchange.models.transaction import (
    Transaction,
    TransactionStatus,
    TransactionEvidence,
    TransactionIssue,
)
from fxchange.models.point_history import PointHistory
from fxchange.models.feedback import Feedback
from fxchange.models.notification import Notification, OutboxMessage
from fxchange.models.conversation import Conversation
from fxchange.models.audit_log import AuditLog

__all__ = [
    "User",
    "Role",
    "UserStatus",
    "Stuff",
    "StuffKind",
    "StuffStatus",
    "Auction",
    "AuctionStatus",
    "BiddingHistory",
    "Transaction",
    "TransactionStatus",
    "TransactionEvidence",
    "TransactionIssue",
    "PointHistory",
    "Feedback",
    "Notification",
    "OutboxMessage",
    "Conversation",
    "AuditLog",
]
