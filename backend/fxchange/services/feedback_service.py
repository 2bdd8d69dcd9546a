"""Feedback service — post-completion rating placeholders and ratings."""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.orm import Session

from fxchange.config import settings
from fxchange.core.clock import as_utc, utcnow
from fxchange.database import settlement
from fxchange.errors import BadRequestError, ConflictError, NotFoundError, PermissionDeniedError
from fxchange.models.feedback import Feedback
from fxchange.models.transaction import Transaction
from fxchange.models.user import User
from fxchange.services import notification_service

logger = logging.getLogger(__name__)


def create_feedback(db: Session, transaction: Transaction, author_id: str) -> Feedback:
    """Open a rating slot for one party. The caller commits."""
    if author_id == transaction.customer_id:
        target_user_id = transaction.stuff_owner_id
    elif author_id == transaction.stuff_owner_id:
        target_user_id = transaction.customer_id
    else:
        raise PermissionDeniedError("Author is not a party of the transaction", code="INVALID_USER")

    feedback = Feedback(
        transaction_id=transaction.id,
        author_id=author_id,
        target_user_id=target_user_id,
        expire_at=utcnow() + timedelta(days=settings.FEEDBACK_WINDOW_DAYS),
    )
    db.add(feedback)
    db.flush()
    notification_service.notify(
        db,
        content="You have just completed a transaction, leave your feedback now.",
        actor_id=author_id,
        target_id=feedback.id,
        type="feedback",
        receivers=[author_id],
    )
    return feedback


def get_or_404(db: Session, feedback_id: str) -> Feedback:
    feedback = db.query(Feedback).filter(Feedback.id == feedback_id).first()
    if not feedback:
        raise NotFoundError("Feedback not found", code="FEEDBACK_NOT_FOUND")
    return feedback


def list_for_user(db: Session, user_id: str) -> list[Feedback]:
    """Feedback written by or about a user."""
    return (
        db.query(Feedback)
        .filter((Feedback.author_id == user_id) | (Feedback.target_user_id == user_id))
        .order_by(Feedback.created_at.desc())
        .all()
    )


def rate_feedback(db: Session, uid: str, feedback_id: str, rating: int, content: Optional[str] = None) -> Feedback:
    """Fill in a feedback slot and fold it into the target's running average."""
    feedback = get_or_404(db, feedback_id)
    if feedback.rating is not None:
        raise ConflictError("Feedback already given for this transaction", code="ALREADY_FEEDBACK")
    if feedback.author_id != uid:
        raise PermissionDeniedError("Invalid user", code="INVALID_USER")
    if not 1 <= rating <= 5:
        raise BadRequestError("Rating must be between 1 and 5", code="INVALID_RATING")
    if as_utc(feedback.expire_at) < utcnow():
        raise BadRequestError("Feedback window has closed", code="FEEDBACK_EXPIRED")

    with settlement(db, "FEEDBACK_FAILED", "Failed to save feedback"):
        target = (
            db.query(User)
            .filter(User.id == feedback.target_user_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        rated_count = (
            db.query(Feedback)
            .filter(Feedback.target_user_id == feedback.target_user_id, Feedback.rating.isnot(None))
            .count()
        )
        if target.rating is None or rated_count == 0:
            target.rating = float(rating)
        else:
            target.rating = (target.rating * rated_count + rating) / (rated_count + 1)

        feedback.rating = rating
        feedback.content = content
        author = db.get(User, uid)
        notification_service.notify(
            db,
            content=f"You have a new feedback from {author.full_name}.",
            actor_id=uid,
            target_id=feedback.id,
            type="feedback",
            receivers=[feedback.target_user_id],
        )

    db.refresh(feedback)
    logger.info("Feedback %s rated %s for user %s", feedback_id, rating, feedback.target_user_id)
    return feedback
