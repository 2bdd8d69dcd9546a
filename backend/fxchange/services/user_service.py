"""User service — point balance and reputation mutations.

Balance changes are applied as single SQL expressions so concurrent
settlements touching the same user cannot lose updates; reputation changes
run under a row lock because they may also flip the account status.
"""

import logging
from typing import Optional

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from fxchange.config import settings
from fxchange.errors import NotFoundError, PermissionDeniedError
from fxchange.models.point_history import PointHistory
from fxchange.models.user import User, UserStatus

logger = logging.getLogger(__name__)


def get_by_id(db: Session, user_id: str) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def get_or_404(db: Session, user_id: str) -> User:
    user = get_by_id(db, user_id)
    if not user:
        raise NotFoundError("User not found", code="USER_NOT_FOUND")
    return user


def get_for_update(db: Session, user_id: str) -> User:
    """Load a user row locked for the rest of the unit of work."""
    user = (
        db.query(User)
        .filter(User.id == user_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if not user:
        raise NotFoundError("User not found", code="USER_NOT_FOUND")
    return user


def get_point(db: Session, user_id: str) -> int:
    """Get user's current point balance."""
    return get_or_404(db, user_id).point


def require_moderator(db: Session, user_id: str) -> User:
    """Moderators and admins only."""
    user = get_or_404(db, user_id)
    if not user.is_moderator:
        raise PermissionDeniedError("Invalid action", code="INVALID_ACTION")
    return user


def append_point_history(db: Session, user_id: str, change: int, balance: int, content: str) -> PointHistory:
    entry = PointHistory(user_id=user_id, change=change, balance=balance, content=content)
    db.add(entry)
    return entry


def _refresh_point(db: Session, user_id: str) -> int:
    user = db.get(User, user_id)
    db.refresh(user, ["point"])
    return user.point


def adjust_point(db: Session, user_id: str, delta: int, content: str) -> int:
    """Add ``delta`` to a balance atomically, flooring at 0.

    Returns the new balance. The history entry records the delta actually
    applied, which differs from ``delta`` when the floor kicks in.
    """
    before = db.execute(select(User.point).where(User.id == user_id)).scalar_one_or_none()
    if before is None:
        raise NotFoundError("User not found", code="USER_NOT_FOUND")

    new_value = User.point + delta
    db.execute(
        update(User)
        .where(User.id == user_id)
        .values(point=case((new_value < 0, 0), else_=new_value))
        .execution_options(synchronize_session=False)
    )
    balance = _refresh_point(db, user_id)
    append_point_history(db, user_id, balance - before, balance, content)
    db.flush()
    logger.info("Point change user=%s delta=%s balance=%s", user_id, balance - before, balance)
    return balance


def update_user_point(db: Session, user_id: str, new_balance: int, content: Optional[str] = None) -> int:
    """Set a balance outright, clamped at 0."""
    clamped = max(0, new_balance)
    before = db.execute(select(User.point).where(User.id == user_id)).scalar_one_or_none()
    if before is None:
        raise NotFoundError("User not found", code="USER_NOT_FOUND")

    db.execute(
        update(User)
        .where(User.id == user_id)
        .values(point=clamped)
        .execution_options(synchronize_session=False)
    )
    balance = _refresh_point(db, user_id)
    if content is not None:
        append_point_history(db, user_id, balance - before, balance, content)
    db.flush()
    return balance


def plus_reputation_point(db: Session, user_id: str, amount: Optional[int] = None) -> int:
    """Reward a user, capped at the reputation ceiling."""
    amount = settings.REPUTATION_REWARD if amount is None else amount
    user = get_for_update(db, user_id)
    user.reputation = min(settings.REPUTATION_CEILING, user.reputation + amount)
    db.flush()
    return user.reputation


def reduce_reputation_point(db: Session, user_id: str, amount: Optional[int] = None) -> int:
    """Penalise a user; falling below the floor clamps and blocks the account."""
    amount = settings.REPUTATION_PENALTY if amount is None else amount
    user = get_for_update(db, user_id)
    reduced = user.reputation - amount
    if reduced < settings.REPUTATION_FLOOR:
        user.reputation = settings.REPUTATION_FLOOR
        user.status = UserStatus.blocked.value
        logger.warning("User %s blocked: reputation fell to %s", user_id, reduced)
    else:
        user.reputation = reduced
    db.flush()
    return user.reputation


def get_point_history(db: Session, user_id: str, limit: int = 100) -> list[PointHistory]:
    """Get recent point history for a user."""
    return (
        db.query(PointHistory)
        .filter(PointHistory.user_id == user_id)
        .order_by(PointHistory.time.desc())
        .limit(limit)
        .all()
    )
