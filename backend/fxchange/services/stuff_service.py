"""Stuff service — item records, status flips and exchange suggestions."""

import json
import logging
from typing import Optional

from sqlalchemy.orm import Session

from fxchange.errors import BadRequestError, ConflictError, NotFoundError, PermissionDeniedError
from fxchange.models.auction import Auction, AuctionStatus
from fxchange.models.stuff import Stuff, StuffKind, StuffStatus
from fxchange.services import audit_service, user_service

logger = logging.getLogger(__name__)


def create_stuff(
    db: Session,
    owner_id: str,
    name: str,
    kind: StuffKind,
    price: int = 0,
    condition: int = 100,
    description: Optional[str] = None,
    media: Optional[list[str]] = None,
    tags: Optional[list[str]] = None,
    status: StuffStatus = StuffStatus.active,
) -> Stuff:
    """Create an item. The caller commits."""
    if not 0 <= condition <= 100:
        raise BadRequestError("Condition must be between 0 and 100", code="INVALID_CONDITION")
    if price < 0:
        raise BadRequestError("Price cannot be negative", code="INVALID_PRICE")
    user_service.get_or_404(db, owner_id)

    stuff = Stuff(
        author_id=owner_id,
        name=name,
        description=description,
        kind=kind,
        status=int(status),
        price=price,
        condition=condition,
        media=json.dumps(media or []),
        tags=json.dumps(tags or []),
    )
    db.add(stuff)
    db.flush()
    return stuff


def find_by_id(db: Session, stuff_id: str) -> Optional[Stuff]:
    return db.query(Stuff).filter(Stuff.id == stuff_id).first()


def get_or_404(db: Session, stuff_id: str) -> Stuff:
    stuff = find_by_id(db, stuff_id)
    if not stuff:
        raise NotFoundError("Stuff not found", code="STUFF_NOT_FOUND")
    return stuff


def update_status(db: Session, stuff_id: str, status: StuffStatus) -> Stuff:
    stuff = get_or_404(db, stuff_id)
    stuff.status = int(status)
    return stuff


def deactivate(db: Session, actor_id: str, stuff_id: str) -> Stuff:
    """Owner deletion or moderator takedown: the item becomes inactive."""
    actor = user_service.get_or_404(db, actor_id)
    stuff = get_or_404(db, stuff_id)
    if actor.id != stuff.author_id and not actor.is_moderator:
        raise PermissionDeniedError("Cannot modify this stuff", code="INVALID_USER")
    if stuff.status == StuffStatus.sold:
        raise ConflictError("Stuff is already sold", code="STUFF_IS_NOT_AVAILABLE")

    auction = db.query(Auction).filter(Auction.stuff_id == stuff_id).first()
    if auction and auction.status == AuctionStatus.STARTED:
        raise ConflictError("Auction is in progress", code="AUCTION_IN_PROGRESS")

    old_status = stuff.status
    stuff.status = int(StuffStatus.inactive)
    audit_service.record(
        db, "stuff", stuff.id, "deactivated", actor_id,
        old_data={"status": old_status}, new_data={"status": stuff.status},
    )
    db.commit()
    db.refresh(stuff)
    return stuff


def _tags(stuff: Stuff) -> set[str]:
    return set(json.loads(stuff.tags or "[]"))


def find_available_for_suggestion(db: Session, stuff_id: str, limit: int = 10) -> list[Stuff]:
    """Suggest barter counter-items for ``stuff_id``.

    Candidates are active exchange/archived items of other owners, ranked by
    shared tags first and closeness of condition score second.
    """
    base = get_or_404(db, stuff_id)
    if base.status == StuffStatus.sold:
        return []

    candidates = (
        db.query(Stuff)
        .filter(
            Stuff.id != base.id,
            Stuff.author_id != base.author_id,
            Stuff.status == int(StuffStatus.active),
            Stuff.kind.in_([StuffKind.exchange, StuffKind.archived]),
        )
        .all()
    )

    base_tags = _tags(base)

    def score(candidate: Stuff) -> float:
        shared = len(base_tags & _tags(candidate))
        closeness = 100 - abs(base.condition - candidate.condition)
        return shared * 10 + closeness / 10

    ranked = sorted(candidates, key=score, reverse=True)
    return ranked[:limit]


def list_stuff(
    db: Session,
    kind: Optional[StuffKind] = None,
    owner_id: Optional[str] = None,
    status: Optional[StuffStatus] = None,
) -> list[Stuff]:
    query = db.query(Stuff)
    if kind:
        query = query.filter(Stuff.kind == kind)
    if owner_id:
        query = query.filter(Stuff.author_id == owner_id)
    if status is not None:
        query = query.filter(Stuff.status == int(status))
    return query.order_by(Stuff.created_at.desc()).all()
