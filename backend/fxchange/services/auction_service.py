"""Auction service — approval, start, bidding and settlement of timed auctions.

State machine:
    (unapproved) -> READY -> STARTED -> COMPLETED
    READY | STARTED -> CANCELED | BLOCKED (moderator-forced)

``finish`` settles the winner inside one unit of work: debit, point history,
item SOLD and a pickup transaction. Notifications are outbox rows written in
the same unit of work, so they only go out once the settlement commits.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from fxchange.config import settings
from fxchange.core.clock import as_utc, utcnow
from fxchange.database import settlement
from fxchange.errors import (
    BadRequestError,
    ConflictError,
    InsufficientFundsError,
    NotFoundError,
    PermissionDeniedError,
)
from fxchange.models.auction import Auction, AuctionStatus, BiddingHistory, TERMINAL_AUCTION_STATUSES
from fxchange.models.stuff import Stuff, StuffKind, StuffStatus
from fxchange.models.transaction import Transaction, TransactionStatus
from fxchange.services import (
    audit_service,
    conversation_service,
    notification_service,
    stuff_service,
    user_service,
)

logger = logging.getLogger(__name__)


def _auction_snapshot(auction: Auction) -> dict:
    return {
        "status": auction.status.value if auction.status else None,
        "is_approved": auction.is_approved,
        "final_price": auction.final_price,
        "winner_id": auction.winner_id,
    }


# ── Queries ───────────────────────────────────────────────────────────────────

def find_by_stuff_id(db: Session, stuff_id: str) -> Optional[Auction]:
    return db.query(Auction).filter(Auction.stuff_id == stuff_id).first()


def get_or_404(db: Session, stuff_id: str) -> Auction:
    auction = find_by_stuff_id(db, stuff_id)
    if not auction:
        raise NotFoundError("Auction not found", code="AUCTION_NOT_FOUND")
    return auction


def _get_for_update(db: Session, stuff_id: str) -> Auction:
    auction = (
        db.query(Auction)
        .filter(Auction.stuff_id == stuff_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if not auction:
        raise NotFoundError("Auction not found", code="AUCTION_NOT_FOUND")
    return auction


def find_all(db: Session, is_approved: Optional[bool] = None) -> list[Auction]:
    query = db.query(Auction)
    if is_approved is not None:
        query = query.filter(Auction.is_approved == is_approved)
    return query.order_by(Auction.updated_at.desc()).all()


def find_all_available(db: Session) -> list[Auction]:
    """Approved auctions that are open or about to open."""
    return (
        db.query(Auction)
        .join(Stuff, Stuff.id == Auction.stuff_id)
        .filter(
            Auction.is_approved.is_(True),
            Auction.status.in_([AuctionStatus.READY, AuctionStatus.STARTED]),
            Stuff.status == int(StuffStatus.active),
        )
        .order_by(Auction.updated_at.desc())
        .all()
    )


def find_bidding_history(db: Session, stuff_id: str) -> list[BiddingHistory]:
    return (
        db.query(BiddingHistory)
        .filter(BiddingHistory.auction_id == stuff_id)
        .order_by(BiddingHistory.created_at.desc())
        .all()
    )


def last_bid(db: Session, auction: Auction) -> Optional[BiddingHistory]:
    if not auction.last_bid_id:
        return None
    return db.get(BiddingHistory, auction.last_bid_id)


def does_auction_start(db: Session, stuff_id: Optional[str]) -> bool:
    if not stuff_id:
        return False
    auction = find_by_stuff_id(db, stuff_id)
    return bool(auction and auction.status == AuctionStatus.STARTED)


# ── Lifecycle ─────────────────────────────────────────────────────────────────

def create_auction(
    db: Session,
    owner_id: str,
    name: str,
    initial_price: int,
    step_price: int,
    duration: int,
    condition: int = 100,
    description: Optional[str] = None,
    media: Optional[list[str]] = None,
    tags: Optional[list[str]] = None,
) -> Auction:
    """Create an auction lot. It stays unapproved and its item inactive until a moderator approves it."""
    if initial_price < 0:
        raise BadRequestError("Initial price cannot be negative", code="INVALID_PRICE")
    if step_price <= 0:
        raise BadRequestError("Step price must be positive", code="INVALID_STEP_PRICE")
    if duration <= 0:
        raise BadRequestError("Duration must be positive", code="INVALID_DURATION")

    with settlement(db, "FAILED_TO_CREATE", "Failed to create auction"):
        stuff = stuff_service.create_stuff(
            db,
            owner_id=owner_id,
            name=name,
            kind=StuffKind.auction,
            price=initial_price,
            condition=condition,
            description=description,
            media=media,
            tags=tags,
            status=StuffStatus.inactive,
        )
        auction = Auction(
            stuff_id=stuff.id,
            status=None,
            is_approved=False,
            initial_price=initial_price,
            step_price=step_price,
            duration=duration,
        )
        db.add(auction)
        notification_service.notify(
            db,
            content=f"A new auction {name} is waiting for approval.",
            actor_id=owner_id,
            target_id=stuff.id,
            type="stuff",
            stuff_slug=StuffKind.auction.value,
            for_moderator=True,
        )
        audit_service.record(db, "auction", stuff.id, "created", owner_id, new_data=_auction_snapshot(auction))

    db.refresh(auction)
    logger.info("Auction created stuff=%s owner=%s", auction.stuff_id, owner_id)
    return auction


def approve(db: Session, mod_id: str, stuff_id: str) -> Auction:
    """Moderator approval: READY, and the item becomes visible."""
    user_service.require_moderator(db, mod_id)
    auction = get_or_404(db, stuff_id)
    if auction.is_approved:
        raise ConflictError("Auction is already approved", code="AUCTION_ALREADY_APPROVED")

    with settlement(db, "FAILED_TO_APPROVE_AUCTION", "Failed to approve auction"):
        auction = _get_for_update(db, stuff_id)
        if auction.is_approved:
            raise ConflictError("Auction is already approved", code="AUCTION_ALREADY_APPROVED")
        old = _auction_snapshot(auction)
        auction.is_approved = True
        auction.approved_by_id = mod_id
        auction.status = AuctionStatus.READY
        auction.stuff.status = int(StuffStatus.active)

        notification_service.notify(
            db,
            content=f"Your auction {auction.stuff.name} has been approved.",
            actor_id=mod_id,
            target_id=stuff_id,
            type="stuff",
            stuff_slug=auction.stuff.kind.value,
            receivers=[auction.stuff.author_id],
        )
        audit_service.record(db, "auction", stuff_id, "approved", mod_id, old, _auction_snapshot(auction))

    db.refresh(auction)
    logger.info("Auction approved stuff=%s mod=%s", stuff_id, mod_id)
    return auction


def start(db: Session, stuff_id: str, actor_id: Optional[str] = None, scheduler=None) -> Auction:
    """Open bidding for ``duration`` minutes and schedule the finish job.

    ``actor_id`` is the requesting user (owner or moderator); ``None`` means
    an internal caller. ``scheduler`` needs ``schedule_auction_finish``.
    """
    auction = get_or_404(db, stuff_id)
    if actor_id is not None:
        actor = user_service.get_or_404(db, actor_id)
        if actor.id != auction.stuff.author_id and not actor.is_moderator:
            raise PermissionDeniedError("Cannot start this auction", code="INVALID_USER")
    if not auction.is_approved:
        raise BadRequestError("Auction is not approved", code="AUCTION_NOT_APPROVED")
    if auction.status != AuctionStatus.READY:
        raise BadRequestError("Auction is not ready", code="AUCTION_NOT_READY")

    with settlement(db, "FAILED_TO_START_AUCTION", "Failed to start auction"):
        auction = _get_for_update(db, stuff_id)
        if auction.status != AuctionStatus.READY:
            raise BadRequestError("Auction is not ready", code="AUCTION_NOT_READY")
        old = _auction_snapshot(auction)
        now = utcnow()
        auction.start_at = now
        auction.expire_at = now + timedelta(minutes=auction.duration)
        auction.status = AuctionStatus.STARTED
        auction.stuff.status = int(StuffStatus.active)

        notification_service.notify(
            db,
            content=f"The auction {auction.stuff.name} has started.",
            actor_id=auction.stuff.author_id,
            target_id=stuff_id,
            type="stuff",
            stuff_slug=auction.stuff.kind.value,
            for_moderator=True,
        )
        audit_service.record(db, "auction", stuff_id, "started", actor_id, old, _auction_snapshot(auction))

    db.refresh(auction)
    if scheduler is not None:
        scheduler.schedule_auction_finish(stuff_id, as_utc(auction.expire_at))
    logger.info("Auction started stuff=%s expire_at=%s", stuff_id, auction.expire_at)
    return auction


def place_a_bid(db: Session, uid: str, stuff_id: str, bidding_price: int) -> BiddingHistory:
    """Validate and record a bid.

    The auction row is locked for the read-validate-insert sequence and the
    insert only commits if ``last_bid_id`` still points at the bid this call
    validated against, so two racing bids cannot both win on a stale read.
    """
    with settlement(db, "FAILED_TO_BID", "Failed to place a bid"):
        user = user_service.get_or_404(db, uid)
        if user.point < bidding_price:
            raise InsufficientFundsError("Not enough points to bid", code="ERROR_AUCTION_AMOUNT")

        auction = (
            db.query(Auction)
            .filter(Auction.stuff_id == stuff_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if not auction:
            raise NotFoundError("Auction not found", code="AUCTION_NOT_FOUND")
        if auction.status == AuctionStatus.COMPLETED:
            raise BadRequestError("Auction is completed", code="ERROR_AUCTION_COMPLETED")
        if auction.status == AuctionStatus.READY:
            raise BadRequestError("Auction has not started", code="ERROR_AUCTION_READY")

        previous = last_bid(db, auction)
        if (
            (previous is not None and previous.auction_id != auction.stuff_id)
            or auction.status != AuctionStatus.STARTED
            or (previous is not None and previous.author_id == uid)
            or auction.stuff.author_id == uid
        ):
            raise BadRequestError("Invalid auction", code="INVALID_AUCTION")
        expire_at = as_utc(auction.expire_at)
        if expire_at is not None and expire_at <= utcnow():
            raise BadRequestError("Auction is completed", code="ERROR_AUCTION_COMPLETED")

        last_price = previous.bid_price if previous else auction.initial_price
        floor_price = max(last_price, auction.initial_price)
        step = bidding_price - floor_price
        if bidding_price <= floor_price or step < auction.step_price:
            raise BadRequestError(
                f"Bid must be at least {floor_price + auction.step_price}",
                code="BAD_BIDDING_PRICE",
            )

        bid = BiddingHistory(auction_id=auction.stuff_id, author_id=uid, bid_price=bidding_price)
        db.add(bid)
        db.flush()

        expected = auction.last_bid_id
        swap = update(Auction).where(Auction.stuff_id == auction.stuff_id)
        if expected is None:
            swap = swap.where(Auction.last_bid_id.is_(None))
        else:
            swap = swap.where(Auction.last_bid_id == expected)
        result = db.execute(swap.values(last_bid_id=bid.id).execution_options(synchronize_session=False))
        if result.rowcount != 1:
            raise ConflictError("Another bid was placed first, try again", code="BID_CONFLICT")

    db.refresh(bid)
    logger.info("Bid placed stuff=%s user=%s price=%s", stuff_id, uid, bidding_price)
    return bid


def finish(db: Session, stuff_id: str) -> Auction:
    """Close a STARTED auction and settle its winner.

    A second call finds the auction COMPLETED and fails without side effects.
    """
    auction = get_or_404(db, stuff_id)
    if auction.status != AuctionStatus.STARTED:
        raise BadRequestError("Cannot finish auction", code="AUCTION_NOT_STARTED")

    with settlement(db, "FAILED_TO_FINISH_AUCTION", "Failed to finish auction"):
        auction = _get_for_update(db, stuff_id)
        if auction.status != AuctionStatus.STARTED:
            raise BadRequestError("Cannot finish auction", code="AUCTION_NOT_STARTED")
        old = _auction_snapshot(auction)
        stuff = auction.stuff
        winning_bid = last_bid(db, auction)

        auction.status = AuctionStatus.COMPLETED
        transaction = None
        if winning_bid is not None:
            auction.final_price = winning_bid.bid_price
            auction.winner_id = winning_bid.author_id

            user_service.adjust_point(db, winning_bid.author_id, -winning_bid.bid_price, "Auction won")
            stuff.status = int(StuffStatus.sold)
            stuff.price = winning_bid.bid_price
            transaction = Transaction(
                stuff_id=stuff.id,
                customer_id=winning_bid.author_id,
                stuff_owner_id=stuff.author_id,
                amount=winning_bid.bid_price,
                is_pickup=True,
                status=TransactionStatus.PENDING,
                expire_at=utcnow() + timedelta(days=settings.PICKUP_DEADLINE_DAYS),
            )
            db.add(transaction)
            db.flush()
            conversation_service.detach_stuff_from_conversation_by_stuff_id(db, stuff.id)

            notification_service.notify(
                db,
                content=f"Congratulations, you won the auction {stuff.name}.",
                actor_id=stuff.author_id,
                target_id=stuff.id,
                type="stuff",
                stuff_slug=stuff.kind.value,
                receivers=[winning_bid.author_id],
            )
            notification_service.notify(
                db,
                content=(
                    f"The auction {stuff.name} has ended. A pickup request was created; "
                    f"please deposit the item at FXchange within {settings.PICKUP_DEADLINE_DAYS} days."
                ),
                actor_id=stuff.author_id,
                target_id=transaction.id,
                type="transaction",
                receivers=[stuff.author_id],
            )
        else:
            notification_service.notify(
                db,
                content=f"There is no winner for the auction {stuff.name}.",
                actor_id=stuff.author_id,
                target_id=stuff.id,
                type="stuff",
                stuff_slug=stuff.kind.value,
                receivers=[stuff.author_id],
            )

        notification_service.notify(
            db,
            content=f"The auction {stuff.name} has ended.",
            actor_id=stuff.author_id,
            target_id=stuff.id,
            type="stuff",
            stuff_slug=stuff.kind.value,
            for_moderator=True,
        )
        audit_service.record(db, "auction", stuff_id, "finished", None, old, _auction_snapshot(auction))

    db.refresh(auction)
    logger.info(
        "Auction finished stuff=%s winner=%s final_price=%s transaction=%s",
        stuff_id, auction.winner_id, auction.final_price, transaction.id if transaction else None,
    )
    return auction


def _force_terminal(db: Session, mod_id: str, stuff_id: str, status: AuctionStatus, scheduler=None) -> Auction:
    user_service.require_moderator(db, mod_id)
    auction = get_or_404(db, stuff_id)
    if auction.status in TERMINAL_AUCTION_STATUSES:
        raise BadRequestError(
            f"Auction is already {auction.status.value.lower()}", code="AUCTION_ALREADY_FINISHED"
        )

    verb = "cancel" if status == AuctionStatus.CANCELED else "block"
    action = status.value.lower()
    with settlement(db, f"FAILED_TO_{verb.upper()}_AUCTION", f"Failed to {verb} auction"):
        auction = _get_for_update(db, stuff_id)
        if auction.status in TERMINAL_AUCTION_STATUSES:
            raise BadRequestError("Auction is already finished", code="AUCTION_ALREADY_FINISHED")
        old = _auction_snapshot(auction)
        auction.status = status
        auction.stuff.status = int(StuffStatus.inactive)
        notification_service.notify(
            db,
            content=f"The auction {auction.stuff.name} was {action} by a moderator.",
            actor_id=mod_id,
            target_id=stuff_id,
            type="stuff",
            stuff_slug=auction.stuff.kind.value,
            receivers=[auction.stuff.author_id],
        )
        audit_service.record(db, "auction", stuff_id, action, mod_id, old, _auction_snapshot(auction))

    db.refresh(auction)
    if scheduler is not None:
        scheduler.cancel_auction_finish(stuff_id)
    logger.info("Auction %s stuff=%s mod=%s", status.value, stuff_id, mod_id)
    return auction


def cancel(db: Session, mod_id: str, stuff_id: str, scheduler=None) -> Auction:
    return _force_terminal(db, mod_id, stuff_id, AuctionStatus.CANCELED, scheduler)


def block(db: Session, mod_id: str, stuff_id: str, scheduler=None) -> Auction:
    return _force_terminal(db, mod_id, stuff_id, AuctionStatus.BLOCKED, scheduler)


def reconcile_started_auctions(db: Session, now: Optional[datetime] = None, scheduler=None) -> int:
    """Finish STARTED auctions whose deadline passed while no timer was alive.

    Auctions still running are handed back to ``scheduler``. Returns how many
    auctions were finished.
    """
    now = now or utcnow()
    started = db.query(Auction).filter(Auction.status == AuctionStatus.STARTED).all()
    finished = 0
    for auction in started:
        expire_at = as_utc(auction.expire_at)
        if expire_at is not None and expire_at > now:
            if scheduler is not None:
                scheduler.schedule_auction_finish(auction.stuff_id, expire_at)
            continue
        try:
            finish(db, auction.stuff_id)
            finished += 1
        except BadRequestError as exc:
            logger.info("Skipping reconcile of auction %s: %s", auction.stuff_id, exc.code)
    if finished:
        logger.info("Reconciled %s expired auctions", finished)
    return finished
