"""Auctions router — lifecycle, bidding and viewer presence."""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from fxchange.core.clock import as_utc
from fxchange.core.realtime import PresenceTracker
from fxchange.core.state import get_presence, get_scheduler
from fxchange.database import get_db
from fxchange.middleware.auth import get_active_user, get_current_user, require_moderator
from fxchange.middleware.rate_limit import BID_RATE_LIMIT, limiter
from fxchange.models.auction import Auction, BiddingHistory
from fxchange.models.user import User
from fxchange.schemas.auction import (
    AuctionCreate,
    AuctionListResponse,
    AuctionResponse,
    BidRequest,
    BidResponse,
    PresenceResponse,
)
from fxchange.services import auction_service

router = APIRouter(prefix="/api/auctions", tags=["auctions"])


def _iso(value) -> Optional[str]:
    return as_utc(value).isoformat() if value else None


def _bid_to_response(bid: BiddingHistory) -> BidResponse:
    return BidResponse(
        id=bid.id,
        auction_id=bid.auction_id,
        author_id=bid.author_id,
        bid_price=bid.bid_price,
        created_at=_iso(bid.created_at) or "",
    )


def _auction_to_response(db: Session, auction: Auction) -> AuctionResponse:
    last = auction_service.last_bid(db, auction)
    return AuctionResponse(
        stuff_id=auction.stuff_id,
        name=auction.stuff.name,
        owner_id=auction.stuff.author_id,
        status=auction.status.value if auction.status else None,
        is_approved=auction.is_approved,
        initial_price=auction.initial_price,
        step_price=auction.step_price,
        duration=auction.duration,
        start_at=_iso(auction.start_at),
        expire_at=_iso(auction.expire_at),
        final_price=auction.final_price,
        winner_id=auction.winner_id,
        last_bid=_bid_to_response(last) if last else None,
    )


def _list_response(db: Session, auctions: list[Auction]) -> AuctionListResponse:
    return AuctionListResponse(
        auctions=[_auction_to_response(db, a) for a in auctions],
        total=len(auctions),
    )


@router.post("", response_model=AuctionResponse, status_code=201)
def create_auction(
    req: AuctionCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_active_user),
):
    """Submit an auction lot for moderator approval."""
    auction = auction_service.create_auction(
        db,
        owner_id=current_user.id,
        name=req.name,
        initial_price=req.initial_price,
        step_price=req.step_price,
        duration=req.duration,
        condition=req.condition,
        description=req.description,
        media=req.media,
        tags=req.tags,
    )
    return _auction_to_response(db, auction)


@router.get("", response_model=AuctionListResponse)
def list_auctions(
    is_approved: Optional[bool] = Query(None),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return _list_response(db, auction_service.find_all(db, is_approved=is_approved))


@router.get("/available", response_model=AuctionListResponse)
def list_available_auctions(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return _list_response(db, auction_service.find_all_available(db))


@router.get("/{stuff_id}", response_model=AuctionResponse)
def get_auction(
    stuff_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return _auction_to_response(db, auction_service.get_or_404(db, stuff_id))


@router.get("/{stuff_id}/history", response_model=list[BidResponse])
def get_bidding_history(
    stuff_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    auction_service.get_or_404(db, stuff_id)
    return [_bid_to_response(b) for b in auction_service.find_bidding_history(db, stuff_id)]


@router.post("/{stuff_id}/approve", response_model=AuctionResponse)
def approve_auction(
    stuff_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_moderator),
):
    return _auction_to_response(db, auction_service.approve(db, current_user.id, stuff_id))


@router.post("/{stuff_id}/start", response_model=AuctionResponse)
def start_auction(
    stuff_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_active_user),
    scheduler=Depends(get_scheduler),
):
    """Owner or moderator opens bidding."""
    auction = auction_service.start(db, stuff_id, actor_id=current_user.id, scheduler=scheduler)
    return _auction_to_response(db, auction)


@router.post("/{stuff_id}/bid", response_model=BidResponse, status_code=201)
@limiter.limit(BID_RATE_LIMIT)
def place_bid(
    request: Request,
    stuff_id: str,
    req: BidRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_active_user),
):
    bid = auction_service.place_a_bid(db, current_user.id, stuff_id, req.bidding_price)
    return _bid_to_response(bid)


@router.post("/{stuff_id}/finish", response_model=AuctionResponse)
def finish_auction(
    stuff_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_moderator),
    scheduler=Depends(get_scheduler),
    presence: PresenceTracker = Depends(get_presence),
):
    """Close an auction ahead of its timer."""
    auction = auction_service.finish(db, stuff_id)
    if scheduler is not None:
        scheduler.cancel_auction_finish(stuff_id)
    presence.invalidate(stuff_id)
    return _auction_to_response(db, auction)


@router.post("/{stuff_id}/cancel", response_model=AuctionResponse)
def cancel_auction(
    stuff_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_moderator),
    scheduler=Depends(get_scheduler),
    presence: PresenceTracker = Depends(get_presence),
):
    auction = auction_service.cancel(db, current_user.id, stuff_id, scheduler=scheduler)
    presence.invalidate(stuff_id)
    return _auction_to_response(db, auction)


@router.post("/{stuff_id}/block", response_model=AuctionResponse)
def block_auction(
    stuff_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_moderator),
    scheduler=Depends(get_scheduler),
    presence: PresenceTracker = Depends(get_presence),
):
    auction = auction_service.block(db, current_user.id, stuff_id, scheduler=scheduler)
    presence.invalidate(stuff_id)
    return _auction_to_response(db, auction)


@router.post("/{stuff_id}/join", response_model=PresenceResponse)
def join_auction(
    stuff_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    presence: PresenceTracker = Depends(get_presence),
):
    auction_service.get_or_404(db, stuff_id)
    count = presence.update_participant(current_user.id, stuff_id, "push")
    return PresenceResponse(stuff_id=stuff_id, participants=count)


@router.post("/{stuff_id}/leave", response_model=PresenceResponse)
def leave_auction(
    stuff_id: str,
    current_user: User = Depends(get_current_user),
    presence: PresenceTracker = Depends(get_presence),
):
    count = presence.update_participant(current_user.id, stuff_id, "pop")
    return PresenceResponse(stuff_id=stuff_id, participants=count)
