"""Tests for the auction engine: approval, bidding rules and settlement."""

import pytest
import sys
import os
from datetime import timedelta

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from fxchange.core.clock import utcnow
from fxchange.core.realtime import PresenceTracker
from fxchange.errors import (
    BadRequestError,
    ConflictError,
    InsufficientFundsError,
    NotFoundError,
    PermissionDeniedError,
)
from fxchange.models import (
    Auction,
    AuctionStatus,
    OutboxMessage,
    PointHistory,
    Stuff,
    StuffStatus,
    Transaction,
    TransactionStatus,
    User,
)
from fxchange.services import auction_service


class RecordingScheduler:
    """Stands in for MarketScheduler; remembers what was (un)scheduled."""

    def __init__(self):
        self.scheduled = {}
        self.cancelled = []

    def schedule_auction_finish(self, stuff_id, run_at):
        self.scheduled[stuff_id] = run_at

    def cancel_auction_finish(self, stuff_id):
        self.cancelled.append(stuff_id)


@pytest.fixture
def owner(make_user):
    return make_user(full_name="Owner")


@pytest.fixture
def started_auction(db, owner, moderator, make_auction):
    auction = make_auction(owner, initial_price=100, step_price=10)
    auction_service.approve(db, moderator.id, auction.stuff_id)
    return auction_service.start(db, auction.stuff_id)


class TestApproveAndStart:
    """READY only after approval, STARTED only from READY."""

    def test_create_auction_is_unapproved(self, db, owner):
        auction = auction_service.create_auction(
            db, owner.id, "Guitar", initial_price=500, step_price=50, duration=30
        )
        assert auction.is_approved is False
        assert auction.status is None
        assert auction.stuff.status == StuffStatus.inactive

    def test_approve_sets_ready_and_activates_item(self, db, owner, moderator, make_auction):
        auction = make_auction(owner)
        approved = auction_service.approve(db, moderator.id, auction.stuff_id)
        assert approved.is_approved is True
        assert approved.status == AuctionStatus.READY
        assert approved.stuff.status == StuffStatus.active
        assert approved.approved_by_id == moderator.id

    def test_approve_notifies_owner(self, db, owner, moderator, make_auction):
        auction = make_auction(owner)
        auction_service.approve(db, moderator.id, auction.stuff_id)
        assert db.query(OutboxMessage).filter(OutboxMessage.kind == "notification").count() == 1

    def test_approve_requires_moderator(self, db, owner, make_auction):
        auction = make_auction(owner)
        with pytest.raises(PermissionDeniedError):
            auction_service.approve(db, owner.id, auction.stuff_id)

    def test_reapprove_rejected(self, db, owner, moderator, make_auction):
        auction = make_auction(owner)
        auction_service.approve(db, moderator.id, auction.stuff_id)
        with pytest.raises(ConflictError) as exc:
            auction_service.approve(db, moderator.id, auction.stuff_id)
        assert exc.value.code == "AUCTION_ALREADY_APPROVED"

    def test_start_requires_approval(self, db, owner, make_auction):
        auction = make_auction(owner)
        with pytest.raises(BadRequestError) as exc:
            auction_service.start(db, auction.stuff_id)
        assert exc.value.code == "AUCTION_NOT_APPROVED"

    def test_start_sets_window_and_schedules_finish(self, db, owner, moderator, make_auction):
        auction = make_auction(owner, duration=45)
        auction_service.approve(db, moderator.id, auction.stuff_id)
        scheduler = RecordingScheduler()

        started = auction_service.start(db, auction.stuff_id, actor_id=owner.id, scheduler=scheduler)

        assert started.status == AuctionStatus.STARTED
        assert started.expire_at - started.start_at == timedelta(minutes=45)
        assert auction.stuff_id in scheduler.scheduled

    def test_start_twice_rejected(self, db, started_auction):
        with pytest.raises(BadRequestError) as exc:
            auction_service.start(db, started_auction.stuff_id)
        assert exc.value.code == "AUCTION_NOT_READY"

    def test_stranger_cannot_start(self, db, owner, moderator, make_user, make_auction):
        auction = make_auction(owner)
        auction_service.approve(db, moderator.id, auction.stuff_id)
        with pytest.raises(PermissionDeniedError):
            auction_service.start(db, auction.stuff_id, actor_id=make_user().id)


class TestBidding:
    """Validation order and bid monotonicity."""

    def test_first_bid_must_clear_initial_by_step(self, db, started_auction, make_user):
        bidder = make_user(point=1000)
        with pytest.raises(BadRequestError) as exc:
            auction_service.place_a_bid(db, bidder.id, started_auction.stuff_id, 105)
        assert exc.value.code == "BAD_BIDDING_PRICE"

        bid = auction_service.place_a_bid(db, bidder.id, started_auction.stuff_id, 110)
        assert bid.bid_price == 110

    def test_bid_equal_to_last_rejected(self, db, started_auction, make_user):
        first, second = make_user(point=1000), make_user(point=1000)
        auction_service.place_a_bid(db, first.id, started_auction.stuff_id, 110)
        with pytest.raises(BadRequestError) as exc:
            auction_service.place_a_bid(db, second.id, started_auction.stuff_id, 110)
        assert exc.value.code == "BAD_BIDDING_PRICE"

    def test_accepted_bids_strictly_increase(self, db, started_auction, make_user):
        bidders = [make_user(point=10_000) for _ in range(3)]
        prices = [110, 130, 140, 175, 200]
        for i, price in enumerate(prices):
            auction_service.place_a_bid(db, bidders[i % 3].id, started_auction.stuff_id, price)

        history = sorted(
            auction_service.find_bidding_history(db, started_auction.stuff_id),
            key=lambda b: b.bid_price,
        )
        previous = started_auction.initial_price
        for bid in history:
            assert bid.bid_price - previous >= started_auction.step_price
            previous = bid.bid_price

    def test_balance_checked_first(self, db, make_user):
        """ERROR_AUCTION_AMOUNT wins even when the auction does not exist."""
        poor = make_user(point=10)
        with pytest.raises(InsufficientFundsError) as exc:
            auction_service.place_a_bid(db, poor.id, "missing", 500)
        assert exc.value.code == "ERROR_AUCTION_AMOUNT"

    def test_missing_auction(self, db, make_user):
        with pytest.raises(NotFoundError) as exc:
            auction_service.place_a_bid(db, make_user(point=1000).id, "missing", 500)
        assert exc.value.code == "AUCTION_NOT_FOUND"

    def test_ready_auction_rejects_bids(self, db, owner, moderator, make_user, make_auction):
        auction = make_auction(owner)
        auction_service.approve(db, moderator.id, auction.stuff_id)
        with pytest.raises(BadRequestError) as exc:
            auction_service.place_a_bid(db, make_user(point=5000).id, auction.stuff_id, 600)
        assert exc.value.code == "ERROR_AUCTION_READY"

    def test_completed_auction_rejects_bids(self, db, started_auction, make_user):
        auction_service.finish(db, started_auction.stuff_id)
        with pytest.raises(BadRequestError) as exc:
            auction_service.place_a_bid(db, make_user(point=5000).id, started_auction.stuff_id, 600)
        assert exc.value.code == "ERROR_AUCTION_COMPLETED"

    def test_owner_cannot_bid(self, db, owner, started_auction):
        db.query(User).filter(User.id == owner.id).update({"point": 100_000})
        db.commit()
        for price in (110, 5000, 99_999):
            with pytest.raises(BadRequestError) as exc:
                auction_service.place_a_bid(db, owner.id, started_auction.stuff_id, price)
            assert exc.value.code == "INVALID_AUCTION"

    def test_top_bidder_cannot_rebid(self, db, started_auction, make_user):
        bidder = make_user(point=1000)
        auction_service.place_a_bid(db, bidder.id, started_auction.stuff_id, 110)
        with pytest.raises(BadRequestError) as exc:
            auction_service.place_a_bid(db, bidder.id, started_auction.stuff_id, 200)
        assert exc.value.code == "INVALID_AUCTION"

    def test_canceled_auction_is_invalid(self, db, started_auction, moderator, make_user):
        auction_service.cancel(db, moderator.id, started_auction.stuff_id)
        with pytest.raises(BadRequestError) as exc:
            auction_service.place_a_bid(db, make_user(point=1000).id, started_auction.stuff_id, 200)
        assert exc.value.code == "INVALID_AUCTION"

    def test_bid_moves_last_bid_pointer(self, db, started_auction, make_user):
        bid = auction_service.place_a_bid(db, make_user(point=1000).id, started_auction.stuff_id, 110)
        db.expire_all()
        assert db.get(Auction, started_auction.stuff_id).last_bid_id == bid.id

    def test_bid_does_not_reserve_points(self, db, started_auction, make_user):
        bidder = make_user(point=1000)
        auction_service.place_a_bid(db, bidder.id, started_auction.stuff_id, 110)
        db.expire_all()
        assert db.get(User, bidder.id).point == 1000


class TestFinish:
    """Settlement of the winner and idempotence."""

    def test_finish_without_bids(self, db, started_auction):
        finished = auction_service.finish(db, started_auction.stuff_id)
        assert finished.status == AuctionStatus.COMPLETED
        assert finished.winner_id is None
        assert db.query(Transaction).count() == 0

    def test_finish_settles_winner(self, db, owner, started_auction, make_user):
        first, second = make_user(point=1000), make_user(point=1000)
        auction_service.place_a_bid(db, first.id, started_auction.stuff_id, 110)
        auction_service.place_a_bid(db, second.id, started_auction.stuff_id, 150)

        finished = auction_service.finish(db, started_auction.stuff_id)

        assert finished.winner_id == second.id
        assert finished.final_price == 150
        assert db.get(User, second.id).point == 850
        assert db.get(User, first.id).point == 1000
        stuff = db.get(Stuff, started_auction.stuff_id)
        assert stuff.status == StuffStatus.sold
        assert stuff.price == 150

        transaction = db.query(Transaction).one()
        assert transaction.customer_id == second.id
        assert transaction.stuff_owner_id == owner.id
        assert transaction.amount == 150
        assert transaction.is_pickup is True
        assert transaction.status == TransactionStatus.PENDING

        history = db.query(PointHistory).filter(PointHistory.user_id == second.id).one()
        assert history.change == -150

    def test_finish_twice_fails_without_side_effects(self, db, started_auction, make_user):
        winner = make_user(point=1000)
        auction_service.place_a_bid(db, winner.id, started_auction.stuff_id, 110)
        auction_service.finish(db, started_auction.stuff_id)

        with pytest.raises(BadRequestError) as exc:
            auction_service.finish(db, started_auction.stuff_id)
        assert exc.value.code == "AUCTION_NOT_STARTED"
        assert db.query(Transaction).count() == 1
        assert db.get(User, winner.id).point == 890

    def test_finish_ready_auction_fails(self, db, owner, moderator, make_auction):
        auction = make_auction(owner)
        auction_service.approve(db, moderator.id, auction.stuff_id)
        with pytest.raises(BadRequestError):
            auction_service.finish(db, auction.stuff_id)

    def test_finish_rolls_back_on_failure(self, db, started_auction, make_user, monkeypatch):
        from fxchange.errors import OperationFailedError
        from fxchange.services import conversation_service

        winner = make_user(point=1000)
        auction_service.place_a_bid(db, winner.id, started_auction.stuff_id, 110)

        def boom(db, stuff_id):
            raise RuntimeError("chat store down")

        monkeypatch.setattr(conversation_service, "detach_stuff_from_conversation_by_stuff_id", boom)
        with pytest.raises(OperationFailedError) as exc:
            auction_service.finish(db, started_auction.stuff_id)
        assert exc.value.code == "FAILED_TO_FINISH_AUCTION"

        db.expire_all()
        assert db.get(Auction, started_auction.stuff_id).status == AuctionStatus.STARTED
        assert db.get(User, winner.id).point == 1000
        assert db.query(Transaction).count() == 0


class TestEndToEnd:
    def test_auction_to_pickup_transaction(self, db, owner, moderator, make_user):
        """500/50 auction: 550 accepted, same bidder re-bid rejected, 600 by another wins."""
        alice, bob = make_user(point=1000), make_user(point=1000)
        auction = auction_service.create_auction(
            db, owner.id, "Camera", initial_price=500, step_price=50, duration=60
        )
        auction_service.approve(db, moderator.id, auction.stuff_id)
        auction_service.start(db, auction.stuff_id)

        auction_service.place_a_bid(db, alice.id, auction.stuff_id, 550)
        with pytest.raises(BadRequestError) as exc:
            auction_service.place_a_bid(db, alice.id, auction.stuff_id, 600)
        assert exc.value.code == "INVALID_AUCTION"
        auction_service.place_a_bid(db, bob.id, auction.stuff_id, 600)

        auction_service.finish(db, auction.stuff_id)

        transaction = db.query(Transaction).one()
        assert transaction.amount == 600
        assert transaction.customer_id == bob.id
        assert db.get(User, bob.id).point == 400
        assert db.get(Stuff, auction.stuff_id).status == StuffStatus.sold


class TestModeratorActions:
    def test_cancel_removes_timer_and_hides_item(self, db, started_auction, moderator):
        scheduler = RecordingScheduler()
        canceled = auction_service.cancel(db, moderator.id, started_auction.stuff_id, scheduler=scheduler)
        assert canceled.status == AuctionStatus.CANCELED
        assert canceled.stuff.status == StuffStatus.inactive
        assert scheduler.cancelled == [started_auction.stuff_id]

    def test_block(self, db, started_auction, moderator):
        assert auction_service.block(db, moderator.id, started_auction.stuff_id).status == AuctionStatus.BLOCKED

    def test_terminal_auction_cannot_be_blocked(self, db, started_auction, moderator):
        auction_service.finish(db, started_auction.stuff_id)
        with pytest.raises(BadRequestError):
            auction_service.block(db, moderator.id, started_auction.stuff_id)


class TestQueriesAndReconcile:
    def test_find_all_available(self, db, owner, moderator, make_auction, started_auction):
        pending = make_auction(owner)
        ids = {a.stuff_id for a in auction_service.find_all_available(db)}
        assert started_auction.stuff_id in ids
        assert pending.stuff_id not in ids
        assert {a.stuff_id for a in auction_service.find_all(db, is_approved=False)} == {pending.stuff_id}

    def test_does_auction_start(self, db, started_auction):
        assert auction_service.does_auction_start(db, started_auction.stuff_id) is True
        assert auction_service.does_auction_start(db, None) is False
        assert auction_service.does_auction_start(db, "missing") is False

    def test_reconcile_finishes_expired_and_reschedules_running(self, db, owner, moderator, make_auction, make_user):
        expired = make_auction(owner)
        running = make_auction(owner)
        for auction in (expired, running):
            auction_service.approve(db, moderator.id, auction.stuff_id)
            auction_service.start(db, auction.stuff_id)
        auction_service.place_a_bid(db, make_user(point=1000).id, expired.stuff_id, 550)
        db.query(Auction).filter(Auction.stuff_id == expired.stuff_id).update(
            {"expire_at": utcnow() - timedelta(minutes=1)}
        )
        db.commit()
        scheduler = RecordingScheduler()

        finished = auction_service.reconcile_started_auctions(db, scheduler=scheduler)

        assert finished == 1
        db.expire_all()
        assert db.get(Auction, expired.stuff_id).status == AuctionStatus.COMPLETED
        assert db.get(Auction, running.stuff_id).status == AuctionStatus.STARTED
        assert set(scheduler.scheduled) == {running.stuff_id}

    def test_bid_after_deadline_rejected(self, db, started_auction, make_user):
        db.query(Auction).filter(Auction.stuff_id == started_auction.stuff_id).update(
            {"expire_at": utcnow() - timedelta(seconds=1)}
        )
        db.commit()
        with pytest.raises(BadRequestError) as exc:
            auction_service.place_a_bid(db, make_user(point=1000).id, started_auction.stuff_id, 200)
        assert exc.value.code == "ERROR_AUCTION_COMPLETED"


class TestPresence:
    """Viewer counts are advisory and never raise."""

    def test_join_and_leave(self):
        presence = PresenceTracker()
        assert presence.update_participant("u1", "s1", "push") == 1
        assert presence.update_participant("u1", "s1", "push") == 1
        assert presence.update_participant("u2", "s1", "push") == 2
        assert presence.update_participant("u1", "s1", "pop") == 1
        assert presence.count("s2") == 0

    def test_unknown_action_leaves_room_untouched(self):
        presence = PresenceTracker()
        presence.update_participant("u1", "s1", "push")
        assert presence.update_participant("u2", "s1", "wave") == 1

    def test_invalidate_forgets_room(self):
        presence = PresenceTracker()
        presence.update_participant("u1", "s1", "push")
        presence.invalidate("s1")
        assert presence.count("s1") == 0
