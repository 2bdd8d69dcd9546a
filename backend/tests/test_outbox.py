"""Tests for outbox delivery, realtime fan-out and the background scheduler."""

import json
import pytest
import sys
import os
from datetime import timedelta

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from apscheduler.schedulers.background import BackgroundScheduler

from fxchange.core.clock import as_utc, utcnow
from fxchange.core.realtime import MOD_CHANNEL, RealtimeHub, notification_channel
from fxchange.core.scheduler import MarketScheduler, auction_job_id
from fxchange.database import settlement
from fxchange.errors import OperationFailedError
from fxchange.models import Conversation, Notification, OutboxMessage, StuffKind
from fxchange.services import conversation_service, notification_service
from fxchange.services.notification_service import EmailSender, OutboxDispatcher


class RecordingSender(EmailSender):
    def __init__(self, fail_times=0):
        self.sent = []
        self.fail_times = fail_times

    def send(self, to, subject, name, target_url, content):
        if self.fail_times:
            self.fail_times -= 1
            raise ConnectionError("smtp unavailable")
        self.sent.append((to, subject, target_url))


@pytest.fixture
def hub():
    return RealtimeHub()


def _listen(hub, channel):
    received = []
    hub.subscribe(channel, lambda event, payload: received.append((event, payload)))
    return received


class TestNotify:
    def test_payload_shape(self, db):
        message = notification_service.notify(
            db, "Hello", actor_id="a", target_id="t1", type="transaction", receivers=["u1", "u1", "u2"]
        )
        payload = json.loads(message.payload)
        assert payload["type_slug"] == "noti-transaction"
        assert payload["target_url"] == "/transactions/t1"
        assert payload["receivers"] == ["u1", "u2"]

    def test_stuff_notifications_route_by_kind(self, db):
        message = notification_service.notify(
            db, "New lot", actor_id=None, target_id="s1", type="stuff", stuff_slug=StuffKind.auction.value
        )
        assert json.loads(message.payload)["target_url"] == "/auction/s1"

    def test_email_without_address_is_skipped(self, db):
        assert notification_service.send_email(db, None, "Subject", "Nobody", "/x", "body") is None


class TestDispatcher:
    """Committed outbox rows are delivered once; failures back off."""

    def test_notification_is_stored_and_published(self, db, hub):
        user_events = _listen(hub, notification_channel("noti-transaction", "u1"))
        mod_events = _listen(hub, MOD_CHANNEL)
        notification_service.notify(
            db, "Done", actor_id=None, target_id="t1", type="transaction", receivers=["u1"], for_moderator=True
        )
        db.commit()

        delivered = OutboxDispatcher(hub, RecordingSender()).drain(db)

        assert delivered == 1
        stored = db.query(Notification).one()
        assert json.loads(stored.receiver_ids) == ["u1"]
        assert stored.for_mod is True
        assert [e for e, _ in user_events] == [notification_service.NEW_NOTIFICATION_EVENT]
        assert mod_events[0][1]["id"] == stored.id
        assert db.query(OutboxMessage).one().status == "sent"

    def test_drain_is_idempotent(self, db, hub):
        notification_service.notify(db, "Once", actor_id=None, target_id="t1", type="common", receivers=["u1"])
        db.commit()
        dispatcher = OutboxDispatcher(hub, RecordingSender())
        assert dispatcher.drain(db) == 1
        assert dispatcher.drain(db) == 0
        assert db.query(Notification).count() == 1

    def test_email_waits_for_its_delay(self, db, hub):
        sender = RecordingSender()
        notification_service.send_email(db, "a@b.c", "Subject", "A", "/t/1", "body", delay_seconds=60)
        db.commit()
        dispatcher = OutboxDispatcher(hub, sender)

        assert dispatcher.drain(db) == 0
        assert dispatcher.drain(db, now=utcnow() + timedelta(seconds=61)) == 1
        assert sender.sent == [("a@b.c", "Subject", "/t/1")]

    def test_failed_delivery_backs_off(self, db, hub):
        notification_service.send_email(db, "a@b.c", "Subject", "A", "/t/1", "body", delay_seconds=0)
        db.commit()
        dispatcher = OutboxDispatcher(hub, RecordingSender(fail_times=1), max_attempts=3, backoff_seconds=10)
        now = utcnow() + timedelta(seconds=1)

        assert dispatcher.drain(db, now=now) == 0
        message = db.query(OutboxMessage).one()
        assert message.status == "pending"
        assert message.attempts == 1
        assert "smtp unavailable" in message.last_error
        assert as_utc(message.available_at) == now + timedelta(seconds=10)

        assert dispatcher.drain(db, now=now + timedelta(seconds=5)) == 0
        assert dispatcher.drain(db, now=now + timedelta(seconds=11)) == 1

    def test_gives_up_after_max_attempts(self, db, hub):
        notification_service.send_email(db, "a@b.c", "Subject", "A", "/t/1", "body", delay_seconds=0)
        db.commit()
        dispatcher = OutboxDispatcher(hub, RecordingSender(fail_times=5), max_attempts=2, backoff_seconds=1)
        now = utcnow() + timedelta(seconds=1)

        dispatcher.drain(db, now=now)
        dispatcher.drain(db, now=now + timedelta(seconds=5))

        message = db.query(OutboxMessage).one()
        assert message.status == "failed"
        assert message.attempts == 2

    def test_broken_subscriber_does_not_fail_delivery(self, db, hub):
        def broken(event, payload):
            raise RuntimeError("socket closed")

        hub.subscribe(notification_channel("noti-common", "u1"), broken)
        notification_service.notify(db, "Hi", actor_id=None, target_id="x", type="common", receivers=["u1"])
        db.commit()
        assert OutboxDispatcher(hub, RecordingSender()).drain(db) == 1


class TestSettlementAtomicity:
    def test_rolled_back_settlement_drops_outbox_rows(self, db):
        with pytest.raises(OperationFailedError) as exc:
            with settlement(db, "FAILED_TO_TEST", "boom"):
                notification_service.notify(db, "Never", actor_id=None, target_id="t", type="common")
                raise RuntimeError("storage down")
        assert exc.value.code == "FAILED_TO_TEST"
        assert db.query(OutboxMessage).count() == 0

    def test_overrunning_settlement_rolls_back(self, db):
        from fxchange.errors import SettlementTimeoutError

        with pytest.raises(SettlementTimeoutError):
            with settlement(db, "FAILED_TO_TEST", "slow", timeout=-1):
                notification_service.notify(db, "Late", actor_id=None, target_id="t", type="common")
        assert db.query(OutboxMessage).count() == 0


class TestConversations:
    def test_detach_clears_both_sides(self, db, make_user, make_stuff):
        stuff = make_stuff(make_user(), kind=StuffKind.exchange)
        db.add_all([
            Conversation(channel_id="c1", stuff_id=stuff.id, status="NEGOTIATING"),
            Conversation(channel_id="c2", exchange_stuff_id=stuff.id, status="NEGOTIATING"),
            Conversation(channel_id="c3", status="NEGOTIATING"),
        ])
        db.commit()

        assert conversation_service.detach_stuff_from_conversation_by_stuff_id(db, stuff.id) == 2
        db.commit()

        rows = {c.channel_id: c for c in db.query(Conversation).all()}
        assert rows["c1"].stuff_id is None
        assert rows["c2"].exchange_stuff_id is None
        assert rows["c3"].status == "NEGOTIATING"


class TestMarketScheduler:
    """Job registration against a paused scheduler."""

    @pytest.fixture
    def paused(self):
        backend = BackgroundScheduler()
        backend.start(paused=True)
        yield backend
        backend.shutdown(wait=False)

    def test_auction_timer_can_be_replaced_and_cancelled(self, session_factory, paused):
        scheduler = MarketScheduler(session_factory, scheduler=paused)
        run_at = utcnow() + timedelta(hours=1)

        scheduler.schedule_auction_finish("s1", run_at)
        scheduler.schedule_auction_finish("s1", run_at + timedelta(minutes=5))
        assert scheduler.has_auction_job("s1")
        assert len(paused.get_jobs()) == 1
        assert auction_job_id("s1") == "auction-finish:s1"

        scheduler.cancel_auction_finish("s1")
        assert not scheduler.has_auction_job("s1")
        scheduler.cancel_auction_finish("s1")

    def test_finish_job_swallows_business_errors(self, session_factory):
        MarketScheduler(session_factory).finish_auction("missing")

    def test_drain_job_uses_its_own_session(self, session_factory, hub):
        db = session_factory()
        notification_service.notify(db, "Hi", actor_id=None, target_id="x", type="common", receivers=["u1"])
        db.commit()
        db.close()

        MarketScheduler(session_factory, OutboxDispatcher(hub, RecordingSender())).drain_outbox()

        check = session_factory()
        assert check.query(Notification).count() == 1
        check.close()
