"""Background jobs: auction finish timers, daily transaction sweeps, outbox drain.

Auction deadlines live in the database; the in-process timers are rebuilt
from it on every start by ``reconcile_started_auctions``.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from fxchange.config import settings
from fxchange.errors import MarketplaceError
from fxchange.services import auction_service, transaction_service
from fxchange.services.notification_service import OutboxDispatcher

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def auction_job_id(stuff_id: str) -> str:
    return f"auction-finish:{stuff_id}"


class MarketScheduler:
    """Owns the APScheduler instance; every job opens its own session."""

    def __init__(
        self,
        session_factory: SessionFactory,
        dispatcher: Optional[OutboxDispatcher] = None,
        scheduler: Optional[BackgroundScheduler] = None,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self._scheduler = scheduler or BackgroundScheduler(timezone=settings.SCHED_TIMEZONE)

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        if self._scheduler.running:
            return
        self._scheduler.add_job(
            self.run_transaction_sweeps,
            CronTrigger.from_crontab(settings.SCHED_CRON_TRANSACTIONS, timezone=settings.SCHED_TIMEZONE),
            id="transactions-daily",
            replace_existing=True,
        )
        if self.dispatcher is not None:
            self._scheduler.add_job(
                self.drain_outbox,
                IntervalTrigger(seconds=settings.OUTBOX_POLL_SECONDS),
                id="outbox-drain",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
        self._scheduler.start()
        self.reconcile()
        logger.info("Scheduler started")

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    # ── Auction timers ───────────────────────────────────────────────────────

    def schedule_auction_finish(self, stuff_id: str, run_at: datetime) -> None:
        self._scheduler.add_job(
            self.finish_auction,
            DateTrigger(run_date=run_at),
            args=[stuff_id],
            id=auction_job_id(stuff_id),
            replace_existing=True,
            misfire_grace_time=None,
        )
        logger.info("Auction %s will finish at %s", stuff_id, run_at)

    def cancel_auction_finish(self, stuff_id: str) -> None:
        job = self._scheduler.get_job(auction_job_id(stuff_id))
        if job is not None:
            job.remove()

    def has_auction_job(self, stuff_id: str) -> bool:
        return self._scheduler.get_job(auction_job_id(stuff_id)) is not None

    # ── Jobs ─────────────────────────────────────────────────────────────────

    def finish_auction(self, stuff_id: str) -> None:
        db = self.session_factory()
        try:
            auction_service.finish(db, stuff_id)
        except MarketplaceError as exc:
            logger.warning("Auction %s was not finished: %s", stuff_id, exc.code)
        except Exception:
            logger.exception("Auction finish job failed for %s", stuff_id)
        finally:
            db.close()

    def reconcile(self) -> int:
        db = self.session_factory()
        try:
            return auction_service.reconcile_started_auctions(db, scheduler=self)
        except Exception:
            logger.exception("Auction reconciliation failed")
            return 0
        finally:
            db.close()

    def run_transaction_sweeps(self) -> None:
        db = self.session_factory()
        try:
            reminded = transaction_service.send_email_transactions(db)
            completed = transaction_service.auto_update_success(db)
            logger.info("Daily sweep: %s reminders, %s auto-completed", reminded, completed)
        except Exception:
            logger.exception("Daily transaction sweep failed")
        finally:
            db.close()

    def drain_outbox(self) -> None:
        db = self.session_factory()
        try:
            self.dispatcher.drain(db)
        except Exception:
            logger.exception("Outbox drain failed")
        finally:
            db.close()
