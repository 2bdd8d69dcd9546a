"""SQLAlchemy engine, session management and the settlement unit of work.

Supports both Postgres (production) and SQLite (local dev/testing).
Set DATABASE_URL in .env to switch:
  - SQLite:    sqlite:///./fxchange.db
  - Postgres:  postgresql+psycopg://fx:fx@host:5432/fxchange
"""

import logging
import time
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from fxchange.config import settings
from fxchange.errors import MarketplaceError, OperationFailedError, SettlementTimeoutError

logger = logging.getLogger(__name__)

connect_args = {}
engine_kwargs: dict = {
    "echo": False,
}

if settings.DATABASE_URL.startswith("sqlite"):
    # SQLite needs check_same_thread=False for FastAPI's threaded model
    connect_args["check_same_thread"] = False
    engine_kwargs["connect_args"] = connect_args
else:
    engine_kwargs["pool_size"] = 10
    engine_kwargs["max_overflow"] = 20
    engine_kwargs["pool_pre_ping"] = True

engine = create_engine(settings.DATABASE_URL, **engine_kwargs)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """FastAPI dependency that yields a database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def unit_of_work(db: Session, timeout: Optional[float] = None) -> Iterator[Session]:
    """Run a block of repository calls as one atomic settlement.

    Commits when the block finishes inside its time budget; rolls back on
    any exception, including an exceeded budget.
    """
    budget = settings.TRANSACTION_TIMEOUT_SECONDS if timeout is None else timeout
    started = time.monotonic()
    try:
        yield db
        elapsed = time.monotonic() - started
        if elapsed > budget:
            raise SettlementTimeoutError(
                f"Unit of work exceeded its {budget:.1f}s budget ({elapsed:.2f}s)"
            )
        db.commit()
    except Exception:
        db.rollback()
        raise


@contextmanager
def settlement(db: Session, code: str, message: str, timeout: Optional[float] = None) -> Iterator[Session]:
    """``unit_of_work`` that hides unexpected failures behind a generic error.

    Typed marketplace errors pass through untouched; anything else is logged
    with its traceback and surfaced as ``OperationFailedError(code)``.
    """
    try:
        with unit_of_work(db, timeout) as session:
            yield session
    except MarketplaceError:
        raise
    except Exception as exc:
        logger.exception("%s", message)
        raise OperationFailedError(message, code=code) from exc
