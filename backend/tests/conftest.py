"""Shared fixtures: an in-memory database and small row factories."""

import json
import os
import sys
from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from fxchange.core.clock import utcnow
from fxchange.database import Base
from fxchange.models import (
    Auction,
    Stuff,
    StuffKind,
    StuffStatus,
    Transaction,
    TransactionStatus,
    User,
)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(point=0, reputation=100, role="user", phone="0900000000", full_name=None):
        counter["n"] += 1
        n = counter["n"]
        user = User(
            email=f"user{n}@fxchange.test",
            password_hash="not-a-real-hash",
            full_name=full_name or f"User {n}",
            phone=phone,
            role=role,
            point=point,
            reputation=reputation,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def moderator(make_user):
    return make_user(role="moderator", full_name="Mod")


@pytest.fixture
def make_stuff(db):
    def _make(owner, kind=StuffKind.market, price=0, status=StuffStatus.active, condition=100, tags=None):
        stuff = Stuff(
            author_id=owner.id,
            name=f"{kind.value} item",
            kind=kind,
            status=int(status),
            price=price,
            condition=condition,
            tags=json.dumps(tags or []),
        )
        db.add(stuff)
        db.commit()
        db.refresh(stuff)
        return stuff

    return _make


@pytest.fixture
def make_transaction(db):
    """A transaction row in an arbitrary state, bypassing creation rules."""

    def _make(stuff, customer, status=TransactionStatus.PENDING, amount=None, is_pickup=True,
              exchange_stuff=None, expire_in=timedelta(days=3)):
        stuff.status = int(StuffStatus.sold)
        if exchange_stuff is not None:
            exchange_stuff.status = int(StuffStatus.sold)
        transaction = Transaction(
            stuff_id=stuff.id,
            exchange_stuff_id=exchange_stuff.id if exchange_stuff else None,
            customer_id=customer.id,
            stuff_owner_id=stuff.author_id,
            amount=stuff.price if amount is None else amount,
            is_pickup=is_pickup,
            status=status,
            expire_at=utcnow() + expire_in,
        )
        db.add(transaction)
        db.commit()
        db.refresh(transaction)
        return transaction

    return _make


@pytest.fixture
def make_auction(db, make_stuff):
    def _make(owner, initial_price=500, step_price=50, duration=60):
        stuff = make_stuff(owner, kind=StuffKind.auction, price=initial_price, status=StuffStatus.inactive)
        auction = Auction(
            stuff_id=stuff.id,
            initial_price=initial_price,
            step_price=step_price,
            duration=duration,
        )
        db.add(auction)
        db.commit()
        db.refresh(auction)
        return auction

    return _make
