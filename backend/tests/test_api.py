"""HTTP-level tests: auth, error envelopes and a full auction over the API."""

import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from fastapi.testclient import TestClient

from fxchange.main import create_app
from fxchange.middleware.auth import hash_password
from fxchange.models import User, UserStatus

PASSWORD = "secret-pass"


@pytest.fixture
def client(session_factory):
    app = create_app(session_factory=session_factory, enable_scheduler=False)
    with TestClient(app) as client:
        yield client


def _register(client, email, full_name="Someone", phone="0901234567"):
    resp = client.post(
        "/api/auth/register",
        json={"email": email, "password": PASSWORD, "full_name": full_name, "phone": phone},
    )
    assert resp.status_code == 201
    return resp.json()["id"]


def _headers(client, email):
    resp = client.post("/api/auth/login", json={"email": email, "password": PASSWORD})
    assert resp.status_code == 200
    return {"Authorization": f"Bearer {resp.json()['access_token']}"}


def _set_user(session_factory, user_id, **values):
    db = session_factory()
    db.query(User).filter(User.id == user_id).update(values)
    db.commit()
    db.close()


@pytest.fixture
def mod_headers(client, session_factory):
    db = session_factory()
    db.add(User(
        email="mod@fxchange.test",
        password_hash=hash_password(PASSWORD),
        full_name="Moderator",
        role="moderator",
    ))
    db.commit()
    db.close()
    return _headers(client, "mod@fxchange.test")


class TestAuth:
    def test_register_defaults(self, client):
        resp = client.post(
            "/api/auth/register",
            json={"email": "new@fxchange.test", "password": PASSWORD, "full_name": "New"},
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["role"] == "user"
        assert body["point"] == 0
        assert body["reputation"] == 100
        assert body["status"] == "active"

    def test_duplicate_email(self, client):
        _register(client, "dup@fxchange.test")
        resp = client.post(
            "/api/auth/register",
            json={"email": "dup@fxchange.test", "password": PASSWORD, "full_name": "Again"},
        )
        assert resp.status_code == 409
        assert resp.json()["code"] == "EMAIL_EXISTS"

    def test_short_password_rejected(self, client):
        resp = client.post(
            "/api/auth/register",
            json={"email": "short@fxchange.test", "password": "123", "full_name": "Short"},
        )
        assert resp.status_code == 422

    def test_login_and_me(self, client):
        user_id = _register(client, "me@fxchange.test")
        resp = client.get("/api/auth/me", headers=_headers(client, "me@fxchange.test"))
        assert resp.status_code == 200
        assert resp.json()["id"] == user_id

    def test_bad_password(self, client):
        _register(client, "pw@fxchange.test")
        resp = client.post("/api/auth/login", json={"email": "pw@fxchange.test", "password": "wrong-pass"})
        assert resp.status_code == 401
        assert resp.json()["code"] == "INVALID_CREDENTIALS"

    def test_me_requires_token(self, client):
        resp = client.get("/api/auth/me")
        assert resp.status_code == 401
        assert resp.json()["code"] == "MISSING_TOKEN"

    def test_garbage_token(self, client):
        resp = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
        assert resp.status_code == 401
        assert resp.json()["code"] == "INVALID_TOKEN"

    def test_token_of_deleted_account(self, client, session_factory):
        user_id = _register(client, "gone@fxchange.test")
        headers = _headers(client, "gone@fxchange.test")
        db = session_factory()
        db.query(User).filter(User.id == user_id).delete()
        db.commit()
        db.close()

        resp = client.get("/api/auth/me", headers=headers)
        assert resp.status_code == 401
        assert resp.json()["code"] == "USER_NOT_FOUND"

    def test_blocked_account_can_still_read(self, client, session_factory):
        user_id = _register(client, "reader@fxchange.test")
        headers = _headers(client, "reader@fxchange.test")
        _set_user(session_factory, user_id, status=UserStatus.blocked.value)

        resp = client.get("/api/auth/me", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["status"] == "blocked"


class TestErrorEnvelope:
    """Marketplace errors render as {status, code, message}."""

    def test_not_found(self, client):
        _register(client, "x@fxchange.test")
        resp = client.get("/api/auctions/missing", headers=_headers(client, "x@fxchange.test"))
        assert resp.status_code == 404
        assert resp.json() == {"status": 404, "code": "AUCTION_NOT_FOUND", "message": "Auction not found"}

    def test_business_rule_violation(self, client):
        _register(client, "s@fxchange.test")
        seller = _headers(client, "s@fxchange.test")
        stuff_id = client.post(
            "/api/auctions",
            json={"name": "Vase", "initial_price": 100, "step_price": 10, "duration": 30},
            headers=seller,
        ).json()["stuff_id"]

        resp = client.post(f"/api/auctions/{stuff_id}/start", headers=seller)

        assert resp.status_code == 400
        assert resp.json()["code"] == "AUCTION_NOT_APPROVED"

    def test_moderator_routes_reject_users(self, client):
        _register(client, "u@fxchange.test")
        resp = client.get("/api/transactions/pickup", headers=_headers(client, "u@fxchange.test"))
        assert resp.status_code == 403

    def test_blocked_user_cannot_trade(self, client, session_factory):
        user_id = _register(client, "b@fxchange.test")
        _set_user(session_factory, user_id, status=UserStatus.blocked.value)
        resp = client.post(
            "/api/auctions",
            json={"name": "Vase", "initial_price": 100, "step_price": 10, "duration": 30},
            headers=_headers(client, "b@fxchange.test"),
        )
        assert resp.status_code == 403
        assert resp.json() == {"status": 403, "code": "USER_BLOCKED", "message": "Account is blocked"}

    def test_auction_lots_are_not_created_as_plain_stuff(self, client):
        _register(client, "p@fxchange.test")
        resp = client.post(
            "/api/stuff",
            json={"name": "Clock", "kind": "auction", "price": 100},
            headers=_headers(client, "p@fxchange.test"),
        )
        assert resp.status_code == 400


class TestAuctionOverHttp:
    def test_full_auction(self, client, session_factory, mod_headers):
        _register(client, "seller@fxchange.test", full_name="Seller")
        alice_id = _register(client, "alice@fxchange.test", full_name="Alice")
        bob_id = _register(client, "bob@fxchange.test", full_name="Bob")
        for user_id in (alice_id, bob_id):
            _set_user(session_factory, user_id, point=1000)
        seller = _headers(client, "seller@fxchange.test")
        alice = _headers(client, "alice@fxchange.test")
        bob = _headers(client, "bob@fxchange.test")

        resp = client.post(
            "/api/auctions",
            json={"name": "Camera", "initial_price": 500, "step_price": 50, "duration": 60},
            headers=seller,
        )
        assert resp.status_code == 201
        stuff_id = resp.json()["stuff_id"]

        assert client.post(f"/api/auctions/{stuff_id}/approve", headers=seller).status_code == 403
        assert client.post(f"/api/auctions/{stuff_id}/approve", headers=mod_headers).json()["status"] == "READY"
        assert client.post(f"/api/auctions/{stuff_id}/start", headers=seller).json()["status"] == "STARTED"

        assert client.post(f"/api/auctions/{stuff_id}/join", headers=alice).json()["participants"] == 1

        resp = client.post(f"/api/auctions/{stuff_id}/bid", json={"bidding_price": 550}, headers=alice)
        assert resp.status_code == 201
        resp = client.post(f"/api/auctions/{stuff_id}/bid", json={"bidding_price": 600}, headers=alice)
        assert resp.status_code == 400
        assert resp.json()["code"] == "INVALID_AUCTION"
        resp = client.post(f"/api/auctions/{stuff_id}/bid", json={"bidding_price": 600}, headers=bob)
        assert resp.status_code == 201

        detail = client.get(f"/api/auctions/{stuff_id}", headers=alice).json()
        assert detail["last_bid"]["bid_price"] == 600
        history = client.get(f"/api/auctions/{stuff_id}/history", headers=alice).json()
        assert sorted(b["bid_price"] for b in history) == [550, 600]

        finished = client.post(f"/api/auctions/{stuff_id}/finish", headers=mod_headers).json()
        assert finished["status"] == "COMPLETED"
        assert finished["final_price"] == 600
        assert finished["winner_id"] == bob_id

        mine = client.get("/api/transactions/mine", headers=bob).json()
        assert mine["total"] == 1
        assert mine["transactions"][0]["amount"] == 600
        assert mine["transactions"][0]["status"] == "PENDING"

        points = client.get("/api/users/me/points", headers=bob).json()
        assert points["point"] == 400
        assert [h["change"] for h in points["history"]] == [-600]

        assert client.get(f"/api/stuff/{stuff_id}", headers=bob).json()["status"] == 2

    def test_bid_payload_validation(self, client):
        _register(client, "v@fxchange.test")
        resp = client.post(
            "/api/auctions/anything/bid",
            json={"bidding_price": 0},
            headers=_headers(client, "v@fxchange.test"),
        )
        assert resp.status_code == 422


class TestHealth:
    def test_health_without_scheduler(self, client):
        assert client.get("/health").json() == {"status": "ok", "scheduler": False}
