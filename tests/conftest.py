import json
from datetime import date
from unittest.mock import Mock, patch

import pytest
import requests

import config
import db


@pytest.fixture(autouse=True)
def database(tmp_path, monkeypatch):
    """Fresh sqlite file per test; no SMTP, no real HTTP."""
    monkeypatch.delenv("SPOTNET_SMTP_HOST", raising=False)
    config.get_settings.cache_clear()
    monkeypatch.setattr(db, "DB_FILE", tmp_path / "test.db")
    monkeypatch.setattr(requests, "post", Mock(side_effect=AssertionError("unexpected HTTP call")))
    db.init_db("not-a-real-hash")
    yield tmp_path / "test.db"
    config.get_settings.cache_clear()


def fake_response(status=200, body=None, malformed=False):
    resp = Mock()
    resp.status_code = status
    if malformed:
        resp.text = "<html>Bad Gateway</html>"
        resp.json.side_effect = ValueError("Expecting value")
    else:
        body = {"status": "success"} if body is None else body
        resp.text = json.dumps(body)
        resp.json.return_value = body
    return resp


@pytest.fixture
def relay_post():
    """Patch the relay's HTTP call; returns the mock so tests can shape responses."""
    with patch("notifications.requests.post") as post:
        post.return_value = fake_response()
        yield post


@pytest.fixture
def make_client():
    counter = {"n": 0}

    def _make(name="John Doe", phone="+1 (234) 567-890", opt_in=True, email=None, status="active"):
        counter["n"] += 1
        return db.execute(
            """
            INSERT INTO clients(name, email, phone, status, whatsapp_opt_in, created_at)
            VALUES(?,?,?,?,?,?)
            """,
            (name, email or f"client{counter['n']}@example.com", phone, status, int(opt_in), db.now_iso()),
        )

    return _make


@pytest.fixture
def make_subscription(make_client):
    def _make(
        client_id=None,
        next_payment_date=date(2025, 1, 31),
        billing_cycle=1,
        status="active",
        monthly_amount="50.00",
        sub_type="internet",
        start_date=date(2024, 1, 1),
    ):
        if client_id is None:
            client_id = make_client()
        return db.execute(
            """
            INSERT INTO subscriptions(client_id, type, start_date, end_date, billing_cycle, status,
                next_payment_date, monthly_amount, created_at)
            VALUES(?,?,?,?,?,?,?,?,?)
            """,
            (
                client_id,
                sub_type,
                start_date.isoformat(),
                None,
                billing_cycle,
                status,
                next_payment_date.isoformat(),
                monthly_amount,
                db.now_iso(),
            ),
        )

    return _make
