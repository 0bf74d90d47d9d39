from datetime import date

import pytest

import db
import services
from errors import NotFoundError, ValidationError
from models import MessageTemplate


def _add_payment(subscription_id, amount, payment_date):
    return db.execute(
        "INSERT INTO payments(subscription_id, amount, payment_date, payment_method, created_at) VALUES(?,?,?,?,?)",
        (subscription_id, amount, payment_date, "cash", db.now_iso()),
    )


# ---------- Clients ----------

@pytest.mark.db
def test_add_and_get_client():
    cid = services.add_client(
        {"name": " Jane Smith ", "email": "jane@example.com", "phone": "  ", "whatsapp_opt_in": True}
    )
    client = services.get_client(cid)
    assert client.name == "Jane Smith"
    assert client.phone is None
    assert client.whatsapp_opt_in is True
    assert client.can_receive_whatsapp is False


@pytest.mark.db
def test_duplicate_client_email_rejected():
    services.add_client({"name": "A", "email": "dup@example.com"})
    with pytest.raises(ValidationError, match="already exists"):
        services.add_client({"name": "B", "email": "dup@example.com"})


@pytest.mark.parametrize("data", [{"name": "", "email": "a@b.c"}, {"name": "A", "email": "not-an-email"}])
def test_invalid_client_rejected(data):
    with pytest.raises(ValidationError):
        services.add_client(data)


@pytest.mark.db
def test_edit_client(make_client):
    cid = make_client(opt_in=False)
    services.edit_client(cid, {"name": "Renamed", "email": "new@example.com", "status": "stopped"})
    client = services.get_client(cid)
    assert (client.name, client.email, client.status) == ("Renamed", "new@example.com", "stopped")


def test_edit_unknown_client():
    with pytest.raises(NotFoundError):
        services.edit_client(77, {"name": "X", "email": "x@example.com"})


@pytest.mark.db
def test_list_clients_filters(make_client):
    make_client(name="Alice Opted", opt_in=True)
    make_client(name="Bob Silent", opt_in=False)

    assert [r["name"] for r in services.list_clients(search="alice")] == ["Alice Opted"]
    assert [r["name"] for r in services.list_clients(whatsapp_opt_in=False)] == ["Bob Silent"]
    assert len(services.list_clients()) == 2


@pytest.mark.db
def test_delete_client_cascades(make_client, make_subscription):
    cid = make_client()
    sid = make_subscription(client_id=cid)
    _add_payment(sid, "50.00", "2025-01-10")
    db.execute(
        "INSERT INTO reminders(client_id, message, status, created_at) VALUES(?,?,?,?)",
        (cid, "hi", "pending", db.now_iso()),
    )

    services.delete_client(cid)

    for table in ("subscriptions", "payments", "reminders"):
        assert db.fetch_one(f"SELECT COUNT(*) AS c FROM {table}")["c"] == 0


# ---------- Subscriptions ----------

@pytest.mark.db
def test_add_subscription_sets_first_due_date(make_client):
    sid = services.add_subscription(
        {
            "client_id": make_client(),
            "type": "satellite",
            "start_date": "2025-01-31",
            "billing_cycle": 1,
            "monthly_amount": "35.5",
        }
    )
    sub = services.get_subscription(sid)
    assert sub.status == "active"
    assert sub.next_payment_date == date(2025, 2, 28)
    assert str(sub.monthly_amount) == "35.50"


@pytest.mark.parametrize(
    "override",
    [
        {"billing_cycle": 2},
        {"type": "cable"},
        {"monthly_amount": "0"},
        {"end_date": "2024-12-31"},
    ],
)
def test_invalid_subscription_rejected(make_client, override):
    data = {
        "client_id": make_client(),
        "type": "internet",
        "start_date": "2025-01-01",
        "billing_cycle": 1,
        "monthly_amount": "50.00",
    }
    data.update(override)
    with pytest.raises(ValidationError):
        services.add_subscription(data)


def test_subscription_for_unknown_client():
    with pytest.raises(NotFoundError):
        services.add_subscription(
            {"client_id": 404, "type": "internet", "start_date": "2025-01-01", "billing_cycle": 1, "monthly_amount": "5"}
        )


@pytest.mark.db
def test_edit_subscription_recomputes_due_date(make_subscription):
    sid = make_subscription()
    client_id = services.get_subscription(sid).client_id
    services.edit_subscription(
        sid,
        {
            "client_id": client_id,
            "type": "internet",
            "start_date": "2025-11-30",
            "billing_cycle": 3,
            "monthly_amount": "60.00",
        },
    )
    sub = services.get_subscription(sid)
    assert sub.billing_cycle == 3
    assert sub.next_payment_date == date(2026, 2, 28)


@pytest.mark.db
def test_listing_expires_overdue_subscriptions(make_subscription):
    overdue = make_subscription(next_payment_date=date(2025, 9, 30))
    current = make_subscription(next_payment_date=date(2025, 10, 5))

    rows = services.list_subscriptions(today=date(2025, 10, 1))

    statuses = {r["id"]: r["status"] for r in rows}
    assert statuses == {overdue: "expired", current: "active"}
    assert [r["id"] for r in rows] == [overdue, current]


@pytest.mark.db
def test_list_subscriptions_filters(make_client, make_subscription):
    cid = make_client(name="Carla")
    make_subscription(client_id=cid, sub_type="satellite", next_payment_date=date(2999, 1, 1))
    make_subscription(sub_type="internet", next_payment_date=date(2999, 1, 1))

    assert len(services.list_subscriptions(client_id=cid)) == 1
    assert len(services.list_subscriptions(sub_type="internet")) == 1
    assert len(services.list_subscriptions(search="carla")) == 1


# ---------- Payments ----------

@pytest.mark.db
def test_payment_history(make_subscription):
    sid = make_subscription()
    _add_payment(sid, "50.00", "2025-09-03")
    _add_payment(sid, "25.50", "2025-09-20")
    _add_payment(sid, "40.00", "2025-10-02")
    _add_payment(sid, "99.00", "2023-01-01")

    history = services.payment_history(today=date(2025, 10, 15))

    monthly = [dict(r) for r in history["monthly_history"]]
    assert [m["month"] for m in monthly] == ["2025-10", "2025-09"]
    assert monthly[1]["payment_count"] == 2
    assert monthly[1]["total_amount"] == 75.5
    assert history["recent_payments"][0]["payment_date"] == "2025-10-02"
    assert len(history["recent_payments"]) == 4


@pytest.mark.db
def test_delete_payment_leaves_due_date(make_subscription):
    sid = make_subscription(next_payment_date=date(2025, 3, 1))
    pid = _add_payment(sid, "50.00", "2025-02-01")
    services.delete_payment(pid)
    assert services.list_payments(subscription_id=sid) == []
    assert services.get_subscription(sid).next_payment_date == date(2025, 3, 1)


# ---------- Templates ----------

def test_default_templates_seeded_once():
    db.init_db("another-hash")
    templates = services.list_templates()
    assert len(templates) == 5
    assert all(isinstance(t, MessageTemplate) for t in templates)
    assert "Payment Due" in {t.name for t in templates}


def test_template_name_defaults_to_content_prefix():
    tid = services.add_template({"content": "Your router firmware will be upgraded tonight."})
    row = db.fetch_one("SELECT name FROM message_templates WHERE id = ?", (tid,))
    assert row["name"] == "Your router firmware will be u..."
    services.delete_template(tid)
    with pytest.raises(NotFoundError):
        services.delete_template(tid)


# ---------- Dashboard ----------

@pytest.mark.db
def test_dashboard_stats(make_client, make_subscription):
    today = date(2025, 10, 15)
    cid = make_client()
    due_soon = make_subscription(client_id=cid, next_payment_date=date(2025, 10, 20))
    make_subscription(client_id=cid, next_payment_date=date(2025, 9, 1))
    make_subscription(client_id=cid, next_payment_date=date(2025, 12, 1))
    _add_payment(due_soon, "50.00", "2025-10-05")
    _add_payment(due_soon, "20.25", "2025-10-15")
    _add_payment(due_soon, "99.00", "2025-09-30")
    db.execute(
        "INSERT INTO reminders(client_id, message, status, created_at) VALUES(?,?,?,?)",
        (cid, "hi", "pending", db.now_iso()),
    )

    stats = services.dashboard_stats(today=today)

    assert stats == {
        "clients": 1,
        "active_subscriptions": 2,
        "expired_subscriptions": 1,
        "due_soon": 1,
        "pending_reminders": 1,
        "monthly_revenue": 70.25,
    }


@pytest.mark.db
def test_delete_reminder(make_client):
    cid = make_client()
    rid = db.execute(
        "INSERT INTO reminders(client_id, message, status, created_at) VALUES(?,?,?,?)",
        (cid, "hi", "pending", db.now_iso()),
    )
    services.delete_reminder(rid)
    assert services.list_reminders(client_id=cid) == []
    with pytest.raises(NotFoundError):
        services.delete_reminder(rid)
