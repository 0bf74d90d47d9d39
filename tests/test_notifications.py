from datetime import date
from decimal import Decimal
from unittest.mock import patch

import pytest
import requests

import billing
import db
import notifications
import services
from conftest import fake_response
from errors import NotFoundError


def _reminders():
    return db.fetch_all("SELECT * FROM reminders ORDER BY id")


# ---------- WhatsAppRelay ----------

def test_normalize_phone():
    assert notifications.normalize_phone("+1 (234) 567-890") == "1234567890"
    assert notifications.normalize_phone(None) == ""


def test_relay_posts_digits_only(relay_post):
    relay = notifications.WhatsAppRelay(api_url="https://relay.test/send", api_key="k3y", timeout=3)

    result = relay.send("+1 (234) 567-890", "hello")

    assert result.success is True
    assert result.http_code == 200
    relay_post.assert_called_once_with(
        "https://relay.test/send",
        json={"apiKey": "k3y", "number": "1234567890", "message": "hello"},
        timeout=3,
    )
    log = db.fetch_one("SELECT * FROM whatsapp_logs")
    assert log["phone"] == "1234567890"
    assert log["response_code"] == 200


def test_relay_non_2xx_uses_body_message(relay_post):
    relay_post.return_value = fake_response(status=422, body={"message": "number not on WhatsApp"})
    result = notifications.WhatsAppRelay().send("123", "hello")
    assert result.success is False
    assert result.error == "number not on WhatsApp"
    assert result.http_code == 422


def test_relay_non_2xx_without_message(relay_post):
    relay_post.return_value = fake_response(status=500, malformed=True)
    result = notifications.WhatsAppRelay().send("123", "hello")
    assert result.success is False
    assert result.error == "Error sending WhatsApp message"


def test_relay_transport_error(relay_post):
    relay_post.side_effect = requests.ConnectionError("connection refused")
    result = notifications.WhatsAppRelay().send("123", "hello")
    assert result.success is False
    assert "connection refused" in result.error
    assert db.fetch_one("SELECT response_code FROM whatsapp_logs")["response_code"] is None


def test_relay_malformed_success_body(relay_post):
    relay_post.return_value = fake_response(status=200, malformed=True)
    result = notifications.WhatsAppRelay().send("123", "hello")
    assert result.success is False
    assert "Malformed" in result.error


@pytest.mark.parametrize("phone, message", [("", "hello"), ("   ", "hello"), (None, "hello"), ("123", "")])
def test_relay_rejects_empty_input_without_calling(relay_post, phone, message):
    result = notifications.WhatsAppRelay().send(phone, message)
    assert result.success is False
    relay_post.assert_not_called()


# ---------- Payment confirmations through process_payment ----------

@pytest.mark.payment
def test_consent_overrides_explicit_request(make_client, make_subscription, relay_post):
    sid = make_subscription(client_id=make_client(opt_in=False))

    with patch("notifications.send_email", return_value=True) as send_email:
        result = billing.process_payment({"subscription_id": sid, "amount": "50.00", "send_whatsapp": True})

    relay_post.assert_not_called()
    send_email.assert_called_once()
    assert result.whatsapp_sent is False
    assert result.email_sent is True
    assert _reminders() == []


@pytest.mark.payment
def test_default_intent_follows_consent(make_client, make_subscription, relay_post):
    sid = make_subscription(client_id=make_client(opt_in=True, phone="+961 70 123 456"))

    result = billing.process_payment({"subscription_id": sid, "amount": "50.00"})

    assert result.whatsapp_sent is True
    assert result.whatsapp_error is None
    assert relay_post.call_args.kwargs["json"]["number"] == "96170123456"

    [reminder] = _reminders()
    assert reminder["status"] == "sent"
    assert reminder["send_via_whatsapp"] == 1
    assert reminder["sent_date"] is not None
    assert "We have received your Internet subscription payment." in reminder["message"]
    assert "Amount: $50.00" in reminder["message"]


@pytest.mark.payment
def test_explicit_opt_out_skips_whatsapp(make_client, make_subscription, relay_post):
    sid = make_subscription(client_id=make_client(opt_in=True))
    result = billing.process_payment({"subscription_id": sid, "amount": "50.00", "send_whatsapp": False})
    relay_post.assert_not_called()
    assert result.whatsapp_sent is False


@pytest.mark.payment
def test_missing_phone_skips_whatsapp(make_client, make_subscription, relay_post):
    sid = make_subscription(client_id=make_client(opt_in=True, phone=""))
    result = billing.process_payment({"subscription_id": sid, "amount": "50.00", "send_whatsapp": True})
    relay_post.assert_not_called()
    assert result.whatsapp_sent is False


@pytest.mark.payment
def test_relay_failure_keeps_payment(make_client, make_subscription, relay_post):
    relay_post.side_effect = requests.Timeout("read timed out")
    sid = make_subscription(client_id=make_client(opt_in=True), next_payment_date=date(2025, 1, 31))

    result = billing.process_payment({"subscription_id": sid, "amount": "50.00"})

    assert result.whatsapp_sent is False
    assert "read timed out" in result.whatsapp_error
    assert result.next_payment_date == date(2025, 2, 28)

    sub = services.get_subscription(sid)
    assert sub.next_payment_date == date(2025, 2, 28)
    assert sub.status == "active"
    assert db.fetch_one("SELECT COUNT(*) AS c FROM payments")["c"] == 1
    [reminder] = _reminders()
    assert reminder["status"] == "failed"


@pytest.mark.payment
def test_unexpected_dispatcher_error_is_contained(make_client, make_subscription):
    sid = make_subscription(client_id=make_client(opt_in=True))

    with patch("notifications.send_payment_confirmation", side_effect=RuntimeError("boom")), \
            patch("notifications.send_email", side_effect=RuntimeError("smtp down")):
        result = billing.process_payment({"subscription_id": sid, "amount": "50.00"})

    assert result.whatsapp_sent is False
    assert result.whatsapp_error == "boom"
    assert result.email_sent is False
    assert db.fetch_one("SELECT COUNT(*) AS c FROM payments")["c"] == 1


def test_confirmation_refuses_without_consent(make_client, make_subscription, relay_post):
    sid = make_subscription(client_id=make_client(opt_in=False))
    payment_id = db.execute(
        "INSERT INTO payments(subscription_id, amount, payment_date, payment_method, created_at) VALUES(?,?,?,?,?)",
        (sid, "50.00", "2025-01-15", "cash", db.now_iso()),
    )
    result = notifications.send_payment_confirmation(payment_id)
    assert result.success is False
    assert "opted in" in result.error
    relay_post.assert_not_called()


def test_confirmation_unknown_payment(relay_post):
    result = notifications.send_payment_confirmation(999)
    assert result.success is False
    assert result.http_code == 404


# ---------- Email ----------

def test_email_logged_when_smtp_disabled():
    with patch("notifications.smtplib.SMTP") as smtp:
        assert notifications.send_email("a@b.c", "Subject", "<p>x</p>") is True
    smtp.assert_not_called()


def test_email_smtp_failure_returns_false(monkeypatch):
    monkeypatch.setenv("SPOTNET_SMTP_HOST", "smtp.test")
    notifications.get_settings.cache_clear()
    with patch("notifications.smtplib.SMTP", side_effect=OSError("unreachable")):
        assert notifications.send_email("a@b.c", "Subject", "<p>x</p>") is False


def test_email_without_recipient():
    assert notifications.send_email("", "Subject", "body") is False


def test_confirmation_email_content():
    subject, html = notifications.payment_confirmation_email(
        "Jane", "satellite", Decimal("90.00"), date(2025, 7, 1), date(2025, 10, 1)
    )
    assert subject == "Payment Confirmation - Satellite Subscription"
    assert "July 1, 2025" in html
    assert "October 1, 2025" in html
    assert "$90.00" in html


# ---------- Reminders ----------

def test_send_reminder_whatsapp(make_client, relay_post):
    cid = make_client(opt_in=True)
    rid = notifications.create_reminder(cid, "Your payment is due", True, None)

    result = notifications.send_reminder(rid)

    assert result.success is True
    assert _reminders()[0]["status"] == "sent"


def test_send_reminder_without_consent_fails(make_client, relay_post):
    cid = make_client(opt_in=False)
    rid = notifications.create_reminder(cid, "Your payment is due", True, None)

    result = notifications.send_reminder(rid)

    assert result.success is False
    relay_post.assert_not_called()
    assert _reminders()[0]["status"] == "failed"


def test_system_reminder_marked_sent_without_relay(make_client, relay_post):
    rid = notifications.create_reminder(make_client(), "Office closed Monday", False, None)
    assert notifications.send_reminder(rid).success is True
    relay_post.assert_not_called()


def test_reminder_transitions_only_once(make_client, relay_post):
    rid = notifications.create_reminder(make_client(), "Hi", True, None)
    relay_post.return_value = fake_response(status=500)
    assert notifications.send_reminder(rid).success is False

    relay_post.return_value = fake_response()
    again = notifications.send_reminder(rid)
    assert again.success is False
    assert _reminders()[0]["status"] == "failed"


def test_send_reminder_unknown():
    with pytest.raises(NotFoundError):
        notifications.send_reminder(12345)


def test_send_bulk_only_due_pending(make_client, relay_post):
    cid = make_client(opt_in=True)
    notifications.create_reminder(cid, "due", True, "2020-01-01 10:00:00")
    notifications.create_reminder(cid, "unscheduled", False, None)
    notifications.create_reminder(cid, "future", True, "2999-01-01 10:00:00")

    counts = notifications.send_bulk()

    assert counts == {"sent": 2, "failed": 0}
    statuses = {r["message"]: r["status"] for r in _reminders()}
    assert statuses == {"due": "sent", "unscheduled": "sent", "future": "pending"}


def test_generate_due_reminders(make_client, make_subscription):
    today = date(2025, 9, 26)
    opted = make_client(name="Ann", opt_in=True)
    make_subscription(client_id=opted, next_payment_date=date(2025, 10, 1), monthly_amount="45.00")
    make_subscription(client_id=make_client(opt_in=False), next_payment_date=date(2025, 10, 1))
    make_subscription(client_id=make_client(opt_in=True, phone=None), next_payment_date=date(2025, 10, 1))
    make_subscription(client_id=make_client(opt_in=True), next_payment_date=date(2025, 10, 2))
    make_subscription(client_id=make_client(opt_in=True), next_payment_date=date(2025, 10, 1), status="stopped")

    assert notifications.generate_due_reminders(days_ahead=5, today=today) == (1, 1)
    assert notifications.generate_due_reminders(days_ahead=5, today=today) == (1, 0)

    [reminder] = _reminders()
    assert reminder["client_id"] == opted
    assert reminder["status"] == "pending"
    assert reminder["scheduled_date"] == "2025-10-01"
    assert "$45.00" in reminder["message"]
    assert "01/10/2025" in reminder["message"]


def test_add_reminder_drops_whatsapp_without_consent(make_client, relay_post):
    cid = make_client(opt_in=False)
    rid = services.add_reminder({"client_id": cid, "message": "hello", "send_via_whatsapp": True})
    row = db.fetch_one("SELECT * FROM reminders WHERE id = ?", (rid,))
    assert row["send_via_whatsapp"] == 0
    assert row["status"] == "sent"
    relay_post.assert_not_called()


def test_add_scheduled_reminder_stays_pending(make_client, relay_post):
    cid = make_client(opt_in=True)
    rid = services.add_reminder(
        {"client_id": cid, "message": "later", "send_via_whatsapp": True, "scheduled_date": "2999-01-01T10:00:00"}
    )
    row = db.fetch_one("SELECT * FROM reminders WHERE id = ?", (rid,))
    assert row["status"] == "pending"
    assert row["scheduled_date"] == "2999-01-01 10:00:00"
    relay_post.assert_not_called()


# ---------- In-flight reminders ----------

class _BulkDuringSend(notifications.WhatsAppRelay):
    """Runs a bulk send while its own message is still in flight."""

    def send(self, phone_raw, message):
        self.bulk = notifications.send_bulk()
        return super().send(phone_raw, message)


class _CrashingRelay(notifications.WhatsAppRelay):
    def send(self, phone_raw, message):
        raise RuntimeError("relay crashed")


@pytest.mark.payment
def test_bulk_send_skips_confirmation_in_flight(make_client, make_subscription, relay_post):
    sid = make_subscription(client_id=make_client(opt_in=True))
    relay = _BulkDuringSend()

    result = billing.process_payment({"subscription_id": sid, "amount": "50.00"}, relay=relay)

    assert result.whatsapp_sent is True
    assert relay.bulk == {"sent": 0, "failed": 0}
    assert relay_post.call_count == 1
    assert [r["status"] for r in _reminders()] == ["sent"]


@pytest.mark.payment
def test_relay_exception_marks_confirmation_failed(make_client, make_subscription, relay_post):
    sid = make_subscription(client_id=make_client(opt_in=True))

    result = billing.process_payment({"subscription_id": sid, "amount": "50.00"}, relay=_CrashingRelay())

    assert result.whatsapp_sent is False
    assert result.whatsapp_error == "relay crashed"
    [reminder] = _reminders()
    assert reminder["status"] == "failed"
    assert notifications.send_bulk() == {"sent": 0, "failed": 0}
    relay_post.assert_not_called()


def test_relay_exception_marks_reminder_failed(make_client):
    rid = notifications.create_reminder(make_client(opt_in=True), "due soon", True, None)

    with pytest.raises(RuntimeError):
        notifications.send_reminder(rid, relay=_CrashingRelay())

    assert _reminders()[0]["status"] == "failed"


def test_reminder_sent_once_when_claimed_twice(make_client, relay_post):
    rid = notifications.create_reminder(make_client(opt_in=True), "due soon", True, None)
    second = []

    class _Reentrant(notifications.WhatsAppRelay):
        def send(self, phone_raw, message):
            second.append(notifications.send_reminder(rid))
            return super().send(phone_raw, message)

    assert notifications.send_reminder(rid, relay=_Reentrant()).success is True

    assert second[0].success is False
    assert second[0].error == "Reminder already processed"
    assert relay_post.call_count == 1
    assert _reminders()[0]["status"] == "sent"
