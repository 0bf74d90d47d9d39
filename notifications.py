"""
notifications.py
Outbound messages: WhatsApp relay, payment confirmations (email + WhatsApp),
reminder delivery and due-date reminder generation.

Nothing in here raises on a delivery problem; callers get a RelayResult (or a
bool for email) and decide what to show.
"""

from __future__ import annotations

import logging
import re
import smtplib
import sqlite3
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from email.mime.text import MIMEText
from typing import Any

import requests

import db
from config import get_settings
from errors import NotFoundError
from models import ACTIVE, FAILED, PENDING, SENDING, SENT, Reminder

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RelayResult:
    success: bool
    error: str | None = None
    http_code: int | None = None
    response: Any = None


def normalize_phone(raw: str | None) -> str:
    """Strip everything but digits (the relay expects bare digits)."""
    return re.sub(r"\D", "", raw or "")


def _log_attempt(phone: str, message: str, code: int | None, response_data: str | None) -> None:
    try:
        db.execute(
            """
            INSERT INTO whatsapp_logs(phone, message, response_code, response_data, created_at)
            VALUES(?,?,?,?,?)
            """,
            (phone, message, code, response_data, db.now_iso()),
        )
    except sqlite3.Error as exc:
        logger.error("Error logging WhatsApp message: %s", exc)


class WhatsAppRelay:
    """Client for the third-party WhatsApp message relay."""

    def __init__(self, api_url: str | None = None, api_key: str | None = None, timeout: float | None = None):
        settings = get_settings()
        self.api_url = api_url or settings.whatsapp_api_url
        self.api_key = api_key or settings.whatsapp_api_key
        self.timeout = timeout or settings.whatsapp_timeout

    def send(self, phone_raw: str | None, message: str | None) -> RelayResult:
        if not (phone_raw or "").strip():
            return RelayResult(False, "Phone number is required", 400)
        if not (message or "").strip():
            return RelayResult(False, "Message is required", 400)

        phone = normalize_phone(phone_raw)
        payload = {"apiKey": self.api_key, "number": phone, "message": message}
        logger.info("Sending WhatsApp message to %s", phone)

        try:
            resp = requests.post(self.api_url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("WhatsApp relay transport error: %s", exc)
            _log_attempt(phone, message, None, str(exc))
            return RelayResult(False, str(exc) or "WhatsApp relay unreachable", 500)

        try:
            body = resp.json()
        except ValueError:
            body = None
        _log_attempt(phone, message, resp.status_code, resp.text)
        logger.info("WhatsApp relay responded code=%s", resp.status_code)

        if not 200 <= resp.status_code < 300:
            error = "Error sending WhatsApp message"
            if isinstance(body, dict) and body.get("message"):
                error = str(body["message"])
            return RelayResult(False, error, resp.status_code, body if body is not None else resp.text)

        if body is None:
            return RelayResult(False, "Malformed response from WhatsApp relay", resp.status_code, resp.text)

        return RelayResult(True, None, resp.status_code, body)


# ---------- Email ----------

def send_email(to: str | None, subject: str, html: str) -> bool:
    """
    Deliver an HTML email through SMTP when configured, otherwise just log it.
    Returns False on any delivery error; never raises.
    """
    if not to:
        logger.warning("Email skipped, no recipient (subject=%r)", subject)
        return False

    settings = get_settings()
    if not settings.smtp_host:
        logger.info("Email to %s (SMTP disabled) subject=%r", to, subject)
        return True

    msg = MIMEText(html, "html", "utf-8")
    msg["Subject"] = subject
    msg["From"] = settings.mail_sender
    msg["To"] = to

    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as server:
            server.starttls()
            if settings.smtp_username:
                server.login(settings.smtp_username, settings.smtp_password)
            server.send_message(msg)
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Email to %s failed: %s", to, exc)
        return False

    logger.info("Email sent to %s subject=%r", to, subject)
    return True


def _long_date(d: date) -> str:
    return f"{d:%B} {d.day}, {d.year}"


def payment_confirmation_email(
    client_name: str, subscription_type: str, amount: Decimal, payment_date: date, next_payment_date: date
) -> tuple[str, str]:
    kind = subscription_type.capitalize()
    subject = f"Payment Confirmation - {kind} Subscription"
    html = f"""
    <html>
    <body>
        <h2>Payment Confirmation</h2>
        <p>Dear {client_name},</p>
        <p>We have successfully received your payment for your {subscription_type} subscription.</p>
        <h3>Payment Details:</h3>
        <ul>
            <li><strong>Amount:</strong> ${amount:,.2f}</li>
            <li><strong>Payment Date:</strong> {_long_date(payment_date)}</li>
            <li><strong>Subscription Type:</strong> {kind}</li>
            <li><strong>Next Payment Due:</strong> {_long_date(next_payment_date)}</li>
        </ul>
        <p>Thank you for your continued business!</p>
        <p>Best regards,<br>Subscription Management Team</p>
    </body>
    </html>
    """
    return subject, html


def payment_confirmation_text(client_name: str, subscription_type: str, amount: Decimal, payment_date: date) -> str:
    return (
        f"Hello {client_name},\n\n"
        f"We have received your {subscription_type.capitalize()} subscription payment.\n"
        f"Amount: ${amount:,.2f}\n"
        f"Date: {_long_date(payment_date)}\n\n"
        "Thank you for your prompt payment.\n"
        "- Spotnet Team"
    )


# ---------- Reminder bookkeeping ----------

def create_reminder(
    client_id: int, message: str, via_whatsapp: bool, scheduled: str | None, status: str = PENDING
) -> int:
    return db.execute(
        """
        INSERT INTO reminders(client_id, message, send_via_whatsapp, status, scheduled_date, created_at)
        VALUES(?,?,?,?,?,?)
        """,
        (client_id, message, int(via_whatsapp), status, scheduled, db.now_iso()),
    )


def _claim_reminder(reminder_id: int) -> bool:
    """Atomically move pending -> sending; False if someone else got there first."""
    return db.update(
        "UPDATE reminders SET status = ? WHERE id = ? AND status = ?",
        (SENDING, reminder_id, PENDING),
    ) == 1


def _finish_reminder(reminder_id: int, success: bool) -> None:
    # Only the claimed row may move, and only once
    db.update(
        "UPDATE reminders SET status = ?, sent_date = ? WHERE id = ? AND status = ?",
        (SENT if success else FAILED, db.now_iso(), reminder_id, SENDING),
    )


def _deliver(reminder_id: int, send) -> RelayResult:
    """Run `send()` for a claimed reminder; the row ends sent or failed even if it raises."""
    success = False
    try:
        result = send()
        success = result.success
    finally:
        _finish_reminder(reminder_id, success)
    return result


# ---------- Payment confirmation ----------

def send_payment_confirmation(payment_id: int, phone: str | None = None, relay: WhatsAppRelay | None = None) -> RelayResult:
    """
    Send the WhatsApp payment confirmation for a recorded payment.

    The confirmation is tracked as a reminder row created already claimed
    (status sending), so bulk sends never pick it up, then marked sent or
    failed once the relay call resolves.
    """
    try:
        row = db.fetch_one(
            """
            SELECT p.amount, p.payment_date, s.client_id, s.type AS subscription_type,
                   c.name AS client_name, c.phone, c.whatsapp_opt_in
            FROM payments p
            JOIN subscriptions s ON p.subscription_id = s.id
            JOIN clients c ON s.client_id = c.id
            WHERE p.id = ?
            """,
            (payment_id,),
        )
        if not row:
            return RelayResult(False, "Payment not found", 404)

        phone = phone or row["phone"]
        if not (phone or "").strip():
            return RelayResult(False, "Client phone number is missing", 400)
        if not row["whatsapp_opt_in"]:
            return RelayResult(False, "Client has not opted in for WhatsApp notifications", 400)

        message = payment_confirmation_text(
            row["client_name"],
            row["subscription_type"],
            Decimal(row["amount"]),
            date.fromisoformat(row["payment_date"]),
        )
        reminder_id = create_reminder(row["client_id"], message, True, db.now_iso(), status=SENDING)

        relay = relay or WhatsAppRelay()
        return _deliver(reminder_id, lambda: relay.send(phone, message))
    except sqlite3.Error as exc:
        logger.exception("Database error while sending payment confirmation %s", payment_id)
        return RelayResult(False, f"Database error: {exc}", 500)


# ---------- Reminders ----------

def send_reminder(reminder_id: int, relay: WhatsAppRelay | None = None) -> RelayResult:
    """
    Deliver one pending reminder.

    System-channel reminders are marked sent directly. WhatsApp reminders go
    through the relay and require the client's consent.
    """
    row = db.fetch_one(
        """
        SELECT r.*, c.phone AS client_phone, c.whatsapp_opt_in
        FROM reminders r
        JOIN clients c ON r.client_id = c.id
        WHERE r.id = ?
        """,
        (reminder_id,),
    )
    if not row:
        raise NotFoundError("reminder", reminder_id)

    reminder = Reminder.from_row(row)
    if reminder.status != PENDING or not _claim_reminder(reminder.id):
        return RelayResult(False, "Reminder already processed")

    def send() -> RelayResult:
        if not reminder.send_via_whatsapp:
            return RelayResult(True)
        if not row["whatsapp_opt_in"]:
            return RelayResult(False, "Client has not opted in for WhatsApp messages", 400)
        return (relay or WhatsAppRelay()).send(row["client_phone"], reminder.message)

    result = _deliver(reminder.id, send)
    if not result.success:
        logger.warning("Reminder %s failed: %s", reminder.id, result.error)
    return result


def send_bulk(reminder_ids: list[int] | None = None, relay: WhatsAppRelay | None = None) -> dict[str, int]:
    """
    Send the given reminders, or every pending reminder that is due now.
    Returns {"sent": n, "failed": m}.
    """
    if reminder_ids is None:
        rows = db.fetch_all(
            """
            SELECT id FROM reminders
            WHERE status = ? AND (scheduled_date IS NULL OR scheduled_date <= ?)
            ORDER BY id
            """,
            (PENDING, db.now_iso()),
        )
        reminder_ids = [r["id"] for r in rows]

    relay = relay or WhatsAppRelay()
    counts = {"sent": 0, "failed": 0}
    for rid in reminder_ids:
        result = send_reminder(rid, relay=relay)
        counts["sent" if result.success else "failed"] += 1

    logger.info("Bulk send completed. Sent: %s, Failed: %s", counts["sent"], counts["failed"])
    return counts


def generate_due_reminders(days_ahead: int | None = None, today: date | None = None) -> tuple[int, int]:
    """
    Queue a pending WhatsApp reminder for every active subscription due exactly
    `days_ahead` days from today, for clients who opted in and have a phone.
    A client gets at most one pending reminder per due date.

    Returns (matching subscriptions, reminders created).
    """
    if days_ahead is None:
        days_ahead = get_settings().reminder_days_ahead
    due = ((today or date.today()) + timedelta(days=days_ahead)).isoformat()

    rows = db.fetch_all(
        """
        SELECT s.client_id, s.type, s.monthly_amount, s.next_payment_date, c.name AS client_name
        FROM subscriptions s
        JOIN clients c ON s.client_id = c.id
        WHERE s.status = ? AND s.next_payment_date = ?
          AND c.whatsapp_opt_in = 1 AND c.phone IS NOT NULL AND TRIM(c.phone) != ''
        """,
        (ACTIVE, due),
    )

    created = 0
    for r in rows:
        exists = db.fetch_one(
            "SELECT id FROM reminders WHERE client_id = ? AND DATE(scheduled_date) = ? AND status = ?",
            (r["client_id"], due, PENDING),
        )
        if exists:
            continue
        due_date = date.fromisoformat(r["next_payment_date"])
        message = (
            f"Hello {r['client_name']}, this is a reminder that your payment of "
            f"${Decimal(r['monthly_amount']):,.2f} for your {r['type']} subscription is due on "
            f"{due_date:%d/%m/%Y}. Please ensure your account has sufficient funds."
        )
        create_reminder(r["client_id"], message, True, due)
        created += 1

    logger.info("Due reminders for %s: %s subscriptions, %s created", due, len(rows), created)
    return len(rows), created
