"""
services.py
Data access helpers for clients, subscriptions, payments, reminders and templates.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import date, datetime, timedelta

import billing
import db
import notifications
from errors import NotFoundError, ValidationError
from models import ACTIVE, Client, MessageTemplate, Subscription
from schemas import ClientIn, ReminderIn, SubscriptionIn, TemplateIn, validate

logger = logging.getLogger(__name__)


def _like(search: str) -> str:
    return f"%{search.strip()}%"


# ---------- Clients ----------

def list_clients(search: str = "", status: str | None = None, whatsapp_opt_in: bool | None = None):
    sql = "SELECT * FROM clients c WHERE 1=1"
    params: list = []

    if search.strip():
        sql += " AND (c.name LIKE ? OR c.email LIKE ? OR c.phone LIKE ?)"
        params.extend([_like(search)] * 3)
    if status:
        sql += " AND c.status = ?"
        params.append(status)
    if whatsapp_opt_in is not None:
        sql += " AND c.whatsapp_opt_in = ?"
        params.append(int(whatsapp_opt_in))

    sql += " ORDER BY c.created_at DESC, c.id DESC"
    return db.fetch_all(sql, tuple(params))


def get_client(client_id: int) -> Client:
    row = db.fetch_one("SELECT * FROM clients WHERE id = ?", (client_id,))
    if not row:
        raise NotFoundError("client", client_id)
    return Client.from_row(row)


def add_client(data: ClientIn | dict) -> int:
    c = validate(ClientIn, data)
    try:
        return db.execute(
            """
            INSERT INTO clients(name, email, phone, status, whatsapp_opt_in, created_at)
            VALUES(?,?,?,?,?,?)
            """,
            (c.name, c.email, c.phone, c.status, int(c.whatsapp_opt_in), db.now_iso()),
        )
    except sqlite3.IntegrityError as exc:
        raise ValidationError("A client with this email already exists.") from exc


def edit_client(client_id: int, data: ClientIn | dict) -> None:
    c = validate(ClientIn, data)
    try:
        changed = db.update(
            "UPDATE clients SET name=?, email=?, phone=?, status=?, whatsapp_opt_in=? WHERE id=?",
            (c.name, c.email, c.phone, c.status, int(c.whatsapp_opt_in), client_id),
        )
    except sqlite3.IntegrityError as exc:
        raise ValidationError("A client with this email already exists.") from exc
    if not changed:
        raise NotFoundError("client", client_id)


def delete_client(client_id: int) -> None:
    # Subscriptions, payments and reminders go with the client
    if not db.update("DELETE FROM clients WHERE id = ?", (client_id,)):
        raise NotFoundError("client", client_id)
    logger.info("Deleted client %s", client_id)


# ---------- Subscriptions ----------

def list_subscriptions(
    client_id: int | None = None,
    search: str = "",
    status: str | None = None,
    sub_type: str | None = None,
    today: date | None = None,
):
    """
    Subscriptions joined with their client.

    Overdue active subscriptions are expired first so a listing never shows
    one of them as active.
    """
    billing.reconcile_expired(today)

    sql = """
        SELECT s.*, c.name AS client_name, c.email AS client_email, c.phone AS client_phone,
               c.whatsapp_opt_in AS client_whatsapp_opt_in
        FROM subscriptions s
        JOIN clients c ON s.client_id = c.id
        WHERE 1=1
    """
    params: list = []

    if client_id:
        sql += " AND s.client_id = ?"
        params.append(client_id)
    if search.strip():
        sql += " AND (c.name LIKE ? OR c.email LIKE ? OR s.type LIKE ?)"
        params.extend([_like(search)] * 3)
    if status:
        sql += " AND s.status = ?"
        params.append(status)
    if sub_type:
        sql += " AND s.type = ?"
        params.append(sub_type)

    sql += " ORDER BY s.next_payment_date ASC, s.id ASC"
    return db.fetch_all(sql, tuple(params))


def get_subscription(subscription_id: int) -> Subscription:
    row = db.fetch_one("SELECT * FROM subscriptions WHERE id = ?", (subscription_id,))
    if not row:
        raise NotFoundError("subscription", subscription_id)
    return Subscription.from_row(row)


def add_subscription(data: SubscriptionIn | dict) -> int:
    s = validate(SubscriptionIn, data)
    get_client(s.client_id)
    next_date = billing.next_due_date(s.start_date, s.billing_cycle)
    return db.execute(
        """
        INSERT INTO subscriptions(client_id, type, start_date, end_date, billing_cycle,
            status, next_payment_date, monthly_amount, created_at)
        VALUES(?,?,?,?,?,?,?,?,?)
        """,
        (
            s.client_id,
            s.type,
            s.start_date.isoformat(),
            s.end_date.isoformat() if s.end_date else None,
            s.billing_cycle,
            ACTIVE,
            next_date.isoformat(),
            str(s.monthly_amount),
            db.now_iso(),
        ),
    )


def edit_subscription(subscription_id: int, data: SubscriptionIn | dict) -> None:
    """Update a subscription; the due date is recomputed from the start date."""
    s = validate(SubscriptionIn, data)
    next_date = billing.next_due_date(s.start_date, s.billing_cycle)
    changed = db.update(
        """
        UPDATE subscriptions SET type=?, start_date=?, end_date=?, billing_cycle=?,
            next_payment_date=?, monthly_amount=?
        WHERE id=?
        """,
        (
            s.type,
            s.start_date.isoformat(),
            s.end_date.isoformat() if s.end_date else None,
            s.billing_cycle,
            next_date.isoformat(),
            str(s.monthly_amount),
            subscription_id,
        ),
    )
    if not changed:
        raise NotFoundError("subscription", subscription_id)


def delete_subscription(subscription_id: int) -> None:
    if not db.update("DELETE FROM subscriptions WHERE id = ?", (subscription_id,)):
        raise NotFoundError("subscription", subscription_id)
    logger.info("Deleted subscription %s", subscription_id)


# ---------- Payments ----------

def list_payments(subscription_id: int | None = None, client_id: int | None = None):
    sql = """
        SELECT p.*, s.type AS subscription_type, c.name AS client_name, c.id AS client_id
        FROM payments p
        JOIN subscriptions s ON p.subscription_id = s.id
        JOIN clients c ON s.client_id = c.id
        WHERE 1=1
    """
    params: list = []
    if subscription_id:
        sql += " AND p.subscription_id = ?"
        params.append(subscription_id)
    if client_id:
        sql += " AND s.client_id = ?"
        params.append(client_id)
    sql += " ORDER BY p.payment_date DESC, p.id DESC"
    return db.fetch_all(sql, tuple(params))


def payment_history(today: date | None = None, recent_limit: int = 10) -> dict:
    """Monthly totals for the last 12 months plus the most recent payments."""
    today = today or date.today()
    since = (today.replace(day=1) - timedelta(days=365)).isoformat()
    monthly = db.fetch_all(
        """
        SELECT strftime('%Y-%m', payment_date) AS month,
               COUNT(id) AS payment_count,
               ROUND(SUM(CAST(amount AS REAL)), 2) AS total_amount,
               ROUND(AVG(CAST(amount AS REAL)), 2) AS avg_amount
        FROM payments
        WHERE payment_date >= ?
        GROUP BY strftime('%Y-%m', payment_date)
        ORDER BY month DESC
        """,
        (since,),
    )
    recent = db.fetch_all(
        """
        SELECT p.*, s.type AS subscription_type, c.name AS client_name
        FROM payments p
        JOIN subscriptions s ON p.subscription_id = s.id
        JOIN clients c ON s.client_id = c.id
        ORDER BY p.payment_date DESC, p.id DESC
        LIMIT ?
        """,
        (recent_limit,),
    )
    return {"monthly_history": monthly, "recent_payments": recent}


def delete_payment(payment_id: int) -> None:
    """Administrative override; the subscription's due date is left as is."""
    if not db.update("DELETE FROM payments WHERE id = ?", (payment_id,)):
        raise NotFoundError("payment", payment_id)
    logger.warning("Payment %s deleted by administrator", payment_id)


# ---------- Reminders ----------

def list_reminders(
    client_id: int | None = None, search: str = "", status: str | None = None, whatsapp_only: bool | None = None
):
    sql = """
        SELECT r.*, c.name AS client_name, c.phone AS client_phone, c.whatsapp_opt_in
        FROM reminders r
        JOIN clients c ON r.client_id = c.id
        WHERE 1=1
    """
    params: list = []
    if client_id:
        sql += " AND r.client_id = ?"
        params.append(client_id)
    if search.strip():
        sql += " AND (c.name LIKE ? OR r.message LIKE ?)"
        params.extend([_like(search)] * 2)
    if status:
        sql += " AND r.status = ?"
        params.append(status)
    if whatsapp_only is not None:
        sql += " AND r.send_via_whatsapp = ?"
        params.append(int(whatsapp_only))
    sql += " ORDER BY r.created_at DESC, r.id DESC"
    return db.fetch_all(sql, tuple(params))


def add_reminder(data: ReminderIn | dict, relay: notifications.WhatsAppRelay | None = None) -> int:
    """
    Create a pending reminder. WhatsApp delivery is dropped for clients who
    have not opted in. Reminders without a schedule, or scheduled in the
    past, are sent right away.
    """
    r = validate(ReminderIn, data)
    client = get_client(r.client_id)

    via_whatsapp = r.send_via_whatsapp and client.whatsapp_opt_in
    scheduled = r.scheduled_date.isoformat(sep=" ", timespec="seconds") if r.scheduled_date else None
    reminder_id = notifications.create_reminder(client.id, r.message, via_whatsapp, scheduled)

    if r.scheduled_date is None or r.scheduled_date <= datetime.now():
        notifications.send_reminder(reminder_id, relay=relay)
    return reminder_id


def delete_reminder(reminder_id: int) -> None:
    if not db.update("DELETE FROM reminders WHERE id = ?", (reminder_id,)):
        raise NotFoundError("reminder", reminder_id)


# ---------- Message templates ----------

def list_templates() -> list[MessageTemplate]:
    rows = db.fetch_all("SELECT id, name, content FROM message_templates ORDER BY created_at DESC, id DESC")
    return [MessageTemplate(id=r["id"], name=r["name"], content=r["content"]) for r in rows]


def add_template(data: TemplateIn | dict) -> int:
    t = validate(TemplateIn, data)
    return db.execute(
        "INSERT INTO message_templates(name, content, created_at) VALUES(?,?,?)",
        (t.name, t.content, db.now_iso()),
    )


def delete_template(template_id: int) -> None:
    if not db.update("DELETE FROM message_templates WHERE id = ?", (template_id,)):
        raise NotFoundError("template", template_id)


# ---------- Dashboard ----------

def dashboard_stats(today: date | None = None, due_within_days: int = 7) -> dict:
    today = today or date.today()
    billing.reconcile_expired(today)
    horizon = (today + timedelta(days=due_within_days)).isoformat()

    def count(sql: str, params: tuple = ()) -> int:
        return int(db.fetch_one(sql, params)["c"])

    month_start = today.replace(day=1).isoformat()
    revenue = db.fetch_one(
        "SELECT COALESCE(SUM(CAST(amount AS REAL)), 0) AS s FROM payments WHERE payment_date >= ? AND payment_date <= ?",
        (month_start, today.isoformat()),
    )["s"]

    return {
        "clients": count("SELECT COUNT(*) AS c FROM clients"),
        "active_subscriptions": count("SELECT COUNT(*) AS c FROM subscriptions WHERE status = 'active'"),
        "expired_subscriptions": count("SELECT COUNT(*) AS c FROM subscriptions WHERE status = 'expired'"),
        "due_soon": count(
            "SELECT COUNT(*) AS c FROM subscriptions WHERE status = 'active' AND next_payment_date BETWEEN ? AND ?",
            (today.isoformat(), horizon),
        ),
        "pending_reminders": count("SELECT COUNT(*) AS c FROM reminders WHERE status = 'pending'"),
        "monthly_revenue": round(float(revenue), 2),
    }
