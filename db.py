"""
db.py
SQLite helpers + initialization (creates DB/tables, inserts default admin, seeds templates).
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime

from config import get_settings

logger = logging.getLogger(__name__)

DB_FILE = get_settings().db_file

# Seconds a writer waits for another writer's lock before giving up
BUSY_TIMEOUT = 30.0

DEFAULT_TEMPLATES = [
    ("Payment Due", "Your subscription payment is due tomorrow. Please make the payment to continue your service."),
    ("Payment Received", "Thank you for your payment! Your subscription has been renewed successfully."),
    ("Expiry Warning", "Your subscription will expire in 3 days. Please renew to avoid service interruption."),
    ("Service Update", "We have updated your service plan. Please contact us if you have any questions."),
    ("Payment Reminder", "Reminder: Your monthly subscription payment is now due."),
]


def _connect(**kwargs) -> sqlite3.Connection:
    conn = sqlite3.connect(DB_FILE, check_same_thread=False, timeout=BUSY_TIMEOUT, **kwargs)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def get_conn():
    conn = _connect()
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


@contextmanager
def transaction():
    """
    Explicit write transaction.

    BEGIN IMMEDIATE takes the database write lock before the first read, so a
    read-modify-write inside the block cannot interleave with another writer.
    Commits on success, rolls back on any exception.
    """
    conn = _connect(isolation_level=None)
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


def execute(sql: str, params: tuple = ()) -> int:
    with get_conn() as conn:
        cur = conn.execute(sql, params)
        return cur.lastrowid


def update(sql: str, params: tuple = ()) -> int:
    """Run an UPDATE/DELETE and return the number of affected rows."""
    with get_conn() as conn:
        cur = conn.execute(sql, params)
        return cur.rowcount


def executemany(sql: str, seq_of_params: list[tuple]) -> None:
    with get_conn() as conn:
        conn.executemany(sql, seq_of_params)


def fetch_one(sql: str, params: tuple = ()):
    with get_conn() as conn:
        cur = conn.execute(sql, params)
        return cur.fetchone()


def fetch_all(sql: str, params: tuple = ()) -> list[sqlite3.Row]:
    with get_conn() as conn:
        cur = conn.execute(sql, params)
        return cur.fetchall()


def _create_tables() -> None:
    execute(
        """
        CREATE TABLE IF NOT EXISTS system_users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            email TEXT NOT NULL UNIQUE,
            password_hash TEXT NOT NULL,
            role TEXT NOT NULL DEFAULT 'staff' CHECK(role IN ('admin','staff')),
            created_at TEXT NOT NULL
        )
        """
    )

    execute(
        """
        CREATE TABLE IF NOT EXISTS clients (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            email TEXT NOT NULL UNIQUE,
            phone TEXT,
            status TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active','stopped')),
            whatsapp_opt_in INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        )
        """
    )

    execute(
        """
        CREATE TABLE IF NOT EXISTS subscriptions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            client_id INTEGER NOT NULL,
            type TEXT NOT NULL CHECK(type IN ('internet','satellite')),
            start_date TEXT NOT NULL,
            end_date TEXT,
            billing_cycle INTEGER NOT NULL CHECK(billing_cycle IN (1, 3)),
            status TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active','stopped','expired')),
            next_payment_date TEXT NOT NULL,
            monthly_amount TEXT NOT NULL,
            created_at TEXT NOT NULL,
            FOREIGN KEY(client_id) REFERENCES clients(id) ON DELETE CASCADE
        )
        """
    )

    execute(
        """
        CREATE TABLE IF NOT EXISTS payments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            subscription_id INTEGER NOT NULL,
            amount TEXT NOT NULL,
            payment_date TEXT NOT NULL,
            payment_method TEXT NOT NULL DEFAULT 'cash',
            notes TEXT,
            created_at TEXT NOT NULL,
            FOREIGN KEY(subscription_id) REFERENCES subscriptions(id) ON DELETE CASCADE
        )
        """
    )

    execute(
        """
        CREATE TABLE IF NOT EXISTS reminders (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            client_id INTEGER NOT NULL,
            message TEXT NOT NULL,
            send_via_whatsapp INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'pending' CHECK(status IN ('pending','sending','sent','failed')),
            scheduled_date TEXT,
            sent_date TEXT,
            created_at TEXT NOT NULL,
            FOREIGN KEY(client_id) REFERENCES clients(id) ON DELETE CASCADE
        )
        """
    )

    execute(
        """
        CREATE TABLE IF NOT EXISTS message_templates (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            content TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )

    execute(
        """
        CREATE TABLE IF NOT EXISTS whatsapp_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            phone TEXT NOT NULL,
            message TEXT NOT NULL,
            response_code INTEGER,
            response_data TEXT,
            created_at TEXT NOT NULL
        )
        """
    )

    # Small settings table (used to force password change on first login)
    execute(
        """
        CREATE TABLE IF NOT EXISTS app_settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
        """
    )


def now_iso() -> str:
    return datetime.now().isoformat(sep=" ", timespec="seconds")


def _get_setting(key: str, default: str | None = None) -> str | None:
    row = fetch_one("SELECT value FROM app_settings WHERE key = ?", (key,))
    if row:
        return str(row["value"])
    return default


def _set_setting(key: str, value: str) -> None:
    execute(
        """
        INSERT INTO app_settings(key, value) VALUES(?, ?)
        ON CONFLICT(key) DO UPDATE SET value=excluded.value
        """,
        (key, value),
    )


def _seed_templates() -> None:
    if fetch_one("SELECT id FROM message_templates LIMIT 1"):
        return
    now = now_iso()
    executemany(
        "INSERT INTO message_templates(name, content, created_at) VALUES(?,?,?)",
        [(name, content, now) for name, content in DEFAULT_TEMPLATES],
    )


def init_db(default_admin_hash: str) -> None:
    """
    Initialize the database.
    - Create tables
    - Insert default admin (admin@subscription.com/admin123) if no user exists
    - Force password change on first login
    - Seed the default message templates
    """
    _create_tables()

    admin = fetch_one("SELECT id FROM system_users LIMIT 1")
    if not admin:
        execute(
            "INSERT INTO system_users(name, email, password_hash, role, created_at) VALUES(?,?,?,?,?)",
            ("Administrator", "admin@subscription.com", default_admin_hash, "admin", now_iso()),
        )
        _set_setting("force_password_change", "1")
        logger.info("Created default admin account")
    else:
        # ensure setting exists
        if _get_setting("force_password_change") is None:
            _set_setting("force_password_change", "0")

    _seed_templates()


def is_force_password_change() -> bool:
    val = fetch_one("SELECT value FROM app_settings WHERE key = ?", ("force_password_change",))
    return bool(val and str(val["value"]) == "1")


def clear_force_password_change() -> None:
    _set_setting("force_password_change", "0")
