"""
billing.py
Billing-cycle arithmetic, the expiration sweep and payment processing.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import date

from dateutil.relativedelta import relativedelta

import db
import notifications
from errors import NotFoundError, PaymentError
from models import ACTIVE, EXPIRED, STOPPED, Client, Subscription
from schemas import PaymentRequest, PaymentResult, validate

logger = logging.getLogger(__name__)


def next_due_date(current: date, billing_cycle: int) -> date:
    """
    Move a due date forward by `billing_cycle` calendar months.

    The day of month is kept when the target month has it, otherwise it is
    clamped to that month's last day (Jan 31 + 1 month -> Feb 28, or Feb 29 in
    a leap year). The cycle is not validated here.
    """
    return current + relativedelta(months=billing_cycle)


def sweep_expired(today: date | None = None) -> int:
    """
    Mark every active subscription whose due date has passed as expired.
    Returns the number of subscriptions changed; a second run changes nothing.
    """
    today = today or date.today()
    with db.transaction() as conn:
        cur = conn.execute(
            "UPDATE subscriptions SET status = ? WHERE status = ? AND next_payment_date < ?",
            (EXPIRED, ACTIVE, today.isoformat()),
        )
        changed = cur.rowcount
    if changed:
        logger.info("Expired %s overdue subscription(s)", changed)
    return changed


def reconcile_expired(today: date | None = None) -> int:
    """sweep_expired for read paths: a failed sweep is logged, never raised."""
    try:
        return sweep_expired(today)
    except sqlite3.Error as exc:
        logger.error("Failed to update expired subscriptions: %s", exc)
        return 0


def should_send_whatsapp(client: Client, requested: bool | None) -> bool:
    # Consent and a phone number are required no matter what was requested
    if not client.can_receive_whatsapp:
        return False
    return requested is None or requested


def process_payment(
    request: PaymentRequest | dict,
    relay: notifications.WhatsAppRelay | None = None,
) -> PaymentResult:
    """
    Record a payment and advance its subscription by one billing cycle.

    The payment row, the new due date and the reactivation are written in one
    transaction holding the write lock, so concurrent payments on the same
    subscription each advance it once. Confirmations are sent after commit;
    their outcome is reported on the result and never undoes the payment.
    """
    req = validate(PaymentRequest, request)

    try:
        with db.transaction() as conn:
            row = conn.execute(
                """
                SELECT s.*, c.name AS client_name, c.email AS client_email, c.phone AS client_phone,
                       c.status AS client_status, c.whatsapp_opt_in
                FROM subscriptions s
                JOIN clients c ON s.client_id = c.id
                WHERE s.id = ?
                """,
                (req.subscription_id,),
            ).fetchone()
            if row is None:
                raise NotFoundError("subscription", req.subscription_id)

            subscription = Subscription.from_row(row)
            client = Client(
                id=row["client_id"],
                name=row["client_name"],
                email=row["client_email"],
                phone=row["client_phone"],
                status=row["client_status"],
                whatsapp_opt_in=bool(row["whatsapp_opt_in"]),
            )

            cur = conn.execute(
                """
                INSERT INTO payments(subscription_id, amount, payment_date, payment_method, notes, created_at)
                VALUES(?,?,?,?,?,?)
                """,
                (
                    subscription.id,
                    str(req.amount),
                    req.payment_date.isoformat(),
                    req.payment_method,
                    req.notes,
                    db.now_iso(),
                ),
            )
            payment_id = cur.lastrowid

            # Advance from the current due date, not the payment date
            new_date = next_due_date(subscription.next_payment_date, subscription.billing_cycle)
            conn.execute(
                "UPDATE subscriptions SET next_payment_date = ?, status = ? WHERE id = ?",
                (new_date.isoformat(), ACTIVE, subscription.id),
            )
    except sqlite3.Error as exc:
        logger.exception("Payment for subscription %s rolled back", req.subscription_id)
        raise PaymentError(f"Database error: {exc}") from exc

    logger.info(
        "Payment %s recorded for subscription %s (%s -> %s, was %s)",
        payment_id, subscription.id, subscription.next_payment_date, new_date, subscription.status,
    )

    email_sent = _send_confirmation_email(client, subscription, req, new_date)

    whatsapp_sent, whatsapp_error = False, None
    wants_whatsapp = should_send_whatsapp(client, req.send_whatsapp)
    logger.info(
        "WhatsApp eval payment_id=%s opt_in=%s requested=%s should_send=%s",
        payment_id, client.whatsapp_opt_in, req.send_whatsapp, wants_whatsapp,
    )
    if wants_whatsapp:
        try:
            outcome = notifications.send_payment_confirmation(payment_id, phone=client.phone, relay=relay)
            whatsapp_sent, whatsapp_error = outcome.success, outcome.error
        except Exception as exc:
            logger.exception("WhatsApp confirmation for payment %s failed", payment_id)
            whatsapp_error = str(exc) or exc.__class__.__name__

    return PaymentResult(
        payment_id=payment_id,
        next_payment_date=new_date,
        whatsapp_sent=whatsapp_sent,
        whatsapp_error=whatsapp_error,
        email_sent=email_sent,
    )


def _send_confirmation_email(client: Client, subscription: Subscription, req: PaymentRequest, new_date: date) -> bool:
    try:
        subject, html = notifications.payment_confirmation_email(
            client.name, subscription.type, req.amount, req.payment_date, new_date
        )
        return notifications.send_email(client.email, subject, html)
    except Exception:
        logger.exception("Payment confirmation email to %s failed", client.email)
        return False


def _set_status(subscription_id: int, status: str) -> None:
    with db.transaction() as conn:
        cur = conn.execute("UPDATE subscriptions SET status = ? WHERE id = ?", (status, subscription_id))
        if cur.rowcount == 0:
            raise NotFoundError("subscription", subscription_id)
    logger.info("Subscription %s set to %s", subscription_id, status)


def stop_subscription(subscription_id: int) -> None:
    _set_status(subscription_id, STOPPED)


def resume_subscription(subscription_id: int) -> None:
    _set_status(subscription_id, ACTIVE)
