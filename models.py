"""
models.py
Lightweight domain helpers (constants, dataclasses built from sqlite rows).
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

# Billing cycles in months
BILLING_CYCLES = (1, 3)

SUBSCRIPTION_TYPES = ("internet", "satellite")

ACTIVE = "active"
STOPPED = "stopped"
EXPIRED = "expired"
SUBSCRIPTION_STATUSES = (ACTIVE, STOPPED, EXPIRED)

CLIENT_STATUSES = ("active", "stopped")

PENDING = "pending"
SENDING = "sending"  # claimed, relay call in flight
SENT = "sent"
FAILED = "failed"
REMINDER_STATUSES = (PENDING, SENDING, SENT, FAILED)

PAYMENT_METHODS = ("cash", "card", "bank_transfer")

CENTS = Decimal("0.01")


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS)


def _opt_date(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None


@dataclass(frozen=True)
class Client:
    id: int
    name: str
    email: str
    phone: str | None
    status: str
    whatsapp_opt_in: bool

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Client":
        return cls(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            phone=row["phone"],
            status=row["status"],
            whatsapp_opt_in=bool(row["whatsapp_opt_in"]),
        )

    @property
    def can_receive_whatsapp(self) -> bool:
        return self.whatsapp_opt_in and bool((self.phone or "").strip())


@dataclass(frozen=True)
class Subscription:
    id: int
    client_id: int
    type: str
    start_date: date
    end_date: date | None
    billing_cycle: int
    status: str
    next_payment_date: date
    monthly_amount: Decimal

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Subscription":
        return cls(
            id=row["id"],
            client_id=row["client_id"],
            type=row["type"],
            start_date=date.fromisoformat(row["start_date"]),
            end_date=_opt_date(row["end_date"]),
            billing_cycle=int(row["billing_cycle"]),
            status=row["status"],
            next_payment_date=date.fromisoformat(row["next_payment_date"]),
            monthly_amount=to_money(row["monthly_amount"]),
        )


@dataclass(frozen=True)
class Payment:
    id: int
    subscription_id: int
    amount: Decimal
    payment_date: date
    payment_method: str
    notes: str | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Payment":
        return cls(
            id=row["id"],
            subscription_id=row["subscription_id"],
            amount=to_money(row["amount"]),
            payment_date=date.fromisoformat(row["payment_date"]),
            payment_method=row["payment_method"],
            notes=row["notes"],
        )


@dataclass(frozen=True)
class Reminder:
    id: int
    client_id: int
    message: str
    send_via_whatsapp: bool
    status: str  # pending/sending/sent/failed
    scheduled_date: str | None
    sent_date: str | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Reminder":
        return cls(
            id=row["id"],
            client_id=row["client_id"],
            message=row["message"],
            send_via_whatsapp=bool(row["send_via_whatsapp"]),
            status=row["status"],
            scheduled_date=row["scheduled_date"],
            sent_date=row["sent_date"],
        )


@dataclass(frozen=True)
class MessageTemplate:
    id: int
    name: str
    content: str
