"""
utils.py
Dates, exports, revenue summaries, sample data.
"""

from __future__ import annotations

from datetime import date, timedelta
import pandas as pd

import db
import billing
import services


def parse_iso(d: str) -> date:
    return date.fromisoformat(d)


def rows_to_frame(rows, columns: list[str] | None = None) -> pd.DataFrame:
    if not rows:
        return pd.DataFrame(columns=columns or [])
    return pd.DataFrame([dict(r) for r in rows])


def rows_to_csv_bytes(rows) -> bytes:
    return rows_to_frame(rows).to_csv(index=False).encode("utf-8")


def revenue_summary_by_month() -> pd.DataFrame:
    rows = db.fetch_all("SELECT payment_date, amount FROM payments")
    df = rows_to_frame(rows, ["payment_date", "amount"])
    if df.empty:
        return pd.DataFrame(columns=["month", "payments", "revenue"])
    df["month"] = pd.to_datetime(df["payment_date"]).dt.strftime("%Y-%m")
    df["amount"] = df["amount"].astype(float)
    summary = (
        df.groupby("month")
        .agg(payments=("amount", "size"), revenue=("amount", "sum"))
        .reset_index()
        .sort_values("month", ascending=False)
    )
    summary["revenue"] = summary["revenue"].round(2)
    return summary.reset_index(drop=True)


def revenue_by_subscription_type() -> pd.DataFrame:
    rows = db.fetch_all(
        """
        SELECT s.type, p.amount
        FROM payments p
        JOIN subscriptions s ON p.subscription_id = s.id
        """
    )
    df = rows_to_frame(rows, ["type", "amount"])
    if df.empty:
        return pd.DataFrame(columns=["type", "revenue"])
    df["amount"] = df["amount"].astype(float)
    return df.groupby("type", as_index=False)["amount"].sum().rename(columns={"amount": "revenue"})


def insert_sample_data() -> None:
    """
    Insert 3 clients with subscriptions and a couple of payments
    (adds new rows each run; emails get a numeric suffix to stay unique).
    """
    today = date.today()
    suffix = db.fetch_one("SELECT COUNT(*) AS c FROM clients")["c"] + 1

    clients = [
        {"name": "John Doe", "email": f"john{suffix}@example.com", "phone": "+1234567890", "whatsapp_opt_in": True},
        {"name": "Jane Smith", "email": f"jane{suffix}@example.com", "phone": "+1234567891"},
        {"name": "Bob Johnson", "email": f"bob{suffix}@example.com", "phone": "+1234567892", "status": "stopped",
         "whatsapp_opt_in": True},
    ]
    ids = [services.add_client(c) for c in clients]

    # John: monthly internet, first cycle paid below
    s1 = services.add_subscription({
        "client_id": ids[0], "type": "internet", "billing_cycle": 1, "monthly_amount": "50.00",
        "start_date": today - timedelta(days=25),
    })
    # John: quarterly satellite
    services.add_subscription({
        "client_id": ids[0], "type": "satellite", "billing_cycle": 3, "monthly_amount": "30.00",
        "start_date": today - timedelta(days=10),
    })
    # Jane: overdue monthly internet (expires on the next sweep)
    services.add_subscription({
        "client_id": ids[1], "type": "internet", "billing_cycle": 1, "monthly_amount": "45.00",
        "start_date": today - timedelta(days=60),
    })
    # Bob: stopped
    s4 = services.add_subscription({
        "client_id": ids[2], "type": "internet", "billing_cycle": 1, "monthly_amount": "55.00",
        "start_date": today - timedelta(days=15),
    })
    billing.stop_subscription(s4)

    billing.process_payment({
        "subscription_id": s1, "amount": "50.00", "payment_date": today - timedelta(days=25),
        "notes": "Sample payment", "send_whatsapp": False,
    })
