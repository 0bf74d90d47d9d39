"""
app.py
Streamlit subscription administration (staff only).
Run: streamlit run app.py
"""

from __future__ import annotations

from datetime import date, datetime, time
import streamlit as st

import db
import auth
import billing
import notifications
import services
import utils
from errors import AuthenticationError, SpotnetError
from logging_config import configure_logging
from models import BILLING_CYCLES, PAYMENT_METHODS, REMINDER_STATUSES, SUBSCRIPTION_STATUSES, SUBSCRIPTION_TYPES

st.set_page_config(page_title="Spotnet Subscriptions", layout="wide")


@st.cache_resource
def init_once():
    # Logging + DB + default admin, once per server process
    configure_logging()
    default_hash = auth.hash_password("admin123")
    db.init_db(default_hash)
    return True


def require_login():
    if "user" not in st.session_state:
        st.session_state.user = None


def current_user():
    user = st.session_state.get("user")
    if not user:
        raise AuthenticationError("Please log in.")
    return user


def logout():
    st.session_state.user = None
    st.success("Logged out.")


def attempt(action, success: str | None = None) -> bool:
    """Run a write action, turning domain errors into an error box."""
    try:
        action()
    except AuthenticationError:
        raise
    except SpotnetError as e:
        st.error(str(e))
        return False
    if success:
        st.success(success)
    return True


def login_screen():
    st.title("🔐 Staff Login")

    col1, col2 = st.columns([1, 1])
    with col1:
        email = st.text_input("Email", value="admin@subscription.com")
        password = st.text_input("Password", type="password")
        if st.button("Login", type="primary"):
            try:
                user = auth.login(email, password)
            except AuthenticationError as e:
                st.error(str(e))
            else:
                st.session_state.user = {"email": user["email"], "name": user["name"], "role": user["role"]}
                st.rerun()

    with col2:
        st.info(
            "First run creates a default admin:\n\n"
            "- email: **admin@subscription.com**\n"
            "- password: **admin123**\n\n"
            "You will be forced to change it on first login."
        )


def password_form(key: str):
    new1 = st.text_input("New password", type="password", key=f"{key}_p1")
    new2 = st.text_input("Confirm new password", type="password", key=f"{key}_p2")
    if st.button("Update password", type="primary", key=f"{key}_btn"):
        if new1 != new2:
            st.error("Passwords do not match.")
            return False
        return attempt(lambda: auth.change_password(current_user()["email"], new1), "Password updated.")
    return False


def force_change_password_screen():
    st.title("⚠️ Change Password (Required)")
    st.warning("You must change the default password before using the app.")
    if password_form("force"):
        st.rerun()


# ---------- Pages ----------

def dashboard_page():
    st.header("📊 Dashboard")

    stats = services.dashboard_stats()
    c1, c2, c3, c4, c5 = st.columns(5)
    c1.metric("Clients", stats["clients"])
    c2.metric("Active subscriptions", stats["active_subscriptions"])
    c3.metric("Expired subscriptions", stats["expired_subscriptions"])
    c4.metric("Due in next 7 days", stats["due_soon"])
    c5.metric("Revenue (current month)", f"{stats['monthly_revenue']:.2f}")

    st.divider()

    st.subheader("Due soon (next 7 days)")
    today = date.today()
    rows = [
        r for r in services.list_subscriptions(status="active")
        if (utils.parse_iso(r["next_payment_date"]) - today).days <= 7
    ]
    if rows:
        df = utils.rows_to_frame(rows)[["id", "client_name", "type", "monthly_amount", "next_payment_date"]]
        st.dataframe(df, use_container_width=True, hide_index=True)
    else:
        st.caption("No subscriptions due in the next 7 days.")


def client_form(existing=None):
    if existing:
        st.subheader(f"✏️ Edit Client (ID: {existing.id})")
    else:
        st.subheader("➕ Add Client")

    col1, col2 = st.columns(2)
    with col1:
        name = st.text_input("Name", value=(existing.name if existing else ""))
        email = st.text_input("Email", value=(existing.email if existing else ""))
        phone = st.text_input("Phone", value=((existing.phone or "") if existing else ""))
    with col2:
        status = st.selectbox(
            "Status", ["active", "stopped"], index=(1 if existing and existing.status == "stopped" else 0)
        )
        opt_in = st.checkbox("Allow WhatsApp messages", value=(existing.whatsapp_opt_in if existing else False))

    if st.button("Save client", type="primary"):
        data = {"name": name, "email": email, "phone": phone, "status": status, "whatsapp_opt_in": opt_in}
        if existing:
            ok = attempt(lambda: services.edit_client(existing.id, data), "Client updated.")
        else:
            ok = attempt(lambda: services.add_client(data), "Client added.")
        if ok:
            st.session_state.edit_client_id = None
            st.rerun()


def clients_page():
    st.header("👥 Clients")

    with st.sidebar:
        st.subheader("Search & Filters")
        search = st.text_input("Search (name/email/phone)")
        status = st.selectbox("Status", ["All", "active", "stopped"])
        consent = st.selectbox("WhatsApp", ["All", "opted in", "not opted in"])

    rows = services.list_clients(
        search=search,
        status=None if status == "All" else status,
        whatsapp_opt_in=None if consent == "All" else consent == "opted in",
    )
    df = utils.rows_to_frame(rows, ["id", "name", "email", "phone", "status", "whatsapp_opt_in"])
    st.dataframe(df, use_container_width=True, hide_index=True)

    st.divider()

    colA, colB = st.columns([1, 2])
    with colA:
        client_ids = df["id"].tolist() if not df.empty else []
        selected = st.selectbox("Client ID", options=["(none)"] + [str(i) for i in client_ids])
    with colB:
        if selected != "(none)":
            c1, c2, c3 = st.columns(3)
            with c1:
                if st.button("Edit"):
                    st.session_state.edit_client_id = int(selected)
                    st.rerun()
            with c2:
                if st.button("View subscriptions"):
                    st.session_state.subscriptions_client_id = int(selected)
                    st.session_state.page = "Subscriptions"
                    st.rerun()
            with c3:
                confirm = st.checkbox("Confirm delete (removes subscriptions, payments, reminders)")
                if st.button("Delete", disabled=not confirm):
                    if attempt(lambda: services.delete_client(int(selected)), "Client deleted."):
                        st.rerun()

    st.divider()

    if st.session_state.get("edit_client_id"):
        client_form(existing=services.get_client(st.session_state.edit_client_id))
        if st.button("Cancel edit"):
            st.session_state.edit_client_id = None
            st.rerun()
    else:
        client_form()


def subscription_form(client_options: dict, existing=None):
    if existing:
        st.subheader(f"✏️ Edit Subscription (ID: {existing.id})")
    else:
        st.subheader("➕ Add Subscription")

    labels = list(client_options.keys())
    client_index = next((i for i, k in enumerate(labels) if existing and client_options[k] == existing.client_id), 0)

    col1, col2, col3 = st.columns(3)
    with col1:
        label = st.selectbox("Client", labels, index=client_index, disabled=existing is not None)
        sub_type = st.selectbox(
            "Type", SUBSCRIPTION_TYPES, index=SUBSCRIPTION_TYPES.index(existing.type) if existing else 0
        )
    with col2:
        start = st.date_input("Start date", value=(existing.start_date if existing else date.today()))
        cycle = st.selectbox(
            "Billing cycle (months)", BILLING_CYCLES,
            index=BILLING_CYCLES.index(existing.billing_cycle) if existing else 0,
        )
    with col3:
        amount = st.text_input("Monthly amount", value=(str(existing.monthly_amount) if existing else "50.00"))
        has_end = st.checkbox("Has end date", value=bool(existing and existing.end_date))
        end = st.date_input(
            "End date", value=(existing.end_date if existing and existing.end_date else date.today()),
            disabled=not has_end,
        )

    label_due = "Next payment due" if existing else "First payment due"
    st.info(f"{label_due}: **{billing.next_due_date(start, cycle).isoformat()}**")

    if st.button("Save subscription" if existing else "Create subscription", type="primary"):
        data = {
            "client_id": client_options[label], "type": sub_type, "start_date": start,
            "end_date": end if has_end else None, "billing_cycle": cycle, "monthly_amount": amount,
        }
        if existing:
            ok = attempt(lambda: services.edit_subscription(existing.id, data), "Subscription updated.")
        else:
            ok = attempt(lambda: services.add_subscription(data), "Subscription added.")
        if ok:
            st.session_state.edit_subscription_id = None
            st.rerun()


def subscriptions_page():
    st.header("📡 Subscriptions")

    with st.sidebar:
        st.subheader("Search & Filters")
        search = st.text_input("Search (client/email/type)")
        status = st.selectbox("Status", ["All", *SUBSCRIPTION_STATUSES])
        sub_type = st.selectbox("Type", ["All", *SUBSCRIPTION_TYPES])

    rows = services.list_subscriptions(
        client_id=st.session_state.get("subscriptions_client_id"),
        search=search,
        status=None if status == "All" else status,
        sub_type=None if sub_type == "All" else sub_type,
    )
    if st.session_state.get("subscriptions_client_id") and st.button("Show all clients"):
        st.session_state.subscriptions_client_id = None
        st.rerun()

    df = utils.rows_to_frame(rows, ["id", "client_name", "type", "billing_cycle", "status", "next_payment_date"])
    st.dataframe(df, use_container_width=True, hide_index=True)

    if not df.empty:
        colA, colB = st.columns([1, 2])
        with colA:
            selected = st.selectbox("Subscription ID", options=["(none)"] + [str(i) for i in df["id"].tolist()])
        with colB:
            if selected != "(none)":
                sid = int(selected)
                c1, c2, c3, c4, c5 = st.columns(5)
                with c1:
                    if st.button("Edit", key="sub_edit"):
                        st.session_state.edit_subscription_id = sid
                        st.rerun()
                with c2:
                    if st.button("Stop") and attempt(lambda: billing.stop_subscription(sid), "Stopped."):
                        st.rerun()
                with c3:
                    if st.button("Resume") and attempt(lambda: billing.resume_subscription(sid), "Resumed."):
                        st.rerun()
                with c4:
                    if st.button("Record payment"):
                        st.session_state.payment_subscription_id = sid
                        st.session_state.page = "Payments"
                        st.rerun()
                with c5:
                    confirm = st.checkbox("Confirm delete", key="sub_del_confirm")
                    if st.button("Delete", disabled=not confirm):
                        if attempt(lambda: services.delete_subscription(sid), "Deleted."):
                            st.rerun()

    st.divider()

    clients = services.list_clients()
    if not clients:
        st.info("No clients yet. Add a client first.")
        return
    client_options = {f"{c['name']} ({c['email']}) - ID {c['id']}": c["id"] for c in clients}
    if st.session_state.get("edit_subscription_id"):
        subscription_form(client_options, existing=services.get_subscription(st.session_state.edit_subscription_id))
        if st.button("Cancel edit", key="sub_cancel_edit"):
            st.session_state.edit_subscription_id = None
            st.rerun()
    else:
        subscription_form(client_options)


def payments_page():
    st.header("💳 Payments")

    subs = services.list_subscriptions()
    if not subs:
        st.info("No subscriptions yet.")
        return

    options = {
        f"{s['client_name']} - {s['type']} (due {s['next_payment_date']}, {s['status']}) - ID {s['id']}": s["id"]
        for s in subs
    }
    labels = list(options.keys())
    wanted = st.session_state.get("payment_subscription_id")
    default_index = next((i for i, k in enumerate(labels) if options[k] == wanted), 0)
    chosen = st.selectbox("Subscription", labels, index=default_index)
    sub = services.get_subscription(options[chosen])
    client = services.get_client(sub.client_id)

    st.write(
        f"Cycle: **{sub.billing_cycle} month(s)** | Amount: **{sub.monthly_amount * sub.billing_cycle}** | "
        f"Due: **{sub.next_payment_date}** -> **{billing.next_due_date(sub.next_payment_date, sub.billing_cycle)}**"
    )

    st.subheader("Record payment")
    c1, c2, c3, c4 = st.columns([1, 1, 1, 2])
    with c1:
        amount = st.text_input("Amount", value=str(sub.monthly_amount * sub.billing_cycle))
    with c2:
        pay_date = st.date_input("Date", value=date.today())
    with c3:
        method = st.selectbox("Method", PAYMENT_METHODS)
    with c4:
        notes = st.text_input("Notes", value="")
    send_whatsapp = st.toggle(
        "Send WhatsApp confirmation", value=client.can_receive_whatsapp, disabled=not client.can_receive_whatsapp
    )

    if st.button("Record payment", type="primary"):
        request = {
            "subscription_id": sub.id, "amount": amount, "payment_date": pay_date,
            "payment_method": method, "notes": notes, "send_whatsapp": send_whatsapp,
        }
        holder = {}
        if attempt(lambda: holder.update(result=billing.process_payment(request))):
            result = holder["result"]
            st.success(f"Payment recorded. Next payment date: {result.next_payment_date}")
            if result.whatsapp_sent:
                st.info("WhatsApp confirmation sent.")
            elif result.whatsapp_error:
                st.warning(f"WhatsApp confirmation not sent: {result.whatsapp_error}")
            st.session_state.payment_subscription_id = sub.id

    st.divider()

    st.subheader("Payment history")
    rows = services.list_payments(subscription_id=sub.id)
    if rows:
        df = utils.rows_to_frame(rows)[["id", "amount", "payment_date", "payment_method", "notes"]]
        st.dataframe(df, use_container_width=True, hide_index=True)

        if current_user()["role"] == "admin":
            c1, c2 = st.columns([1, 2])
            with c1:
                pid = st.selectbox("Payment ID", ["(none)"] + [str(r["id"]) for r in rows])
            with c2:
                confirm = st.checkbox("Confirm delete (due date is not rolled back)", key="pay_del_confirm")
                if pid != "(none)" and st.button("Delete payment", disabled=not confirm):
                    if attempt(lambda: services.delete_payment(int(pid)), "Payment deleted."):
                        st.rerun()
    else:
        st.caption("No payments for this subscription yet.")


def reminders_page():
    st.header("⏰ Reminders")

    with st.sidebar:
        st.subheader("Filters")
        status = st.selectbox("Status", ["All", *REMINDER_STATUSES])
        whatsapp_only = st.checkbox("WhatsApp only")

    rows = services.list_reminders(
        status=None if status == "All" else status, whatsapp_only=True if whatsapp_only else None
    )
    df = utils.rows_to_frame(rows, ["id", "client_name", "message", "send_via_whatsapp", "status", "scheduled_date"])
    st.dataframe(df, use_container_width=True, hide_index=True)

    c1, c2, c3 = st.columns(3)
    with c1:
        if st.button("Queue reminders for upcoming due dates"):
            total, created = notifications.generate_due_reminders()
            st.success(f"{total} subscription(s) due, {created} reminder(s) created.")
    with c2:
        if st.button("Send all due reminders"):
            counts = notifications.send_bulk()
            st.success(f"Bulk send completed. Sent: {counts['sent']}, Failed: {counts['failed']}")
    with c3:
        pending = [str(r["id"]) for r in rows if r["status"] == "pending"]
        rid = st.selectbox("Pending reminder", ["(none)"] + pending)
        if rid != "(none)" and st.button("Send now"):
            result = notifications.send_reminder(int(rid))
            (st.success if result.success else st.error)(result.error or "Reminder sent.")

    all_ids = [str(r["id"]) for r in rows]
    d1, d2 = st.columns([1, 2])
    with d1:
        del_id = st.selectbox("Reminder", ["(none)"] + all_ids, key="rem_del_id")
    with d2:
        if del_id != "(none)" and st.button("Delete reminder"):
            if attempt(lambda: services.delete_reminder(int(del_id)), "Reminder deleted."):
                st.rerun()

    st.divider()

    st.subheader("➕ New reminder")
    clients = services.list_clients()
    if not clients:
        st.info("No clients yet.")
        return
    options = {f"{c['name']} ({c['phone'] or 'no phone'}) - ID {c['id']}": c["id"] for c in clients}
    label = st.selectbox("Client", list(options.keys()))
    templates = services.list_templates()
    template = st.selectbox("Template", ["(none)"] + [t.name for t in templates])
    default_text = next((t.content for t in templates if t.name == template), "")
    message = st.text_area("Message", value=default_text)
    via_whatsapp = st.checkbox("Send via WhatsApp")
    schedule = st.checkbox("Schedule for later")
    sched_date = st.date_input("Scheduled date", value=date.today(), disabled=not schedule)
    sched_time = st.time_input("Scheduled time", value=time(10, 0), disabled=not schedule)

    if st.button("Save reminder", type="primary"):
        data = {
            "client_id": options[label], "message": message, "send_via_whatsapp": via_whatsapp,
            "scheduled_date": datetime.combine(sched_date, sched_time) if schedule else None,
        }
        if attempt(lambda: services.add_reminder(data), "Reminder saved."):
            st.rerun()


def templates_page():
    st.header("📝 Message Templates")

    for t in services.list_templates():
        c1, c2 = st.columns([5, 1])
        c1.markdown(f"**{t.name}**  \n{t.content}")
        if c2.button("Delete", key=f"tpl_{t.id}"):
            if attempt(lambda: services.delete_template(t.id), "Template deleted."):
                st.rerun()

    st.divider()
    name = st.text_input("Name (optional)")
    content = st.text_area("Content")
    if st.button("Add template", type="primary"):
        if attempt(lambda: services.add_template({"name": name, "content": content}), "Template added."):
            st.rerun()


def reports_page():
    st.header("🧾 Reports")

    for title, rows, filename in (
        ("clients", services.list_clients(), "clients.csv"),
        ("subscriptions", services.list_subscriptions(), "subscriptions.csv"),
        ("payments", services.list_payments(), "payments.csv"),
    ):
        if rows:
            st.download_button(
                f"Download {filename}", data=utils.rows_to_csv_bytes(rows), file_name=filename, mime="text/csv"
            )
        else:
            st.caption(f"No {title} to export.")

    st.divider()

    st.subheader("Revenue summary by month")
    st.dataframe(utils.revenue_summary_by_month(), use_container_width=True, hide_index=True)

    st.subheader("Revenue by subscription type")
    st.dataframe(utils.revenue_by_subscription_type(), use_container_width=True, hide_index=True)

    st.subheader("Last 12 months")
    history = services.payment_history()
    st.dataframe(utils.rows_to_frame(history["monthly_history"]), use_container_width=True, hide_index=True)

    st.subheader("Recent payments")
    recent = history["recent_payments"]
    if recent:
        df = utils.rows_to_frame(recent)[["id", "client_name", "subscription_type", "amount", "payment_date"]]
        st.dataframe(df, use_container_width=True, hide_index=True)
    else:
        st.caption("No payments yet.")


def settings_page():
    st.header("⚙️ Settings")

    st.subheader("Change password")
    password_form("settings")

    if current_user()["role"] == "admin":
        st.divider()
        st.subheader("Staff accounts")
        st.dataframe(utils.rows_to_frame(auth.list_users()), use_container_width=True, hide_index=True)
        c1, c2, c3, c4 = st.columns(4)
        name = c1.text_input("Name")
        email = c2.text_input("Email")
        password = c3.text_input("Password", type="password")
        role = c4.selectbox("Role", auth.ROLES, index=1)
        if st.button("Add user"):
            if attempt(lambda: auth.add_user(name, email, password, role), "User added."):
                st.rerun()

        user_rows = auth.list_users()
        users = {f"{u['name']} ({u['email']})": u for u in user_rows}
        picked = st.selectbox("User", ["(none)", *users])
        if picked != "(none)":
            u = users[picked]
            e1, e2 = st.columns(2)
            new_name = e1.text_input("Display name", value=u["name"], key="edit_user_name")
            new_role = e2.selectbox("New role", auth.ROLES, index=auth.ROLES.index(u["role"]), key="edit_user_role")
            b1, b2 = st.columns(2)
            if b1.button("Save user"):
                if attempt(lambda: auth.edit_user(u["id"], new_name, new_role), "User updated."):
                    st.rerun()
            if b2.button("Delete user"):
                if attempt(lambda: auth.delete_user(u["id"]), "User deleted."):
                    st.rerun()

    st.divider()

    st.subheader("Sample data")
    st.caption("Insert 3 sample clients with subscriptions and a payment (adds new rows each run).")
    if st.button("Insert sample data"):
        utils.insert_sample_data()
        st.success("Sample data inserted.")
        st.rerun()


PAGES = {
    "Dashboard": dashboard_page,
    "Clients": clients_page,
    "Subscriptions": subscriptions_page,
    "Payments": payments_page,
    "Reminders": reminders_page,
    "Templates": templates_page,
    "Reports": reports_page,
    "Settings": settings_page,
}


def main_app():
    user = current_user()
    st.sidebar.title("📡 Spotnet")
    st.sidebar.caption(f"Logged in as: {user['name']} ({user['role']})")

    pages = list(PAGES)
    if "page" not in st.session_state:
        st.session_state.page = "Dashboard"
    st.session_state.page = st.sidebar.radio("Navigate", pages, index=pages.index(st.session_state.page))

    if st.sidebar.button("Logout"):
        logout()
        st.rerun()

    # Listings never show an overdue subscription as active
    billing.reconcile_expired()
    PAGES[st.session_state.page]()


# --------- App entry ---------

def run():
    init_once()
    require_login()

    try:
        if not st.session_state.user:
            raise AuthenticationError("Please log in.")

        # Force password change on first login after DB creation
        if db.is_force_password_change():
            force_change_password_screen()
            return

        main_app()
    except AuthenticationError:
        st.session_state.user = None
        login_screen()


if __name__ == "__main__":
    run()
