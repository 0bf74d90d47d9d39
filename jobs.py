"""
jobs.py
Scheduled housekeeping, meant for cron:

    0 * * * *  spotnet-jobs sweep
    0 8 * * *  spotnet-jobs reminders --send
"""

from __future__ import annotations

import argparse
import logging
import sys

import auth
import billing
import db
import notifications
from logging_config import configure_logging

logger = logging.getLogger(__name__)


def cmd_sweep(args: argparse.Namespace) -> int:
    changed = billing.sweep_expired()
    print(f"Expired subscriptions: {changed}")
    return 0


def cmd_reminders(args: argparse.Namespace) -> int:
    total, created = notifications.generate_due_reminders(days_ahead=args.days)
    print(f"Subscriptions due in {args.days if args.days is not None else 'configured'} days: {total}")
    print(f"Reminders created: {created}")
    if args.send:
        counts = notifications.send_bulk()
        print(f"Sent: {counts['sent']}, Failed: {counts['failed']}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="spotnet-jobs", description="Subscription housekeeping jobs")
    sub = parser.add_subparsers(dest="command", required=True)

    p_sweep = sub.add_parser("sweep", help="expire active subscriptions whose due date has passed")
    p_sweep.set_defaults(func=cmd_sweep)

    p_rem = sub.add_parser("reminders", help="queue WhatsApp reminders for upcoming due dates")
    p_rem.add_argument("--days", type=int, default=None, help="days ahead of the due date (default from settings)")
    p_rem.add_argument("--send", action="store_true", help="also send every pending reminder that is due")
    p_rem.set_defaults(func=cmd_reminders)

    return parser


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    args = build_parser().parse_args(argv)
    db.init_db(auth.hash_password("admin123"))
    try:
        return args.func(args)
    except Exception:
        logger.exception("Job %s failed", args.command)
        return 1


if __name__ == "__main__":
    sys.exit(main())
