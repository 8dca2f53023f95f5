"""Recompute every user's stored balance from the transaction log.

Usage: python scripts/reconcile_balances.py [--apply] [--user USER_ID]

Without --apply only prints drifted users.
"""
import argparse
import logging
import os
import sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from sqlalchemy import select  # noqa: E402

from tanam.backend.database import get_session_factory  # noqa: E402
from tanam.backend.logging_setup import configure_logging  # noqa: E402
from tanam.backend.models import Balance, Transaction  # noqa: E402
from tanam.backend.services.ledger import list_transactions, persist_balance, reconcile  # noqa: E402

logger = logging.getLogger("reconcile_balances")


def find_drift(db, user_ids):
    """Yield ``(user_id, stored, computed)`` for users whose stored balance is missing or wrong."""
    for user_id in user_ids:
        stored = db.execute(select(Balance.balance).where(Balance.user_id == user_id)).scalar_one_or_none()
        computed = reconcile(list_transactions(db, user_id))
        if stored is None or stored != computed:
            yield user_id, stored, computed


def run(db, apply: bool = False, only_user: str | None = None) -> int:
    if only_user:
        user_ids = [only_user]
    else:
        user_ids = sorted(set(db.execute(select(Transaction.user_id).distinct()).scalars().all()))
    drifted = 0
    for user_id, stored, computed in list(find_drift(db, user_ids)):
        drifted += 1
        print(f"{user_id}: stored={stored} computed={computed}")
        if apply:
            persist_balance(db, user_id, computed)
            logger.info("balance_reconciled user_id=%s from=%s to=%s", user_id, stored, computed)
    return drifted


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--apply", action="store_true", help="write computed balances")
    parser.add_argument("--user", default=None, help="only this user id")
    args = parser.parse_args()
    configure_logging()
    factory = get_session_factory()
    with factory() as db:
        drifted = run(db, apply=args.apply, only_user=args.user)
    print(f"drifted users: {drifted}{' (fixed)' if args.apply and drifted else ''}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
