#!/usr/bin/env python3
"""Rewrite every cached users.referral_count from the referrals ledger.

Reads already self-heal one user at a time; this does the whole table in one
pass. Safe to run repeatedly (e.g., from a scheduler after a data import).

Run from the repository root:
  python -m scripts.reconcile_referral_counts
"""

import logging
import sys

from app import create_app
from storage import get_store


logger = logging.getLogger(__name__)


def reconcile_all(store) -> dict:
    counts = store.referral_counts()
    checked = repaired = failed = 0

    for user in store.list_users():
        checked += 1
        ledger_count = counts.get(user.id, 0)
        if ledger_count == user.referral_count:
            continue
        try:
            store.set_cached_count(user.id, ledger_count)
            repaired += 1
        except Exception:
            logger.warning("Could not persist referral_count for user %s", user.id, exc_info=True)
            failed += 1

    return {"ok": failed == 0, "checked": checked, "repaired": repaired, "failed": failed}


def main():
    app = create_app()
    with app.app_context():
        result = reconcile_all(get_store())
    print(result)
    return 0 if result["ok"] else 1


if __name__ == "__main__":
    sys.exit(main())
