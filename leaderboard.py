from __future__ import annotations

import logging

from registration import reconcile_user
from storage import UserRecord, WhitelistStore


logger = logging.getLogger(__name__)


# Referral tiers: (name, minimum referral count)
TIERS: list[tuple[str, int]] = [
    ("Tourist", 0),
    ("Survivor", 1),
    ("Pain Holder", 4),
    ("Cope Lord", 11),
    ("Peak Cope", 26),
]


def tier_for(referral_count: int) -> str:
    count = max(0, int(referral_count or 0))
    tier = TIERS[0][0]
    for name, threshold in TIERS:
        if count >= threshold:
            tier = name
    return tier


def rank_key(user: UserRecord):
    # Most referrals first; FCFS on ties; insertion id settles identical timestamps.
    return (-int(user.referral_count or 0), user.created_at, user.id)


def rank_users(users: list[UserRecord]) -> list[dict]:
    """Order users and assign sequential ranks (1..N, no shared ranks)."""
    ordered = sorted(users, key=rank_key)
    return [
        {
            "rank": i + 1,
            "walletAddress": u.wallet_address,
            "referralCount": int(u.referral_count or 0),
            "tier": tier_for(u.referral_count),
            "joinedAt": u.to_dict()["createdAt"],
        }
        for i, u in enumerate(ordered)
    ]


def load_ranked_users(store: WhitelistStore) -> list[UserRecord]:
    """Every user with its ledger-derived referral count (stale caches are repaired)."""
    users = store.list_users()
    try:
        counts = store.referral_counts()
    except Exception:
        logger.warning("Ledger aggregation failed; leaderboard uses cached counts", exc_info=True)
        return users

    return [reconcile_user(store, u, counts.get(u.id, 0)) for u in users]


def build_leaderboard(store: WhitelistStore, wallet_address: str | None = None) -> dict:
    users = load_ranked_users(store)
    entries = rank_users(users)

    current_user = None
    if wallet_address:
        wallet = wallet_address.strip().lower()
        current_user = next((e for e in entries if e["walletAddress"] == wallet), None)

    return {
        "leaderboard": entries,
        "currentUser": current_user,
        "totalParticipants": len(entries),
        "totalReferrals": sum(e["referralCount"] for e in entries),
    }
