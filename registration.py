"""Wallet registration and referral-count reconciliation.

Registration flow:
- validate the wallet (0x + 40 hex chars), reject duplicates,
- resolve an optional referral code (a miss is not an error),
- create the user with a fresh 8-char code; the referrer's ledger row is
  written in the same step,
- rewrite the referrer's cached count.

The ledger (referrals table) is the source of truth. Cached counts are repaired
whenever a user is read; failures while repairing are logged and swallowed.
"""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass

from errors import ConflictError, ValidationError
from storage import ReferralCodeTaken, UserRecord, WhitelistStore


logger = logging.getLogger(__name__)

_WALLET_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")

REFERRAL_CODE_ATTEMPTS = 10


def validate_wallet_address(wallet_address) -> str:
    """Return the lowercased wallet or raise ValidationError."""
    if not isinstance(wallet_address, str) or not wallet_address.strip():
        raise ValidationError("Wallet address is required")
    wallet = wallet_address.strip()
    if not _WALLET_RE.match(wallet):
        raise ValidationError("Invalid BNB Chain wallet address")
    return wallet.lower()


def normalize_referral_code(code) -> str:
    if not isinstance(code, str):
        return ""
    return code.strip().upper()


def generate_referral_code() -> str:
    # 8 uppercase hex chars
    return secrets.token_hex(4).upper()


@dataclass
class RegistrationResult:
    user: UserRecord
    had_referral_code: bool
    referrer: UserRecord | None = None

    def to_dict(self) -> dict:
        return {
            "user": self.user.to_dict(),
            "referralInfo": {
                "hadReferralCode": self.had_referral_code,
                "referrerFound": self.referrer is not None,
                "referredBy": self.referrer.id if self.referrer else None,
            },
        }


def reconcile_user(store: WhitelistStore, user: UserRecord, ledger_count: int | None = None) -> UserRecord:
    """Bring user.referral_count in line with the ledger (read repair).

    When the recount itself fails the cached value is kept.
    """
    if ledger_count is None:
        try:
            ledger_count = store.count_referrals(user.id)
        except Exception:
            logger.warning("Referral recount failed for user %s; using cached count", user.id, exc_info=True)
            return user

    if ledger_count != user.referral_count:
        logger.info(
            "Repairing referral_count for user %s: cached=%s ledger=%s",
            user.id, user.referral_count, ledger_count,
        )
        try:
            store.set_cached_count(user.id, ledger_count)
        except Exception:
            logger.warning("Could not persist referral_count for user %s", user.id, exc_info=True)
        user.referral_count = ledger_count
    return user


def lookup_user(store: WhitelistStore, wallet_address) -> UserRecord | None:
    wallet = validate_wallet_address(wallet_address)
    user = store.get_user_by_wallet(wallet)
    if user is None:
        return None
    return reconcile_user(store, user)


def _create_with_fresh_code(store: WhitelistStore, wallet: str, referred_by: int | None) -> UserRecord:
    for _ in range(REFERRAL_CODE_ATTEMPTS):
        code = generate_referral_code()
        if store.get_user_by_referral_code(code) is not None:
            continue
        try:
            return store.create_user(wallet, code, referred_by)
        except ReferralCodeTaken:
            # Lost a race for this code; draw another.
            continue
    raise RuntimeError("Could not allocate a unique referral code")


def register_wallet(store: WhitelistStore, wallet_address, referral_code=None) -> RegistrationResult:
    wallet = validate_wallet_address(wallet_address)

    existing = store.get_user_by_wallet(wallet)
    if existing is not None:
        raise ConflictError("Wallet already registered", user=reconcile_user(store, existing).to_dict())

    code = normalize_referral_code(referral_code)
    referrer = None
    if code:
        referrer = store.get_user_by_referral_code(code)
        if referrer is None:
            logger.warning("Referral code %r not found; registering %s without a referrer", code, wallet)
        else:
            logger.info("Wallet %s referred by user %s (%s)", wallet, referrer.id, referrer.wallet_address)

    user = _create_with_fresh_code(store, wallet, referrer.id if referrer else None)
    logger.info("Registered wallet %s as user %s", wallet, user.id)

    if referrer is not None:
        # The ledger row was written with the user; only the cache is stale.
        referrer = reconcile_user(store, referrer)

    # Any non-empty value counts as "had a code", even one that trims to nothing.
    return RegistrationResult(user=user, had_referral_code=bool(referral_code), referrer=referrer)
