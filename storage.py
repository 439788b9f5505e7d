"""Whitelist storage backends.

One store is chosen in create_app() and kept on app.extensions["whitelist_store"].
There is no runtime fallback from one backend to another.

- SqlWhitelistStore: Flask-SQLAlchemy (Postgres in production, SQLite locally).
- JsonFileWhitelistStore: users.json / referrals.json in a data directory, for
  local development only (WHITELIST_STORE=file).
"""

from __future__ import annotations

import abc
import json
import os
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime

from flask import current_app
from sqlalchemy import func, text
from sqlalchemy.exc import IntegrityError

from errors import ConfigurationError, ConflictError
from extensions import db
from models_whitelist import Referral, User


STORE_EXTENSION_KEY = "whitelist_store"


class ReferralCodeTaken(Exception):
    """Raised by create_user() when the generated referral code already exists."""


def _iso(dt: datetime) -> str:
    return dt.isoformat() + "Z"


def _parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value.rstrip("Z"))


@dataclass
class UserRecord:
    id: int
    wallet_address: str
    referral_code: str
    referred_by: int | None
    referral_count: int
    created_at: datetime

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "walletAddress": self.wallet_address,
            "referralCode": self.referral_code,
            "referredBy": self.referred_by,
            "referralCount": int(self.referral_count or 0),
            "createdAt": _iso(self.created_at),
        }


class WhitelistStore(abc.ABC):
    name = "abstract"

    @abc.abstractmethod
    def ping(self) -> None:
        """Raise if the backend is unreachable."""

    @abc.abstractmethod
    def get_user_by_id(self, user_id: int) -> UserRecord | None: ...

    @abc.abstractmethod
    def get_user_by_wallet(self, wallet_address: str) -> UserRecord | None: ...

    @abc.abstractmethod
    def get_user_by_referral_code(self, code: str) -> UserRecord | None: ...

    @abc.abstractmethod
    def create_user(self, wallet_address: str, referral_code: str, referred_by: int | None = None) -> UserRecord:
        """Insert a user, plus its ledger row when referred_by is set.

        Both rows land together or not at all. Raises ConflictError when the
        wallet exists and ReferralCodeTaken when the code collides with another
        user's.
        """

    @abc.abstractmethod
    def count_referrals(self, referrer_id: int) -> int: ...

    @abc.abstractmethod
    def referral_counts(self) -> dict[int, int]:
        """Ledger row count per referrer id (referrers with zero rows are absent)."""

    @abc.abstractmethod
    def total_referrals(self) -> int: ...

    @abc.abstractmethod
    def list_users(self) -> list[UserRecord]:
        """Every user, oldest first."""

    @abc.abstractmethod
    def set_cached_count(self, user_id: int, count: int) -> None: ...


# -------------------------------
# SQL (Flask-SQLAlchemy)
# -------------------------------

def _user_record(row: User) -> UserRecord:
    return UserRecord(
        id=row.id,
        wallet_address=row.wallet_address,
        referral_code=row.referral_code,
        referred_by=row.referred_by,
        referral_count=int(row.referral_count or 0),
        created_at=row.created_at,
    )


class SqlWhitelistStore(WhitelistStore):
    name = "sql"

    def ping(self) -> None:
        db.session.execute(text("SELECT 1"))

    def get_user_by_id(self, user_id):
        row = db.session.get(User, user_id)
        return _user_record(row) if row else None

    def get_user_by_wallet(self, wallet_address):
        row = User.query.filter_by(wallet_address=wallet_address.lower()).first()
        return _user_record(row) if row else None

    def get_user_by_referral_code(self, code):
        row = User.query.filter_by(referral_code=code).first()
        return _user_record(row) if row else None

    def create_user(self, wallet_address, referral_code, referred_by=None):
        wallet_address = wallet_address.lower()
        row = User(
            wallet_address=wallet_address,
            referral_code=referral_code,
            referred_by=referred_by,
            referral_count=0,
            created_at=datetime.utcnow(),
        )
        db.session.add(row)
        try:
            # One transaction: the user id is needed for the ledger row.
            db.session.flush()
            if referred_by is not None:
                db.session.add(self._ledger_row(referred_by, row.id))
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            # Tell the two unique constraints apart by re-reading.
            if User.query.filter_by(wallet_address=wallet_address).first() is not None:
                raise ConflictError("Wallet already registered")
            if User.query.filter_by(referral_code=referral_code).first() is not None:
                raise ReferralCodeTaken(referral_code)
            raise
        except Exception:
            db.session.rollback()
            raise
        return _user_record(row)

    @staticmethod
    def _ledger_row(referrer_id: int, referred_user_id: int) -> Referral:
        return Referral(
            referrer_id=referrer_id,
            referred_user_id=referred_user_id,
            timestamp=datetime.utcnow(),
        )

    def count_referrals(self, referrer_id):
        return int(
            db.session.query(func.count(Referral.id))
            .filter(Referral.referrer_id == referrer_id)
            .scalar()
            or 0
        )

    def referral_counts(self):
        rows = (
            db.session.query(Referral.referrer_id, func.count(Referral.id))
            .group_by(Referral.referrer_id)
            .all()
        )
        return {int(referrer_id): int(cnt) for referrer_id, cnt in rows}

    def total_referrals(self):
        return int(db.session.query(func.count(Referral.id)).scalar() or 0)

    def list_users(self):
        rows = User.query.order_by(User.created_at.asc(), User.id.asc()).all()
        return [_user_record(r) for r in rows]

    def set_cached_count(self, user_id, count):
        try:
            User.query.filter_by(id=user_id).update({"referral_count": int(count)})
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise


# -------------------------------
# JSON files (local development)
# -------------------------------

class JsonFileWhitelistStore(WhitelistStore):
    """File-backed store.

    Writes are serialised with a process-local lock and land atomically
    (temp file + os.replace). Not safe across multiple worker processes.
    """

    name = "file"

    def __init__(self, data_dir: str):
        self.data_dir = data_dir
        self.users_path = os.path.join(data_dir, "users.json")
        self.referrals_path = os.path.join(data_dir, "referrals.json")
        self._lock = threading.RLock()
        os.makedirs(data_dir, exist_ok=True)

    # ---- file helpers ----

    def _read(self, path: str) -> list[dict]:
        if not os.path.exists(path):
            return []
        with open(path, "r", encoding="utf-8") as fh:
            raw = fh.read()
        return json.loads(raw) if raw.strip() else []

    def _write(self, path: str, rows: list[dict]) -> None:
        fd, tmp_path = tempfile.mkstemp(dir=self.data_dir, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(rows, fh, indent=2)
            os.replace(tmp_path, path)
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    @staticmethod
    def _to_user(row: dict) -> UserRecord:
        return UserRecord(
            id=int(row["id"]),
            wallet_address=row["wallet_address"],
            referral_code=row["referral_code"],
            referred_by=row.get("referred_by"),
            referral_count=int(row.get("referral_count") or 0),
            created_at=_parse_iso(row["created_at"]),
        )

    def _find_user(self, **match) -> UserRecord | None:
        with self._lock:
            for row in self._read(self.users_path):
                if all(row.get(k) == v for k, v in match.items()):
                    return self._to_user(row)
        return None

    # ---- store API ----

    def ping(self):
        if not os.path.isdir(self.data_dir):
            raise ConfigurationError(f"Data directory {self.data_dir} does not exist")

    def get_user_by_id(self, user_id):
        return self._find_user(id=user_id)

    def get_user_by_wallet(self, wallet_address):
        return self._find_user(wallet_address=wallet_address.lower())

    def get_user_by_referral_code(self, code):
        return self._find_user(referral_code=code)

    def create_user(self, wallet_address, referral_code, referred_by=None):
        wallet_address = wallet_address.lower()
        with self._lock:
            users = self._read(self.users_path)
            if any(u["wallet_address"] == wallet_address for u in users):
                raise ConflictError("Wallet already registered")
            if any(u["referral_code"] == referral_code for u in users):
                raise ReferralCodeTaken(referral_code)
            row = {
                "id": max((int(u["id"]) for u in users), default=0) + 1,
                "wallet_address": wallet_address,
                "referral_code": referral_code,
                "referred_by": referred_by,
                "referral_count": 0,
                "created_at": datetime.utcnow().isoformat(),
            }
            self._write(self.users_path, users + [row])
            if referred_by is not None:
                try:
                    self._append_referral(int(referred_by), row["id"])
                except Exception:
                    # Undo the user so a retry can register the wallet again.
                    self._write(self.users_path, users)
                    raise
        return self._to_user(row)

    def _append_referral(self, referrer_id: int, referred_user_id: int) -> None:
        referrals = self._read(self.referrals_path)
        referrals.append({
            "id": max((int(r["id"]) for r in referrals), default=0) + 1,
            "referrer_id": referrer_id,
            "referred_user_id": referred_user_id,
            "timestamp": datetime.utcnow().isoformat(),
        })
        self._write(self.referrals_path, referrals)

    def count_referrals(self, referrer_id):
        return self.referral_counts().get(int(referrer_id), 0)

    def referral_counts(self):
        counts: dict[int, int] = {}
        with self._lock:
            for row in self._read(self.referrals_path):
                rid = int(row["referrer_id"])
                counts[rid] = counts.get(rid, 0) + 1
        return counts

    def total_referrals(self):
        with self._lock:
            return len(self._read(self.referrals_path))

    def list_users(self):
        with self._lock:
            users = [self._to_user(r) for r in self._read(self.users_path)]
        return sorted(users, key=lambda u: (u.created_at, u.id))

    def set_cached_count(self, user_id, count):
        with self._lock:
            users = self._read(self.users_path)
            for row in users:
                if int(row["id"]) == int(user_id):
                    row["referral_count"] = int(count)
                    break
            else:
                return
            self._write(self.users_path, users)


# -------------------------------
# Selection
# -------------------------------

def build_store(config) -> WhitelistStore:
    """Instantiate the configured backend. Raises ConfigurationError on bad config."""
    kind = (config.get("WHITELIST_STORE") or "sql").strip().lower()
    if kind == "sql":
        if not config.get("SQLALCHEMY_DATABASE_URI"):
            raise ConfigurationError("DATABASE_URL is not configured")
        return SqlWhitelistStore()
    if kind == "file":
        data_dir = config.get("WHITELIST_DATA_DIR")
        if not data_dir:
            raise ConfigurationError("WHITELIST_DATA_DIR is not configured")
        return JsonFileWhitelistStore(data_dir)
    raise ConfigurationError(f"Unknown WHITELIST_STORE '{kind}'")


def get_store() -> WhitelistStore:
    store = current_app.extensions.get(STORE_EXTENSION_KEY)
    if store is None:
        raise ConfigurationError("Whitelist storage is not configured")
    return store
