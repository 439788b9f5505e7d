"""Whitelist models.

Schema (do not change without a migration):
- Users are keyed by an integer insertion id; wallet address is unique and stored lowercase.
- referral_count is a cache of the referrals ledger and is rewritten on read when stale.
- A user can be referred at most once (unique referred_user_id).
"""

from datetime import datetime

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    ForeignKey,
    Index,
)

from extensions import db


class User(db.Model):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_address = Column(String(42), unique=True, nullable=False, index=True)
    referral_code = Column(String(16), unique=True, nullable=False, index=True)
    referred_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    referral_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_users_referred_by", "referred_by"),
        Index("idx_users_created_at", "created_at"),
    )


class Referral(db.Model):
    __tablename__ = "referrals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    referrer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    referred_user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_referrals_referrer_timestamp", "referrer_id", "timestamp"),
    )
