import json
import logging

import pytest

from conftest import make_wallet
from errors import ConfigurationError, ConflictError
from scripts.reconcile_referral_counts import reconcile_all
from storage import (
    JsonFileWhitelistStore,
    ReferralCodeTaken,
    SqlWhitelistStore,
    build_store,
)


def test_build_store_selection(tmp_path):
    assert isinstance(build_store({"WHITELIST_STORE": "sql", "SQLALCHEMY_DATABASE_URI": "sqlite://"}), SqlWhitelistStore)
    assert isinstance(
        build_store({"WHITELIST_STORE": "file", "WHITELIST_DATA_DIR": str(tmp_path)}), JsonFileWhitelistStore
    )

    with pytest.raises(ConfigurationError):
        build_store({"WHITELIST_STORE": "sql", "SQLALCHEMY_DATABASE_URI": None})
    with pytest.raises(ConfigurationError):
        build_store({"WHITELIST_STORE": "supabase"})


def test_file_store_users_and_ledger(tmp_path):
    store = JsonFileWhitelistStore(str(tmp_path))
    a = store.create_user(make_wallet(0xAA).upper().replace("0X", "0x"), "AAAA1111")
    b = store.create_user(make_wallet(0xBB), "BBBB2222", referred_by=a.id)

    assert a.id == 1 and b.id == 2
    assert a.wallet_address == make_wallet(0xAA)
    assert store.get_user_by_wallet(make_wallet(0xAA)).id == a.id
    assert store.get_user_by_referral_code("BBBB2222").referred_by == a.id
    assert store.get_user_by_id(99) is None

    with pytest.raises(ConflictError):
        store.create_user(make_wallet(0xAA), "CCCC3333")
    with pytest.raises(ReferralCodeTaken):
        store.create_user(make_wallet(0xCC), "AAAA1111")

    assert store.count_referrals(a.id) == 1
    assert store.referral_counts() == {a.id: 1}
    assert store.total_referrals() == 1

    store.set_cached_count(a.id, 1)
    assert store.get_user_by_id(a.id).referral_count == 1


def test_file_store_persists_across_instances(tmp_path):
    JsonFileWhitelistStore(str(tmp_path)).create_user(make_wallet(1), "AAAA1111")

    reopened = JsonFileWhitelistStore(str(tmp_path))
    assert [u.wallet_address for u in reopened.list_users()] == [make_wallet(1)]

    with open(tmp_path / "users.json", encoding="utf-8") as fh:
        rows = json.load(fh)
    assert rows[0]["referral_code"] == "AAAA1111"
    assert not list(tmp_path.glob("*.tmp"))


def test_file_backed_app_end_to_end(make_app, tmp_path):
    app = make_app(WHITELIST_STORE="file", WHITELIST_DATA_DIR=str(tmp_path / "wl"))
    client = app.test_client()

    ref = client.post("/api/registerWallet", json={"walletAddress": make_wallet(1)}).get_json()["user"]
    resp = client.post("/api/registerWallet", json={"walletAddress": make_wallet(2), "referralCode": ref["referralCode"]})
    assert resp.status_code == 201

    dup = client.post("/api/registerWallet", json={"walletAddress": make_wallet(2)})
    assert dup.status_code == 400

    board = client.get("/api/leaderboard").get_json()["leaderboard"]
    assert [(e["walletAddress"], e["referralCount"]) for e in board] == [(make_wallet(1), 1), (make_wallet(2), 0)]

    health = client.get("/api/health").get_json()
    assert health["status"] == "healthy"
    assert health["store"] == "file"


def test_reconcile_all_repairs_every_user(register, with_store):
    a = register(make_wallet(1)).get_json()["user"]
    b = register(make_wallet(2)).get_json()["user"]
    register(make_wallet(3), a["referralCode"])

    def corrupt(store):
        store.set_cached_count(a["id"], 0)
        store.set_cached_count(b["id"], 7)

    with_store(corrupt)

    result = with_store(reconcile_all)
    assert result == {"ok": True, "checked": 3, "repaired": 2, "failed": 0}
    assert with_store(lambda s: s.get_user_by_id(a["id"]).referral_count) == 1
    assert with_store(lambda s: s.get_user_by_id(b["id"]).referral_count) == 0


def test_health(client):
    body = client.get("/api/health").get_json()
    assert body["status"] == "healthy"
    assert body["store"] == "sql"


def test_health_reports_missing_store(make_app):
    resp = make_app(WHITELIST_STORE="file", WHITELIST_DATA_DIR="").test_client().get("/api/health")
    assert resp.status_code == 500
    assert resp.get_json()["status"] == "unhealthy"


def test_responses_carry_default_headers(client):
    resp = client.get("/api/tasks")
    assert resp.headers["Cache-Control"] == "no-store"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"


def test_file_store_drops_user_when_ledger_write_fails(tmp_path, monkeypatch):
    store = JsonFileWhitelistStore(str(tmp_path))
    a = store.create_user(make_wallet(1), "AAAA1111")

    def boom(referrer_id, referred_user_id):
        raise OSError("disk full")

    monkeypatch.setattr(store, "_append_referral", boom)
    with pytest.raises(OSError):
        store.create_user(make_wallet(2), "BBBB2222", referred_by=a.id)

    assert [u.wallet_address for u in store.list_users()] == [make_wallet(1)]
    assert store.total_referrals() == 0

    monkeypatch.undo()
    b = store.create_user(make_wallet(2), "BBBB2222", referred_by=a.id)
    assert b.referred_by == a.id
    assert store.count_referrals(a.id) == 1


def test_sql_store_duplicate_wallet_insert_is_a_conflict(register, with_store):
    wallet = register(make_wallet(1)).get_json()["user"]["walletAddress"]

    with pytest.raises(ConflictError):
        with_store(lambda s: s.create_user(wallet, "C0FFEE00"))

    assert len(with_store(lambda s: s.list_users())) == 1


def test_sql_store_code_collision_raises_referral_code_taken(register, with_store):
    code = register(make_wallet(1)).get_json()["user"]["referralCode"]

    with pytest.raises(ReferralCodeTaken):
        with_store(lambda s: s.create_user(make_wallet(2), code))

    assert with_store(lambda s: s.get_user_by_wallet(make_wallet(2))) is None


def test_reconcile_all_logs_and_counts_failed_writes(register, with_store, monkeypatch, caplog):
    a = register(make_wallet(1)).get_json()["user"]
    register(make_wallet(2), a["referralCode"])
    with_store(lambda s: s.set_cached_count(a["id"], 0))

    def boom(self, user_id, count):
        raise RuntimeError("db down")

    monkeypatch.setattr(SqlWhitelistStore, "set_cached_count", boom)
    with caplog.at_level(logging.WARNING, logger="scripts.reconcile_referral_counts"):
        result = with_store(reconcile_all)

    assert result == {"ok": False, "checked": 2, "repaired": 0, "failed": 1}
    assert f"Could not persist referral_count for user {a['id']}" in caplog.text
