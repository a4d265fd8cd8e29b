"""Tests for the SQLite bridge store."""
import sqlite3
import threading

import pytest

from chatbridge.persistence.models import Setting
from chatbridge.persistence.store import BridgeStore, PairingCodeConflictError


def test_session_roundtrip(store):
    assert store.get_session("telegram", "42") is None
    store.upsert_session("telegram", "42", "ses_1")
    binding = store.get_session("telegram", "42")
    assert binding.session_id == "ses_1"
    assert binding.created_at == binding.updated_at


def test_upsert_session_replaces_and_bumps_updated_at(store, clock):
    store.upsert_session("telegram", "42", "ses_1")
    clock.advance(1000)
    store.upsert_session("telegram", "42", "ses_2")
    binding = store.get_session("telegram", "42")
    assert binding.session_id == "ses_2"
    assert binding.updated_at > binding.created_at


def test_upsert_session_within_one_clock_tick_still_moves_updated_at(store):
    store.upsert_session("telegram", "42", "ses_1")
    store.upsert_session("telegram", "42", "ses_2")
    first = store.get_session("telegram", "42")
    store.upsert_session("telegram", "42", "ses_3")
    second = store.get_session("telegram", "42")
    assert first.updated_at > first.created_at
    assert second.updated_at > first.updated_at
    assert second.created_at == first.created_at
    assert second.session_id == "ses_3"


def test_sessions_are_scoped_by_channel(store):
    store.upsert_session("telegram", "42", "ses_tg")
    assert store.get_session("whatsapp", "42") is None


def test_allow_peer_is_monotonic(store):
    assert not store.is_allowed("telegram", "42")
    store.allow_peer("telegram", "42")
    store.allow_peer("telegram", "42")
    assert store.is_allowed("telegram", "42")
    assert not store.is_allowed("whatsapp", "42")
    assert [e.peer_id for e in store.list_allowlist("telegram")] == ["42"]


def test_allow_peer_refreshes_timestamp(store, clock):
    store.allow_peer("telegram", "42")
    first = store.list_allowlist("telegram")[0].created_at
    clock.advance(5000)
    store.allow_peer("telegram", "42")
    assert store.list_allowlist("telegram")[0].created_at == first + 5000


def test_seed_allowlist_keeps_existing_entries(store, clock):
    store.allow_peer("whatsapp", "+15550000001")
    original = store.list_allowlist("whatsapp")[0].created_at
    clock.advance(1000)
    store.seed_allowlist("whatsapp", ["+15550000001", "+15550000002", "+15550000002"])
    entries = {e.peer_id: e.created_at for e in store.list_allowlist("whatsapp")}
    assert entries == {"+15550000001": original, "+15550000002": original + 1000}


def test_seed_allowlist_empty_is_noop(store):
    store.seed_allowlist("telegram", [])
    assert store.list_allowlist("telegram") == []


def test_pairing_request_approve_once(store):
    store.create_pairing_request("whatsapp", "+15551234567", "123456", 1000)
    pending = store.list_pairing_requests("whatsapp")
    assert [(r.peer_id, r.code) for r in pending] == [("+15551234567", "123456")]

    assert store.approve_pairing_request("whatsapp", "123456") == "+15551234567"
    assert store.list_pairing_requests("whatsapp") == []
    assert store.is_allowed("whatsapp", "+15551234567")
    assert store.approve_pairing_request("whatsapp", "123456") is None


def test_approve_unknown_code_returns_none(store):
    assert store.approve_pairing_request("telegram", "999999") is None


def test_approve_is_scoped_by_channel(store):
    store.create_pairing_request("telegram", "42", "123456", 60_000)
    assert store.approve_pairing_request("whatsapp", "123456") is None
    assert len(store.list_pairing_requests("telegram")) == 1


def test_expired_request_cannot_be_approved(store, clock):
    store.create_pairing_request("telegram", "42", "123456", 1000)
    clock.advance(1000)
    assert store.approve_pairing_request("telegram", "123456") is None
    assert not store.is_allowed("telegram", "42")


def test_expired_requests_are_not_listed(store, clock):
    store.create_pairing_request("telegram", "42", "111111", 1000)
    store.create_pairing_request("telegram", "43", "222222", None)
    clock.advance(2000)
    assert [r.peer_id for r in store.list_pairing_requests("telegram")] == ["43"]


def test_new_request_replaces_peers_previous_one(store, clock):
    store.create_pairing_request("telegram", "42", "111111", 60_000)
    clock.advance(10)
    store.create_pairing_request("telegram", "42", "222222", 60_000)
    assert [r.code for r in store.list_pairing_requests("telegram")] == ["222222"]
    assert store.approve_pairing_request("telegram", "111111") is None


def test_code_held_by_other_peer_conflicts(store):
    store.create_pairing_request("telegram", "42", "123456", 60_000)
    with pytest.raises(PairingCodeConflictError):
        store.create_pairing_request("telegram", "43", "123456", 60_000)
    assert [r.peer_id for r in store.list_pairing_requests("telegram")] == ["42"]


def test_requests_listed_in_creation_order(store, clock):
    store.create_pairing_request("telegram", "b", "222222", None)
    clock.advance(1)
    store.create_pairing_request("telegram", "a", "111111", None)
    assert [r.peer_id for r in store.list_pairing_requests("telegram")] == ["b", "a"]


def test_settings_last_write_wins(store):
    assert store.get_setting("pairing_code") is None
    store.set_setting("pairing_code", "123456")
    store.set_setting("pairing_code", "654321")
    assert store.get_setting("pairing_code") == "654321"


def test_data_survives_reopen(db_path, clock):
    first = BridgeStore(db_path, clock=clock)
    first.allow_peer("telegram", "42")
    first.upsert_session("telegram", "42", "ses_1")
    first.set_setting("pairing_code_created_at", "1700000000000")
    first.close()

    second = BridgeStore(db_path, clock=clock)
    try:
        assert second.is_allowed("telegram", "42")
        assert second.get_session("telegram", "42").session_id == "ses_1"
        assert second.get_setting("pairing_code_created_at") == "1700000000000"
    finally:
        second.close()


# ── Engine setup and concurrency ───────────────────────────────────────────────

def test_connections_use_wal_and_full_sync(store):
    with store._engine.connect() as conn:
        assert conn.exec_driver_sql("PRAGMA journal_mode").scalar() == "wal"
        assert conn.exec_driver_sql("PRAGMA synchronous").scalar() == 2


def test_transactions_take_the_write_lock_up_front(store, db_path):
    store.set_setting("k", "v")
    other = sqlite3.connect(db_path, timeout=0, isolation_level=None)
    try:
        with store._begin() as db:
            # a read alone would leave a deferred transaction without the lock
            assert db.get(Setting, "k").value == "v"
            with pytest.raises(sqlite3.OperationalError, match="locked"):
                other.execute("BEGIN IMMEDIATE")
        other.execute("BEGIN IMMEDIATE")
        other.execute("ROLLBACK")
    finally:
        other.close()


def test_approval_races_request_creation_without_losing_the_peer(db_path):
    approver = BridgeStore(db_path)
    requester = BridgeStore(db_path)
    try:
        for i in range(100):
            peer = f"+1555{i:07d}"
            old_code, new_code = f"A{i:05d}", f"B{i:05d}"
            requester.create_pairing_request("whatsapp", peer, old_code)
            results = {}
            start = threading.Barrier(2)

            def approve():
                start.wait()
                results["approved"] = approver.approve_pairing_request("whatsapp", old_code)

            def request():
                start.wait()
                requester.create_pairing_request("whatsapp", peer, new_code)

            threads = [threading.Thread(target=approve), threading.Thread(target=request)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            approved = results["approved"]
            assert approved in (peer, None)
            assert approver.is_allowed("whatsapp", peer) is (approved is not None)
            codes = [r.code for r in approver.list_pairing_requests("whatsapp") if r.peer_id == peer]
            assert codes == [new_code]
    finally:
        approver.close()
        requester.close()
