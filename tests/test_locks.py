import logging
import threading

from conftest import FakeClock

from feedrelay.db import connect_db
from feedrelay.locks import (
    TableLockManager,
    _lease_key,
    detect_lock_kind,
    holder_identity,
    select_lock_manager,
    with_schedule_lock,
)
from feedrelay.models import LockResult
from feedrelay.service import build_relay
from feedrelay.storage import get_schedule_lock


class ScriptedManager:
    holder = "scripted"

    def __init__(self, *results):
        self.results = list(results)
        self.acquired = []
        self.released = []

    def acquire(self, schedule_id):
        self.acquired.append(schedule_id)
        return self.results.pop(0)

    def release(self, schedule_id):
        self.released.append(schedule_id)


def test_table_lock_is_exclusive_between_holders(conn, clock):
    first = TableLockManager(conn, "node-a", ttl_seconds=300, clock=clock)
    second = TableLockManager(conn, "node-b", ttl_seconds=300, clock=clock)

    assert first.acquire("s1").acquired
    blocked = second.acquire("s1")
    assert not blocked.acquired
    assert blocked.reason == "locked"
    assert second.acquire("s2").acquired

    first.release("s1")
    assert second.acquire("s1").acquired


def test_expired_lock_is_taken_over(conn, clock):
    first = TableLockManager(conn, "node-a", ttl_seconds=300, clock=clock)
    second = TableLockManager(conn, "node-b", ttl_seconds=300, clock=clock)
    first.acquire("s1")

    clock.advance(seconds=301)
    result = second.acquire("s1")

    assert result.acquired
    assert result.reason == "taken_over"
    assert get_schedule_lock(conn, "s1")["locked_by"] == "node-b"


def test_release_by_other_holder_keeps_lock(conn, clock):
    first = TableLockManager(conn, "node-a", clock=clock)
    second = TableLockManager(conn, "node-b", clock=clock)
    first.acquire("s1")

    second.release("s1")

    assert get_schedule_lock(conn, "s1")["locked_by"] == "node-a"


def test_missing_lock_table_fails_open(conn):
    conn.execute("DROP TABLE schedule_locks")
    conn.commit()
    manager = TableLockManager(conn, "node-a", clock=FakeClock())

    result = manager.acquire("s1")

    assert result.acquired
    assert result.reason == "lock_table_missing"
    manager.release("s1")


def test_with_schedule_lock_skips_when_held():
    manager = ScriptedManager(LockResult(acquired=False, reason="locked"))
    calls = []

    run = with_schedule_lock(manager, "s1", lambda: calls.append("ran"))

    assert not run.acquired
    assert run.reason == "locked"
    assert calls == []
    assert manager.released == []


def test_with_schedule_lock_retries_once_and_always_releases():
    manager = ScriptedManager(
        LockResult(acquired=False, reason="locked"),
        LockResult(acquired=True, holder="scripted"),
    )
    sleeps = []

    run = with_schedule_lock(
        manager, "s1", lambda: "done", skip_if_locked=False, sleep=sleeps.append
    )

    assert run.acquired
    assert run.result == "done"
    assert sleeps == [1.0]
    assert manager.released == ["s1"]

    failing = ScriptedManager(LockResult(acquired=True))

    def _boom():
        raise RuntimeError("boom")

    try:
        with_schedule_lock(failing, "s2", _boom)
    except RuntimeError:
        pass
    assert failing.released == ["s2"]


def test_lease_key_is_stable_signed_64_bit():
    key = _lease_key("schedule:s1")
    assert key == _lease_key("schedule:s1")
    assert key != _lease_key("schedule:s2")
    assert -(2**63) <= key < 2**63


def test_select_lock_manager_uses_table_on_sqlite(conn):
    manager = select_lock_manager(conn, holder="node-a")
    assert isinstance(manager, TableLockManager)
    assert manager.holder == "node-a"


def test_holder_identity_prefers_instance_id(monkeypatch):
    monkeypatch.setenv("FR_INSTANCE_ID", "node-7")
    assert holder_identity().startswith("node-7:")
    monkeypatch.delenv("FR_INSTANCE_ID")
    monkeypatch.delenv("HOSTNAME", raising=False)
    assert holder_identity().startswith("feedrelay-")


def test_same_holder_cannot_retake_unexpired_lock(conn, clock):
    manager = TableLockManager(conn, "web-1:42", ttl_seconds=300, clock=clock)
    assert manager.acquire("s1").acquired

    again = manager.acquire("s1")

    assert not again.acquired
    assert again.reason == "locked"


def test_concurrent_runs_with_same_identity_are_exclusive(db_path, monkeypatch):
    monkeypatch.delenv("FR_INSTANCE_ID", raising=False)
    monkeypatch.setenv("HOSTNAME", "web-1")
    first_conn = connect_db(db_path)
    second_conn = connect_db(db_path)
    first = select_lock_manager(first_conn)
    second = select_lock_manager(second_conn)
    assert first.holder == second.holder

    entered = threading.Event()
    finish = threading.Event()
    inside = []

    def _hold():
        inside.append("a")
        entered.set()
        finish.wait(timeout=5)

    runs = {}
    worker = threading.Thread(
        target=lambda: runs.setdefault("a", with_schedule_lock(first, "s1", _hold))
    )
    worker.start()
    try:
        assert entered.wait(timeout=5)
        runs["b"] = with_schedule_lock(second, "s1", lambda: inside.append("b"))
    finally:
        finish.set()
        worker.join(timeout=5)
        first_conn.close()
        second_conn.close()

    assert runs["a"].acquired
    assert not runs["b"].acquired
    assert inside == ["a"]


def test_lock_kind_detected_once_is_reused(conn, caplog):
    caplog.set_level(logging.INFO, logger="feedrelay")
    kind = detect_lock_kind(conn)
    assert kind == "table"
    caplog.clear()

    relay = build_relay(conn, lock_kind=kind)

    assert isinstance(relay.locks, TableLockManager)
    assert "lock_manager_selected" not in caplog.text
