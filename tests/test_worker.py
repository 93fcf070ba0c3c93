import logging
from datetime import datetime, timedelta, timezone

from conftest import START, make_item, seed_feed, seed_schedule, seed_targets

from feedrelay.config import get_settings
from feedrelay.db import connect_db
from feedrelay.models import Schedule
from feedrelay.service import build_relay, process_feed
from feedrelay.storage import list_obligations
from feedrelay.utils import isoformat_utc
from feedrelay.worker import (
    WorkerState,
    is_schedule_due,
    latest_fixed_slot,
    list_due_schedules,
    maybe_run_maintenance,
    run_once,
)


def _schedule(**overrides):
    values = {
        "id": "s1",
        "name": "s1",
        "feed_id": "f1",
        "template_id": None,
        "target_ids": ["t1"],
        "delivery_mode": "immediate",
        "interval_minutes": None,
        "fixed_times": [],
        "timezone": None,
        "active": True,
        "approval_required": False,
        "last_run_at": None,
    }
    values.update(overrides)
    return Schedule(**values)


def _ago(**kwargs):
    return isoformat_utc(START - timedelta(**kwargs))


def test_immediate_schedule_needs_pending_work_and_recheck_gap():
    assert not is_schedule_due(_schedule(), START, has_pending=False)
    assert is_schedule_due(_schedule(), START, has_pending=True)
    assert not is_schedule_due(_schedule(last_run_at=_ago(seconds=30)), START, True)
    assert is_schedule_due(_schedule(last_run_at=_ago(seconds=61)), START, True)


def test_interval_schedule():
    interval = _schedule(delivery_mode="interval", interval_minutes=30)
    assert is_schedule_due(interval, START, has_pending=False)
    assert not is_schedule_due(
        _schedule(delivery_mode="interval", interval_minutes=30, last_run_at=_ago(minutes=10)),
        START,
        False,
    )
    assert is_schedule_due(
        _schedule(delivery_mode="interval", interval_minutes=30, last_run_at=_ago(minutes=30)),
        START,
        False,
    )
    assert not is_schedule_due(_schedule(delivery_mode="interval"), START, True)


def test_fixed_times_schedule_runs_once_per_slot():
    # START is 08:00 in New York.
    fixed = {
        "delivery_mode": "fixed-times",
        "fixed_times": ["08:00", "18:30"],
        "timezone": "America/New_York",
    }
    assert is_schedule_due(_schedule(**fixed), START, False)
    assert is_schedule_due(_schedule(last_run_at=_ago(minutes=1), **fixed), START, False)
    assert not is_schedule_due(_schedule(last_run_at=isoformat_utc(START), **fixed), START, False)
    assert not is_schedule_due(_schedule(**fixed, active=False), START, True)


def test_latest_fixed_slot():
    later = START + timedelta(hours=1)
    assert latest_fixed_slot(["18:30"], "America/New_York", later) == datetime(
        2024, 3, 12, 22, 30, tzinfo=timezone.utc
    )
    assert latest_fixed_slot(["11:00"], "Mars/Olympus_Mons", START) == datetime(
        2024, 3, 13, 11, 0, tzinfo=timezone.utc
    )
    assert latest_fixed_slot(["25:00", "noon"], "UTC", START) is None
    assert latest_fixed_slot([], "UTC", START) is None


def test_list_due_schedules_checks_pending_work(relay, conn, source):
    seed_feed(conn)
    seed_targets(conn, "t1", "t2")
    seed_schedule(conn, "s1")
    seed_schedule(conn, "s2", delivery_mode="interval", interval_minutes=15)
    settings = get_settings(conn)

    assert [s.id for s in list_due_schedules(conn, settings, START)] == ["s2"]

    source.push([make_item(1)])
    process_feed(relay, "f1")
    assert [s.id for s in list_due_schedules(conn, settings, START)] == ["s1", "s2"]


def _state(db_path, source, transport, gate, clock, sleeps, concurrency=2):
    def _factory():
        return build_relay(
            connect_db(db_path),
            source=source,
            transport=transport,
            gate=gate,
            clock=clock,
            sleep=sleeps.append,
        )

    return WorkerState(
        relay_factory=_factory,
        logger=logging.getLogger("feedrelay.test"),
        clock=clock,
        concurrency=concurrency,
    )


def test_run_once_ingests_and_delivers_immediately(
    db_path, conn, source, transport, gate, clock, sleeps
):
    seed_feed(conn)
    seed_targets(conn, "t1", "t2")
    seed_schedule(conn)
    source.push([make_item(1)])
    state = _state(db_path, source, transport, gate, clock, sleeps)

    assert run_once(state) == 0

    assert [target for target, _ in transport.sent] == ["t1", "t2"]
    assert {o.status for o in list_obligations(conn, "s1")} == {"sent"}
    assert state.in_flight_feeds == set()
    assert state.in_flight_schedules == set()

    # Nothing is due again until the fetch interval passes.
    assert run_once(state) == 0
    assert source.calls == ["f1"]


def test_run_once_reports_task_failures(db_path, conn, source, transport, gate, clock, sleeps):
    seed_feed(conn)
    state = _state(db_path, source, transport, gate, clock, sleeps)
    build = state.relay_factory
    calls = []

    def _flaky():
        calls.append(1)
        # The second relay is the feed task's own.
        if len(calls) == 2:
            raise RuntimeError("database unavailable")
        return build()

    state.relay_factory = _flaky

    assert run_once(state) == 1
    assert state.in_flight_feeds == set()
    assert source.calls == []


def test_maintenance_runs_on_its_own_cadence(db_path, conn, source, transport, gate, clock, sleeps):
    state = _state(db_path, source, transport, gate, clock, sleeps)
    settings = get_settings(conn)

    first = maybe_run_maintenance(conn, settings, state)
    assert set(first) == {"reclaimed", "expired_locks", "retention"}
    assert maybe_run_maintenance(conn, settings, state) == {}

    clock.advance(minutes=6)
    assert set(maybe_run_maintenance(conn, settings, state)) == {"reclaimed", "expired_locks"}
