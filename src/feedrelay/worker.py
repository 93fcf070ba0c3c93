from __future__ import annotations

import argparse
import logging
import os
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .blackout import BlackoutGate
from .config import Settings, get_settings, get_state_db_path
from .db import connect_db
from .locks import detect_lock_kind
from .models import Schedule
from .service import (
    Relay,
    build_relay,
    default_gate,
    immediate_schedule_ids,
    process_feed,
    run_schedule,
)
from .storage import (
    get_setting,
    has_pending_obligations,
    list_due_feeds,
    list_schedules,
    set_setting,
)
from .utils import (
    Clock,
    configure_logging,
    error_message,
    isoformat_utc,
    log_event,
    parse_iso,
    utc_now,
)
from .watchdog import expire_stale_locks, reclaim_stuck_obligations, run_retention

WATCHDOG_INTERVAL_SECONDS = 300
RETENTION_INTERVAL_SECONDS = 86400
WATCHDOG_SETTING_KEY = "worker.watchdog_last_run_at"
RETENTION_SETTING_KEY = "worker.retention_last_run_at"


def _setup_logging() -> logging.Logger:
    return configure_logging("feedrelay.worker")


@dataclass
class WorkerState:
    """Per-process scheduler state shared by every task thread."""

    relay_factory: Callable[[], Relay]
    logger: logging.Logger
    clock: Clock = utc_now
    concurrency: int = 1
    in_flight_feeds: set[str] = field(default_factory=set)
    in_flight_schedules: set[str] = field(default_factory=set)
    _guard: threading.Lock = field(default_factory=threading.Lock)

    def claim(self, bucket: set[str], key: str) -> bool:
        with self._guard:
            if key in bucket:
                return False
            bucket.add(key)
            return True

    def release(self, bucket: set[str], key: str) -> None:
        with self._guard:
            bucket.discard(key)


def build_state(
    concurrency: int = 1,
    logger: logging.Logger | None = None,
    clock: Clock = utc_now,
    gate: BlackoutGate | None = None,
) -> WorkerState:
    logger = logger or _setup_logging()
    # One gate per process keeps the blackout cache warm across task threads.
    shared_gate = gate or default_gate(clock)
    conn = connect_db(get_state_db_path())
    try:
        lock_kind = detect_lock_kind(conn, logger)
    finally:
        conn.close()

    def _factory() -> Relay:
        return build_relay(gate=shared_gate, lock_kind=lock_kind, logger=logger, clock=clock)

    return WorkerState(
        relay_factory=_factory,
        logger=logger,
        clock=clock,
        concurrency=max(1, concurrency),
    )


def is_schedule_due(
    schedule: Schedule,
    now: datetime,
    has_pending: bool,
    recheck_seconds: int = 60,
) -> bool:
    if not schedule.active:
        return False
    last_run = parse_iso(schedule.last_run_at) if schedule.last_run_at else None

    if schedule.delivery_mode == "immediate":
        if not has_pending:
            return False
        return last_run is None or now - last_run >= timedelta(seconds=recheck_seconds)

    if schedule.delivery_mode == "interval":
        minutes = schedule.interval_minutes or 0
        if minutes <= 0:
            return False
        return last_run is None or now - last_run >= timedelta(minutes=minutes)

    if schedule.delivery_mode == "fixed-times":
        slot = latest_fixed_slot(schedule.fixed_times, schedule.timezone, now)
        if slot is None:
            return False
        return last_run is None or last_run < slot

    return False


def latest_fixed_slot(
    fixed_times: list[str], tz_name: str | None, now: datetime
) -> datetime | None:
    """Most recent ``HH:MM`` slot at or before ``now``, evaluated in the schedule's zone."""
    try:
        tz = ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        tz = ZoneInfo("UTC")
    local_now = now.astimezone(tz)
    latest: datetime | None = None
    for value in fixed_times or []:
        parsed = _parse_slot(value)
        if parsed is None:
            continue
        hour, minute = parsed
        candidate = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate > local_now:
            candidate -= timedelta(days=1)
        if latest is None or candidate > latest:
            latest = candidate
    return latest.astimezone(timezone.utc) if latest else None


def _parse_slot(value: str) -> tuple[int, int] | None:
    try:
        hour_text, minute_text = str(value).strip().split(":", 1)
        hour, minute = int(hour_text), int(minute_text)
    except ValueError:
        return None
    if not (0 <= hour < 24 and 0 <= minute < 60):
        return None
    return hour, minute


def list_due_schedules(conn, settings: Settings, now: datetime) -> list[Schedule]:
    due: list[Schedule] = []
    for schedule in list_schedules(conn, active_only=True):
        pending = (
            has_pending_obligations(conn, schedule.id)
            if schedule.delivery_mode == "immediate"
            else False
        )
        if is_schedule_due(schedule, now, pending, settings.immediate_recheck_seconds):
            due.append(schedule)
    return due


def _interval_elapsed(conn, key: str, now: datetime, seconds: int) -> bool:
    last = get_setting(conn, key, None)
    if isinstance(last, str) and last:
        try:
            if parse_iso(last) + timedelta(seconds=seconds) > now:
                return False
        except ValueError:
            pass
    return True


def maybe_run_maintenance(conn, settings: Settings, state: WorkerState) -> dict[str, object]:
    now = state.clock()
    report: dict[str, object] = {}
    if _interval_elapsed(conn, WATCHDOG_SETTING_KEY, now, WATCHDOG_INTERVAL_SECONDS):
        set_setting(conn, WATCHDOG_SETTING_KEY, isoformat_utc(now))
        report["reclaimed"] = reclaim_stuck_obligations(conn, settings, state.clock, state.logger)
        report["expired_locks"] = expire_stale_locks(conn, state.clock, state.logger)
    if _interval_elapsed(conn, RETENTION_SETTING_KEY, now, RETENTION_INTERVAL_SECONDS):
        set_setting(conn, RETENTION_SETTING_KEY, isoformat_utc(now))
        report["retention"] = run_retention(conn, settings, state.clock, state.logger)
    return report


def _close(relay: Relay | None) -> None:
    if relay is None:
        return
    try:
        relay.conn.close()
    except Exception:
        return


def feed_task(state: WorkerState, feed_id: str) -> None:
    relay = None
    try:
        relay = state.relay_factory()
        result = process_feed(relay, feed_id)
        if result.items or result.queued:
            for schedule_id in immediate_schedule_ids(relay, feed_id):
                if not state.claim(state.in_flight_schedules, schedule_id):
                    continue
                try:
                    _run_and_log(state, relay, schedule_id)
                finally:
                    state.release(state.in_flight_schedules, schedule_id)
    finally:
        state.release(state.in_flight_feeds, feed_id)
        _close(relay)


def schedule_task(state: WorkerState, schedule_id: str) -> None:
    relay = None
    try:
        relay = state.relay_factory()
        _run_and_log(state, relay, schedule_id)
    finally:
        state.release(state.in_flight_schedules, schedule_id)
        _close(relay)


def _run_and_log(state: WorkerState, relay: Relay, schedule_id: str) -> None:
    result = run_schedule(relay, schedule_id)
    log_event(state.logger, logging.DEBUG, "schedule_tick", **result.as_dict())


def submit_due_feeds(state: WorkerState, executor: ThreadPoolExecutor) -> list[Future]:
    relay = state.relay_factory()
    try:
        settings = get_settings(relay.conn)
        maybe_run_maintenance(relay.conn, settings, state)
        feeds = list_due_feeds(relay.conn, isoformat_utc(state.clock()))
    finally:
        _close(relay)
    futures = []
    for feed in feeds:
        # Tasks release their key when they finish.
        if state.claim(state.in_flight_feeds, feed.id):
            futures.append(executor.submit(feed_task, state, feed.id))
    if futures:
        log_event(state.logger, logging.INFO, "feeds_due", count=len(futures))
    return futures


def submit_due_schedules(state: WorkerState, executor: ThreadPoolExecutor) -> list[Future]:
    relay = state.relay_factory()
    try:
        settings = get_settings(relay.conn)
        schedules = list_due_schedules(relay.conn, settings, state.clock())
    finally:
        _close(relay)
    futures = []
    for schedule in schedules:
        if state.claim(state.in_flight_schedules, schedule.id):
            futures.append(executor.submit(schedule_task, state, schedule.id))
    return futures


def _collect(done, logger: logging.Logger) -> int:
    failures = 0
    for future in done:
        try:
            future.result()
        except Exception as exc:  # noqa: BLE001
            failures += 1
            log_event(logger, logging.ERROR, "task_thread_error", error=error_message(exc))
    return failures


def run_once(state: WorkerState | None = None) -> int:
    """Run one full tick: due feeds first, then due schedules, and wait for both."""
    state = state or build_state()
    failures = 0
    with ThreadPoolExecutor(max_workers=state.concurrency) as executor:
        feed_futures = submit_due_feeds(state, executor)
        done, _ = wait(feed_futures)
        failures += _collect(done, state.logger)
        schedule_futures = submit_due_schedules(state, executor)
        done, _ = wait(schedule_futures)
        failures += _collect(done, state.logger)
    return 1 if failures else 0


def run_loop(state: WorkerState, sleep_seconds: int) -> int:
    futures: set[Future] = set()
    with ThreadPoolExecutor(max_workers=state.concurrency) as executor:
        while True:
            try:
                futures.update(submit_due_feeds(state, executor))
                futures.update(submit_due_schedules(state, executor))
            except Exception as exc:  # noqa: BLE001
                log_event(state.logger, logging.ERROR, "worker_tick_failed", error=error_message(exc))
            if futures:
                done, futures = wait(futures, timeout=sleep_seconds, return_when=FIRST_COMPLETED)
                _collect(done, state.logger)
            else:
                time.sleep(sleep_seconds)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="feedrelay-worker")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    parser.add_argument("--sleep", type=int, default=10, help="Sleep seconds between ticks")
    parser.add_argument(
        "--concurrency",
        type=int,
        default=int(os.environ.get("FR_WORKER_CONCURRENCY", "4")),
    )
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    state = build_state(concurrency=args.concurrency)
    if args.once:
        return run_once(state)
    return run_loop(state, max(1, args.sleep))


if __name__ == "__main__":
    raise SystemExit(main())
