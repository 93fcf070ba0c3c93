from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from .blackout import BlackoutGate, HebcalTimeSource
from .config import get_settings, get_state_db_path
from .db import DBConn, connect_db
from .delivery import run_schedule as _run_schedule
from .diagnostics import get_schedule_diagnostics
from .fanout import queue_items_for_schedules
from .fetch import FeedparserSource
from .ingest import FeedSource, ingest_feed
from .locks import ScheduleLockManager, build_lock_manager, select_lock_manager
from .models import FeedRunResult, ScheduleRunResult
from .storage import (
    clear_fanout_pending,
    get_feed,
    list_fanout_pending_items,
    list_feeds,
    list_schedules_for_feed,
    set_feed_run_queued,
)
from .transport import Transport, WebhookTransport
from .utils import Clock, error_message, log_event, utc_now


@dataclass
class Relay:
    """Collaborators for one unit of work; each thread builds its own around its connection."""

    conn: DBConn
    source: FeedSource
    transport: Transport | None
    gate: BlackoutGate
    locks: ScheduleLockManager
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("feedrelay"))
    clock: Clock = utc_now
    sleep: Callable[[float], None] = time.sleep


def transport_from_env() -> Transport | None:
    url = os.environ.get("FR_TRANSPORT_URL", "").strip()
    if not url:
        return None
    token = os.environ.get("FR_TRANSPORT_TOKEN", "").strip() or None
    return WebhookTransport(url, token=token)


def default_gate(clock: Clock = utc_now) -> BlackoutGate:
    return BlackoutGate(HebcalTimeSource(clock=clock), clock=clock)


def build_relay(
    conn: DBConn | None = None,
    *,
    source: FeedSource | None = None,
    transport: Transport | None = None,
    gate: BlackoutGate | None = None,
    locks: ScheduleLockManager | None = None,
    lock_kind: str | None = None,
    logger: logging.Logger | None = None,
    clock: Clock = utc_now,
    sleep: Callable[[float], None] = time.sleep,
) -> Relay:
    """Assemble a relay around one connection.

    Long-running processes pass the ``lock_kind`` they detected at startup; without it
    the lock capability is probed on ``conn``.
    """
    if conn is None:
        conn = connect_db(get_state_db_path())
    logger = logger or logging.getLogger("feedrelay")
    settings = get_settings(conn)
    if source is None:
        source = FeedparserSource(
            timeout_seconds=settings.fetch_timeout_seconds,
            user_agent=settings.user_agent,
            logger=logger,
        )
    if transport is None:
        transport = transport_from_env()
    if locks is None and lock_kind is not None:
        locks = build_lock_manager(
            lock_kind, conn, ttl_seconds=settings.lock_ttl_seconds, clock=clock, logger=logger
        )
    elif locks is None:
        locks = select_lock_manager(
            conn, ttl_seconds=settings.lock_ttl_seconds, clock=clock, logger=logger
        )
    return Relay(
        conn=conn,
        source=source,
        transport=transport,
        gate=gate or default_gate(clock),
        locks=locks,
        logger=logger,
        clock=clock,
        sleep=sleep,
    )


def process_feed(relay: Relay, feed_id: str) -> FeedRunResult:
    feed = get_feed(relay.conn, feed_id)
    if feed is None:
        return FeedRunResult(feed_id=feed_id, status="not_found", error="Feed not found")
    if not feed.active:
        return FeedRunResult(feed_id=feed_id, status="inactive")
    settings = get_settings(relay.conn)
    result = ingest_feed(relay.conn, feed, relay.source, settings, relay.logger, relay.clock)
    if result.status == "feed_deleted":
        return result
    # Flagged items include earlier ones whose fan-out failed after they were stored.
    pending = list_fanout_pending_items(relay.conn, feed.id)
    if not pending:
        return result
    try:
        result.queued = queue_items_for_schedules(
            relay.conn, feed.id, pending, relay.logger, relay.clock
        )
        clear_fanout_pending(relay.conn, [item.id for item in pending])
    except Exception as exc:
        # Items keep their flag and are queued again on the next run.
        result.error = error_message(exc)
        log_event(
            relay.logger,
            logging.ERROR,
            "fanout_failed",
            feed_id=feed.id,
            error=result.error,
        )
        return result
    if result.queued and result.started_at:
        set_feed_run_queued(relay.conn, feed.id, result.started_at, result.queued)
    return result


def process_all_active_feeds(relay: Relay) -> list[FeedRunResult]:
    results: list[FeedRunResult] = []
    for feed in list_feeds(relay.conn, active_only=True):
        try:
            results.append(process_feed(relay, feed.id))
        except Exception as exc:
            log_event(
                relay.logger,
                logging.ERROR,
                "feed_process_failed",
                feed_id=feed.id,
                error=error_message(exc),
            )
            results.append(
                FeedRunResult(feed_id=feed.id, status="error", error=error_message(exc))
            )
    return results


def immediate_schedule_ids(relay: Relay, feed_id: str) -> list[str]:
    return [
        schedule.id
        for schedule in list_schedules_for_feed(relay.conn, feed_id, active_only=True)
        if schedule.delivery_mode == "immediate"
    ]


def run_schedule(relay: Relay, schedule_id: str) -> ScheduleRunResult:
    return _run_schedule(relay, schedule_id)


def get_diagnostics(relay: Relay, schedule_id: str) -> dict[str, Any]:
    return get_schedule_diagnostics(relay, schedule_id)
