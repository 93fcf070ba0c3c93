from __future__ import annotations

import logging
from datetime import timedelta

from .config import MIN_PROCESSING_TIMEOUT_MINUTES, Settings
from .storage import (
    delete_chat_messages_before,
    delete_expired_locks,
    delete_feed_runs_before,
    delete_terminal_obligations_before,
    delete_unreferenced_items_before,
    reclaim_stuck_obligations as _reclaim_stuck_obligations,
)
from .utils import Clock, isoformat_utc, log_event, utc_now

RECLAIM_NOTE = "Reclaimed by watchdog after processing timeout"


def reclaim_stuck_obligations(
    conn,
    settings: Settings,
    clock: Clock = utc_now,
    logger: logging.Logger | None = None,
) -> int:
    """Put obligations left in ``processing`` past the timeout back to ``pending``."""
    logger = logger or logging.getLogger("feedrelay.watchdog")
    now = clock()
    timeout = max(settings.processing_timeout_minutes, MIN_PROCESSING_TIMEOUT_MINUTES)
    cutoff = isoformat_utc(now - timedelta(minutes=timeout))
    reclaimed = _reclaim_stuck_obligations(conn, cutoff, RECLAIM_NOTE, isoformat_utc(now))
    if reclaimed:
        log_event(
            logger,
            logging.WARNING,
            "obligations_reclaimed",
            count=reclaimed,
            timeout_minutes=timeout,
        )
    return reclaimed


def expire_stale_locks(
    conn, clock: Clock = utc_now, logger: logging.Logger | None = None
) -> int:
    logger = logger or logging.getLogger("feedrelay.watchdog")
    removed = delete_expired_locks(conn, isoformat_utc(clock()))
    if removed:
        log_event(logger, logging.INFO, "schedule_locks_expired", count=removed)
    return removed


def run_retention(
    conn,
    settings: Settings,
    clock: Clock = utc_now,
    logger: logging.Logger | None = None,
) -> dict[str, int]:
    logger = logger or logging.getLogger("feedrelay.watchdog")
    cutoff = isoformat_utc(clock() - timedelta(days=settings.retention_days))
    # Obligations first so items they referenced become eligible in the same pass.
    counts = {
        "obligations": delete_terminal_obligations_before(conn, cutoff),
        "chat_messages": delete_chat_messages_before(conn, cutoff),
        "feed_runs": delete_feed_runs_before(conn, cutoff),
    }
    counts["feed_items"] = delete_unreferenced_items_before(conn, cutoff)
    log_event(
        logger,
        logging.INFO,
        "retention_complete",
        retention_days=settings.retention_days,
        **counts,
    )
    return counts
