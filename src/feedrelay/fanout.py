from __future__ import annotations

import logging
from typing import Iterable

from .models import OBLIGATION_AWAITING_APPROVAL, OBLIGATION_PENDING, FeedItem
from .storage import (
    approve_obligations as _approve_obligations,
    insert_obligation,
    list_existing_obligation_pairs,
    list_schedules_for_feed,
)
from .utils import Clock, isoformat_utc, log_event, utc_now


def queue_items_for_schedules(
    conn,
    feed_id: str,
    items: Iterable[FeedItem],
    logger: logging.Logger | None = None,
    clock: Clock = utc_now,
) -> int:
    """Create one obligation per (item, target) for every active schedule of the feed.

    Returns the number of rows actually inserted; pairs that already have an
    obligation, including ones inserted concurrently by another instance, are skipped.
    """
    logger = logger or logging.getLogger("feedrelay.fanout")
    item_ids = list(dict.fromkeys(item.id for item in items))
    if not item_ids:
        return 0
    inserted = 0
    try:
        for schedule in list_schedules_for_feed(conn, feed_id, active_only=True):
            target_ids = list(dict.fromkeys(schedule.target_ids))
            if not target_ids:
                continue
            existing = list_existing_obligation_pairs(conn, schedule.id, item_ids)
            status = (
                OBLIGATION_AWAITING_APPROVAL
                if schedule.approval_required
                else OBLIGATION_PENDING
            )
            now_iso = isoformat_utc(clock())
            created = 0
            for item_id in item_ids:
                for target_id in target_ids:
                    if (item_id, target_id) in existing:
                        continue
                    if insert_obligation(conn, schedule.id, item_id, target_id, status, now_iso):
                        created += 1
            conn.commit()
            inserted += created
            if created:
                log_event(
                    logger,
                    logging.INFO,
                    "obligations_queued",
                    feed_id=feed_id,
                    schedule_id=schedule.id,
                    count=created,
                    status=status,
                )
    except Exception:
        conn.rollback()
        raise
    return inserted


def approve_obligations(
    conn,
    obligation_ids: Iterable[int],
    logger: logging.Logger | None = None,
    clock: Clock = utc_now,
) -> int:
    logger = logger or logging.getLogger("feedrelay.fanout")
    approved = _approve_obligations(conn, obligation_ids, isoformat_utc(clock()))
    log_event(logger, logging.INFO, "obligations_approved", count=approved)
    return approved
