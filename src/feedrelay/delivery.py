from __future__ import annotations

import logging
import re
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from .config import Settings, get_settings
from .dedupe import is_duplicate_in_chat
from .locks import with_schedule_lock
from .models import (
    DeliveryObligation,
    FeedItem,
    Schedule,
    ScheduleRunResult,
    Target,
)
from .normalize import normalize_message_text
from .storage import (
    claim_obligation,
    get_feed_item,
    get_schedule,
    get_template,
    has_sent_obligation,
    insert_chat_message,
    list_pending_obligations,
    list_targets_by_ids,
    mark_obligation_failed,
    mark_obligation_sent,
    requeue_obligation,
    touch_schedule_run,
)
from .utils import error_message, isoformat_utc, json_dumps, log_event

if TYPE_CHECKING:
    from .service import Relay

DEFAULT_TEMPLATE = "{{title}}\n{{link}}"
CONNECTED_STATUSES = {"connected", "open", "ready", "ok"}

_PLACEHOLDER = re.compile(r"{{\s*(\w+)\s*}}")


def message_fields(item: FeedItem) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for key, value in (item.raw or {}).items():
        if value is None:
            fields[key] = ""
        elif isinstance(value, (str, int, float, bool)):
            fields[key] = value
        else:
            fields[key] = json_dumps(value)
    fields.update(
        {
            "id": item.id,
            "guid": item.guid,
            "title": item.title,
            "url": item.link,
            "link": item.link,
            "description": item.description or (item.content or "")[:280],
            "content": item.content,
            "author": item.author,
            "image_url": item.image_url,
            "normalized_url": item.normalized_url,
            "content_hash": item.content_hash,
            "pub_date": item.pub_date or "",
            "categories": ", ".join(item.categories),
        }
    )
    return fields


def render_template(body: str, item: FeedItem) -> str:
    """Fill ``{{ field }}`` placeholders from the item; unknown fields render empty."""
    fields = message_fields(item)

    def _replace(match: re.Match) -> str:
        value = fields.get(match.group(1))
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(_replace, body or "")


def run_schedule(relay: "Relay", schedule_id: str) -> ScheduleRunResult:
    schedule = get_schedule(relay.conn, schedule_id)
    if schedule is None:
        return ScheduleRunResult(schedule_id=schedule_id, skipped=True, reason="schedule not found")
    if not schedule.active:
        return ScheduleRunResult(schedule_id=schedule_id, skipped=True, reason="schedule inactive")

    locked = with_schedule_lock(
        relay.locks,
        schedule_id,
        lambda: _drain_schedule(relay, schedule),
        skip_if_locked=True,
        logger=relay.logger,
    )
    if not locked.acquired:
        return ScheduleRunResult(
            schedule_id=schedule_id,
            skipped=True,
            reason="schedule is being processed by another instance",
        )
    return locked.result


def _drain_schedule(relay: "Relay", schedule: Schedule) -> ScheduleRunResult:
    conn = relay.conn
    logger = relay.logger
    settings = get_settings(conn)
    result = ScheduleRunResult(schedule_id=schedule.id)

    blackout = relay.gate.current_blackout(settings)
    if blackout.active:
        result.skipped = True
        result.reason = blackout.reason
        result.resume_at = isoformat_utc(blackout.ends_at) if blackout.ends_at else None
        log_event(
            logger,
            logging.INFO,
            "schedule_blackout_skip",
            schedule_id=schedule.id,
            resume_at=result.resume_at,
        )
        return result

    if relay.transport is None:
        result.skipped = True
        result.reason = "transport not configured"
        return result
    transport_status = str((relay.transport.get_status() or {}).get("status") or "").lower()
    if transport_status not in CONNECTED_STATUSES:
        result.skipped = True
        result.reason = f"transport not connected ({transport_status or 'unknown'})"
        log_event(
            logger,
            logging.WARNING,
            "schedule_transport_unavailable",
            schedule_id=schedule.id,
            status=transport_status or "unknown",
        )
        return result

    template = get_template(conn, schedule.template_id)
    body = template.content if template else DEFAULT_TEMPLATE
    chat_since = isoformat_utc(relay.clock() - timedelta(days=settings.retention_days))
    attempts = 0
    for target in list_targets_by_ids(conn, schedule.target_ids, active_only=True):
        for obligation in list_pending_obligations(conn, schedule.id, target.id):
            if _deliver_one(
                relay, settings, target, obligation, body, chat_since, result, attempts
            ):
                attempts += 1

    touch_schedule_run(conn, schedule.id, isoformat_utc(relay.clock()))
    log_event(
        logger,
        logging.INFO,
        "schedule_run_complete",
        schedule_id=schedule.id,
        sent=result.sent,
        failed=result.failed,
    )
    return result


def _fail(
    relay: "Relay",
    obligation: DeliveryObligation,
    reason: str,
    result: ScheduleRunResult,
    content: str | None = None,
) -> None:
    mark_obligation_failed(
        relay.conn, obligation.id, reason, isoformat_utc(relay.clock()), content=content
    )
    result.failed += 1
    log_event(
        relay.logger,
        logging.INFO,
        "obligation_failed",
        obligation_id=obligation.id,
        schedule_id=obligation.schedule_id,
        target_id=obligation.target_id,
        reason=reason,
    )


def _deliver_one(
    relay: "Relay",
    settings: Settings,
    target: Target,
    obligation: DeliveryObligation,
    body: str,
    chat_since: str,
    result: ScheduleRunResult,
    attempts: int,
) -> bool:
    """Process one pending obligation; returns True when the transport was called."""
    conn = relay.conn
    item = get_feed_item(conn, obligation.feed_item_id) if obligation.feed_item_id else None
    if item is None:
        _fail(relay, obligation, "Feed item missing", result)
        return False
    if has_sent_obligation(conn, item.id, target.id, exclude_id=obligation.id):
        _fail(relay, obligation, "already sent to this target", result)
        return False
    if settings.chat_dedupe_enabled and is_duplicate_in_chat(
        conn,
        target.id,
        item.title,
        item.link,
        chat_since,
        threshold=settings.dedupe_threshold,
        logger=relay.logger,
    ):
        _fail(relay, obligation, "duplicate of a recent message in this chat", result)
        return False

    text = normalize_message_text(render_template(body, item))
    if not text:
        _fail(relay, obligation, "Rendered message is empty", result)
        return False

    if not claim_obligation(conn, obligation.id, isoformat_utc(relay.clock())):
        # Another worker moved it out of pending since we listed it.
        return False

    if attempts and settings.message_delay_ms:
        relay.sleep(settings.message_delay_ms / 1000.0)
    try:
        receipt = relay.transport.send(target, text)
    except Exception as exc:
        message = error_message(exc, "Send failed")
        if obligation.retry_count < settings.max_send_retries:
            requeue_obligation(
                conn,
                obligation.id,
                message,
                obligation.retry_count + 1,
                isoformat_utc(relay.clock()),
            )
            log_event(
                relay.logger,
                logging.WARNING,
                "obligation_send_retry",
                obligation_id=obligation.id,
                retry_count=obligation.retry_count + 1,
                error=message,
            )
        else:
            _fail(relay, obligation, message, result, content=text)
        return True

    now_iso = isoformat_utc(relay.clock())
    mark_obligation_sent(conn, obligation.id, text, receipt.message_id, now_iso)
    insert_chat_message(conn, target.id, text, receipt.message_id, now_iso)
    result.sent += 1
    log_event(
        relay.logger,
        logging.INFO,
        "obligation_sent",
        obligation_id=obligation.id,
        schedule_id=obligation.schedule_id,
        target_id=target.id,
        message_id=receipt.message_id,
    )
    return True
