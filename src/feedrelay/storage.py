from __future__ import annotations

import json
from typing import Any, Iterable

from .models import (
    OBLIGATION_AWAITING_APPROVAL,
    OBLIGATION_FAILED,
    OBLIGATION_PENDING,
    OBLIGATION_PROCESSING,
    OBLIGATION_SENT,
    SENT_STATUSES,
    TERMINAL_STATUSES,
    DeliveryObligation,
    Feed,
    FeedItem,
    FeedRunResult,
    FetchMeta,
    Schedule,
    Target,
    Template,
)
from .utils import json_dumps, json_loads, parse_iso, utc_now_iso

FEED_COLUMNS = """
    id, name, url, type, active, fetch_interval_seconds, etag, last_modified,
    last_fetched_at, last_success_at, last_error, consecutive_failures
"""

ITEM_COLUMNS = """
    id, feed_id, guid, title, link, normalized_url, content_hash, description, content,
    author, image_url, pub_date, categories_json, raw_json, created_at, updated_at
"""

SCHEDULE_COLUMNS = """
    id, name, feed_id, template_id, target_ids_json, delivery_mode, interval_minutes,
    fixed_times_json, timezone, active, approval_required, last_run_at
"""

OBLIGATION_COLUMNS = """
    id, feed_item_id, target_id, schedule_id, status, error_message, message_content,
    transport_message_id, retry_count, created_at, processing_started_at, sent_at
"""

# Columns diff_item may patch on an existing feed item.
ITEM_PATCH_FIELDS = (
    "title",
    "link",
    "normalized_url",
    "content_hash",
    "description",
    "content",
    "author",
    "image_url",
    "pub_date",
    "categories",
    "raw",
)


def _placeholders(count: int) -> str:
    return ",".join(["?"] * count)


# Settings


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


def insert_setting_if_missing(conn: Any, key: str, value: object) -> bool:
    cursor = conn.execute(
        "INSERT OR IGNORE INTO settings (key, value, updated_at) VALUES (?, ?, ?)",
        (key, json_dumps(value), utc_now_iso()),
    )
    conn.commit()
    return cursor.rowcount > 0


# Feeds


def upsert_feed(conn: Any, feed: dict[str, object]) -> None:
    feed_id = str(feed["id"])
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO feeds
            (id, name, url, type, active, fetch_interval_seconds, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name = excluded.name,
            url = excluded.url,
            type = excluded.type,
            active = excluded.active,
            fetch_interval_seconds = excluded.fetch_interval_seconds,
            updated_at = excluded.updated_at
        """,
        (
            feed_id,
            str(feed.get("name") or feed_id),
            str(feed["url"]),
            str(feed.get("type") or "rss"),
            1 if feed.get("active", True) else 0,
            int(feed.get("fetch_interval_seconds") or 300),
            now,
            now,
        ),
    )
    conn.commit()


def delete_feed(conn: Any, feed_id: str) -> None:
    conn.execute("DELETE FROM feeds WHERE id = ?", (feed_id,))
    conn.commit()


def get_feed(conn: Any, feed_id: str) -> Feed | None:
    cursor = conn.execute(f"SELECT {FEED_COLUMNS} FROM feeds WHERE id = ?", (feed_id,))
    row = cursor.fetchone()
    return _row_to_feed(row) if row else None


def list_feeds(conn: Any, active_only: bool = True) -> list[Feed]:
    sql = f"SELECT {FEED_COLUMNS} FROM feeds"
    if active_only:
        sql += " WHERE active = 1"
    sql += " ORDER BY id"
    return [_row_to_feed(row) for row in conn.execute(sql).fetchall()]


def list_due_feeds(conn: Any, now_iso: str, min_interval_seconds: int = 60) -> list[Feed]:
    now = parse_iso(now_iso)
    due: list[Feed] = []
    for feed in list_feeds(conn, active_only=True):
        if not feed.last_fetched_at:
            due.append(feed)
            continue
        interval = max(feed.fetch_interval_seconds, min_interval_seconds)
        elapsed = (now - parse_iso(feed.last_fetched_at)).total_seconds()
        if elapsed >= interval:
            due.append(feed)
    return due


def record_feed_success(conn: Any, feed_id: str, meta: FetchMeta, now_iso: str) -> None:
    conn.execute(
        """
        UPDATE feeds
        SET last_fetched_at = ?,
            last_success_at = ?,
            last_error = NULL,
            consecutive_failures = 0,
            etag = COALESCE(?, etag),
            last_modified = COALESCE(?, last_modified),
            type = COALESCE(?, type),
            updated_at = ?
        WHERE id = ?
        """,
        (
            now_iso,
            now_iso,
            meta.etag,
            meta.last_modified,
            meta.detected_type,
            now_iso,
            feed_id,
        ),
    )
    conn.commit()


def record_feed_failure(conn: Any, feed_id: str, error: str, now_iso: str) -> None:
    conn.execute(
        """
        UPDATE feeds
        SET last_fetched_at = ?,
            last_error = ?,
            consecutive_failures = consecutive_failures + 1,
            updated_at = ?
        WHERE id = ?
        """,
        (now_iso, error, now_iso, feed_id),
    )
    conn.commit()


def record_feed_run(
    conn: Any, result: FeedRunResult, started_at: str, finished_at: str
) -> None:
    conn.execute(
        """
        INSERT INTO feed_runs
            (feed_id, status, started_at, finished_at, fetched, inserted, updated,
             duplicate, errored, queued, error)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            result.feed_id,
            result.status,
            started_at,
            finished_at,
            result.fetched,
            result.inserted,
            result.updated,
            result.duplicate,
            result.errored,
            result.queued,
            result.error,
        ),
    )
    conn.commit()


def set_feed_run_queued(conn: Any, feed_id: str, started_at: str, queued: int) -> None:
    conn.execute(
        "UPDATE feed_runs SET queued = ? WHERE feed_id = ? AND started_at = ?",
        (queued, feed_id, started_at),
    )
    conn.commit()


def list_feed_runs(conn: Any, feed_id: str, limit: int = 20) -> list[dict[str, object]]:
    cursor = conn.execute(
        """
        SELECT status, started_at, finished_at, fetched, inserted, updated, duplicate,
               errored, queued, error
        FROM feed_runs
        WHERE feed_id = ?
        ORDER BY started_at DESC
        LIMIT ?
        """,
        (feed_id, limit),
    )
    keys = (
        "status",
        "started_at",
        "finished_at",
        "fetched",
        "inserted",
        "updated",
        "duplicate",
        "errored",
        "queued",
        "error",
    )
    return [dict(zip(keys, row)) for row in cursor.fetchall()]


# Feed items


def get_feed_item(conn: Any, item_id: int) -> FeedItem | None:
    cursor = conn.execute(f"SELECT {ITEM_COLUMNS} FROM feed_items WHERE id = ?", (item_id,))
    row = cursor.fetchone()
    return _row_to_item(row) if row else None


def find_feed_item(
    conn: Any, feed_id: str, guid: str | None, normalized_url: str | None
) -> FeedItem | None:
    if guid:
        cursor = conn.execute(
            f"SELECT {ITEM_COLUMNS} FROM feed_items WHERE feed_id = ? AND guid = ?",
            (feed_id, guid),
        )
        row = cursor.fetchone()
        if row:
            return _row_to_item(row)
    if normalized_url:
        cursor = conn.execute(
            f"""
            SELECT {ITEM_COLUMNS} FROM feed_items
            WHERE feed_id = ? AND normalized_url = ?
            ORDER BY id ASC
            LIMIT 1
            """,
            (feed_id, normalized_url),
        )
        row = cursor.fetchone()
        if row:
            return _row_to_item(row)
    return None


def insert_feed_item(
    conn: Any, feed_id: str, values: dict[str, object], now_iso: str
) -> FeedItem | None:
    """Insert a new item; returns None when (feed_id, guid) already exists."""
    guid = str(values["guid"])
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO feed_items
            (feed_id, guid, title, link, normalized_url, content_hash, description, content,
             author, image_url, pub_date, categories_json, raw_json, created_at, updated_at,
             fanout_pending)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
        """,
        (
            feed_id,
            guid,
            values.get("title"),
            values.get("link"),
            values.get("normalized_url"),
            values.get("content_hash"),
            values.get("description"),
            values.get("content"),
            values.get("author"),
            values.get("image_url"),
            values.get("pub_date"),
            json_dumps(list(values.get("categories") or [])),
            json_dumps(dict(values.get("raw") or {})),
            now_iso,
            now_iso,
        ),
    )
    conn.commit()
    if cursor.rowcount == 0:
        return None
    row = conn.execute(
        f"SELECT {ITEM_COLUMNS} FROM feed_items WHERE feed_id = ? AND guid = ?",
        (feed_id, guid),
    ).fetchone()
    return _row_to_item(row) if row else None


def update_feed_item(
    conn: Any, item_id: int, patch: dict[str, object], now_iso: str
) -> FeedItem | None:
    assignments: list[str] = []
    params: list[object] = []
    for key in ITEM_PATCH_FIELDS:
        if key not in patch:
            continue
        value = patch[key]
        if key == "categories":
            assignments.append("categories_json = ?")
            params.append(json_dumps(list(value or [])))
        elif key == "raw":
            assignments.append("raw_json = ?")
            params.append(json_dumps(dict(value or {})))
        else:
            assignments.append(f"{key} = ?")
            params.append(value)
    if assignments:
        assignments.append("fanout_pending = 1")
        assignments.append("updated_at = ?")
        params.extend([now_iso, item_id])
        conn.execute(
            f"UPDATE feed_items SET {', '.join(assignments)} WHERE id = ?",
            tuple(params),
        )
        conn.commit()
    return get_feed_item(conn, item_id)


def list_fanout_pending_items(conn: Any, feed_id: str) -> list[FeedItem]:
    """Items inserted or updated whose obligations have not been queued yet."""
    cursor = conn.execute(
        f"""
        SELECT {ITEM_COLUMNS} FROM feed_items
        WHERE feed_id = ? AND fanout_pending = 1
        ORDER BY id ASC
        """,
        (feed_id,),
    )
    return [_row_to_item(row) for row in cursor.fetchall()]


def clear_fanout_pending(conn: Any, item_ids: list[int]) -> int:
    if not item_ids:
        return 0
    cursor = conn.execute(
        f"UPDATE feed_items SET fanout_pending = 0 WHERE id IN ({_placeholders(len(item_ids))})",
        tuple(item_ids),
    )
    conn.commit()
    return cursor.rowcount


def list_recent_item_keys(
    conn: Any, since_iso: str, feed_id: str | None = None
) -> list[tuple[str | None, str | None, str | None]]:
    """Return (title, normalized_url, content_hash) for items created since a cutoff."""
    sql = """
        SELECT title, normalized_url, content_hash
        FROM feed_items
        WHERE created_at >= ?
    """
    params: list[object] = [since_iso]
    if feed_id:
        sql += " AND feed_id = ?"
        params.append(feed_id)
    sql += " ORDER BY created_at DESC"
    return [tuple(row) for row in conn.execute(sql, tuple(params)).fetchall()]


def delete_unreferenced_items_before(conn: Any, cutoff_iso: str) -> int:
    cursor = conn.execute(
        """
        DELETE FROM feed_items
        WHERE created_at < ?
          AND NOT EXISTS (
            SELECT 1 FROM message_logs WHERE message_logs.feed_item_id = feed_items.id
          )
        """,
        (cutoff_iso,),
    )
    conn.commit()
    return cursor.rowcount


# Targets and templates


def upsert_target(conn: Any, target: dict[str, object]) -> None:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO targets (id, name, address, type, active, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name = excluded.name,
            address = excluded.address,
            type = excluded.type,
            active = excluded.active,
            updated_at = excluded.updated_at
        """,
        (
            str(target["id"]),
            str(target.get("name") or target["id"]),
            str(target["address"]),
            str(target.get("type") or "individual"),
            1 if target.get("active", True) else 0,
            now,
            now,
        ),
    )
    conn.commit()


def get_target(conn: Any, target_id: str) -> Target | None:
    cursor = conn.execute(
        "SELECT id, name, address, type, active FROM targets WHERE id = ?", (target_id,)
    )
    row = cursor.fetchone()
    return _row_to_target(row) if row else None


def list_targets_by_ids(
    conn: Any, target_ids: Iterable[str], active_only: bool = True
) -> list[Target]:
    ids = list(dict.fromkeys(target_ids))
    if not ids:
        return []
    sql = f"SELECT id, name, address, type, active FROM targets WHERE id IN ({_placeholders(len(ids))})"
    if active_only:
        sql += " AND active = 1"
    rows = {row[0]: row for row in conn.execute(sql, tuple(ids)).fetchall()}
    # Keep the schedule's declared order.
    return [_row_to_target(rows[target_id]) for target_id in ids if target_id in rows]


def upsert_template(conn: Any, template: dict[str, object]) -> None:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO templates (id, name, content, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name = excluded.name,
            content = excluded.content,
            updated_at = excluded.updated_at
        """,
        (
            str(template["id"]),
            str(template.get("name") or template["id"]),
            str(template["content"]),
            now,
            now,
        ),
    )
    conn.commit()


def get_template(conn: Any, template_id: str | None) -> Template | None:
    if not template_id:
        return None
    cursor = conn.execute(
        "SELECT id, name, content FROM templates WHERE id = ?", (template_id,)
    )
    row = cursor.fetchone()
    if not row:
        return None
    return Template(id=row[0], name=row[1], content=row[2])


# Schedules


def upsert_schedule(conn: Any, schedule: dict[str, object]) -> None:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO schedules
            (id, name, feed_id, template_id, target_ids_json, delivery_mode, interval_minutes,
             fixed_times_json, timezone, active, approval_required, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name = excluded.name,
            feed_id = excluded.feed_id,
            template_id = excluded.template_id,
            target_ids_json = excluded.target_ids_json,
            delivery_mode = excluded.delivery_mode,
            interval_minutes = excluded.interval_minutes,
            fixed_times_json = excluded.fixed_times_json,
            timezone = excluded.timezone,
            active = excluded.active,
            approval_required = excluded.approval_required,
            updated_at = excluded.updated_at
        """,
        (
            str(schedule["id"]),
            str(schedule.get("name") or schedule["id"]),
            str(schedule["feed_id"]),
            schedule.get("template_id"),
            json_dumps([str(item) for item in schedule.get("target_ids") or []]),
            str(schedule.get("delivery_mode") or "immediate"),
            schedule.get("interval_minutes"),
            json_dumps(list(schedule.get("fixed_times") or [])),
            schedule.get("timezone"),
            1 if schedule.get("active", True) else 0,
            1 if schedule.get("approval_required", False) else 0,
            now,
            now,
        ),
    )
    conn.commit()


def get_schedule(conn: Any, schedule_id: str) -> Schedule | None:
    cursor = conn.execute(
        f"SELECT {SCHEDULE_COLUMNS} FROM schedules WHERE id = ?", (schedule_id,)
    )
    row = cursor.fetchone()
    return _row_to_schedule(row) if row else None


def list_schedules(conn: Any, active_only: bool = True) -> list[Schedule]:
    sql = f"SELECT {SCHEDULE_COLUMNS} FROM schedules"
    if active_only:
        sql += " WHERE active = 1"
    sql += " ORDER BY id"
    return [_row_to_schedule(row) for row in conn.execute(sql).fetchall()]


def list_schedules_for_feed(conn: Any, feed_id: str, active_only: bool = True) -> list[Schedule]:
    sql = f"SELECT {SCHEDULE_COLUMNS} FROM schedules WHERE feed_id = ?"
    if active_only:
        sql += " AND active = 1"
    sql += " ORDER BY id"
    return [_row_to_schedule(row) for row in conn.execute(sql, (feed_id,)).fetchall()]


def touch_schedule_run(conn: Any, schedule_id: str, now_iso: str) -> None:
    conn.execute(
        "UPDATE schedules SET last_run_at = ?, updated_at = ? WHERE id = ?",
        (now_iso, now_iso, schedule_id),
    )
    conn.commit()


# Delivery obligations


def list_existing_obligation_pairs(
    conn: Any, schedule_id: str, item_ids: list[int]
) -> set[tuple[int, str]]:
    if not item_ids:
        return set()
    cursor = conn.execute(
        f"""
        SELECT feed_item_id, target_id FROM message_logs
        WHERE schedule_id = ? AND feed_item_id IN ({_placeholders(len(item_ids))})
        """,
        (schedule_id, *item_ids),
    )
    return {(int(row[0]), str(row[1])) for row in cursor.fetchall()}


def insert_obligation(
    conn: Any,
    schedule_id: str,
    feed_item_id: int,
    target_id: str,
    status: str,
    now_iso: str,
) -> bool:
    cursor = conn.execute(
        """
        INSERT INTO message_logs
            (feed_item_id, target_id, schedule_id, status, retry_count, created_at, updated_at)
        VALUES (?, ?, ?, ?, 0, ?, ?)
        ON CONFLICT(schedule_id, feed_item_id, target_id) DO NOTHING
        """,
        (feed_item_id, target_id, schedule_id, status, now_iso, now_iso),
    )
    return cursor.rowcount > 0


def list_obligations(
    conn: Any, schedule_id: str, status: str | None = None
) -> list[DeliveryObligation]:
    sql = f"SELECT {OBLIGATION_COLUMNS} FROM message_logs WHERE schedule_id = ?"
    params: list[object] = [schedule_id]
    if status:
        sql += " AND status = ?"
        params.append(status)
    sql += " ORDER BY created_at ASC, id ASC"
    return [_row_to_obligation(row) for row in conn.execute(sql, tuple(params)).fetchall()]


def list_pending_obligations(
    conn: Any, schedule_id: str, target_id: str
) -> list[DeliveryObligation]:
    cursor = conn.execute(
        f"""
        SELECT {OBLIGATION_COLUMNS} FROM message_logs
        WHERE schedule_id = ? AND target_id = ? AND status = ?
        ORDER BY created_at ASC, id ASC
        """,
        (schedule_id, target_id, OBLIGATION_PENDING),
    )
    return [_row_to_obligation(row) for row in cursor.fetchall()]


def has_pending_obligations(conn: Any, schedule_id: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM message_logs WHERE schedule_id = ? AND status = ? LIMIT 1",
        (schedule_id, OBLIGATION_PENDING),
    ).fetchone()
    return row is not None


def has_sent_obligation(
    conn: Any, feed_item_id: int, target_id: str, exclude_id: int | None = None
) -> bool:
    sql = f"""
        SELECT 1 FROM message_logs
        WHERE feed_item_id = ? AND target_id = ?
          AND status IN ({_placeholders(len(SENT_STATUSES))})
    """
    params: list[object] = [feed_item_id, target_id, *SENT_STATUSES]
    if exclude_id is not None:
        sql += " AND id <> ?"
        params.append(exclude_id)
    sql += " LIMIT 1"
    return conn.execute(sql, tuple(params)).fetchone() is not None


def claim_obligation(conn: Any, obligation_id: int, now_iso: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE message_logs
        SET status = ?, processing_started_at = ?, updated_at = ?
        WHERE id = ? AND status = ?
        """,
        (OBLIGATION_PROCESSING, now_iso, now_iso, obligation_id, OBLIGATION_PENDING),
    )
    conn.commit()
    return cursor.rowcount > 0


def mark_obligation_sent(
    conn: Any,
    obligation_id: int,
    content: str,
    message_id: str | None,
    now_iso: str,
) -> None:
    conn.execute(
        """
        UPDATE message_logs
        SET status = ?, message_content = ?, transport_message_id = ?, sent_at = ?,
            error_message = NULL, processing_started_at = NULL, updated_at = ?
        WHERE id = ?
        """,
        (OBLIGATION_SENT, content, message_id, now_iso, now_iso, obligation_id),
    )
    conn.commit()


def mark_obligation_failed(
    conn: Any,
    obligation_id: int,
    error: str,
    now_iso: str,
    content: str | None = None,
) -> None:
    conn.execute(
        """
        UPDATE message_logs
        SET status = ?, error_message = ?, message_content = COALESCE(?, message_content),
            processing_started_at = NULL, updated_at = ?
        WHERE id = ?
        """,
        (OBLIGATION_FAILED, error, content, now_iso, obligation_id),
    )
    conn.commit()


def requeue_obligation(
    conn: Any, obligation_id: int, error: str, retry_count: int, now_iso: str
) -> None:
    conn.execute(
        """
        UPDATE message_logs
        SET status = ?, error_message = ?, retry_count = ?, processing_started_at = NULL,
            updated_at = ?
        WHERE id = ?
        """,
        (OBLIGATION_PENDING, error, retry_count, now_iso, obligation_id),
    )
    conn.commit()


def approve_obligations(conn: Any, obligation_ids: Iterable[int], now_iso: str) -> int:
    ids = [int(item) for item in obligation_ids]
    if not ids:
        return 0
    cursor = conn.execute(
        f"""
        UPDATE message_logs
        SET status = ?, approved_at = ?, updated_at = ?
        WHERE status = ? AND id IN ({_placeholders(len(ids))})
        """,
        (OBLIGATION_PENDING, now_iso, now_iso, OBLIGATION_AWAITING_APPROVAL, *ids),
    )
    conn.commit()
    return cursor.rowcount


def reclaim_stuck_obligations(conn: Any, cutoff_iso: str, note: str, now_iso: str) -> int:
    cursor = conn.execute(
        """
        UPDATE message_logs
        SET status = ?, processing_started_at = NULL, error_message = ?, updated_at = ?
        WHERE status = ?
          AND (processing_started_at IS NULL OR processing_started_at < ?)
        """,
        (OBLIGATION_PENDING, note, now_iso, OBLIGATION_PROCESSING, cutoff_iso),
    )
    conn.commit()
    return cursor.rowcount


def delete_terminal_obligations_before(conn: Any, cutoff_iso: str) -> int:
    cursor = conn.execute(
        f"""
        DELETE FROM message_logs
        WHERE created_at < ? AND status IN ({_placeholders(len(TERMINAL_STATUSES))})
        """,
        (cutoff_iso, *TERMINAL_STATUSES),
    )
    conn.commit()
    return cursor.rowcount


def count_obligations_by_status(conn: Any, schedule_id: str) -> dict[str, int]:
    cursor = conn.execute(
        "SELECT status, COUNT(*) FROM message_logs WHERE schedule_id = ? GROUP BY status",
        (schedule_id,),
    )
    return {str(row[0]): int(row[1]) for row in cursor.fetchall()}


def oldest_obligation_created_at(conn: Any, schedule_id: str, status: str) -> str | None:
    row = conn.execute(
        "SELECT MIN(created_at) FROM message_logs WHERE schedule_id = ? AND status = ?",
        (schedule_id, status),
    ).fetchone()
    return row[0] if row and row[0] else None


def count_feed_items_for_feed(conn: Any, feed_id: str) -> int:
    row = conn.execute(
        "SELECT COUNT(*) FROM feed_items WHERE feed_id = ?", (feed_id,)
    ).fetchone()
    return int(row[0]) if row else 0


# Chat history


def insert_chat_message(
    conn: Any, target_id: str, content: str, message_id: str | None, now_iso: str
) -> None:
    conn.execute(
        """
        INSERT INTO chat_messages (target_id, content, message_id, created_at)
        VALUES (?, ?, ?, ?)
        """,
        (target_id, content, message_id, now_iso),
    )
    conn.commit()


def list_chat_messages_since(conn: Any, target_id: str, since_iso: str) -> list[str]:
    cursor = conn.execute(
        """
        SELECT content FROM chat_messages
        WHERE target_id = ? AND created_at >= ?
        ORDER BY created_at DESC
        """,
        (target_id, since_iso),
    )
    return [str(row[0]) for row in cursor.fetchall() if row[0]]


def delete_chat_messages_before(conn: Any, cutoff_iso: str) -> int:
    cursor = conn.execute("DELETE FROM chat_messages WHERE created_at < ?", (cutoff_iso,))
    conn.commit()
    return cursor.rowcount


def delete_feed_runs_before(conn: Any, cutoff_iso: str) -> int:
    cursor = conn.execute("DELETE FROM feed_runs WHERE started_at < ?", (cutoff_iso,))
    conn.commit()
    return cursor.rowcount


# Schedule locks


def insert_schedule_lock(
    conn: Any, schedule_id: str, holder: str, now_iso: str, until_iso: str
) -> bool:
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO schedule_locks (schedule_id, locked_by, locked_at, locked_until)
        VALUES (?, ?, ?, ?)
        """,
        (schedule_id, holder, now_iso, until_iso),
    )
    conn.commit()
    return cursor.rowcount > 0


def take_over_schedule_lock(
    conn: Any, schedule_id: str, holder: str, now_iso: str, until_iso: str
) -> bool:
    cursor = conn.execute(
        """
        UPDATE schedule_locks
        SET locked_by = ?, locked_at = ?, locked_until = ?
        WHERE schedule_id = ? AND locked_until < ?
        """,
        (holder, now_iso, until_iso, schedule_id, now_iso),
    )
    conn.commit()
    return cursor.rowcount > 0


def delete_schedule_lock(conn: Any, schedule_id: str, holder: str) -> int:
    cursor = conn.execute(
        "DELETE FROM schedule_locks WHERE schedule_id = ? AND locked_by = ?",
        (schedule_id, holder),
    )
    conn.commit()
    return cursor.rowcount


def delete_expired_locks(conn: Any, now_iso: str) -> int:
    cursor = conn.execute("DELETE FROM schedule_locks WHERE locked_until < ?", (now_iso,))
    conn.commit()
    return cursor.rowcount


def get_schedule_lock(conn: Any, schedule_id: str) -> dict[str, str] | None:
    row = conn.execute(
        """
        SELECT locked_by, locked_at, locked_until FROM schedule_locks
        WHERE schedule_id = ?
        """,
        (schedule_id,),
    ).fetchone()
    if not row:
        return None
    return {"locked_by": row[0], "locked_at": row[1], "locked_until": row[2]}


# Row mapping


def _row_to_feed(row: tuple) -> Feed:
    (
        feed_id,
        name,
        url,
        feed_type,
        active,
        fetch_interval_seconds,
        etag,
        last_modified,
        last_fetched_at,
        last_success_at,
        last_error,
        consecutive_failures,
    ) = row
    return Feed(
        id=feed_id,
        name=name,
        url=url,
        type=feed_type,
        active=bool(active),
        fetch_interval_seconds=int(fetch_interval_seconds or 0),
        etag=etag,
        last_modified=last_modified,
        last_fetched_at=last_fetched_at,
        last_success_at=last_success_at,
        last_error=last_error,
        consecutive_failures=int(consecutive_failures or 0),
    )


def _row_to_item(row: tuple) -> FeedItem:
    (
        item_id,
        feed_id,
        guid,
        title,
        link,
        normalized_url,
        content_hash,
        description,
        content,
        author,
        image_url,
        pub_date,
        categories_json,
        raw_json,
        created_at,
        updated_at,
    ) = row
    categories = json_loads(categories_json, [])
    raw = json_loads(raw_json, {})
    return FeedItem(
        id=int(item_id),
        feed_id=feed_id,
        guid=guid,
        title=title,
        link=link,
        normalized_url=normalized_url,
        content_hash=content_hash,
        description=description,
        content=content,
        author=author,
        image_url=image_url,
        pub_date=pub_date,
        categories=list(categories) if isinstance(categories, list) else [],
        raw=dict(raw) if isinstance(raw, dict) else {},
        created_at=created_at,
        updated_at=updated_at,
    )


def _row_to_target(row: tuple) -> Target:
    target_id, name, address, target_type, active = row
    return Target(
        id=target_id,
        name=name,
        address=address,
        type=target_type,
        active=bool(active),
    )


def _row_to_schedule(row: tuple) -> Schedule:
    (
        schedule_id,
        name,
        feed_id,
        template_id,
        target_ids_json,
        delivery_mode,
        interval_minutes,
        fixed_times_json,
        timezone_name,
        active,
        approval_required,
        last_run_at,
    ) = row
    target_ids = json_loads(target_ids_json, [])
    fixed_times = json_loads(fixed_times_json, [])
    return Schedule(
        id=schedule_id,
        name=name,
        feed_id=feed_id,
        template_id=template_id,
        target_ids=[str(item) for item in target_ids] if isinstance(target_ids, list) else [],
        delivery_mode=delivery_mode,
        interval_minutes=int(interval_minutes) if interval_minutes is not None else None,
        fixed_times=[str(item) for item in fixed_times] if isinstance(fixed_times, list) else [],
        timezone=timezone_name,
        active=bool(active),
        approval_required=bool(approval_required),
        last_run_at=last_run_at,
    )


def _row_to_obligation(row: tuple) -> DeliveryObligation:
    (
        obligation_id,
        feed_item_id,
        target_id,
        schedule_id,
        status,
        error_message,
        message_content,
        transport_message_id,
        retry_count,
        created_at,
        processing_started_at,
        sent_at,
    ) = row
    return DeliveryObligation(
        id=int(obligation_id),
        feed_item_id=int(feed_item_id) if feed_item_id is not None else None,
        target_id=target_id,
        schedule_id=schedule_id,
        status=status,
        error_message=error_message,
        message_content=message_content,
        transport_message_id=transport_message_id,
        retry_count=int(retry_count or 0),
        created_at=created_at,
        processing_started_at=processing_started_at,
        sent_at=sent_at,
    )
