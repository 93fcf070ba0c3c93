from __future__ import annotations

import logging
import sqlite3
from typing import Callable

from .utils import utc_now_iso

Migration = Callable[[sqlite3.Connection], None]


def apply_migrations(conn: sqlite3.Connection) -> None:
    logger = logging.getLogger("feedrelay.migrations")
    conn.execute("BEGIN IMMEDIATE")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    try:
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _migration_initial_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS feeds (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            url TEXT NOT NULL,
            type TEXT NOT NULL DEFAULT 'rss',
            active INTEGER NOT NULL DEFAULT 1,
            fetch_interval_seconds INTEGER NOT NULL DEFAULT 300,
            etag TEXT NULL,
            last_modified TEXT NULL,
            last_fetched_at TEXT NULL,
            last_success_at TEXT NULL,
            last_error TEXT NULL,
            consecutive_failures INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS feed_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            feed_id TEXT NOT NULL REFERENCES feeds(id) ON DELETE CASCADE,
            guid TEXT NOT NULL,
            title TEXT NULL,
            link TEXT NULL,
            normalized_url TEXT NULL,
            content_hash TEXT NULL,
            description TEXT NULL,
            content TEXT NULL,
            author TEXT NULL,
            image_url TEXT NULL,
            pub_date TEXT NULL,
            categories_json TEXT NULL,
            raw_json TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(feed_id, guid)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS targets (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            address TEXT NOT NULL,
            type TEXT NOT NULL DEFAULT 'individual',
            active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS templates (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            content TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schedules (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            feed_id TEXT NOT NULL REFERENCES feeds(id) ON DELETE CASCADE,
            template_id TEXT NULL REFERENCES templates(id) ON DELETE SET NULL,
            target_ids_json TEXT NOT NULL DEFAULT '[]',
            delivery_mode TEXT NOT NULL DEFAULT 'immediate',
            interval_minutes INTEGER NULL,
            fixed_times_json TEXT NULL,
            timezone TEXT NULL,
            active INTEGER NOT NULL DEFAULT 1,
            approval_required INTEGER NOT NULL DEFAULT 0,
            last_run_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS message_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            feed_item_id INTEGER NULL REFERENCES feed_items(id) ON DELETE SET NULL,
            target_id TEXT NOT NULL,
            schedule_id TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            error_message TEXT NULL,
            message_content TEXT NULL,
            transport_message_id TEXT NULL,
            retry_count INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            processing_started_at TEXT NULL,
            sent_at TEXT NULL,
            delivered_at TEXT NULL,
            read_at TEXT NULL,
            approved_at TEXT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(schedule_id, feed_item_id, target_id)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schedule_locks (
            schedule_id TEXT PRIMARY KEY,
            locked_by TEXT NOT NULL,
            locked_at TEXT NOT NULL,
            locked_until TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )


def _migration_history_tables(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS chat_messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            target_id TEXT NOT NULL,
            content TEXT NOT NULL,
            message_id TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS feed_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            feed_id TEXT NOT NULL,
            status TEXT NOT NULL,
            started_at TEXT NOT NULL,
            finished_at TEXT NOT NULL,
            fetched INTEGER NOT NULL DEFAULT 0,
            inserted INTEGER NOT NULL DEFAULT 0,
            updated INTEGER NOT NULL DEFAULT 0,
            duplicate INTEGER NOT NULL DEFAULT 0,
            errored INTEGER NOT NULL DEFAULT 0,
            queued INTEGER NOT NULL DEFAULT 0,
            error TEXT NULL
        )
        """
    )


def _migration_indexes(conn: sqlite3.Connection) -> None:
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_feed_items_feed_created ON feed_items(feed_id, created_at)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_feed_items_normalized_url ON feed_items(feed_id, normalized_url)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_message_logs_schedule_status ON message_logs(schedule_id, status)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_message_logs_item_target ON message_logs(feed_item_id, target_id)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_chat_messages_target_created ON chat_messages(target_id, created_at)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_feed_runs_feed_started ON feed_runs(feed_id, started_at)"
    )


def _migration_fanout_pending(conn: sqlite3.Connection) -> None:
    columns = {row[1] for row in conn.execute("PRAGMA table_info(feed_items)").fetchall()}
    if "fanout_pending" not in columns:
        conn.execute(
            "ALTER TABLE feed_items ADD COLUMN fanout_pending INTEGER NOT NULL DEFAULT 0"
        )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_feed_items_fanout_pending ON feed_items(feed_id, fanout_pending)"
    )


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_initial_schema", _migration_initial_schema),
        ("002_history_tables", _migration_history_tables),
        ("003_indexes", _migration_indexes),
        ("004_fanout_pending", _migration_fanout_pending),
    ]
