"""Duplicate detection for incoming feed items and outgoing chat messages.

Both checks fail open: a storage error is logged and the candidate is treated as new,
so a flaky store can cause a rare duplicate but never silently drops content.
"""

from __future__ import annotations

import logging

from fuzzywuzzy import fuzz

from .normalize import fingerprint, normalize_title, normalize_url
from .storage import list_chat_messages_since, list_recent_item_keys
from .utils import log_event

DEFAULT_THRESHOLD = 0.88


def similarity(left: str, right: str) -> float:
    """Edit-distance ratio of two already-normalized strings, in [0, 1]."""
    if not left or not right:
        return 0.0
    return fuzz.ratio(left, right) / 100.0


def _partial_similarity(needle: str, haystack: str) -> float:
    if not needle or not haystack:
        return 0.0
    return fuzz.partial_ratio(needle, haystack) / 100.0


def _threshold(value: float | None) -> float:
    if value is None:
        return DEFAULT_THRESHOLD
    try:
        return float(value)
    except (TypeError, ValueError):
        return DEFAULT_THRESHOLD


def is_duplicate_feed_item(
    conn,
    title: str | None,
    url: str | None,
    since: str,
    threshold: float | None = DEFAULT_THRESHOLD,
    feed_id: str | None = None,
    logger: logging.Logger | None = None,
) -> bool:
    logger = logger or logging.getLogger("feedrelay.dedupe")
    try:
        records = list_recent_item_keys(conn, since, feed_id=feed_id)
    except Exception as exc:
        _rollback_quietly(conn)
        log_event(
            logger,
            logging.WARNING,
            "dedupe_lookup_failed",
            scope="feed",
            feed_id=feed_id,
            error=str(exc),
        )
        return False

    candidate_hash = fingerprint(title, url)
    candidate_url = normalize_url(url)
    for _, record_url, record_hash in records:
        if record_hash and record_hash == candidate_hash:
            return True
        if candidate_url and record_url and record_url == candidate_url:
            return True

    candidate_title = normalize_title(title)
    if not candidate_title:
        return False
    limit = _threshold(threshold)
    for record_title, _, _ in records:
        if not record_title:
            continue
        if similarity(candidate_title, normalize_title(record_title)) >= limit:
            return True
    return False


def is_duplicate_in_chat(
    conn,
    target_id: str,
    title: str | None,
    url: str | None,
    since: str,
    threshold: float | None = DEFAULT_THRESHOLD,
    logger: logging.Logger | None = None,
) -> bool:
    logger = logger or logging.getLogger("feedrelay.dedupe")
    try:
        messages = list_chat_messages_since(conn, target_id, since)
    except Exception as exc:
        _rollback_quietly(conn)
        log_event(
            logger,
            logging.WARNING,
            "dedupe_lookup_failed",
            scope="chat",
            target_id=target_id,
            error=str(exc),
        )
        return False

    candidate_url = normalize_url(url).lower()
    if candidate_url:
        for content in messages:
            if candidate_url in content.lower():
                return True

    candidate_title = normalize_title(title)
    if not candidate_title:
        return False
    limit = _threshold(threshold)
    # Messages carry the title plus template text, so compare against the best-matching span.
    for content in messages:
        if _partial_similarity(candidate_title, normalize_title(content)) >= limit:
            return True
    return False


def _rollback_quietly(conn) -> None:
    try:
        conn.rollback()
    except Exception:
        return
