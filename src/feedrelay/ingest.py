from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Protocol

from .config import Settings
from .db import is_foreign_key_violation
from .dedupe import is_duplicate_feed_item
from .models import Feed, FeedItem, FeedRunResult, FetchResult, ItemDiff, NormalizedItem
from .normalize import collapse_whitespace, fingerprint, normalize_url
from .storage import (
    find_feed_item,
    insert_feed_item,
    record_feed_failure,
    record_feed_run,
    record_feed_success,
    update_feed_item,
)
from .utils import Clock, error_message, isoformat_utc, log_event, normalize_timestamp, utc_now

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)

# Compared by diff_item; everything else on the row is identity or bookkeeping.
_TEXT_FIELDS = ("title", "link", "description", "content", "author", "image_url")


class FeedSource(Protocol):
    def fetch(self, feed: Feed) -> FetchResult: ...


class FeedDeletedError(RuntimeError):
    """The feed row disappeared while its items were being written."""


def select_window(
    items: list[NormalizedItem], first_run: bool, limit: int
) -> list[NormalizedItem]:
    """Pick the items to consider this run, oldest first.

    The first successful run only takes the newest item so a freshly added feed does
    not flood its targets with backlog. Items without a publish date sort as oldest;
    ties keep the feed's own newest-first order.
    """
    indexed = list(enumerate(items))
    ordered = [
        item
        for _, item in sorted(
            indexed,
            key=lambda pair: (pair[1].pub_date or _OLDEST, -pair[0]),
        )
    ]
    if first_run:
        return ordered[-1:]
    if limit > 0:
        return ordered[-limit:]
    return ordered


def resolve_guid(feed_id: str, item: NormalizedItem) -> str:
    guid = (item.guid or "").strip()
    if guid:
        return guid
    link = (item.link or "").strip()
    if link:
        return link
    return f"{feed_id}:{fingerprint(item.title, item.link)}"


def build_item_values(feed_id: str, item: NormalizedItem) -> dict[str, object]:
    return {
        "guid": resolve_guid(feed_id, item),
        "title": item.title,
        "link": item.link,
        "normalized_url": normalize_url(item.link) or None,
        "content_hash": fingerprint(item.title, item.link),
        "description": item.description,
        "content": item.content,
        "author": item.author,
        "image_url": item.image_url,
        "pub_date": normalize_timestamp(item.pub_date),
        "categories": _normalize_categories(item.categories),
        "raw": dict(item.raw or {}),
    }


def _normalize_categories(values) -> list[str]:
    cleaned = {collapse_whitespace(value) for value in values or []}
    return sorted(value for value in cleaned if value)


def diff_item(existing: FeedItem, incoming: dict[str, object]) -> ItemDiff:
    """Compare a stored item with freshly fetched values.

    Fields the source left empty are not treated as changes, so a feed that drops
    its content body does not wipe what was stored earlier.
    """
    patch: dict[str, object] = {}
    for key in _TEXT_FIELDS:
        new_value = collapse_whitespace(incoming.get(key))
        if not new_value:
            continue
        if new_value != collapse_whitespace(getattr(existing, key)):
            patch[key] = incoming.get(key)
    if "link" in patch:
        patch["normalized_url"] = incoming.get("normalized_url")

    new_pub = normalize_timestamp(incoming.get("pub_date"))
    if new_pub and new_pub != normalize_timestamp(existing.pub_date):
        patch["pub_date"] = new_pub

    new_hash = incoming.get("content_hash")
    if new_hash and new_hash != existing.content_hash:
        patch["content_hash"] = new_hash

    new_categories = _normalize_categories(incoming.get("categories"))
    if new_categories and new_categories != _normalize_categories(existing.categories):
        patch["categories"] = new_categories

    return ItemDiff(changed=bool(patch), patch=patch)


def ingest_feed(
    conn,
    feed: Feed,
    source: FeedSource,
    settings: Settings,
    logger: logging.Logger,
    clock: Clock = utc_now,
) -> FeedRunResult:
    started = clock()
    started_at = isoformat_utc(started)
    result = FeedRunResult(feed_id=feed.id, status="ok", started_at=started_at)

    try:
        fetched = source.fetch(feed)
    except Exception as exc:
        return _finish_failed(conn, feed, result, exc, started_at, logger, clock)

    if fetched.meta.not_modified:
        result.status = "not_modified"
        record_feed_success(conn, feed.id, fetched.meta, isoformat_utc(clock()))
        log_event(logger, logging.INFO, "feed_not_modified", feed_id=feed.id)
        record_feed_run(conn, result, started_at, isoformat_utc(clock()))
        return result

    result.fetched = len(fetched.items)
    candidates = select_window(
        fetched.items,
        first_run=feed.last_success_at is None,
        limit=settings.fetch_window_limit,
    )
    since = isoformat_utc(started - timedelta(days=settings.retention_days))

    try:
        for item in candidates:
            try:
                _ingest_item(conn, feed, item, settings, since, result, logger, clock)
            except FeedDeletedError:
                raise
            except Exception as exc:
                _rollback(conn)
                result.errored += 1
                log_event(
                    logger,
                    logging.ERROR,
                    "feed_item_failed",
                    feed_id=feed.id,
                    guid=item.guid,
                    error=error_message(exc),
                )
    except FeedDeletedError:
        result.status = "feed_deleted"
        result.items = []
        log_event(logger, logging.WARNING, "feed_deleted_mid_run", feed_id=feed.id)
        record_feed_run(conn, result, started_at, isoformat_utc(clock()))
        return result

    finished_at = isoformat_utc(clock())
    record_feed_success(conn, feed.id, fetched.meta, finished_at)
    record_feed_run(conn, result, started_at, finished_at)
    log_event(
        logger,
        logging.INFO,
        "feed_ingested",
        feed_id=feed.id,
        fetched=result.fetched,
        inserted=result.inserted,
        updated=result.updated,
        duplicate=result.duplicate,
        errored=result.errored,
    )
    return result


def _ingest_item(
    conn,
    feed: Feed,
    item: NormalizedItem,
    settings: Settings,
    since: str,
    result: FeedRunResult,
    logger: logging.Logger,
    clock: Clock,
) -> None:
    values = build_item_values(feed.id, item)
    try:
        existing = find_feed_item(conn, feed.id, str(values["guid"]), values["normalized_url"])
        if existing is None:
            if is_duplicate_feed_item(
                conn,
                item.title,
                item.link,
                since,
                threshold=settings.dedupe_threshold,
                feed_id=feed.id,
                logger=logger,
            ):
                result.duplicate += 1
                return
            inserted = insert_feed_item(conn, feed.id, values, isoformat_utc(clock()))
            if inserted is None:
                result.duplicate += 1
                return
            result.inserted += 1
            result.items.append(inserted)
            return

        diff = diff_item(existing, values)
        if not diff.changed:
            result.duplicate += 1
            return
        updated = update_feed_item(conn, existing.id, diff.patch, isoformat_utc(clock()))
        result.updated += 1
        if updated is not None:
            result.items.append(updated)
        log_event(
            logger,
            logging.DEBUG,
            "feed_item_updated",
            feed_id=feed.id,
            item_id=existing.id,
            fields=",".join(sorted(diff.patch.keys())),
        )
    except Exception as exc:
        if is_foreign_key_violation(exc):
            _rollback(conn)
            raise FeedDeletedError(feed.id) from exc
        raise


def _finish_failed(
    conn,
    feed: Feed,
    result: FeedRunResult,
    exc: BaseException,
    started_at: str,
    logger: logging.Logger,
    clock: Clock,
) -> FeedRunResult:
    message = error_message(exc)
    result.status = "error"
    result.error = message
    finished_at = isoformat_utc(clock())
    record_feed_failure(conn, feed.id, message, finished_at)
    record_feed_run(conn, result, started_at, finished_at)
    log_event(logger, logging.ERROR, "feed_fetch_failed", feed_id=feed.id, error=message)
    return result


def _rollback(conn) -> None:
    try:
        conn.rollback()
    except Exception:
        return
