import sqlite3

from conftest import START, seed_feed, seed_targets

from feedrelay.dedupe import is_duplicate_feed_item, is_duplicate_in_chat, similarity
from feedrelay.ingest import build_item_values
from feedrelay.models import NormalizedItem
from feedrelay.storage import insert_chat_message, insert_feed_item
from feedrelay.utils import isoformat_utc

SINCE = "2024-03-01T00:00:00.000000+00:00"


def _store(conn, guid, title, link):
    values = build_item_values("f1", NormalizedItem(guid=guid, title=title, link=link))
    return insert_feed_item(conn, "f1", values, isoformat_utc(START))


def test_exact_fingerprint_is_duplicate(conn):
    seed_feed(conn)
    _store(conn, "a", "Storm closes mountain pass", "https://news.example.com/a")
    assert is_duplicate_feed_item(
        conn, "storm closes MOUNTAIN pass!", "https://news.example.com/a/?utm_source=rss", SINCE
    )


def test_same_url_with_new_title_is_duplicate(conn):
    seed_feed(conn)
    _store(conn, "a", "Storm closes mountain pass", "https://news.example.com/a")
    assert is_duplicate_feed_item(
        conn, "Completely different words", "https://NEWS.example.com/a#comments", SINCE
    )


def test_near_identical_title_is_duplicate(conn):
    seed_feed(conn)
    _store(conn, "a", "Storm closes mountain pass for the weekend", "https://a.example.com/1")
    assert is_duplicate_feed_item(
        conn, "Storm closes mountain pass for this weekend", "https://b.example.com/2", SINCE
    )


def test_punctuation_and_case_noise_is_duplicate(conn):
    seed_feed(conn)
    _store(conn, "a", "breaking market rally", "https://a.example.com/markets")
    assert is_duplicate_feed_item(
        conn, "Breaking: Market Rally!!", "https://b.example.com/other", SINCE, threshold=0.88
    )


def test_distinct_title_is_not_duplicate(conn):
    seed_feed(conn)
    _store(conn, "a", "Storm closes mountain pass for the weekend", "https://a.example.com/1")
    assert not is_duplicate_feed_item(
        conn, "Local bakery wins national bread award", "https://b.example.com/2", SINCE
    )


def test_items_older_than_window_are_ignored(conn):
    seed_feed(conn)
    _store(conn, "a", "Storm closes mountain pass", "https://news.example.com/a")
    later = "2024-04-01T00:00:00.000000+00:00"
    assert not is_duplicate_feed_item(
        conn, "Storm closes mountain pass", "https://news.example.com/a", later
    )


def test_lookup_failure_fails_open(tmp_path):
    broken = sqlite3.connect(str(tmp_path / "empty.sqlite3"))
    try:
        assert not is_duplicate_feed_item(
            broken, "Storm closes mountain pass", "https://news.example.com/a", SINCE
        )
        assert not is_duplicate_in_chat(
            broken, "t1", "Storm closes mountain pass", "https://news.example.com/a", SINCE
        )
    finally:
        broken.close()


def test_chat_duplicate_by_url_and_by_title(conn):
    seed_targets(conn, "t1", "t2")
    insert_chat_message(
        conn,
        "t1",
        "Storm closes mountain pass for the weekend - https://news.example.com/a",
        "msg-1",
        isoformat_utc(START),
    )
    assert is_duplicate_in_chat(conn, "t1", "Other", "https://news.example.com/a?utm_medium=x", SINCE)
    assert is_duplicate_in_chat(
        conn, "t1", "Storm closes mountain pass for the weekend", "https://elsewhere.example.com", SINCE
    )
    assert not is_duplicate_in_chat(
        conn, "t2", "Storm closes mountain pass for the weekend", "https://news.example.com/a", SINCE
    )


def test_similarity_bounds():
    assert similarity("", "anything") == 0.0
    assert similarity("same words", "same words") == 1.0
