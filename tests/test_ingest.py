from conftest import START, make_item, seed_feed

from feedrelay.ingest import build_item_values, diff_item, resolve_guid, select_window
from feedrelay.models import NormalizedItem
from feedrelay.service import process_all_active_feeds, process_feed
from feedrelay.storage import (
    count_feed_items_for_feed,
    delete_feed,
    find_feed_item,
    get_feed,
    insert_feed_item,
    list_feed_runs,
)


def test_first_run_takes_only_newest_item(relay, conn, source):
    seed_feed(conn)
    source.push([make_item(i) for i in range(5)], etag='"v1"')

    result = process_feed(relay, "f1")

    assert result.status == "ok"
    assert result.fetched == 5
    assert result.inserted == 1
    assert [item.guid for item in result.items] == ["guid-4"]
    feed = get_feed(conn, "f1")
    assert feed.etag == '"v1"'
    assert feed.last_success_at is not None


def test_second_run_inserts_backlog_and_counts_known_items(relay, conn, source, clock):
    seed_feed(conn)
    source.push([make_item(i) for i in range(5)])
    process_feed(relay, "f1")
    clock.advance(minutes=5)
    source.push([make_item(i) for i in range(6)])

    result = process_feed(relay, "f1")

    assert result.inserted == 5
    assert result.duplicate == 1
    assert [item.guid for item in result.items] == [
        "guid-0",
        "guid-1",
        "guid-2",
        "guid-3",
        "guid-5",
    ]
    assert count_feed_items_for_feed(conn, "f1") == 6


def test_changed_item_is_updated_in_place(relay, conn, source, clock):
    seed_feed(conn)
    source.push([make_item(1)])
    process_feed(relay, "f1")
    clock.advance(minutes=5)
    source.push([make_item(1, description="Corrected summary", author="Desk")])

    result = process_feed(relay, "f1")

    assert result.inserted == 0
    assert result.updated == 1
    stored = find_feed_item(conn, "f1", "guid-1", None)
    assert stored.description == "Corrected summary"
    assert stored.author == "Desk"
    assert result.items[0].id == stored.id


def test_unchanged_item_counts_as_duplicate(relay, conn, source, clock):
    seed_feed(conn)
    source.push([make_item(1)])
    process_feed(relay, "f1")
    clock.advance(minutes=5)
    source.push([make_item(1, description=None)])

    result = process_feed(relay, "f1")

    assert result.updated == 0
    assert result.duplicate == 1
    assert result.items == []


def test_cross_guid_near_duplicate_is_skipped(relay, conn, source, clock):
    seed_feed(conn)
    source.push([make_item(1)])
    process_feed(relay, "f1")
    clock.advance(minutes=5)
    source.push(
        [make_item(1, guid="other-guid", link="https://mirror.example.com/story")]
    )

    result = process_feed(relay, "f1")

    assert result.inserted == 0
    assert result.duplicate == 1


def test_fetch_failure_is_recorded(relay, conn, source):
    seed_feed(conn)
    source.results.append(RuntimeError("connection reset"))

    result = process_feed(relay, "f1")

    assert result.status == "error"
    assert result.error == "connection reset"
    feed = get_feed(conn, "f1")
    assert feed.consecutive_failures == 1
    assert feed.last_error == "connection reset"
    runs = list_feed_runs(conn, "f1")
    assert runs[0]["status"] == "error"
    assert runs[0]["error"] == "connection reset"


def test_success_resets_failure_count(relay, conn, source, clock):
    seed_feed(conn)
    source.results.append(RuntimeError("timeout"))
    process_feed(relay, "f1")
    clock.advance(minutes=5)
    source.push([make_item(1)])

    process_feed(relay, "f1")

    feed = get_feed(conn, "f1")
    assert feed.consecutive_failures == 0
    assert feed.last_error is None


def test_not_modified_keeps_items(relay, conn, source):
    seed_feed(conn)
    source.push([], not_modified=True, etag='"v2"')

    result = process_feed(relay, "f1")

    assert result.status == "not_modified"
    assert result.items == []
    assert get_feed(conn, "f1").etag == '"v2"'
    assert list_feed_runs(conn, "f1")[0]["status"] == "not_modified"


def test_feed_deleted_mid_run(relay, conn, source):
    seed_feed(conn)
    source.push([make_item(1)])
    source.before_return = lambda feed: delete_feed(conn, feed.id)

    result = process_feed(relay, "f1")

    assert result.status == "feed_deleted"
    assert result.items == []
    assert list_feed_runs(conn, "f1")[0]["status"] == "feed_deleted"


def test_unknown_and_inactive_feeds(relay, conn, source):
    assert process_feed(relay, "missing").status == "not_found"
    seed_feed(conn, active=False)
    assert process_feed(relay, "f1").status == "inactive"
    assert source.calls == []


def test_process_all_active_feeds_isolates_failures(relay, conn, source):
    seed_feed(conn, "f1")
    seed_feed(conn, "f2")
    source.results.append(RuntimeError("down"))
    source.push([make_item(2)])

    results = process_all_active_feeds(relay)

    assert [(r.feed_id, r.status) for r in results] == [("f1", "error"), ("f2", "ok")]


def test_resolve_guid_falls_back_to_link_then_fingerprint():
    assert resolve_guid("f1", NormalizedItem(guid=" g ", title="t", link="l")) == "g"
    assert (
        resolve_guid("f1", NormalizedItem(guid=None, title="t", link="https://x.example/a"))
        == "https://x.example/a"
    )
    derived = resolve_guid("f1", NormalizedItem(guid="", title="Only a title", link=None))
    assert derived.startswith("f1:")
    assert derived == resolve_guid("f1", NormalizedItem(guid=None, title="only a TITLE", link=""))


def test_select_window_orders_oldest_first_with_undated_items_first():
    undated = make_item(9, pub_date=None)
    items = [make_item(3), undated, make_item(1), make_item(2)]

    ordered = select_window(items, first_run=False, limit=0)
    assert [item.guid for item in ordered] == ["guid-9", "guid-1", "guid-2", "guid-3"]
    assert [item.guid for item in select_window(items, first_run=False, limit=2)] == [
        "guid-2",
        "guid-3",
    ]
    assert [item.guid for item in select_window(items, first_run=True, limit=0)] == ["guid-3"]
    assert select_window([], first_run=True, limit=10) == []


def test_diff_item_ignores_empty_incoming_fields(conn):
    seed_feed(conn)
    values = build_item_values("f1", make_item(1, content="Full body"))
    stored = insert_feed_item(conn, "f1", values, START.isoformat())

    same = diff_item(stored, build_item_values("f1", make_item(1, content=None)))
    assert not same.changed

    incoming = build_item_values("f1", make_item(1, title="Council approves revised park budget"))
    changed = diff_item(stored, incoming)
    assert changed.changed
    assert changed.patch["title"] == "Council approves revised park budget"
    assert changed.patch["content_hash"] == incoming["content_hash"]
    assert "link" not in changed.patch

    moved = diff_item(
        stored,
        build_item_values("f1", make_item(1, link="https://news.example.com/new")),
    )
    assert moved.patch["normalized_url"] == "https://news.example.com/new"
