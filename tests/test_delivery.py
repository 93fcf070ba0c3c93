from conftest import (
    START,
    HEADLINES,
    make_item,
    seed_feed,
    seed_schedule,
    seed_targets,
    seed_template,
)

from feedrelay.config import update_settings
from feedrelay.delivery import render_template
from feedrelay.locks import TableLockManager
from feedrelay.models import OBLIGATION_FAILED, OBLIGATION_PENDING, OBLIGATION_SENT, FeedItem
from feedrelay.service import process_feed, run_schedule
from feedrelay.storage import (
    get_schedule,
    insert_chat_message,
    list_chat_messages_since,
    list_obligations,
)
from feedrelay.utils import isoformat_utc

SINCE = "2024-03-01T00:00:00.000000+00:00"
EXPECTED_TEXT = f"{HEADLINES[1]} - https://news.example.com/story/1"


def _setup(relay, conn, source, **schedule):
    seed_feed(conn)
    seed_targets(conn, "t1", "t2")
    seed_template(conn)
    seed_schedule(conn, template_id="tpl", **schedule)
    source.push([make_item(1)])
    return process_feed(relay, "f1")


def _statuses(conn, schedule_id="s1"):
    return {o.target_id: o.status for o in list_obligations(conn, schedule_id)}


def test_sends_rendered_message_to_every_target(relay, conn, source, transport, sleeps):
    _setup(relay, conn, source)

    result = run_schedule(relay, "s1")

    assert (result.sent, result.failed, result.skipped) == (2, 0, False)
    assert transport.sent == [("t1", EXPECTED_TEXT), ("t2", EXPECTED_TEXT)]
    assert _statuses(conn) == {"t1": OBLIGATION_SENT, "t2": OBLIGATION_SENT}
    sent = list_obligations(conn, "s1")[0]
    assert sent.message_content == EXPECTED_TEXT
    assert sent.transport_message_id == "msg-1"
    assert list_chat_messages_since(conn, "t2", SINCE) == [EXPECTED_TEXT]
    assert get_schedule(conn, "s1").last_run_at == isoformat_utc(START)
    # Delay only between consecutive sends.
    assert sleeps == [2.0]


def test_second_run_sends_nothing(relay, conn, source, transport):
    _setup(relay, conn, source)
    run_schedule(relay, "s1")

    again = run_schedule(relay, "s1")

    assert again.sent == 0
    assert len(transport.sent) == 2


def test_item_sent_by_another_schedule_is_not_resent(relay, conn, source, transport):
    seed_feed(conn)
    seed_targets(conn, "t1", "t2")
    seed_schedule(conn, "s1")
    seed_schedule(conn, "s2", target_ids=["t1"])
    source.push([make_item(1)])
    process_feed(relay, "f1")

    assert run_schedule(relay, "s1").sent == 2
    second = run_schedule(relay, "s2")

    assert second.sent == 0
    assert second.failed == 1
    failed = list_obligations(conn, "s2")[0]
    assert failed.status == OBLIGATION_FAILED
    assert failed.error_message == "already sent to this target"
    assert len(transport.sent) == 2


def test_missing_item_fails_obligation(relay, conn, source, transport):
    _setup(relay, conn, source)
    conn.execute("DELETE FROM feed_items")
    conn.commit()

    result = run_schedule(relay, "s1")

    assert result.failed == 2
    assert {o.error_message for o in list_obligations(conn, "s1")} == {"Feed item missing"}
    assert transport.sent == []


def test_send_failure_is_retried_then_failed(relay, conn, source, transport):
    update_settings(conn, {"max_send_retries": 1})
    _setup(relay, conn, source)
    transport.failures.append(RuntimeError("socket closed"))

    first = run_schedule(relay, "s1")

    assert (first.sent, first.failed) == (1, 0)
    retried = [o for o in list_obligations(conn, "s1") if o.target_id == "t1"][0]
    assert retried.status == OBLIGATION_PENDING
    assert retried.retry_count == 1
    assert retried.error_message == "socket closed"

    transport.failures.append(RuntimeError("socket closed"))
    second = run_schedule(relay, "s1")

    assert second.failed == 1
    failed = [o for o in list_obligations(conn, "s1") if o.target_id == "t1"][0]
    assert failed.status == OBLIGATION_FAILED
    assert failed.message_content == EXPECTED_TEXT


def test_send_failure_without_retries_fails_immediately(relay, conn, source, transport):
    _setup(relay, conn, source)
    transport.failures.append(RuntimeError(""))

    result = run_schedule(relay, "s1")

    assert (result.sent, result.failed) == (1, 1)
    assert _statuses(conn)["t1"] == OBLIGATION_FAILED
    failed = [o for o in list_obligations(conn, "s1") if o.target_id == "t1"][0]
    assert failed.error_message == "RuntimeError"


def test_disconnected_transport_skips_run(relay, conn, source, transport):
    _setup(relay, conn, source)
    transport.status = "disconnected"

    result = run_schedule(relay, "s1")

    assert result.skipped
    assert result.reason == "transport not connected (disconnected)"
    assert _statuses(conn) == {"t1": OBLIGATION_PENDING, "t2": OBLIGATION_PENDING}
    assert get_schedule(conn, "s1").last_run_at is None


def test_missing_transport_skips_run(relay, conn, source):
    _setup(relay, conn, source)
    relay.transport = None

    result = run_schedule(relay, "s1")

    assert result.skipped
    assert result.reason == "transport not configured"


def test_locked_schedule_is_skipped(relay, conn, source, transport, clock):
    _setup(relay, conn, source)
    TableLockManager(conn, "other-instance", clock=clock).acquire("s1")

    result = run_schedule(relay, "s1")

    assert result.skipped
    assert result.reason == "schedule is being processed by another instance"
    assert transport.sent == []


def test_unknown_and_inactive_schedules(relay, conn, source):
    assert run_schedule(relay, "nope").reason == "schedule not found"
    _setup(relay, conn, source, active=False)
    assert run_schedule(relay, "s1").reason == "schedule inactive"


def test_chat_dedupe_blocks_recent_repeat(relay, conn, source, transport):
    update_settings(conn, {"chat_dedupe_enabled": True})
    _setup(relay, conn, source)
    insert_chat_message(conn, "t1", f"Earlier: {HEADLINES[1]}", "old-1", isoformat_utc(START))

    result = run_schedule(relay, "s1")

    assert (result.sent, result.failed) == (1, 1)
    assert transport.sent == [("t2", EXPECTED_TEXT)]


def test_empty_render_fails_obligation(relay, conn, source, transport):
    _setup(relay, conn, source)
    seed_template(conn, "tpl", "{{nothing_here}}")

    result = run_schedule(relay, "s1")

    assert result.failed == 2
    assert {o.error_message for o in list_obligations(conn, "s1")} == {
        "Rendered message is empty"
    }


def _feed_item(**overrides):
    values = {
        "id": 1,
        "feed_id": "f1",
        "guid": "g1",
        "title": "Harbor cleanup",
        "link": "https://news.example.com/harbor",
        "normalized_url": "https://news.example.com/harbor",
        "content_hash": "abc",
        "description": None,
        "content": "Volunteers collected a record haul. " * 20,
        "author": "Desk",
        "image_url": None,
        "pub_date": None,
        "categories": ["local", "environment"],
        "raw": {"section": "City", "extra": {"a": 1}},
        "created_at": "2024-03-13T12:00:00.000000+00:00",
        "updated_at": "2024-03-13T12:00:00.000000+00:00",
    }
    values.update(overrides)
    return FeedItem(**values)


def test_render_template_fields():
    item = _feed_item()

    assert render_template("{{ title }} | {{url}} | {{missing}}", item) == (
        "Harbor cleanup | https://news.example.com/harbor | "
    )
    assert len(render_template("{{description}}", item)) == 280
    assert render_template("{{categories}} / {{section}}", item) == "local, environment / City"
    assert render_template("{{extra}}", item) == '{"a": 1}'
    assert render_template("{{pub_date}}|{{image_url}}", item) == "|"
