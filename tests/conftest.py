from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from feedrelay.blackout import BlackoutGate
from feedrelay.db import connect_db
from feedrelay.models import FetchMeta, FetchResult, NormalizedItem, SendReceipt
from feedrelay.service import build_relay
from feedrelay.storage import upsert_feed, upsert_schedule, upsert_target, upsert_template

START = datetime(2024, 3, 13, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeSource:
    """Returns queued fetch results in order; an exception in the queue is raised."""

    def __init__(self) -> None:
        self.results: list[object] = []
        self.calls: list[str] = []
        self.before_return = None

    def push(self, items: list[NormalizedItem], **meta) -> None:
        self.results.append(FetchResult(items=items, meta=FetchMeta(**meta)))

    def fetch(self, feed):
        self.calls.append(feed.id)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        if self.before_return is not None:
            self.before_return(feed)
        return result


class FakeTransport:
    def __init__(self, status: str = "connected") -> None:
        self.status = status
        self.sent: list[tuple[str, str]] = []
        self.failures: list[Exception] = []

    def send(self, target, text: str) -> SendReceipt:
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append((target.id, text))
        return SendReceipt(message_id=f"msg-{len(self.sent)}")

    def get_status(self) -> dict[str, object]:
        return {"status": self.status}


class FakeTimeSource:
    def __init__(self) -> None:
        self.periods = []
        self.calls = 0
        self.error: Exception | None = None

    def current_periods(self, location, start_offset_minutes, end_offset_minutes):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.periods)


HEADLINES = (
    "Council approves new riverside park budget",
    "Storm closes mountain pass for the weekend",
    "Local bakery wins national bread award",
    "Transit strike talks resume on Thursday",
    "University opens quantum computing lab",
    "Museum returns stolen painting to owners",
    "Harbor cleanup volunteers collect record haul",
)


def make_item(index: int, **overrides) -> NormalizedItem:
    values = {
        "guid": f"guid-{index}",
        "title": HEADLINES[index % len(HEADLINES)],
        "link": f"https://news.example.com/story/{index}",
        "description": f"Summary {index}",
        "pub_date": START - timedelta(hours=10 - index),
    }
    values.update(overrides)
    return NormalizedItem(**values)


def seed_feed(conn, feed_id: str = "f1", **overrides) -> None:
    feed = {
        "id": feed_id,
        "name": "Example News",
        "url": f"https://news.example.com/{feed_id}.xml",
        "fetch_interval_seconds": 300,
    }
    feed.update(overrides)
    upsert_feed(conn, feed)


def seed_targets(conn, *target_ids: str) -> None:
    for target_id in target_ids:
        upsert_target(
            conn,
            {"id": target_id, "name": target_id.upper(), "address": f"{target_id}@chat"},
        )


def seed_schedule(conn, schedule_id: str = "s1", **overrides) -> None:
    schedule = {
        "id": schedule_id,
        "feed_id": "f1",
        "target_ids": ["t1", "t2"],
        "delivery_mode": "immediate",
    }
    schedule.update(overrides)
    upsert_schedule(conn, schedule)


def seed_template(conn, template_id: str = "tpl", content: str = "{{title}} - {{link}}") -> None:
    upsert_template(conn, {"id": template_id, "name": "Default", "content": content})


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    monkeypatch.delenv("FR_DB_URL", raising=False)
    monkeypatch.setenv("FR_DATA_DIR", str(tmp_path / "data"))
    return str(tmp_path / "data" / "state.sqlite3")


@pytest.fixture
def conn(db_path):
    connection = connect_db(db_path)
    yield connection
    connection.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def time_source():
    return FakeTimeSource()


@pytest.fixture
def gate(time_source, clock):
    return BlackoutGate(time_source, clock=clock)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def relay(conn, source, transport, gate, clock, sleeps):
    return build_relay(
        conn,
        source=source,
        transport=transport,
        gate=gate,
        clock=clock,
        sleep=sleeps.append,
    )
