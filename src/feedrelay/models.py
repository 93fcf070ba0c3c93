from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

OBLIGATION_AWAITING_APPROVAL = "awaiting_approval"
OBLIGATION_PENDING = "pending"
OBLIGATION_PROCESSING = "processing"
OBLIGATION_SENT = "sent"
OBLIGATION_FAILED = "failed"

# Receipt states advanced by the transport after a successful send.
RECEIPT_STATUSES = ("delivered", "read", "played")
SENT_STATUSES = (OBLIGATION_SENT,) + RECEIPT_STATUSES
TERMINAL_STATUSES = (OBLIGATION_FAILED,) + SENT_STATUSES

DELIVERY_MODES = ("immediate", "interval", "fixed-times")
FEED_TYPES = ("rss", "atom", "json")
TARGET_TYPES = ("individual", "group", "channel", "status")


@dataclass(frozen=True)
class Feed:
    id: str
    name: str
    url: str
    type: str
    active: bool
    fetch_interval_seconds: int
    etag: str | None
    last_modified: str | None
    last_fetched_at: str | None
    last_success_at: str | None
    last_error: str | None
    consecutive_failures: int


@dataclass(frozen=True)
class FeedItem:
    id: int
    feed_id: str
    guid: str
    title: str | None
    link: str | None
    normalized_url: str | None
    content_hash: str | None
    description: str | None
    content: str | None
    author: str | None
    image_url: str | None
    pub_date: str | None
    categories: list[str]
    raw: dict[str, object]
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class Target:
    id: str
    name: str
    address: str
    type: str
    active: bool


@dataclass(frozen=True)
class Template:
    id: str
    name: str
    content: str


@dataclass(frozen=True)
class Schedule:
    id: str
    name: str
    feed_id: str
    template_id: str | None
    target_ids: list[str]
    delivery_mode: str
    interval_minutes: int | None
    fixed_times: list[str]
    timezone: str | None
    active: bool
    approval_required: bool
    last_run_at: str | None


@dataclass(frozen=True)
class DeliveryObligation:
    id: int
    feed_item_id: int | None
    target_id: str
    schedule_id: str
    status: str
    error_message: str | None
    message_content: str | None
    transport_message_id: str | None
    retry_count: int
    created_at: str
    processing_started_at: str | None
    sent_at: str | None


@dataclass(frozen=True)
class NormalizedItem:
    """One entry as handed over by a feed source, before identity resolution."""

    guid: str | None
    title: str | None
    link: str | None
    description: str | None = None
    content: str | None = None
    author: str | None = None
    image_url: str | None = None
    pub_date: datetime | None = None
    categories: list[str] = field(default_factory=list)
    raw: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class FetchMeta:
    not_modified: bool = False
    etag: str | None = None
    last_modified: str | None = None
    detected_type: str | None = None


@dataclass(frozen=True)
class FetchResult:
    items: list[NormalizedItem]
    meta: FetchMeta


@dataclass(frozen=True)
class ItemDiff:
    changed: bool
    patch: dict[str, object]


@dataclass
class FeedRunResult:
    feed_id: str
    status: str
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    duplicate: int = 0
    errored: int = 0
    queued: int = 0
    error: str | None = None
    items: list[FeedItem] = field(default_factory=list)
    started_at: str | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "feed_id": self.feed_id,
            "status": self.status,
            "fetched": self.fetched,
            "inserted": self.inserted,
            "updated": self.updated,
            "duplicate": self.duplicate,
            "errored": self.errored,
            "queued": self.queued,
            "error": self.error,
        }


@dataclass
class ScheduleRunResult:
    schedule_id: str
    sent: int = 0
    failed: int = 0
    skipped: bool = False
    reason: str | None = None
    resume_at: str | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "schedule_id": self.schedule_id,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
            "reason": self.reason,
            "resume_at": self.resume_at,
        }


@dataclass(frozen=True)
class BlackoutPeriod:
    start: datetime
    end: datetime
    title: str | None = None
    kind: str = "shabbat"


@dataclass(frozen=True)
class BlackoutStatus:
    active: bool
    reason: str | None = None
    ends_at: datetime | None = None
    next_start: datetime | None = None
    kind: str | None = None
    title: str | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "active": self.active,
            "reason": self.reason,
            "ends_at": self.ends_at.isoformat() if self.ends_at else None,
            "next_start": self.next_start.isoformat() if self.next_start else None,
            "kind": self.kind,
            "title": self.title,
        }


@dataclass(frozen=True)
class LockResult:
    acquired: bool
    holder: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class SendReceipt:
    message_id: str | None
