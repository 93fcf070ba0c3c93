"""Cross-instance mutual exclusion for schedule runs.

Two implementations share one interface: PostgreSQL session advisory locks, and a
row-per-schedule lock table with an expiry for stores without advisory locks.
"""

from __future__ import annotations

import hashlib
import logging
import os
import struct
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Protocol

from .db import is_missing_table
from .models import LockResult
from .storage import delete_schedule_lock, insert_schedule_lock, take_over_schedule_lock
from .utils import Clock, isoformat_utc, log_event, utc_now

DEFAULT_LOCK_TTL_SECONDS = 300


class ScheduleLockManager(Protocol):
    holder: str

    def acquire(self, schedule_id: str) -> LockResult: ...

    def release(self, schedule_id: str) -> None: ...


def holder_identity() -> str:
    for name in ("FR_INSTANCE_ID", "HOSTNAME"):
        value = os.environ.get(name, "").strip()
        if value:
            return f"{value}:{os.getpid()}"
    return f"feedrelay-{uuid.uuid4().hex[:12]}"


def _lease_key(name: str) -> int:
    digest = hashlib.sha256(name.encode("utf-8")).digest()
    return struct.unpack(">q", digest[:8])[0]


class AdvisoryLockManager:
    """Session-scoped advisory locks; they survive commits on the holding connection."""

    def __init__(self, conn: Any, holder: str, logger: logging.Logger | None = None) -> None:
        self.conn = conn
        self.holder = holder
        self.logger = logger or logging.getLogger("feedrelay.locks")
        self._held: set[str] = set()
        self._mutex = threading.Lock()

    def acquire(self, schedule_id: str) -> LockResult:
        with self._mutex:
            # Advisory locks are re-entrant per session; refuse a second local holder.
            if schedule_id in self._held:
                return LockResult(acquired=False, holder=self.holder, reason="held_locally")
            row = self.conn.execute(
                "SELECT pg_try_advisory_lock(?)", (_lease_key(f"schedule:{schedule_id}"),)
            ).fetchone()
            self.conn.commit()
            acquired = bool(row and row[0])
            if acquired:
                self._held.add(schedule_id)
                return LockResult(acquired=True, holder=self.holder)
            return LockResult(acquired=False, reason="locked")

    def release(self, schedule_id: str) -> None:
        with self._mutex:
            if schedule_id not in self._held:
                return
            try:
                self.conn.execute(
                    "SELECT pg_advisory_unlock(?)", (_lease_key(f"schedule:{schedule_id}"),)
                )
                self.conn.commit()
            finally:
                self._held.discard(schedule_id)


class TableLockManager:
    def __init__(
        self,
        conn: Any,
        holder: str,
        ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
        clock: Clock = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        self.conn = conn
        self.holder = holder
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.logger = logger or logging.getLogger("feedrelay.locks")
        self._mutex = threading.Lock()

    def acquire(self, schedule_id: str) -> LockResult:
        now = self.clock()
        now_iso = isoformat_utc(now)
        until_iso = isoformat_utc(now + timedelta(seconds=self.ttl_seconds))
        with self._mutex:
            try:
                if insert_schedule_lock(self.conn, schedule_id, self.holder, now_iso, until_iso):
                    return LockResult(acquired=True, holder=self.holder)
                if take_over_schedule_lock(
                    self.conn, schedule_id, self.holder, now_iso, until_iso
                ):
                    return LockResult(acquired=True, holder=self.holder, reason="taken_over")
            except Exception as exc:
                if not is_missing_table(exc):
                    raise
                self.conn.rollback()
                log_event(
                    self.logger,
                    logging.WARNING,
                    "schedule_lock_table_missing",
                    schedule_id=schedule_id,
                )
                return LockResult(acquired=True, holder=self.holder, reason="lock_table_missing")
        return LockResult(acquired=False, reason="locked")

    def release(self, schedule_id: str) -> None:
        with self._mutex:
            try:
                delete_schedule_lock(self.conn, schedule_id, self.holder)
            except Exception as exc:
                if not is_missing_table(exc):
                    raise
                self.conn.rollback()


def supports_advisory_locks(conn: Any) -> bool:
    if getattr(conn, "backend", None) != "postgres":
        return False
    try:
        row = conn.execute(
            "SELECT 1 FROM pg_proc WHERE proname = 'pg_try_advisory_lock' LIMIT 1"
        ).fetchone()
        conn.commit()
    except Exception:
        conn.rollback()
        return False
    return row is not None


LOCK_KIND_ADVISORY = "advisory"
LOCK_KIND_TABLE = "table"


def detect_lock_kind(conn: Any, logger: logging.Logger | None = None) -> str:
    """Capability probe, run once per process at startup."""
    logger = logger or logging.getLogger("feedrelay.locks")
    kind = LOCK_KIND_ADVISORY if supports_advisory_locks(conn) else LOCK_KIND_TABLE
    log_event(logger, logging.INFO, "lock_manager_selected", kind=kind)
    return kind


def build_lock_manager(
    kind: str,
    conn: Any,
    holder: str | None = None,
    ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
    clock: Clock = utc_now,
    logger: logging.Logger | None = None,
) -> ScheduleLockManager:
    holder = holder or holder_identity()
    if kind == LOCK_KIND_ADVISORY:
        return AdvisoryLockManager(conn, holder, logger=logger)
    return TableLockManager(conn, holder, ttl_seconds=ttl_seconds, clock=clock, logger=logger)


def select_lock_manager(
    conn: Any,
    holder: str | None = None,
    ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
    clock: Clock = utc_now,
    logger: logging.Logger | None = None,
) -> ScheduleLockManager:
    kind = detect_lock_kind(conn, logger)
    return build_lock_manager(
        kind, conn, holder, ttl_seconds=ttl_seconds, clock=clock, logger=logger
    )


@dataclass(frozen=True)
class LockedRun:
    acquired: bool
    result: Any = None
    reason: str | None = None


def with_schedule_lock(
    manager: ScheduleLockManager,
    schedule_id: str,
    fn: Callable[[], Any],
    skip_if_locked: bool = True,
    retry_delay_seconds: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    logger: logging.Logger | None = None,
) -> LockedRun:
    logger = logger or logging.getLogger("feedrelay.locks")
    lock = manager.acquire(schedule_id)
    if not lock.acquired and not skip_if_locked:
        sleep(retry_delay_seconds)
        lock = manager.acquire(schedule_id)
    if not lock.acquired:
        log_event(
            logger,
            logging.INFO,
            "schedule_locked_skip",
            schedule_id=schedule_id,
            reason=lock.reason,
        )
        return LockedRun(acquired=False, reason=lock.reason or "locked")
    try:
        return LockedRun(acquired=True, result=fn(), reason=lock.reason)
    finally:
        manager.release(schedule_id)
