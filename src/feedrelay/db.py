from __future__ import annotations

import os
import sqlite3
import threading
from typing import Any

from .migrations import apply_migrations
from .migrations_pg import apply_migrations_pg

_MIGRATED: set[str] = set()
_MIGRATION_LOCK = threading.Lock()


def get_db_url() -> str | None:
    url = os.environ.get("FR_DB_URL", "").strip()
    return url or None


def is_postgres_url(url: str | None) -> bool:
    if not url:
        return False
    return url.startswith("postgres://") or url.startswith("postgresql://")


class DBConn:
    def __init__(self, conn: Any, backend: str) -> None:
        self._conn = conn
        self.backend = backend

    def execute(self, sql: str, params: tuple | list | None = None):
        sql = _normalize_sql(sql, self.backend)
        params = params or ()
        cursor = self._conn.cursor()
        cursor.execute(sql, params)
        return cursor

    def executemany(self, sql: str, seq_of_params):
        sql = _normalize_sql(sql, self.backend)
        cursor = self._conn.cursor()
        cursor.executemany(sql, seq_of_params)
        return cursor

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    def close(self) -> None:
        self._conn.close()

    def __getattr__(self, name: str):
        return getattr(self._conn, name)


def connect_db(path: str) -> DBConn:
    url = get_db_url()
    if url and is_postgres_url(url):
        try:
            import psycopg
        except ImportError as exc:  # pragma: no cover - depends on env
            raise RuntimeError("psycopg is required for PostgreSQL support") from exc
        raw = psycopg.connect(url)
        conn = DBConn(raw, "postgres")
        with _MIGRATION_LOCK:
            if url not in _MIGRATED:
                apply_migrations_pg(conn)
                _MIGRATED.add(url)
        return conn

    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    # A connection is used by one unit of work at a time, but FastAPI may run a
    # request's dependency and handler on different pool threads.
    raw = sqlite3.connect(path, timeout=5, check_same_thread=False)
    raw.execute("PRAGMA journal_mode=WAL")
    raw.execute("PRAGMA synchronous=NORMAL")
    raw.execute("PRAGMA busy_timeout=5000")
    raw.execute("PRAGMA foreign_keys=ON")
    key = os.path.abspath(path)
    with _MIGRATION_LOCK:
        if key not in _MIGRATED or not _has_schema(raw):
            apply_migrations(raw)
            _MIGRATED.add(key)
    return DBConn(raw, "sqlite")


def _has_schema(raw: sqlite3.Connection) -> bool:
    row = raw.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_migrations'"
    ).fetchone()
    return row is not None


def is_unique_violation(exc: BaseException) -> bool:
    if getattr(exc, "sqlstate", None) == "23505":
        return True
    message = str(exc).lower()
    return "unique constraint" in message or "duplicate key" in message


def is_foreign_key_violation(exc: BaseException) -> bool:
    if getattr(exc, "sqlstate", None) == "23503":
        return True
    message = str(exc).lower()
    return "foreign key constraint" in message


def is_missing_table(exc: BaseException) -> bool:
    if getattr(exc, "sqlstate", None) == "42P01":
        return True
    message = str(exc).lower()
    return "no such table" in message or ("relation" in message and "does not exist" in message)


def _normalize_sql(sql: str, backend: str) -> str:
    if backend != "postgres":
        return sql
    normalized = _replace_insert_or_ignore(sql)
    normalized = normalized.replace("BEGIN IMMEDIATE", "BEGIN")
    normalized = _convert_qmark_to_percent(normalized)
    return normalized


def _replace_insert_or_ignore(sql: str) -> str:
    upper = sql.upper()
    if "INSERT OR IGNORE" not in upper:
        return sql
    replaced = _replace_first_case_insensitive(sql, "INSERT OR IGNORE", "INSERT")
    if "ON CONFLICT" in replaced.upper():
        return replaced
    stripped = replaced.rstrip().rstrip(";")
    return stripped + " ON CONFLICT DO NOTHING"


def _replace_first_case_insensitive(text: str, needle: str, replacement: str) -> str:
    idx = text.upper().find(needle.upper())
    if idx == -1:
        return text
    return text[:idx] + replacement + text[idx + len(needle) :]


def _convert_qmark_to_percent(sql: str) -> str:
    out = []
    in_single = False
    in_double = False
    escape = False
    for ch in sql:
        if ch == "\\" and not escape:
            escape = True
            out.append(ch)
            continue
        if ch == "'" and not in_double and not escape:
            in_single = not in_single
        elif ch == '"' and not in_single and not escape:
            in_double = not in_double
        if ch == "?" and not in_single and not in_double:
            out.append("%s")
        elif ch == "%":
            out.append("%%")
        else:
            out.append(ch)
        escape = False
    return "".join(out)
